"""
Contract Hub: contract lifecycle tracking with AI entity extraction and risk classification.
"""

__version__ = "0.1.0"

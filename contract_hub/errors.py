"""
Error taxonomy for Contract Hub.

Every failure the core can report is one of these types:
- StorageError: document upload failed (fatal to a pipeline run)
- AnalysisError: one analysis branch failed (degrades a pipeline run to partial success)
- PersistenceError: a datastore write failed
- AuthError: caller context missing, not a member of the organization, or role not permitted
- ContractNotFoundError: contract unknown within the caller's organization
- InvalidTransitionError: requested status change is not in the transition table
- ParseError subclasses: a locale-formatted value could not be parsed

FastAPI exception handlers in contract_hub.main map these to HTTP responses.
"""

from typing import Optional


class ContractHubError(Exception):
    """Base class for all Contract Hub errors."""
    pass


class StorageError(ContractHubError):
    """
    Raised when a document cannot be written to the document store.

    Attributes:
        reason: Short machine-readable reason (content_type/too_large/exists/transport/timeout)
    """

    def __init__(self, message: str, reason: str = "transport"):
        super().__init__(message)
        self.reason = reason


class AnalysisError(ContractHubError):
    """
    A failed call to the external analysis service.

    The kind distinguishes why the call failed:
    - transport: network error or timeout, nothing usable came back
    - rejected: the service answered with a non-success HTTP status or success=false
    - malformed: the response body failed JSON decoding or schema validation
    """

    TRANSPORT = "transport"
    REJECTED = "rejected"
    MALFORMED = "malformed"
    KINDS = (TRANSPORT, REJECTED, MALFORMED)

    def __init__(self, kind: str, message: str, status_code: Optional[int] = None):
        if kind not in self.KINDS:
            raise ValueError(f"Unknown analysis error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "status_code": self.status_code,
        }


class PersistenceError(ContractHubError):
    """
    Raised when a datastore write fails.

    Chained from the original SQLAlchemyError so DBAPI details are preserved.
    """
    pass


class AuthError(ContractHubError):
    """
    Raised when the caller is not authenticated or not authorized.

    Attributes:
        forbidden: False when context is missing (401), True when present but not allowed (403)
    """

    def __init__(self, message: str, forbidden: bool = False):
        super().__init__(message)
        self.forbidden = forbidden


class ContractNotFoundError(ContractHubError):
    """Raised when a contract does not exist within the caller's organization."""

    def __init__(self, contract_id: str):
        super().__init__(f"Contract {contract_id} not found")
        self.contract_id = contract_id


class InvalidTransitionError(ContractHubError):
    """Raised when a status change is not allowed by the transition table."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move contract from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class ParseError(ContractHubError, ValueError):
    """Base class for locale parsing failures."""

    def __init__(self, value: str, message: Optional[str] = None):
        super().__init__(message or f"Could not parse {value!r}")
        self.value = value


class UnparseableDate(ParseError):
    pass


class UnparseableCurrency(ParseError):
    pass


class UnparseableDuration(ParseError):
    pass

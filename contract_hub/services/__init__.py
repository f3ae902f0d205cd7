"""
Services module for the contract lifecycle pipeline and its integrations.

This package contains the components that sit on top of the Lifecycle Store
(contract_hub.crud):
- document_store: Stores uploaded contract documents and returns their reference
- analysis_client: HTTP client for the external entity extraction / risk classification service
- pipeline: Orchestrates upload, concurrent analysis and persistence for one document
- expiry: Moves contracts past their end date to Expired
- views: Contract list, KPI aggregates and the contract detail bundle
- live_sync: Keeps open list/detail views fresh from datastore change notifications

Service Pattern:
- Calls to external services return a tuple of (result, error) instead of raising,
  so one failing analysis branch never hides the other
- Datastore access always goes through contract_hub.crud with an explicit RequestContext
- Module-level logging for every state change and failure
"""

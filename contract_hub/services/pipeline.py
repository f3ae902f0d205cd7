"""
Pipeline Orchestrator

Takes one uploaded contract document through storage, analysis and
persistence, and reports a structured outcome instead of raising for
partial failures.

States (per invocation, not persisted):

    uploading -> analyzing -> persisting -> done | partially_failed | failed

- uploading: the document is written to the document store. A StorageError
  ends the run as failed; nothing else happens.
- analyzing: entity extraction and risk classification run concurrently.
  Both are awaited to completion (all-settle); one failing never cancels or
  hides the other.
- persisting: each successful branch is written independently.
  Entities update the contract row (primary write) and then append a
  contract_entities row (secondary write, failure only logged).
  Risk appends the analysis audit row and the risk findings and sets the
  contract's risk level, all in one transaction. The entity history row
  carries the classified level as initial_risk when classification succeeded.
  Only the risk classifier writes successful analysis audit rows.
  Every branch that did not end up persisted is recorded as a failed
  analysis audit row (risk "Unknown", confidence 0, model "error").
- done when both branches persisted, partially_failed when exactly one did,
  failed when neither did.

Partial failures are not retried here; callers decide.

Usage Example:
    orchestrator = PipelineOrchestrator(store, documents, analysis)
    outcome = await orchestrator.run(ctx, contract_id, upload)
    if outcome.state is PipelineState.PARTIALLY_FAILED:
        print(outcome.failed_branches)
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union
import asyncio
import inspect
import logging

from contract_hub.crud import (
    ENTITY_BRANCH,
    FAILED_ANALYSIS_MODEL,
    RISK_BRANCH,
    LifecycleStore,
    RequestContext,
    require_context,
)
from contract_hub.errors import ContractHubError, ParseError, PersistenceError, StorageError
from contract_hub.parsing import DEFAULT_LOCALE, parse_currency, parse_date, parse_duration_months
from contract_hub.schemas import (
    BranchOutcomeResponse,
    ContractDetails,
    PipelineOutcomeResponse,
    StoredDocumentResponse,
)
from contract_hub.services.analysis_client import (
    AnalysisClient,
    EntityExtractionResult,
    RiskClassificationResult,
)
from contract_hub.services.document_store import DocumentStore, DocumentUpload, StoredDocument
from contract_hub.status import UNKNOWN_RISK, RiskLevel, normalize_risk_level

logger = logging.getLogger(__name__)

# key_terms mentioning any of these are kept as the contract's penalty clause summary
PENALTY_KEYWORDS = ("denda", "sanksi", "ganti rugi", "penalty", "penalti", "liquidated damages")


class PipelineState(str, Enum):
    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    PERSISTING = "persisting"
    DONE = "done"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


StateCallback = Callable[[PipelineState], Any]


@dataclass
class BranchOutcome:
    """What happened to one analysis branch."""
    branch: str
    result: Optional[Union[EntityExtractionResult, RiskClassificationResult]] = None
    error: Optional[Exception] = None
    persisted: bool = False

    def error_dict(self) -> Optional[Dict[str, Any]]:
        if self.error is None:
            return None
        if hasattr(self.error, "to_dict"):
            return self.error.to_dict()
        kind = "persistence" if isinstance(self.error, PersistenceError) else "unexpected"
        return {"kind": kind, "message": str(self.error), "status_code": None}

    def to_response(self) -> BranchOutcomeResponse:
        return BranchOutcomeResponse(
            branch=self.branch,
            persisted=self.persisted,
            model_used=self.result.model_used if self.result else None,
            processing_time=self.result.processing_time if self.result else None,
            error=self.error_dict(),
        )


@dataclass
class PipelineOutcome:
    """Final report of one pipeline run."""
    contract_id: str
    state: PipelineState
    entities: BranchOutcome
    risk: BranchOutcome
    document: Optional[StoredDocument] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[ContractHubError] = None

    @property
    def branches(self) -> Tuple[BranchOutcome, BranchOutcome]:
        return (self.entities, self.risk)

    @property
    def failed_branches(self) -> List[str]:
        return [b.branch for b in self.branches if not b.persisted]

    def to_response(self) -> PipelineOutcomeResponse:
        document = None
        if self.document is not None:
            document = StoredDocumentResponse(
                path=self.document.path,
                url=self.document.url,
                content_type=self.document.content_type,
                size=self.document.size,
            )
        return PipelineOutcomeResponse(
            contract_id=self.contract_id,
            state=self.state.value,
            document=document,
            entities=self.entities.to_response(),
            risk=self.risk.to_response(),
            warnings=list(self.warnings),
            error=str(self.error) if self.error else None,
        )


def party_name(party) -> Optional[str]:
    if party is None or not party.name:
        return None
    return party.name.strip() or None


def extract_penalty(key_terms: List[str]) -> Optional[str]:
    """Join the key terms that describe penalties, or None when there are none."""
    matches = [term.strip() for term in key_terms if any(k in term.lower() for k in PENALTY_KEYWORDS)]
    return "; ".join(matches) if matches else None


def parse_contract_details(
    details: ContractDetails,
    locale: str = DEFAULT_LOCALE,
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Turn the service's locale-formatted strings into typed contract fields.

    A field that fails to parse is left out and reported as a warning; the
    remaining fields are still returned.

    Returns:
        Tuple of (fields, warnings). fields only holds keys that have a value.
    """
    fields: Dict[str, Any] = {
        "name": (details.contract_name or "").strip() or None,
        "first_party": party_name(details.first_party),
        "second_party": party_name(details.second_party),
    }
    warnings: List[str] = []

    parsers: List[Tuple[str, Optional[str], Callable[[str, str], Union[Decimal, int, date]]]] = [
        ("value_rp", details.contract_value, parse_currency),
        ("duration_months", details.contract_duration, parse_duration_months),
        ("start_date", details.contract_start_date, parse_date),
        ("end_date", details.contract_end_date, parse_date),
    ]
    for key, raw, parser in parsers:
        if raw is None or not str(raw).strip():
            continue
        try:
            fields[key] = parser(raw, locale)
        except ParseError as e:
            logger.warning(f"Could not parse {key} from {raw!r}: {e}")
            warnings.append(f"{key}: {e}")

    return {k: v for k, v in fields.items() if v is not None}, warnings


def format_risk_type(value: str) -> str:
    """force_majeure -> Force Majeure"""
    return " ".join(word.capitalize() for word in value.replace("-", "_").split("_") if word)


class PipelineOrchestrator:
    """
    Runs the upload / analyze / persist pipeline for contract documents.

    Args:
        store: Lifecycle Store used for every datastore access
        documents: Document store backend
        analysis: Analysis service client
        locale: Locale used to parse extracted dates, values and durations
    """

    def __init__(
        self,
        store: LifecycleStore,
        documents: DocumentStore,
        analysis: AnalysisClient,
        locale: str = DEFAULT_LOCALE,
    ):
        self.store = store
        self.documents = documents
        self.analysis = analysis
        self.locale = locale
        self._background: Set["asyncio.Task[PipelineOutcome]"] = set()

    async def _set_state(
        self,
        outcome: PipelineOutcome,
        state: PipelineState,
        on_state: Optional[StateCallback],
    ) -> None:
        outcome.state = state
        logger.info(f"Pipeline for contract {outcome.contract_id}: {state.value}")
        if on_state is None:
            return
        try:
            result = on_state(state)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"State callback failed for contract {outcome.contract_id} at {state.value}")

    async def run(
        self,
        ctx: RequestContext,
        contract_id: str,
        upload: DocumentUpload,
        on_state: Optional[StateCallback] = None,
    ) -> PipelineOutcome:
        """
        Process one document for a contract.

        The contract is loaded under the caller's context first, so a missing
        context or a contract from another organization aborts the run before
        anything is stored.

        Args:
            ctx: Caller context
            contract_id: Contract the document belongs to
            upload: The document
            on_state: Optional callback (sync or async) invoked on every state change

        Returns:
            PipelineOutcome describing every branch

        Raises:
            AuthError: Missing context
            ContractNotFoundError: Contract unknown in the caller's organization
        """
        ctx = require_context(ctx)
        await self.store.get_contract(ctx, contract_id)

        outcome = PipelineOutcome(
            contract_id=contract_id,
            state=PipelineState.UPLOADING,
            entities=BranchOutcome(branch=ENTITY_BRANCH),
            risk=BranchOutcome(branch=RISK_BRANCH),
        )

        # ---- uploading ----
        await self._set_state(outcome, PipelineState.UPLOADING, on_state)
        try:
            outcome.document = await self.documents.store(contract_id, upload)
        except StorageError as e:
            logger.error(f"Upload failed for contract {contract_id} ({e.reason}): {e}")
            outcome.error = e
            await self._set_state(outcome, PipelineState.FAILED, on_state)
            return outcome

        try:
            await self.store.set_document_reference(
                ctx, contract_id, outcome.document.path, outcome.document.url
            )
        except PersistenceError as e:
            logger.warning(f"Could not save document reference for contract {contract_id}: {e}")
            outcome.warnings.append(f"document reference not saved: {e}")

        # ---- analyzing ----
        await self._set_state(outcome, PipelineState.ANALYZING, on_state)
        entity_settled, risk_settled = await asyncio.gather(
            self.analysis.extract_entities(upload),
            self.analysis.classify_risk(upload),
            return_exceptions=True,
        )
        self._settle(outcome.entities, entity_settled)
        self._settle(outcome.risk, risk_settled)

        # ---- persisting ----
        await self._set_state(outcome, PipelineState.PERSISTING, on_state)
        initial_risk = None
        if outcome.risk.result is not None:
            level = normalize_risk_level(outcome.risk.result.risk_level)
            initial_risk = level.value if level else None

        if outcome.entities.result is not None:
            try:
                await self._persist_entities(
                    ctx, contract_id, outcome.entities.result, outcome.warnings, initial_risk
                )
                outcome.entities.persisted = True
            except PersistenceError as e:
                logger.error(f"Failed to persist entities for contract {contract_id}: {e}")
                outcome.entities.error = e

        if outcome.risk.result is not None:
            try:
                await self._persist_risk(ctx, contract_id, outcome.risk.result)
                outcome.risk.persisted = True
            except PersistenceError as e:
                logger.error(f"Failed to persist risk classification for contract {contract_id}: {e}")
                outcome.risk.error = e

        for branch in outcome.branches:
            if not branch.persisted:
                await self._record_failure(ctx, contract_id, branch, outcome.warnings)

        persisted = sum(1 for branch in outcome.branches if branch.persisted)
        if persisted == 2:
            final = PipelineState.DONE
        elif persisted == 1:
            final = PipelineState.PARTIALLY_FAILED
        else:
            final = PipelineState.FAILED
        await self._set_state(outcome, final, on_state)
        return outcome

    def submit(
        self,
        ctx: RequestContext,
        contract_id: str,
        upload: DocumentUpload,
        on_state: Optional[StateCallback] = None,
    ) -> "asyncio.Task[PipelineOutcome]":
        """
        Schedule run() in the background and return its task.

        The orchestrator holds a reference to the task until it finishes, so
        callers may drop it.
        """
        task = asyncio.create_task(self.run(ctx, contract_id, upload, on_state))
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: "asyncio.Task[PipelineOutcome]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background pipeline run failed: {type(error).__name__}: {error}")

    @property
    def pending(self) -> int:
        """Number of background runs still in flight."""
        return len(self._background)

    async def wait_pending(self) -> None:
        """Wait for every background run to finish (used on shutdown)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @staticmethod
    def _settle(branch: BranchOutcome, settled) -> None:
        if isinstance(settled, BaseException):
            if not isinstance(settled, Exception):
                raise settled
            logger.exception(f"Analysis branch {branch.branch} raised unexpectedly", exc_info=settled)
            branch.error = settled
            return
        result, error = settled
        branch.result = result
        branch.error = error

    async def _persist_entities(
        self,
        ctx: RequestContext,
        contract_id: str,
        result: EntityExtractionResult,
        warnings: List[str],
        initial_risk: Optional[str] = None,
    ) -> None:
        details = result.response.contract_details
        fields, parse_warnings = parse_contract_details(details, self.locale)
        warnings.extend(parse_warnings)

        # Primary write: failure fails the branch
        await self.store.update_contract_details(ctx, contract_id, **fields)

        # Secondary write: the contract already holds the extracted values
        try:
            await self.store.add_contract_entities(
                ctx,
                contract_id,
                contract_name=fields.get("name"),
                first_party=fields.get("first_party"),
                second_party=fields.get("second_party"),
                value_rp=fields.get("value_rp"),
                duration_months=fields.get("duration_months"),
                start_date=fields.get("start_date"),
                end_date=fields.get("end_date"),
                penalty=extract_penalty(details.key_terms),
                initial_risk=initial_risk,
            )
        except PersistenceError as e:
            logger.warning(f"Entity details not saved for contract {contract_id} (contract updated): {e}")
            warnings.append(f"entity history not saved: {e}")

    async def _persist_risk(
        self,
        ctx: RequestContext,
        contract_id: str,
        result: RiskClassificationResult,
    ) -> None:
        response = result.response
        level = normalize_risk_level(response.risk_level)
        if level is None:
            logger.warning(f"Unrecognised risk level {response.risk_level!r} for contract {contract_id}")

        findings = [
            {
                "section": format_risk_type(factor.type),
                "level": (normalize_risk_level(factor.severity) or RiskLevel.LOW).value,
                "title": factor.description or format_risk_type(factor.type),
            }
            for factor in response.risk_factors
        ]
        await self.store.record_risk_classification(
            ctx,
            contract_id,
            analysis_result=result.raw,
            risk_level=level.value if level else response.risk_level,
            confidence=response.confidence,
            model_used=response.model_used,
            processing_time=response.processing_time,
            findings=findings,
            contract_risk=level.value if level else None,
        )

    async def _record_failure(
        self,
        ctx: RequestContext,
        contract_id: str,
        branch: BranchOutcome,
        warnings: List[str],
    ) -> None:
        """Append a failed-invocation audit row; a failure here is only logged."""
        try:
            await self.store.add_analysis_result(
                ctx,
                contract_id,
                branch=branch.branch,
                analysis_result={"branch": branch.branch, "error": branch.error_dict()},
                risk_level=UNKNOWN_RISK,
                confidence=0.0,
                model_used=FAILED_ANALYSIS_MODEL,
                processing_time=None,
            )
        except PersistenceError as e:
            logger.error(f"Could not record failed {branch.branch} for contract {contract_id}: {e}")
            warnings.append(f"failure audit for {branch.branch} not saved: {e}")

"""
Lifecycle Store: persistence and queries for contracts and everything they own.

Every public method takes an explicit RequestContext and scopes its queries
to context.organization_id; a call without a usable context raises AuthError
before touching the database. Contracts outside the caller's organization
behave exactly like contracts that do not exist.

Writes commit in their own session and then publish ChangeEvents on the
store's ChangeBus, which is what the Live View Synchronizer subscribes to.

Error handling notes:
- SQLAlchemy errors during writes are rolled back and re-raised as
  PersistenceError, chained from the original exception
- ContractNotFoundError, InvalidTransitionError and AuthError are raised
  before any change is made
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy import exists, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contract_hub.errors import (
    AuthError,
    ContractNotFoundError,
    InvalidTransitionError,
    PersistenceError,
)
from contract_hub.models import (
    AIRiskAnalysis,
    Company,
    CompanyUser,
    Contract,
    ContractEntity,
    ContractLifecycle,
    ContractPerformance,
    LegalNote,
    RiskFinding,
    as_utc,
    utcnow,
)
from contract_hub.notifications import (
    INSERT,
    UPDATE,
    ChangeBus,
    ChangeEvent,
    ChangeHandler,
    Subscription,
    TableScope,
)
from contract_hub.status import (
    EXPIRABLE_STATUSES,
    ContractStatus,
    Role,
    can_transition,
    role_may_request,
)

logger = logging.getLogger(__name__)

# Analysis audit branches
RISK_BRANCH = "risk_classification"
ENTITY_BRANCH = "entity_extraction"

# model_used recorded for analysis invocations that failed
FAILED_ANALYSIS_MODEL = "error"

# Contract columns the extraction pipeline may overwrite
CONTRACT_DETAIL_FIELDS = (
    "name",
    "first_party",
    "second_party",
    "value_rp",
    "duration_months",
    "start_date",
    "end_date",
)


# ============================================================================
# Request Context
# ============================================================================


@dataclass(frozen=True)
class RequestContext:
    """
    Who is calling and on behalf of which organization.

    Built by LifecycleStore.authorize() from a verified membership, or
    directly by trusted callers (background jobs, tests).
    """
    organization_id: str
    user_id: str
    role: Optional[Role] = None
    email: Optional[str] = None


def require_context(ctx: Optional[RequestContext]) -> RequestContext:
    """Fail closed: reject calls without an organization and user."""
    if ctx is None or not ctx.organization_id or not ctx.user_id:
        raise AuthError("Request context with organization and user is required")
    return ctx


class DuplicateMemberError(ValueError):
    """
    Raised when a user is added twice to the same company.

    Chained from the original IntegrityError to preserve DBAPI details.
    """
    pass


class LifecycleStore:
    """
    Async data access for the contract lifecycle tables.

    Args:
        session_factory: async_sessionmaker from contract_hub.database
        bus: ChangeBus to publish committed changes on (a private one is created if omitted)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], bus: Optional[ChangeBus] = None):
        self._session_factory = session_factory
        self.bus = bus or ChangeBus()

    # ------------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------------

    @asynccontextmanager
    async def _write(self, description: str) -> AsyncIterator[Tuple[AsyncSession, List[ChangeEvent]]]:
        """
        Run a unit of work and publish its events once it has committed.

        Yields the session and a list the caller appends ChangeEvents to.
        """
        events: List[ChangeEvent] = []
        async with self._session_factory() as session:
            try:
                yield session, events
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to {description}: {type(e).__name__}: {e}")
                raise PersistenceError(f"Failed to {description}") from e
        if events:
            self.bus.publish(events)

    async def _scoped_contract(self, session: AsyncSession, ctx: RequestContext, contract_id: str) -> Contract:
        contract = (
            await session.execute(
                select(Contract).where(
                    Contract.id == contract_id,
                    Contract.organization_id == ctx.organization_id,
                )
            )
        ).scalar_one_or_none()
        if contract is None:
            raise ContractNotFoundError(contract_id)
        return contract

    @staticmethod
    def _event(table: str, action: str, ctx: RequestContext, contract_id: Optional[str], row_id: Any) -> ChangeEvent:
        return ChangeEvent(
            table=table,
            action=action,
            organization_id=ctx.organization_id,
            contract_id=contract_id,
            row_id=str(row_id) if row_id is not None else None,
        )

    # ------------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------------

    def subscribe(
        self,
        ctx: RequestContext,
        table: str,
        handler: ChangeHandler,
        contract_id: Optional[str] = None,
    ) -> Subscription:
        """
        Receive change notifications for a table within the caller's organization.

        Args:
            ctx: Caller context (the scope is always limited to its organization)
            table: Table name, e.g. "contracts" or "legal_notes"
            handler: Called with each matching ChangeEvent
            contract_id: Narrow the scope to one contract

        Returns:
            Subscription: call cancel() to release it
        """
        ctx = require_context(ctx)
        scope = TableScope(table=table, organization_id=ctx.organization_id, contract_id=contract_id)
        return self.bus.subscribe(scope, handler)

    # ========================================================================
    # Companies and membership
    # ========================================================================

    async def create_company(self, name: str) -> Company:
        """Register a new organization."""
        async with self._session_factory() as session:
            company = Company(name=name)
            session.add(company)
            try:
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError("Failed to create company") from e
        logger.info(f"Created company {company.id}")
        return company

    async def add_company_user(
        self,
        company_id: str,
        user_id: str,
        role: Role,
        email: Optional[str] = None,
    ) -> CompanyUser:
        """
        Add a user to a company with a role.

        Raises:
            DuplicateMemberError: If the user already belongs to the company
            PersistenceError: On other database failures
        """
        member = CompanyUser(company_id=company_id, user_id=user_id, role=Role(role).value, email=email)
        async with self._session_factory() as session:
            session.add(member)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if "uq_company_users_company_user" in str(e) or "UNIQUE" in str(e).upper():
                    raise DuplicateMemberError(
                        f"User '{user_id}' is already a member of company {company_id}"
                    ) from e
                raise PersistenceError("Failed to add company member") from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError("Failed to add company member") from e
        return member

    async def count_company_users(self, company_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CompanyUser.id).where(CompanyUser.company_id == company_id)
            )
            return len(result.scalars().all())

    async def get_company(self, company_id: str) -> Optional[Company]:
        async with self._session_factory() as session:
            return await session.get(Company, company_id)

    async def authorize(self, organization_id: Optional[str], user_id: Optional[str]) -> RequestContext:
        """
        Build a RequestContext from a verified membership.

        Raises:
            AuthError: Missing identifiers (forbidden=False) or no membership (forbidden=True)
        """
        if not organization_id or not user_id:
            raise AuthError("Organization and user identifiers are required")

        async with self._session_factory() as session:
            member = (
                await session.execute(
                    select(CompanyUser).where(
                        CompanyUser.company_id == organization_id,
                        CompanyUser.user_id == user_id,
                    )
                )
            ).scalar_one_or_none()

        if member is None:
            logger.warning(f"User {user_id} is not a member of organization {organization_id}")
            raise AuthError("User is not a member of this organization", forbidden=True)

        return RequestContext(
            organization_id=organization_id,
            user_id=user_id,
            role=Role(member.role),
            email=member.email,
        )

    # ========================================================================
    # Contract operations
    # ========================================================================

    async def create_contract(
        self,
        ctx: RequestContext,
        name: str,
        first_party: Optional[str] = None,
        second_party: Optional[str] = None,
        value_rp: Optional[Decimal] = None,
        duration_months: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        status: ContractStatus = ContractStatus.DRAFT,
    ) -> Contract:
        """
        Create a contract in the caller's organization.

        New contracts have no risk level and open their first lifecycle
        stage, named after the initial status.
        """
        ctx = require_context(ctx)
        async with self._write("create contract") as (session, events):
            contract = Contract(
                name=name,
                first_party=first_party,
                second_party=second_party,
                value_rp=value_rp,
                duration_months=duration_months,
                start_date=start_date,
                end_date=end_date,
                status=ContractStatus(status).value,
                risk=None,
                organization_id=ctx.organization_id,
                created_by=ctx.user_id,
            )
            session.add(contract)
            await session.flush()
            stage = await self._start_stage(session, contract.id, contract.status, None, ctx.user_id)
            events.append(self._event("contracts", INSERT, ctx, contract.id, contract.id))
            events.append(self._event("contract_lifecycle", INSERT, ctx, contract.id, stage.id))

        logger.info(f"Created contract {contract.id} in organization {ctx.organization_id}")
        return contract

    async def get_contract(self, ctx: RequestContext, contract_id: str) -> Contract:
        """
        Retrieve a contract by id within the caller's organization.

        Raises:
            ContractNotFoundError: If the contract does not exist in this organization
        """
        ctx = require_context(ctx)
        async with self._session_factory() as session:
            return await self._scoped_contract(session, ctx, contract_id)

    async def list_contracts(
        self,
        ctx: RequestContext,
        status: Optional[str] = None,
        risk: Optional[str] = None,
        search: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Contract]:
        """
        List the organization's contracts, newest first.

        Args:
            status / risk: Exact filters ("All" or None disables the filter)
            search: Case-insensitive match on name and both parties
            created_from / created_to: Inclusive creation-time bounds
            limit / offset: Pagination
        """
        ctx = require_context(ctx)
        query = select(Contract).where(Contract.organization_id == ctx.organization_id)

        if status and status != "All":
            query = query.where(Contract.status == status)
        if risk and risk != "All":
            query = query.where(Contract.risk == risk)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(
                    Contract.name.ilike(pattern),
                    Contract.first_party.ilike(pattern),
                    Contract.second_party.ilike(pattern),
                )
            )
        if created_from is not None:
            query = query.where(Contract.created_at >= created_from)
        if created_to is not None:
            query = query.where(Contract.created_at <= created_to)

        query = query.order_by(Contract.created_at.desc(), Contract.id).offset(offset)
        if limit is not None:
            query = query.limit(limit)

        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def transition_status(
        self,
        ctx: RequestContext,
        contract_id: str,
        requested: ContractStatus,
        notes: Optional[str] = None,
    ) -> Contract:
        """
        Move a contract to a new status on behalf of a user.

        The transition must be in the status table and the caller's role must
        be allowed to request the target status. The contract's current
        lifecycle stage is closed and a stage named after the new status opens.

        Raises:
            AuthError: The caller's role may not request this status
            InvalidTransitionError: The status table does not allow the move
        """
        ctx = require_context(ctx)
        requested = ContractStatus(requested)
        if not role_may_request(ctx.role, requested):
            raise AuthError(
                f"Role '{ctx.role.value if ctx.role else None}' may not move contracts to '{requested.value}'",
                forbidden=True,
            )

        async with self._write("update contract status") as (session, events):
            contract = await self._scoped_contract(session, ctx, contract_id)
            current = ContractStatus(contract.status)
            if not can_transition(current, requested):
                raise InvalidTransitionError(current.value, requested.value)

            contract.status = requested.value
            stage = await self._start_stage(session, contract.id, requested.value, notes, ctx.user_id)
            events.append(self._event("contracts", UPDATE, ctx, contract.id, contract.id))
            events.append(self._event("contract_lifecycle", INSERT, ctx, contract.id, stage.id))

        logger.info(f"Contract {contract_id} moved from {current.value} to {requested.value}")
        return contract

    async def update_contract_details(self, ctx: RequestContext, contract_id: str, **fields: Any) -> Contract:
        """
        Overwrite descriptive contract columns (name, parties, value, duration, dates).

        Fields whose value is None are left untouched.

        Raises:
            ValueError: If a field outside CONTRACT_DETAIL_FIELDS is passed
        """
        ctx = require_context(ctx)
        unknown = set(fields) - set(CONTRACT_DETAIL_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update contract fields: {sorted(unknown)}")

        async with self._write("update contract details") as (session, events):
            contract = await self._scoped_contract(session, ctx, contract_id)
            for key, value in fields.items():
                if value is not None:
                    setattr(contract, key, value)
            events.append(self._event("contracts", UPDATE, ctx, contract.id, contract.id))
        return contract

    async def set_document_reference(self, ctx: RequestContext, contract_id: str, file_path: str, file_url: str) -> Contract:
        """Point the contract at its most recently stored document."""
        ctx = require_context(ctx)
        async with self._write("update contract document reference") as (session, events):
            contract = await self._scoped_contract(session, ctx, contract_id)
            contract.file_path = file_path
            contract.file_url = file_url
            events.append(self._event("contracts", UPDATE, ctx, contract.id, contract.id))
        return contract

    async def expire_contracts(
        self,
        ctx: RequestContext,
        contract_ids: Optional[Iterable[str]],
        today: date,
    ) -> List[str]:
        """
        Batch-move contracts whose end date has passed to Expired.

        The update is conditional: only rows that are still Active/Approved,
        belong to the caller's organization and have end_date < today change,
        so a contract that moved on since it was read is left alone.

        Args:
            contract_ids: Restrict the update to these contracts; None considers
                every contract of the organization

        Returns:
            Ids of the contracts that were actually expired
        """
        ctx = require_context(ctx)
        query = select(Contract).where(
            Contract.organization_id == ctx.organization_id,
            Contract.status.in_([s.value for s in EXPIRABLE_STATUSES]),
            Contract.end_date.is_not(None),
            Contract.end_date < today,
        )
        if contract_ids is not None:
            ids = list(dict.fromkeys(contract_ids))
            if not ids:
                return []
            query = query.where(Contract.id.in_(ids))

        async with self._write("expire contracts") as (session, events):
            contracts = (await session.execute(query)).scalars().all()

            for contract in contracts:
                contract.status = ContractStatus.EXPIRED.value
                stage = await self._start_stage(
                    session, contract.id, ContractStatus.EXPIRED.value, "End date passed", None
                )
                events.append(self._event("contracts", UPDATE, ctx, contract.id, contract.id))
                events.append(self._event("contract_lifecycle", INSERT, ctx, contract.id, stage.id))

        return [contract.id for contract in contracts]

    # ========================================================================
    # Contract entities
    # ========================================================================

    async def add_contract_entities(
        self,
        ctx: RequestContext,
        contract_id: str,
        contract_name: Optional[str] = None,
        first_party: Optional[str] = None,
        second_party: Optional[str] = None,
        value_rp: Optional[Decimal] = None,
        duration_months: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        penalty: Optional[str] = None,
        initial_risk: Optional[str] = None,
    ) -> ContractEntity:
        """Append one extraction pass; earlier passes are kept as history."""
        ctx = require_context(ctx)
        async with self._write("save contract entities") as (session, events):
            await self._scoped_contract(session, ctx, contract_id)
            entity = ContractEntity(
                contract_id=contract_id,
                contract_name=contract_name,
                first_party=first_party,
                second_party=second_party,
                value_rp=value_rp,
                duration_months=duration_months,
                start_date=start_date,
                end_date=end_date,
                penalty=penalty,
                initial_risk=initial_risk,
                analyzed_at=utcnow(),
            )
            session.add(entity)
            await session.flush()
            events.append(self._event("contract_entities", INSERT, ctx, contract_id, entity.id))
        return entity

    async def latest_contract_entities(self, ctx: RequestContext, contract_id: str) -> Optional[ContractEntity]:
        """Most recent extraction pass for the contract, or None if none completed."""
        ctx = require_context(ctx)
        async with self._session_factory() as session:
            await self._scoped_contract(session, ctx, contract_id)
            return (
                await session.execute(
                    select(ContractEntity)
                    .where(ContractEntity.contract_id == contract_id)
                    .order_by(ContractEntity.analyzed_at.desc(), ContractEntity.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()

    async def list_contract_entities(self, ctx: RequestContext, contract_id: str) -> List[ContractEntity]:
        """All extraction passes for the contract, most recent first."""
        ctx = require_context(ctx)
        async with self._session_factory() as session:
            await self._scoped_contract(session, ctx, contract_id)
            result = await session.execute(
                select(ContractEntity)
                .where(ContractEntity.contract_id == contract_id)
                .order_by(ContractEntity.analyzed_at.desc(), ContractEntity.id.desc())
            )
            return list(result.scalars().all())

    async def count_contracts_without_entities(self, ctx: RequestContext) -> int:
        """Number of the organization's contracts that were never analyzed."""
        ctx = require_context(ctx)
        has_entities = exists().where(ContractEntity.contract_id == Contract.id)
        async with self._session_factory() as session:
            result = await session.execute(
                select(Contract.id).where(
                    Contract.organization_id == ctx.organization_id,
                    ~has_entities,
                )
            )
            return len(result.scalars().all())

    # ========================================================================
    # Risk findings
    # ========================================================================

    async def list_risk_findings(self, ctx: RequestContext, contract_id: str) -> List[RiskFinding]:
        """Risk findings for a contract, newest first."""
        ctx = require_context(ctx)
        async with self._session_factory() as session:
            await self._scoped_contract(session, ctx, contract_id)
            result = await session.execute(
                select(RiskFinding)
                .where(RiskFinding.contract_id == contract_id)
                .order_by(RiskFinding.created_at.desc(), RiskFinding.id.desc())
            )
            return list(result.scalars().all())

    # ========================================================================
    # Legal notes
    # ========================================================================

    async def add_legal_note(
        self,
        ctx: RequestContext,
        contract_id: str,
        note: str,
        author: Optional[str] = None,
    ) -> LegalNote:
        """
        Append a legal note.

        The author defaults to the caller's email, then to their user id.

        Raises:
            ValueError: If note is empty or whitespace only
        """
        ctx = require_context(ctx)
        if not note or not note.strip():
            raise ValueError("note is required and cannot be empty")

        async with self._write("add legal note") as (session, events):
            await self._scoped_contract(session, ctx, contract_id)
            row = LegalNote(
                contract_id=contract_id,
                note=note.strip(),
                author=author or ctx.email or ctx.user_id,
            )
            session.add(row)
            await session.flush()
            events.append(self._event("legal_notes", INSERT, ctx, contract_id, row.id))
        return row

    async def list_legal_notes(self, ctx: RequestContext, contract_id: str) -> List[LegalNote]:
        """Legal notes for a contract, newest first."""
        ctx = require_context(ctx)
        async with self._session_factory() as session:
            await self._scoped_contract(session, ctx, contract_id)
            result = await session.execute(
                select(LegalNote)
                .where(LegalNote.contract_id == contract_id)
                .order_by(LegalNote.created_at.desc(), LegalNote.id.desc())
            )
            return list(result.scalars().all())

    # ========================================================================
    # Lifecycle stages
    # ========================================================================

    async def _start_stage(
        self,
        session: AsyncSession,
        contract_id: str,
        stage: str,
        notes: Optional[str],
        created_by: Optional[str],
    ) -> ContractLifecycle:
        """Close the contract's open stage (if any) and open a new one."""
        now = utcnow()
        open_stages = (
            await session.execute(
                select(ContractLifecycle).where(
                    ContractLifecycle.contract_id == contract_id,
                    ContractLifecycle.completed_at.is_(None),
                )
            )
        ).scalars().all()
        for previous in open_stages:
            previous.completed_at = now
            previous.duration_days = (now - as_utc(previous.started_at)).days

        row = ContractLifecycle(
            contract_id=contract_id,
            stage=stage,
            started_at=now,
            notes=notes,
            created_by=created_by,
        )
        session.add(row)
        await session.flush()
        return row

    async def start_lifecycle_stage(
        self,
        ctx: RequestContext,
        contract_id: str,
        stage: str,
        notes: Optional[str] = None,
    ) -> ContractLifecycle:
        """
        Record that a contract entered a named stage.

        The currently open stage is completed first, so at most one stage per
        contract has no completed_at.
        """
        ctx = require_context(ctx)
        if not stage or not stage.strip():
            raise ValueError("stage is required and cannot be empty")

        async with self._write("start lifecycle stage") as (session, events):
            await self._scoped_contract(session, ctx, contract_id)
            row = await self._start_stage(session, contract_id, stage.strip(), notes, ctx.user_id)
            events.append(self._event("contract_lifecycle", INSERT, ctx, contract_id, row.id))
        return row

    async def list_lifecycle_stages(self, ctx: RequestContext, contract_id: str) -> List[ContractLifecycle]:
        """Lifecycle stages in the order they started."""
        ctx = require_context(ctx)
        async with self._session_factory() as session:
            await self._scoped_contract(session, ctx, contract_id)
            result = await session.execute(
                select(ContractLifecycle)
                .where(ContractLifecycle.contract_id == contract_id)
                .order_by(ContractLifecycle.started_at, ContractLifecycle.id)
            )
            return list(result.scalars().all())

    # ========================================================================
    # Performance metrics
    # ========================================================================

    async def record_performance_metric(
        self,
        ctx: RequestContext,
        contract_id: str,
        metric_type: str,
        value: float,
        division_average: Optional[float] = None,
    ) -> ContractPerformance:
        ctx = require_context(ctx)
        async with self._write("record performance metric") as (session, events):
            await self._scoped_contract(session, ctx, contract_id)
            row = ContractPerformance(
                contract_id=contract_id,
                metric_type=metric_type,
                value=value,
                division_average=division_average,
            )
            session.add(row)
            await session.flush()
            events.append(self._event("contract_performance", INSERT, ctx, contract_id, row.id))
        return row

    async def list_performance_metrics(self, ctx: RequestContext, contract_id: str) -> List[ContractPerformance]:
        ctx = require_context(ctx)
        async with self._session_factory() as session:
            await self._scoped_contract(session, ctx, contract_id)
            result = await session.execute(
                select(ContractPerformance)
                .where(ContractPerformance.contract_id == contract_id)
                .order_by(ContractPerformance.measured_at.desc(), ContractPerformance.id.desc())
            )
            return list(result.scalars().all())

    # ========================================================================
    # Analysis audit trail
    # ========================================================================

    async def add_analysis_result(
        self,
        ctx: RequestContext,
        contract_id: str,
        branch: str,
        analysis_result: Dict[str, Any],
        risk_level: str,
        confidence: float,
        model_used: str,
        processing_time: Optional[float] = None,
    ) -> AIRiskAnalysis:
        """Append one analysis invocation (successful or failed) to the audit trail."""
        ctx = require_context(ctx)
        async with self._write("save analysis result") as (session, events):
            await self._scoped_contract(session, ctx, contract_id)
            row = AIRiskAnalysis(
                contract_id=contract_id,
                branch=branch,
                analysis_result=analysis_result,
                risk_level=risk_level,
                confidence=confidence,
                model_used=model_used,
                processing_time=processing_time,
                analyzed_at=utcnow(),
            )
            session.add(row)
            await session.flush()
            events.append(self._event("ai_risk_analysis", INSERT, ctx, contract_id, row.id))
        return row

    async def record_risk_classification(
        self,
        ctx: RequestContext,
        contract_id: str,
        analysis_result: Dict[str, Any],
        risk_level: str,
        confidence: float,
        model_used: str,
        processing_time: Optional[float],
        findings: List[Dict[str, Any]],
        contract_risk: Optional[str],
    ) -> AIRiskAnalysis:
        """
        Save one successful risk classification in a single transaction.

        The audit row, the findings and the contract's risk level are written
        together; if any of them fails nothing is kept.

        Args:
            findings: Dicts with keys section (optional), level, title
            contract_risk: Level to set on the contract, None leaves it unchanged
        """
        ctx = require_context(ctx)
        async with self._write("save risk classification") as (session, events):
            contract = await self._scoped_contract(session, ctx, contract_id)
            row = AIRiskAnalysis(
                contract_id=contract_id,
                branch=RISK_BRANCH,
                analysis_result=analysis_result,
                risk_level=risk_level,
                confidence=confidence,
                model_used=model_used,
                processing_time=processing_time,
                analyzed_at=utcnow(),
            )
            session.add(row)
            finding_rows = [
                RiskFinding(
                    contract_id=contract_id,
                    section=finding.get("section"),
                    level=finding["level"],
                    title=finding["title"],
                )
                for finding in findings
            ]
            session.add_all(finding_rows)
            if contract_risk is not None:
                contract.risk = contract_risk
            await session.flush()

            events.append(self._event("ai_risk_analysis", INSERT, ctx, contract_id, row.id))
            events.extend(self._event("risk_findings", INSERT, ctx, contract_id, f.id) for f in finding_rows)
            if contract_risk is not None:
                events.append(self._event("contracts", UPDATE, ctx, contract_id, contract_id))

        logger.info(f"Saved risk classification for contract {contract_id}: {risk_level} ({len(finding_rows)} findings)")
        return row

    async def latest_analysis_result(
        self,
        ctx: RequestContext,
        contract_id: str,
        branch: str = RISK_BRANCH,
        successful_only: bool = False,
    ) -> Optional[AIRiskAnalysis]:
        """
        Most recent audit row for the branch, or None.

        Args:
            successful_only: Skip rows recorded for failed invocations
        """
        ctx = require_context(ctx)
        query = select(AIRiskAnalysis).where(
            AIRiskAnalysis.contract_id == contract_id,
            AIRiskAnalysis.branch == branch,
        )
        if successful_only:
            query = query.where(AIRiskAnalysis.model_used != FAILED_ANALYSIS_MODEL)

        async with self._session_factory() as session:
            await self._scoped_contract(session, ctx, contract_id)
            return (
                await session.execute(
                    query.order_by(AIRiskAnalysis.analyzed_at.desc(), AIRiskAnalysis.id.desc()).limit(1)
                )
            ).scalar_one_or_none()

    async def list_analysis_results(self, ctx: RequestContext, contract_id: str) -> List[AIRiskAnalysis]:
        """Every audit row for the contract, newest first."""
        ctx = require_context(ctx)
        async with self._session_factory() as session:
            await self._scoped_contract(session, ctx, contract_id)
            result = await session.execute(
                select(AIRiskAnalysis)
                .where(AIRiskAnalysis.contract_id == contract_id)
                .order_by(AIRiskAnalysis.analyzed_at.desc(), AIRiskAnalysis.id.desc())
            )
            return list(result.scalars().all())

"""
Derived views over the Lifecycle Store.

These are the read models behind the dashboard pages:
- Contract list: filtered, newest first, with expiry reconciliation applied
- Legal KPI: contracts created this week, high-risk count, contracts pending analysis
- Management KPI: status totals, expiring windows, value aggregates, risk distribution
- Contract detail: the contract plus everything attached to it, with the
  display fields resolved from the latest extraction pass

Every view is rebuilt from scratch on each call, which is what makes the
Live View Synchronizer's refetch-on-notify safe to repeat.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional
import logging

from contract_hub.crud import RISK_BRANCH, LifecycleStore, RequestContext
from contract_hub.models import Contract, ContractEntity
from contract_hub.schemas import (
    AnalysisResultResponse,
    ContractDetailResponse,
    ContractEntityResponse,
    ContractListResponse,
    ContractResponse,
    DisplayFields,
    LegalKPIResponse,
    LegalNoteResponse,
    LifecycleStageResponse,
    ManagementKPIResponse,
    PerformanceResponse,
    RiskDistributionItem,
    RiskFindingResponse,
)
from contract_hub.services.expiry import ExpiryReconciler
from contract_hub.status import ContractStatus, RiskLevel

logger = logging.getLogger(__name__)

EXPIRING_WINDOWS_DAYS = (30, 60, 90)
CENTS = Decimal("0.01")

# (display field, entities attribute); the contract attribute has the display name
DISPLAY_FIELD_SOURCES = (
    ("name", "contract_name"),
    ("first_party", "first_party"),
    ("second_party", "second_party"),
    ("value_rp", "value_rp"),
    ("duration_months", "duration_months"),
    ("start_date", "start_date"),
    ("end_date", "end_date"),
)


def resolve_display_fields(contract: Contract, entities: Optional[ContractEntity]) -> DisplayFields:
    """
    Pick the value shown for each contract field.

    The latest extraction pass wins for every field it carries; the contract
    row fills the rest, and is the only source when no extraction completed.
    """
    values = {}
    for display_name, entity_attr in DISPLAY_FIELD_SOURCES:
        value = getattr(entities, entity_attr) if entities is not None else None
        if value is None:
            value = getattr(contract, display_name)
        values[display_name] = value
    return DisplayFields(source="entities" if entities is not None else "contract", **values)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _percentage(count: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round(count * 100.0 / total, 2)


class ContractViews:
    """
    Builds the dashboard read models.

    Args:
        store: Lifecycle Store
        reconciler: Expiry reconciler run by the contract list
    """

    def __init__(self, store: LifecycleStore, reconciler: Optional[ExpiryReconciler] = None):
        self.store = store
        self.reconciler = reconciler or ExpiryReconciler(store)

    async def contract_list(
        self,
        ctx: RequestContext,
        status: Optional[str] = None,
        risk: Optional[str] = None,
        search: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> ContractListResponse:
        """
        Expire anything past its end date, then fetch the contract list.

        Reconciliation covers the whole organization rather than the page
        being read, so a filter on Expired or a small limit still sees every
        overdue contract moved before the query runs.
        """
        expired = await self.reconciler.reconcile(ctx, now=now)
        contracts = await self.store.list_contracts(
            ctx,
            status=status,
            risk=risk,
            search=search,
            created_from=created_from,
            created_to=created_to,
            limit=limit,
            offset=offset,
        )

        return ContractListResponse(
            contracts=[ContractResponse.model_validate(c) for c in contracts],
            total=len(contracts),
            expired_now=expired,
        )

    async def legal_kpi(self, ctx: RequestContext, now: Optional[datetime] = None) -> LegalKPIResponse:
        now = now or _utcnow()
        this_week = await self.store.list_contracts(ctx, created_from=now - timedelta(days=7))
        high_risk = await self.store.list_contracts(ctx, risk=RiskLevel.HIGH.value)
        pending = await self.store.count_contracts_without_entities(ctx)
        return LegalKPIResponse(
            contracts_this_week=len(this_week),
            high_risk=len(high_risk),
            pending_analysis=pending,
        )

    async def management_kpi(self, ctx: RequestContext, now: Optional[datetime] = None) -> ManagementKPIResponse:
        """
        Portfolio aggregates over every contract of the organization.

        Expiring windows count contracts whose end date is after today and
        within N days. Risk percentages are relative to the contracts that
        have a risk level.
        """
        today: date = (now or _utcnow()).date()
        contracts = await self.store.list_contracts(ctx)

        by_status: Dict[str, int] = {status.value: 0 for status in ContractStatus}
        for contract in contracts:
            by_status[contract.status] = by_status.get(contract.status, 0) + 1

        expiring = {}
        for days in EXPIRING_WINDOWS_DAYS:
            horizon = today + timedelta(days=days)
            expiring[days] = sum(
                1 for c in contracts if c.end_date is not None and today < c.end_date <= horizon
            )

        total_value = sum((c.value_rp or Decimal(0) for c in contracts), Decimal(0))
        active = [c for c in contracts if c.status == ContractStatus.ACTIVE.value]
        if active:
            average_active = sum((c.value_rp or Decimal(0) for c in active), Decimal(0)) / len(active)
        else:
            average_active = Decimal(0)

        risk_counts = {
            level: sum(1 for c in contracts if c.risk == level.value)
            for level in RiskLevel
        }
        assessed = sum(risk_counts.values())

        return ManagementKPIResponse(
            total_contracts=len(contracts),
            by_status=by_status,
            high_risk=risk_counts[RiskLevel.HIGH],
            expiring_30_days=expiring[30],
            expiring_60_days=expiring[60],
            expiring_90_days=expiring[90],
            total_value=Decimal(total_value).quantize(CENTS, rounding=ROUND_HALF_UP),
            average_active_value=Decimal(average_active).quantize(CENTS, rounding=ROUND_HALF_UP),
            risk_distribution=[
                RiskDistributionItem(
                    level=level.value,
                    count=count,
                    percentage=_percentage(count, assessed),
                )
                for level, count in risk_counts.items()
            ],
        )

    async def contract_detail(self, ctx: RequestContext, contract_id: str) -> ContractDetailResponse:
        """
        Everything the detail page shows for one contract.

        Raises:
            ContractNotFoundError: If the contract is not in the caller's organization
        """
        contract = await self.store.get_contract(ctx, contract_id)
        entities = await self.store.latest_contract_entities(ctx, contract_id)
        findings = await self.store.list_risk_findings(ctx, contract_id)
        notes = await self.store.list_legal_notes(ctx, contract_id)
        lifecycle = await self.store.list_lifecycle_stages(ctx, contract_id)
        performance = await self.store.list_performance_metrics(ctx, contract_id)
        analysis = await self.store.latest_analysis_result(
            ctx, contract_id, branch=RISK_BRANCH, successful_only=True
        )

        return ContractDetailResponse(
            contract=ContractResponse.model_validate(contract),
            display=resolve_display_fields(contract, entities),
            entities=ContractEntityResponse.model_validate(entities) if entities else None,
            risk_findings=[RiskFindingResponse.model_validate(f) for f in findings],
            legal_notes=[LegalNoteResponse.model_validate(n) for n in notes],
            lifecycle=[LifecycleStageResponse.model_validate(s) for s in lifecycle],
            performance=[PerformanceResponse.model_validate(p) for p in performance],
            risk_analysis=AnalysisResultResponse.model_validate(analysis) if analysis else None,
        )

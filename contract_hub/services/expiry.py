"""
Expiry Reconciler

Moves contracts whose end date has passed from Active/Approved to Expired.

Reconciliation is housekeeping: it runs every time the contract list is
fetched, only needs to be eventually consistent, and never surfaces its
failures to the caller. The update itself is conditional on the current
status, so running it twice (or concurrently with a status change) has no
further effect.
"""

from datetime import date, datetime, timezone
from typing import Iterable, List, Optional
import logging

from contract_hub.crud import LifecycleStore, RequestContext, require_context
from contract_hub.errors import PersistenceError
from contract_hub.models import Contract
from contract_hub.status import EXPIRABLE_STATUSES, ContractStatus

logger = logging.getLogger(__name__)

_EXPIRABLE_VALUES = frozenset(status.value for status in EXPIRABLE_STATUSES)


def is_past_end_date(contract: Contract, today: date) -> bool:
    """True when the contract is Active/Approved and its end date is before today."""
    return (
        contract.status in _EXPIRABLE_VALUES
        and contract.end_date is not None
        and contract.end_date < today
    )


class ExpiryReconciler:
    """
    Args:
        store: Lifecycle Store that performs the conditional batch update
    """

    def __init__(self, store: LifecycleStore):
        self.store = store

    async def reconcile(
        self,
        ctx: RequestContext,
        contracts: Optional[Iterable[Contract]] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Expire contracts that are past their end date.

        Only contracts belonging to the caller's organization are considered.
        Expired and Rejected contracts are never touched.

        Args:
            ctx: Caller context
            contracts: Contracts as last read; None reconciles every contract
                of the organization, whatever page or filter the caller shows
            now: Reference time, defaults to the current UTC time

        Returns:
            Ids of the contracts that moved to Expired (empty on failure)
        """
        ctx = require_context(ctx)
        today = (now or datetime.now(timezone.utc)).date()

        candidates = None
        if contracts is not None:
            candidates = [
                contract.id
                for contract in contracts
                if contract.organization_id == ctx.organization_id and is_past_end_date(contract, today)
            ]
            if not candidates:
                return []

        try:
            expired = await self.store.expire_contracts(ctx, candidates, today)
        except PersistenceError as e:
            logger.error(f"Expiry reconciliation failed for organization {ctx.organization_id}: {e}")
            return []

        if expired:
            logger.info(
                f"Moved {len(expired)} contracts to {ContractStatus.EXPIRED.value} "
                f"in organization {ctx.organization_id}"
            )
        return expired

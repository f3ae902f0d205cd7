"""
In-process change notifications for datastore rows.

The Lifecycle Store publishes a ChangeEvent after every committed write.
Consumers subscribe with a TableScope and receive every event in that scope
until they cancel the returned Subscription.

Delivery semantics:
- Events are published after commit, so a handler that re-reads sees the change
- Delivery is at-least-once and unordered across tables; handlers must be idempotent
- Handlers are plain callables invoked on the event loop thread; they should
  only schedule work (e.g. create a task) and return quickly
- A handler that raises is logged and skipped; it never fails the writer
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import itertools
import logging

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed change to one row."""
    table: str
    action: str
    organization_id: str
    contract_id: Optional[str] = None
    row_id: Optional[str] = None


@dataclass(frozen=True)
class TableScope:
    """
    Which events a subscription receives.

    organization_id is always required so a subscriber never sees another
    tenant's changes. contract_id narrows the scope to a single contract;
    None means every row of the table.
    """
    table: str
    organization_id: str
    contract_id: Optional[str] = None

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.organization_id != self.organization_id:
            return False
        if self.contract_id is not None and event.contract_id != self.contract_id:
            return False
        return True


ChangeHandler = Callable[[ChangeEvent], None]


@dataclass
class Subscription:
    """Handle returned by ChangeBus.subscribe; cancel() releases it."""
    id: int
    scope: TableScope
    handler: ChangeHandler
    _bus: Optional["ChangeBus"] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._bus is not None

    def cancel(self) -> None:
        """Release the subscription. Safe to call more than once."""
        if self._bus is not None:
            self._bus._remove(self.id)
            self._bus = None


class ChangeBus:
    """Publish/subscribe hub for row-level change notifications."""

    def __init__(self):
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def subscribe(self, scope: TableScope, handler: ChangeHandler) -> Subscription:
        subscription = Subscription(id=next(self._ids), scope=scope, handler=handler, _bus=self)
        self._subscriptions[subscription.id] = subscription
        logger.debug(f"Subscription {subscription.id} opened for {scope}")
        return subscription

    def _remove(self, subscription_id: int) -> None:
        if self._subscriptions.pop(subscription_id, None) is not None:
            logger.debug(f"Subscription {subscription_id} released")

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, events: List[ChangeEvent]) -> None:
        """
        Deliver committed events to every matching subscription.

        Handler failures are logged and do not stop delivery to the others.
        """
        # Snapshot: handlers may cancel subscriptions while we iterate
        subscriptions = list(self._subscriptions.values())
        for event in events:
            for subscription in subscriptions:
                if not subscription.active or not subscription.scope.matches(event):
                    continue
                try:
                    subscription.handler(event)
                except Exception:
                    logger.exception(
                        f"Change handler for subscription {subscription.id} failed on "
                        f"{event.action} {event.table}"
                    )

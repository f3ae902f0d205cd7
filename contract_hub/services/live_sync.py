"""
Live View Synchronizer

Keeps open contract list, contract detail and KPI views consistent with the
datastore. A view subscribes to the tables it renders; every change
notification invalidates the view and schedules a full refetch.

Refresh rules:
- A refetch always rebuilds the whole view, so repeating it is harmless
- Notifications that arrive while a refetch is running collapse into a
  single follow-up refetch
- A failed refetch is logged and the view keeps its last delivered state
- Closing a view cancels its pending refetch and releases all of its
  subscriptions; it never touches pipeline runs

Usage Example:
    sync = LiveViewSynchronizer(store)
    async with sync.open_detail_view(ctx, contract_id, fetch, push) as view:
        await view.wait_idle()
        ...
"""

from typing import Any, Awaitable, Callable, List, Optional, Set
import asyncio
import inspect
import logging

from contract_hub.crud import LifecycleStore, RequestContext, require_context
from contract_hub.notifications import ChangeEvent, Subscription

logger = logging.getLogger(__name__)

LIST_TABLES = ("contracts",)

LEGAL_KPI_TABLES = ("contracts", "contract_entities")

MANAGEMENT_KPI_TABLES = ("contracts",)

DETAIL_TABLES = (
    "contracts",
    "contract_entities",
    "risk_findings",
    "legal_notes",
    "contract_lifecycle",
    "contract_performance",
    "ai_risk_analysis",
)

Fetch = Callable[[], Awaitable[Any]]
OnRefresh = Callable[[Any], Any]


class LiveView:
    """
    One open view: a fetch function, a consumer and the subscriptions feeding it.

    Args:
        name: Label used in log messages
        fetch: Coroutine function that builds the view
        on_refresh: Receives every freshly built view (sync or async)
    """

    def __init__(self, name: str, fetch: Fetch, on_refresh: OnRefresh):
        self.name = name
        self._fetch = fetch
        self._on_refresh = on_refresh
        self._subscriptions: List[Subscription] = []
        self._task: Optional[asyncio.Task] = None
        self._dirty = False
        self._closed = False
        self._on_close: Optional[Callable[["LiveView"], None]] = None
        self.refresh_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions)

    @property
    def refreshing(self) -> bool:
        return self._task is not None and not self._task.done()

    def _attach(self, subscriptions: List[Subscription]) -> None:
        self._subscriptions.extend(subscriptions)

    def invalidate(self, event: Optional[ChangeEvent] = None) -> None:
        """
        Mark the view stale and make sure a refetch is scheduled.

        Used directly as the change handler, so it must not block.
        """
        if self._closed:
            return
        if event is not None:
            logger.debug(f"{self.name}: {event.action} on {event.table}")
        if self.refreshing:
            self._dirty = True
            return
        self._task = asyncio.get_running_loop().create_task(self._refresh_loop())

    async def _refresh_loop(self) -> None:
        while True:
            self._dirty = False
            try:
                data = await self._fetch()
                result = self._on_refresh(data)
                if inspect.isawaitable(result):
                    await result
                self.refresh_count += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Refresh of {self.name} failed; keeping last state")
            if self._closed or not self._dirty:
                return

    async def wait_idle(self) -> None:
        """Wait until no refetch is running or queued."""
        while self.refreshing:
            try:
                await asyncio.shield(self._task)
            except asyncio.CancelledError:
                if self._closed:
                    return
                raise

    async def close(self) -> None:
        """Cancel the pending refetch and release every subscription. Idempotent."""
        if self._closed:
            return
        self._closed = True

        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._on_close is not None:
            self._on_close(self)
        logger.debug(f"Closed {self.name}")

    async def __aenter__(self) -> "LiveView":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class LiveViewSynchronizer:
    """
    Opens live views on top of the store's change notifications.

    Args:
        store: Lifecycle Store whose ChangeBus feeds the views
    """

    def __init__(self, store: LifecycleStore):
        self.store = store
        self._views: Set[LiveView] = set()

    @property
    def open_views(self) -> int:
        return len(self._views)

    def _open(
        self,
        ctx: RequestContext,
        name: str,
        tables,
        fetch: Fetch,
        on_refresh: OnRefresh,
        contract_id: Optional[str],
        initial: bool,
    ) -> LiveView:
        ctx = require_context(ctx)
        view = LiveView(name, fetch, on_refresh)
        view._attach([
            self.store.subscribe(ctx, table, view.invalidate, contract_id=contract_id)
            for table in tables
        ])
        view._on_close = self._views.discard
        self._views.add(view)
        if initial:
            view.invalidate()
        logger.info(f"Opened {name} for organization {ctx.organization_id}")
        return view

    def open_list_view(
        self,
        ctx: RequestContext,
        fetch: Fetch,
        on_refresh: OnRefresh,
        initial: bool = True,
    ) -> LiveView:
        """
        Open a contract list view: any contract change in the organization refreshes it.

        Args:
            initial: Schedule the first fetch immediately
        """
        return self._open(ctx, "contract list view", LIST_TABLES, fetch, on_refresh, None, initial)

    def open_detail_view(
        self,
        ctx: RequestContext,
        contract_id: str,
        fetch: Fetch,
        on_refresh: OnRefresh,
        initial: bool = True,
    ) -> LiveView:
        """
        Open a contract detail view: changes to the contract or any of its
        entities, findings, notes, lifecycle, metrics or analyses refresh it.
        """
        return self._open(
            ctx,
            f"contract detail view {contract_id}",
            DETAIL_TABLES,
            fetch,
            on_refresh,
            contract_id,
            initial,
        )

    def open_legal_kpi_view(
        self,
        ctx: RequestContext,
        fetch: Fetch,
        on_refresh: OnRefresh,
        initial: bool = True,
    ) -> LiveView:
        """
        Open the legal KPI view: contract changes and new extraction passes
        (which settle pending analysis) refresh it.
        """
        return self._open(ctx, "legal KPI view", LEGAL_KPI_TABLES, fetch, on_refresh, None, initial)

    def open_management_kpi_view(
        self,
        ctx: RequestContext,
        fetch: Fetch,
        on_refresh: OnRefresh,
        initial: bool = True,
    ) -> LiveView:
        """Open the management KPI view: any contract change in the organization refreshes it."""
        return self._open(ctx, "management KPI view", MANAGEMENT_KPI_TABLES, fetch, on_refresh, None, initial)

    async def close_all(self) -> None:
        """Close every open view (used on shutdown)."""
        for view in list(self._views):
            await view.close()

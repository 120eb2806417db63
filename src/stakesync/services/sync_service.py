from __future__ import annotations

import logging
from collections.abc import Iterable

import httpx

from stakesync.adapters.ledger_fetcher import LedgerFetcherProtocol, build_ledger_fetcher
from stakesync.config import Settings
from stakesync.domain.errors import PersistenceFailure
from stakesync.domain.models import Network, OwnerAggregate, TableCounts, parse_network
from stakesync.observability import Instrumentation
from stakesync.persistence.store import LedgerStore
from stakesync.services.page_cache import PageCache
from stakesync.services.periodic import PeriodicSyncRunner
from stakesync.services.query_facade import Overview, OwnerHistory, QueryFacade, StakeList
from stakesync.services.sync_orchestrator import (
    SyncMode,
    SyncOrchestrator,
    SyncRunResult,
    SyncStatusReport,
)

logger = logging.getLogger(__name__)


class StakeSyncService:
    """Explicitly constructed root object; owns the store, fetcher, cache and schedules.

    Construct it once per process with ``from_settings`` and call ``close`` on
    shutdown. Networks not enabled in the settings are rejected.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store: LedgerStore,
        fetcher: LedgerFetcherProtocol,
        page_cache: PageCache | None = None,
        instrumentation: Instrumentation | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.fetcher = fetcher
        self.page_cache = page_cache or PageCache(ttl_seconds=settings.page_cache_ttl_seconds)
        self.orchestrator = SyncOrchestrator(
            store=store,
            fetcher=fetcher,
            page_cache=self.page_cache,
            page_size=settings.ledger_page_size,
            retry_policy=settings.retry_policy(),
            run_deadline_seconds=settings.sync_run_deadline_seconds,
            guard_stale_seconds=settings.sync_guard_stale_seconds,
            instrumentation=instrumentation,
        )
        self.queries = QueryFacade(
            store=store,
            page_cache=self.page_cache,
            instrumentation=instrumentation,
        )
        self.periodic = PeriodicSyncRunner(self._periodic_tick)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> StakeSyncService:
        return cls(
            settings=settings,
            store=LedgerStore(settings.state_db_path),
            fetcher=build_ledger_fetcher(settings, transport=transport),
        )

    def __enter__(self) -> StakeSyncService:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.periodic.stop_all()
        self.fetcher.close()

    def _network(self, network: Network | str) -> Network:
        resolved = parse_network(network)
        if resolved not in self.settings.networks:
            raise ValueError(f"network {resolved} is not enabled")
        return resolved

    def _periodic_tick(self, network: Network) -> SyncRunResult:
        return self.orchestrator.trigger_sync(network, SyncMode.INCREMENTAL)

    # -- sync ------------------------------------------------------------

    def get_status(self, network: Network | str) -> SyncStatusReport:
        return self.orchestrator.get_status(self._network(network))

    def trigger_sync(
        self,
        network: Network | str,
        mode: SyncMode | str = SyncMode.INCREMENTAL,
        *,
        reset_cursor: bool = False,
    ) -> SyncRunResult:
        return self.orchestrator.trigger_sync(
            self._network(network), SyncMode(mode), reset_cursor=reset_cursor
        )

    def start_periodic(
        self, network: Network | str, interval_minutes: float | None = None
    ) -> bool:
        interval = interval_minutes if interval_minutes is not None else self.settings.sync_interval_minutes
        return self.periodic.start(self._network(network), interval)

    def stop_periodic(self, network: Network | str) -> bool:
        return self.periodic.stop(self._network(network))

    def force_release_guard(self, network: Network | str) -> bool:
        return self.store.force_release_guard(self._network(network))

    # -- reads -----------------------------------------------------------

    def get_overview(self, network: Network | str) -> Overview:
        return self.queries.get_overview(self._network(network))

    def get_top_stakes(self, network: Network | str, limit: int = 100) -> StakeList:
        return self.queries.get_top_stakes(self._network(network), limit=limit)

    def get_recent_stakes(self, network: Network | str, limit: int = 50) -> StakeList:
        return self.queries.get_recent_stakes(self._network(network), limit=limit)

    def get_owner_history(self, owner_address: str, network: Network | str) -> OwnerHistory:
        resolved = self._network(network)
        try:
            self.store.recompute_owner_aggregate(owner_address, resolved)
        except PersistenceFailure as exc:
            logger.warning(
                "owner_aggregate_refresh_failed",
                extra={"extra": {"network": str(resolved), "error": exc.detail}},
            )
        return self.queries.get_owner_history(owner_address, resolved)

    def get_table_counts(self, network: Network | str) -> TableCounts:
        return self.store.get_table_counts(self._network(network))

    # -- maintenance -----------------------------------------------------

    def cleanup(self, network: Network | str) -> int:
        return self.store.cleanup_global_counters(
            self._network(network),
            retention_days=self.settings.counters_retention_days,
            keep_latest=self.settings.counters_keep_latest,
        )

    def refresh_owner_aggregates(
        self,
        network: Network | str,
        owners: Iterable[str] | None = None,
        *,
        limit: int = 1000,
    ) -> list[OwnerAggregate]:
        resolved = self._network(network)
        targets = (
            list(owners)
            if owners is not None
            else self.store.list_owner_addresses(resolved, limit=limit)
        )
        aggregates = [self.store.recompute_owner_aggregate(owner, resolved) for owner in targets]
        logger.info(
            "owner_aggregates_refreshed",
            extra={"extra": {"network": str(resolved), "owners": len(aggregates)}},
        )
        return aggregates

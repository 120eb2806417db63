from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum

from stakesync.domain.aggregates import build_owner_aggregate
from stakesync.domain.errors import PersistenceFailure
from stakesync.domain.models import Network, OwnerAggregate, StakeClosed, StakeOpened
from stakesync.observability import Instrumentation, get_instrumentation
from stakesync.persistence.store import LedgerStore
from stakesync.services.page_cache import PageCache, PageSet

logger = logging.getLogger(__name__)


class ReadSource(StrEnum):
    STORE = "store"
    CACHE = "cache"
    NONE = "none"


@dataclass(frozen=True)
class _ReadResult:
    network: Network
    source: ReadSource
    is_data_available: bool

    @property
    def data_incomplete(self) -> bool:
        """True when the answer came from the fallback cache or no data exists yet."""

        return self.source is not ReadSource.STORE or not self.is_data_available


@dataclass(frozen=True)
class Overview(_ReadResult):
    active_count: int = 0
    total_principal: Decimal = Decimal(0)
    average_duration_days: float = 0.0


@dataclass(frozen=True)
class StakeList(_ReadResult):
    stakes: tuple[StakeOpened, ...] = ()


@dataclass(frozen=True)
class OwnerHistory(_ReadResult):
    owner_address: str = ""
    opened: tuple[StakeOpened, ...] = ()
    closed: tuple[StakeClosed, ...] = ()
    aggregate: OwnerAggregate | None = None


def _by_principal_desc(records: list[StakeOpened]) -> list[StakeOpened]:
    return sorted(records, key=lambda r: (-r.principal, int(r.stake_id)))


class QueryFacade:
    """Read paths over the replica. Never fetches from the ledger and never touches the cursor."""

    def __init__(
        self,
        *,
        store: LedgerStore,
        page_cache: PageCache,
        instrumentation: Instrumentation | None = None,
    ) -> None:
        self.store = store
        self.page_cache = page_cache
        self._instrumentation = instrumentation

    @property
    def instrumentation(self) -> Instrumentation:
        return self._instrumentation or get_instrumentation()

    def _fallback(self, network: Network, operation: str, exc: PersistenceFailure) -> PageSet | None:
        cached = self.page_cache.get(network)
        source = ReadSource.CACHE if cached is not None else ReadSource.NONE
        logger.warning(
            "read_store_unavailable_fallback",
            extra={
                "extra": {
                    "network": str(network),
                    "operation": operation,
                    "source": str(source),
                    "error": exc.detail,
                }
            },
        )
        self.instrumentation.counter(
            "read_fallback_total", attrs={"network": str(network), "source": str(source)}
        )
        return cached

    def get_overview(self, network: Network) -> Overview:
        try:
            totals = self.store.get_overview_totals(network)
        except PersistenceFailure as exc:
            logger.warning(
                "read_overview_unavailable",
                extra={"extra": {"network": str(network), "error": exc.detail}},
            )
            return Overview(network=network, source=ReadSource.NONE, is_data_available=False)
        return Overview(
            network=network,
            source=ReadSource.STORE,
            is_data_available=totals.total_rows > 0,
            active_count=totals.active_count,
            total_principal=totals.total_principal,
            average_duration_days=totals.average_duration_days,
        )

    def get_top_stakes(self, network: Network, limit: int = 100) -> StakeList:
        try:
            stakes = self.store.get_top_stakes(network, limit=limit)
            has_rows = bool(stakes) or self.store.opened_count(network) > 0
        except PersistenceFailure as exc:
            cached = self._fallback(network, "get_top_stakes", exc)
            if cached is None:
                return StakeList(network=network, source=ReadSource.NONE, is_data_available=False)
            closed_ids = {record.stake_id for record in cached.closed}
            active = [r for r in cached.opened if r.is_active and r.stake_id not in closed_ids]
            return StakeList(
                network=network,
                source=ReadSource.CACHE,
                is_data_available=bool(cached.opened),
                stakes=tuple(_by_principal_desc(active)[:limit]),
            )
        return StakeList(
            network=network,
            source=ReadSource.STORE,
            is_data_available=has_rows,
            stakes=tuple(stakes),
        )

    def get_recent_stakes(self, network: Network, limit: int = 50) -> StakeList:
        try:
            stakes = self.store.get_recent_stakes(network, limit=limit)
        except PersistenceFailure as exc:
            cached = self._fallback(network, "get_recent_stakes", exc)
            if cached is None:
                return StakeList(network=network, source=ReadSource.NONE, is_data_available=False)
            recent = sorted(
                cached.opened,
                key=lambda r: (r.opened_at_epoch_seconds, int(r.stake_id)),
                reverse=True,
            )[:limit]
            return StakeList(
                network=network,
                source=ReadSource.CACHE,
                is_data_available=bool(recent),
                stakes=tuple(recent),
            )
        return StakeList(
            network=network,
            source=ReadSource.STORE,
            is_data_available=bool(stakes),
            stakes=tuple(stakes),
        )

    def get_owner_history(self, owner_address: str, network: Network) -> OwnerHistory:
        owner = owner_address.strip().lower()
        try:
            stakes = self.store.get_owner_stakes(owner, network)
            aggregate = self.store.get_owner_aggregate(owner, network)
        except PersistenceFailure as exc:
            cached = self._fallback(network, "get_owner_history", exc)
            if cached is None:
                return OwnerHistory(
                    network=network,
                    source=ReadSource.NONE,
                    is_data_available=False,
                    owner_address=owner,
                )
            opened = tuple(r for r in cached.opened if r.owner_address == owner)
            closed = tuple(r for r in cached.closed if r.owner_address == owner)
            return OwnerHistory(
                network=network,
                source=ReadSource.CACHE,
                is_data_available=bool(opened or closed),
                owner_address=owner,
                opened=opened,
                closed=closed,
                aggregate=build_owner_aggregate(owner, network, opened, closed) if opened else None,
            )
        return OwnerHistory(
            network=network,
            source=ReadSource.STORE,
            is_data_available=bool(stakes.opened or stakes.closed),
            owner_address=owner,
            opened=stakes.opened,
            closed=stakes.closed,
            aggregate=aggregate,
        )


__all__ = [
    "Overview",
    "OwnerHistory",
    "QueryFacade",
    "ReadSource",
    "StakeList",
]

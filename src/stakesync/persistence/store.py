from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from stakesync.domain.aggregates import build_owner_aggregate, overview_totals
from stakesync.domain.errors import PersistenceFailure
from stakesync.domain.models import (
    GlobalCounters,
    Network,
    OverviewTotals,
    OwnerAggregate,
    StakeClosed,
    StakeOpened,
    SyncCursor,
    SyncCursorPatch,
    TableCounts,
)
from stakesync.persistence.uow import UnitOfWork, UnitOfWorkFactory

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400


@dataclass(frozen=True)
class OwnerStakes:
    opened: tuple[StakeOpened, ...]
    closed: tuple[StakeClosed, ...]


class LedgerStore:
    """Durable replica of the ledger, one sqlite file for every network.

    Each call runs in its own unit of work. sqlite errors surface as
    ``PersistenceFailure`` tagged with the network and operation; expected
    duplicate inserts are absorbed by the repositories.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._uow_factory = UnitOfWorkFactory(db_path)
        self._read_factory = UnitOfWorkFactory(db_path, read_only=True)

    @contextmanager
    def _unit(self, network: Network, operation: str, *, read_only: bool = False) -> Iterator[UnitOfWork]:
        factory = self._read_factory if read_only else self._uow_factory
        try:
            with factory() as uow:
                yield uow
        except sqlite3.Error as exc:
            logger.error(
                "store_operation_failed",
                extra={
                    "extra": {
                        "network": str(network),
                        "operation": operation,
                        "error_type": type(exc).__name__,
                    }
                },
            )
            raise PersistenceFailure(str(exc), network=str(network), operation=operation) from exc

    # -- writes ----------------------------------------------------------

    def upsert_opened_batch(
        self, records: Sequence[StakeOpened], *, overwrite_derived: bool = True
    ) -> int:
        if not records:
            return 0
        network = records[0].network
        with self._unit(network, "upsert_opened_batch") as uow:
            return uow.stakes.upsert_opened_batch(records, overwrite_derived=overwrite_derived)

    def upsert_closed(self, record: StakeClosed) -> bool:
        with self._unit(record.network, "upsert_closed") as uow:
            return uow.stakes.upsert_closed(record)

    def upsert_closed_batch(self, records: Sequence[StakeClosed]) -> int:
        if not records:
            return 0
        with self._unit(records[0].network, "upsert_closed_batch") as uow:
            return sum(1 for record in records if uow.stakes.upsert_closed(record))

    def refresh_stake_days(self, network: Network, current_day_index: int) -> int:
        with self._unit(network, "refresh_stake_days") as uow:
            return uow.stakes.refresh_stake_days(network, current_day_index)

    def insert_global_counters(self, record: GlobalCounters) -> bool:
        with self._unit(record.network, "insert_global_counters") as uow:
            return uow.counters.insert(record)

    def cleanup_global_counters(
        self,
        network: Network,
        *,
        retention_days: int,
        keep_latest: int,
        now: int | None = None,
    ) -> int:
        current = int(time.time()) if now is None else now
        captured_before = current - retention_days * SECONDS_PER_DAY
        with self._unit(network, "cleanup_global_counters") as uow:
            deleted = uow.counters.cleanup(
                network, captured_before=captured_before, keep_latest=keep_latest
            )
        logger.info(
            "global_counters_cleaned",
            extra={"extra": {"network": str(network), "deleted": deleted, "keep_latest": keep_latest}},
        )
        return deleted

    def recompute_owner_aggregate(self, owner_address: str, network: Network) -> OwnerAggregate:
        owner = owner_address.strip().lower()
        with self._unit(network, "recompute_owner_aggregate") as uow:
            aggregate = build_owner_aggregate(
                owner,
                network,
                uow.stakes.opened_for_owner(network, owner),
                uow.stakes.closed_for_owner(network, owner),
            )
            uow.owners.replace(aggregate)
        return aggregate

    # -- reads -----------------------------------------------------------

    def get_active_stakes(
        self, network: Network, *, limit: int = 100, current_day_index: int | None = None
    ) -> list[StakeOpened]:
        with self._unit(network, "get_active_stakes", read_only=True) as uow:
            return uow.stakes.list_active(network, limit=limit, current_day_index=current_day_index)

    def get_top_stakes(self, network: Network, *, limit: int = 100) -> list[StakeOpened]:
        return self.get_active_stakes(network, limit=limit)

    def get_recent_stakes(self, network: Network, *, limit: int = 50) -> list[StakeOpened]:
        with self._unit(network, "get_recent_stakes", read_only=True) as uow:
            return uow.stakes.list_recent(network, limit=limit)

    def get_owner_stakes(self, owner_address: str, network: Network) -> OwnerStakes:
        owner = owner_address.strip().lower()
        with self._unit(network, "get_owner_stakes", read_only=True) as uow:
            return OwnerStakes(
                opened=tuple(uow.stakes.opened_for_owner(network, owner)),
                closed=tuple(uow.stakes.closed_for_owner(network, owner)),
            )

    def get_owner_aggregate(self, owner_address: str, network: Network) -> OwnerAggregate | None:
        with self._unit(network, "get_owner_aggregate", read_only=True) as uow:
            return uow.owners.get(network, owner_address.strip().lower())

    def list_owner_addresses(self, network: Network, *, limit: int = 1000) -> list[str]:
        with self._unit(network, "list_owner_addresses", read_only=True) as uow:
            return uow.stakes.distinct_owners(network, limit=limit)

    def get_overview_totals(self, network: Network) -> OverviewTotals:
        with self._unit(network, "get_overview_totals", read_only=True) as uow:
            return overview_totals(
                uow.stakes.iter_active_principal_durations(network),
                total_rows=uow.stakes.count_opened(network),
            )

    def get_latest_global_counters(self, network: Network) -> GlobalCounters | None:
        with self._unit(network, "get_latest_global_counters", read_only=True) as uow:
            return uow.counters.latest(network)

    def existing_stake_ids(self, network: Network, stake_ids: Sequence[str]) -> set[str]:
        if not stake_ids:
            return set()
        with self._unit(network, "existing_stake_ids", read_only=True) as uow:
            return uow.stakes.existing_opened_ids(network, stake_ids)

    def closed_ids_among(self, network: Network, stake_ids: Sequence[str]) -> set[str]:
        if not stake_ids:
            return set()
        with self._unit(network, "closed_ids_among", read_only=True) as uow:
            return uow.stakes.closed_ids_among(network, stake_ids)

    def closed_ids(self, network: Network) -> set[str]:
        with self._unit(network, "closed_ids", read_only=True) as uow:
            return uow.stakes.all_closed_ids(network)

    def opened_count(self, network: Network) -> int:
        with self._unit(network, "opened_count", read_only=True) as uow:
            return uow.stakes.count_opened(network)

    def closed_count(self, network: Network) -> int:
        with self._unit(network, "closed_count", read_only=True) as uow:
            return uow.stakes.count_closed(network)

    def get_table_counts(self, network: Network) -> TableCounts:
        with self._unit(network, "get_table_counts", read_only=True) as uow:
            return TableCounts(
                network=network,
                opened=uow.stakes.count_opened(network),
                closed=uow.stakes.count_closed(network),
                global_counters=uow.counters.count(network),
                owner_aggregates=uow.owners.count(network),
                cursors=uow.cursor.count(network),
            )

    # -- cursor ----------------------------------------------------------

    def get_sync_cursor(self, network: Network) -> SyncCursor:
        with self._unit(network, "get_sync_cursor", read_only=True) as uow:
            cursor = uow.cursor.get(network)
        return cursor if cursor is not None else SyncCursor(network=network)

    def update_sync_cursor(self, network: Network, patch: SyncCursorPatch) -> None:
        if patch.is_empty():
            return
        with self._unit(network, "update_sync_cursor") as uow:
            uow.cursor.update(network, patch)

    def try_acquire_sync_guard(
        self, network: Network, *, now: int, stale_after_seconds: int
    ) -> bool:
        with self._unit(network, "acquire_sync_guard") as uow:
            return uow.cursor.try_acquire(
                network, now=now, stale_before=now - stale_after_seconds
            )

    def release_sync_guard(
        self, network: Network, patch: SyncCursorPatch, *, started_at: int
    ) -> bool:
        """Clear the guard together with the run outcome fields in one write.

        ``started_at`` is the value the caller's ``try_acquire_sync_guard`` wrote.
        If another run has since taken the guard over, nothing is written and
        False is returned.
        """

        with self._unit(network, "release_sync_guard") as uow:
            released = uow.cursor.release(network, patch, started_at=started_at)
        if not released:
            logger.warning(
                "sync_guard_lost",
                extra={"extra": {"network": str(network), "started_at": started_at}},
            )
        return released

    def force_release_guard(self, network: Network) -> bool:
        with self._unit(network, "force_release_guard") as uow:
            released = uow.cursor.force_release(network)
        logger.warning(
            "sync_guard_force_released",
            extra={"extra": {"network": str(network), "released": released}},
        )
        return released

from __future__ import annotations

import sqlite3
from dataclasses import replace
from decimal import Decimal

import pytest

from stakesync.domain.errors import PersistenceFailure
from stakesync.domain.models import GlobalCounters, Network, SyncCursorPatch
from stakesync.domain.reconcile import reconcile
from stakesync.persistence.store import LedgerStore
from stakesync.persistence.uow import UnitOfWorkFactory


def _counters(day: int, captured_at: int, network: Network = Network.ETHEREUM) -> GlobalCounters:
    return GlobalCounters(
        day_index=day,
        total_shares="100",
        total_penalty="0",
        total_locked="1000",
        latest_stake_id=str(day),
        captured_at_epoch_seconds=captured_at,
        network=network,
    )


def test_upsert_opened_is_idempotent_and_refreshes_derived_fields(db_path, make_opened) -> None:
    store = LedgerStore(db_path)
    first = reconcile([make_opened(1)], set(), 300)[0]

    assert store.upsert_opened_batch([first]) == 1
    later = reconcile([replace(make_opened(1), owner_address="0xchanged")], set(), 400)[0]
    assert store.upsert_opened_batch([later]) == 0

    counts = store.get_table_counts(Network.ETHEREUM)
    [row] = store.get_active_stakes(Network.ETHEREUM)
    assert counts.opened == 1
    assert row.owner_address == "0xowner"
    assert row.days_served == 300
    assert row.days_left == 65


def test_upsert_without_overwrite_keeps_stored_derived_fields(db_path, make_opened) -> None:
    store = LedgerStore(db_path)
    store.upsert_opened_batch(reconcile([make_opened(1)], set(), 300))

    store.upsert_opened_batch(reconcile([make_opened(1)], set(), None), overwrite_derived=False)

    [row] = store.get_active_stakes(Network.ETHEREUM)
    assert row.days_served == 200
    assert row.days_left == 165


def test_closed_record_flips_opened_row(db_path, make_opened, make_closed) -> None:
    store = LedgerStore(db_path)
    store.upsert_opened_batch(reconcile([make_opened(1), make_opened(2)], set(), 300))

    assert store.upsert_closed(make_closed(1)) is True
    assert store.upsert_closed(make_closed(1)) is False

    assert [row.stake_id for row in store.get_active_stakes(Network.ETHEREUM)] == ["2"]
    assert store.closed_count(Network.ETHEREUM) == 1


def test_opened_row_arriving_after_its_closed_record_stays_inactive(
    db_path, make_opened, make_closed
) -> None:
    store = LedgerStore(db_path)
    store.upsert_closed(make_closed(5))

    store.upsert_opened_batch([make_opened(5, is_active=True)])

    assert store.get_active_stakes(Network.ETHEREUM) == []
    assert store.closed_ids_among(Network.ETHEREUM, ["5", "6"]) == {"5"}


def test_networks_are_isolated(db_path, make_opened) -> None:
    store = LedgerStore(db_path)
    store.upsert_opened_batch([make_opened(1)])
    store.upsert_opened_batch([make_opened(1, network=Network.PULSECHAIN)])

    assert store.get_table_counts(Network.ETHEREUM).opened == 1
    assert store.get_table_counts(Network.PULSECHAIN).opened == 1
    assert store.existing_stake_ids(Network.PULSECHAIN, ["1", "2"]) == {"1"}


def test_top_stakes_order_by_numeric_principal(db_path, make_opened) -> None:
    store = LedgerStore(db_path)
    store.upsert_opened_batch(
        [
            make_opened(1, principal_amount="9"),
            make_opened(2, principal_amount="100000000000000000000"),
            make_opened(3, principal_amount="80"),
        ]
    )

    top = store.get_top_stakes(Network.ETHEREUM, limit=2)

    assert [row.stake_id for row in top] == ["2", "3"]


def test_recent_stakes_newest_first(db_path, make_opened) -> None:
    store = LedgerStore(db_path)
    store.upsert_opened_batch(
        [
            make_opened(1, opened_at_epoch_seconds=100),
            make_opened(2, opened_at_epoch_seconds=300),
            make_opened(3, opened_at_epoch_seconds=200),
        ]
    )

    assert [row.stake_id for row in store.get_recent_stakes(Network.ETHEREUM, limit=10)] == [
        "2",
        "3",
        "1",
    ]


def test_overview_matches_manual_arithmetic(db_path, make_opened, make_closed) -> None:
    store = LedgerStore(db_path)
    opened = [
        make_opened(1, principal_amount="100", staked_duration_days=10),
        make_opened(2, principal_amount="200", staked_duration_days=20),
        make_opened(3, principal_amount="300", staked_duration_days=30),
        make_opened(4, principal_amount="400", staked_duration_days=40),
        make_opened(5, principal_amount="500", staked_duration_days=50),
    ]
    closed = [make_closed(2), make_closed(4)]
    for record in closed:
        store.upsert_closed(record)
    store.upsert_opened_batch(reconcile(opened, {"2", "4"}, 300))

    totals = store.get_overview_totals(Network.ETHEREUM)

    assert totals.active_count == 3
    assert totals.total_principal == Decimal(100 + 300 + 500)
    assert totals.average_duration_days == 30.0
    assert totals.total_rows == 5


def test_overview_totals_are_read_as_a_row_stream(db_path, make_opened) -> None:
    store = LedgerStore(db_path)
    store.upsert_opened_batch(
        reconcile(
            [
                make_opened(1, principal_amount="98765432109876543210987654321", staked_duration_days=7),
                make_opened(2, principal_amount="9", staked_duration_days=3),
                make_opened(3, principal_amount="5", end_day_index=200),
            ],
            set(),
            300,
        )
    )

    with UnitOfWorkFactory(db_path, read_only=True)() as uow:
        rows = uow.stakes.iter_active_principal_durations(Network.ETHEREUM)
        assert not isinstance(rows, list)
        assert sorted(rows) == [("9", 3), ("98765432109876543210987654321", 7)]

    totals = store.get_overview_totals(Network.ETHEREUM)
    assert totals.active_count == 2
    assert totals.total_principal == Decimal("98765432109876543210987654330")
    assert totals.average_duration_days == 5.0
    assert totals.total_rows == 3


def test_refresh_stake_days_updates_and_deactivates(db_path, make_opened) -> None:
    store = LedgerStore(db_path)
    store.upsert_opened_batch(
        reconcile(
            [
                make_opened(1, start_day_index=100, end_day_index=465),
                make_opened(2, start_day_index=100, end_day_index=350),
            ],
            set(),
            300,
        )
    )

    assert store.refresh_stake_days(Network.ETHEREUM, 400) == 2

    [row] = store.get_active_stakes(Network.ETHEREUM)
    assert row.stake_id == "1"
    assert row.days_served == 300
    assert row.days_left == 65


def test_global_counters_one_row_per_day_and_latest(db_path) -> None:
    store = LedgerStore(db_path)

    assert store.insert_global_counters(_counters(10, 1_000)) is True
    assert store.insert_global_counters(_counters(10, 2_000)) is False
    store.insert_global_counters(_counters(12, 3_000))

    latest = store.get_latest_global_counters(Network.ETHEREUM)
    assert latest is not None
    assert latest.day_index == 12
    assert store.get_latest_global_counters(Network.PULSECHAIN) is None


def test_cleanup_global_counters_keeps_latest(db_path) -> None:
    store = LedgerStore(db_path)
    day = 86_400
    now = 100 * day
    for index in range(6):
        store.insert_global_counters(_counters(index, index * day))
    store.insert_global_counters(_counters(99, now))

    deleted = store.cleanup_global_counters(
        Network.ETHEREUM, retention_days=30, keep_latest=3, now=now
    )

    assert deleted == 4
    assert store.get_table_counts(Network.ETHEREUM).global_counters == 3


def test_cursor_defaults_and_patch(db_path) -> None:
    store = LedgerStore(db_path)

    cursor = store.get_sync_cursor(Network.ETHEREUM)
    assert cursor.last_synced_stake_id == "0"
    assert cursor.sync_in_progress is False

    store.update_sync_cursor(
        Network.ETHEREUM,
        SyncCursorPatch(last_synced_stake_id="42", last_error_message="boom"),
    )
    store.update_sync_cursor(Network.ETHEREUM, SyncCursorPatch(total_opened_synced=7))

    cursor = store.get_sync_cursor(Network.ETHEREUM)
    assert cursor.last_synced_stake_id == "42"
    assert cursor.last_error_message == "boom"
    assert cursor.total_opened_synced == 7

    store.update_sync_cursor(Network.ETHEREUM, SyncCursorPatch(last_error_message=None))
    assert store.get_sync_cursor(Network.ETHEREUM).last_error_message is None


def test_sync_guard_is_single_flight_with_stale_takeover(db_path) -> None:
    store = LedgerStore(db_path)

    assert store.try_acquire_sync_guard(Network.ETHEREUM, now=1_000, stale_after_seconds=600) is True
    assert store.try_acquire_sync_guard(Network.ETHEREUM, now=1_100, stale_after_seconds=600) is False
    assert store.try_acquire_sync_guard(Network.PULSECHAIN, now=1_100, stale_after_seconds=600) is True
    assert store.try_acquire_sync_guard(Network.ETHEREUM, now=1_700, stale_after_seconds=600) is True

    released = store.release_sync_guard(
        Network.ETHEREUM, SyncCursorPatch(sync_completed_at=1_800), started_at=1_700
    )
    assert released is True
    cursor = store.get_sync_cursor(Network.ETHEREUM)
    assert cursor.sync_in_progress is False
    assert cursor.sync_completed_at == 1_800
    assert store.try_acquire_sync_guard(Network.ETHEREUM, now=1_900, stale_after_seconds=600) is True


def test_superseded_holder_cannot_release_the_new_holders_guard(db_path, caplog) -> None:
    store = LedgerStore(db_path)
    store.update_sync_cursor(Network.ETHEREUM, SyncCursorPatch(last_synced_stake_id="10"))
    assert store.try_acquire_sync_guard(Network.ETHEREUM, now=1_000, stale_after_seconds=3600) is True
    assert store.try_acquire_sync_guard(Network.ETHEREUM, now=5_000, stale_after_seconds=3600) is True

    with caplog.at_level("WARNING"):
        released = store.release_sync_guard(
            Network.ETHEREUM,
            SyncCursorPatch(last_synced_stake_id="99", sync_completed_at=5_100),
            started_at=1_000,
        )

    assert released is False
    assert "sync_guard_lost" in caplog.text
    cursor = store.get_sync_cursor(Network.ETHEREUM)
    assert cursor.sync_in_progress is True
    assert cursor.sync_started_at == 5_000
    assert cursor.last_synced_stake_id == "10"
    assert cursor.sync_completed_at is None
    assert store.try_acquire_sync_guard(Network.ETHEREUM, now=5_001, stale_after_seconds=3600) is False

    assert store.release_sync_guard(Network.ETHEREUM, SyncCursorPatch(), started_at=5_000) is True
    assert store.get_sync_cursor(Network.ETHEREUM).sync_in_progress is False


def test_force_release_guard(db_path) -> None:
    store = LedgerStore(db_path)
    store.try_acquire_sync_guard(Network.ETHEREUM, now=1_000, stale_after_seconds=600)

    assert store.force_release_guard(Network.ETHEREUM) is True
    assert store.force_release_guard(Network.ETHEREUM) is False
    assert store.get_sync_cursor(Network.ETHEREUM).sync_in_progress is False


def test_owner_aggregate_recompute_and_read(db_path, make_opened, make_closed) -> None:
    store = LedgerStore(db_path)
    store.upsert_opened_batch(
        [
            make_opened(1, owner_address="0xaa", principal_amount="10"),
            make_opened(2, owner_address="0xaa", principal_amount="15"),
            make_opened(3, owner_address="0xbb"),
        ]
    )
    store.upsert_closed(make_closed(2, owner_address="0xaa", payout_amount="20"))

    aggregate = store.recompute_owner_aggregate("0xAA", Network.ETHEREUM)

    assert aggregate.total_stakes == 2
    assert aggregate.active_stakes == 1
    assert aggregate.total_principal == "25"
    assert aggregate.total_payouts == "20"
    assert store.get_owner_aggregate("0xaa", Network.ETHEREUM) == aggregate
    assert sorted(store.list_owner_addresses(Network.ETHEREUM)) == ["0xaa", "0xbb"]
    history = store.get_owner_stakes("0xaa", Network.ETHEREUM)
    assert [row.stake_id for row in history.opened] == ["1", "2"]
    assert [row.stake_id for row in history.closed] == ["2"]


def test_sqlite_errors_surface_as_persistence_failure(tmp_path) -> None:
    store = LedgerStore(str(tmp_path / "missing-dir" / "ledger.sqlite"))

    with pytest.raises(PersistenceFailure) as exc_info:
        store.get_table_counts(Network.ETHEREUM)

    assert exc_info.value.network == "ethereum"
    assert exc_info.value.operation == "get_table_counts"


def test_unit_of_work_rolls_back_on_error(db_path, make_opened) -> None:
    factory = UnitOfWorkFactory(db_path)

    with pytest.raises(RuntimeError):
        with factory() as uow:
            uow.stakes.upsert_opened_batch([make_opened(1)])
            raise RuntimeError("boom")

    with sqlite3.connect(db_path) as conn:
        assert conn.execute("SELECT COUNT(*) FROM stake_opened").fetchone()[0] == 0


def test_read_only_unit_of_work_blocks_writes(db_path, make_opened) -> None:
    with pytest.raises(PermissionError):
        with UnitOfWorkFactory(db_path, read_only=True)() as uow:
            uow.stakes.upsert_opened_batch([make_opened(1)])

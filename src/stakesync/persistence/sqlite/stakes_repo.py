from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from datetime import UTC, datetime

from stakesync.domain.models import Network, StakeClosed, StakeOpened

logger = logging.getLogger(__name__)

_ID_CHUNK = 500
# Principal amounts are canonical integer strings, so (length, text) sorts numerically.
_PRINCIPAL_DESC = "LENGTH(principal_amount) DESC, principal_amount DESC, stake_id ASC"

_OPENED_COLUMNS = """
    network, stake_id, owner_address, principal_amount, share_amount, derived_share_amount,
    staked_duration_days, start_day_index, end_day_index, opened_at_epoch_seconds,
    is_auto_renewed, source_tx_hash, source_block_number, is_active, days_served, days_left
"""
_CLOSED_COLUMNS = """
    network, stake_id, owner_address, payout_amount, principal_amount_at_close, penalty_amount,
    served_days, closed_at_epoch_seconds, source_tx_hash, source_block_number
"""


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _chunks(items: Sequence[str], size: int = _ID_CHUNK) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _row_to_opened(row: sqlite3.Row) -> StakeOpened:
    return StakeOpened(
        stake_id=str(row["stake_id"]),
        owner_address=str(row["owner_address"]),
        principal_amount=str(row["principal_amount"]),
        share_amount=str(row["share_amount"]),
        derived_share_amount=str(row["derived_share_amount"]),
        staked_duration_days=int(row["staked_duration_days"]),
        start_day_index=int(row["start_day_index"]),
        end_day_index=int(row["end_day_index"]),
        opened_at_epoch_seconds=int(row["opened_at_epoch_seconds"]),
        is_auto_renewed=bool(row["is_auto_renewed"]),
        source_tx_hash=str(row["source_tx_hash"]),
        source_block_number=int(row["source_block_number"]),
        network=Network(row["network"]),
        is_active=bool(row["is_active"]),
        days_served=int(row["days_served"]),
        days_left=int(row["days_left"]),
    )


def _row_to_closed(row: sqlite3.Row) -> StakeClosed:
    return StakeClosed(
        stake_id=str(row["stake_id"]),
        owner_address=str(row["owner_address"]),
        payout_amount=str(row["payout_amount"]),
        principal_amount_at_close=str(row["principal_amount_at_close"]),
        penalty_amount=str(row["penalty_amount"]),
        served_days=int(row["served_days"]),
        closed_at_epoch_seconds=int(row["closed_at_epoch_seconds"]),
        source_tx_hash=str(row["source_tx_hash"]),
        source_block_number=int(row["source_block_number"]),
        network=Network(row["network"]),
    )


class SqliteStakesRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "stakes"}})
            raise PermissionError("UnitOfWork is read-only; stake writes are blocked")

    def upsert_opened_batch(
        self, records: Sequence[StakeOpened], *, overwrite_derived: bool = True
    ) -> int:
        """Insert new opened rows and refresh derived fields of existing ones.

        Immutable event fields are written once. A stake with a stored closed
        record is always written inactive. Returns the number of new rows.
        """

        self._ensure_writable()
        if not records:
            return 0
        now = _now_iso()
        closed_by_network: dict[Network, set[str]] = {}
        for network in {record.network for record in records}:
            ids = [record.stake_id for record in records if record.network == network]
            closed_by_network[network] = self.closed_ids_among(network, ids)

        inserted = 0
        for record in records:
            is_active = record.is_active and record.stake_id not in closed_by_network[record.network]
            cursor = self._conn.execute(
                f"""
                INSERT INTO stake_opened({_OPENED_COLUMNS}, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(network, stake_id) DO NOTHING
                """,
                (
                    str(record.network),
                    record.stake_id,
                    record.owner_address,
                    record.principal_amount,
                    record.share_amount,
                    record.derived_share_amount,
                    record.staked_duration_days,
                    record.start_day_index,
                    record.end_day_index,
                    record.opened_at_epoch_seconds,
                    int(record.is_auto_renewed),
                    record.source_tx_hash,
                    record.source_block_number,
                    int(is_active),
                    record.days_served,
                    record.days_left,
                    now,
                    now,
                ),
            )
            if cursor.rowcount == 1:
                inserted += 1
                continue
            if overwrite_derived:
                self._conn.execute(
                    """
                    UPDATE stake_opened
                    SET is_active = ?, days_served = ?, days_left = ?, updated_at = ?
                    WHERE network = ? AND stake_id = ?
                    """,
                    (
                        int(is_active),
                        record.days_served,
                        record.days_left,
                        now,
                        str(record.network),
                        record.stake_id,
                    ),
                )
        return inserted

    def upsert_closed(self, record: StakeClosed) -> bool:
        """Insert a closed event (ignored if already stored) and deactivate its opened row."""

        self._ensure_writable()
        now = _now_iso()
        cursor = self._conn.execute(
            f"""
            INSERT INTO stake_closed({_CLOSED_COLUMNS}, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(network, stake_id) DO NOTHING
            """,
            (
                str(record.network),
                record.stake_id,
                record.owner_address,
                record.payout_amount,
                record.principal_amount_at_close,
                record.penalty_amount,
                record.served_days,
                record.closed_at_epoch_seconds,
                record.source_tx_hash,
                record.source_block_number,
                now,
            ),
        )
        self._conn.execute(
            """
            UPDATE stake_opened SET is_active = 0, updated_at = ?
            WHERE network = ? AND stake_id = ? AND is_active = 1
            """,
            (now, str(record.network), record.stake_id),
        )
        return cursor.rowcount == 1

    def refresh_stake_days(self, network: Network, current_day_index: int) -> int:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE stake_opened
            SET days_served = MAX(0, ? - start_day_index),
                days_left = MAX(0, end_day_index - ?),
                is_active = CASE WHEN end_day_index < ? THEN 0 ELSE 1 END,
                updated_at = ?
            WHERE network = ? AND is_active = 1
            """,
            (current_day_index, current_day_index, current_day_index, _now_iso(), str(network)),
        )
        return int(cursor.rowcount)

    def closed_ids_among(self, network: Network, stake_ids: Sequence[str]) -> set[str]:
        found: set[str] = set()
        for chunk in _chunks(list(stake_ids)):
            placeholders = ", ".join("?" for _ in chunk)
            rows = self._conn.execute(
                f"SELECT stake_id FROM stake_closed WHERE network = ? AND stake_id IN ({placeholders})",
                (str(network), *chunk),
            ).fetchall()
            found.update(str(row["stake_id"]) for row in rows)
        return found

    def existing_opened_ids(self, network: Network, stake_ids: Sequence[str]) -> set[str]:
        found: set[str] = set()
        for chunk in _chunks(list(stake_ids)):
            placeholders = ", ".join("?" for _ in chunk)
            rows = self._conn.execute(
                f"SELECT stake_id FROM stake_opened WHERE network = ? AND stake_id IN ({placeholders})",
                (str(network), *chunk),
            ).fetchall()
            found.update(str(row["stake_id"]) for row in rows)
        return found

    def all_closed_ids(self, network: Network) -> set[str]:
        rows = self._conn.execute(
            "SELECT stake_id FROM stake_closed WHERE network = ?", (str(network),)
        ).fetchall()
        return {str(row["stake_id"]) for row in rows}

    def count_opened(self, network: Network) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM stake_opened WHERE network = ?", (str(network),)
        ).fetchone()
        return int(row["n"])

    def count_closed(self, network: Network) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM stake_closed WHERE network = ?", (str(network),)
        ).fetchone()
        return int(row["n"])

    def list_active(
        self, network: Network, *, limit: int, current_day_index: int | None = None
    ) -> list[StakeOpened]:
        query = f"SELECT {_OPENED_COLUMNS} FROM stake_opened WHERE network = ? AND is_active = 1"
        params: list[object] = [str(network)]
        if current_day_index is not None:
            query += " AND end_day_index >= ?"
            params.append(current_day_index)
        query += f" ORDER BY {_PRINCIPAL_DESC} LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(query, params).fetchall()
        return [_row_to_opened(row) for row in rows]

    def iter_active_principal_durations(self, network: Network) -> Iterator[tuple[str, int]]:
        """Yield (principal_amount, staked_duration_days) per active row straight off the cursor."""

        cursor = self._conn.execute(
            """
            SELECT principal_amount, staked_duration_days FROM stake_opened
            WHERE network = ? AND is_active = 1
            """,
            (str(network),),
        )
        for row in cursor:
            yield str(row["principal_amount"]), int(row["staked_duration_days"])

    def list_recent(self, network: Network, *, limit: int) -> list[StakeOpened]:
        rows = self._conn.execute(
            f"""
            SELECT {_OPENED_COLUMNS} FROM stake_opened WHERE network = ?
            ORDER BY opened_at_epoch_seconds DESC, LENGTH(stake_id) DESC, stake_id DESC
            LIMIT ?
            """,
            (str(network), limit),
        ).fetchall()
        return [_row_to_opened(row) for row in rows]

    def opened_for_owner(self, network: Network, owner_address: str) -> list[StakeOpened]:
        rows = self._conn.execute(
            f"""
            SELECT {_OPENED_COLUMNS} FROM stake_opened
            WHERE network = ? AND owner_address = ?
            ORDER BY opened_at_epoch_seconds ASC, LENGTH(stake_id) ASC, stake_id ASC
            """,
            (str(network), owner_address),
        ).fetchall()
        return [_row_to_opened(row) for row in rows]

    def closed_for_owner(self, network: Network, owner_address: str) -> list[StakeClosed]:
        rows = self._conn.execute(
            f"""
            SELECT {_CLOSED_COLUMNS} FROM stake_closed
            WHERE network = ? AND owner_address = ?
            ORDER BY closed_at_epoch_seconds ASC, LENGTH(stake_id) ASC, stake_id ASC
            """,
            (str(network), owner_address),
        ).fetchall()
        return [_row_to_closed(row) for row in rows]

    def distinct_owners(self, network: Network, *, limit: int) -> list[str]:
        rows = self._conn.execute(
            """
            SELECT owner_address FROM stake_opened WHERE network = ?
            GROUP BY owner_address
            ORDER BY MAX(opened_at_epoch_seconds) DESC, owner_address ASC
            LIMIT ?
            """,
            (str(network), limit),
        ).fetchall()
        return [str(row["owner_address"]) for row in rows]

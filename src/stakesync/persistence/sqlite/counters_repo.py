from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime

from stakesync.domain.models import GlobalCounters, Network

logger = logging.getLogger(__name__)


class SqliteCountersRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "counters"}})
            raise PermissionError("UnitOfWork is read-only; counter writes are blocked")

    def insert(self, record: GlobalCounters) -> bool:
        """Append one day's snapshot; a second snapshot for the same day is ignored."""

        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT INTO global_counters(
                network, day_index, total_shares, total_penalty, total_locked,
                latest_stake_id, captured_at_epoch_seconds, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(network, day_index) DO NOTHING
            """,
            (
                str(record.network),
                record.day_index,
                record.total_shares,
                record.total_penalty,
                record.total_locked,
                record.latest_stake_id,
                record.captured_at_epoch_seconds,
                datetime.now(UTC).isoformat(),
            ),
        )
        return cursor.rowcount == 1

    def latest(self, network: Network) -> GlobalCounters | None:
        row = self._conn.execute(
            """
            SELECT network, day_index, total_shares, total_penalty, total_locked,
                   latest_stake_id, captured_at_epoch_seconds
            FROM global_counters
            WHERE network = ?
            ORDER BY day_index DESC, captured_at_epoch_seconds DESC
            LIMIT 1
            """,
            (str(network),),
        ).fetchone()
        if row is None:
            return None
        return GlobalCounters(
            day_index=int(row["day_index"]),
            total_shares=str(row["total_shares"]),
            total_penalty=str(row["total_penalty"]),
            total_locked=str(row["total_locked"]),
            latest_stake_id=row["latest_stake_id"],
            captured_at_epoch_seconds=int(row["captured_at_epoch_seconds"]),
            network=Network(row["network"]),
        )

    def cleanup(self, network: Network, *, captured_before: int, keep_latest: int) -> int:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            DELETE FROM global_counters
            WHERE network = ?
              AND captured_at_epoch_seconds < ?
              AND id NOT IN (
                  SELECT id FROM global_counters
                  WHERE network = ?
                  ORDER BY day_index DESC, captured_at_epoch_seconds DESC
                  LIMIT ?
              )
            """,
            (str(network), captured_before, str(network), keep_latest),
        )
        return int(cursor.rowcount)

    def count(self, network: Network) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM global_counters WHERE network = ?", (str(network),)
        ).fetchone()
        return int(row["n"])

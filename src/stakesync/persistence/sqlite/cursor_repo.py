from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime

from stakesync.domain.models import Network, SyncCursor, SyncCursorPatch

logger = logging.getLogger(__name__)

# Patch field -> column. Only these names can ever reach the SET clause.
_PATCH_COLUMNS: dict[str, str] = {
    "last_synced_stake_id": "last_synced_stake_id",
    "last_synced_block_number": "last_synced_block_number",
    "last_synced_at_epoch_seconds": "last_synced_at_epoch_seconds",
    "total_opened_synced": "total_opened_synced",
    "total_closed_synced": "total_closed_synced",
    "sync_in_progress": "sync_in_progress",
    "sync_started_at": "sync_started_at",
    "sync_completed_at": "sync_completed_at",
    "last_error_message": "last_error_message",
}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _to_column_value(value: object) -> object:
    if isinstance(value, bool):
        return int(value)
    return value


def _set_clause(changes: dict[str, object]) -> tuple[str, list[object]]:
    assignments: list[str] = []
    params: list[object] = []
    for field_name, value in changes.items():
        column = _PATCH_COLUMNS[field_name]
        assignments.append(f"{column} = ?")
        params.append(_to_column_value(value))
    assignments.append("updated_at = ?")
    params.append(_now_iso())
    return ", ".join(assignments), params


class SqliteCursorRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "cursor"}})
            raise PermissionError("UnitOfWork is read-only; cursor writes are blocked")

    def ensure(self, network: Network) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO sync_cursor(network, updated_at) VALUES (?, ?)
            ON CONFLICT(network) DO NOTHING
            """,
            (str(network), _now_iso()),
        )

    def get(self, network: Network) -> SyncCursor | None:
        row = self._conn.execute(
            """
            SELECT network, last_synced_stake_id, last_synced_block_number,
                   last_synced_at_epoch_seconds, total_opened_synced, total_closed_synced,
                   sync_in_progress, sync_started_at, sync_completed_at, last_error_message
            FROM sync_cursor WHERE network = ?
            """,
            (str(network),),
        ).fetchone()
        if row is None:
            return None
        return SyncCursor(
            network=Network(row["network"]),
            last_synced_stake_id=str(row["last_synced_stake_id"]),
            last_synced_block_number=row["last_synced_block_number"],
            last_synced_at_epoch_seconds=row["last_synced_at_epoch_seconds"],
            total_opened_synced=int(row["total_opened_synced"]),
            total_closed_synced=int(row["total_closed_synced"]),
            sync_in_progress=bool(row["sync_in_progress"]),
            sync_started_at=row["sync_started_at"],
            sync_completed_at=row["sync_completed_at"],
            last_error_message=row["last_error_message"],
        )

    def update(self, network: Network, patch: SyncCursorPatch) -> int:
        self._ensure_writable()
        changes = patch.changes()
        if not changes:
            return 0
        self.ensure(network)
        assignments, params = _set_clause(changes)
        params.append(str(network))
        cursor = self._conn.execute(
            f"UPDATE sync_cursor SET {assignments} WHERE network = ?",
            params,
        )
        return int(cursor.rowcount)

    def release(self, network: Network, patch: SyncCursorPatch, *, started_at: int) -> bool:
        """Clear the guard only if it is still held by the run that set ``started_at``."""

        self._ensure_writable()
        changes = {**patch.changes(), "sync_in_progress": False}
        assignments, params = _set_clause(changes)
        params.extend([str(network), started_at])
        cursor = self._conn.execute(
            f"""
            UPDATE sync_cursor SET {assignments}
            WHERE network = ? AND sync_in_progress = 1 AND sync_started_at = ?
            """,
            params,
        )
        return cursor.rowcount == 1

    def try_acquire(self, network: Network, *, now: int, stale_before: int) -> bool:
        """Compare-and-set the guard; a holder that started before ``stale_before`` loses it."""

        self._ensure_writable()
        self.ensure(network)
        cursor = self._conn.execute(
            """
            UPDATE sync_cursor
            SET sync_in_progress = 1, sync_started_at = ?, updated_at = ?
            WHERE network = ?
              AND (
                  sync_in_progress = 0
                  OR sync_started_at IS NULL
                  OR sync_started_at < ?
              )
            """,
            (now, _now_iso(), str(network), stale_before),
        )
        return cursor.rowcount == 1

    def force_release(self, network: Network) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE sync_cursor
            SET sync_in_progress = 0, sync_started_at = NULL, updated_at = ?
            WHERE network = ? AND sync_in_progress = 1
            """,
            (_now_iso(), str(network)),
        )
        return cursor.rowcount == 1

    def count(self, network: Network) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM sync_cursor WHERE network = ?", (str(network),)
        ).fetchone()
        return int(row["n"])

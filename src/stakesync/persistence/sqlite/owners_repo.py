from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime

from stakesync.domain.models import Network, OwnerAggregate

logger = logging.getLogger(__name__)


class SqliteOwnersRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "owners"}})
            raise PermissionError("UnitOfWork is read-only; owner aggregate writes are blocked")

    def replace(self, aggregate: OwnerAggregate) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO owner_aggregates(
                network, owner_address, total_stakes, active_stakes, ended_stakes,
                total_principal, total_shares, total_payouts, total_penalties,
                average_duration_days, first_stake_at, last_stake_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(network, owner_address) DO UPDATE SET
                total_stakes=excluded.total_stakes,
                active_stakes=excluded.active_stakes,
                ended_stakes=excluded.ended_stakes,
                total_principal=excluded.total_principal,
                total_shares=excluded.total_shares,
                total_payouts=excluded.total_payouts,
                total_penalties=excluded.total_penalties,
                average_duration_days=excluded.average_duration_days,
                first_stake_at=excluded.first_stake_at,
                last_stake_at=excluded.last_stake_at,
                updated_at=excluded.updated_at
            """,
            (
                str(aggregate.network),
                aggregate.owner_address,
                aggregate.total_stakes,
                aggregate.active_stakes,
                aggregate.ended_stakes,
                aggregate.total_principal,
                aggregate.total_shares,
                aggregate.total_payouts,
                aggregate.total_penalties,
                aggregate.average_duration_days,
                aggregate.first_stake_at,
                aggregate.last_stake_at,
                datetime.now(UTC).isoformat(),
            ),
        )

    def get(self, network: Network, owner_address: str) -> OwnerAggregate | None:
        row = self._conn.execute(
            """
            SELECT * FROM owner_aggregates WHERE network = ? AND owner_address = ?
            """,
            (str(network), owner_address),
        ).fetchone()
        if row is None:
            return None
        return OwnerAggregate(
            owner_address=str(row["owner_address"]),
            network=Network(row["network"]),
            total_stakes=int(row["total_stakes"]),
            active_stakes=int(row["active_stakes"]),
            ended_stakes=int(row["ended_stakes"]),
            total_principal=str(row["total_principal"]),
            total_shares=str(row["total_shares"]),
            total_payouts=str(row["total_payouts"]),
            total_penalties=str(row["total_penalties"]),
            average_duration_days=float(row["average_duration_days"]),
            first_stake_at=row["first_stake_at"],
            last_stake_at=row["last_stake_at"],
        )

    def count(self, network: Network) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM owner_aggregates WHERE network = ?", (str(network),)
        ).fetchone()
        return int(row["n"])

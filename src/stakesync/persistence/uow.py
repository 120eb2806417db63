from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from stakesync.persistence.interfaces import (
    CountersRepoProtocol,
    CursorRepoProtocol,
    OwnersRepoProtocol,
    StakesRepoProtocol,
)
from stakesync.persistence.sqlite import (
    SqliteCountersRepo,
    SqliteCursorRepo,
    SqliteOwnersRepo,
    SqliteStakesRepo,
)
from stakesync.persistence.sqlite.sqlite_connection import (
    create_sqlite_connection,
    ensure_ledger_schema,
)

logger = logging.getLogger(__name__)


class UnitOfWork:
    def __init__(self, db_path: str, *, read_only: bool = False) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self.stakes: StakesRepoProtocol
        self.counters: CountersRepoProtocol
        self.cursor: CursorRepoProtocol
        self.owners: OwnersRepoProtocol

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        try:
            ensure_ledger_schema(conn)
            conn.commit()
            if self.read_only:
                conn.execute("BEGIN")
            else:
                conn.execute("BEGIN IMMEDIATE")
        except BaseException:
            conn.close()
            raise
        self._conn = conn
        self.stakes = SqliteStakesRepo(conn, read_only=self.read_only)
        self.counters = SqliteCountersRepo(conn, read_only=self.read_only)
        self.cursor = SqliteCursorRepo(conn, read_only=self.read_only)
        self.owners = SqliteOwnersRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only)

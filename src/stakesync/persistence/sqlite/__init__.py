from stakesync.persistence.sqlite.counters_repo import SqliteCountersRepo
from stakesync.persistence.sqlite.cursor_repo import SqliteCursorRepo
from stakesync.persistence.sqlite.owners_repo import SqliteOwnersRepo
from stakesync.persistence.sqlite.stakes_repo import SqliteStakesRepo

__all__ = ["SqliteStakesRepo", "SqliteCountersRepo", "SqliteCursorRepo", "SqliteOwnersRepo"]

from stakesync.persistence.interfaces.counters_repo import CountersRepoProtocol
from stakesync.persistence.interfaces.cursor_repo import CursorRepoProtocol
from stakesync.persistence.interfaces.owners_repo import OwnersRepoProtocol
from stakesync.persistence.interfaces.stakes_repo import StakesRepoProtocol

__all__ = [
    "StakesRepoProtocol",
    "CountersRepoProtocol",
    "CursorRepoProtocol",
    "OwnersRepoProtocol",
]

from __future__ import annotations

from typing import Protocol

from stakesync.domain.models import Network, SyncCursor, SyncCursorPatch


class CursorRepoProtocol(Protocol):
    def ensure(self, network: Network) -> None: ...

    def get(self, network: Network) -> SyncCursor | None: ...

    def update(self, network: Network, patch: SyncCursorPatch) -> int: ...

    def try_acquire(self, network: Network, *, now: int, stale_before: int) -> bool: ...

    def release(self, network: Network, patch: SyncCursorPatch, *, started_at: int) -> bool: ...

    def force_release(self, network: Network) -> bool: ...

    def count(self, network: Network) -> int: ...

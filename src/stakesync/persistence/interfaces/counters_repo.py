from __future__ import annotations

from typing import Protocol

from stakesync.domain.models import GlobalCounters, Network


class CountersRepoProtocol(Protocol):
    def insert(self, record: GlobalCounters) -> bool: ...

    def latest(self, network: Network) -> GlobalCounters | None: ...

    def cleanup(self, network: Network, *, captured_before: int, keep_latest: int) -> int: ...

    def count(self, network: Network) -> int: ...

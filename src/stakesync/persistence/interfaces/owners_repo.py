from __future__ import annotations

from typing import Protocol

from stakesync.domain.models import Network, OwnerAggregate


class OwnersRepoProtocol(Protocol):
    def replace(self, aggregate: OwnerAggregate) -> None: ...

    def get(self, network: Network, owner_address: str) -> OwnerAggregate | None: ...

    def count(self, network: Network) -> int: ...

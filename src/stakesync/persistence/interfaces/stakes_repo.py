from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Protocol

from stakesync.domain.models import Network, StakeClosed, StakeOpened


class StakesRepoProtocol(Protocol):
    def upsert_opened_batch(
        self, records: Sequence[StakeOpened], *, overwrite_derived: bool = True
    ) -> int: ...

    def upsert_closed(self, record: StakeClosed) -> bool: ...

    def refresh_stake_days(self, network: Network, current_day_index: int) -> int: ...

    def closed_ids_among(self, network: Network, stake_ids: Sequence[str]) -> set[str]: ...

    def existing_opened_ids(self, network: Network, stake_ids: Sequence[str]) -> set[str]: ...

    def all_closed_ids(self, network: Network) -> set[str]: ...

    def count_opened(self, network: Network) -> int: ...

    def count_closed(self, network: Network) -> int: ...

    def list_active(
        self, network: Network, *, limit: int, current_day_index: int | None = None
    ) -> list[StakeOpened]: ...

    def iter_active_principal_durations(self, network: Network) -> Iterator[tuple[str, int]]: ...

    def list_recent(self, network: Network, *, limit: int) -> list[StakeOpened]: ...

    def opened_for_owner(self, network: Network, owner_address: str) -> list[StakeOpened]: ...

    def closed_for_owner(self, network: Network, owner_address: str) -> list[StakeClosed]: ...

    def distinct_owners(self, network: Network, *, limit: int) -> list[str]: ...

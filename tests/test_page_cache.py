from __future__ import annotations

from stakesync.domain.models import Network
from stakesync.services.page_cache import PageCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl(make_opened) -> None:
    clock = FakeClock()
    cache = PageCache(ttl_seconds=300, clock=clock)
    cache.put(Network.ETHEREUM, opened=(make_opened(1),), closed=(), current_day_index=10)

    clock.now += 300
    entry = cache.get(Network.ETHEREUM)
    assert entry is not None
    assert entry.current_day_index == 10

    clock.now += 1
    assert cache.get(Network.ETHEREUM) is None


def test_put_replaces_entry_wholesale(make_opened, make_closed) -> None:
    cache = PageCache()
    cache.put(Network.ETHEREUM, opened=(make_opened(1),), closed=(make_closed(1),), current_day_index=1)
    cache.put(Network.ETHEREUM, opened=(make_opened(2),), closed=(), current_day_index=2)

    entry = cache.get(Network.ETHEREUM)

    assert entry is not None
    assert [record.stake_id for record in entry.opened] == ["2"]
    assert entry.closed == ()


def test_networks_are_cached_separately_and_cleared(make_opened) -> None:
    cache = PageCache()
    cache.put(Network.ETHEREUM, opened=(make_opened(1),), closed=(), current_day_index=1)
    cache.put(Network.PULSECHAIN, opened=(), closed=(), current_day_index=1)

    cache.clear(Network.ETHEREUM)

    assert cache.get(Network.ETHEREUM) is None
    assert cache.get(Network.PULSECHAIN) is not None

    cache.clear()
    assert cache.get(Network.PULSECHAIN) is None

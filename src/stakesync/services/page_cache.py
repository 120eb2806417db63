from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from stakesync.domain.models import Network, StakeClosed, StakeOpened
from stakesync.observability import get_instrumentation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageSet:
    """Records fetched by the last successful sync run for one network."""

    network: Network
    opened: tuple[StakeOpened, ...]
    closed: tuple[StakeClosed, ...]
    current_day_index: int | None
    fetched_at: float


class PageCache:
    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.ttl_seconds = max(0.0, ttl_seconds)
        self._clock = clock or time.monotonic
        self._entries: dict[Network, PageSet] = {}
        self._lock = Lock()

    def _is_fresh(self, entry: PageSet, now: float) -> bool:
        return (now - entry.fetched_at) <= self.ttl_seconds

    def put(
        self,
        network: Network,
        *,
        opened: tuple[StakeOpened, ...],
        closed: tuple[StakeClosed, ...],
        current_day_index: int | None,
    ) -> PageSet:
        entry = PageSet(
            network=network,
            opened=opened,
            closed=closed,
            current_day_index=current_day_index,
            fetched_at=self._clock(),
        )
        with self._lock:
            self._entries[network] = entry
        return entry

    def get(self, network: Network) -> PageSet | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(network)
            if entry is not None and not self._is_fresh(entry, now):
                del self._entries[network]
                entry = None
        if entry is None:
            get_instrumentation().counter("page_cache_miss_total", 1, attrs={"network": str(network)})
            return None
        get_instrumentation().counter("page_cache_hit_total", 1, attrs={"network": str(network)})
        return entry

    def clear(self, network: Network | None = None) -> None:
        with self._lock:
            if network is None:
                self._entries.clear()
            else:
                self._entries.pop(network, None)
        logger.debug(
            "page_cache_cleared",
            extra={"extra": {"network": str(network) if network is not None else "all"}},
        )

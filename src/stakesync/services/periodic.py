from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from threading import Event, Lock, Thread

from stakesync.domain.models import Network

logger = logging.getLogger(__name__)


@dataclass
class _Schedule:
    network: Network
    interval_seconds: float
    stop_event: Event
    thread: Thread
    ticks: int = 0


class PeriodicSyncRunner:
    """One background thread per network, each calling ``tick`` on a fixed interval.

    The first tick runs immediately. Stopping wakes the sleeping thread and joins it,
    so a stop never waits out the remaining interval. A tick that raises is logged
    and the schedule keeps going.
    """

    def __init__(
        self,
        tick: Callable[[Network], object],
        *,
        join_timeout_seconds: float = 30.0,
    ) -> None:
        self._tick = tick
        self._join_timeout_seconds = join_timeout_seconds
        self._schedules: dict[Network, _Schedule] = {}
        self._lock = Lock()

    def is_running(self, network: Network) -> bool:
        with self._lock:
            schedule = self._schedules.get(network)
        return schedule is not None and schedule.thread.is_alive()

    def networks(self) -> list[Network]:
        with self._lock:
            return sorted(self._schedules)

    def start(self, network: Network, interval_minutes: float) -> bool:
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be > 0")
        with self._lock:
            existing = self._schedules.get(network)
            if existing is not None and existing.thread.is_alive():
                logger.info(
                    "periodic_sync_already_scheduled",
                    extra={"extra": {"network": str(network)}},
                )
                return False
            stop_event = Event()
            schedule = _Schedule(
                network=network,
                interval_seconds=float(interval_minutes) * 60.0,
                stop_event=stop_event,
                thread=Thread(
                    target=self._loop,
                    args=(network, stop_event),
                    name=f"stakesync-periodic-{network}",
                    daemon=True,
                ),
            )
            self._schedules[network] = schedule
        logger.info(
            "periodic_sync_started",
            extra={"extra": {"network": str(network), "interval_minutes": interval_minutes}},
        )
        schedule.thread.start()
        return True

    def stop(self, network: Network) -> bool:
        with self._lock:
            schedule = self._schedules.pop(network, None)
        if schedule is None:
            return False
        schedule.stop_event.set()
        schedule.thread.join(timeout=self._join_timeout_seconds)
        logger.info(
            "periodic_sync_stopped",
            extra={
                "extra": {
                    "network": str(network),
                    "ticks": schedule.ticks,
                    "joined": not schedule.thread.is_alive(),
                }
            },
        )
        return True

    def stop_all(self) -> None:
        for network in self.networks():
            self.stop(network)

    def _loop(self, network: Network, stop_event: Event) -> None:
        with self._lock:
            schedule = self._schedules.get(network)
        if schedule is None:
            return
        while not stop_event.is_set():
            schedule.ticks += 1
            try:
                self._tick(network)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "periodic_sync_tick_failed",
                    extra={
                        "extra": {
                            "network": str(network),
                            "tick": schedule.ticks,
                            "error_type": type(exc).__name__,
                        }
                    },
                )
            if stop_event.wait(schedule.interval_seconds):
                break

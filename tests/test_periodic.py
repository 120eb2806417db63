from __future__ import annotations

import threading

import pytest

from stakesync.domain.models import Network
from stakesync.services.periodic import PeriodicSyncRunner


def test_first_tick_runs_immediately_and_stop_wakes_thread() -> None:
    ticked = threading.Event()
    calls: list[Network] = []

    def tick(network: Network) -> None:
        calls.append(network)
        ticked.set()

    runner = PeriodicSyncRunner(tick)
    assert runner.start(Network.ETHEREUM, interval_minutes=60) is True
    assert ticked.wait(timeout=5)

    assert runner.is_running(Network.ETHEREUM) is True
    assert runner.stop(Network.ETHEREUM) is True
    assert runner.is_running(Network.ETHEREUM) is False
    assert calls == [Network.ETHEREUM]


def test_ticks_repeat_on_interval() -> None:
    done = threading.Event()
    calls: list[Network] = []

    def tick(network: Network) -> None:
        calls.append(network)
        if len(calls) >= 3:
            done.set()

    runner = PeriodicSyncRunner(tick)
    runner.start(Network.PULSECHAIN, interval_minutes=0.0005)
    assert done.wait(timeout=5)
    runner.stop_all()

    assert len(calls) >= 3


def test_failing_tick_does_not_stop_schedule() -> None:
    done = threading.Event()
    attempts = 0

    def tick(network: Network) -> None:
        nonlocal attempts
        attempts += 1
        if attempts >= 2:
            done.set()
        raise RuntimeError("ledger down")

    runner = PeriodicSyncRunner(tick)
    runner.start(Network.ETHEREUM, interval_minutes=0.0005)
    assert done.wait(timeout=5)
    runner.stop(Network.ETHEREUM)

    assert attempts >= 2


def test_start_twice_keeps_single_schedule() -> None:
    release = threading.Event()
    runner = PeriodicSyncRunner(lambda network: release.wait(timeout=5))

    assert runner.start(Network.ETHEREUM, interval_minutes=60) is True
    assert runner.start(Network.ETHEREUM, interval_minutes=60) is False
    assert runner.networks() == [Network.ETHEREUM]

    release.set()
    runner.stop_all()
    assert runner.networks() == []


def test_stop_unknown_network_and_invalid_interval() -> None:
    runner = PeriodicSyncRunner(lambda network: None)

    assert runner.stop(Network.ETHEREUM) is False
    with pytest.raises(ValueError):
        runner.start(Network.ETHEREUM, interval_minutes=0)

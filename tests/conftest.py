from __future__ import annotations

import json
import os
from pathlib import Path

import httpx
import pytest

from stakesync.config import Settings
from stakesync.domain.models import Network, StakeClosed, StakeOpened


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = {"HTTPX_LOG_LEVEL", "HTTPCORE_LOG_LEVEL"}
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "stakesync-test.sqlite"))


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "ledger.sqlite")


@pytest.fixture
def make_opened():
    def _make(stake_id: int | str, **overrides) -> StakeOpened:
        base = {
            "stake_id": str(stake_id),
            "owner_address": "0xowner",
            "principal_amount": "1000",
            "share_amount": "10",
            "derived_share_amount": "10",
            "staked_duration_days": 365,
            "start_day_index": 100,
            "end_day_index": 465,
            "opened_at_epoch_seconds": 1_700_000_000 + int(stake_id),
            "is_auto_renewed": False,
            "source_tx_hash": f"0xtx{stake_id}",
            "source_block_number": 1000 + int(stake_id),
            "network": Network.ETHEREUM,
        }
        base.update(overrides)
        return StakeOpened(**base)

    return _make


@pytest.fixture
def make_closed():
    def _make(stake_id: int | str, **overrides) -> StakeClosed:
        base = {
            "stake_id": str(stake_id),
            "owner_address": "0xowner",
            "payout_amount": "1100",
            "principal_amount_at_close": "1000",
            "penalty_amount": "0",
            "served_days": 365,
            "closed_at_epoch_seconds": 1_710_000_000 + int(stake_id),
            "source_tx_hash": f"0xend{stake_id}",
            "source_block_number": 5000 + int(stake_id),
            "network": Network.ETHEREUM,
        }
        base.update(overrides)
        return StakeClosed(**base)

    return _make


LEDGER_ENDPOINT = "https://ledger.example/subgraphs/name/pulse"


def _stake_start(stake_id: int, owner: str) -> dict:
    return {
        "id": f"0x{stake_id:x}",
        "stakeId": str(stake_id),
        "stakerAddr": owner,
        "stakedHearts": str(1000 * stake_id),
        "stakeShares": "5000",
        "stakeTShares": "0.005",
        "stakedDays": "365",
        "startDay": "100",
        "endDay": "465",
        "timestamp": str(1_700_000_000 + stake_id),
        "isAutoStake": False,
        "transactionHash": f"0xtx{stake_id}",
        "blockNumber": "17000000",
    }


def _stake_end(stake_id: int, owner: str) -> dict:
    return {
        "id": f"end-{stake_id}",
        "stakeId": str(stake_id),
        "stakerAddr": owner,
        "payout": "2500",
        "stakedHearts": str(1000 * stake_id),
        "penalty": "0",
        "servedDays": "200",
        "timestamp": "1710000000",
        "transactionHash": f"0xend{stake_id}",
        "blockNumber": "18000000",
    }


class FakeLedger:
    """Serves stakeStarts, stakeEnds and globalInfos from in-memory rows."""

    def __init__(self) -> None:
        self.starts = [
            _stake_start(1, "0xABCDEF"),
            _stake_start(2, "0xabcdef"),
            _stake_start(3, "0x1234"),
        ]
        self.ends = [_stake_end(2, "0xabcdef")]
        self.opened_afters: list[str] = []
        self.status_code = 200

    def add_start(self, stake_id: int, owner: str) -> None:
        self.starts.append(_stake_start(stake_id, owner))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="upstream unavailable")
        body = json.loads(request.content)
        query = body["query"]
        variables = body.get("variables") or {}
        if "globalInfos" in query:
            info = {
                "hexDay": "300",
                "stakeSharesTotal": "15000",
                "stakePenaltyTotal": "0",
                "lockedHeartsTotal": "6000",
                "latestStakeId": "3",
                "timestamp": "1700000500",
            }
            return httpx.Response(200, json={"data": {"globalInfos": [info]}})
        if "stakeStarts" in query:
            after = int(variables["after"])
            self.opened_afters.append(variables["after"])
            rows = [row for row in self.starts if int(row["stakeId"]) > after]
            return httpx.Response(200, json={"data": {"stakeStarts": rows[: variables["first"]]}})
        if "stakeEnds" in query:
            skip = variables["skip"]
            rows = self.ends[skip : skip + variables["first"]]
            return httpx.Response(200, json={"data": {"stakeEnds": rows}})
        return httpx.Response(400, json={"errors": [{"message": "unknown query"}]})


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def ledger_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NETWORKS", "pulsechain")
    monkeypatch.setenv("PULSECHAIN_LEDGER_URLS", LEDGER_ENDPOINT)
    monkeypatch.setenv("LEDGER_PAGE_DELAY_MS", "0")
    monkeypatch.setenv("SYNC_RETRY_MAX_ATTEMPTS", "1")

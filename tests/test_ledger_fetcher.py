from __future__ import annotations

import json

import httpx
import pytest

from stakesync.adapters.ledger_client import LedgerQueryClient
from stakesync.adapters.ledger_fetcher import LedgerPageFetcher
from stakesync.domain.errors import ConfigurationError, SourceUnavailable
from stakesync.domain.models import Network

ENDPOINT = "https://ledger.example/subgraphs/name/hex"


def _stake_start(stake_id: int, **overrides) -> dict:
    raw = {
        "id": f"0x{stake_id:x}",
        "stakeId": str(stake_id),
        "stakerAddr": "0xABCDEF",
        "stakedHearts": "1000000000",
        "stakeShares": "5000",
        "stakeTShares": "0.005",
        "stakedDays": "365",
        "startDay": "100",
        "endDay": "465",
        "timestamp": "1700000000",
        "isAutoStake": False,
        "transactionHash": f"0xtx{stake_id}",
        "blockNumber": "17000000",
    }
    raw.update(overrides)
    return raw


def _stake_end(stake_id: int, **overrides) -> dict:
    raw = {
        "id": f"end-{stake_id}",
        "stakeId": str(stake_id),
        "stakerAddr": "0xabcdef",
        "payout": "1100",
        "stakedHearts": "1000",
        "penalty": "0",
        "servedDays": "365",
        "timestamp": "1710000000",
        "transactionHash": f"0xend{stake_id}",
        "blockNumber": "18000000",
    }
    raw.update(overrides)
    return raw


def _fetcher(handler, *, endpoints=(ENDPOINT,), max_skip: int = 5000) -> LedgerPageFetcher:
    client = LedgerQueryClient(
        network="ethereum",
        endpoints=endpoints,
        transport=httpx.MockTransport(handler),
    )
    return LedgerPageFetcher({Network.ETHEREUM: client}, page_delay_ms=0, max_skip=max_skip)


def test_opened_page_maps_records_to_domain() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["variables"] == {"after": "0", "first": 10}
        assert "stakeId_gt" in body["query"]
        return httpx.Response(200, json={"data": {"stakeStarts": [_stake_start(1), _stake_start(2)]}})

    fetcher = _fetcher(handler)
    page = fetcher.fetch_opened_page(Network.ETHEREUM, "0", 10)
    fetcher.close()

    assert page.has_more is False
    assert page.rejected == 0
    assert page.last_stake_id == "2"
    first = page.records[0]
    assert first.stake_id == "1"
    assert first.owner_address == "0xabcdef"
    assert first.principal_amount == "1000000000"
    assert first.derived_share_amount == "0.005"
    assert first.start_day_index == 100
    assert first.end_day_index == 465
    assert first.source_block_number == 17000000
    assert first.network is Network.ETHEREUM


def test_opened_pages_stop_after_short_page() -> None:
    sizes = [100, 100, 37]
    requested_after: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        after = json.loads(request.content)["variables"]["after"]
        requested_after.append(after)
        size = sizes[len(requested_after) - 1]
        start = int(after) + 1
        records = [_stake_start(stake_id) for stake_id in range(start, start + size)]
        return httpx.Response(200, json={"data": {"stakeStarts": records}})

    fetcher = _fetcher(handler)
    pages = list(fetcher.iter_opened_pages(Network.ETHEREUM, "0", 100))

    assert [len(page.records) for page in pages] == [100, 100, 37]
    assert [page.has_more for page in pages] == [True, True, False]
    assert requested_after == ["0", "100", "200"]


def test_malformed_records_are_quarantined_but_count_toward_page_length() -> None:
    records = [
        _stake_start(1),
        _stake_start(2, stakedHearts="not-a-number"),
        _stake_start(3, startDay="500", endDay="400"),
        _stake_start(4),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"stakeStarts": records}})

    fetcher = _fetcher(handler)
    page = fetcher.fetch_opened_page(Network.ETHEREUM, "0", 4)

    assert [record.stake_id for record in page.records] == ["1", "4"]
    assert page.rejected == 2
    assert page.rejected_ids == ("2", "3")
    assert page.has_more is True
    assert page.last_stake_id == "4"


def test_closed_pages_advance_skip_by_raw_page_length() -> None:
    skips: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        variables = json.loads(request.content)["variables"]
        skips.append(variables["skip"])
        if variables["skip"] == 10:
            return httpx.Response(200, json={"data": {"stakeEnds": [_stake_end(i) for i in range(3)]}})
        return httpx.Response(200, json={"data": {"stakeEnds": [_stake_end(i) for i in range(3, 5)]}})

    fetcher = _fetcher(handler)
    pages = list(fetcher.iter_closed_pages(Network.ETHEREUM, 10, 3))

    assert skips == [10, 13]
    assert [len(page.records) for page in pages] == [3, 2]
    assert pages[0].records[0].payout_amount == "1100"


def test_closed_pages_mark_truncation_at_skip_limit() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={"data": {"stakeEnds": [_stake_end(i) for i in range(2)]}})

    fetcher = _fetcher(handler, max_skip=3)
    pages = list(fetcher.iter_closed_pages(Network.ETHEREUM, 0, 2))

    assert calls == 2
    assert len(pages) == 3
    assert all(page.truncated_at_skip is None for page in pages[:2])
    assert pages[-1].truncated_at_skip == 4
    assert pages[-1].records == ()


def test_latest_global_counters() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "globalInfos": [
                        {
                            "hexDay": "1500",
                            "stakeSharesTotal": "123",
                            "stakePenaltyTotal": "4",
                            "lockedHeartsTotal": "999",
                            "latestStakeId": "777",
                            "timestamp": "1700000000",
                        }
                    ]
                }
            },
        )

    counters = _fetcher(handler).fetch_latest_global_counters(Network.ETHEREUM)

    assert counters is not None
    assert counters.day_index == 1500
    assert counters.latest_stake_id == "777"
    assert counters.total_locked == "999"


def test_latest_global_counters_empty_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"globalInfos": []}})

    assert _fetcher(handler).fetch_latest_global_counters(Network.ETHEREUM) is None


def test_unknown_network_is_configuration_error() -> None:
    fetcher = _fetcher(lambda request: httpx.Response(200, json={"data": {}}))

    with pytest.raises(ConfigurationError):
        fetcher.fetch_opened_page(Network.PULSECHAIN, "0", 10)


def test_non_list_field_is_not_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"stakeStarts": {"oops": 1}}})

    with pytest.raises(SourceUnavailable) as exc_info:
        _fetcher(handler).fetch_opened_page(Network.ETHEREUM, "0", 10)

    assert exc_info.value.retryable is False
    assert exc_info.value.operation == "fetch_opened_page"

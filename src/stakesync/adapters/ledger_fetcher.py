from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Mapping
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from pydantic import ValidationError

from stakesync.adapters.ledger_client import LedgerQueryClient
from stakesync.adapters.ledger_payloads import (
    GlobalInfoPayload,
    StakeEndPayload,
    StakeStartPayload,
    raw_record_id,
)
from stakesync.domain.errors import ConfigurationError, SourceUnavailable
from stakesync.domain.models import (
    GlobalCounters,
    Network,
    PageResult,
    canonical_stake_id,
    max_stake_id,
)
from stakesync.observability import Instrumentation, get_instrumentation

if TYPE_CHECKING:
    from stakesync.config import Settings

logger = logging.getLogger(__name__)

OPENED_PAGE_QUERY = """
query StakeStarts($after: BigInt!, $first: Int!) {
  stakeStarts(
    first: $first
    where: { stakeId_gt: $after }
    orderBy: stakeId
    orderDirection: asc
  ) {
    id
    stakeId
    stakerAddr
    stakedHearts
    stakeShares
    stakedDays
    startDay
    endDay
    timestamp
    isAutoStake
    stakeTShares
    transactionHash
    blockNumber
  }
}
"""

CLOSED_PAGE_QUERY = """
query StakeEnds($first: Int!, $skip: Int!) {
  stakeEnds(first: $first, skip: $skip, orderBy: timestamp, orderDirection: asc) {
    id
    stakeId
    stakerAddr
    payout
    stakedHearts
    penalty
    servedDays
    timestamp
    transactionHash
    blockNumber
  }
}
"""

GLOBAL_COUNTERS_QUERY = """
query LatestGlobalInfo {
  globalInfos(first: 1, orderBy: timestamp, orderDirection: desc) {
    hexDay
    stakeSharesTotal
    stakePenaltyTotal
    lockedHeartsTotal
    latestStakeId
    timestamp
  }
}
"""

PageCall = Callable[[Callable[[], PageResult]], PageResult]


class LedgerFetcherProtocol(Protocol):
    def fetch_opened_page(
        self, network: Network, after_stake_id: str, page_size: int
    ) -> PageResult: ...

    def fetch_closed_page(self, network: Network, skip: int, page_size: int) -> PageResult: ...

    def fetch_latest_global_counters(self, network: Network) -> GlobalCounters | None: ...

    def iter_opened_pages(
        self,
        network: Network,
        after_stake_id: str,
        page_size: int,
        *,
        page_call: PageCall | None = None,
    ) -> Iterator[PageResult]: ...

    def iter_closed_pages(
        self,
        network: Network,
        start_skip: int,
        page_size: int,
        *,
        page_call: PageCall | None = None,
    ) -> Iterator[PageResult]: ...

    def close(self) -> None: ...


def _direct(call: Callable[[], PageResult]) -> PageResult:
    return call()


class LedgerPageFetcher:
    def __init__(
        self,
        clients: Mapping[Network, LedgerQueryClient],
        *,
        page_delay_ms: int = 100,
        max_skip: int = 5000,
        sleep_fn: Callable[[float], None] | None = None,
        instrumentation: Instrumentation | None = None,
    ) -> None:
        self._clients = dict(clients)
        self.page_delay_ms = page_delay_ms
        self.max_skip = max_skip
        self._sleep = sleep_fn or time.sleep
        self._instrumentation = instrumentation

    @property
    def instrumentation(self) -> Instrumentation:
        return self._instrumentation or get_instrumentation()

    def close(self) -> None:
        for client in self._clients.values():
            client.close()

    def _client(self, network: Network) -> LedgerQueryClient:
        client = self._clients.get(network)
        if client is None:
            raise ConfigurationError(f"network {network} is not enabled")
        return client

    def fetch_opened_page(self, network: Network, after_stake_id: str, page_size: int) -> PageResult:
        operation = "fetch_opened_page"
        data = self._client(network).query(
            OPENED_PAGE_QUERY,
            {"after": canonical_stake_id(after_stake_id), "first": page_size},
            operation=operation,
        )
        raw_records = self._extract_list(data, "stakeStarts", network=network, operation=operation)
        return self._build_page(
            raw_records,
            StakeStartPayload,
            network=network,
            page_size=page_size,
            operation=operation,
        )

    def fetch_closed_page(self, network: Network, skip: int, page_size: int) -> PageResult:
        operation = "fetch_closed_page"
        data = self._client(network).query(
            CLOSED_PAGE_QUERY,
            {"first": page_size, "skip": skip},
            operation=operation,
        )
        raw_records = self._extract_list(data, "stakeEnds", network=network, operation=operation)
        return self._build_page(
            raw_records,
            StakeEndPayload,
            network=network,
            page_size=page_size,
            operation=operation,
        )

    def fetch_latest_global_counters(self, network: Network) -> GlobalCounters | None:
        operation = "fetch_latest_global_counters"
        data = self._client(network).query(GLOBAL_COUNTERS_QUERY, operation=operation)
        raw_records = self._extract_list(data, "globalInfos", network=network, operation=operation)
        if not raw_records:
            return None
        try:
            return GlobalInfoPayload.model_validate(raw_records[0]).to_domain(network)
        except ValidationError as exc:
            self._record_rejection(network, operation, raw_records[0], exc)
            return None

    def iter_opened_pages(
        self,
        network: Network,
        after_stake_id: str,
        page_size: int,
        *,
        page_call: PageCall | None = None,
    ) -> Iterator[PageResult]:
        """Yield opened pages in ascending id order until a short page ends the stream."""

        call = page_call or _direct
        cursor = canonical_stake_id(after_stake_id)
        first = True
        while True:
            if not first:
                self._page_delay()
            first = False
            page = call(lambda after=cursor: self.fetch_opened_page(network, after, page_size))
            yield page
            if not page.has_more or page.last_stake_id is None:
                return
            cursor = page.last_stake_id

    def iter_closed_pages(
        self,
        network: Network,
        start_skip: int,
        page_size: int,
        *,
        page_call: PageCall | None = None,
    ) -> Iterator[PageResult]:
        """Yield closed pages by offset.

        The source rejects offsets above ``max_skip``. When the stream is cut
        there, a final empty page carrying ``truncated_at_skip`` is yielded so
        the caller can tell a short stream from an incomplete one.
        """

        call = page_call or _direct
        skip = max(0, start_skip)
        first = True
        while True:
            if self.max_skip and skip > self.max_skip:
                logger.warning(
                    "ledger_skip_limit_reached",
                    extra={"extra": {"network": str(network), "skip": skip, "max_skip": self.max_skip}},
                )
                yield PageResult(requested=page_size, truncated_at_skip=skip)
                return
            if not first:
                self._page_delay()
            first = False
            page = call(lambda at=skip: self.fetch_closed_page(network, at, page_size))
            yield page
            if not page.has_more:
                return
            skip += page.raw_count

    def _page_delay(self) -> None:
        if self.page_delay_ms > 0:
            self._sleep(self.page_delay_ms / 1000.0)

    def _extract_list(
        self, data: dict[str, Any], key: str, *, network: Network, operation: str
    ) -> list[Any]:
        records = data.get(key)
        if records is None:
            return []
        if not isinstance(records, list):
            raise SourceUnavailable(
                f"field {key!r} is not a list",
                network=str(network),
                operation=operation,
                retryable=False,
            )
        return records

    def _build_page(
        self,
        raw_records: list[Any],
        payload_type: type[StakeStartPayload] | type[StakeEndPayload],
        *,
        network: Network,
        page_size: int,
        operation: str,
    ) -> PageResult:
        records = []
        rejected_ids: list[str] = []
        seen_ids: list[str] = []
        for raw in raw_records:
            raw_id = raw_record_id(raw)
            if raw_id.isdigit():
                seen_ids.append(str(int(raw_id)))
            try:
                payload = payload_type.model_validate(raw)
            except ValidationError as exc:
                rejected_ids.append(raw_id)
                self._record_rejection(network, operation, raw, exc)
                continue
            records.append(payload.to_domain(network))

        page = PageResult(
            records=tuple(records),
            has_more=len(raw_records) == page_size,
            rejected=len(rejected_ids),
            requested=page_size,
            rejected_ids=tuple(rejected_ids),
            raw_count=len(raw_records),
            last_stake_id=max_stake_id(*seen_ids),
        )
        logger.debug(
            "ledger_page_fetched",
            extra={
                "extra": {
                    "network": str(network),
                    "operation": operation,
                    "records": len(records),
                    "rejected": page.rejected,
                    "has_more": page.has_more,
                }
            },
        )
        return page

    def _record_rejection(
        self, network: Network, operation: str, raw: object, exc: ValidationError
    ) -> None:
        errors = exc.errors()
        logger.warning(
            "ledger_record_rejected",
            extra={
                "extra": {
                    "network": str(network),
                    "operation": operation,
                    "raw_id": raw_record_id(raw),
                    "fields": sorted({str(err["loc"][0]) for err in errors if err.get("loc")}),
                }
            },
        )
        self.instrumentation.counter(
            "ledger_records_rejected_total",
            attrs={"network": str(network), "kind": operation},
        )


def build_ledger_fetcher(
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
    sleep_fn: Callable[[float], None] | None = None,
) -> LedgerPageFetcher:
    timeout = httpx.Timeout(
        settings.ledger_read_timeout_seconds,
        connect=settings.ledger_connect_timeout_seconds,
    )
    clients = {
        network: LedgerQueryClient(
            network=str(network),
            endpoints=settings.ledger_urls(network),
            timeout=timeout,
            transport=transport,
        )
        for network in settings.networks
    }
    return LedgerPageFetcher(
        clients,
        page_delay_ms=settings.ledger_page_delay_ms,
        max_skip=settings.ledger_max_skip,
        sleep_fn=sleep_fn,
    )

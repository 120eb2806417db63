from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from threading import Lock
from typing import TypeVar
from uuid import uuid4

from stakesync.adapters.ledger_fetcher import LedgerFetcherProtocol
from stakesync.domain.errors import (
    AlreadyInProgress,
    SourceUnavailable,
    SyncDeadlineExceeded,
    SyncError,
    SyncGuardLost,
)
from stakesync.domain.models import (
    UNSET,
    Network,
    PageResult,
    StakeClosed,
    StakeOpened,
    SyncCursorPatch,
    max_stake_id,
)
from stakesync.domain.reconcile import is_degraded_day, reconcile
from stakesync.logging_context import with_sync_context
from stakesync.observability import Instrumentation, get_instrumentation
from stakesync.persistence.store import LedgerStore
from stakesync.services.page_cache import PageCache
from stakesync.services.retry import RetryAttempt, RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ERROR_MESSAGE_LIMIT = 500


class SyncMode(StrEnum):
    INCREMENTAL = "incremental"
    FULL = "full"


class SyncStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    ALREADY_IN_PROGRESS = "already_in_progress"


@dataclass(frozen=True)
class SyncRunResult:
    network: Network
    mode: SyncMode
    status: SyncStatus
    run_id: str
    new_opened_count: int = 0
    new_closed_count: int = 0
    rejected_count: int = 0
    last_synced_stake_id: str | None = None
    degraded: bool = False
    truncated: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status is SyncStatus.COMPLETED


@dataclass(frozen=True)
class SyncStatusReport:
    network: Network
    running: bool
    in_progress: bool
    last_sync_completed_at: int | None
    sync_started_at: int | None
    total_synced: int
    total_opened_synced: int
    total_closed_synced: int
    last_synced_stake_id: str
    last_error: str | None


def _is_retryable(exc: Exception) -> bool:
    return isinstance(exc, SourceUnavailable) and exc.retryable


def _retry_after(exc: Exception) -> str | None:
    return exc.retry_after if isinstance(exc, SourceUnavailable) else None


@dataclass
class _Run:
    network: Network
    mode: SyncMode
    run_id: str
    deadline: float
    guard_started_at: int
    guard_lost: bool = False
    current_day_index: int | None = None
    degraded: bool = False
    new_opened: int = 0
    new_closed: int = 0
    rejected: int = 0
    max_seen_stake_id: str | None = None
    max_block_number: int | None = None
    closed_truncated_at: int | None = None
    opened: list[StakeOpened] = field(default_factory=list)
    closed: list[StakeClosed] = field(default_factory=list)

    def observe_opened_page(self, page: PageResult) -> None:
        self.rejected += page.rejected
        self.max_seen_stake_id = max_stake_id(self.max_seen_stake_id, page.last_stake_id)
        for record in page.records:
            if self.max_block_number is None or record.source_block_number > self.max_block_number:
                self.max_block_number = record.source_block_number

    def truncation_note(self) -> str | None:
        if self.closed_truncated_at is None:
            return None
        return f"closed stream truncated at skip {self.closed_truncated_at}"


class SyncOrchestrator:
    """Runs incremental and full syncs for any enabled network.

    The persisted cursor row is the only lock: a run starts by winning the
    conditional guard update and ends by clearing it, successful or not, unless
    a stale takeover already handed the guard to another run.
    ``running`` is a local mirror used for status reporting only.
    """

    def __init__(
        self,
        *,
        store: LedgerStore,
        fetcher: LedgerFetcherProtocol,
        page_cache: PageCache,
        page_size: int = 1000,
        retry_policy: RetryPolicy | None = None,
        run_deadline_seconds: float = 900.0,
        guard_stale_seconds: int = 3600,
        clock: Callable[[], float] | None = None,
        monotonic: Callable[[], float] | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        instrumentation: Instrumentation | None = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.page_cache = page_cache
        self.page_size = page_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.run_deadline_seconds = run_deadline_seconds
        self.guard_stale_seconds = guard_stale_seconds
        self._clock = clock or time.time
        self._monotonic = monotonic or time.monotonic
        self._sleep = sleep_fn or time.sleep
        self._instrumentation = instrumentation
        self._running: set[Network] = set()
        self._running_lock = Lock()

    @property
    def instrumentation(self) -> Instrumentation:
        return self._instrumentation or get_instrumentation()

    def _now(self) -> int:
        return int(self._clock())

    def is_running(self, network: Network) -> bool:
        with self._running_lock:
            return network in self._running

    def run_incremental(self, network: Network) -> SyncRunResult:
        return self.trigger_sync(network, SyncMode.INCREMENTAL)

    def run_full(self, network: Network, *, reset_cursor: bool = False) -> SyncRunResult:
        return self.trigger_sync(network, SyncMode.FULL, reset_cursor=reset_cursor)

    def trigger_sync(
        self,
        network: Network,
        mode: SyncMode = SyncMode.INCREMENTAL,
        *,
        reset_cursor: bool = False,
    ) -> SyncRunResult:
        run_id = uuid4().hex
        with with_sync_context(str(network), str(mode), run_id):
            try:
                guard_started_at = self._acquire_guard(network)
            except AlreadyInProgress as exc:
                logger.info(
                    "sync_guard_busy",
                    extra={"extra": {"network": str(network), "started_at": exc.started_at}},
                )
                self.instrumentation.counter(
                    "sync_runs_total",
                    attrs={"network": str(network), "mode": str(mode), "status": "already_in_progress"},
                )
                return SyncRunResult(
                    network=network,
                    mode=mode,
                    status=SyncStatus.ALREADY_IN_PROGRESS,
                    run_id=run_id,
                    error=str(exc),
                )
            except SyncError as exc:
                logger.error(
                    "sync_guard_acquire_failed",
                    extra={"extra": {"network": str(network), "error": str(exc)}},
                )
                return SyncRunResult(
                    network=network,
                    mode=mode,
                    status=SyncStatus.FAILED,
                    run_id=run_id,
                    error=str(exc),
                )
            return self._run_guarded(
                network, mode, run_id, guard_started_at=guard_started_at, reset_cursor=reset_cursor
            )

    def _acquire_guard(self, network: Network) -> int:
        now = self._now()
        acquired = self.store.try_acquire_sync_guard(
            network, now=now, stale_after_seconds=self.guard_stale_seconds
        )
        if not acquired:
            cursor = self.store.get_sync_cursor(network)
            raise AlreadyInProgress(network=str(network), started_at=cursor.sync_started_at)
        return now

    def _run_guarded(
        self,
        network: Network,
        mode: SyncMode,
        run_id: str,
        *,
        guard_started_at: int,
        reset_cursor: bool,
    ) -> SyncRunResult:
        started = self._monotonic()
        run = _Run(
            network=network,
            mode=mode,
            run_id=run_id,
            deadline=started + self.run_deadline_seconds,
            guard_started_at=guard_started_at,
        )
        with self._running_lock:
            self._running.add(network)
        status = SyncStatus.FAILED
        previous_cursor: str | None = None
        try:
            previous_cursor = self.store.get_sync_cursor(network).last_synced_stake_id
            logger.info(
                "sync_run_started",
                extra={"extra": {"network": str(network), "mode": str(mode), "cursor": previous_cursor}},
            )
            with self.instrumentation.trace("sync_run", attrs={"network": str(network), "mode": str(mode)}):
                if mode is SyncMode.FULL:
                    self._sync_full(run, reset_cursor=reset_cursor)
                else:
                    self._sync_incremental(run, after_stake_id=previous_cursor)
            new_cursor = self._finish_completed(run, "0" if reset_cursor else previous_cursor)
            status = SyncStatus.COMPLETED
            return SyncRunResult(
                network=network,
                mode=mode,
                status=SyncStatus.COMPLETED,
                run_id=run_id,
                new_opened_count=run.new_opened,
                new_closed_count=run.new_closed,
                rejected_count=run.rejected,
                last_synced_stake_id=new_cursor,
                degraded=run.degraded,
                truncated=run.closed_truncated_at is not None,
            )
        except SyncError as exc:
            self._finish_failed(run, exc)
            return SyncRunResult(
                network=network,
                mode=mode,
                status=SyncStatus.FAILED,
                run_id=run_id,
                new_opened_count=run.new_opened,
                new_closed_count=run.new_closed,
                rejected_count=run.rejected,
                last_synced_stake_id=previous_cursor,
                degraded=run.degraded,
                truncated=run.closed_truncated_at is not None,
                error=str(exc),
            )
        except Exception as exc:
            self._finish_failed(run, exc)
            raise
        finally:
            with self._running_lock:
                self._running.discard(network)
            attrs = {"network": str(network), "mode": str(mode), "status": str(status)}
            self.instrumentation.counter("sync_runs_total", attrs=attrs)
            self.instrumentation.histogram("sync_run_seconds", self._monotonic() - started, attrs=attrs)

    def _finish_completed(self, run: _Run, base_cursor: str) -> str:
        new_cursor = max_stake_id(base_cursor, run.max_seen_stake_id) or "0"
        counts = self.store.get_table_counts(run.network)
        now = self._now()
        released = self.store.release_sync_guard(
            run.network,
            SyncCursorPatch(
                last_synced_stake_id=new_cursor,
                last_synced_block_number=(
                    run.max_block_number if run.max_block_number is not None else UNSET
                ),
                last_synced_at_epoch_seconds=now,
                total_opened_synced=counts.opened,
                total_closed_synced=counts.closed,
                sync_completed_at=now,
                last_error_message=run.truncation_note(),
            ),
            started_at=run.guard_started_at,
        )
        if not released:
            run.guard_lost = True
            raise SyncGuardLost(network=str(run.network), started_at=run.guard_started_at)
        if run.opened or run.closed:
            self.page_cache.put(
                run.network,
                opened=tuple(run.opened),
                closed=tuple(run.closed),
                current_day_index=run.current_day_index,
            )
        logger.info(
            "sync_run_completed",
            extra={
                "extra": {
                    "network": str(run.network),
                    "mode": str(run.mode),
                    "new_opened": run.new_opened,
                    "new_closed": run.new_closed,
                    "rejected": run.rejected,
                    "cursor": new_cursor,
                    "degraded": run.degraded,
                    "truncated": run.closed_truncated_at is not None,
                }
            },
        )
        return new_cursor

    def _finish_failed(self, run: _Run, exc: Exception) -> None:
        message = str(exc)[:_ERROR_MESSAGE_LIMIT] or type(exc).__name__
        logger.error(
            "sync_run_failed",
            extra={
                "extra": {
                    "network": str(run.network),
                    "mode": str(run.mode),
                    "error_type": type(exc).__name__,
                    "error": message,
                    "new_opened": run.new_opened,
                    "new_closed": run.new_closed,
                }
            },
            exc_info=not isinstance(exc, SyncError),
        )
        if run.guard_lost:
            return
        try:
            self.store.release_sync_guard(
                run.network,
                SyncCursorPatch(last_error_message=message),
                started_at=run.guard_started_at,
            )
        except SyncError:
            # The stale-guard takeover frees the row once the holder is old enough.
            logger.exception(
                "sync_guard_release_failed", extra={"extra": {"network": str(run.network)}}
            )

    def _check_deadline(self, run: _Run, operation: str) -> None:
        if self._monotonic() > run.deadline:
            raise SyncDeadlineExceeded(
                f"run exceeded {self.run_deadline_seconds:g}s deadline",
                network=str(run.network),
                operation=operation,
            )

    def _call_source(self, run: _Run, operation: str, fn: Callable[[], T]) -> T:
        self._check_deadline(run, operation)

        def on_retry(attempt: RetryAttempt) -> None:
            logger.warning(
                "sync_source_retry",
                extra={
                    "extra": {
                        "network": str(run.network),
                        "operation": operation,
                        "attempt": attempt.attempt,
                        "delay_ms": attempt.delay_ms,
                        "used_retry_after": attempt.used_retry_after,
                    }
                },
            )
            self.instrumentation.counter(
                "sync_retry_total", attrs={"network": str(run.network), "operation": operation}
            )

        return retry_with_backoff(
            fn,
            policy=self.retry_policy,
            should_retry=_is_retryable,
            jitter_seed=int(run.run_id[:8], 16),
            sleep_fn=self._sleep,
            on_retry=on_retry,
            retry_after_getter=_retry_after,
        )

    def _page_call(self, run: _Run, operation: str) -> Callable[[Callable[[], PageResult]], PageResult]:
        def call(fetch: Callable[[], PageResult]) -> PageResult:
            return self._call_source(run, operation, fetch)

        return call

    def _refresh_current_day(self, run: _Run) -> None:
        counters = self._call_source(
            run,
            "fetch_latest_global_counters",
            lambda: self.fetcher.fetch_latest_global_counters(run.network),
        )
        if counters is not None:
            self.store.insert_global_counters(counters)
        latest = self.store.get_latest_global_counters(run.network)
        day = latest.day_index if latest is not None else None
        if is_degraded_day(day):
            run.degraded = True
            run.current_day_index = None
            logger.warning(
                "sync_degraded_day_unknown",
                extra={"extra": {"network": str(run.network), "mode": str(run.mode)}},
            )
        else:
            run.current_day_index = day

    def _persist_opened_page(
        self, run: _Run, page: PageResult, *, closed_ids: set[str] | None = None
    ) -> None:
        run.observe_opened_page(page)
        records: list[StakeOpened] = list(page.records)
        if not records:
            return
        if run.mode is SyncMode.INCREMENTAL:
            known = self.store.existing_stake_ids(run.network, [r.stake_id for r in records])
            records = [record for record in records if record.stake_id not in known]
            if not records:
                return
        if closed_ids is None:
            closed_ids = self.store.closed_ids_among(run.network, [r.stake_id for r in records])
        reconciled = reconcile(records, closed_ids, run.current_day_index)
        run.new_opened += self.store.upsert_opened_batch(
            reconciled, overwrite_derived=not run.degraded
        )
        run.opened.extend(reconciled)

    def _persist_closed_page(self, run: _Run, page: PageResult) -> None:
        if page.truncated_at_skip is not None:
            run.closed_truncated_at = page.truncated_at_skip
            logger.warning(
                "sync_closed_stream_truncated",
                extra={
                    "extra": {
                        "network": str(run.network),
                        "mode": str(run.mode),
                        "skip": page.truncated_at_skip,
                    }
                },
            )
            self.instrumentation.counter(
                "sync_truncated_total", attrs={"network": str(run.network), "mode": str(run.mode)}
            )
        run.rejected += page.rejected
        records: list[StakeClosed] = list(page.records)
        if not records:
            return
        run.new_closed += self.store.upsert_closed_batch(records)
        run.closed.extend(records)

    def _sync_incremental(self, run: _Run, *, after_stake_id: str) -> None:
        self._refresh_current_day(run)

        for page in self.fetcher.iter_opened_pages(
            run.network,
            after_stake_id,
            self.page_size,
            page_call=self._page_call(run, "fetch_opened_page"),
        ):
            self._persist_opened_page(run, page)

        stored_closed = self.store.closed_count(run.network)
        for page in self.fetcher.iter_closed_pages(
            run.network,
            stored_closed,
            self.page_size,
            page_call=self._page_call(run, "fetch_closed_page"),
        ):
            self._persist_closed_page(run, page)

        if run.current_day_index is not None:
            self._check_deadline(run, "refresh_stake_days")
            refreshed = self.store.refresh_stake_days(run.network, run.current_day_index)
            logger.debug(
                "stake_days_refreshed",
                extra={"extra": {"network": str(run.network), "rows": refreshed}},
            )

    def _sync_full(self, run: _Run, *, reset_cursor: bool) -> None:
        self.page_cache.clear(run.network)
        if reset_cursor:
            # The reset itself is only persisted by the completing cursor write.
            logger.info("sync_cursor_reset_requested", extra={"extra": {"network": str(run.network)}})

        self._refresh_current_day(run)

        closed_ids = self.store.closed_ids(run.network)
        for page in self.fetcher.iter_closed_pages(
            run.network,
            0,
            self.page_size,
            page_call=self._page_call(run, "fetch_closed_page"),
        ):
            self._persist_closed_page(run, page)
            closed_ids.update(record.stake_id for record in page.records)

        for page in self.fetcher.iter_opened_pages(
            run.network,
            "0",
            self.page_size,
            page_call=self._page_call(run, "fetch_opened_page"),
        ):
            self._persist_opened_page(run, page, closed_ids=closed_ids)

    def get_status(self, network: Network) -> SyncStatusReport:
        cursor = self.store.get_sync_cursor(network)
        return SyncStatusReport(
            network=network,
            running=self.is_running(network),
            in_progress=cursor.sync_in_progress,
            last_sync_completed_at=cursor.sync_completed_at,
            sync_started_at=cursor.sync_started_at,
            total_synced=cursor.total_opened_synced + cursor.total_closed_synced,
            total_opened_synced=cursor.total_opened_synced,
            total_closed_synced=cursor.total_closed_synced,
            last_synced_stake_id=cursor.last_synced_stake_id,
            last_error=cursor.last_error_message,
        )

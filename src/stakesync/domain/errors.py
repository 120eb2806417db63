from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when required runtime configuration is missing or invalid."""


class SyncError(RuntimeError):
    def __init__(self, detail: str, *, network: str, operation: str) -> None:
        super().__init__(f"{operation} failed for network {network}: {detail}")
        self.detail = detail
        self.network = network
        self.operation = operation


class SourceUnavailable(SyncError):
    """The external ledger query failed (transport, timeout, bad status or payload)."""

    def __init__(
        self,
        detail: str,
        *,
        network: str,
        operation: str,
        retryable: bool = True,
        status_code: int | None = None,
        retry_after: str | None = None,
    ) -> None:
        super().__init__(detail, network=network, operation=operation)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after = retry_after


class PersistenceFailure(SyncError):
    """A store operation failed for a reason other than an expected conflict."""


class AlreadyInProgress(SyncError):
    def __init__(self, *, network: str, started_at: int | None = None) -> None:
        super().__init__("sync already in progress", network=network, operation="acquire_sync_guard")
        self.started_at = started_at


class SyncDeadlineExceeded(SyncError):
    pass


class SyncGuardLost(SyncError):
    """Another run took the guard over before this run could record its outcome."""

    def __init__(self, *, network: str, started_at: int) -> None:
        super().__init__(
            "guard was taken over by another run", network=network, operation="release_sync_guard"
        )
        self.started_at = started_at

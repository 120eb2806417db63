from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType

LOG_CONTEXT_FIELDS = ("run_id", "network", "sync_mode")

_EMPTY: Mapping[str, str] = MappingProxyType({})
_CONTEXT: ContextVar[Mapping[str, str]] = ContextVar("stakesync_log_context", default=_EMPTY)


def get_logging_context() -> dict[str, str]:
    return dict(_CONTEXT.get())


@contextmanager
def with_logging_context(**context: str | None) -> Iterator[None]:
    """Layer fields over the current context; unknown keys and None values are ignored."""

    merged = dict(_CONTEXT.get())
    merged.update(
        {key: str(value) for key, value in context.items() if key in LOG_CONTEXT_FIELDS and value is not None}
    )
    token = _CONTEXT.set(MappingProxyType(merged))
    try:
        yield
    finally:
        _CONTEXT.reset(token)


@contextmanager
def with_sync_context(network: str, sync_mode: str, run_id: str | None = None) -> Iterator[None]:
    with with_logging_context(network=network, sync_mode=sync_mode, run_id=run_id):
        yield

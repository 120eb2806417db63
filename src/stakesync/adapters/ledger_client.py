from __future__ import annotations

import logging
import ssl
import time
from collections.abc import Sequence
from typing import Any

import httpx

from stakesync.domain.errors import ConfigurationError, SourceUnavailable
from stakesync.observability import Instrumentation, get_instrumentation
from stakesync.security.redaction import sanitize_text

logger = logging.getLogger(__name__)

_ERROR_SNIPPET_LIMIT = 240


def _is_permanent_transport_error(exc: httpx.TransportError) -> bool:
    permanent_errors = (
        httpx.UnsupportedProtocol,
        httpx.ProtocolError,
        httpx.LocalProtocolError,
    )
    if isinstance(exc, permanent_errors):
        return True

    cause = getattr(exc, "__cause__", None)
    return isinstance(cause, ssl.SSLCertVerificationError)


def _response_snippet(response: httpx.Response) -> str:
    text = response.text.strip().replace("\n", " ")
    return sanitize_text(text[:_ERROR_SNIPPET_LIMIT])


class LedgerQueryClient:
    """GraphQL client for one network's ledger endpoints.

    Endpoints are tried in the configured order for every request; the first
    usable response wins. Nothing is retried here.
    """

    def __init__(
        self,
        *,
        network: str,
        endpoints: Sequence[str],
        timeout: float | httpx.Timeout = 20.0,
        transport: httpx.BaseTransport | None = None,
        instrumentation: Instrumentation | None = None,
    ) -> None:
        if not endpoints:
            raise ConfigurationError(f"no ledger endpoints configured for network {network}")
        self.network = network
        self.endpoints = tuple(endpoints)
        resolved_timeout = (
            timeout
            if isinstance(timeout, httpx.Timeout)
            else httpx.Timeout(timeout=timeout, connect=5.0)
        )
        self.client = httpx.Client(
            timeout=resolved_timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        self._instrumentation = instrumentation

    @property
    def instrumentation(self) -> Instrumentation:
        return self._instrumentation or get_instrumentation()

    def __enter__(self) -> LedgerQueryClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.client.close()

    def query(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        *,
        operation: str,
    ) -> dict[str, Any]:
        failures: list[SourceUnavailable] = []
        for index, endpoint in enumerate(self.endpoints):
            try:
                return self._post(endpoint, query, variables or {}, operation=operation)
            except SourceUnavailable as exc:
                failures.append(exc)
                if index + 1 < len(self.endpoints):
                    logger.warning(
                        "ledger_endpoint_failed_trying_next",
                        extra={
                            "extra": {
                                "network": self.network,
                                "operation": operation,
                                "endpoint": endpoint,
                                "error": exc.detail,
                                "status_code": exc.status_code,
                            }
                        },
                    )

        last = failures[-1]
        if len(failures) == 1:
            raise last
        raise SourceUnavailable(
            f"all {len(failures)} endpoints failed; last error: {last.detail}",
            network=self.network,
            operation=operation,
            retryable=any(failure.retryable for failure in failures),
            status_code=last.status_code,
            retry_after=last.retry_after,
        ) from last

    def _post(
        self,
        endpoint: str,
        query: str,
        variables: dict[str, Any],
        *,
        operation: str,
    ) -> dict[str, Any]:
        started = time.monotonic()
        status = "error"
        try:
            try:
                response = self.client.post(
                    endpoint, json={"query": query, "variables": variables}
                )
            except httpx.TimeoutException as exc:
                status = "timeout"
                raise self._unavailable(f"request timed out: {type(exc).__name__}", operation) from exc
            except httpx.TransportError as exc:
                status = "transport_error"
                raise self._unavailable(
                    f"transport error: {type(exc).__name__}",
                    operation,
                    retryable=not _is_permanent_transport_error(exc),
                ) from exc

            status = str(response.status_code)
            if response.status_code == 429 or response.status_code >= 500:
                raise self._unavailable(
                    f"HTTP {response.status_code}: {_response_snippet(response)}",
                    operation,
                    status_code=response.status_code,
                    retry_after=response.headers.get("Retry-After"),
                )
            if response.status_code >= 400:
                raise self._unavailable(
                    f"HTTP {response.status_code}: {_response_snippet(response)}",
                    operation,
                    retryable=False,
                    status_code=response.status_code,
                )

            try:
                body = response.json()
            except ValueError as exc:
                status = "invalid_json"
                raise self._unavailable(
                    "response body is not valid JSON", operation, retryable=False
                ) from exc
            if not isinstance(body, dict):
                status = "invalid_body"
                raise self._unavailable(
                    "response body is not a JSON object", operation, retryable=False
                )
            errors = body.get("errors")
            if errors:
                status = "graphql_error"
                messages = [
                    str(item.get("message", item)) if isinstance(item, dict) else str(item)
                    for item in (errors if isinstance(errors, list) else [errors])
                ]
                raise self._unavailable(
                    f"query errors: {sanitize_text('; '.join(messages))[:_ERROR_SNIPPET_LIMIT]}",
                    operation,
                    retryable=False,
                )
            data = body.get("data")
            if not isinstance(data, dict):
                status = "missing_data"
                raise self._unavailable("response has no data object", operation, retryable=False)
            status = "ok"
            return data
        finally:
            attrs = {"network": self.network, "kind": operation, "status": status}
            self.instrumentation.counter("ledger_requests_total", attrs=attrs)
            self.instrumentation.histogram(
                "ledger_request_seconds",
                time.monotonic() - started,
                attrs={"network": self.network, "kind": operation},
            )

    def _unavailable(
        self,
        detail: str,
        operation: str,
        *,
        retryable: bool = True,
        status_code: int | None = None,
        retry_after: str | None = None,
    ) -> SourceUnavailable:
        return SourceUnavailable(
            detail,
            network=self.network,
            operation=operation,
            retryable=retryable,
            status_code=status_code,
            retry_after=retry_after,
        )

from __future__ import annotations

import pytest
from pydantic import ValidationError

from stakesync.config import Settings
from stakesync.domain.errors import ConfigurationError
from stakesync.domain.models import Network


def test_defaults() -> None:
    settings = Settings()

    assert settings.networks == [Network.ETHEREUM, Network.PULSECHAIN]
    assert settings.ledger_page_size == 1000
    assert settings.sync_interval_minutes == 30.0
    assert settings.page_cache_ttl_seconds == 300.0
    assert settings.retry_policy().max_attempts == 3
    assert settings.retry_policy().base_delay_ms == 1000
    assert settings.retry_policy().max_delay_ms == 5000


def test_networks_accept_csv_and_json(monkeypatch) -> None:
    monkeypatch.setenv("NETWORKS", "PulseChain, pulsechain")
    assert Settings().networks == [Network.PULSECHAIN]

    monkeypatch.setenv("NETWORKS", '["ethereum"]')
    assert Settings().networks == [Network.ETHEREUM]


def test_unknown_network_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("NETWORKS", "ethereum,solana")

    with pytest.raises(ValidationError, match="NETWORKS"):
        Settings()


def test_ledger_urls_substitute_api_key(monkeypatch) -> None:
    monkeypatch.setenv(
        "ETHEREUM_LEDGER_URLS",
        "https://gateway.example/api/{api_key}/subgraphs/id/abc,https://backup.example/graphql",
    )
    monkeypatch.setenv("LEDGER_API_KEY", "k3y-0123456789")

    urls = Settings().ledger_urls("ethereum")

    assert urls == [
        "https://gateway.example/api/k3y-0123456789/subgraphs/id/abc",
        "https://backup.example/graphql",
    ]


def test_missing_api_key_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="LEDGER_API_KEY"):
        Settings().ledger_urls(Network.ETHEREUM)


def test_pulsechain_defaults_need_no_key() -> None:
    urls = Settings().ledger_urls(Network.PULSECHAIN)

    assert len(urls) == 3
    assert all(url.startswith("https://") for url in urls)


def test_ledger_urls_must_be_http(monkeypatch) -> None:
    monkeypatch.setenv("PULSECHAIN_LEDGER_URLS", "ftp://ledger.example")

    with pytest.raises(ValidationError, match="LEDGER_URLS"):
        Settings()


@pytest.mark.parametrize(
    ("env_name", "value"),
    [
        ("LEDGER_PAGE_SIZE", "0"),
        ("LEDGER_PAGE_SIZE", "1001"),
        ("SYNC_INTERVAL_MINUTES", "0"),
        ("SYNC_RETRY_MAX_ATTEMPTS", "0"),
        ("PAGE_CACHE_TTL_SECONDS", "0"),
        ("COUNTERS_KEEP_LATEST", "0"),
        ("OBSERVABILITY_METRICS_EXPORTER", "statsd"),
    ],
)
def test_out_of_range_values_are_rejected(monkeypatch, env_name: str, value: str) -> None:
    monkeypatch.setenv(env_name, value)

    with pytest.raises(ValidationError):
        Settings()


def test_guard_window_must_cover_run_deadline(monkeypatch) -> None:
    monkeypatch.setenv("SYNC_RUN_DEADLINE_SECONDS", "1200")
    monkeypatch.setenv("SYNC_GUARD_STALE_SECONDS", "600")

    with pytest.raises(ValidationError, match="SYNC_GUARD_STALE_SECONDS"):
        Settings()


def test_known_secrets() -> None:
    assert Settings().known_secrets() == ()
    assert Settings(LEDGER_API_KEY="abc123").known_secrets() == ("abc123",)

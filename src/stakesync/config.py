from __future__ import annotations

import json
from typing import Annotated

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from stakesync.domain.errors import ConfigurationError
from stakesync.domain.models import Network, parse_network
from stakesync.services.retry import RetryPolicy

API_KEY_PLACEHOLDER = "{api_key}"

DEFAULT_ETHEREUM_LEDGER_URLS = [
    "https://gateway.thegraph.com/api/{api_key}/subgraphs/id/"
    "A6JyHRn6CUvvgBZwni9JyrgovKWK6FoSQ8TVt6JJGhcp",
]
DEFAULT_PULSECHAIN_LEDGER_URLS = [
    "https://graph.pulsechain.com/subgraphs/name/hex/hex-staking",
    "https://graph.v4.testnet.pulsechain.com/subgraphs/name/hex/hex-staking",
    "https://graph.pulsechain.com/subgraphs/name/pulsechain/hex",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="stakesync_state.db", alias="STATE_DB_PATH")
    networks: Annotated[list[Network], NoDecode] = Field(
        default_factory=lambda: [Network.ETHEREUM, Network.PULSECHAIN],
        alias="NETWORKS",
    )

    ethereum_ledger_urls: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_ETHEREUM_LEDGER_URLS),
        alias="ETHEREUM_LEDGER_URLS",
    )
    pulsechain_ledger_urls: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_PULSECHAIN_LEDGER_URLS),
        alias="PULSECHAIN_LEDGER_URLS",
    )
    ledger_api_key: SecretStr | None = Field(default=None, alias="LEDGER_API_KEY")

    ledger_page_size: int = Field(default=1000, alias="LEDGER_PAGE_SIZE")
    ledger_page_delay_ms: int = Field(default=100, alias="LEDGER_PAGE_DELAY_MS")
    ledger_max_skip: int = Field(default=5000, alias="LEDGER_MAX_SKIP")
    ledger_connect_timeout_seconds: float = Field(
        default=5.0, alias="LEDGER_CONNECT_TIMEOUT_SECONDS"
    )
    ledger_read_timeout_seconds: float = Field(default=20.0, alias="LEDGER_READ_TIMEOUT_SECONDS")

    sync_interval_minutes: float = Field(default=30.0, alias="SYNC_INTERVAL_MINUTES")
    sync_run_deadline_seconds: float = Field(default=900.0, alias="SYNC_RUN_DEADLINE_SECONDS")
    sync_guard_stale_seconds: int = Field(default=3600, alias="SYNC_GUARD_STALE_SECONDS")

    sync_retry_max_attempts: int = Field(default=3, alias="SYNC_RETRY_MAX_ATTEMPTS")
    sync_retry_base_delay_ms: int = Field(default=1000, alias="SYNC_RETRY_BASE_DELAY_MS")
    sync_retry_max_delay_ms: int = Field(default=5000, alias="SYNC_RETRY_MAX_DELAY_MS")

    page_cache_ttl_seconds: float = Field(default=300.0, alias="PAGE_CACHE_TTL_SECONDS")

    counters_retention_days: int = Field(default=30, alias="COUNTERS_RETENTION_DAYS")
    counters_keep_latest: int = Field(default=10, alias="COUNTERS_KEEP_LATEST")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    otel_exporter_otlp_endpoint: str | None = Field(
        default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )
    observability_prometheus_port: int = Field(
        default=9464, alias="OBSERVABILITY_PROMETHEUS_PORT"
    )

    @field_validator("networks", mode="before")
    def parse_networks(cls, value: str | list[str]) -> list[Network]:
        networks: list[Network] = []
        for item in cls._parse_list(value, env_name="NETWORKS"):
            try:
                network = parse_network(item)
            except ValueError as exc:
                raise ValueError(f"NETWORKS: {exc}") from exc
            if network not in networks:
                networks.append(network)
        if not networks:
            raise ValueError("NETWORKS must name at least one network")
        return networks

    @field_validator("ethereum_ledger_urls", "pulsechain_ledger_urls", mode="before")
    def parse_ledger_urls(cls, value: str | list[str]) -> list[str]:
        urls: list[str] = []
        for item in cls._parse_list(value, env_name="LEDGER_URLS"):
            if not item.startswith(("http://", "https://")):
                raise ValueError(f"LEDGER_URLS entries must be http(s) URLs, got {item!r}")
            if item not in urls:
                urls.append(item)
        return urls

    @classmethod
    def _parse_list(cls, value: str | list[str], *, env_name: str) -> list[str]:
        items: list[object]
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return []
            if raw.startswith("["):
                parsed = json.loads(raw)
                if not isinstance(parsed, list):
                    raise ValueError(f"{env_name} JSON value must be a list")
                items = parsed
            else:
                items = raw.split(",")
        else:
            items = list(value)

        cleaned: list[str] = []
        for item in items:
            if item is None:
                continue
            text = str(item).strip().strip('"').strip("'").strip()
            if text:
                cleaned.append(text)
        return cleaned

    @field_validator("ledger_page_size")
    def validate_page_size(cls, value: int) -> int:
        if not 1 <= value <= 1000:
            raise ValueError("LEDGER_PAGE_SIZE must be between 1 and 1000")
        return value

    @field_validator("ledger_page_delay_ms")
    def validate_page_delay(cls, value: int) -> int:
        if value < 0:
            raise ValueError("LEDGER_PAGE_DELAY_MS must be >= 0")
        return value

    @field_validator("ledger_max_skip")
    def validate_max_skip(cls, value: int) -> int:
        if value < 0:
            raise ValueError("LEDGER_MAX_SKIP must be >= 0 (0 disables the cap)")
        return value

    @field_validator("ledger_connect_timeout_seconds", "ledger_read_timeout_seconds")
    def validate_timeouts(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("LEDGER timeouts must be > 0")
        return value

    @field_validator("sync_interval_minutes")
    def validate_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("SYNC_INTERVAL_MINUTES must be > 0")
        return value

    @field_validator("sync_run_deadline_seconds")
    def validate_deadline(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("SYNC_RUN_DEADLINE_SECONDS must be > 0")
        return value

    @field_validator("sync_retry_max_attempts")
    def validate_retry_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("SYNC_RETRY_MAX_ATTEMPTS must be >= 1")
        return value

    @field_validator("sync_retry_base_delay_ms", "sync_retry_max_delay_ms")
    def validate_retry_delays(cls, value: int) -> int:
        if value < 0:
            raise ValueError("SYNC_RETRY delays must be >= 0")
        return value

    @field_validator("page_cache_ttl_seconds")
    def validate_cache_ttl(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("PAGE_CACHE_TTL_SECONDS must be > 0")
        return value

    @field_validator("counters_retention_days")
    def validate_retention_days(cls, value: int) -> int:
        if value < 1:
            raise ValueError("COUNTERS_RETENTION_DAYS must be >= 1")
        return value

    @field_validator("counters_keep_latest")
    def validate_keep_latest(cls, value: int) -> int:
        if value < 1:
            raise ValueError("COUNTERS_KEEP_LATEST must be >= 1")
        return value

    @field_validator("observability_metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"none", "otlp", "prometheus"}:
            raise ValueError("OBSERVABILITY_METRICS_EXPORTER must be one of: none, otlp, prometheus")
        return normalized

    @model_validator(mode="after")
    def validate_guard_window(self) -> Settings:
        if self.sync_guard_stale_seconds < self.sync_run_deadline_seconds:
            raise ValueError("SYNC_GUARD_STALE_SECONDS must be >= SYNC_RUN_DEADLINE_SECONDS")
        if self.sync_retry_max_delay_ms < self.sync_retry_base_delay_ms:
            raise ValueError("SYNC_RETRY_MAX_DELAY_MS must be >= SYNC_RETRY_BASE_DELAY_MS")
        return self

    def ledger_urls(self, network: Network | str) -> list[str]:
        resolved = parse_network(network)
        templates = (
            self.ethereum_ledger_urls
            if resolved is Network.ETHEREUM
            else self.pulsechain_ledger_urls
        )
        if not templates:
            raise ConfigurationError(f"no ledger URLs configured for network {resolved}")
        api_key = self.ledger_api_key.get_secret_value() if self.ledger_api_key else ""
        urls: list[str] = []
        for template in templates:
            if API_KEY_PLACEHOLDER in template:
                if not api_key:
                    raise ConfigurationError(
                        f"LEDGER_API_KEY is required for the {resolved} ledger endpoint"
                    )
                urls.append(template.replace(API_KEY_PLACEHOLDER, api_key))
            else:
                urls.append(template)
        return urls

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.sync_retry_max_attempts,
            base_delay_ms=self.sync_retry_base_delay_ms,
            max_delay_ms=self.sync_retry_max_delay_ms,
        )

    def known_secrets(self) -> tuple[str, ...]:
        if self.ledger_api_key is None:
            return ()
        return (self.ledger_api_key.get_secret_value(),)

from __future__ import annotations

from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from enum import StrEnum


class Network(StrEnum):
    ETHEREUM = "ethereum"
    PULSECHAIN = "pulsechain"


def parse_network(value: str | Network) -> Network:
    if isinstance(value, Network):
        return value
    try:
        return Network(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in Network)
        raise ValueError(f"unknown network {value!r}; expected one of: {allowed}") from exc


def canonical_amount(value: object) -> str:
    """Normalize a ledger amount to a plain (non-exponent) decimal string."""

    if isinstance(value, bool) or value is None:
        raise ValueError(f"amount must be a decimal string, got {value!r}")
    if isinstance(value, float):
        raise ValueError("amount must not be a float")
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"invalid decimal amount: {value!r}") from exc
    if not parsed.is_finite():
        raise ValueError(f"amount must be finite: {value!r}")
    if parsed < 0:
        raise ValueError(f"amount must be >= 0: {value!r}")
    text = format(parsed, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def canonical_stake_id(value: object) -> str:
    text = str(value).strip()
    if not text.isdigit():
        raise ValueError(f"stake id must be a non-negative integer string: {value!r}")
    return str(int(text))


def stake_id_key(stake_id: str) -> int:
    return int(stake_id)


def max_stake_id(*candidates: str | None) -> str | None:
    present = [candidate for candidate in candidates if candidate is not None]
    if not present:
        return None
    return max(present, key=stake_id_key)


@dataclass(frozen=True)
class StakeOpened:
    stake_id: str
    owner_address: str
    principal_amount: str
    share_amount: str
    derived_share_amount: str
    staked_duration_days: int
    start_day_index: int
    end_day_index: int
    opened_at_epoch_seconds: int
    is_auto_renewed: bool
    source_tx_hash: str
    source_block_number: int
    network: Network
    is_active: bool = True
    days_served: int = 0
    days_left: int = 0

    @property
    def principal(self) -> Decimal:
        return Decimal(self.principal_amount)


@dataclass(frozen=True)
class StakeClosed:
    stake_id: str
    owner_address: str
    payout_amount: str
    principal_amount_at_close: str
    penalty_amount: str
    served_days: int
    closed_at_epoch_seconds: int
    source_tx_hash: str
    source_block_number: int
    network: Network


@dataclass(frozen=True)
class GlobalCounters:
    day_index: int
    total_shares: str
    total_penalty: str
    total_locked: str
    latest_stake_id: str | None
    captured_at_epoch_seconds: int
    network: Network


@dataclass(frozen=True)
class SyncCursor:
    network: Network
    last_synced_stake_id: str = "0"
    last_synced_block_number: int | None = None
    last_synced_at_epoch_seconds: int | None = None
    total_opened_synced: int = 0
    total_closed_synced: int = 0
    sync_in_progress: bool = False
    sync_started_at: int | None = None
    sync_completed_at: int | None = None
    last_error_message: str | None = None


class _Unset:
    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


@dataclass(frozen=True)
class SyncCursorPatch:
    """Merge-patch for the sync cursor row.

    Fields left as ``UNSET`` are not touched. Setting a nullable field to ``None``
    clears it.
    """

    last_synced_stake_id: str | _Unset = UNSET
    last_synced_block_number: int | None | _Unset = UNSET
    last_synced_at_epoch_seconds: int | None | _Unset = UNSET
    total_opened_synced: int | _Unset = UNSET
    total_closed_synced: int | _Unset = UNSET
    sync_in_progress: bool | _Unset = UNSET
    sync_started_at: int | None | _Unset = UNSET
    sync_completed_at: int | None | _Unset = UNSET
    last_error_message: str | None | _Unset = UNSET

    def changes(self) -> dict[str, object]:
        return {
            item.name: getattr(self, item.name)
            for item in fields(self)
            if getattr(self, item.name) is not UNSET
        }

    def is_empty(self) -> bool:
        return not self.changes()


@dataclass(frozen=True)
class OwnerAggregate:
    owner_address: str
    network: Network
    total_stakes: int = 0
    active_stakes: int = 0
    ended_stakes: int = 0
    total_principal: str = "0"
    total_shares: str = "0"
    total_payouts: str = "0"
    total_penalties: str = "0"
    average_duration_days: float = 0.0
    first_stake_at: int | None = None
    last_stake_at: int | None = None


@dataclass(frozen=True)
class TableCounts:
    network: Network
    opened: int = 0
    closed: int = 0
    global_counters: int = 0
    owner_aggregates: int = 0
    cursors: int = 0


@dataclass(frozen=True)
class OverviewTotals:
    active_count: int
    total_principal: Decimal
    average_duration_days: float
    total_rows: int


@dataclass(frozen=True)
class PageResult:
    """One page from the ledger after validation.

    ``has_more`` is computed from the raw page length, so quarantined records
    still count. ``last_stake_id`` is the highest id seen on the raw page and is
    the continuation point for id-ordered streams. ``truncated_at_skip`` is set
    on the empty marker page a skip-paged stream yields when it hits the
    source's skip limit with records still unread.
    """

    records: tuple = ()
    has_more: bool = False
    rejected: int = 0
    requested: int = 0
    rejected_ids: tuple[str, ...] = field(default_factory=tuple)
    raw_count: int = 0
    last_stake_id: str | None = None
    truncated_at_skip: int | None = None

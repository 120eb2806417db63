from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stakesync.domain.models import (
    GlobalCounters,
    Network,
    StakeClosed,
    StakeOpened,
    canonical_amount,
    canonical_stake_id,
)


def _normalize_address(value: object) -> str:
    text = str(value or "").strip().lower()
    if not text:
        raise ValueError("address must not be empty")
    return text


class _LedgerRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)


class StakeStartPayload(_LedgerRecord):
    stake_id: str = Field(alias="stakeId")
    staker_addr: str = Field(alias="stakerAddr")
    staked_hearts: str = Field(alias="stakedHearts")
    stake_shares: str = Field(alias="stakeShares")
    stake_t_shares: str | None = Field(default=None, alias="stakeTShares")
    staked_days: int = Field(alias="stakedDays", ge=0)
    start_day: int = Field(alias="startDay", ge=0)
    end_day: int = Field(alias="endDay", ge=0)
    timestamp: int = Field(ge=0)
    is_auto_stake: bool = Field(default=False, alias="isAutoStake")
    transaction_hash: str = Field(default="", alias="transactionHash")
    block_number: int = Field(default=0, alias="blockNumber", ge=0)

    @field_validator("stake_id", mode="before")
    def validate_stake_id(cls, value: object) -> str:
        return canonical_stake_id(value)

    @field_validator("staker_addr", mode="before")
    def validate_address(cls, value: object) -> str:
        return _normalize_address(value)

    @field_validator("staked_hearts", "stake_shares", mode="before")
    def validate_amount(cls, value: object) -> str:
        return canonical_amount(value)

    @field_validator("stake_t_shares", mode="before")
    def validate_optional_amount(cls, value: object) -> str | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return canonical_amount(value)

    @model_validator(mode="after")
    def validate_day_range(self) -> StakeStartPayload:
        if self.end_day < self.start_day:
            raise ValueError("endDay must be >= startDay")
        if "." in self.staked_hearts:
            raise ValueError("stakedHearts must be an integer amount")
        return self

    def to_domain(self, network: Network) -> StakeOpened:
        return StakeOpened(
            stake_id=self.stake_id,
            owner_address=self.staker_addr,
            principal_amount=self.staked_hearts,
            share_amount=self.stake_shares,
            derived_share_amount=self.stake_t_shares or self.stake_shares,
            staked_duration_days=self.staked_days,
            start_day_index=self.start_day,
            end_day_index=self.end_day,
            opened_at_epoch_seconds=self.timestamp,
            is_auto_renewed=self.is_auto_stake,
            source_tx_hash=self.transaction_hash,
            source_block_number=self.block_number,
            network=network,
        )


class StakeEndPayload(_LedgerRecord):
    stake_id: str = Field(alias="stakeId")
    staker_addr: str = Field(alias="stakerAddr")
    payout: str = "0"
    staked_hearts: str = Field(default="0", alias="stakedHearts")
    penalty: str = "0"
    served_days: int = Field(default=0, alias="servedDays", ge=0)
    timestamp: int = Field(ge=0)
    transaction_hash: str = Field(default="", alias="transactionHash")
    block_number: int = Field(default=0, alias="blockNumber", ge=0)

    @field_validator("stake_id", mode="before")
    def validate_stake_id(cls, value: object) -> str:
        return canonical_stake_id(value)

    @field_validator("staker_addr", mode="before")
    def validate_address(cls, value: object) -> str:
        return _normalize_address(value)

    @field_validator("payout", "staked_hearts", "penalty", mode="before")
    def validate_amount(cls, value: object) -> str:
        return canonical_amount(value)

    def to_domain(self, network: Network) -> StakeClosed:
        return StakeClosed(
            stake_id=self.stake_id,
            owner_address=self.staker_addr,
            payout_amount=self.payout,
            principal_amount_at_close=self.staked_hearts,
            penalty_amount=self.penalty,
            served_days=self.served_days,
            closed_at_epoch_seconds=self.timestamp,
            source_tx_hash=self.transaction_hash,
            source_block_number=self.block_number,
            network=network,
        )


class GlobalInfoPayload(_LedgerRecord):
    hex_day: int = Field(alias="hexDay", ge=0)
    stake_shares_total: str = Field(default="0", alias="stakeSharesTotal")
    stake_penalty_total: str = Field(default="0", alias="stakePenaltyTotal")
    locked_hearts_total: str = Field(default="0", alias="lockedHeartsTotal")
    latest_stake_id: str | None = Field(default=None, alias="latestStakeId")
    timestamp: int = Field(ge=0)

    @field_validator("stake_shares_total", "stake_penalty_total", "locked_hearts_total", mode="before")
    def validate_amount(cls, value: object) -> str:
        return canonical_amount(value)

    @field_validator("latest_stake_id", mode="before")
    def validate_latest_stake_id(cls, value: object) -> str | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return canonical_stake_id(value)

    def to_domain(self, network: Network) -> GlobalCounters:
        return GlobalCounters(
            day_index=self.hex_day,
            total_shares=self.stake_shares_total,
            total_penalty=self.stake_penalty_total,
            total_locked=self.locked_hearts_total,
            latest_stake_id=self.latest_stake_id,
            captured_at_epoch_seconds=self.timestamp,
            network=network,
        )


def raw_record_id(raw: object) -> str:
    if isinstance(raw, dict):
        for key in ("stakeId", "id"):
            if raw.get(key) is not None:
                return str(raw[key])
    return "<unknown>"


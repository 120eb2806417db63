from __future__ import annotations

from collections.abc import Iterable, Sequence
from decimal import Decimal

from stakesync.domain.models import (
    Network,
    OverviewTotals,
    OwnerAggregate,
    StakeClosed,
    StakeOpened,
)


def format_amount(value: Decimal) -> str:
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def overview_totals(
    active: Iterable[tuple[str, int]], *, total_rows: int
) -> OverviewTotals:
    """Totals over (principal_amount, staked_duration_days) of active stakes.

    Principal is summed exactly as Decimal; the input is consumed once.
    """

    count = 0
    principal = Decimal(0)
    duration_sum = 0
    for principal_amount, duration_days in active:
        count += 1
        principal += Decimal(principal_amount)
        duration_sum += duration_days
    return OverviewTotals(
        active_count=count,
        total_principal=principal,
        average_duration_days=(duration_sum / count) if count else 0.0,
        total_rows=total_rows,
    )


def build_owner_aggregate(
    owner_address: str,
    network: Network,
    opened: Sequence[StakeOpened],
    closed: Sequence[StakeClosed],
) -> OwnerAggregate:
    closed_ids = {record.stake_id for record in closed}
    active = sum(1 for record in opened if record.is_active and record.stake_id not in closed_ids)
    total_principal = sum((Decimal(r.principal_amount) for r in opened), Decimal(0))
    total_shares = sum((Decimal(r.derived_share_amount) for r in opened), Decimal(0))
    total_payouts = sum((Decimal(r.payout_amount) for r in closed), Decimal(0))
    total_penalties = sum((Decimal(r.penalty_amount) for r in closed), Decimal(0))
    opened_at = [record.opened_at_epoch_seconds for record in opened]
    return OwnerAggregate(
        owner_address=owner_address,
        network=network,
        total_stakes=len(opened),
        active_stakes=active,
        ended_stakes=len(opened) - active,
        total_principal=format_amount(total_principal),
        total_shares=format_amount(total_shares),
        total_payouts=format_amount(total_payouts),
        total_penalties=format_amount(total_penalties),
        average_duration_days=(
            sum(record.staked_duration_days for record in opened) / len(opened) if opened else 0.0
        ),
        first_stake_at=min(opened_at) if opened_at else None,
        last_stake_at=max(opened_at) if opened_at else None,
    )

from __future__ import annotations

from collections.abc import Collection, Iterable
from dataclasses import dataclass, replace

from stakesync.domain.models import StakeClosed, StakeOpened

UNKNOWN_DAY = 0


@dataclass(frozen=True)
class StakeStatus:
    is_active: bool
    days_served: int
    days_left: int


def stake_status(
    *,
    start_day_index: int,
    end_day_index: int,
    current_day_index: int,
    is_closed: bool,
) -> StakeStatus:
    """Derive active/ended status and day counts for one stake.

    A closed record always ends the stake. Otherwise the stake is active until its
    end day has passed. With an unknown day (0) every stake ending after day 0 is
    reported active; such results are not final.
    """

    days_served = max(0, current_day_index - start_day_index)
    days_left = max(0, end_day_index - current_day_index)
    is_active = (not is_closed) and end_day_index >= current_day_index
    return StakeStatus(is_active=is_active, days_served=days_served, days_left=days_left)


def reconcile(
    opened_batch: Iterable[StakeOpened],
    closed_ids: Collection[str],
    current_day_index: int | None,
) -> list[StakeOpened]:
    current_day = current_day_index if current_day_index is not None else UNKNOWN_DAY
    reconciled: list[StakeOpened] = []
    for record in opened_batch:
        status = stake_status(
            start_day_index=record.start_day_index,
            end_day_index=record.end_day_index,
            current_day_index=current_day,
            is_closed=record.stake_id in closed_ids,
        )
        reconciled.append(
            replace(
                record,
                is_active=status.is_active,
                days_served=status.days_served,
                days_left=status.days_left,
            )
        )
    return reconciled


def closed_id_set(closed: Iterable[StakeClosed]) -> set[str]:
    return {record.stake_id for record in closed}


def is_degraded_day(current_day_index: int | None) -> bool:
    return current_day_index is None or current_day_index <= UNKNOWN_DAY

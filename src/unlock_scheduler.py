"""
Unlock scheduling for stake positions.

Pure functions over (position, now). Nothing here runs on a timer: the
locked -> unlockable transition is projected on read and persisted by the
ledger the next time it touches the position.
"""

from datetime import datetime, timedelta

from models import PositionStatus, StakePosition


def compute_unlock_at(staked_at: datetime, lock_duration_days: int) -> datetime:
    """Unlock timestamp for a stake opened at staked_at."""
    if lock_duration_days <= 0:
        raise ValueError("lock_duration_days must be positive")
    return staked_at + timedelta(days=lock_duration_days)


def is_withdrawable(position: StakePosition, now: datetime) -> bool:
    return position.status != PositionStatus.WITHDRAWN and now >= position.unlock_at


def effective_status(position: StakePosition, now: datetime) -> PositionStatus:
    """Status as of now; only ever advances locked to unlockable."""
    if position.status == PositionStatus.LOCKED and is_withdrawable(position, now):
        return PositionStatus.UNLOCKABLE
    return position.status


def remaining_lock(position: StakePosition, now: datetime) -> timedelta:
    """Time left until unlock_at, zero once reached."""
    remaining = position.unlock_at - now
    return max(remaining, timedelta(0))


def project(position: StakePosition, now: datetime) -> StakePosition:
    """Copy of position with the effective status applied."""
    status = effective_status(position, now)
    if status == position.status:
        return position
    return position.model_copy(update={"status": status})

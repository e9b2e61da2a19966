"""
Staking error taxonomy.

Every failure a staking operation can surface is a StakingError subclass with
a machine-readable error_type and a suggested HTTP status, so the API layer
can translate it without knowing staking internals.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional


class StakingError(Exception):
    """Base exception for staking errors."""

    retryable = False

    def __init__(self, message: str, error_type: str = "unknown", http_status: int = 500):
        """
        Initialize StakingError.

        Args:
            message: Human-readable error message
            error_type: Machine-readable error classification
            http_status: Suggested HTTP status code (4xx for client errors, 5xx for server)
        """
        self.message = message
        self.error_type = error_type
        self.http_status = http_status
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for an API error body."""
        return {
            "error": self.error_type,
            "message": self.message,
            "retryable": self.retryable,
        }


class InvalidAmountError(StakingError):
    """Amount is negative, zero where a positive value is required, or below the minimum stake."""
    def __init__(self, message: str):
        super().__init__(message, error_type="invalid_amount", http_status=400)


class StakingDisabledError(StakingError):
    """Asset does not accept new stakes."""
    def __init__(self, message: str):
        super().__init__(message, error_type="staking_disabled", http_status=400)


class PositionNotFoundError(StakingError):
    """No stake position with the requested id."""
    def __init__(self, position_id: str):
        self.position_id = position_id
        super().__init__(
            f"Stake position {position_id} not found",
            error_type="position_not_found",
            http_status=404,
        )


class ForbiddenError(StakingError):
    """Caller does not own the stake position."""
    def __init__(self, message: str = "Not authorized to unstake this record"):
        super().__init__(message, error_type="forbidden", http_status=403)


class NotWithdrawableError(StakingError):
    """Position is still inside its lock window."""

    def __init__(
        self,
        position_id: str,
        unlock_at: Optional[datetime] = None,
        remaining: Optional[timedelta] = None,
    ):
        self.position_id = position_id
        self.unlock_at = unlock_at
        self.remaining = remaining
        message = "Staking period not over yet"
        if remaining is not None:
            message = f"{message} ({_format_remaining(remaining)} remaining)"
        super().__init__(message, error_type="not_withdrawable", http_status=400)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["unlock_at"] = self.unlock_at.isoformat() if self.unlock_at else None
        body["remaining_seconds"] = (
            int(self.remaining.total_seconds()) if self.remaining is not None else None
        )
        return body


class AlreadyWithdrawnError(StakingError):
    """Position has already been paid out."""
    def __init__(self, position_id: str):
        self.position_id = position_id
        super().__init__(
            f"Stake position {position_id} has already been withdrawn",
            error_type="already_withdrawn",
            http_status=409,
        )


class ContentionError(StakingError):
    """Position lock could not be acquired in time (transient, retry)."""

    retryable = True

    def __init__(self, position_id: str, timeout: Optional[float] = None):
        self.position_id = position_id
        self.timeout = timeout
        message = f"Stake position {position_id} is busy"
        if timeout is not None:
            message = f"{message} (lock wait exceeded {timeout:g}s)"
        super().__init__(message, error_type="contention", http_status=503)


def _format_remaining(remaining: timedelta) -> str:
    """Render a lock wait as '3d 4h 5m'."""
    total_minutes = max(0, int(remaining.total_seconds() // 60))
    days, rest = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(rest, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"

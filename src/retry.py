"""Bounded retry for lock contention."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from config.platform import Config
from errors import ContentionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_on_contention(
    operation: Callable[[], Awaitable[T]],
    max_attempts: Optional[int] = None,
    backoff: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run operation, retrying only ContentionError with exponential backoff.

    Every other StakingError is terminal and propagates on the first attempt.
    The last ContentionError is re-raised once attempts are exhausted.
    """
    max_attempts = max_attempts or Config.CONTENTION_MAX_ATTEMPTS
    backoff = Config.CONTENTION_BACKOFF_SECONDS if backoff is None else backoff

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except ContentionError as e:
            if attempt >= max_attempts:
                logger.warning(
                    f"Position {e.position_id[:8]}... still contended after {max_attempts} attempts"
                )
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.info(
                f"Position {e.position_id[:8]}... busy, retrying in {delay:.3f}s "
                f"(attempt {attempt}/{max_attempts})"
            )
            await sleep(delay)

    # Should never reach here due to raise in the loop
    raise RuntimeError("retry_on_contention exhausted without a result")

"""
Royalty Accrual Engine.

Splits the staker share of an asset's revenue (tips, sales) across the
positions staked on it, pro rata to principal. The split is computed on a
single snapshot of eligible positions and then credited one position lock at
a time, so a concurrent unstake can interleave without a global asset lock.
"""

import functools
import logging
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from clock import Clock, SystemClock
from config.platform import Config
from errors import AlreadyWithdrawnError, ContentionError, InvalidAmountError
from ledger import Ledger
from models import (
    DistributionStatus,
    PositionStatus,
    RevenueEvent,
    RoyaltyDistribution,
    StakePosition,
)
from position_store import PositionStore
from retry import retry_on_contention

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = Decimal(10000)

ELIGIBLE_STATUSES = (PositionStatus.LOCKED, PositionStatus.UNLOCKABLE)


def compute_staker_pool(total_amount: Decimal, royalty_share_bps: int, quantum: Decimal) -> Decimal:
    """Part of the revenue reserved for stakers, in whole currency units."""
    pool = total_amount * Decimal(royalty_share_bps) / BPS_DENOMINATOR
    return pool.quantize(quantum, rounding=ROUND_HALF_EVEN)


def allocate(
    staker_pool: Decimal,
    positions: Iterable[StakePosition],
    quantum: Decimal,
) -> Tuple[Dict[str, Decimal], Decimal]:
    """
    Stake-weighted pro rata split of staker_pool.

    Each share is rounded half-even to quantum. The rounding residue is
    settled against the largest principal (ties: earliest staked_at, then id):
    a positive residue is added to it, a negative one is taken back from the
    shares in that order without driving any share below zero.

    Returns:
        (shares by position id, unallocated amount)
    """
    positions = list(positions)
    total_principal = sum((p.principal for p in positions), Decimal("0"))
    if not positions or total_principal <= 0:
        return {}, staker_pool

    shares = {
        p.id: (staker_pool * p.principal / total_principal).quantize(quantum, rounding=ROUND_HALF_EVEN)
        for p in positions
    }

    ranked = sorted(positions, key=lambda p: (-p.principal, p.staked_at, p.id))
    residue = staker_pool - sum(shares.values(), Decimal("0"))
    if residue > 0:
        shares[ranked[0].id] += residue
    elif residue < 0:
        deficit = -residue
        for p in ranked:
            take = min(shares[p.id], deficit)
            shares[p.id] -= take
            deficit -= take
            if deficit == 0:
                break

    return shares, Decimal("0")


class RoyaltyAccrualEngine:
    """Credits staker royalties for revenue events."""

    def __init__(
        self,
        ledger: Ledger,
        store: PositionStore,
        clock: Optional[Clock] = None,
        quantum: Optional[Decimal] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
    ):
        self.ledger = ledger
        self.store = store
        self.clock = clock or SystemClock()
        self.quantum = quantum or Config.AMOUNT_QUANTUM
        self.max_attempts = max_attempts
        self.backoff = backoff

    async def eligible_positions(self, asset_id: str, occurred_at) -> List[StakePosition]:
        """Snapshot of positions earning on asset_id at occurred_at."""
        positions = await self.store.list_positions(asset_id=asset_id, statuses=ELIGIBLE_STATUSES)
        return [p for p in positions if p.staked_at <= occurred_at]

    async def on_revenue_event(self, event: RevenueEvent) -> RoyaltyDistribution:
        """
        Distribute the staker share of one revenue event.

        The shares are planned once from a snapshot and stored with a pending
        record before any credit. Each credit is tagged with the event id, so
        a replay of a pending event (a duplicate delivery, or a retry after a
        failure partway through) resumes the stored plan without crediting any
        position twice.

        Args:
            event: Tip or sale attributed to an asset

        Returns:
            Completed RoyaltyDistribution; credited shares plus unallocated
            always equal staker_pool.
        """
        if event.amount < 0:
            raise InvalidAmountError("Revenue amount cannot be negative")

        plan = await self.store.get_distribution(event.event_id)
        if plan is None:
            plan = await self._plan(event)
            if not await self.store.claim_distribution(plan):
                logger.info(f"Revenue event {event.event_id} claimed by another worker")
                plan = await self.store.get_distribution(event.event_id)

        if plan.status == DistributionStatus.COMPLETED:
            logger.info(f"Revenue event {event.event_id} already distributed, skipping")
            return plan

        credited: Dict[str, Decimal] = {}
        contended: List[str] = []
        for position_id, share in plan.allocations.items():
            if share == 0:
                continue
            try:
                await retry_on_contention(
                    functools.partial(self.ledger.credit_royalty, position_id, share, event.event_id),
                    max_attempts=self.max_attempts,
                    backoff=self.backoff,
                )
                credited[position_id] = share
            except AlreadyWithdrawnError:
                # Withdrew between snapshot and credit; the share goes back to the caller
                logger.info(f"Position {position_id[:8]}... withdrew before credit, share unallocated")
            except ContentionError:
                contended.append(position_id)
            except Exception as e:
                logger.error(
                    f"Distribution of revenue event {event.event_id} aborted after "
                    f"{len(credited)} credits: {e}",
                    exc_info=True,
                )
                raise

        result = plan.model_copy(
            update={
                "credited": credited,
                "unallocated": plan.staker_pool - sum(credited.values(), Decimal("0")),
                "contended": contended,
                "status": DistributionStatus.COMPLETED,
                "distributed_at": self.clock.now(),
            }
        )
        await self.store.complete_distribution(result)

        logger.info(
            f"Distributed revenue event {event.event_id} on asset {event.asset_id}: "
            f"pool={plan.staker_pool} credited={result.total_credited} "
            f"unallocated={result.unallocated} positions={len(credited)}"
        )
        return result

    async def _plan(self, event: RevenueEvent) -> RoyaltyDistribution:
        """Pending record holding the staker pool and its planned split."""
        config = await self.store.get_config(event.asset_id)
        if config is None or not config.pays_royalty_on(event.source):
            share_bps = 0
        else:
            share_bps = config.royalty_share_bps
        staker_pool = compute_staker_pool(event.amount, share_bps, self.quantum)

        snapshot = await self.eligible_positions(event.asset_id, event.occurred_at)
        shares, _ = allocate(staker_pool, snapshot, self.quantum)

        return RoyaltyDistribution(
            event_id=event.event_id,
            asset_id=event.asset_id,
            revenue_amount=event.amount,
            staker_pool=staker_pool,
            allocations=shares,
            unallocated=staker_pool,
            status=DistributionStatus.PENDING,
            distributed_at=self.clock.now(),
        )

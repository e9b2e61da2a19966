"""
Staking Facade.

Public staking operations for the API layer: stake, unstake, statistics and
read views. Callers arrive already authenticated; this layer enforces
ownership and business rules, composes the ledger, unlock scheduler and
royalty engine, and retries lock contention a bounded number of times.
"""

import functools
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from clock import Clock, SystemClock
from config.platform import Config, configure_logging
from errors import (
    AlreadyWithdrawnError,
    ForbiddenError,
    NotWithdrawableError,
    PositionNotFoundError,
    StakingDisabledError,
)
from ledger import Ledger
from models import (
    AssetStakingConfig,
    PositionStatus,
    RevenueEvent,
    RevenueSource,
    RoyaltyDistribution,
    StakePosition,
    StakerRewards,
    StakingStats,
    WithdrawalReceipt,
)
from position_store import InMemoryPositionStore, PositionStore
from retry import retry_on_contention
from royalty_engine import RoyaltyAccrualEngine
import unlock_scheduler

logger = logging.getLogger(__name__)


class StakingFacade:
    """Operation surface composing ledger, scheduler and royalty engine."""

    def __init__(
        self,
        store: PositionStore,
        clock: Optional[Clock] = None,
        ledger: Optional[Ledger] = None,
        engine: Optional[RoyaltyAccrualEngine] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.ledger = ledger or Ledger(store, self.clock)
        self.engine = engine or RoyaltyAccrualEngine(
            self.ledger, store, self.clock, max_attempts=max_attempts, backoff=backoff
        )
        self.max_attempts = max_attempts
        self.backoff = backoff

    async def _with_retry(self, operation, *args):
        return await retry_on_contention(
            functools.partial(operation, *args),
            max_attempts=self.max_attempts,
            backoff=self.backoff,
        )

    async def stake(self, caller_id: str, asset_id: str, amount: Decimal) -> StakePosition:
        """
        Stake amount on an asset.

        Args:
            caller_id: Authenticated user id
            asset_id: Riff/NFT id
            amount: Principal to lock

        Returns:
            New locked StakePosition
        """
        config = await self.store.get_config(asset_id)
        if config is None:
            raise StakingDisabledError(f"Staking is not configured for asset {asset_id}")

        logger.info(f"User {caller_id} staking {amount} on asset {asset_id}")
        return await self._with_retry(
            self.ledger.open_position,
            caller_id,
            asset_id,
            Decimal(str(amount)),
            timedelta(days=config.lock_duration_days),
            config,
        )

    async def unstake(self, caller_id: str, position_id: str) -> WithdrawalReceipt:
        """
        Withdraw a position the caller owns once its lock has expired.

        Raises:
            PositionNotFoundError: Unknown position
            ForbiddenError: Caller is not the staker
            AlreadyWithdrawnError: Position was already paid out
            NotWithdrawableError: Lock still running (carries remaining time)
            ContentionError: Position stayed busy after the retry bound
        """
        position = await self.store.get_position(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)

        if position.staker_id != caller_id:
            logger.warning(f"User {caller_id} tried to unstake position {position_id[:8]}... they do not own")
            raise ForbiddenError()

        if position.status == PositionStatus.WITHDRAWN:
            raise AlreadyWithdrawnError(position_id)

        now = self.clock.now()
        if not unlock_scheduler.is_withdrawable(position, now):
            remaining = unlock_scheduler.remaining_lock(position, now)
            logger.info(f"Unstake of position {position_id[:8]}... refused, {remaining} remaining")
            raise NotWithdrawableError(position_id, unlock_at=position.unlock_at, remaining=remaining)

        receipt = await self._with_retry(self.ledger.withdraw, position_id)
        logger.info(f"User {caller_id} unstaked position {position_id[:8]}... released {receipt.total_released}")
        return receipt

    async def get_stats(self, asset_id: str) -> StakingStats:
        """Totals over the asset's non-withdrawn positions."""
        positions = await self.store.list_positions(
            asset_id=asset_id,
            statuses=(PositionStatus.LOCKED, PositionStatus.UNLOCKABLE),
        )
        return StakingStats(
            total_staked=sum((p.principal for p in positions), Decimal("0")),
            staker_count=len({p.staker_id for p in positions}),
            position_count=len(positions),
        )

    async def record_revenue(
        self,
        asset_id: str,
        amount: Decimal,
        occurred_at: Optional[datetime] = None,
        event_id: Optional[str] = None,
        source: RevenueSource = RevenueSource.TIP,
    ) -> RoyaltyDistribution:
        """Hand a tip or sale on asset_id to the royalty engine."""
        event = RevenueEvent(
            event_id=event_id or str(uuid.uuid4()),
            asset_id=asset_id,
            amount=Decimal(str(amount)),
            occurred_at=occurred_at or self.clock.now(),
            source=source,
        )
        return await self.engine.on_revenue_event(event)

    async def get_position(self, position_id: str) -> StakePosition:
        return await self.ledger.get_position(position_id)

    async def list_staker_positions(self, staker_id: str) -> List[StakePosition]:
        """All of a user's positions, withdrawn ones included, with effective status."""
        now = self.clock.now()
        positions = await self.store.list_positions(staker_id=staker_id)
        return [unlock_scheduler.project(p, now) for p in positions]

    async def list_asset_positions(self, asset_id: str) -> List[StakePosition]:
        now = self.clock.now()
        positions = await self.store.list_positions(asset_id=asset_id)
        return [unlock_scheduler.project(p, now) for p in positions]

    async def get_rewards(self, staker_id: str) -> StakerRewards:
        """Summary of what a staker has locked, earned and can withdraw now."""
        positions = [
            p for p in await self.list_staker_positions(staker_id)
            if p.status != PositionStatus.WITHDRAWN
        ]
        unlockable = [p for p in positions if p.status == PositionStatus.UNLOCKABLE]
        zero = Decimal("0")
        return StakerRewards(
            staker_id=staker_id,
            total_principal=sum((p.principal for p in positions), zero),
            total_accrued=sum((p.accrued_royalties for p in positions), zero),
            withdrawable_principal=sum((p.principal for p in unlockable), zero),
            withdrawable_royalties=sum((p.accrued_royalties for p in unlockable), zero),
            position_count=len(positions),
        )

    async def get_asset_config(self, asset_id: str) -> AssetStakingConfig:
        """Stored staking settings; the configured defaults are saved on first read."""
        config = await self.store.get_config(asset_id)
        if config is None:
            config = AssetStakingConfig.default(asset_id)
            await self.store.save_config(config)
            logger.info(f"Created default staking settings for asset {asset_id}")
        return config

    async def set_asset_config(self, config: AssetStakingConfig) -> AssetStakingConfig:
        await self.store.save_config(config)
        logger.info(
            f"Staking settings for asset {config.asset_id}: enabled={config.staking_enabled} "
            f"lock_days={config.lock_duration_days} minimum={config.minimum_stake} "
            f"royalty_bps={config.royalty_share_bps}"
        )
        return config


def create_position_store() -> PositionStore:
    """Build the store selected by STAKING_STORE / DATABASE_URL."""
    if Config.STAKING_STORE == "postgres":
        from postgres_store import PostgresPositionStore
        return PostgresPositionStore(Config.DATABASE_URL)
    return InMemoryPositionStore()


def create_staking_facade(store: Optional[PositionStore] = None, clock: Optional[Clock] = None) -> StakingFacade:
    """Factory function to create facade instance."""
    configure_logging()
    store = store or create_position_store()
    logger.info(f"Creating staking facade on {type(store).__name__}")
    return StakingFacade(store, clock=clock)

"""
Staking Ledger.

Authoritative record of stake positions and their append-only movement log.
Every mutation runs under the position's lock and commits the position and
its movements together, which keeps the conservation invariant:

    sum(movement.amount) == principal + accrued_royalties - amount_withdrawn
"""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from clock import Clock, SystemClock
from config.platform import Config
from errors import (
    AlreadyWithdrawnError,
    InvalidAmountError,
    NotWithdrawableError,
    PositionNotFoundError,
    StakingDisabledError,
)
from models import (
    AssetStakingConfig,
    LedgerMovement,
    MovementKind,
    PositionStatus,
    StakePosition,
    WithdrawalReceipt,
)
from position_store import PositionStore, PositionTransaction
import unlock_scheduler

logger = logging.getLogger(__name__)


class Ledger:
    """Owns every write to stake positions and ledger movements."""

    def __init__(
        self,
        store: PositionStore,
        clock: Optional[Clock] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.lock_timeout = lock_timeout if lock_timeout is not None else Config.LOCK_TIMEOUT_SECONDS

    async def open_position(
        self,
        staker_id: str,
        asset_id: str,
        amount: Decimal,
        lock_duration: timedelta,
        config: AssetStakingConfig,
    ) -> StakePosition:
        """
        Lock amount on asset for staker.

        Args:
            staker_id: Authenticated staker
            asset_id: Riff/NFT being staked on
            amount: Principal to lock
            lock_duration: Time until the stake can be withdrawn
            config: Asset staking settings read for this operation

        Returns:
            The new locked StakePosition
        """
        if not config.staking_enabled:
            raise StakingDisabledError(f"Staking is not enabled for asset {asset_id}")
        if amount <= 0:
            raise InvalidAmountError("Stake amount must be positive")
        if amount < config.minimum_stake:
            raise InvalidAmountError(
                f"Stake amount {amount} is below the minimum stake of {config.minimum_stake}"
            )
        if lock_duration <= timedelta(0):
            raise ValueError("lock_duration must be positive")

        now = self.clock.now()
        position = StakePosition(
            id=str(uuid.uuid4()),
            staker_id=staker_id,
            asset_id=asset_id,
            principal=amount,
            staked_at=now,
            unlock_at=now + lock_duration,
            status=PositionStatus.LOCKED,
        )
        deposit = self._movement(position.id, MovementKind.DEPOSIT, amount)
        await self.store.create_position(position, deposit)

        logger.info(
            f"Opened position {position.id[:8]}... staker={staker_id} asset={asset_id} "
            f"amount={amount} unlock_at={position.unlock_at.isoformat()}"
        )
        return position

    async def credit_royalty(
        self,
        position_id: str,
        amount: Decimal,
        reference: Optional[str] = None,
    ) -> StakePosition:
        """
        Add amount to the position's accrued royalties.

        With a reference (the revenue event id) the credit is applied at most
        once; repeating it returns the position unchanged, even after the
        position was withdrawn.
        """
        if amount < 0:
            raise InvalidAmountError("Royalty credit cannot be negative")

        async with self.store.lock(position_id, self.lock_timeout) as tx:
            position = self._touch(tx)
            if reference is not None and tx.has_reference(reference):
                logger.info(f"Royalty {reference} already credited to position {position_id[:8]}...")
                return position
            if position.status == PositionStatus.WITHDRAWN:
                raise AlreadyWithdrawnError(position_id)

            position = position.model_copy(
                update={"accrued_royalties": position.accrued_royalties + amount}
            )
            tx.save(position)
            tx.append(self._movement(position_id, MovementKind.ROYALTY_CREDIT, amount, reference))

        logger.debug(f"Credited {amount} royalties to position {position_id[:8]}...")
        return position

    async def withdraw(self, position_id: str) -> WithdrawalReceipt:
        """Release principal plus accrued royalties of an unlockable position."""
        async with self.store.lock(position_id, self.lock_timeout) as tx:
            position = self._touch(tx)
            if position.status == PositionStatus.WITHDRAWN:
                raise AlreadyWithdrawnError(position_id)
            if position.status != PositionStatus.UNLOCKABLE:
                now = self.clock.now()
                raise NotWithdrawableError(
                    position_id,
                    unlock_at=position.unlock_at,
                    remaining=unlock_scheduler.remaining_lock(position, now),
                )

            now = self.clock.now()
            principal = position.principal
            royalties = position.accrued_royalties
            total = principal + royalties

            tx.save(
                position.model_copy(
                    update={
                        "status": PositionStatus.WITHDRAWN,
                        "amount_withdrawn": total,
                        "withdrawn_at": now,
                    }
                )
            )
            tx.append(self._movement(position_id, MovementKind.WITHDRAWAL, -principal))
            tx.append(self._movement(position_id, MovementKind.ROYALTY_PAYOUT, -royalties))

        logger.info(
            f"Withdrew position {position_id[:8]}... principal={principal} royalties={royalties}"
        )
        return WithdrawalReceipt(
            position_id=position_id,
            staker_id=position.staker_id,
            asset_id=position.asset_id,
            principal=principal,
            royalties=royalties,
            total_released=total,
            withdrawn_at=now,
        )

    async def touch(self, position_id: str) -> StakePosition:
        """Persist a due locked -> unlockable transition; no-op otherwise."""
        async with self.store.lock(position_id, self.lock_timeout) as tx:
            return self._touch(tx)

    async def get_position(self, position_id: str) -> StakePosition:
        """Position with its effective status projected (read-only)."""
        position = await self.store.get_position(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        return unlock_scheduler.project(position, self.clock.now())

    async def movements(self, position_id: str) -> List[LedgerMovement]:
        if await self.store.get_position(position_id) is None:
            raise PositionNotFoundError(position_id)
        return await self.store.list_movements(position_id)

    async def balance(self, position_id: str) -> Decimal:
        """Sum of the position's signed movements."""
        movements = await self.movements(position_id)
        return sum((m.amount for m in movements), Decimal("0"))

    def _touch(self, tx: PositionTransaction) -> StakePosition:
        projected = unlock_scheduler.project(tx.position, self.clock.now())
        if projected.status != tx.position.status:
            logger.debug(f"Position {projected.id[:8]}... is now {projected.status.value}")
            tx.save(projected)
        return projected

    def _movement(
        self,
        position_id: str,
        kind: MovementKind,
        amount: Decimal,
        reference: Optional[str] = None,
    ) -> LedgerMovement:
        return LedgerMovement(
            id=str(uuid.uuid4()),
            position_id=position_id,
            kind=kind,
            amount=amount,
            occurred_at=self.clock.now(),
            reference=reference,
        )

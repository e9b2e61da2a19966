"""
Position storage for the staking ledger.

A PositionStore owns stake positions, their movement log, asset staking
settings and royalty distribution records. Mutations go through
``store.lock(position_id)``: an exclusive, time-bounded lock on one position
that yields a unit of work and commits it only if the block exits cleanly.

InMemoryPositionStore backs tests and single-process deployments; the
PostgreSQL implementation lives in postgres_store.py.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional, Protocol

from errors import ContentionError, PositionNotFoundError
from models import (
    AssetStakingConfig,
    LedgerMovement,
    PositionStatus,
    RoyaltyDistribution,
    StakePosition,
)

logger = logging.getLogger(__name__)


class PositionTransaction:
    """Pending changes to one locked position."""

    def __init__(self, position: StakePosition, references: Iterable[str] = ()):
        self.original = position
        self.position = position
        self.movements: List[LedgerMovement] = []
        # References of movements already committed for this position
        self.references = set(references)

    def save(self, position: StakePosition) -> None:
        if position.id != self.original.id:
            raise ValueError(f"Transaction is scoped to {self.original.id}, not {position.id}")
        self.position = position

    def append(self, movement: LedgerMovement) -> None:
        if movement.position_id != self.original.id:
            raise ValueError(f"Movement belongs to {movement.position_id}, not {self.original.id}")
        self.movements.append(movement)

    def has_reference(self, reference: str) -> bool:
        return reference in self.references or any(m.reference == reference for m in self.movements)

    @property
    def changed(self) -> bool:
        return self.position != self.original


class PositionStore(Protocol):
    def lock(self, position_id: str, timeout: float) -> "AsyncIterator[PositionTransaction]":
        ...

    async def create_position(self, position: StakePosition, movement: LedgerMovement) -> None:
        ...

    async def get_position(self, position_id: str) -> Optional[StakePosition]:
        ...

    async def list_positions(
        self,
        asset_id: Optional[str] = None,
        staker_id: Optional[str] = None,
        statuses: Optional[Iterable[PositionStatus]] = None,
    ) -> List[StakePosition]:
        ...

    async def list_movements(self, position_id: str) -> List[LedgerMovement]:
        ...

    async def get_config(self, asset_id: str) -> Optional[AssetStakingConfig]:
        ...

    async def save_config(self, config: AssetStakingConfig) -> None:
        ...

    async def get_distribution(self, event_id: str) -> Optional[RoyaltyDistribution]:
        ...

    async def claim_distribution(self, distribution: RoyaltyDistribution) -> bool:
        ...

    async def complete_distribution(self, distribution: RoyaltyDistribution) -> None:
        ...

    async def close(self) -> None:
        ...


class InMemoryPositionStore:
    """
    Process-local store.

    One asyncio.Lock per position id serializes read-modify-write cycles on
    that position; reads never take a lock since records are immutable and
    swapped atomically on commit.
    """

    def __init__(self):
        self._positions: Dict[str, StakePosition] = {}
        self._movements: Dict[str, List[LedgerMovement]] = defaultdict(list)
        self._configs: Dict[str, AssetStakingConfig] = {}
        self._distributions: Dict[str, RoyaltyDistribution] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def lock(self, position_id: str, timeout: float) -> AsyncIterator[PositionTransaction]:
        if position_id not in self._positions:
            raise PositionNotFoundError(position_id)

        position_lock = self._locks.setdefault(position_id, asyncio.Lock())
        self._lock_users[position_id] += 1
        try:
            try:
                await asyncio.wait_for(position_lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Lock wait on position {position_id[:8]}... exceeded {timeout}s")
                raise ContentionError(position_id, timeout)

            try:
                tx = PositionTransaction(
                    self._positions[position_id],
                    references=(m.reference for m in self._movements[position_id] if m.reference),
                )
                yield tx
                # Commit only when the block finished without raising
                if tx.changed:
                    self._positions[position_id] = tx.position
                self._movements[position_id].extend(tx.movements)
            finally:
                position_lock.release()
        finally:
            # Drop the lock once nobody holds or waits on it
            self._lock_users[position_id] -= 1
            if not self._lock_users[position_id]:
                del self._lock_users[position_id]
                self._locks.pop(position_id, None)

    async def create_position(self, position: StakePosition, movement: LedgerMovement) -> None:
        if position.id in self._positions:
            raise ValueError(f"Position {position.id} already exists")
        if movement.position_id != position.id:
            raise ValueError("Deposit movement must reference the new position")
        self._positions[position.id] = position
        self._movements[position.id].append(movement)

    async def get_position(self, position_id: str) -> Optional[StakePosition]:
        return self._positions.get(position_id)

    async def list_positions(
        self,
        asset_id: Optional[str] = None,
        staker_id: Optional[str] = None,
        statuses: Optional[Iterable[PositionStatus]] = None,
    ) -> List[StakePosition]:
        wanted = set(statuses) if statuses is not None else None
        positions = [
            p
            for p in self._positions.values()
            if (asset_id is None or p.asset_id == asset_id)
            and (staker_id is None or p.staker_id == staker_id)
            and (wanted is None or p.status in wanted)
        ]
        return sorted(positions, key=lambda p: (p.staked_at, p.id))

    async def list_movements(self, position_id: str) -> List[LedgerMovement]:
        return list(self._movements.get(position_id, []))

    async def get_config(self, asset_id: str) -> Optional[AssetStakingConfig]:
        return self._configs.get(asset_id)

    async def save_config(self, config: AssetStakingConfig) -> None:
        self._configs[config.asset_id] = config

    async def get_distribution(self, event_id: str) -> Optional[RoyaltyDistribution]:
        return self._distributions.get(event_id)

    async def claim_distribution(self, distribution: RoyaltyDistribution) -> bool:
        if distribution.event_id in self._distributions:
            return False
        self._distributions[distribution.event_id] = distribution
        return True

    async def complete_distribution(self, distribution: RoyaltyDistribution) -> None:
        self._distributions[distribution.event_id] = distribution

    async def close(self) -> None:
        self._locks.clear()
        self._lock_users.clear()

"""
PostgreSQL Position Store for the staking ledger.

Stores stake positions, the movement log, asset staking settings and royalty
distribution records in Postgres via asyncpg. Per-position serialization uses
row locks (SELECT ... FOR UPDATE) bounded by a transaction-local
lock_timeout, so a busy row surfaces as ContentionError instead of blocking.
"""

import json
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Iterable, List, Optional

import asyncpg

from config.platform import Config
from errors import ContentionError, PositionNotFoundError
from models import (
    AssetStakingConfig,
    DistributionStatus,
    LedgerMovement,
    MovementKind,
    PositionStatus,
    RoyaltyDistribution,
    StakePosition,
)
from position_store import PositionTransaction

logger = logging.getLogger(__name__)

POSITION_COLUMNS = """
    id, staker_id, asset_id, principal, staked_at, unlock_at, status,
    accrued_royalties, amount_withdrawn, withdrawn_at
"""

CONFIG_COLUMNS = """
    asset_id, staking_enabled, lock_duration_days, minimum_stake, royalty_share_bps,
    marketplace_royalty, remixes_royalty, derivatives_royalty, collaborations_royalty,
    licensing_royalty
"""

DISTRIBUTION_COLUMNS = """
    event_id, asset_id, revenue_amount, staker_pool, allocations, credited,
    unallocated, contended, status, distributed_at
"""

# Lock-related SQLSTATEs that mean "try again", not "request is wrong"
_CONTENTION_ERRORS = (
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.SerializationError,
)


class PostgresPositionStore:
    """
    PostgreSQL-backed position store.

    Uses asyncpg for async database operations. The connection pool is
    created lazily and the schema is ensured on first connection.
    """

    def __init__(self, database_url: Optional[str] = None):
        """Initialize position store with PostgreSQL connection settings."""
        database_url = database_url or Config.DATABASE_URL
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set for position storage")

        self.database_url = database_url
        self._pool: Optional[asyncpg.Pool] = None
        logger.info("Initialized PostgreSQL position store")

    async def _get_pool(self) -> asyncpg.Pool:
        """Get or create database connection pool."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=Config.DB_POOL_MIN_SIZE,
                max_size=Config.DB_POOL_MAX_SIZE,
                command_timeout=Config.DB_COMMAND_TIMEOUT,
            )
            await self._ensure_schema()
        return self._pool

    async def _ensure_schema(self):
        """Create staking tables if they don't exist."""
        if self._pool is None:
            return

        async with self._pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS stake_positions (
                    id VARCHAR(64) PRIMARY KEY,
                    staker_id VARCHAR(255) NOT NULL,
                    asset_id VARCHAR(255) NOT NULL,
                    principal NUMERIC(38, 18) NOT NULL CHECK (principal >= 0),
                    staked_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    unlock_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'locked',
                    accrued_royalties NUMERIC(38, 18) NOT NULL DEFAULT 0 CHECK (accrued_royalties >= 0),
                    amount_withdrawn NUMERIC(38, 18) NOT NULL DEFAULT 0,
                    withdrawn_at TIMESTAMP WITH TIME ZONE,
                    CHECK (unlock_at > staked_at)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS ledger_movements (
                    id VARCHAR(64) PRIMARY KEY,
                    position_id VARCHAR(64) NOT NULL REFERENCES stake_positions(id),
                    kind VARCHAR(20) NOT NULL,
                    amount NUMERIC(38, 18) NOT NULL,
                    occurred_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    reference VARCHAR(255)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS asset_staking_configs (
                    asset_id VARCHAR(255) PRIMARY KEY,
                    staking_enabled BOOLEAN NOT NULL DEFAULT TRUE,
                    lock_duration_days INTEGER NOT NULL CHECK (lock_duration_days > 0),
                    minimum_stake NUMERIC(38, 18) NOT NULL DEFAULT 0,
                    royalty_share_bps INTEGER NOT NULL CHECK (royalty_share_bps BETWEEN 0 AND 10000),
                    marketplace_royalty BOOLEAN NOT NULL DEFAULT TRUE,
                    remixes_royalty BOOLEAN NOT NULL DEFAULT TRUE,
                    derivatives_royalty BOOLEAN NOT NULL DEFAULT TRUE,
                    collaborations_royalty BOOLEAN NOT NULL DEFAULT TRUE,
                    licensing_royalty BOOLEAN NOT NULL DEFAULT TRUE,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS royalty_distributions (
                    event_id VARCHAR(255) PRIMARY KEY,
                    asset_id VARCHAR(255) NOT NULL,
                    revenue_amount NUMERIC(38, 18) NOT NULL,
                    staker_pool NUMERIC(38, 18) NOT NULL,
                    allocations JSONB NOT NULL DEFAULT '{}'::jsonb,
                    credited JSONB NOT NULL DEFAULT '{}'::jsonb,
                    unallocated NUMERIC(38, 18) NOT NULL DEFAULT 0,
                    contended JSONB NOT NULL DEFAULT '[]'::jsonb,
                    status VARCHAR(20) NOT NULL,
                    distributed_at TIMESTAMP WITH TIME ZONE NOT NULL
                );
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_positions_asset_status
                ON stake_positions(asset_id, status);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_positions_staker
                ON stake_positions(staker_id);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_movements_position
                ON ledger_movements(position_id, occurred_at);
            """)
            await conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_movements_reference
                ON ledger_movements(position_id, reference)
                WHERE reference IS NOT NULL;
            """)

            logger.info("Verified staking table schema")

    @asynccontextmanager
    async def lock(self, position_id: str, timeout: float) -> AsyncIterator[PositionTransaction]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # SET does not accept bind parameters; the value is our own integer
                await conn.execute(f"SET LOCAL lock_timeout = '{max(1, int(timeout * 1000))}ms'")
                try:
                    row = await conn.fetchrow(
                        f"SELECT {POSITION_COLUMNS} FROM stake_positions WHERE id = $1 FOR UPDATE",
                        position_id,
                    )
                except _CONTENTION_ERRORS as e:
                    logger.warning(f"Row lock on position {position_id[:8]}... not acquired: {e}")
                    raise ContentionError(position_id, timeout) from e

                if not row:
                    raise PositionNotFoundError(position_id)

                references = await conn.fetch(
                    "SELECT reference FROM ledger_movements WHERE position_id = $1 AND reference IS NOT NULL",
                    position_id,
                )
                tx = PositionTransaction(
                    _row_to_position(row),
                    references=(r["reference"] for r in references),
                )
                yield tx

                if tx.changed:
                    await _update_position(conn, tx.position)
                for movement in tx.movements:
                    await _insert_movement(conn, movement)

    async def create_position(self, position: StakePosition, movement: LedgerMovement) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO stake_positions ({POSITION_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    position.id,
                    position.staker_id,
                    position.asset_id,
                    position.principal,
                    position.staked_at,
                    position.unlock_at,
                    position.status.value,
                    position.accrued_royalties,
                    position.amount_withdrawn,
                    position.withdrawn_at,
                )
                await _insert_movement(conn, movement)

        logger.debug(f"Inserted position {position.id[:8]}... for asset {position.asset_id}")

    async def get_position(self, position_id: str) -> Optional[StakePosition]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {POSITION_COLUMNS} FROM stake_positions WHERE id = $1",
                position_id,
            )
        return _row_to_position(row) if row else None

    async def list_positions(
        self,
        asset_id: Optional[str] = None,
        staker_id: Optional[str] = None,
        statuses: Optional[Iterable[PositionStatus]] = None,
    ) -> List[StakePosition]:
        # Build WHERE clause dynamically based on provided filters
        clauses = []
        values: List[Any] = []
        if asset_id is not None:
            values.append(asset_id)
            clauses.append(f"asset_id = ${len(values)}")
        if staker_id is not None:
            values.append(staker_id)
            clauses.append(f"staker_id = ${len(values)}")
        if statuses is not None:
            values.append([s.value for s in statuses])
            clauses.append(f"status = ANY(${len(values)}::varchar[])")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {POSITION_COLUMNS} FROM stake_positions {where} ORDER BY staked_at, id",
                *values,
            )
        return [_row_to_position(row) for row in rows]

    async def list_movements(self, position_id: str) -> List[LedgerMovement]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, position_id, kind, amount, occurred_at, reference
                FROM ledger_movements
                WHERE position_id = $1
                ORDER BY occurred_at, id
                """,
                position_id,
            )
        return [
            LedgerMovement(
                id=row["id"],
                position_id=row["position_id"],
                kind=MovementKind(row["kind"]),
                amount=row["amount"],
                occurred_at=row["occurred_at"],
                reference=row["reference"],
            )
            for row in rows
        ]

    async def get_config(self, asset_id: str) -> Optional[AssetStakingConfig]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {CONFIG_COLUMNS} FROM asset_staking_configs WHERE asset_id = $1",
                asset_id,
            )
        if not row:
            return None
        return AssetStakingConfig(**{column: row[column] for column in AssetStakingConfig.model_fields})

    async def save_config(self, config: AssetStakingConfig) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO asset_staking_configs ({CONFIG_COLUMNS}, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, NOW())
                ON CONFLICT (asset_id) DO UPDATE
                SET staking_enabled = $2,
                    lock_duration_days = $3,
                    minimum_stake = $4,
                    royalty_share_bps = $5,
                    marketplace_royalty = $6,
                    remixes_royalty = $7,
                    derivatives_royalty = $8,
                    collaborations_royalty = $9,
                    licensing_royalty = $10,
                    updated_at = NOW()
                """,
                *(getattr(config, column) for column in AssetStakingConfig.model_fields),
            )

    async def get_distribution(self, event_id: str) -> Optional[RoyaltyDistribution]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {DISTRIBUTION_COLUMNS} FROM royalty_distributions WHERE event_id = $1",
                event_id,
            )
        if not row:
            return None
        return RoyaltyDistribution(
            event_id=row["event_id"],
            asset_id=row["asset_id"],
            revenue_amount=row["revenue_amount"],
            staker_pool=row["staker_pool"],
            allocations=_decode_amounts(row["allocations"]),
            credited=_decode_amounts(row["credited"]),
            unallocated=row["unallocated"],
            contended=json.loads(row["contended"]),
            status=DistributionStatus(row["status"]),
            distributed_at=row["distributed_at"],
        )

    async def claim_distribution(self, distribution: RoyaltyDistribution) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                f"""
                INSERT INTO royalty_distributions ({DISTRIBUTION_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (event_id) DO NOTHING
                """,
                *_distribution_values(distribution),
            )
        # asyncpg returns "INSERT 0 <rows>"
        return result.split()[-1] != "0"

    async def complete_distribution(self, distribution: RoyaltyDistribution) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE royalty_distributions
                SET asset_id = $2,
                    revenue_amount = $3,
                    staker_pool = $4,
                    allocations = $5,
                    credited = $6,
                    unallocated = $7,
                    contended = $8,
                    status = $9,
                    distributed_at = $10
                WHERE event_id = $1
                """,
                *_distribution_values(distribution),
            )

    async def close(self):
        """Close database connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Closed PostgreSQL connection pool")


def _row_to_position(row) -> StakePosition:
    return StakePosition(
        id=row["id"],
        staker_id=row["staker_id"],
        asset_id=row["asset_id"],
        principal=row["principal"],
        staked_at=row["staked_at"],
        unlock_at=row["unlock_at"],
        status=PositionStatus(row["status"]),
        accrued_royalties=row["accrued_royalties"],
        amount_withdrawn=row["amount_withdrawn"],
        withdrawn_at=row["withdrawn_at"],
    )


async def _update_position(conn: asyncpg.Connection, position: StakePosition) -> None:
    # principal, staker and asset are immutable and never rewritten
    await conn.execute(
        """
        UPDATE stake_positions
        SET status = $2,
            accrued_royalties = $3,
            amount_withdrawn = $4,
            withdrawn_at = $5
        WHERE id = $1
        """,
        position.id,
        position.status.value,
        position.accrued_royalties,
        position.amount_withdrawn,
        position.withdrawn_at,
    )


async def _insert_movement(conn: asyncpg.Connection, movement: LedgerMovement) -> None:
    await conn.execute(
        """
        INSERT INTO ledger_movements (id, position_id, kind, amount, occurred_at, reference)
        VALUES ($1, $2, $3, $4, $5, $6)
        """,
        movement.id,
        movement.position_id,
        movement.kind.value,
        movement.amount,
        movement.occurred_at,
        movement.reference,
    )


def _distribution_values(distribution: RoyaltyDistribution) -> tuple:
    return (
        distribution.event_id,
        distribution.asset_id,
        distribution.revenue_amount,
        distribution.staker_pool,
        _encode_amounts(distribution.allocations),
        _encode_amounts(distribution.credited),
        distribution.unallocated,
        json.dumps(distribution.contended),
        distribution.status.value,
        distribution.distributed_at,
    )


def _encode_amounts(amounts: dict) -> str:
    # Decimals as strings so JSONB keeps them exact
    return json.dumps({k: str(v) for k, v in amounts.items()})


def _decode_amounts(raw: str) -> dict:
    return {k: Decimal(v) for k, v in json.loads(raw).items()}

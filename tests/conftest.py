import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from ledger import Ledger
from models import AssetStakingConfig
from position_store import InMemoryPositionStore
from royalty_engine import RoyaltyAccrualEngine
from staking_facade import StakingFacade


T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


def make_config(asset_id: str = "riff-1", **overrides) -> AssetStakingConfig:
    values = {
        "asset_id": asset_id,
        "staking_enabled": True,
        "lock_duration_days": 90,
        "minimum_stake": Decimal("0"),
        "royalty_share_bps": 1000,
    }
    values.update(overrides)
    return AssetStakingConfig(**values)


async def movement_sum(store, position_id: str) -> Decimal:
    movements = await store.list_movements(position_id)
    return sum((m.amount for m in movements), Decimal("0"))


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return InMemoryPositionStore()


@pytest.fixture
def ledger(store, clock):
    return Ledger(store, clock, lock_timeout=0.05)


@pytest.fixture
def engine(ledger, store, clock):
    return RoyaltyAccrualEngine(ledger, store, clock, quantum=Decimal("0.01"), backoff=0)


@pytest.fixture
def facade(store, clock, ledger, engine):
    return StakingFacade(store, clock=clock, ledger=ledger, engine=engine, backoff=0)


@pytest.fixture
def config():
    return make_config()

"""
Type models for riff staking.

Records are immutable pydantic models; the ledger produces updated copies
with model_copy(update=...) instead of mutating in place.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from config.platform import Config


class PositionStatus(str, Enum):
    LOCKED = "locked"
    UNLOCKABLE = "unlockable"
    WITHDRAWN = "withdrawn"


# Allowed forward transitions; status never moves backwards.
STATUS_ORDER = {
    PositionStatus.LOCKED: 0,
    PositionStatus.UNLOCKABLE: 1,
    PositionStatus.WITHDRAWN: 2,
}


class MovementKind(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    ROYALTY_CREDIT = "royalty_credit"
    ROYALTY_PAYOUT = "royalty_payout"


class StakePosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    staker_id: str
    asset_id: str
    principal: Decimal = Field(..., ge=0)
    staked_at: datetime
    unlock_at: datetime
    status: PositionStatus = PositionStatus.LOCKED
    accrued_royalties: Decimal = Field(default=Decimal("0"), ge=0)
    amount_withdrawn: Decimal = Field(default=Decimal("0"), ge=0)
    withdrawn_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _unlock_after_stake(self) -> "StakePosition":
        if self.unlock_at <= self.staked_at:
            raise ValueError("unlock_at must be later than staked_at")
        return self

    @property
    def balance(self) -> Decimal:
        """Value still held for the staker."""
        return self.principal + self.accrued_royalties - self.amount_withdrawn


class RevenueSource(str, Enum):
    TIP = "tip"
    MARKETPLACE = "marketplace"
    REMIX = "remix"
    DERIVATIVE = "derivative"
    COLLABORATION = "collaboration"
    LICENSING = "licensing"


class AssetStakingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: str
    staking_enabled: bool = True
    lock_duration_days: int = Field(default=90, gt=0)
    minimum_stake: Decimal = Field(default=Decimal("0"), ge=0)
    royalty_share_bps: int = Field(default=0, ge=0, le=10000)

    # Revenue types the owner shares with stakers; tips always pay
    marketplace_royalty: bool = True
    remixes_royalty: bool = True
    derivatives_royalty: bool = True
    collaborations_royalty: bool = True
    licensing_royalty: bool = True

    def pays_royalty_on(self, source: RevenueSource) -> bool:
        """Whether revenue of this type feeds the staker pool."""
        flags = {
            RevenueSource.TIP: True,
            RevenueSource.MARKETPLACE: self.marketplace_royalty,
            RevenueSource.REMIX: self.remixes_royalty,
            RevenueSource.DERIVATIVE: self.derivatives_royalty,
            RevenueSource.COLLABORATION: self.collaborations_royalty,
            RevenueSource.LICENSING: self.licensing_royalty,
        }
        return flags[RevenueSource(source)]

    @classmethod
    def default(cls, asset_id: str) -> "AssetStakingConfig":
        """Settings applied to an asset whose owner never configured staking."""
        return cls(
            asset_id=asset_id,
            staking_enabled=Config.DEFAULT_STAKING_ENABLED,
            lock_duration_days=Config.DEFAULT_LOCK_DURATION_DAYS,
            minimum_stake=Config.DEFAULT_MINIMUM_STAKE,
            royalty_share_bps=Config.DEFAULT_ROYALTY_SHARE_BPS,
        )


class LedgerMovement(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    position_id: str
    kind: MovementKind
    amount: Decimal = Field(..., description="Signed: deposits and credits positive, payouts negative")
    occurred_at: datetime
    # Revenue event id on royalty credits; at most one credit per event and position
    reference: Optional[str] = None


class WithdrawalReceipt(BaseModel):
    position_id: str
    staker_id: str
    asset_id: str
    principal: Decimal
    royalties: Decimal
    total_released: Decimal
    withdrawn_at: datetime


class RevenueEvent(BaseModel):
    """Tip or sale attributed to an asset by the tipping/billing subsystem."""
    model_config = ConfigDict(frozen=True)

    event_id: str
    asset_id: str
    amount: Decimal
    occurred_at: datetime
    source: RevenueSource = RevenueSource.TIP

    @field_validator("occurred_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        # Naive timestamps from callers are taken as UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class DistributionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class RoyaltyDistribution(BaseModel):
    """Audit record of one revenue event's staker payout."""

    event_id: str
    asset_id: str
    revenue_amount: Decimal
    staker_pool: Decimal
    allocations: Dict[str, Decimal] = Field(
        default_factory=dict, description="Shares planned from the eligibility snapshot"
    )
    credited: Dict[str, Decimal] = Field(default_factory=dict)
    unallocated: Decimal = Decimal("0")
    contended: List[str] = Field(default_factory=list)
    status: DistributionStatus = DistributionStatus.COMPLETED
    distributed_at: datetime

    @property
    def total_credited(self) -> Decimal:
        return sum(self.credited.values(), Decimal("0"))


class StakingStats(BaseModel):
    total_staked: Decimal
    staker_count: int
    position_count: int


class StakerRewards(BaseModel):
    staker_id: str
    total_principal: Decimal
    total_accrued: Decimal
    withdrawable_principal: Decimal
    withdrawable_royalties: Decimal
    position_count: int

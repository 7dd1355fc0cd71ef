"""
Decision Schemas

Defines the tiers, risk bands, enforcement actions and the decision
structure produced by the decision engine. Severity increases with
band: OBSERVE < MODERATE < HIGH < CRITICAL.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Tier(str, Enum):
    """
    Coarse risk-tolerance grouping derived from a user's membership level.

    Higher tiers are trusted customers: they get softer, feature-scoped
    restrictions and faster human review.
    """
    LOW = "low"
    MID = "mid"
    HIGH = "high"


class RiskBand(str, Enum):
    """Risk score bucket driving enforcement severity."""
    OBSERVE = "observe"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class EnforcementAction(str, Enum):
    """Actions a decision can take against a user."""
    OBSERVE = "observe"
    TEMP_SUSPEND = "temp_suspend"
    AUTO_BLOCK = "auto_block"
    SOFT_RESTRICT = "soft_restrict"
    SUSPEND_FEATURES = "suspend_features"
    PERMANENT_BAN = "permanent_ban"


# Membership level -> tier. Unknown levels fall back to LOW.
DEFAULT_LEVEL_TIERS: dict[str, Tier] = {
    "guest": Tier.LOW,
    "bronze": Tier.LOW,
    "silver": Tier.MID,
    "gold": Tier.MID,
    "vip": Tier.HIGH,
    "platinum": Tier.HIGH,
}


def tier_for_level(level: Optional[str], mapping: Optional[dict[str, Tier]] = None) -> Tier:
    """Map a membership level onto its tier (LOW when unrecognized)."""
    tiers = mapping if mapping is not None else DEFAULT_LEVEL_TIERS
    if not level:
        return Tier.LOW
    return tiers.get(level.lower(), Tier.LOW)


class Restrictions(BaseModel):
    """
    Restriction bundle sent to the consuming app.

    Each boolean blocks a feature category; `custom` names
    app-specific features that are restricted.
    """
    model_config = ConfigDict(frozen=True)

    betting: bool = False
    withdrawals: bool = False
    trading: bool = False
    promotions: bool = False
    messaging: bool = False
    streaming: bool = False
    custom: tuple[str, ...] = ()

    @classmethod
    def block_all(cls) -> "Restrictions":
        """Bundle that blocks every feature category."""
        return cls(
            betting=True,
            withdrawals=True,
            trading=True,
            promotions=True,
            messaging=True,
            streaming=True,
        )

    def blocked_categories(self) -> list[str]:
        """Names of the boolean categories currently blocked."""
        return [
            name
            for name in ("betting", "withdrawals", "trading", "promotions", "messaging", "streaming")
            if getattr(self, name)
        ]


class Decision(BaseModel):
    """
    Outcome of mapping (tier, risk score, confidence) onto an action.

    `duration_hours` is None for indefinite actions; `sla_hours` is None
    only when no review is needed (observe).
    """
    action: EnforcementAction = Field(
        ...,
        description="Enforcement action to take",
    )
    tier: Tier = Field(
        ...,
        description="Tier derived from the user's level",
    )
    band: RiskBand = Field(
        ...,
        description="Risk band the score fell into",
    )
    risk_score: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="Risk score the decision was based on",
    )
    confidence: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Confidence in the risk score",
    )
    risk_factors: list[str] = Field(
        default_factory=list,
        description="Named risk factors carried from the event",
    )
    duration_hours: Optional[int] = Field(
        default=None,
        description="Enforcement duration; None means indefinite",
    )
    reasoning: str = Field(
        ...,
        description="Human-readable explanation including the score",
    )
    sla_hours: Optional[int] = Field(
        default=None,
        description="Hours allowed for human review",
    )
    features_affected: list[str] = Field(
        default_factory=list,
        description="Features the action touches",
    )
    restrictions: Restrictions = Field(
        default_factory=Restrictions,
        description="Restriction bundle for the consuming app",
    )

    @property
    def is_actionable(self) -> bool:
        """True when the decision requires an enforcement record."""
        return self.action != EnforcementAction.OBSERVE

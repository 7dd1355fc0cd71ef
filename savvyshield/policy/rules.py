"""
Decision Table Configuration

Defines the lookup tables the decision engine uses to map
(tier, risk band) onto an enforcement action, restriction bundle
and review SLA.

Tables are immutable configuration data. The built-in
DEFAULT_DECISION_TABLE can be overridden by a YAML file loaded once
at startup (config/decision_table.yaml).

Band boundaries (lower bound inclusive):
    observe   < moderate
    moderate  [moderate, high)
    high      [high, critical)
    critical  >= critical
"""

import hashlib
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..errors import DecisionTableError
from ..schemas import (
    DEFAULT_LEVEL_TIERS,
    EnforcementAction,
    Restrictions,
    RiskBand,
    Tier,
)


ACTIONABLE_BANDS = (RiskBand.MODERATE, RiskBand.HIGH, RiskBand.CRITICAL)


class DecisionCell(BaseModel):
    """
    One (band, tier) entry of the decision table.
    """
    model_config = ConfigDict(frozen=True)

    action: EnforcementAction = Field(
        ...,
        description="Action taken for this band and tier",
    )
    duration_hours: Optional[int] = Field(
        default=None,
        ge=1,
        description="Enforcement duration; None means indefinite",
    )
    reasoning: str = Field(
        ...,
        description="Tier-specific suffix appended to the band reasoning",
    )
    features_affected: list[str] = Field(
        default_factory=list,
        description="Features the action touches",
    )
    restrictions: Restrictions = Field(
        default_factory=Restrictions,
        description="Restriction bundle pushed to the app",
    )
    sla_hours: Optional[int] = Field(
        default=None,
        ge=1,
        description="Overrides the tier SLA for this cell",
    )


class BandThresholds(BaseModel):
    """Lower bound of each actionable band."""
    model_config = ConfigDict(frozen=True)

    moderate: float = Field(default=0.6, ge=0.0, le=1.0)
    high: float = Field(default=0.75, ge=0.0, le=1.0)
    critical: float = Field(default=0.9, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_order(self) -> "BandThresholds":
        if not (self.moderate <= self.high <= self.critical):
            raise ValueError("Band thresholds must satisfy moderate <= high <= critical")
        return self

    def band_for(self, risk_score: float) -> RiskBand:
        if risk_score < self.moderate:
            return RiskBand.OBSERVE
        if risk_score < self.high:
            return RiskBand.MODERATE
        if risk_score < self.critical:
            return RiskBand.HIGH
        return RiskBand.CRITICAL


class DecisionTable(BaseModel):
    """
    Complete decision configuration.

    Every actionable band must define a cell for every tier.
    """
    model_config = ConfigDict(frozen=True)

    version: str = Field(
        default="1.0.0",
        description="Table version for audit trail",
    )
    description: Optional[str] = Field(
        default=None,
        description="Table description",
    )
    level_tiers: dict[str, Tier] = Field(
        default_factory=lambda: dict(DEFAULT_LEVEL_TIERS),
        description="Membership level -> tier (unknown levels map to low)",
    )
    thresholds: BandThresholds = Field(
        default_factory=BandThresholds,
        description="Risk band boundaries",
    )
    sla_hours: dict[Tier, int] = Field(
        default_factory=lambda: {Tier.LOW: 24, Tier.MID: 12, Tier.HIGH: 4},
        description="Human review SLA per tier",
    )
    band_reasoning: dict[RiskBand, str] = Field(
        default_factory=lambda: {
            RiskBand.MODERATE: "Moderate risk detected ({risk_score:.3f}) - tier-based action",
            RiskBand.HIGH: "High risk detected ({risk_score:.3f}) - aggressive action",
            RiskBand.CRITICAL: "Critical risk detected ({risk_score:.3f}) - immediate action",
        },
        description="Reasoning prefix per band; {risk_score} is substituted",
    )
    observe_reasoning: str = Field(
        default="Risk score below threshold - monitoring only",
    )
    cells: dict[RiskBand, dict[Tier, DecisionCell]] = Field(
        ...,
        description="Decision cells by band then tier",
    )

    @model_validator(mode="after")
    def _check_complete(self) -> "DecisionTable":
        missing = [
            f"{band.value}/{tier.value}"
            for band in ACTIONABLE_BANDS
            for tier in Tier
            if tier not in self.cells.get(band, {})
        ]
        if missing:
            raise ValueError("Decision table is missing cells: " + ", ".join(missing))
        missing_sla = [tier.value for tier in Tier if tier not in self.sla_hours]
        if missing_sla:
            raise ValueError("Decision table is missing SLA hours for: " + ", ".join(missing_sla))
        for band in ACTIONABLE_BANDS:
            if band not in self.band_reasoning:
                raise ValueError(f"Decision table is missing reasoning for band {band.value}")
        return self

    def cell(self, band: RiskBand, tier: Tier) -> DecisionCell:
        return self.cells[band][tier]

    def content_hash(self) -> str:
        """Short hash of the table contents for audit."""
        table_json = self.model_dump_json()
        return hashlib.sha256(table_json.encode()).hexdigest()[:16]


def load_decision_table(path: Path) -> DecisionTable:
    """
    Load a decision table from YAML.

    Raises:
        DecisionTableError: file unreadable, not a mapping, or incomplete
    """
    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise DecisionTableError(f"Cannot read decision table {path}: {e}") from e

    if not isinstance(config, dict):
        raise DecisionTableError(f"Decision table {path} must be a mapping")

    try:
        return DecisionTable(**config)
    except ValidationError as e:
        raise DecisionTableError(f"Invalid decision table {path}: {e}") from e


_BLOCK_ALL = Restrictions.block_all()

# Default decision table (fallback)
# =================================
# Used when config/decision_table.yaml is absent. The shipped YAML carries
# the same values so operators have a starting point to tune from.
DEFAULT_DECISION_TABLE = DecisionTable(
    version="1.0.0",
    description="Default tier-aware enforcement table",
    cells={
        RiskBand.MODERATE: {
            Tier.LOW: DecisionCell(
                action=EnforcementAction.TEMP_SUSPEND,
                duration_hours=24,
                reasoning="Low tier temporary suspension",
                features_affected=["betting", "withdrawals", "trading"],
                restrictions=Restrictions(betting=True, withdrawals=True, trading=True),
            ),
            Tier.MID: DecisionCell(
                action=EnforcementAction.TEMP_SUSPEND,
                duration_hours=12,
                reasoning="Mid tier temporary suspension",
                features_affected=["betting", "withdrawals"],
                restrictions=Restrictions(betting=True, withdrawals=True),
            ),
            Tier.HIGH: DecisionCell(
                action=EnforcementAction.SOFT_RESTRICT,
                duration_hours=None,
                reasoning="High tier soft restrictions",
                features_affected=["high_value_betting"],
                restrictions=Restrictions(custom=["high_value_betting"]),
            ),
        },
        RiskBand.HIGH: {
            Tier.LOW: DecisionCell(
                action=EnforcementAction.AUTO_BLOCK,
                duration_hours=72,
                reasoning="Low tier auto-block",
                features_affected=["all"],
                restrictions=_BLOCK_ALL,
            ),
            Tier.MID: DecisionCell(
                action=EnforcementAction.TEMP_SUSPEND,
                duration_hours=48,
                reasoning="Mid tier extended suspension",
                features_affected=["betting", "withdrawals", "trading", "promotions"],
                restrictions=Restrictions(
                    betting=True, withdrawals=True, trading=True, promotions=True,
                ),
            ),
            Tier.HIGH: DecisionCell(
                action=EnforcementAction.SOFT_RESTRICT,
                duration_hours=None,
                reasoning="High tier feature restrictions",
                features_affected=["high_value_operations"],
                restrictions=Restrictions(custom=["high_value_operations", "bulk_operations"]),
            ),
        },
        RiskBand.CRITICAL: {
            Tier.LOW: DecisionCell(
                action=EnforcementAction.AUTO_BLOCK,
                duration_hours=None,
                reasoning="Low tier immediate block",
                features_affected=["all"],
                restrictions=_BLOCK_ALL,
            ),
            Tier.MID: DecisionCell(
                action=EnforcementAction.AUTO_BLOCK,
                duration_hours=None,
                reasoning="Mid tier immediate block with review",
                features_affected=["all"],
                restrictions=_BLOCK_ALL,
            ),
            Tier.HIGH: DecisionCell(
                action=EnforcementAction.SUSPEND_FEATURES,
                duration_hours=None,
                reasoning="High tier feature suspension with urgent review",
                features_affected=["high_risk_features"],
                restrictions=Restrictions(
                    betting=True,
                    withdrawals=True,
                    trading=True,
                    custom=["high_risk_features", "admin_functions"],
                ),
                sla_hours=2,
            ),
        },
    },
)

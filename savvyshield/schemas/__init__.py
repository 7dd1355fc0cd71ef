# Data schemas for SavvyShield
from .decisions import (
    Tier,
    RiskBand,
    EnforcementAction,
    DEFAULT_LEVEL_TIERS,
    tier_for_level,
    Restrictions,
    Decision,
)
from .events import (
    EventType,
    InvestigationStatus,
    EventAnalysis,
    RecordMetadata,
    ShieldEvent,
    IngestRequest,
    IngestResponse,
)
from .enforcements import (
    MAX_AUDIT_ENTRIES,
    EnforcementStatus,
    ReviewStatus,
    AppealStatus,
    SlaStatus,
    HumanReview,
    Appeal,
    AuditEntry,
    WebhookStatus,
    EnforcementAnalysis,
    ShieldEnforcement,
    ReviewRequest,
    OverrideRequest,
    AppealRequest,
    AppealResolutionRequest,
)

__all__ = [
    # Decisions
    "Tier",
    "RiskBand",
    "EnforcementAction",
    "DEFAULT_LEVEL_TIERS",
    "tier_for_level",
    "Restrictions",
    "Decision",
    # Events
    "EventType",
    "InvestigationStatus",
    "EventAnalysis",
    "RecordMetadata",
    "ShieldEvent",
    "IngestRequest",
    "IngestResponse",
    # Enforcements
    "MAX_AUDIT_ENTRIES",
    "EnforcementStatus",
    "ReviewStatus",
    "AppealStatus",
    "SlaStatus",
    "HumanReview",
    "Appeal",
    "AuditEntry",
    "WebhookStatus",
    "EnforcementAnalysis",
    "ShieldEnforcement",
    "ReviewRequest",
    "OverrideRequest",
    "AppealRequest",
    "AppealResolutionRequest",
]

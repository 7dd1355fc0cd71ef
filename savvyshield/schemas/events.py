"""
Shield Event Schemas

Defines the canonical ShieldEvent record: an observed risk signal
about one user in one consuming app. Events are the input to the
risk scorer, the decision engine and the proactive detectors.

Events are never deleted. The only mutations after creation are the
risk score (set once) and investigation status transitions.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from .decisions import Tier, tier_for_level


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


class EventType(str, Enum):
    """
    Risk signal types accepted by the shield.

    PROACTIVE_INVESTIGATION is never sent by apps; it is synthesized by
    the investigation engine when detectors fire.
    """
    FRAUD_SIGNAL = "fraud_signal"
    CHEAT_SIGNAL = "cheat_signal"
    USER_REPORT = "user_report"
    PAYMENT_RISK = "payment_risk"
    BEHAVIORAL_ANOMALY = "behavioral_anomaly"
    DEVICE_REUSE = "device_reuse"
    VELOCITY_SPIKE = "velocity_spike"
    IMPOSSIBLE_TRAVEL = "impossible_travel"
    BOT_DETECTION = "bot_detection"
    CHARGEBACK_SIGNAL = "chargeback_signal"
    IP_REPUTATION = "ip_reputation"
    WIN_RATE_ANOMALY = "win_rate_anomaly"
    PROACTIVE_INVESTIGATION = "proactive_investigation"

    @classmethod
    def from_ingest(cls, value: str) -> "EventType":
        """
        Map an SDK-supplied type onto an event type.

        Unknown types and attempts to inject proactive_investigation are
        recorded as behavioral anomalies.
        """
        try:
            event_type = cls(value)
        except ValueError:
            return cls.BEHAVIORAL_ANOMALY
        if event_type == cls.PROACTIVE_INVESTIGATION:
            return cls.BEHAVIORAL_ANOMALY
        return event_type


class InvestigationStatus(str, Enum):
    """Investigation lifecycle: pending -> investigating -> resolved | escalated."""
    PENDING = "pending"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class EventAnalysis(BaseModel):
    """Heuristic analysis attached to an event (no ML model behind it)."""
    model_version: str = "1.0.0"
    analysis_reasoning: Optional[str] = None
    recommended_action: Optional[str] = None
    evidence_summary: Optional[str] = None
    false_positive_probability: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class RecordMetadata(BaseModel):
    """Provenance of a record."""
    source: Optional[str] = None
    version: Optional[str] = "1.0.0"
    environment: Optional[str] = None
    trace_id: Optional[str] = None


class Resolution(BaseModel):
    action: Optional[str] = None
    reason: Optional[str] = None
    resolved_at: datetime = Field(default_factory=_utc_now)


class Escalation(BaseModel):
    reason: Optional[str] = None
    escalated_at: datetime = Field(default_factory=_utc_now)


class ShieldEvent(BaseModel):
    """
    An observed risk signal.

    `context` is free-form: its schema varies per event type and unknown
    keys are kept as-is. Well-known keys are read through the helper
    properties below so detectors never index into raw dicts.
    """
    id: str = Field(default_factory=_new_id)

    # Identity
    savvy_user_id: str = Field(..., min_length=1)
    app: str = Field(..., min_length=1)
    level: str = Field(..., min_length=1)

    # Classification
    event_type: EventType
    context: dict[str, Any] = Field(default_factory=dict)

    # Risk assessment
    risk_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    risk_factors: list[str] = Field(default_factory=list)
    confidence_level: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    # Investigation lifecycle
    investigation_status: InvestigationStatus = InvestigationStatus.PENDING
    analysis: Optional[EventAnalysis] = None
    resolution: Optional[Resolution] = None
    escalation: Optional[Escalation] = None

    # Timestamps
    created_at: datetime = Field(default_factory=_utc_now)
    investigated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    # Case management
    related_events: list[str] = Field(default_factory=list)
    case_id: Optional[str] = None
    metadata: RecordMetadata = Field(default_factory=RecordMetadata)

    @property
    def tier(self) -> Tier:
        return tier_for_level(self.level)

    @property
    def is_scored(self) -> bool:
        return self.risk_score is not None

    # -------------------------------------------------------------------------
    # Context accessors
    # -------------------------------------------------------------------------

    @property
    def device_id(self) -> Optional[str]:
        return self.context.get("device_id") or None

    @property
    def ip_address(self) -> Optional[str]:
        return self.context.get("ip_address") or None

    @property
    def coordinates(self) -> Optional[tuple[float, float]]:
        """(lat, lng) from context.location.coordinates, if present and numeric."""
        location = self.context.get("location")
        if not isinstance(location, dict):
            return None
        coords = location.get("coordinates")
        if not isinstance(coords, dict):
            return None
        lat, lng = coords.get("lat"), coords.get("lng")
        if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
            return None
        return float(lat), float(lng)

    # -------------------------------------------------------------------------
    # Investigation transitions
    # -------------------------------------------------------------------------

    def mark_investigating(self) -> None:
        self.investigation_status = InvestigationStatus.INVESTIGATING
        self.investigated_at = _utc_now()

    def mark_resolved(self, action: Optional[str] = None, reason: Optional[str] = None) -> None:
        now = _utc_now()
        self.investigation_status = InvestigationStatus.RESOLVED
        self.resolved_at = now
        self.resolution = Resolution(action=action, reason=reason, resolved_at=now)

    def escalate(self, reason: Optional[str] = None) -> None:
        self.investigation_status = InvestigationStatus.ESCALATED
        self.escalation = Escalation(reason=reason)


class IngestRequest(BaseModel):
    """Body of POST /api/shield/ingest as sent by the shield SDK."""
    type: str = Field(..., min_length=1, description="Signal type")
    savvy_user_id: str = Field(..., min_length=1, description="Cross-app user id")
    app: str = Field(..., min_length=1, description="Reporting application")
    level: str = Field(..., min_length=1, description="User membership level")
    context: dict[str, Any] = Field(default_factory=dict)
    ts: Optional[str] = Field(default=None, description="Client-side timestamp")


class IngestResponse(BaseModel):
    success: bool = True
    event_id: str
    risk_score: float
    action: str
    enforcement_id: Optional[str] = None

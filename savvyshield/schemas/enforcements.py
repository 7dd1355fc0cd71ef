"""
Shield Enforcement Schemas

A ShieldEnforcement is a decision applied to a user: the action taken,
the restriction bundle pushed to the consuming app, and the human-review,
appeal and audit workflow around it.

Lifecycle:
    pending -> active -> completed | overridden | expired

Every state change appends to the audit trail, which keeps only the
most recent MAX_AUDIT_ENTRIES entries.
"""

from datetime import datetime, timedelta, UTC
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ..errors import EnforcementStateError
from .decisions import EnforcementAction, Restrictions, Tier, tier_for_level
from .events import RecordMetadata


MAX_AUDIT_ENTRIES = 50


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class EnforcementStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    OVERRIDDEN = "overridden"
    EXPIRED = "expired"


FINISHED_STATUSES = frozenset({
    EnforcementStatus.COMPLETED,
    EnforcementStatus.OVERRIDDEN,
    EnforcementStatus.EXPIRED,
})


class ReviewStatus(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"


OPEN_REVIEW_STATUSES = frozenset({ReviewStatus.PENDING, ReviewStatus.IN_REVIEW})


class AppealStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class SlaStatus(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    OVERDUE = "overdue"
    COMPLETED = "completed"
    ON_TRACK = "on_track"


class HumanReview(BaseModel):
    required: bool = False
    status: ReviewStatus = ReviewStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    sla_hours: Optional[int] = None
    sla_deadline: Optional[datetime] = None


class Appeal(BaseModel):
    submitted_at: datetime = Field(default_factory=_utc_now)
    reason: str
    evidence: list[str] = Field(default_factory=list)
    status: AppealStatus = AppealStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None


class AuditEntry(BaseModel):
    action: str
    performed_by: str = "system"
    performed_at: datetime = Field(default_factory=_utc_now)
    details: dict[str, Any] = Field(default_factory=dict)
    old_value: Any = None
    new_value: Any = None


class WebhookStatus(BaseModel):
    """Outcome of the most recent delivery attempt."""
    sent: bool = False
    sent_at: Optional[datetime] = None
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    retry_count: int = 0


class EnforcementAnalysis(BaseModel):
    model_version: str = "1.0.0"
    analysis_reasoning: Optional[str] = None
    evidence_summary: Optional[str] = None
    false_positive_probability: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    recommended_review_time: Optional[int] = None


class ShieldEnforcement(BaseModel):
    """
    An enforcement decision and its review workflow.

    Transition methods mutate in place and append an audit entry;
    callers persist the record afterwards.
    """
    id: str = Field(default_factory=lambda: str(uuid4()))

    # Identity
    savvy_user_id: str = Field(..., min_length=1)
    app: str = Field(..., min_length=1)
    level: str = Field(..., min_length=1)
    related_events: list[str] = Field(default_factory=list)

    # Decision inputs
    risk_score: float = Field(..., ge=0.0, le=1.0)
    confidence_level: float = Field(default=0.8, ge=0.0, le=1.0)
    risk_factors: list[str] = Field(default_factory=list)

    # Decision
    decision: EnforcementAction
    decision_reason: str
    decision_factors: list[str] = Field(default_factory=list)
    features_affected: list[str] = Field(default_factory=list)
    duration_hours: Optional[int] = Field(
        default=None,
        description="None means indefinite",
    )
    restrictions: Restrictions = Field(default_factory=Restrictions)

    # Workflow
    status: EnforcementStatus = EnforcementStatus.PENDING
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    human_review: HumanReview = Field(default_factory=HumanReview)
    appeals: list[Appeal] = Field(default_factory=list)
    audit_trail: list[AuditEntry] = Field(default_factory=list)
    webhook_status: WebhookStatus = Field(default_factory=WebhookStatus)

    analysis: Optional[EnforcementAnalysis] = None
    case_id: Optional[str] = None
    metadata: RecordMetadata = Field(default_factory=RecordMetadata)

    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    # -------------------------------------------------------------------------
    # Derived
    # -------------------------------------------------------------------------

    @property
    def tier(self) -> Tier:
        return tier_for_level(self.level)

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def sla_status(self, now: Optional[datetime] = None) -> SlaStatus:
        """Where the human review stands against its deadline."""
        review = self.human_review
        if not review.required or review.sla_deadline is None:
            return SlaStatus.NOT_APPLICABLE
        if review.status not in OPEN_REVIEW_STATUSES:
            return SlaStatus.COMPLETED
        now = now or _utc_now()
        if now > review.sla_deadline:
            return SlaStatus.OVERDUE
        return SlaStatus.ON_TRACK

    def is_review_overdue(self, now: Optional[datetime] = None) -> bool:
        return self.sla_status(now) == SlaStatus.OVERDUE

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def add_audit_entry(
        self,
        action: str,
        performed_by: str = "system",
        details: Optional[dict[str, Any]] = None,
        old_value: Any = None,
        new_value: Any = None,
    ) -> AuditEntry:
        """Append an audit entry, dropping the oldest beyond the cap."""
        entry = AuditEntry(
            action=action,
            performed_by=performed_by,
            details=details or {},
            old_value=old_value,
            new_value=new_value,
        )
        self.audit_trail.append(entry)
        if len(self.audit_trail) > MAX_AUDIT_ENTRIES:
            del self.audit_trail[:-MAX_AUDIT_ENTRIES]
        self.updated_at = entry.performed_at
        return entry

    def _set_status(self, new_status: EnforcementStatus, action: str, performed_by: str, **details: Any) -> None:
        old_status = self.status
        self.status = new_status
        self.add_audit_entry(
            action,
            performed_by=performed_by,
            details={k: v for k, v in details.items() if v is not None},
            old_value=old_status.value,
            new_value=new_status.value,
        )

    # -------------------------------------------------------------------------
    # Lifecycle transitions
    # -------------------------------------------------------------------------

    def activate(self, performed_by: str = "system") -> None:
        """pending -> active; stamps expires_at from duration_hours."""
        if self.status != EnforcementStatus.PENDING:
            raise EnforcementStateError(
                f"Cannot activate enforcement {self.id} in status {self.status.value}"
            )
        now = _utc_now()
        self.activated_at = now
        self.expires_at = (
            now + timedelta(hours=self.duration_hours)
            if self.duration_hours is not None
            else None
        )
        self._set_status(EnforcementStatus.ACTIVE, "activated", performed_by)

    def complete(self, reason: Optional[str] = None, performed_by: str = "system") -> None:
        if self.is_finished:
            raise EnforcementStateError(
                f"Cannot complete enforcement {self.id} in status {self.status.value}"
            )
        self.completed_at = _utc_now()
        self._set_status(EnforcementStatus.COMPLETED, "completed", performed_by, reason=reason)

    def override(self, performed_by: str, reason: str) -> None:
        if self.is_finished:
            raise EnforcementStateError(
                f"Cannot override enforcement {self.id} in status {self.status.value}"
            )
        self.completed_at = _utc_now()
        self._set_status(EnforcementStatus.OVERRIDDEN, "overridden", performed_by, reason=reason)

    def expire(self) -> None:
        """active -> expired once expires_at has passed."""
        if self.status != EnforcementStatus.ACTIVE:
            raise EnforcementStateError(
                f"Cannot expire enforcement {self.id} in status {self.status.value}"
            )
        self.completed_at = _utc_now()
        self._set_status(EnforcementStatus.EXPIRED, "expired", "system")

    def is_due_to_expire(self, now: Optional[datetime] = None) -> bool:
        if self.status != EnforcementStatus.ACTIVE or self.expires_at is None:
            return False
        return (now or _utc_now()) >= self.expires_at

    # -------------------------------------------------------------------------
    # Human review
    # -------------------------------------------------------------------------

    def _set_review_status(self, new_status: ReviewStatus, performed_by: str, notes: Optional[str]) -> None:
        review = self.human_review
        old_status = review.status
        review.status = new_status
        review.reviewed_by = performed_by
        review.reviewed_at = _utc_now()
        if notes is not None:
            review.review_notes = notes
        self.add_audit_entry(
            f"review_{new_status.value}",
            performed_by=performed_by,
            details={"notes": notes} if notes else {},
            old_value=old_status.value,
            new_value=new_status.value,
        )

    def start_review(self, performed_by: str) -> None:
        if self.human_review.status != ReviewStatus.PENDING:
            raise EnforcementStateError(
                f"Review of {self.id} is already {self.human_review.status.value}"
            )
        self._set_review_status(ReviewStatus.IN_REVIEW, performed_by, None)

    def approve_review(self, performed_by: str, notes: Optional[str] = None) -> None:
        self._set_review_status(ReviewStatus.APPROVED, performed_by, notes)

    def reject_review(self, performed_by: str, notes: Optional[str] = None) -> None:
        self._set_review_status(ReviewStatus.REJECTED, performed_by, notes)

    def escalate_review(self, performed_by: str, notes: Optional[str] = None) -> None:
        self._set_review_status(ReviewStatus.ESCALATED, performed_by, notes)

    # -------------------------------------------------------------------------
    # Appeals
    # -------------------------------------------------------------------------

    def submit_appeal(self, reason: str, evidence: Optional[list[str]] = None, performed_by: str = "user") -> Appeal:
        appeal = Appeal(reason=reason, evidence=evidence or [])
        self.appeals.append(appeal)
        self.add_audit_entry(
            "appeal_submitted",
            performed_by=performed_by,
            details={"reason": reason, "appeal_index": len(self.appeals) - 1},
        )
        return appeal

    def resolve_appeal(
        self,
        index: int,
        status: AppealStatus,
        performed_by: str,
        notes: Optional[str] = None,
    ) -> Appeal:
        if index < 0 or index >= len(self.appeals):
            raise EnforcementStateError(f"Enforcement {self.id} has no appeal #{index}")
        appeal = self.appeals[index]
        if appeal.status in (AppealStatus.APPROVED, AppealStatus.REJECTED):
            raise EnforcementStateError(
                f"Appeal #{index} of {self.id} is already {appeal.status.value}"
            )
        old_status = appeal.status
        appeal.status = status
        appeal.reviewed_by = performed_by
        appeal.reviewed_at = _utc_now()
        appeal.review_notes = notes
        self.add_audit_entry(
            "appeal_resolved",
            performed_by=performed_by,
            details={"appeal_index": index, "notes": notes} if notes else {"appeal_index": index},
            old_value=old_status.value,
            new_value=status.value,
        )
        return appeal

    # -------------------------------------------------------------------------
    # Webhook bookkeeping
    # -------------------------------------------------------------------------

    def record_webhook_result(
        self,
        sent: bool,
        response_status: int,
        response_body: Optional[str],
    ) -> None:
        """Record a delivery attempt. Failures bump retry_count; success resets it."""
        status = self.webhook_status
        if sent:
            self.webhook_status = WebhookStatus(
                sent=True,
                sent_at=_utc_now(),
                response_status=response_status,
                response_body=response_body,
                retry_count=0,
            )
        else:
            self.webhook_status = WebhookStatus(
                sent=False,
                sent_at=status.sent_at,
                response_status=response_status,
                response_body=response_body,
                retry_count=status.retry_count + 1,
            )
        self.add_audit_entry(
            "webhook_sent" if sent else "webhook_failed",
            details={"response_status": response_status},
        )


# =============================================================================
# Admin request bodies
# =============================================================================

class ReviewRequest(BaseModel):
    reviewed_by: str = Field(default="admin", min_length=1)
    notes: Optional[str] = None


class OverrideRequest(BaseModel):
    """Reason is checked by the route so a missing one is a 400, not a 422."""
    overridden_by: str = Field(default="admin", min_length=1)
    reason: Optional[str] = None


class AppealRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    evidence: list[str] = Field(default_factory=list)


class AppealResolutionRequest(BaseModel):
    status: AppealStatus
    reviewed_by: str = Field(default="admin", min_length=1)
    notes: Optional[str] = None

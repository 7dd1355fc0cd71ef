"""
Schema Tests

Event parsing helpers and the enforcement lifecycle, review, appeal
and audit rules.
"""

from datetime import datetime, timedelta, UTC

import pytest
from pydantic import ValidationError

from savvyshield.errors import EnforcementStateError
from savvyshield.schemas import (
    MAX_AUDIT_ENTRIES,
    AppealStatus,
    EnforcementAction,
    EnforcementStatus,
    EventType,
    HumanReview,
    IngestRequest,
    InvestigationStatus,
    ReviewStatus,
    ShieldEnforcement,
    ShieldEvent,
    SlaStatus,
)


def _enforcement(**overrides) -> ShieldEnforcement:
    fields = {
        "savvy_user_id": "user_1",
        "app": "final10",
        "level": "gold",
        "risk_score": 0.7,
        "decision": EnforcementAction.TEMP_SUSPEND,
        "decision_reason": "Moderate risk detected (0.700) - tier-based action",
        "duration_hours": 12,
    }
    fields.update(overrides)
    return ShieldEnforcement(**fields)


class TestEventType:

    def test_known_type(self):
        assert EventType.from_ingest("payment_risk") == EventType.PAYMENT_RISK

    def test_unknown_type_maps_to_behavioral_anomaly(self):
        assert EventType.from_ingest("weird_signal") == EventType.BEHAVIORAL_ANOMALY

    def test_apps_cannot_inject_investigation_cases(self):
        assert EventType.from_ingest("proactive_investigation") == EventType.BEHAVIORAL_ANOMALY


class TestIngestRequest:

    @pytest.mark.parametrize("field", ["type", "savvy_user_id", "app", "level"])
    def test_required_fields(self, field):
        payload = {"type": "user_report", "savvy_user_id": "u1", "app": "final10", "level": "gold"}
        del payload[field]
        with pytest.raises(ValidationError):
            IngestRequest(**payload)

    @pytest.mark.parametrize("field", ["type", "savvy_user_id", "app", "level"])
    def test_empty_fields_rejected(self, field):
        payload = {"type": "user_report", "savvy_user_id": "u1", "app": "final10", "level": "gold"}
        payload[field] = ""
        with pytest.raises(ValidationError):
            IngestRequest(**payload)

    def test_context_defaults_empty(self):
        request = IngestRequest(type="user_report", savvy_user_id="u1", app="final10", level="gold")
        assert request.context == {}


class TestShieldEvent:

    def test_defaults(self, make_event):
        event = make_event()

        assert event.id
        assert event.risk_score is None
        assert not event.is_scored
        assert event.investigation_status == InvestigationStatus.PENDING
        assert event.created_at.tzinfo is not None

    def test_risk_score_bounds(self):
        with pytest.raises(ValidationError):
            ShieldEvent(
                savvy_user_id="u1", app="final10", level="gold",
                event_type=EventType.USER_REPORT, risk_score=1.5,
            )

    def test_unknown_context_keys_preserved(self, make_event):
        event = make_event(context={"custom_key": {"nested": [1, 2]}})
        restored = ShieldEvent.model_validate_json(event.model_dump_json())
        assert restored.context["custom_key"] == {"nested": [1, 2]}

    def test_coordinates(self, make_event):
        event = make_event(context={"location": {"coordinates": {"lat": 40.7, "lng": -74.0}}})
        assert event.coordinates == (40.7, -74.0)

    def test_coordinates_missing_or_malformed(self, make_event):
        assert make_event().coordinates is None
        assert make_event(context={"location": "NYC"}).coordinates is None
        assert make_event(context={"location": {"coordinates": {"lat": "40"}}}).coordinates is None

    def test_investigation_transitions(self, make_event):
        event = make_event()

        event.mark_investigating()
        assert event.investigation_status == InvestigationStatus.INVESTIGATING
        assert event.investigated_at is not None

        event.mark_resolved(action="temp_suspend", reason="confirmed")
        assert event.investigation_status == InvestigationStatus.RESOLVED
        assert event.resolution.action == "temp_suspend"

    def test_escalate(self, make_event):
        event = make_event()
        event.escalate("needs fraud team")
        assert event.investigation_status == InvestigationStatus.ESCALATED
        assert event.escalation.reason == "needs fraud team"


class TestEnforcementLifecycle:

    def test_activate_stamps_expiry(self):
        enforcement = _enforcement(duration_hours=12)
        enforcement.activate()

        assert enforcement.status == EnforcementStatus.ACTIVE
        assert enforcement.expires_at - enforcement.activated_at == timedelta(hours=12)

    def test_indefinite_enforcement_never_expires(self):
        enforcement = _enforcement(duration_hours=None, decision=EnforcementAction.AUTO_BLOCK)
        enforcement.activate()

        assert enforcement.expires_at is None
        assert not enforcement.is_due_to_expire(datetime.now(UTC) + timedelta(days=3650))

    def test_cannot_activate_twice(self):
        enforcement = _enforcement()
        enforcement.activate()
        with pytest.raises(EnforcementStateError):
            enforcement.activate()

    def test_expire_after_deadline(self):
        enforcement = _enforcement(duration_hours=1)
        enforcement.activate()

        assert not enforcement.is_due_to_expire()
        assert enforcement.is_due_to_expire(datetime.now(UTC) + timedelta(hours=2))

        enforcement.expire()
        assert enforcement.status == EnforcementStatus.EXPIRED
        assert enforcement.completed_at is not None

    def test_expire_requires_active(self):
        with pytest.raises(EnforcementStateError):
            _enforcement().expire()

    def test_override_records_reason(self):
        enforcement = _enforcement()
        enforcement.activate()
        enforcement.override("analyst_1", "False positive")

        assert enforcement.status == EnforcementStatus.OVERRIDDEN
        entry = enforcement.audit_trail[-1]
        assert entry.action == "overridden"
        assert entry.performed_by == "analyst_1"
        assert entry.details == {"reason": "False positive"}
        assert entry.old_value == "active"
        assert entry.new_value == "overridden"

    def test_finished_enforcement_cannot_change(self):
        enforcement = _enforcement()
        enforcement.activate()
        enforcement.complete("served")

        with pytest.raises(EnforcementStateError):
            enforcement.override("analyst_1", "too late")
        with pytest.raises(EnforcementStateError):
            enforcement.complete()


class TestAuditTrail:

    def test_audit_trail_capped(self):
        enforcement = _enforcement()
        for i in range(MAX_AUDIT_ENTRIES + 10):
            enforcement.add_audit_entry(f"note_{i}")

        assert len(enforcement.audit_trail) == MAX_AUDIT_ENTRIES
        assert enforcement.audit_trail[0].action == "note_10"
        assert enforcement.audit_trail[-1].action == f"note_{MAX_AUDIT_ENTRIES + 9}"

    def test_audit_entry_bumps_updated_at(self):
        enforcement = _enforcement()
        entry = enforcement.add_audit_entry("note")
        assert enforcement.updated_at == entry.performed_at


class TestHumanReview:

    def test_sla_status(self):
        now = datetime.now(UTC)
        enforcement = _enforcement(
            human_review=HumanReview(required=True, sla_hours=12, sla_deadline=now + timedelta(hours=12))
        )

        assert enforcement.sla_status(now) == SlaStatus.ON_TRACK
        assert enforcement.sla_status(now + timedelta(hours=13)) == SlaStatus.OVERDUE
        assert enforcement.is_review_overdue(now + timedelta(hours=13))

        enforcement.approve_review("analyst_1", "confirmed")
        assert enforcement.sla_status(now + timedelta(hours=13)) == SlaStatus.COMPLETED

    def test_review_not_required(self):
        assert _enforcement().sla_status() == SlaStatus.NOT_APPLICABLE

    def test_start_review_only_from_pending(self):
        enforcement = _enforcement(human_review=HumanReview(required=True))
        enforcement.start_review("analyst_1")
        assert enforcement.human_review.status == ReviewStatus.IN_REVIEW

        with pytest.raises(EnforcementStateError):
            enforcement.start_review("analyst_2")

    def test_reject_records_reviewer(self):
        enforcement = _enforcement(human_review=HumanReview(required=True))
        enforcement.reject_review("analyst_1", "not fraud")

        assert enforcement.human_review.status == ReviewStatus.REJECTED
        assert enforcement.human_review.reviewed_by == "analyst_1"
        assert enforcement.human_review.review_notes == "not fraud"
        assert enforcement.audit_trail[-1].action == "review_rejected"

    def test_escalate_from_review(self):
        enforcement = _enforcement(human_review=HumanReview(required=True))
        enforcement.start_review("analyst_1")
        enforcement.escalate_review("analyst_1", "needs a lead")

        assert enforcement.human_review.status == ReviewStatus.ESCALATED
        assert enforcement.human_review.review_notes == "needs a lead"
        entry = enforcement.audit_trail[-1]
        assert entry.action == "review_escalated"
        assert entry.old_value == "in_review"
        assert entry.new_value == "escalated"


class TestAppeals:

    def test_submit_and_resolve(self):
        enforcement = _enforcement()
        enforcement.submit_appeal("I was travelling", ["boarding_pass.pdf"])

        assert enforcement.appeals[0].status == AppealStatus.PENDING
        assert enforcement.appeals[0].evidence == ["boarding_pass.pdf"]

        enforcement.resolve_appeal(0, AppealStatus.APPROVED, "analyst_1", "verified")
        assert enforcement.appeals[0].status == AppealStatus.APPROVED
        assert enforcement.appeals[0].reviewed_by == "analyst_1"

    def test_resolve_unknown_appeal(self):
        with pytest.raises(EnforcementStateError):
            _enforcement().resolve_appeal(0, AppealStatus.REJECTED, "analyst_1")

    def test_resolved_appeal_is_final(self):
        enforcement = _enforcement()
        enforcement.submit_appeal("please")
        enforcement.resolve_appeal(0, AppealStatus.REJECTED, "analyst_1")

        with pytest.raises(EnforcementStateError):
            enforcement.resolve_appeal(0, AppealStatus.APPROVED, "analyst_2")


class TestWebhookStatus:

    def test_failures_count_retries(self):
        enforcement = _enforcement()
        enforcement.record_webhook_result(False, 0, "connection refused")
        enforcement.record_webhook_result(False, 503, "unavailable")

        assert enforcement.webhook_status.sent is False
        assert enforcement.webhook_status.retry_count == 2
        assert enforcement.webhook_status.response_status == 503

    def test_success_resets_retries(self):
        enforcement = _enforcement()
        enforcement.record_webhook_result(False, 0, "connection refused")
        enforcement.record_webhook_result(True, 200, "ok")

        assert enforcement.webhook_status.sent is True
        assert enforcement.webhook_status.sent_at is not None
        assert enforcement.webhook_status.retry_count == 0
        assert [e.action for e in enforcement.audit_trail] == ["webhook_failed", "webhook_sent"]

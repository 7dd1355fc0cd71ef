"""
Decision Engine

Maps (tier, risk score, confidence) onto an enforcement action using
the decision table, and turns actionable decisions into persisted
enforcements handed to the webhook dispatcher.

Decision flow:
1. Score the event if it has no risk score yet (persisted once)
2. Resolve tier from level, band from score
3. Look up the (band, tier) cell
4. observe -> done; otherwise create, activate and persist an
   enforcement, then enqueue its webhook
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Optional, TYPE_CHECKING

from ..errors import DecisionTableError, EnforcementNotFoundError
from ..metrics import metrics
from ..schemas import (
    AppealStatus,
    Decision,
    EnforcementAction,
    EnforcementAnalysis,
    EnforcementStatus,
    HumanReview,
    RecordMetadata,
    Restrictions,
    ReviewStatus,
    RiskBand,
    ShieldEnforcement,
    ShieldEvent,
    tier_for_level,
)
from ..scoring import score_event
from ..storage import EnforcementQuery, EventQuery, ShieldStore
from .rules import DEFAULT_DECISION_TABLE, DecisionTable, load_decision_table

if TYPE_CHECKING:
    from ..webhooks import WebhookDispatcher

logger = logging.getLogger("savvyshield.policy")


DEFAULT_CONFIDENCE = 0.8
HIGH_RISK_THRESHOLD = 0.8


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class ProcessResult:
    """Outcome of processing one event."""
    decision: Decision
    enforcement: Optional[ShieldEnforcement] = None


class DecisionEngine:
    """
    Tier-aware decision engine.

    Holds an immutable decision table; the table is chosen once at
    construction and never mutated.
    """

    def __init__(
        self,
        store: ShieldStore,
        dispatcher: Optional["WebhookDispatcher"] = None,
        table: Optional[DecisionTable] = None,
        table_path: Optional[Path] = None,
        environment: str = "development",
    ):
        """
        Initialize decision engine.

        Args:
            store: Event and enforcement store
            dispatcher: Webhook dispatcher (None disables delivery)
            table: Decision table (if None, uses default or table_path)
            table_path: YAML decision table to load when it exists
            environment: Recorded in enforcement metadata
        """
        self.store = store
        self.dispatcher = dispatcher
        self.environment = environment
        self.table = table if table is not None else self._load_table(table_path)
        self.table_hash = self.table.content_hash()
        logger.info(
            "Decision table v%s loaded (hash=%s)", self.table.version, self.table_hash
        )

    @staticmethod
    def _load_table(table_path: Optional[Path]) -> DecisionTable:
        if table_path is None or not table_path.exists():
            return DEFAULT_DECISION_TABLE
        try:
            return load_decision_table(table_path)
        except DecisionTableError as e:
            # Keep serving with the built-in table
            logger.error("Decision table load failed, using default: %s", e)
            metrics.errors_total.labels(error_type="DecisionTableError").inc()
            return DEFAULT_DECISION_TABLE

    @property
    def version(self) -> str:
        return self.table.version

    # =========================================================================
    # Decisions
    # =========================================================================

    def decide(
        self,
        level: str,
        risk_score: float,
        confidence: Optional[float] = None,
        risk_factors: Optional[list[str]] = None,
    ) -> Decision:
        """
        Map a user level and risk score onto a decision.

        Args:
            level: Membership level (unknown levels use the low tier)
            risk_score: Risk score in [0, 1]
            confidence: Confidence in the score (default 0.8)
            risk_factors: Named risk factors, carried through

        Returns:
            Decision
        """
        table = self.table
        tier = tier_for_level(level, table.level_tiers)
        confidence = DEFAULT_CONFIDENCE if confidence is None else confidence
        band = table.thresholds.band_for(risk_score)

        logger.debug(
            "Shield decision: level=%s tier=%s risk=%.3f confidence=%.2f",
            level, tier.value, risk_score, confidence,
        )

        if band == RiskBand.OBSERVE:
            return Decision(
                action=EnforcementAction.OBSERVE,
                tier=tier,
                band=band,
                risk_score=risk_score,
                confidence=confidence,
                risk_factors=list(risk_factors or []),
                duration_hours=None,
                reasoning=table.observe_reasoning,
                sla_hours=None,
                features_affected=[],
                restrictions=Restrictions(),
            )

        cell = table.cell(band, tier)
        prefix = table.band_reasoning[band].format(risk_score=risk_score)
        return Decision(
            action=cell.action,
            tier=tier,
            band=band,
            risk_score=risk_score,
            confidence=confidence,
            risk_factors=list(risk_factors or []),
            duration_hours=cell.duration_hours,
            reasoning=f"{prefix} - {cell.reasoning}",
            sla_hours=cell.sla_hours if cell.sla_hours is not None else table.sla_hours[tier],
            features_affected=list(cell.features_affected),
            restrictions=cell.restrictions,
        )

    async def process_event(self, event: ShieldEvent) -> ProcessResult:
        """
        Score (if needed), decide and enforce for one event.

        Returns:
            ProcessResult with the decision and the enforcement, if any
        """
        if event.risk_score is None:
            event.risk_score = score_event(event)
            await self.store.save_event(event)

        metrics.risk_score_distribution.observe(event.risk_score)

        decision = self.decide(
            event.level,
            event.risk_score,
            confidence=event.confidence_level,
            risk_factors=event.risk_factors,
        )
        metrics.decisions_total.labels(
            action=decision.action.value, tier=decision.tier.value
        ).inc()

        if not decision.is_actionable:
            return ProcessResult(decision=decision)

        enforcement = await self.create_enforcement(decision, event)

        if self.dispatcher is not None:
            await self.dispatcher.submit(enforcement)

        return ProcessResult(decision=decision, enforcement=enforcement)

    async def create_enforcement(self, decision: Decision, event: ShieldEvent) -> ShieldEnforcement:
        """Build, activate and persist the enforcement for a decision."""
        now = _utc_now()
        evidence_summary = (
            event.analysis.evidence_summary
            if event.analysis and event.analysis.evidence_summary
            else "Analysis pending"
        )

        enforcement = ShieldEnforcement(
            savvy_user_id=event.savvy_user_id,
            app=event.app,
            level=event.level,
            related_events=[event.id],
            risk_score=decision.risk_score,
            confidence_level=decision.confidence,
            risk_factors=list(event.risk_factors),
            decision=decision.action,
            decision_reason=decision.reasoning,
            decision_factors=list(decision.features_affected),
            features_affected=list(decision.features_affected),
            duration_hours=decision.duration_hours,
            restrictions=decision.restrictions,
            analysis=EnforcementAnalysis(
                analysis_reasoning=decision.reasoning,
                evidence_summary=evidence_summary,
                false_positive_probability=round(1 - decision.confidence, 4),
                recommended_review_time=decision.sla_hours,
            ),
            human_review=HumanReview(
                required=decision.is_actionable,
                status=ReviewStatus.PENDING,
                sla_hours=decision.sla_hours,
                sla_deadline=(
                    now + timedelta(hours=decision.sla_hours)
                    if decision.sla_hours
                    else None
                ),
            ),
            case_id=event.case_id or f"case_{int(now.timestamp() * 1000)}_{event.savvy_user_id}",
            metadata=RecordMetadata(
                source="shield_decision_engine",
                environment=self.environment,
                trace_id=event.metadata.trace_id,
            ),
        )
        enforcement.add_audit_entry(
            "created",
            details={
                "decision_table_version": self.table.version,
                "decision_table_hash": self.table_hash,
                "event_id": event.id,
            },
            new_value=decision.action.value,
        )
        enforcement.activate()
        await self.store.save_enforcement(enforcement)

        metrics.enforcements_created.labels(action=enforcement.decision.value).inc()
        logger.info(
            "Created enforcement %s: %s for user %s (%s)",
            enforcement.id, enforcement.decision.value, enforcement.savvy_user_id, enforcement.level,
        )
        return enforcement

    # =========================================================================
    # Enforcement workflow
    # =========================================================================

    async def get_enforcement(self, enforcement_id: str) -> ShieldEnforcement:
        enforcement = await self.store.get_enforcement(enforcement_id)
        if enforcement is None:
            raise EnforcementNotFoundError(f"Enforcement {enforcement_id} not found")
        return enforcement

    async def approve(self, enforcement_id: str, reviewer: str, notes: Optional[str] = None) -> ShieldEnforcement:
        enforcement = await self.get_enforcement(enforcement_id)
        enforcement.approve_review(reviewer, notes)
        return await self.store.save_enforcement(enforcement)

    async def reject(self, enforcement_id: str, reviewer: str, notes: Optional[str] = None) -> ShieldEnforcement:
        enforcement = await self.get_enforcement(enforcement_id)
        enforcement.reject_review(reviewer, notes)
        return await self.store.save_enforcement(enforcement)

    async def override(self, enforcement_id: str, reviewer: str, reason: str) -> ShieldEnforcement:
        enforcement = await self.get_enforcement(enforcement_id)
        enforcement.override(reviewer, reason)
        return await self.store.save_enforcement(enforcement)

    async def submit_appeal(
        self,
        enforcement_id: str,
        reason: str,
        evidence: Optional[list[str]] = None,
    ) -> ShieldEnforcement:
        enforcement = await self.get_enforcement(enforcement_id)
        enforcement.submit_appeal(reason, evidence, performed_by=enforcement.savvy_user_id)
        return await self.store.save_enforcement(enforcement)

    async def resolve_appeal(
        self,
        enforcement_id: str,
        index: int,
        appeal_status: AppealStatus,
        reviewer: str,
        notes: Optional[str] = None,
    ) -> ShieldEnforcement:
        enforcement = await self.get_enforcement(enforcement_id)
        enforcement.resolve_appeal(index, appeal_status, reviewer, notes)
        return await self.store.save_enforcement(enforcement)

    async def expire_due_enforcements(self, now: Optional[datetime] = None) -> list[ShieldEnforcement]:
        """Move active enforcements whose expires_at has passed to expired."""
        now = now or _utc_now()
        due = await self.store.query_enforcements(
            EnforcementQuery(statuses=[EnforcementStatus.ACTIVE], expires_before=now)
        )
        expired: list[ShieldEnforcement] = []
        for enforcement in due:
            if not enforcement.is_due_to_expire(now):
                continue
            enforcement.expire()
            await self.store.save_enforcement(enforcement)
            expired.append(enforcement)

        if expired:
            metrics.enforcements_expired.inc(len(expired))
            logger.info("Expired %d enforcements", len(expired))
        return expired

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_active_enforcements(self, limit: Optional[int] = None) -> list[ShieldEnforcement]:
        """Pending or active enforcements, riskiest first."""
        return await self.store.query_enforcements(
            EnforcementQuery(
                statuses=[EnforcementStatus.PENDING, EnforcementStatus.ACTIVE],
                order_by_risk=True,
                limit=limit,
            )
        )

    async def get_overdue_reviews(self, now: Optional[datetime] = None) -> list[ShieldEnforcement]:
        """Required reviews still open past their SLA deadline, oldest deadline first."""
        now = now or _utc_now()
        overdue = await self.store.query_enforcements(
            EnforcementQuery(
                review_required=True,
                review_statuses=[ReviewStatus.PENDING, ReviewStatus.IN_REVIEW],
                sla_deadline_before=now,
            )
        )
        overdue.sort(key=lambda e: e.human_review.sla_deadline)
        return overdue

    async def get_stats(self, days: int = 30) -> dict[str, Any]:
        """Enforcement and event statistics over the last `days` days."""
        since = _utc_now() - timedelta(days=days)
        enforcements = await self.store.query_enforcements(EnforcementQuery(since=since))
        events = await self.store.query_events(EventQuery(since=since))
        overdue = await self.get_overdue_reviews()
        active_count = await self.store.count_enforcements(
            EnforcementQuery(statuses=[EnforcementStatus.PENDING, EnforcementStatus.ACTIVE])
        )

        def _count(values: list[str]) -> dict[str, int]:
            counts: dict[str, int] = {}
            for value in values:
                counts[value] = counts.get(value, 0) + 1
            return counts

        scored = [e.risk_score for e in events if e.risk_score is not None]

        return {
            "period_days": days,
            "enforcements": {
                "total": len(enforcements),
                "avg_risk_score": (
                    round(sum(e.risk_score for e in enforcements) / len(enforcements), 4)
                    if enforcements else None
                ),
                "by_decision": _count([e.decision.value for e in enforcements]),
                "by_status": _count([e.status.value for e in enforcements]),
                "by_level": _count([e.level for e in enforcements]),
            },
            "events": {
                "total": len(events),
                "avg_risk_score": round(sum(scored) / len(scored), 4) if scored else None,
                "high_risk": sum(1 for s in scored if s >= HIGH_RISK_THRESHOLD),
                "by_type": _count([e.event_type.value for e in events]),
                "by_app": _count([e.app for e in events]),
            },
            "overdue_reviews": len(overdue),
            "active_enforcements": active_count,
            "decision_table": {"version": self.table.version, "hash": self.table_hash},
        }

    async def get_user_risk_profile(self, savvy_user_id: str, days: int = 90) -> dict[str, Any]:
        """Aggregate a user's events and enforcement history."""
        since = _utc_now() - timedelta(days=days)
        events = await self.store.query_events(
            EventQuery(savvy_user_id=savvy_user_id, since=since)
        )
        history = await self.store.query_enforcements(
            EnforcementQuery(savvy_user_id=savvy_user_id, since=since)
        )

        scored = [e.risk_score for e in events if e.risk_score is not None]
        risk_profile = None
        if events:
            risk_profile = {
                "total_events": len(events),
                "avg_risk_score": round(sum(scored) / len(scored), 4) if scored else None,
                "max_risk_score": max(scored) if scored else None,
                "event_types": sorted({e.event_type.value for e in events}),
                "apps_used": sorted({e.app for e in events}),
                "recent_high_risk": sum(1 for s in scored if s >= HIGH_RISK_THRESHOLD),
            }

        return {
            "user_id": savvy_user_id,
            "risk_profile": risk_profile,
            "enforcement_history": history,
            "period_days": days,
        }

    def describe_table(self) -> dict[str, Any]:
        """Loaded decision table with its audit hash."""
        return {
            "version": self.table.version,
            "hash": self.table_hash,
            "table": self.table.model_dump(mode="json"),
        }

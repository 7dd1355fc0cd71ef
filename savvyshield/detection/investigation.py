"""
Proactive Investigation

Runs the detector battery against users without waiting for a report:
- on a timer, sweeping the store for candidates across all users
- on demand, for one user (e.g. right after a high-risk ingest)

When detectors fire, a synthetic proactive_investigation event is
recorded and fed back through the decision engine.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, Optional
from uuid import uuid4

from ..metrics import metrics
from ..policy import DecisionEngine, ProcessResult
from ..schemas import (
    EnforcementStatus,
    EventAnalysis,
    EventType,
    InvestigationStatus,
    RecordMetadata,
    ShieldEvent,
)
from ..storage import EnforcementQuery, EventQuery, ShieldStore
from .behavioral import BehavioralPatternInvestigator
from .bot import BotBehaviorInvestigator
from .detector import BaseInvestigator, Candidate, Clock, InvestigationFinding, utc_now
from .device_reuse import DeviceReuseInvestigator
from .geo import ImpossibleTravelInvestigator
from .ip_reputation import IPReputationInvestigator
from .payment import PaymentRiskInvestigator
from .velocity import VelocitySpikeInvestigator
from .win_rate import WinRateInvestigator

logger = logging.getLogger("savvyshield.investigation")


# Findings at or below this score are not strong enough to open a case
FINDING_THRESHOLD = 0.6
CASE_CONFIDENCE = 0.8
DEFAULT_LEVEL = "guest"

# A proactive case stays open for the longest per-user detector window
OPEN_CASE_WINDOW = timedelta(hours=24)
OPEN_ENFORCEMENT_STATUSES = [EnforcementStatus.PENDING, EnforcementStatus.ACTIVE]


def build_default_investigators(
    store: ShieldStore,
    game_apps: Iterable[str] = ("gamesavvy",),
    clock: Optional[Clock] = None,
) -> list[BaseInvestigator]:
    """Detector battery in the order it runs."""
    return [
        DeviceReuseInvestigator(store, clock),
        VelocitySpikeInvestigator(store, clock),
        ImpossibleTravelInvestigator(store, clock),
        WinRateInvestigator(store, clock, game_apps=game_apps),
        PaymentRiskInvestigator(store, clock),
        BotBehaviorInvestigator(store, clock),
        IPReputationInvestigator(store, clock),
        BehavioralPatternInvestigator(store, clock),
    ]


@dataclass
class InvestigationOutcome:
    """Result of investigating one user."""
    savvy_user_id: str
    app: str
    findings: list[InvestigationFinding] = field(default_factory=list)
    case_event: Optional[ShieldEvent] = None
    result: Optional[ProcessResult] = None


@dataclass
class SweepResult:
    candidates: int = 0
    investigated: int = 0
    already_open: int = 0
    cases_opened: int = 0
    expired_enforcements: int = 0
    duration_seconds: float = 0.0


class ProactiveInvestigationService:
    """
    Timer-driven and on-demand investigation engine.

    Usage:
        service = ProactiveInvestigationService(store, engine)
        service.start()          # sweeps now, then every interval
        await service.investigate_user("u1", "final10")
        service.stop()           # cancels the timer only
    """

    def __init__(
        self,
        store: ShieldStore,
        engine: DecisionEngine,
        investigators: Optional[list[BaseInvestigator]] = None,
        interval_seconds: float = 300,
        max_users_per_sweep: int = 100,
        game_apps: Iterable[str] = ("gamesavvy",),
        environment: str = "development",
        clock: Optional[Clock] = None,
    ):
        """
        Initialize service.

        Args:
            store: Event store
            engine: Decision engine that receives investigation cases
            investigators: Detector battery (default: all eight detectors)
            interval_seconds: Seconds between sweep ticks
            max_users_per_sweep: Cap on users investigated per sweep
            game_apps: Apps whose events carry game outcomes
            environment: Recorded in case event metadata
            clock: Current-time source for default detectors and open-case lookups
        """
        self.store = store
        self.engine = engine
        self.investigators = (
            investigators
            if investigators is not None
            else build_default_investigators(store, game_apps, clock)
        )
        self.interval_seconds = interval_seconds
        self.max_users_per_sweep = max_users_per_sweep
        self.environment = environment
        self._clock = clock or utc_now

        self._timer: Optional[asyncio.Task] = None
        self._sweep_in_flight = False
        self._tasks: set[asyncio.Task] = set()

    # =========================================================================
    # Timer
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def sweep_in_flight(self) -> bool:
        return self._sweep_in_flight

    def start(self) -> bool:
        """
        Start the sweep timer. The first sweep runs immediately.

        Returns:
            False if the timer was already running
        """
        if self.is_running:
            logger.warning("Proactive investigation already running")
            return False

        logger.info("Starting proactive investigation (interval=%ss)", self.interval_seconds)
        self._timer = asyncio.create_task(self._tick_forever(), name="shield-proactive-timer")
        metrics.proactive_running.set(1)
        return True

    def stop(self) -> bool:
        """
        Cancel the sweep timer. A sweep already in progress finishes.

        Returns:
            False if the timer was not running
        """
        if not self.is_running:
            return False

        logger.info("Stopping proactive investigation")
        self._timer.cancel()
        self._timer = None
        metrics.proactive_running.set(0)
        return True

    async def _tick_forever(self) -> None:
        while True:
            self._spawn(self.run_sweep(), "proactive_sweep")
            await asyncio.sleep(self.interval_seconds)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        """Run a coroutine in the background and log failures."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)

        def _log_exception(task_ref: asyncio.Task) -> None:
            self._tasks.discard(task_ref)
            if task_ref.cancelled():
                return
            exc = task_ref.exception()
            if exc is not None:
                logger.warning("Background task %s failed: %s", name, exc)
                metrics.errors_total.labels(error_type="BackgroundTaskError").inc()

        task.add_done_callback(_log_exception)
        return task

    async def wait_idle(self) -> None:
        """Wait for spawned sweeps to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Sweep
    # =========================================================================

    async def run_sweep(self) -> Optional[SweepResult]:
        """
        One global sweep.

        Expires lapsed enforcements, collects candidates from every
        detector's cross-user scan and investigates each (user, app)
        once, up to max_users_per_sweep. Users with an open case or
        enforcement in that app are left alone.

        Returns:
            SweepResult, or None when skipped because a sweep is in flight
        """
        if self._sweep_in_flight:
            logger.info("Sweep still running, skipping tick")
            metrics.sweeps_skipped.inc()
            return None

        self._sweep_in_flight = True
        started_at = time.perf_counter()
        result = SweepResult()
        try:
            try:
                expired = await self.engine.expire_due_enforcements()
                result.expired_enforcements = len(expired)
            except Exception as e:
                logger.error("Enforcement expiry failed: %s", e)
                metrics.errors_total.labels(error_type="ExpiryFailed").inc()

            candidates: dict[tuple[str, str], Candidate] = {}
            for investigator in self.investigators:
                try:
                    found = await investigator.investigate()
                except Exception as e:
                    logger.error("Investigation scan %s failed: %s", investigator.name, e)
                    metrics.detector_errors.labels(detector=investigator.name).inc()
                    continue
                for candidate in found:
                    candidates.setdefault((candidate.savvy_user_id, candidate.app), candidate)

            result.candidates = len(candidates)
            fresh = []
            for candidate in candidates.values():
                if await self.has_open_case(candidate.savvy_user_id, candidate.app):
                    result.already_open += 1
                else:
                    fresh.append(candidate)

            selected = fresh[: self.max_users_per_sweep]
            if len(fresh) > len(selected):
                logger.warning(
                    "Sweep capped at %d of %d candidates", len(selected), len(fresh)
                )

            for candidate in selected:
                outcome = await self.investigate_user(
                    candidate.savvy_user_id, candidate.app, level=candidate.level
                )
                result.investigated += 1
                if outcome.case_event is not None:
                    result.cases_opened += 1
        finally:
            self._sweep_in_flight = False
            result.duration_seconds = time.perf_counter() - started_at
            metrics.sweep_duration.observe(result.duration_seconds)

        logger.info(
            "Proactive sweep done: %d candidates, %d already open, %d investigated, %d cases, %d expired",
            result.candidates, result.already_open, result.investigated,
            result.cases_opened, result.expired_enforcements,
        )
        return result

    async def has_open_case(self, savvy_user_id: str, app: str) -> bool:
        """
        True when the user already has a pending or active enforcement in
        the app, or a proactive case still under investigation.
        """
        open_enforcements = await self.store.count_enforcements(
            EnforcementQuery(
                savvy_user_id=savvy_user_id,
                app=app,
                statuses=OPEN_ENFORCEMENT_STATUSES,
            )
        )
        if open_enforcements:
            return True

        open_cases = await self.store.count_events(
            EventQuery(
                savvy_user_id=savvy_user_id,
                app=app,
                event_types=[EventType.PROACTIVE_INVESTIGATION],
                investigation_status=InvestigationStatus.INVESTIGATING,
                since=self._clock() - OPEN_CASE_WINDOW,
            )
        )
        return open_cases > 0

    # =========================================================================
    # Per-user investigation
    # =========================================================================

    async def investigate_user(
        self,
        savvy_user_id: str,
        app: str,
        level: Optional[str] = None,
    ) -> InvestigationOutcome:
        """
        Run every detector for one user, sequentially.

        A failing detector is logged and skipped. Findings scoring above
        FINDING_THRESHOLD open an investigation case.
        """
        outcome = InvestigationOutcome(savvy_user_id=savvy_user_id, app=app)

        for investigator in self.investigators:
            try:
                finding = await investigator.investigate_user(savvy_user_id, app)
            except Exception as e:
                logger.error(
                    "Detector %s failed for user %s: %s", investigator.name, savvy_user_id, e
                )
                metrics.detector_errors.labels(detector=investigator.name).inc()
                continue

            if finding is not None and finding.risk_score > FINDING_THRESHOLD:
                metrics.detector_triggers.labels(detector=investigator.name).inc()
                outcome.findings.append(finding)

        if outcome.findings:
            outcome.case_event, outcome.result = await self.create_investigation_case(
                savvy_user_id, app, outcome.findings, level=level
            )
        return outcome

    async def _resolve_level(self, savvy_user_id: str, level: Optional[str]) -> str:
        if level:
            return level
        latest = await self.store.query_events(
            EventQuery(savvy_user_id=savvy_user_id, limit=1)
        )
        return latest[0].level if latest else DEFAULT_LEVEL

    async def create_investigation_case(
        self,
        savvy_user_id: str,
        app: str,
        findings: list[InvestigationFinding],
        level: Optional[str] = None,
    ) -> tuple[ShieldEvent, ProcessResult]:
        """Record a proactive_investigation event and run it through the engine."""
        risk_factors = [f.risk_factor for f in findings]
        max_score = max(f.risk_score for f in findings)

        event = ShieldEvent(
            savvy_user_id=savvy_user_id,
            app=app,
            level=await self._resolve_level(savvy_user_id, level),
            event_type=EventType.PROACTIVE_INVESTIGATION,
            context={
                "action": "comprehensive_investigation",
                "investigation_count": len(findings),
                "risk_factors": risk_factors,
                "evidence": [f.evidence for f in findings],
            },
            risk_score=max_score,
            risk_factors=risk_factors,
            confidence_level=CASE_CONFIDENCE,
            investigation_status=InvestigationStatus.INVESTIGATING,
            analysis=EventAnalysis(
                analysis_reasoning=f"Proactive investigation triggered by {len(findings)} risk indicators",
                evidence_summary="Multiple suspicious patterns detected: " + ", ".join(risk_factors),
                false_positive_probability=0.2,
            ),
            case_id=f"proactive_{uuid4().hex[:12]}_{savvy_user_id}",
            metadata=RecordMetadata(
                source="proactive_investigation",
                environment=self.environment,
            ),
        )
        event.mark_investigating()
        await self.store.save_event(event)
        metrics.investigation_cases.inc()

        result = await self.engine.process_event(event)
        logger.info(
            "Opened proactive investigation case %s for user %s (risk %.3f, action %s)",
            event.case_id, savvy_user_id, max_score, result.decision.action.value,
        )
        return event, result

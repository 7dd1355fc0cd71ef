"""
Investigation Detectors

Each detector looks for one fraud pattern in the event store and has
two entry points:
- investigate_user(): score a single user, returning a finding or None
- investigate(): scan across users and return (user, app) candidates
  worth a per-user investigation

Detectors are heuristics over stored events; none of them write.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Callable, Optional

from ..schemas import EventType, ShieldEvent
from ..storage import EventQuery, ShieldStore


Clock = Callable[[], datetime]

# Cases written back by the investigation service. Activity-shape detectors
# skip them so a case never counts as user activity.
SYNTHETIC_EVENT_TYPES = [EventType.PROACTIVE_INVESTIGATION]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class InvestigationFinding:
    """
    Result from a detector that fired.

    risk_factor names the pattern and ends up in the event's risk_factors.
    """
    risk_factor: str
    risk_score: float  # 0.0 to 1.0
    evidence: str
    confidence: float
    detector: str = ""


@dataclass(frozen=True)
class Candidate:
    """A (user, app) pair surfaced by a cross-user scan."""
    savvy_user_id: str
    app: str
    level: Optional[str] = None


class BaseInvestigator(ABC):
    """
    Base class for all investigation detectors.

    - DeviceReuseInvestigator: one device shared by many accounts
    - VelocitySpikeInvestigator: burst of events in one app
    - ImpossibleTravelInvestigator: locations too far apart too quickly
    - WinRateInvestigator: implausible win rate in game apps
    - PaymentRiskInvestigator: payment risk and chargeback signals
    - BotBehaviorInvestigator: machine-regular event intervals
    - IPReputationInvestigator: VPN, proxy or Tor addresses
    - BehavioralPatternInvestigator: activity concentrated in one hour
    """

    name: str = "detector"

    def __init__(self, store: ShieldStore, clock: Optional[Clock] = None):
        """
        Initialize detector.

        Args:
            store: Event store to read from
            clock: Current-time source (defaults to UTC wall clock)
        """
        self.store = store
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    def since(self, window: timedelta) -> datetime:
        return self.now() - window

    async def investigate(self) -> list[Candidate]:
        """Cross-user scan. Detectors without one return no candidates."""
        return []

    @abstractmethod
    async def investigate_user(
        self,
        savvy_user_id: str,
        app: str,
    ) -> Optional[InvestigationFinding]:
        """
        Run detection for one user.

        Args:
            savvy_user_id: User under investigation
            app: App the investigation was triggered from

        Returns:
            InvestigationFinding if the pattern was found, else None
        """
        pass

    def finding(self, risk_factor: str, risk_score: float, evidence: str, confidence: float) -> InvestigationFinding:
        return InvestigationFinding(
            risk_factor=risk_factor,
            risk_score=risk_score,
            evidence=evidence,
            confidence=confidence,
            detector=self.name,
        )

    async def user_events(
        self,
        savvy_user_id: str,
        window: timedelta,
        app: Optional[str] = None,
        context_key: Optional[str] = None,
        order: str = "desc",
        exclude_event_types: Optional[list[EventType]] = None,
    ) -> list[ShieldEvent]:
        return await self.store.query_events(
            EventQuery(
                savvy_user_id=savvy_user_id,
                app=app,
                exclude_event_types=exclude_event_types,
                since=self.since(window),
                context_key=context_key,
                order=order,
            )
        )


def candidates_from_events(events: list[ShieldEvent]) -> list[Candidate]:
    """One candidate per (user, app), keeping the level of the first event seen."""
    seen: dict[tuple[str, str], Candidate] = {}
    for event in events:
        key = (event.savvy_user_id, event.app)
        if key not in seen:
            seen[key] = Candidate(event.savvy_user_id, event.app, event.level)
    return list(seen.values())

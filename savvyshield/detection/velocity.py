"""
Velocity Spike Detection

Detects bursts of activity from one user in one app: more than
`max_events` events inside an hour.
"""

from collections import Counter
from datetime import timedelta
from typing import Optional

from ..storage import EventQuery
from .detector import SYNTHETIC_EVENT_TYPES, BaseInvestigator, Candidate, InvestigationFinding


class VelocitySpikeInvestigator(BaseInvestigator):
    """
    Score: min(0.9, 0.6 + 0.01 * (events - max_events))
    """

    name = "velocity_spike"

    def __init__(self, store, clock=None, window: timedelta = timedelta(hours=1), max_events: int = 20):
        super().__init__(store, clock)
        self.window = window
        self.max_events = max_events

    async def investigate(self) -> list[Candidate]:
        events = await self.store.query_events(
            EventQuery(since=self.since(self.window), exclude_event_types=SYNTHETIC_EVENT_TYPES)
        )
        counts = Counter((e.savvy_user_id, e.app) for e in events)
        levels = {(e.savvy_user_id, e.app): e.level for e in reversed(events)}
        return [
            Candidate(user_id, app, levels.get((user_id, app)))
            for (user_id, app), count in counts.items()
            if count > self.max_events
        ]

    async def investigate_user(self, savvy_user_id: str, app: str) -> Optional[InvestigationFinding]:
        count = await self.store.count_events(
            EventQuery(
                savvy_user_id=savvy_user_id,
                app=app,
                since=self.since(self.window),
                exclude_event_types=SYNTHETIC_EVENT_TYPES,
            )
        )
        if count <= self.max_events:
            return None

        return self.finding(
            risk_factor="velocity_spike",
            risk_score=min(0.9, 0.6 + (count - self.max_events) * 0.01),
            evidence=f"{count} events in 1 hour (normal: <{self.max_events})",
            confidence=0.7,
        )

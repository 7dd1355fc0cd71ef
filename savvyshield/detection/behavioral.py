"""
Behavioral Pattern Detection

Flags users whose activity over a week is concentrated in a single
hour of the day (UTC).
"""

from collections import Counter
from datetime import timedelta
from typing import Optional

from .detector import SYNTHETIC_EVENT_TYPES, BaseInvestigator, InvestigationFinding


class BehavioralPatternInvestigator(BaseInvestigator):

    name = "behavioral_pattern"

    def __init__(
        self,
        store,
        clock=None,
        window: timedelta = timedelta(days=7),
        min_events: int = 20,
        max_hour_share: float = 0.8,
    ):
        super().__init__(store, clock)
        self.window = window
        self.min_events = min_events
        self.max_hour_share = max_hour_share

    async def investigate_user(self, savvy_user_id: str, app: str) -> Optional[InvestigationFinding]:
        events = await self.user_events(
            savvy_user_id, self.window, exclude_event_types=SYNTHETIC_EVENT_TYPES
        )
        if len(events) < self.min_events:
            return None

        hours = Counter(e.created_at.hour for e in events)
        top_count = max(hours.values())
        share = top_count / len(events)
        if share <= self.max_hour_share:
            return None

        top_hour = min(h for h, c in hours.items() if c == top_count)
        return self.finding(
            risk_factor="behavioral_anomaly",
            risk_score=0.6,
            evidence=f"{share * 100:.1f}% of activity at hour {top_hour}",
            confidence=0.6,
        )

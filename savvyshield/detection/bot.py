"""
Bot Behavior Detection

Humans are irregular. When the gaps between a user's events in the
last hour barely vary, the activity is likely scripted.
"""

from datetime import timedelta
from statistics import fmean, pstdev
from typing import Optional

from .detector import SYNTHETIC_EVENT_TYPES, BaseInvestigator, InvestigationFinding


class BotBehaviorInvestigator(BaseInvestigator):
    """
    Flags interval standard deviation below 10% of the mean interval.
    """

    name = "bot_detection"

    def __init__(
        self,
        store,
        clock=None,
        window: timedelta = timedelta(hours=1),
        min_events: int = 5,
        max_relative_stddev: float = 0.1,
    ):
        super().__init__(store, clock)
        self.window = window
        self.min_events = min_events
        self.max_relative_stddev = max_relative_stddev

    async def investigate_user(self, savvy_user_id: str, app: str) -> Optional[InvestigationFinding]:
        events = await self.user_events(
            savvy_user_id, self.window, order="asc", exclude_event_types=SYNTHETIC_EVENT_TYPES
        )
        if len(events) < self.min_events:
            return None

        intervals_ms = [
            (later.created_at - earlier.created_at).total_seconds() * 1000
            for earlier, later in zip(events, events[1:])
        ]
        mean_ms = fmean(intervals_ms)
        stddev_ms = pstdev(intervals_ms, mu=mean_ms)

        if stddev_ms < mean_ms * self.max_relative_stddev:
            return self.finding(
                risk_factor="bot_detection",
                risk_score=0.8,
                evidence=f"Extremely regular intervals (std dev: {stddev_ms:.0f}ms)",
                confidence=0.7,
            )
        return None

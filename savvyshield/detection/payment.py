"""
Payment Risk Detection

Any payment risk or chargeback signal in the last 24 hours is a strong
indicator; each additional signal raises the score.
"""

from datetime import timedelta
from typing import Optional

from ..schemas import EventType
from ..storage import EventQuery
from .detector import BaseInvestigator, Candidate, InvestigationFinding, candidates_from_events


PAYMENT_EVENT_TYPES = [EventType.PAYMENT_RISK, EventType.CHARGEBACK_SIGNAL]


class PaymentRiskInvestigator(BaseInvestigator):
    """
    Score: min(0.95, 0.7 + 0.1 * signals)
    """

    name = "payment_risk"

    def __init__(self, store, clock=None, window: timedelta = timedelta(hours=24)):
        super().__init__(store, clock)
        self.window = window

    async def investigate(self) -> list[Candidate]:
        events = await self.store.query_events(
            EventQuery(since=self.since(self.window), event_types=PAYMENT_EVENT_TYPES)
        )
        return candidates_from_events(events)

    async def investigate_user(self, savvy_user_id: str, app: str) -> Optional[InvestigationFinding]:
        count = await self.store.count_events(
            EventQuery(
                savvy_user_id=savvy_user_id,
                event_types=PAYMENT_EVENT_TYPES,
                since=self.since(self.window),
            )
        )
        if count == 0:
            return None

        return self.finding(
            risk_factor="payment_risk",
            risk_score=min(0.95, 0.7 + count * 0.1),
            evidence=f"{count} payment risk signals in 24h",
            confidence=0.9,
        )

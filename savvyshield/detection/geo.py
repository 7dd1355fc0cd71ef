"""
Impossible Travel Detection

Compares the two most recent geo-tagged events of a user in the last
hour. Covering more than 5000 km in under 30 minutes is not possible
by any means of transport.
"""

from datetime import timedelta
from math import radians, sin, cos, sqrt, atan2
from typing import Optional

from .detector import BaseInvestigator, InvestigationFinding


EARTH_RADIUS_KM = 6371


def calculate_distance_km(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
) -> float:
    """
    Calculate distance between two points using Haversine formula.

    Args:
        lat1, lon1: First point coordinates
        lat2, lon2: Second point coordinates

    Returns:
        Distance in kilometers
    """
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))

    return EARTH_RADIUS_KM * c


class ImpossibleTravelInvestigator(BaseInvestigator):

    name = "impossible_travel"

    def __init__(
        self,
        store,
        clock=None,
        window: timedelta = timedelta(hours=1),
        min_distance_km: float = 5000,
        max_minutes: float = 30,
    ):
        super().__init__(store, clock)
        self.window = window
        self.min_distance_km = min_distance_km
        self.max_minutes = max_minutes

    async def investigate_user(self, savvy_user_id: str, app: str) -> Optional[InvestigationFinding]:
        events = await self.user_events(savvy_user_id, self.window, context_key="location")
        located = [e for e in events if e.coordinates is not None]
        if len(located) < 2:
            return None

        latest, previous = located[0], located[1]
        lat1, lng1 = previous.coordinates
        lat2, lng2 = latest.coordinates
        distance = calculate_distance_km(lat1, lng1, lat2, lng2)
        minutes = (latest.created_at - previous.created_at).total_seconds() / 60

        if distance > self.min_distance_km and minutes < self.max_minutes:
            return self.finding(
                risk_factor="impossible_travel",
                risk_score=0.8,
                evidence=f"Traveled {distance:.0f}km in {minutes:.1f} minutes",
                confidence=0.9,
            )
        return None

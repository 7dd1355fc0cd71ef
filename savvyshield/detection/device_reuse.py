"""
Device Reuse Detection

Flags devices shared by many accounts inside a 24-hour window, a
common sign of multi-accounting and bonus abuse.
"""

from collections import defaultdict
from datetime import timedelta
from typing import Optional

from ..storage import EventQuery
from .detector import BaseInvestigator, Candidate, InvestigationFinding


class DeviceReuseInvestigator(BaseInvestigator):
    """
    Detects one device_id used by more than `max_users` distinct users.

    Score: min(0.9, 0.5 + 0.1 * (users - max_users))
    """

    name = "device_reuse"

    def __init__(self, store, clock=None, window: timedelta = timedelta(hours=24), max_users: int = 3):
        super().__init__(store, clock)
        self.window = window
        self.max_users = max_users

    async def _users_by_device(self) -> tuple[dict[str, set[str]], list]:
        events = await self.store.query_events(
            EventQuery(since=self.since(self.window), context_key="device_id")
        )
        users_by_device: dict[str, set[str]] = defaultdict(set)
        for event in events:
            users_by_device[str(event.device_id)].add(event.savvy_user_id)
        return users_by_device, events

    def score(self, user_count: int) -> float:
        return min(0.9, 0.5 + (user_count - self.max_users) * 0.1)

    async def investigate(self) -> list[Candidate]:
        users_by_device, events = await self._users_by_device()
        shared = {d for d, users in users_by_device.items() if len(users) > self.max_users}
        if not shared:
            return []

        candidates: dict[tuple[str, str], Candidate] = {}
        for event in events:
            if str(event.device_id) in shared:
                key = (event.savvy_user_id, event.app)
                candidates.setdefault(key, Candidate(event.savvy_user_id, event.app, event.level))
        return list(candidates.values())

    async def investigate_user(self, savvy_user_id: str, app: str) -> Optional[InvestigationFinding]:
        users_by_device, _ = await self._users_by_device()

        # Most shared device among those this user was seen on
        worst_device = None
        worst_count = 0
        for device_id, users in users_by_device.items():
            if savvy_user_id in users and len(users) > worst_count:
                worst_device, worst_count = device_id, len(users)

        if worst_device is None or worst_count <= self.max_users:
            return None

        return self.finding(
            risk_factor="device_reuse",
            risk_score=self.score(worst_count),
            evidence=f"Device {worst_device} used by {worst_count} different users in 24h",
            confidence=0.8,
        )

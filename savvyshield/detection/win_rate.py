"""
Win Rate Anomaly Detection

Game apps only. A user winning more than 80% of at least ten games in
a week is flagged for collusion or cheating.
"""

from datetime import timedelta
from typing import Iterable, Optional

from .detector import BaseInvestigator, InvestigationFinding


class WinRateInvestigator(BaseInvestigator):
    """
    Score: min(0.9, 0.6 + 2 * (win_rate - 0.8))
    """

    name = "win_rate_anomaly"

    def __init__(
        self,
        store,
        clock=None,
        game_apps: Iterable[str] = ("gamesavvy",),
        window: timedelta = timedelta(days=7),
        min_games: int = 10,
        max_win_rate: float = 0.8,
    ):
        super().__init__(store, clock)
        self.game_apps = frozenset(game_apps)
        self.window = window
        self.min_games = min_games
        self.max_win_rate = max_win_rate

    async def investigate_user(self, savvy_user_id: str, app: str) -> Optional[InvestigationFinding]:
        if app not in self.game_apps:
            return None

        events = await self.user_events(savvy_user_id, self.window, app=app, context_key="win_amount")
        games = [e for e in events if isinstance(e.context.get("win_amount"), (int, float))]
        if len(games) < self.min_games:
            return None

        wins = sum(1 for e in games if e.context["win_amount"] > 0)
        win_rate = wins / len(games)
        if win_rate <= self.max_win_rate:
            return None

        return self.finding(
            risk_factor="win_rate_anomaly",
            risk_score=min(0.9, 0.6 + (win_rate - self.max_win_rate) * 2),
            evidence=f"{win_rate * 100:.1f}% win rate over {len(games)} games",
            confidence=0.8,
        )

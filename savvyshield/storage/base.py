"""
Shield Store Interface

Persistence contract shared by the PostgreSQL store and the in-memory
store. Records are persisted whole: save_* is an upsert keyed by id.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

from ..schemas import (
    EnforcementAction,
    EnforcementStatus,
    EventType,
    InvestigationStatus,
    ReviewStatus,
    ShieldEnforcement,
    ShieldEvent,
)


SortOrder = Literal["asc", "desc"]


@dataclass
class EventQuery:
    """
    Filter for shield events.

    All set fields must match. `context_key` keeps only events whose
    context carries that key with a non-null value.
    """
    savvy_user_id: Optional[str] = None
    app: Optional[str] = None
    event_types: Optional[list[EventType]] = None
    exclude_event_types: Optional[list[EventType]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    min_risk_score: Optional[float] = None
    investigation_status: Optional[InvestigationStatus] = None
    context_key: Optional[str] = None
    order: SortOrder = "desc"
    limit: Optional[int] = None
    offset: int = 0


@dataclass
class EnforcementQuery:
    """Filter for enforcements. All set fields must match."""
    savvy_user_id: Optional[str] = None
    app: Optional[str] = None
    decisions: Optional[list[EnforcementAction]] = None
    statuses: Optional[list[EnforcementStatus]] = None
    review_statuses: Optional[list[ReviewStatus]] = None
    review_required: Optional[bool] = None
    since: Optional[datetime] = None
    sla_deadline_before: Optional[datetime] = None
    expires_before: Optional[datetime] = None
    order: SortOrder = "desc"
    order_by_risk: bool = False
    limit: Optional[int] = None
    offset: int = 0


class ShieldStore(ABC):
    """Event and enforcement persistence."""

    async def initialize(self) -> None:
        """Open connections and create tables if needed."""

    async def close(self) -> None:
        """Release connections."""

    async def health_check(self) -> bool:
        return True

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    @abstractmethod
    async def save_event(self, event: ShieldEvent) -> ShieldEvent:
        """Insert or update an event."""

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[ShieldEvent]:
        """Fetch an event by id."""

    @abstractmethod
    async def query_events(self, query: EventQuery) -> list[ShieldEvent]:
        """Events matching the query, ordered by created_at."""

    @abstractmethod
    async def count_events(self, query: EventQuery) -> int:
        """Number of events matching the query (ignores limit/offset)."""

    # -------------------------------------------------------------------------
    # Enforcements
    # -------------------------------------------------------------------------

    @abstractmethod
    async def save_enforcement(self, enforcement: ShieldEnforcement) -> ShieldEnforcement:
        """Insert or update an enforcement."""

    @abstractmethod
    async def get_enforcement(self, enforcement_id: str) -> Optional[ShieldEnforcement]:
        """Fetch an enforcement by id."""

    @abstractmethod
    async def query_enforcements(self, query: EnforcementQuery) -> list[ShieldEnforcement]:
        """
        Enforcements matching the query.

        Ordered by created_at, or by risk_score desc then created_at desc
        when `order_by_risk` is set.
        """

    @abstractmethod
    async def count_enforcements(self, query: EnforcementQuery) -> int:
        """Number of enforcements matching the query (ignores limit/offset)."""

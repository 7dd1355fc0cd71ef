"""
In-Memory Shield Store

Process-local store used by tests and by STORAGE_BACKEND=memory for
local development. Records are deep-copied on the way in and out so
callers never share mutable state with the store.
"""

import asyncio
from typing import Optional

from ..schemas import ShieldEnforcement, ShieldEvent
from .base import EnforcementQuery, EventQuery, ShieldStore


class InMemoryShieldStore(ShieldStore):
    """Dictionary-backed ShieldStore."""

    def __init__(self):
        self._events: dict[str, ShieldEvent] = {}
        self._enforcements: dict[str, ShieldEnforcement] = {}
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def save_event(self, event: ShieldEvent) -> ShieldEvent:
        async with self._lock:
            self._events[event.id] = event.model_copy(deep=True)
        return event

    async def get_event(self, event_id: str) -> Optional[ShieldEvent]:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    def _match_event(self, event: ShieldEvent, query: EventQuery) -> bool:
        if query.savvy_user_id is not None and event.savvy_user_id != query.savvy_user_id:
            return False
        if query.app is not None and event.app != query.app:
            return False
        if query.event_types is not None and event.event_type not in query.event_types:
            return False
        if query.exclude_event_types and event.event_type in query.exclude_event_types:
            return False
        if query.since is not None and event.created_at < query.since:
            return False
        if query.until is not None and event.created_at > query.until:
            return False
        if query.min_risk_score is not None:
            if event.risk_score is None or event.risk_score < query.min_risk_score:
                return False
        if query.investigation_status is not None and event.investigation_status != query.investigation_status:
            return False
        if query.context_key is not None and event.context.get(query.context_key) is None:
            return False
        return True

    def _filter_events(self, query: EventQuery) -> list[ShieldEvent]:
        matched = [e for e in self._events.values() if self._match_event(e, query)]
        matched.sort(key=lambda e: e.created_at, reverse=query.order == "desc")
        return matched

    async def query_events(self, query: EventQuery) -> list[ShieldEvent]:
        matched = self._filter_events(query)
        end = query.offset + query.limit if query.limit is not None else None
        return [e.model_copy(deep=True) for e in matched[query.offset:end]]

    async def count_events(self, query: EventQuery) -> int:
        return len(self._filter_events(query))

    # -------------------------------------------------------------------------
    # Enforcements
    # -------------------------------------------------------------------------

    async def save_enforcement(self, enforcement: ShieldEnforcement) -> ShieldEnforcement:
        async with self._lock:
            self._enforcements[enforcement.id] = enforcement.model_copy(deep=True)
        return enforcement

    async def get_enforcement(self, enforcement_id: str) -> Optional[ShieldEnforcement]:
        enforcement = self._enforcements.get(enforcement_id)
        return enforcement.model_copy(deep=True) if enforcement else None

    def _match_enforcement(self, enf: ShieldEnforcement, query: EnforcementQuery) -> bool:
        if query.savvy_user_id is not None and enf.savvy_user_id != query.savvy_user_id:
            return False
        if query.app is not None and enf.app != query.app:
            return False
        if query.decisions is not None and enf.decision not in query.decisions:
            return False
        if query.statuses is not None and enf.status not in query.statuses:
            return False
        if query.review_statuses is not None and enf.human_review.status not in query.review_statuses:
            return False
        if query.review_required is not None and enf.human_review.required != query.review_required:
            return False
        if query.since is not None and enf.created_at < query.since:
            return False
        if query.sla_deadline_before is not None:
            deadline = enf.human_review.sla_deadline
            if deadline is None or deadline >= query.sla_deadline_before:
                return False
        if query.expires_before is not None:
            if enf.expires_at is None or enf.expires_at > query.expires_before:
                return False
        return True

    def _filter_enforcements(self, query: EnforcementQuery) -> list[ShieldEnforcement]:
        matched = [e for e in self._enforcements.values() if self._match_enforcement(e, query)]
        if query.order_by_risk:
            # Stable sorts: secondary key first
            matched.sort(key=lambda e: e.created_at, reverse=True)
            matched.sort(key=lambda e: e.risk_score, reverse=True)
        else:
            matched.sort(key=lambda e: e.created_at, reverse=query.order == "desc")
        return matched

    async def query_enforcements(self, query: EnforcementQuery) -> list[ShieldEnforcement]:
        matched = self._filter_enforcements(query)
        end = query.offset + query.limit if query.limit is not None else None
        return [e.model_copy(deep=True) for e in matched[query.offset:end]]

    async def count_enforcements(self, query: EnforcementQuery) -> int:
        return len(self._filter_enforcements(query))

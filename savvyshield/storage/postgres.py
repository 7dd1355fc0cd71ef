"""
PostgreSQL Shield Store

Persists shield events and enforcements in two tables. Each row keeps
the full record as a JSONB document plus the scalar columns that
queries filter and sort on.

Persistence errors are logged, counted and re-raised: the route layer
turns them into 500s.
"""

import json
import logging
import time
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from ..config import settings
from ..metrics import metrics
from ..schemas import ShieldEnforcement, ShieldEvent
from .base import EnforcementQuery, EventQuery, ShieldStore

logger = logging.getLogger("savvyshield.storage")


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS shield_events (
        id TEXT PRIMARY KEY,
        savvy_user_id TEXT NOT NULL,
        app TEXT NOT NULL,
        level TEXT NOT NULL,
        event_type TEXT NOT NULL,
        risk_score DOUBLE PRECISION,
        investigation_status TEXT NOT NULL,
        case_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        document JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_shield_events_user_created ON shield_events (savvy_user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_shield_events_app_type_created ON shield_events (app, event_type, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_shield_events_risk_created ON shield_events (risk_score DESC, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_shield_events_status ON shield_events (investigation_status)",
    "CREATE INDEX IF NOT EXISTS idx_shield_events_case ON shield_events (case_id)",
    """
    CREATE TABLE IF NOT EXISTS shield_enforcements (
        id TEXT PRIMARY KEY,
        savvy_user_id TEXT NOT NULL,
        app TEXT NOT NULL,
        level TEXT NOT NULL,
        decision TEXT NOT NULL,
        status TEXT NOT NULL,
        risk_score DOUBLE PRECISION NOT NULL,
        review_required BOOLEAN NOT NULL,
        review_status TEXT NOT NULL,
        sla_deadline TIMESTAMPTZ,
        expires_at TIMESTAMPTZ,
        case_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        document JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_shield_enf_user_created ON shield_enforcements (savvy_user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_shield_enf_app_decision_created ON shield_enforcements (app, decision, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_shield_enf_risk_created ON shield_enforcements (risk_score DESC, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_shield_enf_status ON shield_enforcements (status)",
    "CREATE INDEX IF NOT EXISTS idx_shield_enf_review ON shield_enforcements (review_status, sla_deadline)",
    "CREATE INDEX IF NOT EXISTS idx_shield_enf_case ON shield_enforcements (case_id)",
)


def _load_document(value: Any) -> dict:
    return value if isinstance(value, dict) else json.loads(value)


def _build_event_where(query: EventQuery) -> tuple[str, dict[str, Any]]:
    clauses: list[str] = []
    params: dict[str, Any] = {}

    if query.savvy_user_id is not None:
        clauses.append("savvy_user_id = :savvy_user_id")
        params["savvy_user_id"] = query.savvy_user_id
    if query.app is not None:
        clauses.append("app = :app")
        params["app"] = query.app
    if query.event_types is not None:
        clauses.append("event_type = ANY(:event_types)")
        params["event_types"] = [t.value for t in query.event_types]
    if query.exclude_event_types:
        clauses.append("event_type <> ALL(:exclude_event_types)")
        params["exclude_event_types"] = [t.value for t in query.exclude_event_types]
    if query.since is not None:
        clauses.append("created_at >= :since")
        params["since"] = query.since
    if query.until is not None:
        clauses.append("created_at <= :until")
        params["until"] = query.until
    if query.min_risk_score is not None:
        clauses.append("risk_score >= :min_risk_score")
        params["min_risk_score"] = query.min_risk_score
    if query.investigation_status is not None:
        clauses.append("investigation_status = :investigation_status")
        params["investigation_status"] = query.investigation_status.value
    if query.context_key is not None:
        clauses.append("document -> 'context' ->> :context_key IS NOT NULL")
        params["context_key"] = query.context_key

    where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
    return where, params


def _build_enforcement_where(query: EnforcementQuery) -> tuple[str, dict[str, Any]]:
    clauses: list[str] = []
    params: dict[str, Any] = {}

    if query.savvy_user_id is not None:
        clauses.append("savvy_user_id = :savvy_user_id")
        params["savvy_user_id"] = query.savvy_user_id
    if query.app is not None:
        clauses.append("app = :app")
        params["app"] = query.app
    if query.decisions is not None:
        clauses.append("decision = ANY(:decisions)")
        params["decisions"] = [d.value for d in query.decisions]
    if query.statuses is not None:
        clauses.append("status = ANY(:statuses)")
        params["statuses"] = [s.value for s in query.statuses]
    if query.review_statuses is not None:
        clauses.append("review_status = ANY(:review_statuses)")
        params["review_statuses"] = [s.value for s in query.review_statuses]
    if query.review_required is not None:
        clauses.append("review_required = :review_required")
        params["review_required"] = query.review_required
    if query.since is not None:
        clauses.append("created_at >= :since")
        params["since"] = query.since
    if query.sla_deadline_before is not None:
        clauses.append("sla_deadline < :sla_deadline_before")
        params["sla_deadline_before"] = query.sla_deadline_before
    if query.expires_before is not None:
        clauses.append("expires_at <= :expires_before")
        params["expires_before"] = query.expires_before

    where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
    return where, params


def _paging(limit: Optional[int], offset: int, params: dict[str, Any]) -> str:
    sql = ""
    if limit is not None:
        sql += " LIMIT :limit"
        params["limit"] = limit
    if offset:
        sql += " OFFSET :offset"
        params["offset"] = offset
    return sql


class PostgresShieldStore(ShieldStore):
    """
    ShieldStore backed by PostgreSQL via SQLAlchemy's async engine.
    """

    def __init__(self, database_url: str):
        """
        Initialize store.

        Args:
            database_url: PostgreSQL connection URL (postgresql+asyncpg://...)
        """
        self.database_url = database_url
        self.engine = None
        self.session_factory = None

    async def initialize(self) -> None:
        """Create the engine and ensure tables exist."""
        self.engine = create_async_engine(
            self.database_url,
            echo=settings.app_debug,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        async with self.session_factory() as session:
            for statement in SCHEMA_STATEMENTS:
                await session.execute(text(statement))
            await session.commit()
        logger.info("Shield tables ready")

    async def close(self) -> None:
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()

    async def health_check(self) -> bool:
        """Check database connectivity."""
        if not self.session_factory:
            raise RuntimeError("Database not initialized")

        async with self.session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1

    async def _execute(self, statement: str, params: dict[str, Any], *, commit: bool = False):
        if not self.session_factory:
            raise RuntimeError("Database not initialized")

        started_at = time.perf_counter()
        try:
            async with self.session_factory() as session:
                result = await session.execute(text(statement), params)
                if commit:
                    await session.commit()
                    return None
                return result.mappings().all()
        except Exception as e:
            logger.error("Shield store query failed: %s", e)
            metrics.errors_total.labels(error_type="StorageError").inc()
            raise
        finally:
            metrics.postgres_latency.observe((time.perf_counter() - started_at) * 1000)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def save_event(self, event: ShieldEvent) -> ShieldEvent:
        await self._execute(
            """
            INSERT INTO shield_events (
                id,
                savvy_user_id,
                app,
                level,
                event_type,
                risk_score,
                investigation_status,
                case_id,
                created_at,
                document
            ) VALUES (
                :id,
                :savvy_user_id,
                :app,
                :level,
                :event_type,
                :risk_score,
                :investigation_status,
                :case_id,
                :created_at,
                CAST(:document AS jsonb)
            )
            ON CONFLICT (id) DO UPDATE SET
                risk_score = EXCLUDED.risk_score,
                investigation_status = EXCLUDED.investigation_status,
                case_id = EXCLUDED.case_id,
                document = EXCLUDED.document
            """,
            {
                "id": event.id,
                "savvy_user_id": event.savvy_user_id,
                "app": event.app,
                "level": event.level,
                "event_type": event.event_type.value,
                "risk_score": event.risk_score,
                "investigation_status": event.investigation_status.value,
                "case_id": event.case_id,
                "created_at": event.created_at,
                "document": event.model_dump_json(),
            },
            commit=True,
        )
        return event

    async def get_event(self, event_id: str) -> Optional[ShieldEvent]:
        rows = await self._execute(
            "SELECT document FROM shield_events WHERE id = :id",
            {"id": event_id},
        )
        if not rows:
            return None
        return ShieldEvent.model_validate(_load_document(rows[0]["document"]))

    async def query_events(self, query: EventQuery) -> list[ShieldEvent]:
        where, params = _build_event_where(query)
        direction = "ASC" if query.order == "asc" else "DESC"
        sql = f"SELECT document FROM shield_events {where} ORDER BY created_at {direction}"
        sql += _paging(query.limit, query.offset, params)
        rows = await self._execute(sql, params)
        return [ShieldEvent.model_validate(_load_document(row["document"])) for row in rows]

    async def count_events(self, query: EventQuery) -> int:
        where, params = _build_event_where(query)
        rows = await self._execute(f"SELECT COUNT(*) AS n FROM shield_events {where}", params)
        return int(rows[0]["n"]) if rows else 0

    # -------------------------------------------------------------------------
    # Enforcements
    # -------------------------------------------------------------------------

    async def save_enforcement(self, enforcement: ShieldEnforcement) -> ShieldEnforcement:
        await self._execute(
            """
            INSERT INTO shield_enforcements (
                id,
                savvy_user_id,
                app,
                level,
                decision,
                status,
                risk_score,
                review_required,
                review_status,
                sla_deadline,
                expires_at,
                case_id,
                created_at,
                updated_at,
                document
            ) VALUES (
                :id,
                :savvy_user_id,
                :app,
                :level,
                :decision,
                :status,
                :risk_score,
                :review_required,
                :review_status,
                :sla_deadline,
                :expires_at,
                :case_id,
                :created_at,
                :updated_at,
                CAST(:document AS jsonb)
            )
            ON CONFLICT (id) DO UPDATE SET
                status = EXCLUDED.status,
                review_required = EXCLUDED.review_required,
                review_status = EXCLUDED.review_status,
                sla_deadline = EXCLUDED.sla_deadline,
                expires_at = EXCLUDED.expires_at,
                updated_at = EXCLUDED.updated_at,
                document = EXCLUDED.document
            """,
            {
                "id": enforcement.id,
                "savvy_user_id": enforcement.savvy_user_id,
                "app": enforcement.app,
                "level": enforcement.level,
                "decision": enforcement.decision.value,
                "status": enforcement.status.value,
                "risk_score": enforcement.risk_score,
                "review_required": enforcement.human_review.required,
                "review_status": enforcement.human_review.status.value,
                "sla_deadline": enforcement.human_review.sla_deadline,
                "expires_at": enforcement.expires_at,
                "case_id": enforcement.case_id,
                "created_at": enforcement.created_at,
                "updated_at": enforcement.updated_at,
                "document": enforcement.model_dump_json(),
            },
            commit=True,
        )
        return enforcement

    async def get_enforcement(self, enforcement_id: str) -> Optional[ShieldEnforcement]:
        rows = await self._execute(
            "SELECT document FROM shield_enforcements WHERE id = :id",
            {"id": enforcement_id},
        )
        if not rows:
            return None
        return ShieldEnforcement.model_validate(_load_document(rows[0]["document"]))

    async def query_enforcements(self, query: EnforcementQuery) -> list[ShieldEnforcement]:
        where, params = _build_enforcement_where(query)
        if query.order_by_risk:
            order = "ORDER BY risk_score DESC, created_at DESC"
        else:
            order = f"ORDER BY created_at {'ASC' if query.order == 'asc' else 'DESC'}"
        sql = f"SELECT document FROM shield_enforcements {where} {order}"
        sql += _paging(query.limit, query.offset, params)
        rows = await self._execute(sql, params)
        return [ShieldEnforcement.model_validate(_load_document(row["document"])) for row in rows]

    async def count_enforcements(self, query: EnforcementQuery) -> int:
        where, params = _build_enforcement_where(query)
        rows = await self._execute(f"SELECT COUNT(*) AS n FROM shield_enforcements {where}", params)
        return int(rows[0]["n"]) if rows else 0

"""
Pytest Configuration and Fixtures - SavvyShield

Tests run against the in-memory store; webhook deliveries go through
httpx.MockTransport or are looped back into the app's own receiver.
"""

import os

# Must be set before the settings singleton is created
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["PROACTIVE_ENABLED"] = "false"

from datetime import datetime, timedelta, UTC
from typing import AsyncGenerator, Callable
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from savvyshield.api import main
from savvyshield.api.main import app
from savvyshield.policy import DEFAULT_DECISION_TABLE, DecisionEngine
from savvyshield.schemas import EventType, ShieldEvent
from savvyshield.storage import InMemoryShieldStore
from savvyshield.webhooks import WebhookDispatcher

TEST_SECRET = "test-webhook-secret"


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: unit tests (no infrastructure)")


@pytest.fixture
def memory_store() -> InMemoryShieldStore:
    return InMemoryShieldStore()


@pytest.fixture
def webhook_requests() -> list[httpx.Request]:
    """Requests captured by the mock webhook endpoint."""
    return []


@pytest.fixture
def webhook_client(webhook_requests: list[httpx.Request]) -> httpx.AsyncClient:
    """HTTP client whose every POST succeeds and is recorded."""

    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(200, json={"success": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def dispatcher(memory_store, webhook_client) -> WebhookDispatcher:
    return WebhookDispatcher(
        memory_store,
        base_url="http://apps.test",
        secret=TEST_SECRET,
        client=webhook_client,
    )


@pytest.fixture
def engine(memory_store, dispatcher) -> DecisionEngine:
    return DecisionEngine(memory_store, dispatcher=dispatcher, table=DEFAULT_DECISION_TABLE)


@pytest.fixture
def make_event() -> Callable[..., ShieldEvent]:
    """
    Factory for shield events.

    `minutes_ago` back-dates created_at so detectors see history;
    `created_at` pins it exactly.
    """

    def _make(
        savvy_user_id: str = "user_1",
        app: str = "final10",
        level: str = "bronze",
        event_type: EventType = EventType.USER_REPORT,
        context: dict | None = None,
        minutes_ago: float = 0,
        created_at: datetime | None = None,
        **kwargs,
    ) -> ShieldEvent:
        return ShieldEvent(
            savvy_user_id=savvy_user_id,
            app=app,
            level=level,
            event_type=event_type,
            context=context or {},
            created_at=created_at or datetime.now(UTC) - timedelta(minutes=minutes_ago),
            **kwargs,
        )

    return _make


@pytest.fixture
def unique_user() -> str:
    return f"user_{uuid4().hex[:12]}"


@pytest_asyncio.fixture
async def api_client() -> AsyncGenerator[AsyncClient, None]:
    """
    Get async HTTP client for API tests.

    Uses lifespan context manager to properly initialize app resources.
    Webhooks are delivered back into this app's own receiver.
    """
    from savvyshield.api.main import lifespan

    transport = ASGITransport(app=app)
    loopback = AsyncClient(transport=transport)

    async with lifespan(app):
        await main.dispatcher.use_client(loopback)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client

    await loopback.aclose()


@pytest.fixture
def ingest_payload(unique_user: str) -> dict:
    return {
        "type": "user_report",
        "savvy_user_id": unique_user,
        "app": "final10",
        "level": "bronze",
        "context": {"device_id": f"dev_{uuid4().hex[:8]}"},
    }

"""
Webhook Tests

Signing and verification, dispatcher delivery bookkeeping, and the
consuming-app receiver.
"""

import json
from datetime import datetime, timedelta, UTC

import httpx
import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import AsyncClient, ASGITransport

from savvyshield.errors import WebhookVerificationError
from savvyshield.schemas import (
    EnforcementAction,
    Restrictions,
    ShieldEnforcement,
)
from savvyshield.webhooks import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    EnforcementWebhook,
    RestrictionRegistry,
    WebhookDispatcher,
    build_headers,
    build_payload,
    create_receiver_router,
    encode_payload,
    require_feature,
    sign_payload,
    verify_webhook,
)

TEST_SECRET = "test-webhook-secret"


def _enforcement(**overrides) -> ShieldEnforcement:
    fields = {
        "savvy_user_id": "user_1",
        "app": "final10",
        "level": "bronze",
        "risk_score": 0.95,
        "decision": EnforcementAction.AUTO_BLOCK,
        "decision_reason": "Critical risk detected (0.950) - immediate action - Low tier immediate block",
        "features_affected": ["all"],
        "restrictions": Restrictions.block_all(),
    }
    fields.update(overrides)
    return ShieldEnforcement(**fields)


class TestSigning:

    def test_valid_signature(self):
        body = encode_payload({"savvy_user_id": "u1", "action": "auto_block"})
        headers = build_headers(body, TEST_SECRET)

        verify_webhook(body, headers[SIGNATURE_HEADER], headers[TIMESTAMP_HEADER], TEST_SECRET)

    def test_signature_is_hex_hmac(self):
        signature = sign_payload(b"{}", TEST_SECRET)
        assert len(signature) == 64
        int(signature, 16)

    def test_tampered_body_rejected(self):
        body = encode_payload({"savvy_user_id": "u1", "action": "auto_block"})
        headers = build_headers(body, TEST_SECRET)
        tampered = body.replace(b"auto_block", b"observe")

        with pytest.raises(WebhookVerificationError):
            verify_webhook(tampered, headers[SIGNATURE_HEADER], headers[TIMESTAMP_HEADER], TEST_SECRET)

    def test_wrong_secret_rejected(self):
        body = encode_payload({"a": 1})
        headers = build_headers(body, "other-secret")

        with pytest.raises(WebhookVerificationError):
            verify_webhook(body, headers[SIGNATURE_HEADER], headers[TIMESTAMP_HEADER], TEST_SECRET)

    @pytest.mark.parametrize("skew_ms", [-301_000, 301_000])
    def test_timestamp_outside_window_rejected(self, skew_ms):
        body = encode_payload({"a": 1})
        now = 1_700_000_000_000
        headers = build_headers(body, TEST_SECRET, timestamp_ms=now + skew_ms)

        with pytest.raises(WebhookVerificationError):
            verify_webhook(
                body, headers[SIGNATURE_HEADER], headers[TIMESTAMP_HEADER], TEST_SECRET,
                current_ms=now,
            )

    def test_timestamp_at_window_edge_accepted(self):
        body = encode_payload({"a": 1})
        now = 1_700_000_000_000
        headers = build_headers(body, TEST_SECRET, timestamp_ms=now - 300_000)

        verify_webhook(
            body, headers[SIGNATURE_HEADER], headers[TIMESTAMP_HEADER], TEST_SECRET,
            current_ms=now,
        )

    @pytest.mark.parametrize("signature,timestamp", [(None, "1"), ("abc", None), ("abc", "yesterday")])
    def test_missing_or_malformed_headers(self, signature, timestamp):
        with pytest.raises(WebhookVerificationError):
            verify_webhook(b"{}", signature, timestamp, TEST_SECRET)


class TestDispatcher:

    def test_payload_shape(self):
        enforcement = _enforcement(case_id="case_1")
        payload = build_payload(enforcement)

        assert payload == {
            "savvy_user_id": "user_1",
            "action": "auto_block",
            "features": ["all"],
            "duration_hours": None,
            "reason": enforcement.decision_reason,
            "restrictions": Restrictions.block_all().model_dump(),
            "risk_score": 0.95,
            "enforcement_id": enforcement.id,
            "case_id": "case_1",
        }

    @pytest.mark.asyncio
    async def test_delivery_signed_and_recorded(self, memory_store, dispatcher, webhook_requests):
        enforcement = _enforcement()
        await memory_store.save_enforcement(enforcement)

        status = await dispatcher.deliver(enforcement)

        assert status.sent is True
        assert status.response_status == 200
        request = webhook_requests[0]
        assert str(request.url) == "http://apps.test/final10/shield/enforce"
        verify_webhook(
            request.content,
            request.headers[SIGNATURE_HEADER],
            request.headers[TIMESTAMP_HEADER],
            TEST_SECRET,
        )
        stored = await memory_store.get_enforcement(enforcement.id)
        assert stored.webhook_status.sent is True
        assert stored.audit_trail[-1].action == "webhook_sent"

    @pytest.mark.asyncio
    async def test_non_2xx_recorded_as_failure(self, memory_store):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="down"))
        )
        dispatcher = WebhookDispatcher(memory_store, "http://apps.test", TEST_SECRET, client=client)
        enforcement = _enforcement()
        await memory_store.save_enforcement(enforcement)

        await dispatcher.deliver(enforcement)
        await dispatcher.deliver(enforcement)

        stored = await memory_store.get_enforcement(enforcement.id)
        assert stored.webhook_status.sent is False
        assert stored.webhook_status.response_status == 503
        assert stored.webhook_status.response_body == "down"
        assert stored.webhook_status.retry_count == 2

    @pytest.mark.asyncio
    async def test_network_error_never_raises(self, memory_store):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        dispatcher = WebhookDispatcher(memory_store, "http://apps.test", TEST_SECRET, client=client)
        enforcement = _enforcement()
        await memory_store.save_enforcement(enforcement)

        status = await dispatcher.deliver(enforcement)

        assert status.sent is False
        assert status.response_status == 0
        assert status.retry_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_client_error_recorded(self, memory_store):
        def broken(request: httpx.Request) -> httpx.Response:
            raise ValueError("bad header value")

        client = httpx.AsyncClient(transport=httpx.MockTransport(broken))
        dispatcher = WebhookDispatcher(memory_store, "http://apps.test", TEST_SECRET, client=client)
        enforcement = _enforcement()
        await memory_store.save_enforcement(enforcement)

        status = await dispatcher.deliver(enforcement)

        assert status.sent is False
        assert status.response_body == "bad header value"
        stored = await memory_store.get_enforcement(enforcement.id)
        assert stored.webhook_status.retry_count == 1

    @pytest.mark.asyncio
    async def test_queue_processed_inline(self, memory_store, dispatcher, webhook_requests):
        first, second = _enforcement(), _enforcement(savvy_user_id="user_2")
        for enforcement in (first, second):
            await memory_store.save_enforcement(enforcement)
            assert await dispatcher.submit(enforcement) is True

        assert webhook_requests == []
        assert await dispatcher.process_pending() == 2
        assert len(webhook_requests) == 2

    @pytest.mark.asyncio
    async def test_full_queue_records_failure(self, memory_store, webhook_client):
        dispatcher = WebhookDispatcher(
            memory_store, "http://apps.test", TEST_SECRET, queue_size=1, client=webhook_client
        )
        queued, dropped = _enforcement(), _enforcement(savvy_user_id="user_2")
        await memory_store.save_enforcement(queued)
        await memory_store.save_enforcement(dropped)

        assert await dispatcher.submit(queued) is True
        assert await dispatcher.submit(dropped) is False

        stored = await memory_store.get_enforcement(dropped.id)
        assert stored.webhook_status.sent is False
        assert stored.webhook_status.response_body == "webhook queue full"

    @pytest.mark.asyncio
    async def test_worker_delivers_submitted(self, memory_store, dispatcher, webhook_requests):
        enforcement = _enforcement()
        await memory_store.save_enforcement(enforcement)

        await dispatcher.start()
        try:
            await dispatcher.submit(enforcement)
            await dispatcher.queue.join()
        finally:
            await dispatcher.stop()

        assert len(webhook_requests) == 1
        assert (await memory_store.get_enforcement(enforcement.id)).webhook_status.sent is True


class TestRestrictionRegistry:

    @pytest.fixture
    def clock(self):
        class Clock:
            now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

            def __call__(self):
                return self.now

        return Clock()

    @pytest.fixture
    def registry(self, clock) -> RestrictionRegistry:
        return RestrictionRegistry(clock=clock)

    def test_no_state_allows_everything(self, registry):
        assert registry.check_feature_access("user_1", "betting").allowed

    def test_temp_suspend_lapses(self, registry, clock):
        registry.apply(EnforcementWebhook(savvy_user_id="user_1", action="temp_suspend", duration_hours=12))

        decision = registry.check_feature_access("user_1", "chat")
        assert not decision.allowed
        assert decision.until == clock.now + timedelta(hours=12)

        clock.now += timedelta(hours=13)
        assert registry.check_feature_access("user_1", "chat").allowed

    def test_temp_suspend_defaults_to_24h(self, registry, clock):
        registry.apply(EnforcementWebhook(savvy_user_id="user_1", action="temp_suspend"))
        assert registry.check_feature_access("user_1", "chat").until == clock.now + timedelta(hours=24)

    def test_auto_block_without_duration_is_indefinite(self, registry, clock):
        registry.apply(EnforcementWebhook(savvy_user_id="user_1", action="auto_block"))

        clock.now += timedelta(days=365)
        decision = registry.check_feature_access("user_1", "anything")
        assert not decision.allowed
        assert decision.until is None
        assert registry.status("user_1")["sessions_revoked_at"] is not None

    def test_soft_restrict_only_named_features(self, registry):
        registry.apply(
            EnforcementWebhook(
                savvy_user_id="user_1",
                action="soft_restrict",
                features=["high_value_betting"],
                restrictions=Restrictions(custom=["high_value_betting", "bulk_operations"]),
            )
        )

        assert not registry.check_feature_access("user_1", "high_value_betting").allowed
        assert not registry.check_feature_access("user_1", "bulk_operations").allowed
        assert registry.check_feature_access("user_1", "chat").allowed

    def test_suspend_features_honours_categories(self, registry):
        registry.apply(
            EnforcementWebhook(
                savvy_user_id="user_1",
                action="suspend_features",
                features=["high_risk_features"],
                restrictions=Restrictions(betting=True),
            )
        )

        assert not registry.check_feature_access("user_1", "betting").allowed
        assert not registry.check_feature_access("user_1", "high_risk_features").allowed
        assert registry.check_feature_access("user_1", "streaming").allowed

    def test_unknown_action_not_applied(self, registry):
        assert registry.apply(EnforcementWebhook(savvy_user_id="user_1", action="shadow_ban")) is False
        assert registry.check_feature_access("user_1", "chat").allowed

    def test_observe_is_a_no_op(self, registry):
        assert registry.apply(EnforcementWebhook(savvy_user_id="user_1", action="observe")) is True
        assert registry.status("user_1")["active_enforcements"] == []


class TestReceiverRoutes:

    @pytest.fixture
    def registry(self) -> RestrictionRegistry:
        return RestrictionRegistry()

    @pytest.fixture
    def receiver_app(self, registry) -> FastAPI:
        app = FastAPI()
        app.include_router(create_receiver_router(registry, TEST_SECRET, app_name="final10"))

        @app.post("/final10/bets", dependencies=[Depends(require_feature(registry, "betting"))])
        async def place_bet():
            return {"placed": True}

        return app

    @pytest_asyncio.fixture
    async def client(self, receiver_app):
        async with AsyncClient(transport=ASGITransport(app=receiver_app), base_url="http://test") as client:
            yield client

    @pytest.mark.asyncio
    async def test_signed_enforcement_applied(self, client, registry):
        enforcement = _enforcement(savvy_user_id="user_9")
        body = encode_payload(build_payload(enforcement))

        response = await client.post(
            "/final10/shield/enforce", content=body, headers=build_headers(body, TEST_SECRET)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["applied"] is True
        assert data["enforcement_id"] == enforcement.id
        assert not registry.check_feature_access("user_9", "betting").allowed

        bet = await client.post("/final10/bets", headers={"X-Savvy-User-Id": "user_9"})
        assert bet.status_code == 403

        other = await client.post("/final10/bets", headers={"X-Savvy-User-Id": "user_10"})
        assert other.status_code == 200

    @pytest.mark.asyncio
    async def test_bad_signature_401(self, client, registry):
        body = encode_payload(build_payload(_enforcement(savvy_user_id="user_9")))
        headers = build_headers(body, "wrong-secret")

        response = await client.post("/final10/shield/enforce", content=body, headers=headers)

        assert response.status_code == 401
        assert registry.check_feature_access("user_9", "betting").allowed

    @pytest.mark.asyncio
    async def test_invalid_payload_400(self, client):
        body = json.dumps({"action": "auto_block"}).encode()

        response = await client.post(
            "/final10/shield/enforce", content=body, headers=build_headers(body, TEST_SECRET)
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_other_app_404(self, client):
        body = encode_payload(build_payload(_enforcement()))

        response = await client.post(
            "/gamesavvy/shield/enforce", content=body, headers=build_headers(body, TEST_SECRET)
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_status_route(self, client, registry):
        registry.apply(EnforcementWebhook(savvy_user_id="user_9", action="auto_block"))

        response = await client.get("/final10/shield/status/user_9")

        assert response.status_code == 200
        active = response.json()["shield_status"]["active_enforcements"]
        assert active[0]["type"] == "block"

"""
Webhook Dispatcher

Pushes enforcement decisions to the consuming app at
    POST {base_url}/{app}/shield/enforce

The decision path only enqueues an enforcement id; a worker task owns
the outbound HTTP. Delivery failures (network errors, non-2xx) are
recorded on the enforcement and never raised.
"""

import asyncio
import logging
import time
from typing import Any, Optional

import httpx

from ..metrics import metrics
from ..schemas import ShieldEnforcement, WebhookStatus
from ..storage import ShieldStore
from .signing import build_headers, encode_payload

logger = logging.getLogger("savvyshield.webhooks")


def build_payload(enforcement: ShieldEnforcement) -> dict[str, Any]:
    """Wire payload for an enforcement webhook."""
    return {
        "savvy_user_id": enforcement.savvy_user_id,
        "action": enforcement.decision.value,
        "features": list(enforcement.features_affected),
        "duration_hours": enforcement.duration_hours,
        "reason": enforcement.decision_reason,
        "restrictions": enforcement.restrictions.model_dump(),
        "risk_score": enforcement.risk_score,
        "enforcement_id": enforcement.id,
        "case_id": enforcement.case_id,
    }


class WebhookDispatcher:
    """
    Queue-backed enforcement webhook sender.

    Usage:
        dispatcher = WebhookDispatcher(store, base_url, secret)
        await dispatcher.start()
        await dispatcher.submit(enforcement)
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        store: ShieldStore,
        base_url: str,
        secret: str,
        timeout_seconds: float = 10.0,
        queue_size: int = 1000,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            store: Store holding the enforcements to deliver
            base_url: Webhook base URL (no trailing slash needed)
            secret: Shared HMAC secret
            timeout_seconds: Timeout for a single POST
            queue_size: Max enforcements waiting for delivery
            client: Pre-built HTTP client (tests inject a MockTransport client)
        """
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout_seconds = timeout_seconds
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self.client = client
        self._owns_client = client is None
        self._worker: Optional[asyncio.Task] = None

    async def use_client(self, client: httpx.AsyncClient) -> None:
        """Send through a caller-owned client from now on."""
        if self._owns_client and self.client is not None:
            await self.client.aclose()
        self.client = client
        self._owns_client = False

    def endpoint_for(self, app: str) -> str:
        return f"{self.base_url}/{app}/shield/enforce"

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        """Start the delivery worker."""
        if self.is_running:
            return
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        self._worker = asyncio.create_task(self._run(), name="shield-webhook-worker")
        logger.info("Webhook dispatcher started (base_url=%s)", self.base_url)

    async def stop(self) -> None:
        """Stop the worker. Queued enforcements stay queued."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._owns_client and self.client is not None:
            await self.client.aclose()
            self.client = None
        logger.info("Webhook dispatcher stopped")

    async def submit(self, enforcement: ShieldEnforcement) -> bool:
        """
        Enqueue an enforcement for delivery.

        Returns:
            False when the queue is full; the enforcement is then
            recorded as a failed delivery.
        """
        try:
            self.queue.put_nowait(enforcement.id)
        except asyncio.QueueFull:
            logger.warning("Webhook queue full, dropping delivery of %s", enforcement.id)
            metrics.webhook_deliveries.labels(app=enforcement.app, outcome="dropped").inc()
            await self._record(enforcement.id, sent=False, response_status=0, response_body="webhook queue full")
            return False
        metrics.webhook_queue_depth.set(self.queue.qsize())
        return True

    async def process_pending(self) -> int:
        """Deliver everything currently queued, inline. Returns the number delivered."""
        processed = 0
        while True:
            try:
                enforcement_id = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            try:
                await self._deliver_by_id(enforcement_id)
                processed += 1
            finally:
                self.queue.task_done()
                metrics.webhook_queue_depth.set(self.queue.qsize())
        return processed

    async def _run(self) -> None:
        while True:
            enforcement_id = await self.queue.get()
            try:
                await self._deliver_by_id(enforcement_id)
            except Exception:
                logger.exception("Webhook delivery of %s crashed", enforcement_id)
                metrics.errors_total.labels(error_type="WebhookWorkerError").inc()
            finally:
                self.queue.task_done()
                metrics.webhook_queue_depth.set(self.queue.qsize())

    async def _deliver_by_id(self, enforcement_id: str) -> Optional[WebhookStatus]:
        enforcement = await self.store.get_enforcement(enforcement_id)
        if enforcement is None:
            logger.warning("Enforcement %s vanished before delivery", enforcement_id)
            return None
        return await self.deliver(enforcement)

    async def deliver(self, enforcement: ShieldEnforcement) -> WebhookStatus:
        """
        Sign and POST one enforcement, then record the outcome.

        Never raises for transport or HTTP errors.
        """
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True

        url = self.endpoint_for(enforcement.app)
        body = encode_payload(build_payload(enforcement))
        headers = build_headers(body, self.secret)

        started_at = time.perf_counter()
        try:
            response = await self.client.post(url, content=body, headers=headers)
            sent = response.is_success
            response_status = response.status_code
            response_body = response.text
        except Exception as e:
            # Any transport or client error is a failed delivery, never raised
            sent = False
            response_status = 0
            response_body = str(e) or e.__class__.__name__
        finally:
            metrics.webhook_latency.observe((time.perf_counter() - started_at) * 1000)

        outcome = "sent" if sent else "failed"
        metrics.webhook_deliveries.labels(app=enforcement.app, outcome=outcome).inc()
        if sent:
            logger.info("Enforcement %s delivered to %s (%d)", enforcement.id, url, response_status)
        else:
            logger.warning(
                "Enforcement %s delivery to %s failed (%s): %s",
                enforcement.id, url, response_status, response_body,
            )

        status = await self._record(enforcement.id, sent, response_status, response_body)
        if status is not None:
            enforcement.webhook_status = status
        return status or enforcement.webhook_status

    async def _record(
        self,
        enforcement_id: str,
        sent: bool,
        response_status: int,
        response_body: Optional[str],
    ) -> Optional[WebhookStatus]:
        # Re-read so review actions taken during the POST are not overwritten
        current = await self.store.get_enforcement(enforcement_id)
        if current is None:
            return None
        current.record_webhook_result(sent, response_status, response_body)
        await self.store.save_enforcement(current)
        return current.webhook_status

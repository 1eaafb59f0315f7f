"""
Webhook notification service for media lifecycle events.

Events: media.uploaded, media.processing, media.ready, media.failed,
media.deleted.

Delivery goes through an outbox table:
- dispatch() only writes one webhook_deliveries row per subscribed webhook
  and never performs HTTP, so callers on the request or job path are never
  slowed down or failed by a subscriber.
- A background task (start()/stop()) polls the outbox and deliver()s due
  rows with bounded concurrency.

Each attempt is signed with HMAC-SHA256 of the exact body using the
webhook's secret. Any failed attempt (non-2xx, timeout, network error)
increments the webhook's failure_count; reaching the disable threshold
clears ``active`` in the same UPDATE. A successful attempt resets
failure_count to zero.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
import sqlalchemy as sa
from databases import Database

from api.common import new_id
from api.database import webhook_deliveries, webhooks
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry
from api.enums import WEBHOOK_EVENT_TYPES, DeliveryStatus
from api.errors import NotFoundError, ValidationError, WebhookDeliveryFailure
from api.models import Webhook, WebhookDelivery
from config import Settings

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"
SECRET_LENGTH = 32
_SECRET_ALPHABET = string.ascii_letters + string.digits

# Deliveries fetched per process_pending() round
DELIVERY_BATCH_SIZE = 50


def generate_webhook_secret() -> str:
    """Generate a signing secret: ``whsec_`` followed by 32 alphanumerics."""
    return SECRET_PREFIX + "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(SECRET_LENGTH))


def generate_signature(payload: str, secret: str) -> str:
    """Generate the hex HMAC-SHA256 signature of a webhook payload."""
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(payload: str, signature: str, secret: str) -> bool:
    """Verify a webhook payload signature in constant time."""
    expected = generate_signature(payload, secret)
    return hmac.compare_digest(expected, signature or "")


def build_payload(event_type: str, data: Dict[str, Any], timestamp: Optional[datetime] = None) -> str:
    """Serialize the delivery body. The stored string is what gets signed and sent."""
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    return json.dumps({"event": event_type, "timestamp": timestamp.isoformat(), "data": data})


# =============================================================================
# Webhook management
# =============================================================================


def _validate_events(events: Iterable[str]) -> List[str]:
    events = list(dict.fromkeys(events))
    if not events:
        raise ValidationError("At least one event is required")
    invalid = [e for e in events if e not in WEBHOOK_EVENT_TYPES]
    if invalid:
        raise ValidationError(f"Invalid event types: {', '.join(invalid)}")
    return events


def _validate_url(url: str) -> str:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise ValidationError("Webhook URL must be an absolute http(s) URL") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValidationError("Webhook URL must be an absolute http(s) URL")
    return url


async def create_webhook(database: Database, owner_id: str, name: str, url: str, events: Iterable[str]) -> Webhook:
    """Register a webhook. The returned object carries the secret; it is shown only once."""
    if not name or not name.strip():
        raise ValidationError("Webhook name is required")
    webhook = Webhook(
        id=new_id(),
        owner_id=owner_id,
        name=name.strip(),
        url=_validate_url(url),
        secret=generate_webhook_secret(),
        events=_validate_events(events),
        active=True,
        failure_count=0,
        created_at=datetime.now(timezone.utc),
    )
    await db_execute_with_retry(database, webhooks.insert().values(**webhook.to_values()))
    logger.info(f"Created webhook {webhook.id} for owner {owner_id} ({', '.join(webhook.events)})")
    return webhook


async def list_webhooks(database: Database, owner_id: Optional[str] = None) -> List[Webhook]:
    query = webhooks.select().order_by(webhooks.c.created_at.desc())
    if owner_id is not None:
        query = query.where(webhooks.c.owner_id == owner_id)
    rows = await fetch_all_with_retry(database, query)
    return [Webhook.from_row(row) for row in rows]


async def get_webhook(database: Database, webhook_id: str, owner_id: Optional[str] = None) -> Webhook:
    query = webhooks.select().where(webhooks.c.id == webhook_id)
    if owner_id is not None:
        query = query.where(webhooks.c.owner_id == owner_id)
    row = await fetch_one_with_retry(database, query)
    if not row:
        raise NotFoundError("Webhook not found")
    return Webhook.from_row(row)


async def update_webhook(
    database: Database,
    webhook_id: str,
    owner_id: Optional[str] = None,
    name: Optional[str] = None,
    url: Optional[str] = None,
    events: Optional[Iterable[str]] = None,
    active: Optional[bool] = None,
) -> Webhook:
    """Update webhook fields. Reactivating resets failure_count."""
    await get_webhook(database, webhook_id, owner_id)

    values: Dict[str, Any] = {}
    if name is not None:
        if not name.strip():
            raise ValidationError("Webhook name is required")
        values["name"] = name.strip()
    if url is not None:
        values["url"] = _validate_url(url)
    if events is not None:
        values["events"] = json.dumps(_validate_events(events))
    if active is not None:
        values["active"] = active
        if active:
            values["failure_count"] = 0

    if values:
        await db_execute_with_retry(database, webhooks.update().where(webhooks.c.id == webhook_id).values(**values))
    return await get_webhook(database, webhook_id, owner_id)


async def set_webhook_active(database: Database, webhook_id: str, active: bool, owner_id: Optional[str] = None) -> Webhook:
    webhook = await update_webhook(database, webhook_id, owner_id, active=active)
    logger.info(f"Webhook {webhook_id} {'enabled' if active else 'disabled'}")
    return webhook


async def delete_webhook(database: Database, webhook_id: str, owner_id: Optional[str] = None) -> None:
    await get_webhook(database, webhook_id, owner_id)
    async with database.transaction():
        await database.execute(webhook_deliveries.delete().where(webhook_deliveries.c.webhook_id == webhook_id))
        await database.execute(webhooks.delete().where(webhooks.c.id == webhook_id))
    logger.info(f"Deleted webhook {webhook_id}")


# =============================================================================
# Dispatcher
# =============================================================================


class WebhookDispatcher:
    """Writes outbox rows for events and delivers them in the background."""

    def __init__(
        self,
        database: Database,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.database = database
        self.timeout = settings.webhook_timeout
        self.disable_threshold = settings.webhook_disable_threshold
        self.max_attempts = settings.webhook_max_attempts
        self.retry_delays = tuple(settings.webhook_retry_delays) or (1.0,)
        self.poll_interval = settings.webhook_poll_interval
        self.max_concurrent = settings.webhook_max_concurrent
        self._http_client = http_client
        self._owns_client = http_client is None
        self._task: Optional[asyncio.Task] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client for connection pooling."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=50, keepalive_expiry=30),
                follow_redirects=False,
            )
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        if self._owns_client:
            self._http_client = None

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    async def dispatch(self, owner_id: str, event_type: str, data: Dict[str, Any]) -> int:
        """
        Queue an event for every active webhook of ``owner_id`` subscribed to it.

        Never raises; returns the number of deliveries queued.
        """
        if event_type not in WEBHOOK_EVENT_TYPES:
            logger.warning(f"Invalid webhook event type: {event_type}")
            return 0

        try:
            rows = await fetch_all_with_retry(
                self.database,
                webhooks.select()
                .where(webhooks.c.owner_id == owner_id)
                .where(webhooks.c.active == sa.true()),
            )
            subscribed = [w for w in (Webhook.from_row(r) for r in rows) if w.subscribes_to(event_type)]
            if not subscribed:
                logger.debug(f"No webhooks subscribed to {event_type} for owner {owner_id}")
                return 0

            now = datetime.now(timezone.utc)
            payload = build_payload(event_type, data, now)
            values = [
                WebhookDelivery(
                    id=new_id(),
                    webhook_id=webhook.id,
                    event_type=event_type,
                    payload=payload,
                    status=DeliveryStatus.PENDING.value,
                    attempt_number=1,
                    next_attempt_at=now,
                    created_at=now,
                ).to_values()
                for webhook in subscribed
            ]
            await self.database.execute_many(webhook_deliveries.insert(), values)

            logger.info(f"Queued {len(values)} webhook deliveries for {event_type}")
            return len(values)
        except Exception as e:
            logger.error(f"Failed to queue webhook deliveries for {event_type}: {e}")
            return 0

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    async def _mark_delivery(self, delivery_id: str, **values) -> None:
        await db_execute_with_retry(
            self.database,
            webhook_deliveries.update().where(webhook_deliveries.c.id == delivery_id).values(**values),
        )

    async def _send(self, webhook: Webhook, delivery: WebhookDelivery) -> int:
        """POST one delivery. Returns the status code or raises WebhookDeliveryFailure."""
        try:
            timestamp = json.loads(delivery.payload).get("timestamp", "")
        except (TypeError, ValueError):
            timestamp = ""

        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": generate_signature(delivery.payload, webhook.secret),
            "X-Webhook-Event": delivery.event_type,
            "X-Webhook-Timestamp": timestamp,
        }

        try:
            client = await self._get_http_client()
            response = await client.post(webhook.url, content=delivery.payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise WebhookDeliveryFailure(f"Request timeout ({self.timeout}s)") from e
        except httpx.ConnectError as e:
            raise WebhookDeliveryFailure(f"Connection error: {str(e)[:200]}") from e
        except httpx.HTTPError as e:
            raise WebhookDeliveryFailure(f"HTTP error: {str(e)[:200]}") from e

        if not 200 <= response.status_code < 300:
            raise WebhookDeliveryFailure(f"HTTP {response.status_code}", status_code=response.status_code)
        return response.status_code

    async def _record_failure(self, webhook_id: str) -> Optional[Dict[str, Any]]:
        """Atomically bump failure_count, clearing ``active`` at the threshold.

        Only counts against an active webhook, so the count stops at the
        threshold. Returns None if the webhook is gone or already disabled.
        """
        new_count = webhooks.c.failure_count + 1
        row = await fetch_one_with_retry(
            self.database,
            webhooks.update()
            .where(webhooks.c.id == webhook_id)
            .where(webhooks.c.active == sa.true())
            .values(
                failure_count=new_count,
                active=sa.case((new_count >= self.disable_threshold, sa.false()), else_=webhooks.c.active),
            )
            .returning(webhooks.c.failure_count, webhooks.c.active),
        )
        return {"failure_count": row["failure_count"], "active": bool(row["active"])} if row else None

    def _retry_delay(self, attempt_number: int) -> float:
        index = min(attempt_number - 1, len(self.retry_delays) - 1)
        return self.retry_delays[index]

    async def deliver(self, delivery_id: str) -> bool:
        """
        Attempt one delivery.

        Returns True if the subscriber answered 2xx.
        """
        row = await fetch_one_with_retry(
            self.database, webhook_deliveries.select().where(webhook_deliveries.c.id == delivery_id)
        )
        if not row:
            logger.warning(f"Webhook delivery {delivery_id} not found")
            return False
        delivery = WebhookDelivery.from_row(row)
        if delivery.status != DeliveryStatus.PENDING.value:
            return delivery.status == DeliveryStatus.DELIVERED.value

        webhook_row = await fetch_one_with_retry(
            self.database, webhooks.select().where(webhooks.c.id == delivery.webhook_id)
        )
        if not webhook_row:
            await self._mark_delivery(delivery_id, status=DeliveryStatus.FAILED.value, error_message="Webhook not found")
            return False
        webhook = Webhook.from_row(webhook_row)

        if not webhook.active:
            logger.debug(f"Webhook {webhook.id} is inactive, dropping delivery {delivery_id}")
            await self._mark_delivery(
                delivery_id, status=DeliveryStatus.FAILED.value, error_message="Webhook is inactive"
            )
            return False

        start_time = time.monotonic()
        try:
            status_code = await self._send(webhook, delivery)
        except WebhookDeliveryFailure as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            await self._handle_failure(webhook, delivery, e, duration_ms)
            return False

        duration_ms = int((time.monotonic() - start_time) * 1000)
        now = datetime.now(timezone.utc)
        async with self.database.transaction():
            await self.database.execute(
                webhook_deliveries.update()
                .where(webhook_deliveries.c.id == delivery_id)
                .values(
                    status=DeliveryStatus.DELIVERED.value,
                    response_status=status_code,
                    error_message=None,
                    duration_ms=duration_ms,
                    delivered_at=now,
                )
            )
            await self.database.execute(
                webhooks.update().where(webhooks.c.id == webhook.id).values(failure_count=0, last_triggered_at=now)
            )

        logger.info(f"Webhook delivery {delivery_id} succeeded: {webhook.url}")
        return True

    async def _handle_failure(
        self,
        webhook: Webhook,
        delivery: WebhookDelivery,
        error: WebhookDeliveryFailure,
        duration_ms: int,
    ) -> None:
        state = await self._record_failure(webhook.id)
        still_active = bool(state and state["active"])
        if state and not still_active and webhook.active:
            logger.warning(
                f"Webhook {webhook.id} disabled after {state['failure_count']} consecutive failures: {webhook.url}"
            )

        common = {
            "response_status": error.response_status,
            "error_message": error.message,
            "duration_ms": duration_ms,
        }
        if still_active and delivery.attempt_number < self.max_attempts:
            delay = self._retry_delay(delivery.attempt_number)
            await self._mark_delivery(
                delivery.id,
                attempt_number=delivery.attempt_number + 1,
                next_attempt_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
                **common,
            )
            logger.info(
                f"Webhook delivery {delivery.id} failed (attempt {delivery.attempt_number}: {error.message}), "
                f"retry scheduled in {delay:.1f}s"
            )
        else:
            await self._mark_delivery(delivery.id, status=DeliveryStatus.FAILED.value, **common)
            logger.warning(
                f"Webhook delivery {delivery.id} failed permanently after {delivery.attempt_number} attempts: "
                f"{error.message}"
            )

    async def _lease(self, delivery: WebhookDelivery, now: datetime) -> bool:
        """Push next_attempt_at past the request timeout so a concurrent poller skips the row."""
        row = await fetch_one_with_retry(
            self.database,
            webhook_deliveries.update()
            .where(webhook_deliveries.c.id == delivery.id)
            .where(webhook_deliveries.c.status == DeliveryStatus.PENDING.value)
            .where(webhook_deliveries.c.next_attempt_at <= now)
            .values(next_attempt_at=now + timedelta(seconds=self.timeout + 5))
            .returning(webhook_deliveries.c.id),
        )
        return row is not None

    async def process_pending(self) -> int:
        """Deliver all due outbox rows. Returns the number of deliveries attempted."""
        now = datetime.now(timezone.utc)
        rows = await fetch_all_with_retry(
            self.database,
            webhook_deliveries.select()
            .where(webhook_deliveries.c.status == DeliveryStatus.PENDING.value)
            .where(webhook_deliveries.c.next_attempt_at <= now)
            .order_by(webhook_deliveries.c.next_attempt_at.asc())
            .limit(DELIVERY_BATCH_SIZE),
        )
        if not rows:
            return 0

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def process_with_semaphore(delivery: WebhookDelivery) -> bool:
            async with semaphore:
                try:
                    if not await self._lease(delivery, now):
                        return False
                    return await self.deliver(delivery.id)
                except Exception as e:
                    logger.error(f"Error processing webhook delivery {delivery.id}: {e}")
                    return False

        deliveries = [WebhookDelivery.from_row(r) for r in rows]
        by_webhook: Dict[str, List[WebhookDelivery]] = {}
        for delivery in deliveries:
            by_webhook.setdefault(delivery.webhook_id, []).append(delivery)

        async def process_webhook(queued: List[WebhookDelivery]) -> List[bool]:
            # Sequential per webhook: a disable must land before its next request goes out
            return [await process_with_semaphore(delivery) for delivery in queued]

        results = await asyncio.gather(*(process_webhook(q) for q in by_webhook.values()), return_exceptions=True)

        processed = sum(len(r) for r in results if not isinstance(r, BaseException))
        logger.debug(f"Processed {processed}/{len(deliveries)} pending webhook deliveries")
        return processed

    # -------------------------------------------------------------------------
    # Background task
    # -------------------------------------------------------------------------

    async def _delivery_worker(self) -> None:
        logger.info("Webhook delivery worker started")
        while True:
            try:
                await asyncio.sleep(self.poll_interval)
                await self.process_pending()
            except asyncio.CancelledError:
                logger.info("Webhook delivery worker received shutdown signal")
                break
            except Exception as e:
                logger.error(f"Error in webhook delivery worker: {e}")
                await asyncio.sleep(10)
        logger.info("Webhook delivery worker stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._delivery_worker())
        return self._task

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
        self._task = None
        await self.close()

"""
Webhook event processing with exactly-once effect.

Providers deliver notifications at least once and may deliver the same
event concurrently. Each event is applied to the ledger at most once:

1. Verify the delivery with the provider adapter
2. Skip events already marked processed
3. Take ``webhook:processing:{provider}:{event_id}`` with a single
   ``SET NX EX``; a held lock means another worker is handling the event
4. Re-check the processed marker under the lock
5. Dispatch to the handler for the normalized event type
6. On success write ``webhook:{provider}:{event_id}`` and release the lock;
   on failure release the lock and store the event for replay
"""
import json
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from redis.exceptions import WatchError

from gateway_hub.config import Settings
from gateway_hub.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    PaymentProcessingError,
    SignatureError,
)
from gateway_hub.core.ledger import TransactionLedger
from gateway_hub.core.states import TransactionStatus
from gateway_hub.database.models import Transaction, utcnow
from gateway_hub.integrations.base import WebhookEvent, WebhookEventType
from gateway_hub.integrations.registry import ProviderRegistry
from gateway_hub.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[str, WebhookEvent], Awaitable[None]]


class WebhookEventProcessor:
    """
    Idempotent webhook processing.

    Outcomes:
    - ``processed``: handler applied
    - ``duplicate``: already processed earlier
    - ``in_progress``: another worker holds the processing lock
    - ``ignored``: event type the gateway does not act on
    - ``rejected``: the event asks for a transition the state machine forbids
    - ``failed``: handler raised; the event is stored for replay
    - ``invalid_signature``: delivery could not be authenticated
    - ``verification_unavailable``: the provider could not be reached to verify
    - ``error``: the event store failed while handling a verified delivery
    """

    FINAL_OUTCOMES = frozenset({"processed", "duplicate", "ignored", "rejected"})

    def __init__(
        self,
        ledger: TransactionLedger,
        registry: ProviderRegistry,
        redis_client: aioredis.Redis,
        settings: Settings,
    ):
        """
        Initialize webhook processor.

        Args:
            ledger: Transaction ledger the handlers mutate
            registry: Provider adapters used for verification
            redis_client: Redis client with string responses
            settings: Application settings (TTLs)
        """
        self.ledger = ledger
        self.registry = registry
        self.redis = redis_client
        self.lock_ttl = settings.webhook_lock_ttl_seconds
        self.processed_ttl = settings.webhook_processed_ttl_seconds
        self.failed_ttl = settings.webhook_failed_ttl_seconds
        self.handlers: Dict[WebhookEventType, EventHandler] = {
            WebhookEventType.PAYMENT_SUCCEEDED: self.handle_payment_succeeded,
            WebhookEventType.PAYMENT_FAILED: self.handle_payment_failed,
            WebhookEventType.REFUNDED: self.handle_refunded,
            WebhookEventType.DISPUTED: self.handle_disputed,
        }

    def register_handler(self, event_type: WebhookEventType, handler: EventHandler) -> None:
        """Register (or replace) the handler for an event type."""
        self.handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type.value)

    # ------------------------------------------------------------------
    # Redis keys
    # ------------------------------------------------------------------

    @staticmethod
    def processed_key(provider: str, event_id: str) -> str:
        return f"webhook:{provider}:{event_id}"

    @staticmethod
    def lock_key(provider: str, event_id: str) -> str:
        return f"webhook:processing:{provider}:{event_id}"

    @staticmethod
    def failed_key(provider: str, event_id: str) -> str:
        return f"webhook:failed:{provider}:{event_id}"

    async def is_event_processed(self, provider: str, event_id: str) -> bool:
        """Check if event has already been processed."""
        return bool(await self.redis.exists(self.processed_key(provider, event_id)))

    async def _acquire_lock(self, provider: str, event_id: str) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self.redis.set(
            self.lock_key(provider, event_id), token, nx=True, ex=self.lock_ttl
        )
        return token if acquired else None

    async def _release_lock(
        self,
        provider: str,
        event_id: str,
        token: str,
        processed_marker: Optional[str] = None,
    ) -> None:
        """
        Release the processing lock if this worker still owns it.

        With ``processed_marker`` the processed marker is written in the same
        transaction as the lock release.
        """
        lock_key = self.lock_key(provider, event_id)
        processed_key = self.processed_key(provider, event_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(lock_key)
                owner = await pipe.get(lock_key)
                pipe.multi()
                if processed_marker is not None:
                    pipe.set(processed_key, processed_marker, ex=self.processed_ttl)
                if owner == token:
                    pipe.delete(lock_key)
                await pipe.execute()
            except WatchError:
                # lock expired and was taken over; only the marker is ours to write
                logger.warning("webhook_lock_lost", provider=provider, event_id=event_id)
                if processed_marker is not None:
                    await self.redis.set(processed_key, processed_marker, ex=self.processed_ttl)

    # ------------------------------------------------------------------
    # Failed events
    # ------------------------------------------------------------------

    async def store_failed_event(self, provider: str, event: WebhookEvent, error: str) -> None:
        """Persist an event whose handler failed so it can be replayed."""
        key = self.failed_key(provider, event.event_id)
        previous = await self.redis.get(key)
        attempts = json.loads(previous).get("attempts", 0) + 1 if previous else 1
        record = {
            "provider": provider,
            "event": event.to_dict(),
            "error": error,
            "attempts": attempts,
            "failed_at": utcnow().isoformat(),
        }
        await self.redis.set(key, json.dumps(record), ex=self.failed_ttl)

    async def list_failed_events(self, limit: int = 50) -> List[Tuple[str, WebhookEvent]]:
        """Stored failed events, up to ``limit``."""
        events: List[Tuple[str, WebhookEvent]] = []
        async for key in self.redis.scan_iter(match="webhook:failed:*", count=100):
            raw = await self.redis.get(key)
            if raw is None:
                continue
            try:
                record = json.loads(raw)
                events.append((record["provider"], WebhookEvent.from_dict(record["event"])))
            except (ValueError, KeyError) as e:
                logger.error("failed_event_unreadable", key=key, error=str(e))
                await self.redis.delete(key)
                continue
            if len(events) >= limit:
                break
        return events

    async def delete_failed_event(self, provider: str, event_id: str) -> None:
        await self.redis.delete(self.failed_key(provider, event_id))

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def handle_delivery(
        self, provider: str, headers: Mapping[str, str], raw_body: bytes
    ) -> Dict[str, Any]:
        """
        Verify and process one webhook delivery.

        Args:
            provider: Provider the delivery came from
            headers: Request headers
            raw_body: Unparsed request body

        Returns:
            Dict[str, Any]: ``status`` (the outcome), ``event_id`` and ``event_type``
        """
        adapter = self.registry.get(provider)
        metrics.record_webhook_received(provider)

        try:
            event = await adapter.verify_and_parse_webhook(headers, raw_body)
        except SignatureError as e:
            metrics.record_webhook_outcome(provider, "unverified", "invalid_signature")
            logger.warning(
                "webhook_signature_invalid",
                provider=provider,
                error=e.message,
                details=e.details,
            )
            return {"status": "invalid_signature", "event_id": None, "event_type": None}
        except PaymentProcessingError as e:
            metrics.record_webhook_outcome(provider, "unverified", "verification_unavailable")
            logger.error(
                "webhook_verification_unavailable",
                provider=provider,
                error=e.message,
                error_code=e.error_code,
            )
            return {"status": "verification_unavailable", "event_id": None, "event_type": None}

        logger.info(
            "webhook_event_received",
            provider=provider,
            event_id=event.event_id,
            event_type=event.event_type.value,
            native_event_type=event.native_event_type,
        )
        try:
            outcome = await self.process_event(provider, event)
        except Exception as e:
            # acknowledged anyway; redelivery or replay recovers the event
            metrics.record_webhook_outcome(provider, event.event_type.value, "error")
            logger.error(
                "webhook_delivery_error",
                provider=provider,
                event_id=event.event_id,
                event_type=event.event_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            outcome = "error"
        return {"status": outcome, "event_id": event.event_id, "event_type": event.event_type.value}

    async def process_event(self, provider: str, event: WebhookEvent, replay: bool = False) -> str:
        """
        Apply a verified event at most once.

        Args:
            provider: Provider name
            event: Verified, normalized event
            replay: Whether this is a replay of a stored failed event

        Returns:
            str: Processing outcome
        """
        start_time = time.perf_counter()
        log = logger.bind(
            provider=provider,
            event_id=event.event_id,
            event_type=event.event_type.value,
            replay=replay,
        )

        if await self.is_event_processed(provider, event.event_id):
            log.info("webhook_event_duplicate")
            return self._finish(provider, event, "duplicate", start_time)

        token = await self._acquire_lock(provider, event.event_id)
        if token is None:
            log.info("webhook_event_in_progress")
            return self._finish(provider, event, "in_progress", start_time)

        if await self.is_event_processed(provider, event.event_id):
            await self._release_lock(provider, event.event_id, token)
            log.info("webhook_event_duplicate")
            return self._finish(provider, event, "duplicate", start_time)

        try:
            outcome = await self._dispatch(provider, event)
        except Exception as e:
            await self._release_lock(provider, event.event_id, token)
            await self.store_failed_event(provider, event, error=str(e))
            log.error(
                "webhook_event_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return self._finish(provider, event, "failed", start_time)

        marker = json.dumps({"outcome": outcome, "processed_at": utcnow().isoformat()})
        await self._release_lock(provider, event.event_id, token, processed_marker=marker)
        log.info("webhook_event_processed", outcome=outcome)
        return self._finish(provider, event, outcome, start_time)

    async def _dispatch(self, provider: str, event: WebhookEvent) -> str:
        handler = self.handlers.get(event.event_type)
        if handler is None:
            logger.info(
                "webhook_event_ignored",
                provider=provider,
                event_id=event.event_id,
                native_event_type=event.native_event_type,
            )
            return "ignored"

        try:
            await handler(provider, event)
        except InvalidTransitionError as e:
            # the same event can never succeed later
            logger.warning(
                "webhook_event_rejected",
                provider=provider,
                event_id=event.event_id,
                current_status=e.current,
                target_status=e.target,
                transaction_id=e.transaction_id,
            )
            return "rejected"
        return "processed"

    @staticmethod
    def _finish(provider: str, event: WebhookEvent, outcome: str, start_time: float) -> str:
        metrics.record_webhook_outcome(
            provider, event.event_type.value, outcome, time.perf_counter() - start_time
        )
        return outcome

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _resolve_transaction(self, provider: str, event: WebhookEvent) -> Transaction:
        """
        Find the transaction an event refers to.

        Raises:
            NotFoundError: If no transaction matches; the event is retried
                later since it may have arrived before the creation response
                was persisted
        """
        if event.provider_transaction_id:
            try:
                return await self.ledger.get_by_provider_transaction_id(
                    event.provider_transaction_id, provider
                )
            except NotFoundError:
                if not event.transaction_reference:
                    raise
        if event.transaction_reference:
            transaction = await self.ledger.get_transaction(event.transaction_reference)
            if transaction.provider == provider:
                return transaction
        raise NotFoundError(
            "Webhook event does not match any transaction",
            details={
                "provider": provider,
                "event_id": event.event_id,
                "provider_transaction_id": event.provider_transaction_id,
            },
        )

    @staticmethod
    def _evidence(provider: str, event: WebhookEvent) -> Dict[str, Any]:
        return {
            "webhook_events": [
                {
                    "event_id": event.event_id,
                    "event_type": event.event_type.value,
                    "native_event_type": event.native_event_type,
                    "provider": provider,
                    "received_at": utcnow().isoformat(),
                    "payload": event.payload,
                }
            ]
        }

    async def handle_payment_succeeded(self, provider: str, event: WebhookEvent) -> None:
        transaction = await self._resolve_transaction(provider, event)
        await self.ledger.update_transaction_status(
            transaction.id,
            TransactionStatus.COMPLETED,
            self._evidence(provider, event),
            source=f"webhook:{provider}",
        )

    async def handle_payment_failed(self, provider: str, event: WebhookEvent) -> None:
        transaction = await self._resolve_transaction(provider, event)
        await self.ledger.update_transaction_status(
            transaction.id,
            TransactionStatus.FAILED,
            self._evidence(provider, event),
            error_message=event.error_message or "Payment failed",
            error_code=event.error_code,
            source=f"webhook:{provider}",
        )

    async def handle_refunded(self, provider: str, event: WebhookEvent) -> None:
        transaction = await self._resolve_transaction(provider, event)
        await self.ledger.apply_refund_notification(
            transaction.id,
            event.amount,
            self._evidence(provider, event),
            source=f"webhook:{provider}",
        )

    async def handle_disputed(self, provider: str, event: WebhookEvent) -> None:
        transaction = await self._resolve_transaction(provider, event)
        await self.ledger.record_dispute(
            transaction.id,
            reason=event.reason,
            amount=event.amount,
            metadata_patch=self._evidence(provider, event),
            source=f"webhook:{provider}",
        )

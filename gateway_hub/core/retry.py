"""
Retry scheduling.

Two periodic duties:
- re-drive transactions whose scheduled retry is due
- replay webhook events whose handler failed

``BackoffPolicy`` decides the delay before each retry and when the retry
budget is spent.
"""
import asyncio
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List

import structlog

from gateway_hub.config import Settings
from gateway_hub.core.errors import GatewayError
from gateway_hub.monitoring.metrics import metrics

if TYPE_CHECKING:
    from gateway_hub.core.ledger import TransactionLedger
    from gateway_hub.core.webhooks import WebhookEventProcessor

logger = structlog.get_logger(__name__)


class BackoffPolicy:
    """Exponential backoff with a ceiling and a maximum number of attempts."""

    def __init__(self, max_attempts: int = 3, initial_delay: float = 1.0, max_delay: float = 30.0):
        """
        Initialize backoff policy.

        Args:
            max_attempts: Failed attempts after which a transaction fails
            initial_delay: Delay before the first retry (seconds)
            max_delay: Upper bound for any delay (seconds)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )

    def delay_for(self, retry_count: int) -> float:
        """Delay in seconds before the retry following ``retry_count`` earlier retries."""
        return min(self.initial_delay * (2 ** max(0, retry_count)), self.max_delay)

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_attempts


class RetryScheduler:
    """
    Periodic re-driver for stuck transactions and failed webhook events.

    Each duty runs in its own task: run once, sleep for its interval,
    repeat until ``stop()``. Errors inside a run are logged and the loop
    continues.
    """

    def __init__(
        self,
        ledger: "TransactionLedger",
        processor: "WebhookEventProcessor",
        transaction_interval: float = 60.0,
        failed_event_interval: float = 300.0,
        batch_size: int = 50,
    ):
        """
        Initialize retry scheduler.

        Args:
            ledger: Transaction ledger
            processor: Webhook event processor used for replays
            transaction_interval: Seconds between transaction retry sweeps
            failed_event_interval: Seconds between failed-event replays
            batch_size: Transactions or events handled per run
        """
        self.ledger = ledger
        self.processor = processor
        self.transaction_interval = transaction_interval
        self.failed_event_interval = failed_event_interval
        self.batch_size = batch_size
        self._running = False
        self._tasks: List["asyncio.Task[None]"] = []

        logger.info(
            "retry_scheduler_initialized",
            transaction_interval=transaction_interval,
            failed_event_interval=failed_event_interval,
            batch_size=batch_size,
        )

    @classmethod
    def from_settings(
        cls,
        ledger: "TransactionLedger",
        processor: "WebhookEventProcessor",
        settings: Settings,
    ) -> "RetryScheduler":
        return cls(
            ledger,
            processor,
            transaction_interval=settings.retry_transaction_interval_seconds,
            failed_event_interval=settings.retry_failed_event_interval_seconds,
            batch_size=settings.retry_batch_size,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_transaction_retries(self) -> Dict[str, int]:
        """
        Confirm every transaction whose retry is due.

        Failures are already rescheduled (or failed) by the ledger, so they
        are only counted here.

        Returns:
            Dict[str, int]: attempted, succeeded and failed counts
        """
        start_time = time.perf_counter()
        due = await self.ledger.find_due_for_retry(limit=self.batch_size)
        summary = {"attempted": len(due), "succeeded": 0, "failed": 0}

        for transaction_id in due:
            try:
                transaction = await self.ledger.confirm_transaction(transaction_id)
                summary["succeeded"] += 1
                metrics.record_retry_attempt("succeeded")
                logger.info(
                    "transaction_retry_succeeded",
                    transaction_id=str(transaction_id),
                    status=transaction.status,
                )
            except GatewayError as e:
                summary["failed"] += 1
                metrics.record_retry_attempt("failed")
                logger.warning(
                    "transaction_retry_failed",
                    transaction_id=str(transaction_id),
                    error_code=e.code,
                    error=e.message,
                )

        metrics.record_sweep_duration("transactions", time.perf_counter() - start_time)
        if due:
            logger.info("transaction_retry_sweep_completed", **summary)
        return summary

    async def replay_failed_events(self) -> Dict[str, int]:
        """
        Re-run processing for stored failed webhook events.

        A stored event is deleted once processing reaches a final outcome;
        events that fail again or are locked by a concurrent delivery stay
        for the next run.

        Returns:
            Dict[str, int]: attempted, succeeded and failed counts
        """
        start_time = time.perf_counter()
        failed_events = await self.processor.list_failed_events(limit=self.batch_size)
        summary = {"attempted": len(failed_events), "succeeded": 0, "failed": 0}

        for provider, event in failed_events:
            outcome = await self.processor.process_event(provider, event, replay=True)
            if outcome in self.processor.FINAL_OUTCOMES:
                await self.processor.delete_failed_event(provider, event.event_id)
                summary["succeeded"] += 1
            else:
                summary["failed"] += 1
            metrics.record_failed_event_replay(outcome)
            logger.info(
                "failed_event_replayed",
                provider=provider,
                event_id=event.event_id,
                outcome=outcome,
            )

        metrics.record_sweep_duration("failed_events", time.perf_counter() - start_time)
        return summary

    async def run_once(self) -> Dict[str, Dict[str, int]]:
        """Run both duties once."""
        return {
            "transactions": await self.run_transaction_retries(),
            "failed_events": await self.replay_failed_events(),
        }

    async def _run_periodically(
        self, name: str, interval: float, duty: Callable[[], Awaitable[Any]]
    ) -> None:
        while self._running:
            try:
                await duty()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("retry_scheduler_duty_error", duty=name, error=str(e), exc_info=True)
            await asyncio.sleep(interval)

    async def start(self) -> None:
        """Start both duties in background tasks."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._run_periodically(
                    "transactions", self.transaction_interval, self.run_transaction_retries
                )
            ),
            asyncio.create_task(
                self._run_periodically(
                    "failed_events", self.failed_event_interval, self.replay_failed_events
                )
            ),
        ]
        logger.info("retry_scheduler_started")

    async def stop(self) -> None:
        """Stop the duties and wait for them to finish."""
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("retry_scheduler_stopped")

    async def wait(self) -> None:
        """Block until the scheduler is stopped."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

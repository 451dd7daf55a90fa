"""
Transaction ledger.

Owns transaction records and every status change. Mutations on one
transaction are serialized through a Redis lock keyed by the transaction
id, and the row is re-read ``FOR UPDATE`` once the lock is held.

Flows:
- create: validate -> persist ``initiated`` -> provider initiation -> apply status
- confirm: capture (or re-initiate) -> apply status, or schedule a retry
- refund: validate amount -> provider refund -> accumulate refunded amount
"""
import math
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway_hub.config import Settings
from gateway_hub.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PaymentProcessingError,
    ValidationError,
)
from gateway_hub.core.metadata import merge_metadata
from gateway_hub.core.retry import BackoffPolicy
from gateway_hub.core.states import (
    REFUNDABLE_STATUSES,
    RETRYABLE_STATUSES,
    TransactionStatus,
    can_transition,
)
from gateway_hub.core.tokenization import TokenizationService
from gateway_hub.database.models import Transaction, utcnow
from gateway_hub.integrations.base import PaymentRequest, Provider
from gateway_hub.integrations.registry import ProviderRegistry
from gateway_hub.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")
MAX_PAGE_SIZE = 100

TransactionId = Union[uuid.UUID, str]


@dataclass
class NewTransaction:
    """Input for ``create_transaction``."""

    amount: Decimal
    currency: str
    provider: str
    payment_method: str
    description: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CreationResult:
    transaction: Transaction
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    requires_action: bool = False


@dataclass
class TransactionFilters:
    status: Optional[str] = None
    provider: Optional[str] = None
    customer_id: Optional[str] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None


def to_amount(value: Any) -> Decimal:
    """Normalize a monetary value to two decimal places."""
    try:
        return Decimal(str(value)).quantize(CENTS)
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value}") from e


class TransactionLedger:
    """
    Transaction ledger and state machine enforcement.

    Every status change goes through ``_apply_status`` which checks the
    transition table, appends to ``metadata.status_history`` and stamps
    ``completed_at``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: aioredis.Redis,
        registry: ProviderRegistry,
        tokenization: TokenizationService,
        settings: Settings,
        backoff: Optional[BackoffPolicy] = None,
    ):
        """
        Initialize the ledger.

        Args:
            session_factory: Database session factory
            redis_client: Redis client used for per-transaction locks
            registry: Provider adapters
            tokenization: Vault used to resolve payment-method tokens
            settings: Application settings
            backoff: Retry policy (defaults to the configured one)
        """
        self.session_factory = session_factory
        self.redis = redis_client
        self.registry = registry
        self.tokenization = tokenization
        self.settings = settings
        self.backoff = backoff or BackoffPolicy.from_settings(settings)

    # ------------------------------------------------------------------
    # Locking and loading
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction_lock(self, transaction_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self.redis.lock(
            f"transaction:lock:{transaction_id}",
            timeout=self.settings.redis_lock_timeout,
            blocking_timeout=self.settings.redis_lock_blocking_timeout,
        )
        if not await lock.acquire():
            metrics.record_lock_acquisition("timeout")
            logger.warning("transaction_lock_timeout", transaction_id=str(transaction_id))
            raise ConflictError(
                "Transaction is being modified by another operation",
                details={"transaction_id": str(transaction_id)},
            )
        metrics.record_lock_acquisition("acquired")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("transaction_lock_expired_before_release", transaction_id=str(transaction_id))

    @staticmethod
    def _parse_id(transaction_id: TransactionId) -> uuid.UUID:
        if isinstance(transaction_id, uuid.UUID):
            return transaction_id
        try:
            return uuid.UUID(str(transaction_id))
        except ValueError:
            raise NotFoundError(
                "Transaction not found", details={"transaction_id": str(transaction_id)}
            )

    @staticmethod
    async def _load_for_update(session: AsyncSession, transaction_id: uuid.UUID) -> Transaction:
        result = await session.execute(
            select(Transaction).where(Transaction.id == transaction_id).with_for_update()
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFoundError(
                "Transaction not found", details={"transaction_id": str(transaction_id)}
            )
        return transaction

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _assign_provider_id(transaction: Transaction, provider_transaction_id: str) -> None:
        """Set the provider id once; a set id is never replaced."""
        current = transaction.provider_transaction_id
        if current is None:
            transaction.provider_transaction_id = provider_transaction_id
        elif current != provider_transaction_id:
            logger.warning(
                "provider_transaction_id_conflict",
                transaction_id=str(transaction.id),
                provider_transaction_id=current,
                reported_provider_transaction_id=provider_transaction_id,
            )

    def _apply_status(
        self,
        transaction: Transaction,
        target: TransactionStatus,
        source: str,
        strict: bool = True,
    ) -> bool:
        """
        Move ``transaction`` to ``target``.

        With ``strict=False`` an illegal transition is logged and skipped
        instead of raised; synchronous provider responses use this because a
        webhook may already have moved the transaction further.

        Returns:
            bool: Whether the status is now ``target``
        """
        current = TransactionStatus(transaction.status)
        if not can_transition(current, target):
            if strict:
                raise InvalidTransitionError(current.value, target.value, str(transaction.id))
            logger.warning(
                "stale_provider_status",
                transaction_id=str(transaction.id),
                current_status=current.value,
                reported_status=target.value,
                source=source,
            )
            return False

        if current != target:
            now = utcnow()
            transaction.status = target.value
            transaction.metadata_ = merge_metadata(
                transaction.metadata_,
                {
                    "status_history": [
                        {"from": current.value, "to": target.value, "at": now.isoformat(), "source": source}
                    ]
                },
            )
            if target == TransactionStatus.COMPLETED and transaction.completed_at is None:
                transaction.completed_at = now
            metrics.record_status_transition(current.value, target.value)
            logger.info(
                "transaction_status_changed",
                transaction_id=str(transaction.id),
                from_status=current.value,
                to_status=target.value,
                source=source,
            )
        return True

    def _schedule_retry(self, transaction: Transaction, error: PaymentProcessingError) -> None:
        """
        Record a failed provider attempt.

        Increments the retry count and either schedules the next attempt
        with exponential backoff or, once the budget is spent, fails the
        transaction. This is the only place exhaustion fails a transaction.
        """
        transaction.retry_count += 1
        transaction.error_message = error.message
        transaction.error_code = error.error_code

        if self.backoff.is_exhausted(transaction.retry_count):
            transaction.next_retry_at = None
            transaction.error_message = (
                f"Exceeded maximum retry attempts ({self.backoff.max_attempts}): {error.message}"
            )
            self._apply_status(transaction, TransactionStatus.FAILED, source="retry_exhausted")
            logger.warning(
                "transaction_retries_exhausted",
                transaction_id=str(transaction.id),
                retry_count=transaction.retry_count,
                error_code=error.error_code,
            )
            return

        delay = self.backoff.delay_for(transaction.retry_count - 1)
        transaction.next_retry_at = utcnow() + timedelta(seconds=delay)
        logger.info(
            "transaction_retry_scheduled",
            transaction_id=str(transaction.id),
            retry_count=transaction.retry_count,
            delay_seconds=delay,
            error_code=error.error_code,
        )

    def is_fully_refunded(self, amount: Decimal, refunded: Decimal, currency: str) -> bool:
        """Whether ``refunded`` covers ``amount`` within the currency's tolerance."""
        return amount - refunded <= self.settings.refund_tolerance_for(currency)

    async def _resolve_payment_method(self, token_id: str) -> Dict[str, Any]:
        try:
            return await self.tokenization.detokenize(token_id)
        except NotFoundError as e:
            raise ValidationError(
                "Payment method token could not be resolved",
                details={"payment_method": token_id},
            ) from e

    @staticmethod
    def _payment_request(transaction: Transaction, payment_method: Dict[str, Any]) -> PaymentRequest:
        continuation = (transaction.metadata_ or {}).get("continuation") or {}
        return PaymentRequest(
            transaction_id=str(transaction.id),
            amount=transaction.amount,
            currency=transaction.currency,
            payment_method=payment_method,
            description=transaction.description,
            customer_id=transaction.customer_id,
            customer_email=transaction.customer_email,
            return_url=continuation.get("return_url"),
            cancel_url=continuation.get("cancel_url"),
            metadata=(transaction.metadata_ or {}).get("client") or {},
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _validate_new_transaction(self, request: NewTransaction) -> None:
        """
        Validate a creation request.

        Raises:
            ValidationError: If validation fails
        """
        if request.amount is None or to_amount(request.amount) <= 0:
            raise ValidationError("Amount must be positive", details={"amount": str(request.amount)})
        if not request.currency or len(request.currency) != 3 or not request.currency.isalpha():
            raise ValidationError(
                "Currency must be 3-letter code", details={"currency": request.currency}
            )
        if not request.payment_method:
            raise ValidationError("Payment method is required")
        if request.provider == Provider.PAYPAL.value and not (request.return_url and request.cancel_url):
            raise ValidationError("returnUrl and cancelUrl are required for PayPal payments")

    async def create_transaction(self, request: NewTransaction) -> CreationResult:
        """
        Create a transaction and start it with the provider.

        Args:
            request: Creation input

        Returns:
            CreationResult: Transaction plus any client continuation

        Raises:
            ValidationError: If the request is invalid
            PaymentProcessingError: If the provider call fails
        """
        start_time = time.perf_counter()
        self._validate_new_transaction(request)
        adapter = self.registry.get(request.provider)
        payment_method = await self._resolve_payment_method(request.payment_method)

        now = utcnow()
        metadata: Dict[str, Any] = {
            "status_history": [
                {"from": None, "to": TransactionStatus.INITIATED.value, "at": now.isoformat(), "source": "create"}
            ],
        }
        if request.metadata:
            metadata["client"] = request.metadata
        if request.return_url or request.cancel_url:
            metadata["continuation"] = {"return_url": request.return_url, "cancel_url": request.cancel_url}

        transaction = Transaction(
            id=uuid.uuid4(),
            amount=to_amount(request.amount),
            currency=request.currency.upper(),
            status=TransactionStatus.INITIATED.value,
            provider=adapter.name,
            payment_method=request.payment_method,
            description=request.description,
            customer_id=request.customer_id,
            customer_email=request.customer_email,
            refunded_amount=Decimal("0.00"),
            retry_count=0,
            metadata_=metadata,
        )
        async with self.session_factory() as session:
            session.add(transaction)
            await session.commit()

        logger.info(
            "transaction_created",
            transaction_id=str(transaction.id),
            provider=adapter.name,
            amount=str(transaction.amount),
            currency=transaction.currency,
        )

        try:
            result = await adapter.initiate_payment(self._payment_request(transaction, payment_method))
        except PaymentProcessingError as e:
            e.for_transaction(str(transaction.id))
            async with self._transaction_lock(transaction.id):
                async with self.session_factory() as session:
                    transaction = await self._load_for_update(session, transaction.id)
                    if e.transient:
                        self._schedule_retry(transaction, e)
                    else:
                        transaction.error_message = e.message
                        transaction.error_code = e.error_code
                        self._apply_status(transaction, TransactionStatus.FAILED, source="provider_error")
                    await session.commit()
            metrics.record_transaction_operation(
                "create", adapter.name, transaction.status, time.perf_counter() - start_time
            )
            logger.error(
                "transaction_initiation_failed",
                transaction_id=str(transaction.id),
                transient=e.transient,
                error_code=e.error_code,
                status=transaction.status,
            )
            raise

        async with self._transaction_lock(transaction.id):
            async with self.session_factory() as session:
                transaction = await self._load_for_update(session, transaction.id)
                self._assign_provider_id(transaction, result.provider_transaction_id)
                self._apply_status(transaction, result.status, source="provider_response", strict=False)
                transaction.metadata_ = merge_metadata(
                    transaction.metadata_,
                    {"provider_response": {**result.raw, "received_at": utcnow().isoformat()}},
                )
                await session.commit()

        metrics.record_transaction_operation(
            "create", adapter.name, transaction.status, time.perf_counter() - start_time
        )
        return CreationResult(
            transaction=transaction,
            client_secret=result.client_secret,
            approval_url=result.approval_url,
            requires_action=result.requires_action,
        )

    async def confirm_transaction(self, transaction_id: TransactionId) -> Transaction:
        """
        Confirm or capture a transaction with its provider.

        A transaction the provider never acknowledged is initiated again
        under the same idempotency key. On provider failure the attempt is
        recorded, a retry is scheduled (or the transaction fails once the
        budget is spent) and the error is re-raised.

        Raises:
            NotFoundError: If the transaction does not exist
            InvalidTransitionError: If the transaction can no longer be confirmed
            PaymentProcessingError: If the provider call fails
        """
        start_time = time.perf_counter()
        tid = self._parse_id(transaction_id)

        async with self._transaction_lock(tid):
            async with self.session_factory() as session:
                transaction = await self._load_for_update(session, tid)
                current = TransactionStatus(transaction.status)
                if current == TransactionStatus.COMPLETED:
                    return transaction
                if current not in RETRYABLE_STATUSES:
                    raise InvalidTransitionError(
                        current.value, TransactionStatus.COMPLETED.value, str(tid)
                    )

                adapter = self.registry.get(transaction.provider)
                try:
                    if transaction.provider_transaction_id is None:
                        payment_method = await self._resolve_payment_method(transaction.payment_method)
                        initiation = await adapter.initiate_payment(
                            self._payment_request(transaction, payment_method)
                        )
                        self._assign_provider_id(transaction, initiation.provider_transaction_id)
                        status, raw = initiation.status, initiation.raw
                    else:
                        capture = await adapter.capture(transaction.provider_transaction_id)
                        status, raw = capture.status, capture.raw
                except PaymentProcessingError as e:
                    e.for_transaction(str(tid))
                    self._schedule_retry(transaction, e)
                    await session.commit()
                    metrics.record_transaction_operation(
                        "confirm", adapter.name, "error", time.perf_counter() - start_time
                    )
                    raise

                applied = self._apply_status(
                    transaction, status, source="provider_confirmation", strict=False
                )
                transaction.next_retry_at = None
                if applied and status == TransactionStatus.COMPLETED:
                    transaction.error_message = None
                    transaction.error_code = None
                transaction.metadata_ = merge_metadata(
                    transaction.metadata_,
                    {"confirmation_response": {**raw, "received_at": utcnow().isoformat()}},
                )
                await session.commit()

        metrics.record_transaction_operation(
            "confirm", transaction.provider, transaction.status, time.perf_counter() - start_time
        )
        logger.info(
            "transaction_confirmed",
            transaction_id=str(tid),
            status=transaction.status,
        )
        return transaction

    async def refund_transaction(
        self,
        transaction_id: TransactionId,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Tuple[Transaction, Any]:
        """
        Refund part or all of a completed transaction.

        Args:
            transaction_id: Transaction to refund
            amount: Amount to refund (defaults to the remaining refundable amount)
            reason: Optional reason recorded with the refund

        Returns:
            Tuple of the updated transaction and the provider's refund result

        Raises:
            InvalidTransitionError: If the transaction is not refundable
            ValidationError: If the amount is invalid or exceeds what is refundable
            PaymentProcessingError: If the provider refund fails
        """
        start_time = time.perf_counter()
        tid = self._parse_id(transaction_id)

        async with self._transaction_lock(tid):
            async with self.session_factory() as session:
                transaction = await self._load_for_update(session, tid)
                current = TransactionStatus(transaction.status)
                if current not in REFUNDABLE_STATUSES:
                    raise InvalidTransitionError(current.value, TransactionStatus.REFUNDED.value, str(tid))
                if not transaction.provider_transaction_id:
                    raise ValidationError(
                        "Transaction has no provider reference to refund",
                        details={"transaction_id": str(tid)},
                    )

                remaining = transaction.amount - transaction.refunded_amount
                refund_amount = to_amount(amount) if amount is not None else remaining
                if refund_amount <= 0:
                    raise ValidationError(
                        "Refund amount must be positive", details={"amount": str(refund_amount)}
                    )
                if transaction.refunded_amount + refund_amount > transaction.amount:
                    raise ValidationError(
                        "Refund amount exceeds refundable amount",
                        details={"amount": str(refund_amount), "refundable": str(remaining)},
                    )

                adapter = self.registry.get(transaction.provider)
                try:
                    result = await adapter.refund(
                        transaction.provider_transaction_id, refund_amount, transaction.currency
                    )
                except PaymentProcessingError as e:
                    metrics.record_transaction_operation(
                        "refund", adapter.name, "error", time.perf_counter() - start_time
                    )
                    raise e.for_transaction(str(tid))

                if result.status == TransactionStatus.FAILED:
                    raise PaymentProcessingError(
                        "Refund was rejected by the provider",
                        provider=adapter.name,
                        error_code=result.native_status or "refund_failed",
                        transaction_id=str(tid),
                    )

                new_refunded = transaction.refunded_amount + refund_amount
                target = (
                    TransactionStatus.REFUNDED
                    if self.is_fully_refunded(transaction.amount, new_refunded, transaction.currency)
                    else TransactionStatus.PARTIALLY_REFUNDED
                )
                self._apply_status(transaction, target, source="refund")
                transaction.refunded_amount = new_refunded
                transaction.metadata_ = merge_metadata(
                    transaction.metadata_,
                    {
                        "refunds": [
                            {
                                "refund_id": result.refund_id,
                                "amount": str(refund_amount),
                                "status": result.native_status,
                                "reason": reason,
                                "at": utcnow().isoformat(),
                            }
                        ]
                    },
                )
                await session.commit()

        metrics.record_transaction_operation(
            "refund", transaction.provider, transaction.status, time.perf_counter() - start_time
        )
        logger.info(
            "transaction_refunded",
            transaction_id=str(tid),
            refund_id=result.refund_id,
            amount=str(refund_amount),
            refunded_amount=str(transaction.refunded_amount),
            status=transaction.status,
        )
        return transaction, result

    async def update_transaction_status(
        self,
        transaction_id: TransactionId,
        status: Union[TransactionStatus, str],
        metadata_patch: Optional[Dict[str, Any]] = None,
        *,
        refunded_amount: Optional[Decimal] = None,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None,
        source: str = "internal",
    ) -> Transaction:
        """
        Apply a status change and merge metadata.

        Args:
            transaction_id: Transaction to update
            status: Target status
            metadata_patch: Metadata merged additively
            refunded_amount: Provider-reported refunded total; only ever raises
                the stored value and is capped at the transaction amount
            error_message: Error message to record
            error_code: Error code to record
            source: Who asked for the change (logged and kept in history)

        Raises:
            ValidationError: If ``status`` is not a known status
            InvalidTransitionError: If the transition is not allowed
        """
        try:
            target = TransactionStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown transaction status: {status}")

        tid = self._parse_id(transaction_id)
        async with self._transaction_lock(tid):
            async with self.session_factory() as session:
                transaction = await self._load_for_update(session, tid)
                self._apply_status(transaction, target, source=source)
                if metadata_patch:
                    transaction.metadata_ = merge_metadata(transaction.metadata_, metadata_patch)
                if refunded_amount is not None:
                    reported = min(to_amount(refunded_amount), transaction.amount)
                    if reported > transaction.refunded_amount:
                        transaction.refunded_amount = reported
                if error_message is not None:
                    transaction.error_message = error_message
                if error_code is not None:
                    transaction.error_code = error_code
                await session.commit()
        return transaction

    async def apply_refund_notification(
        self,
        transaction_id: TransactionId,
        refunded_total: Optional[Decimal],
        metadata_patch: Optional[Dict[str, Any]] = None,
        source: str = "webhook",
    ) -> Transaction:
        """
        Apply a provider-reported refund.

        ``refunded_total`` is the cumulative refunded amount reported by the
        provider; a notification without an amount counts as a full refund.
        The stored refunded amount never decreases.
        """
        tid = self._parse_id(transaction_id)
        async with self._transaction_lock(tid):
            async with self.session_factory() as session:
                transaction = await self._load_for_update(session, tid)
                reported = (
                    transaction.amount
                    if refunded_total is None
                    else min(to_amount(refunded_total), transaction.amount)
                )
                new_refunded = max(transaction.refunded_amount, reported)
                target = (
                    TransactionStatus.REFUNDED
                    if self.is_fully_refunded(transaction.amount, new_refunded, transaction.currency)
                    else TransactionStatus.PARTIALLY_REFUNDED
                )
                self._apply_status(transaction, target, source=source)
                transaction.refunded_amount = new_refunded
                if metadata_patch:
                    transaction.metadata_ = merge_metadata(transaction.metadata_, metadata_patch)
                await session.commit()
        return transaction

    async def record_dispute(
        self,
        transaction_id: TransactionId,
        reason: Optional[str],
        amount: Optional[Decimal] = None,
        metadata_patch: Optional[Dict[str, Any]] = None,
        source: str = "internal",
    ) -> Transaction:
        """Move a completed transaction to ``disputed`` and record the dispute."""
        patch = merge_metadata(
            {
                "dispute": {
                    "reason": reason,
                    "amount": str(to_amount(amount)) if amount is not None else None,
                    "opened_at": utcnow().isoformat(),
                }
            },
            metadata_patch,
        )
        transaction = await self.update_transaction_status(
            transaction_id, TransactionStatus.DISPUTED, patch, source=source
        )
        logger.warning(
            "transaction_disputed",
            transaction_id=str(transaction.id),
            reason=reason,
            amount=str(amount) if amount is not None else None,
        )
        return transaction

    async def reconcile_transaction(self, transaction_id: TransactionId) -> Transaction:
        """
        Pull the provider's current status and apply it when legal.

        Raises:
            ValidationError: If the transaction was never submitted to the provider
        """
        tid = self._parse_id(transaction_id)
        async with self._transaction_lock(tid):
            async with self.session_factory() as session:
                transaction = await self._load_for_update(session, tid)
                if not transaction.provider_transaction_id:
                    raise ValidationError(
                        "Transaction has not been submitted to the provider",
                        details={"transaction_id": str(tid)},
                    )
                adapter = self.registry.get(transaction.provider)
                details = await adapter.get_details(transaction.provider_transaction_id)
                self._apply_status(transaction, details.status, source="reconciliation", strict=False)
                transaction.metadata_ = merge_metadata(
                    transaction.metadata_,
                    {
                        "last_reconciliation": {
                            "provider_status": details.native_status,
                            "at": utcnow().isoformat(),
                        }
                    },
                )
                await session.commit()

        logger.info(
            "transaction_reconciled",
            transaction_id=str(tid),
            provider_status=details.native_status,
            status=transaction.status,
        )
        return transaction

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_transaction(self, transaction_id: TransactionId) -> Transaction:
        """
        Get a transaction by id.

        Raises:
            NotFoundError: If it does not exist
        """
        tid = self._parse_id(transaction_id)
        async with self.session_factory() as session:
            transaction = await session.get(Transaction, tid)
        if transaction is None:
            raise NotFoundError("Transaction not found", details={"transaction_id": str(tid)})
        return transaction

    async def get_by_provider_transaction_id(
        self, provider_transaction_id: str, provider: Optional[str] = None
    ) -> Transaction:
        """
        Get a transaction by its provider-side id.

        Raises:
            NotFoundError: If no transaction carries that id
        """
        query = select(Transaction).where(
            Transaction.provider_transaction_id == provider_transaction_id
        )
        if provider:
            query = query.where(Transaction.provider == provider)
        async with self.session_factory() as session:
            transaction = (await session.execute(query.limit(1))).scalars().first()
        if transaction is None:
            raise NotFoundError(
                "Transaction not found",
                details={"provider": provider, "provider_transaction_id": provider_transaction_id},
            )
        return transaction

    async def list_transactions(
        self,
        filters: Optional[TransactionFilters] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """
        List transactions, newest first.

        Returns:
            Dict[str, Any]: ``transactions`` and ``pagination`` (total, page, limit, pages)
        """
        if page < 1:
            raise ValidationError("page must be at least 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        filters = filters or TransactionFilters()
        conditions = []
        if filters.status:
            conditions.append(Transaction.status == filters.status)
        if filters.provider:
            conditions.append(Transaction.provider == filters.provider)
        if filters.customer_id:
            conditions.append(Transaction.customer_id == filters.customer_id)
        if filters.from_date:
            conditions.append(Transaction.created_at >= filters.from_date)
        if filters.to_date:
            conditions.append(Transaction.created_at <= filters.to_date)

        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(Transaction).where(*conditions)
            )
            rows = await session.execute(
                select(Transaction)
                .where(*conditions)
                .order_by(Transaction.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            transactions: List[Transaction] = list(rows.scalars().all())

        total = total or 0
        return {
            "transactions": transactions,
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    async def find_due_for_retry(
        self, now: Optional[datetime] = None, limit: int = 50
    ) -> List[uuid.UUID]:
        """Ids of transactions whose next retry is due and whose budget is not spent."""
        now = now or utcnow()
        async with self.session_factory() as session:
            rows = await session.execute(
                select(Transaction.id)
                .where(
                    Transaction.status.in_([status.value for status in RETRYABLE_STATUSES]),
                    Transaction.next_retry_at.is_not(None),
                    Transaction.next_retry_at <= now,
                    Transaction.retry_count < self.backoff.max_attempts,
                )
                .order_by(Transaction.next_retry_at)
                .limit(limit)
            )
            return list(rows.scalars().all())

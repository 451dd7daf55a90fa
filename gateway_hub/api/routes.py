"""
API routes for the payment gateway hub.
"""
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from gateway_hub.container import GatewayServices
from gateway_hub.core.ledger import NewTransaction, TransactionFilters
from gateway_hub.database.models import Transaction
from gateway_hub.integrations.base import Provider

from .dependencies import get_services, require_admin_key, require_api_key
from .schemas import (
    ConfirmPaymentResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    DisputeRequest,
    HealthCheckResponse,
    RefundRequest,
    RefundResponse,
    RetrySweepResponse,
    StatusUpdateRequest,
    TokenizeRequest,
    TokenizeResponse,
    TransactionListResponse,
    TransactionResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(
    prefix="/payments", tags=["payments"], dependencies=[Depends(require_api_key)]
)
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])
monitoring_router = APIRouter(tags=["monitoring"])


def _transaction_view(transaction: Transaction) -> TransactionResponse:
    return TransactionResponse.model_validate(transaction.to_dict())


# ----------------------------------------------------------------------
# Tokens
# ----------------------------------------------------------------------


@payment_router.post(
    "/tokens",
    response_model=TokenizeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Tokenize a payment method",
)
async def create_token(
    request: TokenizeRequest,
    services: GatewayServices = Depends(get_services),
) -> Dict[str, Any]:
    """Vault a payment method; only the token id and masked data are returned."""
    return await services.tokenization.tokenize(request.to_payload())


@payment_router.delete(
    "/tokens/{token_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a payment method token",
)
async def delete_token(
    token_id: str,
    services: GatewayServices = Depends(get_services),
) -> Response:
    await services.tokenization.delete_token(token_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------


@payment_router.post(
    "",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment",
    description="Create a transaction and start it with the provider",
)
async def create_payment(
    request: CreatePaymentRequest,
    services: GatewayServices = Depends(get_services),
) -> CreatePaymentResponse:
    """Create a new payment."""
    logger.info(
        "api_create_payment_request",
        provider=request.provider,
        amount=str(request.amount),
        currency=request.currency,
    )

    result = await services.ledger.create_transaction(
        NewTransaction(
            amount=request.amount,
            currency=request.currency,
            provider=request.provider,
            payment_method=request.payment_method,
            description=request.description,
            customer_id=request.customer_id,
            customer_email=request.customer_email,
            return_url=request.return_url,
            cancel_url=request.cancel_url,
            metadata=request.metadata or {},
        )
    )

    transaction = result.transaction
    logger.info(
        "api_create_payment_success",
        transaction_id=str(transaction.id),
        status=transaction.status,
    )
    return CreatePaymentResponse(
        transaction_id=str(transaction.id),
        status=transaction.status,
        provider_transaction_id=transaction.provider_transaction_id,
        client_secret=result.client_secret,
        approval_url=result.approval_url,
        requires_action=result.requires_action,
    )


@payment_router.get(
    "",
    response_model=TransactionListResponse,
    summary="List payments",
)
async def list_payments(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    provider: Optional[str] = Query(default=None),
    customer_id: Optional[str] = Query(default=None, alias="customerId"),
    from_date: Optional[datetime] = Query(default=None, alias="fromDate"),
    to_date: Optional[datetime] = Query(default=None, alias="toDate"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    services: GatewayServices = Depends(get_services),
) -> TransactionListResponse:
    result = await services.ledger.list_transactions(
        TransactionFilters(
            status=status_filter,
            provider=provider,
            customer_id=customer_id,
            from_date=from_date,
            to_date=to_date,
        ),
        page=page,
        limit=limit,
    )
    return TransactionListResponse(
        transactions=[_transaction_view(t) for t in result["transactions"]],
        pagination=result["pagination"],
    )


@payment_router.get(
    "/provider/{provider_transaction_id}",
    response_model=TransactionResponse,
    summary="Look up a payment by provider id",
)
async def get_payment_by_provider_id(
    provider_transaction_id: str,
    provider: Optional[Provider] = Query(default=None),
    services: GatewayServices = Depends(get_services),
) -> TransactionResponse:
    transaction = await services.ledger.get_by_provider_transaction_id(
        provider_transaction_id, provider.value if provider else None
    )
    return _transaction_view(transaction)


@payment_router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get payment",
)
async def get_payment(
    transaction_id: str,
    services: GatewayServices = Depends(get_services),
) -> TransactionResponse:
    """Get a payment by id."""
    return _transaction_view(await services.ledger.get_transaction(transaction_id))


@payment_router.post(
    "/{transaction_id}/confirm",
    response_model=ConfirmPaymentResponse,
    summary="Confirm a payment",
)
async def confirm_payment(
    transaction_id: str,
    services: GatewayServices = Depends(get_services),
) -> ConfirmPaymentResponse:
    transaction = await services.ledger.confirm_transaction(transaction_id)
    return ConfirmPaymentResponse(
        transaction_id=str(transaction.id),
        status=transaction.status,
        provider_transaction_id=transaction.provider_transaction_id,
    )


@payment_router.post(
    "/{transaction_id}/refund",
    response_model=RefundResponse,
    summary="Refund a payment",
    description="Create a full or partial refund for a payment",
)
async def refund_payment(
    transaction_id: str,
    request: RefundRequest,
    services: GatewayServices = Depends(get_services),
) -> RefundResponse:
    """Refund a payment."""
    logger.info(
        "api_refund_payment_request",
        transaction_id=transaction_id,
        amount=str(request.amount) if request.amount is not None else None,
        reason=request.reason,
    )
    transaction, refund = await services.ledger.refund_transaction(
        transaction_id, amount=request.amount, reason=request.reason
    )
    return RefundResponse(
        transaction_id=str(transaction.id),
        status=transaction.status,
        refund_id=refund.refund_id,
        amount=refund.amount,
        refunded_amount=transaction.refunded_amount,
    )


@payment_router.post(
    "/{transaction_id}/status",
    response_model=TransactionResponse,
    summary="Update payment status",
    dependencies=[Depends(require_admin_key)],
)
async def update_payment_status(
    transaction_id: str,
    request: StatusUpdateRequest,
    services: GatewayServices = Depends(get_services),
) -> TransactionResponse:
    """Internal status mutation, validated against the state machine."""
    transaction = await services.ledger.update_transaction_status(
        transaction_id, request.status, request.metadata, source="api"
    )
    return _transaction_view(transaction)


@payment_router.post(
    "/{transaction_id}/dispute",
    response_model=TransactionResponse,
    summary="Record a dispute",
    dependencies=[Depends(require_admin_key)],
)
async def dispute_payment(
    transaction_id: str,
    request: DisputeRequest,
    services: GatewayServices = Depends(get_services),
) -> TransactionResponse:
    transaction = await services.ledger.record_dispute(
        transaction_id,
        reason=request.dispute_reason,
        amount=request.dispute_amount,
        metadata_patch=request.metadata,
        source="api",
    )
    return _transaction_view(transaction)


# ----------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------


async def _receive_webhook(provider: Provider, request: Request, services: GatewayServices) -> Any:
    body = await request.body()
    result = await services.webhook_processor.handle_delivery(
        provider.value, dict(request.headers), body
    )
    return WebhookResponse(
        received=result["status"] != "invalid_signature",
        status=result["status"],
        event_id=result["event_id"],
    )


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Handle Stripe webhook events",
)
async def stripe_webhook(
    request: Request,
    services: GatewayServices = Depends(get_services),
) -> Any:
    """
    Handle Stripe webhook events.

    Verifies the ``Stripe-Signature`` header and processes each event once.
    """
    return await _receive_webhook(Provider.STRIPE, request, services)


@webhook_router.post(
    "/paypal",
    response_model=WebhookResponse,
    summary="PayPal webhook endpoint",
    description="Handle PayPal webhook events",
)
async def paypal_webhook(
    request: Request,
    services: GatewayServices = Depends(get_services),
) -> Any:
    """Handle PayPal webhook events, verified through PayPal's verification API."""
    return await _receive_webhook(Provider.PAYPAL, request, services)


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------


@admin_router.post(
    "/transactions/{transaction_id}/reconcile",
    response_model=TransactionResponse,
    summary="Reconcile a transaction",
    description="Pull the provider's current status and apply it",
)
async def reconcile_transaction(
    transaction_id: str,
    services: GatewayServices = Depends(get_services),
) -> TransactionResponse:
    transaction = await services.ledger.reconcile_transaction(transaction_id)
    logger.info("api_reconciliation_completed", transaction_id=transaction_id, status=transaction.status)
    return _transaction_view(transaction)


@admin_router.post(
    "/retry-sweep",
    response_model=RetrySweepResponse,
    summary="Run retry sweep",
    description="Run the transaction retry and failed-event replay duties once",
)
async def run_retry_sweep(
    services: GatewayServices = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.retry_scheduler.run_once()
    logger.info("api_retry_sweep_completed", **{k: v["attempted"] for k, v in result.items()})
    return result


# ----------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: GatewayServices = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(services: GatewayServices = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(services: GatewayServices = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

"""
Pydantic schemas for API request/response models.

Bodies use camelCase on the wire; snake_case names are accepted as well.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class APIModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreatePaymentRequest(APIModel):
    """Request schema for creating a payment."""

    amount: Decimal = Field(..., gt=0, decimal_places=2, description="Amount in major units")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code (e.g., USD)")
    provider: str = Field(..., description="Payment provider (stripe/paypal)")
    payment_method: str = Field(..., min_length=1, description="Payment method token id")
    description: Optional[str] = Field(default=None, max_length=500)
    customer_id: Optional[str] = Field(default=None, description="Customer identifier")
    customer_email: Optional[str] = Field(default=None, description="Customer email for receipts")
    return_url: Optional[str] = Field(default=None, description="Redirect after approval (PayPal)")
    cancel_url: Optional[str] = Field(default=None, description="Redirect after cancel (PayPal)")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Optional client metadata")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if not v.isalpha():
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        return v.lower()

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "amount": "99.99",
                    "currency": "USD",
                    "provider": "stripe",
                    "paymentMethod": "tok_3f2a9c4e1b7d4c2a9e5f6a7b8c9d0e1f",
                    "customerId": "cust_123",
                    "metadata": {"order_id": "order_123"},
                }
            ]
        },
    )


class CreatePaymentResponse(APIModel):
    """Response schema for payment creation."""

    transaction_id: str
    status: str
    provider_transaction_id: Optional[str] = None
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    requires_action: bool = False


class ConfirmPaymentResponse(APIModel):
    """Response schema for payment confirmation."""

    transaction_id: str
    status: str
    provider_transaction_id: Optional[str] = None


class RefundRequest(APIModel):
    """Request schema for refunding a payment."""

    amount: Optional[Decimal] = Field(
        default=None, description="Partial refund amount (full remaining amount if not specified)"
    )
    reason: Optional[str] = Field(default=None, description="Refund reason")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"amount": "30.00", "reason": "requested_by_customer"},
                {"reason": "duplicate"},
            ]
        },
    )


class RefundResponse(APIModel):
    """Response schema for refund."""

    transaction_id: str
    status: str
    refund_id: str
    amount: Decimal
    refunded_amount: Decimal


class StatusUpdateRequest(APIModel):
    """Internal status mutation."""

    status: str
    metadata: Optional[Dict[str, Any]] = None


class DisputeRequest(APIModel):
    """Internal dispute recording."""

    dispute_reason: str = Field(..., min_length=1)
    dispute_amount: Optional[Decimal] = Field(default=None, gt=0)
    metadata: Optional[Dict[str, Any]] = None


class TransactionResponse(APIModel):
    """Full transaction view."""

    id: str
    amount: Decimal
    currency: str
    status: str
    provider: str
    provider_transaction_id: Optional[str] = None
    payment_method: str
    description: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    refunded_amount: Decimal
    retry_count: int
    next_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class Pagination(APIModel):
    total: int
    page: int
    limit: int
    pages: int


class TransactionListResponse(APIModel):
    transactions: List[TransactionResponse]
    pagination: Pagination


class TokenizeRequest(APIModel):
    """
    Payment-method payload to vault.

    Cards carry either raw card fields or an existing provider payment
    method id; wallets carry the payer email.
    """

    type: str = Field(default="card", pattern="^(card|paypal)$")
    card_number: Optional[str] = Field(default=None, min_length=12, max_length=19)
    expiry_month: Optional[int] = Field(default=None, ge=1, le=12)
    expiry_year: Optional[int] = Field(default=None, ge=2000)
    cvv: Optional[str] = Field(default=None, min_length=3, max_length=4)
    cardholder_name: Optional[str] = None
    card_type: Optional[str] = None
    paypal_email: Optional[str] = None
    provider_payment_method: Optional[str] = None

    @field_validator("card_number")
    @classmethod
    def validate_card_number(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.replace(" ", "").replace("-", "")
            if not v.isdigit():
                raise ValueError("Card number must contain only digits")
        return v

    @model_validator(mode="after")
    def validate_method(self) -> "TokenizeRequest":
        if self.type == "card":
            if not (self.card_number or self.provider_payment_method):
                raise ValueError("Card payment methods need cardNumber or providerPaymentMethod")
            if self.card_number and not (self.expiry_month and self.expiry_year):
                raise ValueError("expiryMonth and expiryYear are required with cardNumber")
        elif not self.paypal_email:
            raise ValueError("PayPal payment methods need paypalEmail")
        return self

    def to_payload(self) -> Dict[str, Any]:
        """Plain payload handed to the vault."""
        return self.model_dump(exclude_none=True)


class TokenizeResponse(APIModel):
    token_id: str
    masked_data: Dict[str, Any]


class WebhookResponse(APIModel):
    """Response schema for webhook deliveries."""

    received: bool
    status: str
    event_id: Optional[str] = None


class RetrySweepResponse(APIModel):
    transactions: Dict[str, int]
    failed_events: Dict[str, int]


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")

"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    RefundRequest,
    RefundResponse,
    TransactionResponse,
)

__all__ = [
    "create_app",
    "CreatePaymentRequest",
    "CreatePaymentResponse",
    "RefundRequest",
    "RefundResponse",
    "TransactionResponse",
]

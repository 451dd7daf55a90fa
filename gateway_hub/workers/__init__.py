"""Background workers for async processing."""
from .retry_worker import start_retry_worker

__all__ = ["start_retry_worker"]

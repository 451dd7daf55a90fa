"""Database package for the payment gateway hub."""
from .connection import close_db, get_session_factory, init_db
from .models import Base, Transaction

__all__ = [
    "Base",
    "Transaction",
    "close_db",
    "get_session_factory",
    "init_db",
]

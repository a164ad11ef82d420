"""Database module for Sage Chat."""

from .database import build_engine, build_session_factory, close_db, init_db, normalize_database_url
from .models import Base, UserModel, MessageModel, CreditTransactionModel
from .repository import CreditRepository, MessageRepository

__all__ = [
    "build_engine",
    "build_session_factory",
    "close_db",
    "normalize_database_url",
    "init_db",
    "Base",
    "UserModel",
    "MessageModel",
    "CreditTransactionModel",
    "CreditRepository",
    "MessageRepository",
]

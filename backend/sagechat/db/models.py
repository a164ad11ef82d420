"""SQLAlchemy database models."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    String,
    Text,
    Integer,
    DateTime,
    ForeignKey,
    JSON,
    Index,
)
from sqlalchemy.orm import relationship

from .database import Base


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class UserModel(Base):
    """
    Database model for anonymous chat sessions.

    A user is identified only by the opaque session id the client generates
    and keeps in local storage. The credit balance lives on this row.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    session_id = Column(String(100), nullable=False, unique=True, index=True)

    credits = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    # Relationships
    messages = relationship(
        "MessageModel",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="MessageModel.created_at",
    )
    credit_transactions = relationship(
        "CreditTransactionModel",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="desc(CreditTransactionModel.created_at)",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, session_id={self.session_id}, credits={self.credits})>"


class MessageModel(Base):
    """
    Database model for a question and every sage's final answer.
    """

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    # Client-generated request id (time-based)
    message_id = Column(BigInteger, nullable=False)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    content = Column(Text, nullable=False)
    sages = Column(JSON, nullable=False)  # [persona_id, ...]
    responses = Column(JSON, nullable=False, default=dict)  # {persona_id: text}

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    user = relationship("UserModel", back_populates="messages")

    __table_args__ = (
        Index("idx_messages_user_message", "user_id", "message_id", unique=True),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, message_id={self.message_id}, user_id={self.user_id})>"


class CreditTransactionModel(Base):
    """
    Database model for credit transactions.

    Records every balance change (grants, usage, refunds, purchases). The
    optional reference is unique, so replaying a refund or a purchase
    confirmation is detected and skipped.
    """

    __tablename__ = "credit_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    amount = Column(Integer, nullable=False)  # Positive = grant, negative = usage
    type = Column(String(50), nullable=False)  # initial_grant, usage, refund, purchase
    description = Column(Text, nullable=True)

    # e.g. "usage:<session>:<message id>", "purchase:<purchase id>"
    reference = Column(String(200), nullable=True, unique=True)

    balance_after = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    user = relationship("UserModel", back_populates="credit_transactions")

    __table_args__ = (
        Index("idx_credit_transactions_created", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<CreditTransaction(id={self.id}, user_id={self.user_id}, amount={self.amount})>"

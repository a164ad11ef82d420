"""Repository pattern for database operations."""

import logging
from datetime import datetime, timezone as tz
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import UserModel, MessageModel, CreditTransactionModel
from ..models.credits import TransactionType

logger = logging.getLogger(__name__)


class CreditRepository:
    """
    Repository for sessions and their credit balances.

    Handles balance lookups, the initial grant, and recording every balance
    change as a transaction.
    """

    # Default credits for new sessions
    DEFAULT_INITIAL_CREDITS = 10

    def __init__(self, db: AsyncSession):
        self.db = db

    # ============ Session Operations ============

    async def get_user(self, session_id: str) -> Optional[UserModel]:
        """
        Get the user row for a session.

        Args:
            session_id: Opaque client session id

        Returns:
            UserModel or None if the session is unknown
        """
        result = await self.db.execute(
            select(UserModel).where(UserModel.session_id == session_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create_user(
        self,
        session_id: str,
        initial_credits: Optional[int] = None,
    ) -> UserModel:
        """
        Get a session's user, creating one with initial credits if it doesn't exist.

        Args:
            session_id: Opaque client session id
            initial_credits: Initial credit grant (defaults to DEFAULT_INITIAL_CREDITS)

        Returns:
            UserModel
        """
        user = await self.get_user(session_id)
        if user:
            return user

        credits = initial_credits if initial_credits is not None else self.DEFAULT_INITIAL_CREDITS
        user = UserModel(session_id=session_id, credits=credits)
        self.db.add(user)
        await self.db.flush()

        # Also record the initial grant transaction
        if credits > 0:
            self.db.add(CreditTransactionModel(
                user_id=user.id,
                amount=credits,
                type=TransactionType.INITIAL_GRANT.value,
                description="Welcome credits for new session",
                balance_after=credits,
            ))

        await self.db.commit()
        await self.db.refresh(user)

        logger.info(f"Created session {session_id} with {credits} credits")
        return user

    # ============ Credit Operations ============

    async def is_reference_processed(self, reference: str) -> bool:
        """
        Check if a transaction with this reference has already been recorded.

        Used to make refunds and purchase confirmations idempotent.
        """
        result = await self.db.execute(
            select(CreditTransactionModel.id)
            .where(CreditTransactionModel.reference == reference)
        )
        return result.scalar_one_or_none() is not None

    async def apply(
        self,
        user: UserModel,
        amount: int,
        transaction_type: TransactionType,
        reference: Optional[str] = None,
        description: Optional[str] = None,
    ) -> int:
        """
        Change a user's balance and record the transaction.

        Callers are responsible for checking the balance first; this only
        refuses to take it below zero.

        Args:
            user: User row to update
            amount: Positive for grants/refunds, negative for usage
            transaction_type: Kind of change
            reference: Optional unique key for idempotency
            description: Optional human-readable description

        Returns:
            The new balance
        """
        new_balance = user.credits + amount
        if new_balance < 0:
            raise ValueError(f"Balance for session {user.session_id} would go negative")

        user.credits = new_balance
        user.updated_at = datetime.now(tz.utc)

        self.db.add(CreditTransactionModel(
            user_id=user.id,
            amount=amount,
            type=transaction_type.value,
            description=description,
            reference=reference,
            balance_after=new_balance,
        ))

        await self.db.commit()
        await self.db.refresh(user)

        logger.info(
            f"Applied {amount:+d} credits ({transaction_type.value}) to session "
            f"{user.session_id}, new balance: {new_balance}"
        )
        return new_balance

    async def get_transactions(self, session_id: str, limit: int = 50) -> list[CreditTransactionModel]:
        """Get recent credit transactions for a session, newest first."""
        result = await self.db.execute(
            select(CreditTransactionModel)
            .join(UserModel, UserModel.id == CreditTransactionModel.user_id)
            .where(UserModel.session_id == session_id)
            .order_by(CreditTransactionModel.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class MessageRepository:
    """Repository for persisted questions and answers."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        user_id: str,
        message_id: int,
        content: str,
        sages: list[str],
        responses: dict[str, str],
    ) -> MessageModel:
        """Persist one question with every sage's final answer."""
        message = MessageModel(
            user_id=user_id,
            message_id=message_id,
            content=content,
            sages=sages,
            responses=responses,
        )
        self.db.add(message)
        await self.db.commit()
        await self.db.refresh(message)
        return message

    async def list_for_user(self, user_id: str, limit: int = 200) -> list[MessageModel]:
        """List a user's messages, oldest first."""
        result = await self.db.execute(
            select(MessageModel)
            .where(MessageModel.user_id == user_id)
            .order_by(MessageModel.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

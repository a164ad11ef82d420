"""Per-session credit accounting."""

import asyncio
import logging
import weakref
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.repository import CreditRepository
from ..models.credits import TransactionType
from .errors import DuplicateRequestError, InsufficientCreditsError, InvalidSessionError

logger = logging.getLogger(__name__)

# Credits charged per question, regardless of how many sages answer
CREDITS_PER_REQUEST = 1


class SessionLedger:
    """
    Credit ledger keyed by session id.

    Every mutation of one session's balance runs under that session's lock,
    so concurrent submissions from the same session can never both pass the
    balance check on a single remaining credit. Different sessions never
    contend.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        initial_credits: int = CreditRepository.DEFAULT_INITIAL_CREDITS,
    ):
        self._session_factory = session_factory
        self.initial_credits = initial_credits
        # A lock lives only while some coroutine holds or awaits it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    @staticmethod
    def _usage_reference(session_id: str, request_id: int) -> str:
        return f"usage:{session_id}:{request_id}"

    @staticmethod
    def _refund_reference(session_id: str, request_id: int) -> str:
        return f"refund:{session_id}:{request_id}"

    async def open_session(self, session_id: str) -> int:
        """Get or create a session, granting initial credits on creation. Returns the balance."""
        async with self._lock(session_id):
            async with self._session_factory() as db:
                user = await CreditRepository(db).get_or_create_user(session_id, self.initial_credits)
                return user.credits

    async def balance(self, session_id: str) -> Optional[int]:
        """Current balance, or None if the session is unknown."""
        async with self._session_factory() as db:
            user = await CreditRepository(db).get_user(session_id)
            return user.credits if user else None

    async def reserve(self, session_id: str, request_id: int) -> int:
        """
        Take one credit for a request.

        Returns:
            The balance after the reservation

        Raises:
            InvalidSessionError: Unknown session
            DuplicateRequestError: This request id was already reserved
            InsufficientCreditsError: Balance is zero
        """
        async with self._lock(session_id):
            async with self._session_factory() as db:
                repo = CreditRepository(db)
                user = await repo.get_user(session_id)
                if user is None:
                    raise InvalidSessionError()

                reference = self._usage_reference(session_id, request_id)
                if await repo.is_reference_processed(reference):
                    raise DuplicateRequestError()

                if user.credits < CREDITS_PER_REQUEST:
                    logger.warning(f"Insufficient credits for session {session_id}: has {user.credits}")
                    raise InsufficientCreditsError()

                return await repo.apply(
                    user,
                    -CREDITS_PER_REQUEST,
                    TransactionType.USAGE,
                    reference=reference,
                    description=f"Question {request_id}",
                )

    async def refund(self, session_id: str, request_id: int) -> bool:
        """
        Return the credit reserved for a request.

        Idempotent: only the first call for a reserved request changes the
        balance. Returns whether a refund was applied.
        """
        async with self._lock(session_id):
            async with self._session_factory() as db:
                repo = CreditRepository(db)
                user = await repo.get_user(session_id)
                if user is None:
                    logger.error(f"Cannot refund request {request_id}: unknown session {session_id}")
                    return False

                if not await repo.is_reference_processed(self._usage_reference(session_id, request_id)):
                    logger.warning(f"Refund for request {request_id} skipped: nothing was reserved")
                    return False

                reference = self._refund_reference(session_id, request_id)
                if await repo.is_reference_processed(reference):
                    logger.info(f"Request {request_id} already refunded, skipping")
                    return False

                await repo.apply(
                    user,
                    CREDITS_PER_REQUEST,
                    TransactionType.REFUND,
                    reference=reference,
                    description=f"Refund for question {request_id}",
                )
                return True

    async def grant(
        self,
        session_id: str,
        amount: int,
        reference: Optional[str] = None,
        transaction_type: TransactionType = TransactionType.PURCHASE,
        description: Optional[str] = None,
    ) -> int:
        """
        Add credits to a session (e.g. a confirmed purchase).

        A grant whose reference was already recorded is skipped. Returns the
        balance after the grant.
        """
        if amount <= 0:
            raise ValueError("Grant amount must be positive")

        async with self._lock(session_id):
            async with self._session_factory() as db:
                repo = CreditRepository(db)
                user = await repo.get_user(session_id)
                if user is None:
                    raise InvalidSessionError()

                if reference and await repo.is_reference_processed(reference):
                    logger.info(f"Grant {reference} already processed, skipping")
                    return user.credits

                return await repo.apply(
                    user,
                    amount,
                    transaction_type,
                    reference=reference,
                    description=description,
                )

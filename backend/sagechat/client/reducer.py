"""Client-side folding of the multiplexed frame stream into per-sage answers.

The reducer owns the local view of a session: the message list, the
optimistic credit display and, for every outstanding request, an explicit
phase per sage. It performs no I/O of its own beyond the optional store.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

from ..models.persona import UNAVAILABLE_PLACEHOLDER
from ..models.protocol import (
    CompleteFrame,
    DoneFrame,
    ErrorFrame,
    FailedFrame,
    OutboundFrame,
    StartChatFrame,
    StreamFrame,
)
from .config import ClientSettings, get_client_settings
from .messages import ClientMessage
from .storage import SessionStore

logger = logging.getLogger(__name__)


class NoCreditsError(Exception):
    """Raised when submitting with no local credits left."""

    def __init__(self):
        super().__init__("No credits remaining")


class SagePhase(str, Enum):
    """Where one sage is within one request."""
    WAITING = "waiting"    # Requested, nothing received yet
    TYPING = "typing"      # At least one chunk received
    SETTLED = "settled"    # Final text (or no answer) known


class RequestPhase(str, Enum):
    """Lifecycle of one submitted request."""
    SENT = "sent"
    ALL_SETTLED = "all_settled"
    FAILED = "failed"


@dataclass
class RequestState:
    """Per-request bookkeeping."""
    message_id: int
    phases: dict[str, SagePhase]
    phase: RequestPhase = RequestPhase.SENT
    completed: set[str] = field(default_factory=set)
    last_activity: float = 0.0
    error: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.phase is RequestPhase.SENT


class ClientStreamReducer:
    """
    Folds server frames into the session's messages.

    Chunks are appended, ``complete`` payloads replace, and once a sage is
    settled any later frame for it is ignored. A request-level error removes
    the optimistic message and gives the credit back.
    """

    def __init__(
        self,
        session_id: str,
        credits: int = 10,
        messages: Optional[Iterable[ClientMessage]] = None,
        store: Optional[SessionStore] = None,
        sage_names: Optional[dict[str, str]] = None,
        reset_credits: int = 25,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id
        self.credits = credits
        self.messages: list[ClientMessage] = list(messages or [])
        self.store = store
        self.sage_names = dict(sage_names or {})
        self.reset_credits = reset_credits
        self._clock = clock
        self._requests: dict[int, RequestState] = {}
        self._last_id = max((m.id for m in self.messages), default=0)

    @classmethod
    def restore(
        cls,
        store: SessionStore,
        default_credits: int = 10,
        **kwargs,
    ) -> "ClientStreamReducer":
        """
        Build a reducer from what the store kept for its session.

        Requests that were still open when the store was last written can no
        longer receive frames; they are resolved as if the connection dropped.
        """
        reducer = cls(
            session_id=store.session_id,
            credits=store.load_credits(default_credits),
            messages=store.load_messages(),
            store=store,
            **kwargs,
        )
        reducer._recover_interrupted(store.load_pending())
        return reducer

    @classmethod
    def from_settings(
        cls,
        settings: Optional[ClientSettings] = None,
        session_id: Optional[str] = None,
        **kwargs,
    ) -> "ClientStreamReducer":
        """Restore the configured session, creating the session id on first run."""
        settings = settings or get_client_settings()
        return cls.restore(
            SessionStore.open(settings.storage_dir, session_id),
            default_credits=settings.default_credits,
            reset_credits=settings.reset_credits,
            **kwargs,
        )

    def _recover_interrupted(self, pending: dict[int, list[str]]) -> None:
        for message_id, completed in pending.items():
            message = self.message(message_id)
            if message is None:
                continue

            done = {sid for sid in completed if sid in message.sages}
            state = RequestState(
                message_id=message_id,
                phases={sid: SagePhase.SETTLED if sid in done else SagePhase.WAITING for sid in message.sages},
                completed=done,
                last_activity=self._clock(),
            )
            self._requests[message_id] = state
            self._settle_if_done(state)
            self.connection_lost(message_id, reason="Interrupted before the sages finished")

        if pending:
            self._persist()

    # ============ Queries ============

    def message(self, message_id: int) -> Optional[ClientMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def request(self, message_id: int) -> Optional[RequestState]:
        return self._requests.get(message_id)

    def phase(self, message_id: int, sage_id: str) -> Optional[SagePhase]:
        state = self._requests.get(message_id)
        return state.phases.get(sage_id) if state else None

    def is_typing(self, message_id: int, sage_id: str) -> bool:
        return self.phase(message_id, sage_id) is SagePhase.TYPING

    def is_settled(self, message_id: int) -> bool:
        """True once the request reached a final phase (all settled or failed)."""
        state = self._requests.get(message_id)
        return state is not None and not state.is_open

    @property
    def open_requests(self) -> list[int]:
        return [mid for mid, state in self._requests.items() if state.is_open]

    # ============ Submission ============

    def _next_id(self) -> int:
        # Millisecond timestamps, kept strictly increasing
        candidate = int(time.time() * 1000)
        self._last_id = max(candidate, self._last_id + 1)
        return self._last_id

    def submit(self, content: str, sage_ids: list[str]) -> ClientMessage:
        """
        Record a new question optimistically and take one local credit.

        Raises:
            NoCreditsError: Local credits are exhausted
        """
        if self.credits <= 0:
            raise NoCreditsError()

        sage_ids = list(dict.fromkeys(sage_ids))
        message = ClientMessage(id=self._next_id(), content=content, sages=sage_ids)
        self.messages.append(message)
        self.credits -= 1
        self._requests[message.id] = RequestState(
            message_id=message.id,
            phases={sid: SagePhase.WAITING for sid in sage_ids},
            last_activity=self._clock(),
        )
        self._persist()
        return message

    def start_chat_frame(self, message_id: int) -> StartChatFrame:
        message = self.message(message_id)
        if message is None:
            raise KeyError(message_id)
        return StartChatFrame(
            content=message.content,
            selected_sages=message.sages,
            message_id=message.id,
            session_id=self.session_id,
        )

    # ============ Frames ============

    def apply(self, frame: OutboundFrame) -> bool:
        """Fold one frame into the state. Returns False if it was ignored."""
        if isinstance(frame, DoneFrame):
            return self._apply_done(frame)

        if isinstance(frame, ErrorFrame):
            if frame.message_id is None:
                logger.warning(f"Server error without a request: {frame.message}")
                return False
            state = self._requests.get(frame.message_id)
            if state is None or not state.is_open:
                return False
            self.fail_request(frame.message_id, frame.message)
            return True

        state = self._requests.get(frame.message_id)
        if state is None or not state.is_open:
            return False

        phase = state.phases.get(frame.sage_id)
        if phase is None or phase is SagePhase.SETTLED:
            # Not requested, or a late frame for a sage that is already done
            return False

        message = self.message(frame.message_id)
        state.last_activity = self._clock()

        if isinstance(frame, StreamFrame):
            message.responses[frame.sage_id] = message.responses.get(frame.sage_id, "") + frame.chunk
            state.phases[frame.sage_id] = SagePhase.TYPING
            return True

        if isinstance(frame, CompleteFrame):
            message.responses[frame.sage_id] = frame.response
            state.completed.add(frame.sage_id)
        elif isinstance(frame, FailedFrame):
            message.responses.pop(frame.sage_id, None)
        else:
            return False

        state.phases[frame.sage_id] = SagePhase.SETTLED
        self._settle_if_done(state)
        self._persist()
        return True

    def _apply_done(self, frame: DoneFrame) -> bool:
        state = self._requests.get(frame.message_id)
        if state is None:
            return False

        if state.is_open:
            # Every sage is terminal on the server; anything still missing never answers
            for sage_id, phase in state.phases.items():
                if phase is not SagePhase.SETTLED:
                    state.phases[sage_id] = SagePhase.SETTLED
            self._settle_if_done(state)

        if frame.balance is not None:
            self.credits = frame.balance
        self._persist()
        return True

    def apply_final(self, message_id: int, responses: dict[str, str], balance: Optional[int] = None) -> bool:
        """Settle a request from the synchronous fallback's final answers."""
        state = self._requests.get(message_id)
        if state is None or not state.is_open:
            return False

        message = self.message(message_id)
        for sage_id in state.phases:
            if sage_id in responses:
                message.responses[sage_id] = responses[sage_id]
                state.completed.add(sage_id)
            state.phases[sage_id] = SagePhase.SETTLED
        self._settle_if_done(state)

        if balance is not None:
            self.credits = balance
        self._persist()
        return True

    def _settle_if_done(self, state: RequestState) -> None:
        if all(phase is SagePhase.SETTLED for phase in state.phases.values()):
            state.phase = RequestPhase.ALL_SETTLED

    # ============ Failure handling ============

    def fail_request(self, message_id: int, reason: str = "") -> None:
        """Roll back a request: drop its message and give the credit back."""
        state = self._requests.get(message_id)
        if state is None or not state.is_open:
            return

        state.phase = RequestPhase.FAILED
        state.error = reason or "Request failed"
        self.messages = [m for m in self.messages if m.id != message_id]
        self.credits += 1
        logger.info(f"Request {message_id} rolled back: {state.error}")
        self._persist()

    def placeholder(self, sage_id: str) -> str:
        name = self.sage_names.get(sage_id, sage_id)
        return UNAVAILABLE_PLACEHOLDER.format(name=name)

    def connection_lost(self, message_id: Optional[int] = None, reason: str = "Connection lost") -> None:
        """
        Resolve open requests after the channel dropped.

        A request that already has a completed answer keeps it and the other
        sages get the placeholder; one with no completed answer is rolled back.
        """
        targets = [message_id] if message_id is not None else self.open_requests
        for mid in targets:
            state = self._requests.get(mid)
            if state is None or not state.is_open:
                continue

            if not state.completed:
                self.fail_request(mid, reason)
                continue

            message = self.message(mid)
            for sage_id, phase in state.phases.items():
                if phase is not SagePhase.SETTLED:
                    message.responses[sage_id] = self.placeholder(sage_id)
                    state.phases[sage_id] = SagePhase.SETTLED
            self._settle_if_done(state)
            logger.info(f"Request {mid} kept {len(state.completed)} answers after: {reason}")
            self._persist()

    def expire_idle(self, idle_timeout: float, now: Optional[float] = None) -> list[int]:
        """Give up on open requests with no frame for ``idle_timeout`` seconds."""
        now = self._clock() if now is None else now
        expired = [
            mid for mid, state in self._requests.items()
            if state.is_open and now - state.last_activity >= idle_timeout
        ]
        for mid in expired:
            self.connection_lost(mid, reason="Timed out waiting for the sages")
        return expired

    # ============ Session ============

    def sync_credits(self, balance: int) -> None:
        self.credits = balance
        self._persist()

    def reset(self) -> None:
        """Clear history and restore the reset credit amount."""
        self.messages = []
        self._requests.clear()
        self.credits = self.reset_credits
        if self.store:
            self.store.clear_messages()
        self._persist()

    def _persist(self) -> None:
        if self.store is None:
            return
        self.store.save_messages(self.messages)
        self.store.save_credits(self.credits)
        self.store.save_pending({
            mid: sorted(state.completed) for mid, state in self._requests.items() if state.is_open
        })

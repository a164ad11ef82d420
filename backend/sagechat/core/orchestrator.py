"""Fan-out orchestration of one question across several sages.

One request becomes one generation task per selected sage. The tasks run
concurrently and push frames into a shared queue; ``handle`` yields those
frames in the order they are produced, so a slow sage never holds back a
fast one. When every task is terminal the request is settled exactly once:
the credit is refunded if no sage managed to answer, the message is
persisted, and a final ``done`` frame is emitted.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from contextlib import aclosing
from typing import AsyncIterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.repository import CreditRepository, MessageRepository
from ..models.chat import AgentState, AgentTask, ChatRequest
from ..models.persona import Persona
from ..models.protocol import (
    CompleteFrame,
    DoneFrame,
    ErrorFrame,
    FailedFrame,
    FailureReason,
    OutboundFrame,
    StreamFrame,
)
from ..providers.base import ContentRejected, EmptyResponse, GenerationClient, GenerationError, Transient
from .backend_health import BackendHealthTracker
from .errors import InvalidSessionError, MalformedRequestError, NoValidPersonasError, RequestError
from .ledger import SessionLedger
from .personas import PersonaRegistry, build_prompt, rejected_placeholder, unavailable_placeholder

logger = logging.getLogger(__name__)


@dataclass
class RequestRun:
    """Live state of one accepted request."""
    request: ChatRequest
    personas: list[Persona]
    tasks: dict[str, AgentTask]
    unknown: list[str] = field(default_factory=list)
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    responses: dict[str, str] = field(default_factory=dict)
    workers: list[asyncio.Task] = field(default_factory=list)
    settlement: Optional[asyncio.Task] = None


class FanoutOrchestrator:
    """
    Runs each request's sages concurrently and multiplexes their output.

    The orchestrator is shared by every connection. It holds no per-session
    state of its own; credit accounting goes through the SessionLedger.
    """

    def __init__(
        self,
        registry: PersonaRegistry,
        generation_client: GenerationClient,
        ledger: SessionLedger,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        health: Optional[BackendHealthTracker] = None,
    ):
        self.registry = registry
        self.generation_client = generation_client
        self.ledger = ledger
        self.session_factory = session_factory
        self.health = health or BackendHealthTracker()

        # Settlements still running after their consumer went away
        self._background: set[asyncio.Task] = set()

    async def handle(self, request: ChatRequest) -> AsyncIterator[OutboundFrame]:
        """
        Serve one request, yielding frames until it is settled.

        Yields exactly one ``error`` frame for a rejected request; otherwise
        ``failed`` frames for unknown sages, interleaved ``stream`` frames,
        one ``complete`` frame per dispatched sage and a final ``done`` frame.

        Closing the iterator early stops the frames but not the generation:
        the tasks run to completion and the request is still settled.
        """
        try:
            run = await self.admit(request)
        except RequestError as e:
            logger.warning(f"Request {request.request_id} rejected: {e.message}")
            yield ErrorFrame(message=e.message, message_id=request.request_id)
            return
        except Exception as e:
            logger.exception(f"Request {request.request_id} failed during admission: {e}")
            yield ErrorFrame(message="Internal server error", message_id=request.request_id)
            return

        async with aclosing(self.frames(run)) as frames:
            async for frame in frames:
                yield frame

    async def admit(self, request: ChatRequest) -> RequestRun:
        """
        Validate a request, reserve its credit and dispatch one task per sage.

        Checks run in a fixed order: required fields, session, sage
        resolution, then the credit reservation. Nothing is dispatched unless
        every check passes.

        Raises:
            RequestError: The request cannot be served at all
        """
        logger.info(
            f"Request {request.request_id} from session {request.session_id} "
            f"for sages {request.persona_ids}"
        )

        if not request.user_text.strip() or not request.session_id:
            raise MalformedRequestError()

        if await self.ledger.balance(request.session_id) is None:
            raise InvalidSessionError()

        personas, unknown = self.registry.resolve(request.persona_ids)
        if unknown:
            logger.warning(f"Request {request.request_id}: unknown sages {unknown}")
        if not personas:
            raise NoValidPersonasError()

        balance = await self.ledger.reserve(request.session_id, request.request_id)
        logger.info(f"Reserved 1 credit for request {request.request_id}, balance now {balance}")

        run = RequestRun(
            request=request,
            personas=personas,
            unknown=unknown,
            tasks={p.id: AgentTask(request_id=request.request_id, persona_id=p.id) for p in personas},
        )

        # Dispatch in selection order; completion order is whatever the backend gives us
        run.workers = [
            asyncio.create_task(
                self._run_agent(run, persona),
                name=f"sage-{request.request_id}-{persona.id}",
            )
            for persona in personas
        ]
        return run

    async def frames(self, run: RequestRun) -> AsyncIterator[OutboundFrame]:
        """Yield an admitted request's frames as they are produced, ending with ``done``."""
        request_id = run.request.request_id
        try:
            for persona_id in run.unknown:
                yield FailedFrame(
                    sage_id=persona_id,
                    reason=FailureReason.UNKNOWN_PERSONA,
                    message_id=request_id,
                )

            finished = 0
            while finished < len(run.workers):
                frame = await run.queue.get()
                if frame is None:
                    finished += 1
                    continue
                yield frame

            done = await asyncio.shield(self._ensure_settlement(run))
            yield done
        finally:
            # Consumer gone (channel closed or cancelled): settle in the background
            self._ensure_settlement(run)

    async def _run_agent(
        self,
        run: RequestRun,
        persona: Persona,
    ) -> None:
        """Generate one sage's answer, pushing frames to the queue."""
        request_id = run.request.request_id
        task = run.tasks[persona.id]
        prompt = build_prompt(persona, run.request.user_text)

        try:
            if self.generation_client.supports_streaming:
                async for chunk in self.generation_client.generate_stream(prompt):
                    if not chunk:
                        continue
                    task.append(chunk)
                    run.queue.put_nowait(StreamFrame(sage_id=persona.id, chunk=chunk, message_id=request_id))
                text = task.accumulated_text
            else:
                text = await self.generation_client.generate(prompt)

            if not text.strip():
                raise EmptyResponse("Backend returned no text")

            task.complete(text)
            self.health.record_success()
            response = text
        except ContentRejected as e:
            logger.warning(f"Request {request_id}: {persona.id} answer rejected by safety policy: {e}")
            task.fail(e.kind)
            self.health.record_failure(e.kind)
            response = rejected_placeholder(persona)
        except GenerationError as e:
            logger.error(f"Request {request_id}: {persona.id} generation failed ({e.kind}): {e}")
            task.fail(e.kind)
            self.health.record_failure(e.kind)
            response = unavailable_placeholder(persona)
        except Exception as e:
            logger.exception(f"Request {request_id}: {persona.id} generation crashed: {e}")
            task.fail(Transient.kind)
            self.health.record_failure(Transient.kind)
            response = unavailable_placeholder(persona)
        else:
            logger.info(f"Request {request_id}: {persona.id} answered ({len(text)} chars)")

        try:
            run.responses[persona.id] = response
            run.queue.put_nowait(CompleteFrame(sage_id=persona.id, response=response, message_id=request_id))
        finally:
            run.queue.put_nowait(None)

    def _ensure_settlement(self, run: RequestRun) -> asyncio.Task:
        """Start the request's settlement once; later calls return the same task."""
        if run.settlement is None:
            run.settlement = asyncio.create_task(
                self._settle(run),
                name=f"settle-{run.request.request_id}",
            )
            self._background.add(run.settlement)
            run.settlement.add_done_callback(self._settlement_finished)
        return run.settlement

    def _settlement_finished(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Settlement {task.get_name()} failed: {task.exception()!r}")

    async def _settle(self, run: RequestRun) -> DoneFrame:
        """Wait for every sage, then refund on total failure and persist the message."""
        request = run.request
        await asyncio.gather(*run.workers, return_exceptions=True)

        for task in run.tasks.values():
            if not task.is_terminal:
                task.fail("cancelled")

        served = [pid for pid, task in run.tasks.items() if task.state is AgentState.COMPLETED]
        refunded = False
        if not served:
            logger.warning(f"Request {request.request_id}: every sage failed, refunding")
            refunded = await self.ledger.refund(request.session_id, request.request_id)

        await self._persist(run)
        balance = await self.ledger.balance(request.session_id)

        logger.info(
            f"Request {request.request_id} settled: served={served} refunded={refunded} balance={balance}"
        )
        return DoneFrame(
            message_id=request.request_id,
            served=served,
            refunded=refunded,
            balance=balance,
        )

    async def _persist(self, run: RequestRun) -> None:
        if self.session_factory is None:
            return

        request = run.request
        try:
            async with self.session_factory() as db:
                user = await CreditRepository(db).get_user(request.session_id)
                if user is None:
                    return
                await MessageRepository(db).create(
                    user_id=user.id,
                    message_id=request.request_id,
                    content=request.user_text,
                    sages=[p.id for p in run.personas],
                    responses=dict(run.responses),
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist message {request.request_id}: {e}")

    async def drain(self) -> None:
        """Wait for every background settlement to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

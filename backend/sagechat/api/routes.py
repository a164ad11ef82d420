"""HTTP API routes: sessions, the synchronous chat fallback, history and credits."""

import logging
from contextlib import aclosing
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import InvalidSessionError, RequestError
from ..core.ledger import SessionLedger
from ..core.orchestrator import FanoutOrchestrator
from ..core.personas import PersonaRegistry
from ..core.security import CHAT_RATE_LIMIT, PURCHASE_RATE_LIMIT, SESSION_RATE_LIMIT, limiter
from ..db.repository import CreditRepository, MessageRepository
from ..models.chat import ChatHTTPRequest, ChatRequest, MessageRecord
from ..models.credits import CREDIT_PRODUCTS, PurchaseConfirmation, SessionBalance, SessionRequest, TransactionType
from ..models.persona import PersonaSummary
from ..models.protocol import CompleteFrame, DoneFrame

router = APIRouter()
logger = logging.getLogger(__name__)

ALL_FAILED_MESSAGE = "The sages are temporarily unavailable. Please try again in a moment."


# ============ Dependencies ============


def get_orchestrator(request: Request) -> FanoutOrchestrator:
    return request.app.state.orchestrator


def get_ledger(request: Request) -> SessionLedger:
    return request.app.state.ledger


def get_registry(request: Request) -> PersonaRegistry:
    return request.app.state.registry


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Get a database session from the application's session factory."""
    async with request.app.state.session_factory() as session:
        yield session


# ============ Sessions ============


@router.post("/session", response_model=SessionBalance)
@limiter.limit(SESSION_RATE_LIMIT)
async def open_session(
    request: Request,
    body: SessionRequest,
    ledger: SessionLedger = Depends(get_ledger),
) -> SessionBalance:
    """Get or create a session. New sessions receive the initial credit grant."""
    credits = await ledger.open_session(body.session_id)
    return SessionBalance(session_id=body.session_id, credits=credits)


@router.get("/session/{session_id}", response_model=SessionBalance)
async def get_session(
    session_id: str,
    ledger: SessionLedger = Depends(get_ledger),
) -> SessionBalance:
    """Get a session's current balance."""
    credits = await ledger.balance(session_id)
    if credits is None:
        raise HTTPException(status_code=401, detail="Invalid session")
    return SessionBalance(session_id=session_id, credits=credits)


# ============ Chat ============


@router.post("/chat")
@limiter.limit(CHAT_RATE_LIMIT)
async def chat(
    request: Request,
    orchestrator: FanoutOrchestrator = Depends(get_orchestrator),
):
    """
    Ask several sages one question and wait for all of them.

    Returns only each sage's final text. Sages that failed are answered by a
    placeholder; the request fails with 500 only if every sage failed.

    Any malformed body, wrongly typed fields included, is a 400 with an
    ``error`` body.
    """
    try:
        body = ChatHTTPRequest.model_validate(await request.json())
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Missing required fields"})

    if not body.content or body.selected_sages is None or body.message_id is None or not body.session_id:
        return JSONResponse(status_code=400, content={"error": "Missing required fields"})

    chat_request = ChatRequest(
        request_id=body.message_id,
        session_id=body.session_id,
        user_text=body.content,
        persona_ids=body.selected_sages,
    )

    try:
        run = await orchestrator.admit(chat_request)
    except RequestError as e:
        logger.warning(f"Chat request {body.message_id} rejected: {e.message}")
        return JSONResponse(status_code=e.status_code, content={"error": e.message})

    responses: dict[str, str] = {}
    done = None
    async with aclosing(orchestrator.frames(run)) as frames:
        async for frame in frames:
            if isinstance(frame, CompleteFrame):
                responses[frame.sage_id] = frame.response
            elif isinstance(frame, DoneFrame):
                done = frame

    if done is None or not done.served:
        logger.error(f"Chat request {body.message_id}: every sage failed")
        return JSONResponse(status_code=500, content={"error": ALL_FAILED_MESSAGE})

    return {
        "responses": responses,
        "messageId": body.message_id,
        "balance": done.balance,
    }


@router.get("/messages/{session_id}", response_model=list[MessageRecord])
async def get_messages(
    session_id: str,
    db: AsyncSession = Depends(get_db),
) -> list[MessageRecord]:
    """List a session's persisted questions and answers, oldest first."""
    user = await CreditRepository(db).get_user(session_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid session")

    messages = await MessageRepository(db).list_for_user(user.id)
    return [MessageRecord.model_validate(m) for m in messages]


@router.get("/sages", response_model=list[PersonaSummary])
async def list_sages(registry: PersonaRegistry = Depends(get_registry)) -> list[PersonaSummary]:
    """List the sage catalogue."""
    return registry.summaries()


# ============ Credits ============


@router.post("/credits/purchase", response_model=SessionBalance)
@limiter.limit(PURCHASE_RATE_LIMIT)
async def confirm_purchase(
    request: Request,
    body: PurchaseConfirmation,
    ledger: SessionLedger = Depends(get_ledger),
) -> SessionBalance:
    """
    Credit a confirmed purchase of a credit pack.

    Confirmations are keyed by purchase id; repeating one returns the current
    balance without granting again.
    """
    product = CREDIT_PRODUCTS.get(body.product_id)
    if product is None:
        raise HTTPException(status_code=400, detail="Invalid product")

    try:
        credits = await ledger.grant(
            body.session_id,
            product.credits,
            reference=f"purchase:{body.purchase_id}",
            transaction_type=TransactionType.PURCHASE,
            description=f"Purchased {body.product_id}",
        )
    except InvalidSessionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    logger.info(f"Purchase {body.purchase_id} confirmed for session {body.session_id}: {body.product_id}")
    return SessionBalance(session_id=body.session_id, credits=credits)

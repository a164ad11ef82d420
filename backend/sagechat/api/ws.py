"""WebSocket chat channel.

Protocol:

1. Client connects to ``/ws``
2. Client sends ``start_chat`` frames; the first one binds the connection to
   its session, superseding any older connection for that session
3. Server streams ``stream``/``complete``/``failed`` frames per sage and one
   ``done`` (or ``error``) frame per request

Several requests may be in flight on one connection; their frames interleave
and are told apart by ``messageId``.
"""

import asyncio
import json
import logging
from contextlib import aclosing

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..core.channels import Channel, ChannelRegistry
from ..core.orchestrator import FanoutOrchestrator
from ..models.chat import ChatRequest
from ..models.protocol import ErrorFrame, FrameType, StartChatFrame

router = APIRouter()
logger = logging.getLogger(__name__)

async def _pump(
    orchestrator: FanoutOrchestrator,
    channels: ChannelRegistry,
    channel: Channel,
    request: ChatRequest,
) -> None:
    """Forward one request's frames to the channel until it settles or the channel goes away."""
    try:
        async with aclosing(orchestrator.handle(request)) as frames:
            async for frame in frames:
                if not await channels.send(channel, frame):
                    logger.info(
                        f"Channel for session {request.session_id} gone, request "
                        f"{request.request_id} continues without a listener"
                    )
                    break
    except Exception as e:
        logger.exception(f"Request {request.request_id} pump failed: {e}")


def _parse_start_chat(raw: str) -> StartChatFrame:
    """
    Parse an inbound frame.

    Raises:
        ValueError: With a message suitable for an ``error`` frame
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise ValueError("Invalid message format")

    if not isinstance(data, dict):
        raise ValueError("Invalid message format")

    if data.get("type") != FrameType.START_CHAT.value:
        raise ValueError(f"Unknown message type: {data.get('type')}")

    try:
        frame = StartChatFrame.model_validate(data)
    except ValidationError:
        raise ValueError("Missing required fields")

    if not frame.session_id:
        raise ValueError("Missing required fields")
    return frame


@router.websocket("/ws")
async def chat_channel(websocket: WebSocket) -> None:
    """Main WebSocket handler."""
    await websocket.accept()

    orchestrator: FanoutOrchestrator = websocket.app.state.orchestrator
    channels: ChannelRegistry = websocket.app.state.channels
    pumps: set[asyncio.Task] = websocket.app.state.pumps
    channel = Channel(websocket)

    try:
        while True:
            raw = await websocket.receive_text()

            try:
                frame = _parse_start_chat(raw)
            except ValueError as e:
                logger.warning(f"Rejected inbound frame on session {channel.session_id}: {e}")
                await channel.send(ErrorFrame(message=str(e)))
                continue

            if channel.session_id is None:
                await channels.attach(frame.session_id, channel)
                logger.info(f"WS bound to session {frame.session_id}")
            elif frame.session_id != channel.session_id:
                await channel.send(ErrorFrame(message="Session mismatch", message_id=frame.message_id))
                continue

            request = ChatRequest.from_frame(frame)
            task = asyncio.create_task(
                _pump(orchestrator, channels, channel, request),
                name=f"pump-{request.request_id}",
            )
            pumps.add(task)
            task.add_done_callback(pumps.discard)

    except WebSocketDisconnect:
        logger.info(f"WS disconnected: session={channel.session_id}")
    except RuntimeError as e:
        # Receiving on a socket we already closed (superseded by a newer connection)
        if not channel.closed:
            raise
        logger.info(f"WS closed: session={channel.session_id} ({e})")
    finally:
        # In-flight requests keep generating; their pumps stop at the next frame
        await channels.detach(channel)

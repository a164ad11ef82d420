"""Live WebSocket channels, at most one per session."""

import asyncio
import logging
from typing import Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from ..models.protocol import Frame

logger = logging.getLogger(__name__)


class Channel:
    """
    One client connection.

    Writes are serialised so frames from concurrent sage tasks never
    interleave on the socket. Once closed, the channel silently drops
    further writes.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.session_id: Optional[str] = None
        self.closed = False
        self._send_lock = asyncio.Lock()

    async def send(self, frame: Frame) -> bool:
        """Write a frame. Returns False if the channel is closed or the write failed."""
        async with self._send_lock:
            if self.closed or self.websocket.client_state != WebSocketState.CONNECTED:
                return False
            try:
                await self.websocket.send_text(frame.to_wire())
                return True
            except (RuntimeError, OSError) as e:
                # Peer went away between the state check and the write
                logger.info(f"Write to session {self.session_id} failed, closing channel: {e}")
                self.closed = True
                return False

    async def close(self, code: int = 1000, reason: str = "") -> None:
        async with self._send_lock:
            if self.closed:
                return
            self.closed = True
            if self.websocket.client_state == WebSocketState.CONNECTED:
                try:
                    await self.websocket.close(code=code, reason=reason)
                except (RuntimeError, OSError) as e:
                    logger.debug(f"Close of session {self.session_id} channel failed: {e}")


class ChannelRegistry:
    """
    Maps each session to its current channel.

    Attaching a channel for a session that already has one closes the old
    channel first, so frames always go to the newest connection.
    """

    SUPERSEDED_CODE = 4000

    def __init__(self):
        self._channels: dict[str, Channel] = {}
        self._lock = asyncio.Lock()

    async def attach(self, session_id: str, channel: Channel) -> None:
        async with self._lock:
            stale = self._channels.get(session_id)
            channel.session_id = session_id
            self._channels[session_id] = channel
            if stale is not None and stale is not channel:
                logger.info(f"Session {session_id} reconnected, superseding old channel")
                await stale.close(code=self.SUPERSEDED_CODE, reason="Superseded by a newer connection")

    async def detach(self, channel: Channel) -> None:
        """Forget a channel, unless a newer one has already replaced it."""
        async with self._lock:
            channel.closed = True
            if channel.session_id and self._channels.get(channel.session_id) is channel:
                del self._channels[channel.session_id]

    def get(self, session_id: str) -> Optional[Channel]:
        return self._channels.get(session_id)

    def is_current(self, channel: Channel) -> bool:
        return (
            not channel.closed
            and channel.session_id is not None
            and self._channels.get(channel.session_id) is channel
        )

    async def send(self, channel: Channel, frame: Frame) -> bool:
        """Deliver a frame on a channel that is still the session's current one."""
        if not self.is_current(channel):
            return False
        return await channel.send(frame)

    def __len__(self) -> int:
        return len(self._channels)

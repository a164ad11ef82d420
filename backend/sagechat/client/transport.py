"""Chat client: the WebSocket channel with an HTTP fallback."""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..models.protocol import DoneFrame, parse_outbound
from .config import ClientSettings, get_client_settings
from .messages import ClientMessage
from .reducer import ClientStreamReducer, RequestPhase

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]


class TransportError(Exception):
    """Neither the channel nor the fallback could carry the request."""


class RequestFailedError(Exception):
    """The server (or the client on its behalf) failed the whole request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ChatClient:
    """
    Sends questions and folds the answers into a ClientStreamReducer.

    One channel is opened lazily and reused for every request; a single
    reader task dispatches incoming frames. If the channel cannot be opened
    within ``open_timeout`` the request goes over ``POST /api/chat`` instead.
    A request whose channel drops is never sent again.
    """

    def __init__(
        self,
        reducer: ClientStreamReducer,
        settings: Optional[ClientSettings] = None,
        connect: Optional[Connector] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.reducer = reducer
        self.settings = settings or get_client_settings()
        self._connect = connect or websockets.connect
        self._http_transport = http_transport

        self._ws: Optional[Any] = None
        self._reader: Optional[asyncio.Task] = None
        self._open_lock = asyncio.Lock()
        self._waiters: dict[int, asyncio.Queue] = {}

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.server_url,
            timeout=self.settings.idle_timeout,
            transport=self._http_transport,
        )

    # ============ Session ============

    async def open_session(self) -> int:
        """Register the session with the server and sync the local credit display."""
        try:
            async with self._http_client() as client:
                response = await client.post("/api/session", json={"sessionId": self.reducer.session_id})
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"Could not open session: {e}") from e

        credits = response.json()["credits"]
        self.reducer.sync_credits(credits)
        return credits

    async def load_sages(self) -> dict[str, str]:
        """Fetch the sage catalogue so placeholders can use display names."""
        try:
            async with self._http_client() as client:
                response = await client.get("/api/sages")
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"Could not load sages: {e}") from e

        names = {sage["id"]: sage["name"] for sage in response.json()}
        self.reducer.sage_names.update(names)
        return names

    # ============ Requests ============

    async def ask(self, content: str, sage_ids: list[str]) -> ClientMessage:
        """
        Ask the selected sages one question and wait for the request to settle.

        Raises:
            NoCreditsError: No local credits left
            RequestFailedError: The request was rejected or produced nothing
            TransportError: Nothing could carry the request
        """
        message = self.reducer.submit(content, sage_ids)

        try:
            ws = await self._ensure_channel()
        except (asyncio.TimeoutError, OSError, WebSocketException) as e:
            logger.warning(f"Channel to {self.settings.ws_url} did not open: {e!r}")
            if self.settings.http_fallback:
                return await self._ask_http(message.id)
            self.reducer.fail_request(message.id, "Could not connect to the sages")
            raise TransportError("Could not connect to the sages") from e

        queue: asyncio.Queue = asyncio.Queue()
        self._waiters[message.id] = queue
        try:
            try:
                await ws.send(self.reducer.start_chat_frame(message.id).to_wire())
            except ConnectionClosed as e:
                self.reducer.connection_lost(message.id)
                raise TransportError("Connection closed before the question was sent") from e
            await self._wait(message.id, queue)
        finally:
            self._waiters.pop(message.id, None)

        return self._result(message.id)

    async def _ensure_channel(self) -> Any:
        async with self._open_lock:
            if self._ws is not None:
                return self._ws

            ws = await asyncio.wait_for(
                self._connect(self.settings.ws_url),
                timeout=self.settings.open_timeout,
            )
            self._ws = ws
            self._reader = asyncio.create_task(self._read(ws), name="sagechat-reader")
            logger.info(f"Channel open to {self.settings.ws_url}")
            return ws

    async def _read(self, ws: Any) -> None:
        """Single reader: fold every frame into the reducer and wake its waiter."""
        try:
            async for raw in ws:
                try:
                    frame = parse_outbound(json.loads(raw))
                except ValueError as e:
                    logger.warning(f"Ignoring unreadable frame: {e}")
                    continue

                self.reducer.apply(frame)
                if frame.message_id is not None and frame.message_id in self._waiters:
                    self._waiters[frame.message_id].put_nowait(frame)
        except ConnectionClosed as e:
            logger.info(f"Channel closed: {e}")
        finally:
            if self._ws is ws:
                self._ws = None
            for queue in self._waiters.values():
                queue.put_nowait(None)

    async def _wait(self, message_id: int, queue: asyncio.Queue) -> None:
        """Wait for the request's ``done``, a failure, a drop or the idle timeout."""
        while True:
            try:
                frame = await asyncio.wait_for(queue.get(), timeout=self.settings.idle_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Request {message_id} idle for {self.settings.idle_timeout}s, giving up")
                self.reducer.connection_lost(message_id, reason="Timed out waiting for the sages")
                return

            if frame is None:
                self.reducer.connection_lost(message_id)
                return

            state = self.reducer.request(message_id)
            if isinstance(frame, DoneFrame) or state is None or state.phase is RequestPhase.FAILED:
                return

    def _result(self, message_id: int) -> ClientMessage:
        state = self.reducer.request(message_id)
        if state is not None and state.phase is RequestPhase.FAILED:
            raise RequestFailedError(state.error or "Request failed")
        return self.reducer.message(message_id)

    async def _ask_http(self, message_id: int) -> ClientMessage:
        """Degraded mode: one synchronous call that returns only final answers."""
        body = self.reducer.start_chat_frame(message_id).model_dump(by_alias=True, exclude={"type"})
        try:
            async with self._http_client() as client:
                response = await client.post("/api/chat", json=body)
        except httpx.HTTPError as e:
            self.reducer.fail_request(message_id, "Could not reach the sages")
            raise TransportError(f"Fallback request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200:
            reason = data.get("error") or data.get("detail") or f"HTTP {response.status_code}"
            self.reducer.fail_request(message_id, reason)
            raise RequestFailedError(reason, status_code=response.status_code)

        self.reducer.apply_final(message_id, data.get("responses", {}), data.get("balance"))
        return self.reducer.message(message_id)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None

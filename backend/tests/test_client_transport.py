"""Tests for the chat client's channel handling and HTTP fallback."""

import asyncio
import json

import httpx
import pytest

from sagechat.client.config import ClientSettings
from sagechat.client.reducer import ClientStreamReducer, RequestPhase
from sagechat.client.transport import ChatClient, RequestFailedError, TransportError

DROP = object()


class FakeChannel:
    """A server-side socket stand-in; ``responder`` maps a start_chat payload to frames."""

    def __init__(self, responder):
        self.responder = responder
        self.sent: list[dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, text: str) -> None:
        payload = json.loads(text)
        self.sent.append(payload)
        for frame in self.responder(payload):
            self.incoming.put_nowait(frame)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self.incoming.get()
        if item is DROP:
            raise StopAsyncIteration
        return json.dumps(item)

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(DROP)


class FakeConnector:
    def __init__(self, responder=None, error=None, hang=False):
        self.responder = responder or answer_all
        self.error = error
        self.hang = hang
        self.urls: list[str] = []
        self.channels: list[FakeChannel] = []

    async def __call__(self, url: str) -> FakeChannel:
        self.urls.append(url)
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        channel = FakeChannel(self.responder)
        self.channels.append(channel)
        return channel


def answer_all(payload, balance=9):
    mid = payload["messageId"]
    frames = []
    for sage in payload["selectedSages"]:
        frames.append({"type": "stream", "sageId": sage, "chunk": f"{sage} ", "messageId": mid})
        frames.append({"type": "stream", "sageId": sage, "chunk": "speaks", "messageId": mid})
        frames.append({"type": "complete", "sageId": sage, "response": f"{sage} speaks.", "messageId": mid})
    frames.append({"type": "done", "messageId": mid, "served": payload["selectedSages"], "balance": balance})
    return frames


def fallback_handler(status=200, body=None, calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(json.loads(request.content))
        return httpx.Response(status, json=body or {})
    return handler


@pytest.fixture
def settings():
    return ClientSettings(server_url="http://sages.test", open_timeout=0.05, idle_timeout=1.0)


@pytest.fixture
def reducer():
    return ClientStreamReducer("s1", credits=10, sage_names={"alpha": "Alpha", "beta": "Beta"})


class TestChannel:

    @pytest.mark.asyncio
    async def test_streamed_answers(self, reducer, settings):
        connector = FakeConnector()

        async with ChatClient(reducer, settings, connect=connector) as client:
            message = await client.ask("How to find peace?", ["alpha", "beta"])

        assert message.responses == {"alpha": "alpha speaks.", "beta": "beta speaks."}
        assert reducer.credits == 9
        assert reducer.request(message.id).phase is RequestPhase.ALL_SETTLED
        assert connector.urls == ["ws://sages.test/ws"]
        assert connector.channels[0].sent[0]["sessionId"] == "s1"
        assert connector.channels[0].closed

    @pytest.mark.asyncio
    async def test_channel_is_reused(self, reducer, settings):
        connector = FakeConnector()

        async with ChatClient(reducer, settings, connect=connector) as client:
            await client.ask("one", ["alpha"])
            await client.ask("two", ["beta"])

        assert len(connector.channels) == 1
        assert len(connector.channels[0].sent) == 2

    @pytest.mark.asyncio
    async def test_request_error_rolls_back(self, reducer, settings):
        def reject(payload):
            return [{"type": "error", "message": "Insufficient credits", "messageId": payload["messageId"]}]

        async with ChatClient(reducer, settings, connect=FakeConnector(reject)) as client:
            with pytest.raises(RequestFailedError, match="Insufficient credits"):
                await client.ask("q", ["alpha"])

        assert reducer.messages == []
        assert reducer.credits == 10

    @pytest.mark.asyncio
    async def test_drop_keeps_completed_answers(self, reducer, settings):
        def half(payload):
            mid = payload["messageId"]
            return [{"type": "complete", "sageId": "alpha", "response": "Stillness.", "messageId": mid}, DROP]

        connector = FakeConnector(half)
        async with ChatClient(reducer, settings, connect=connector) as client:
            message = await client.ask("q", ["alpha", "beta"])

        assert message.responses == {
            "alpha": "Stillness.",
            "beta": "Beta is currently in deep meditation and unable to respond.",
        }
        assert reducer.credits == 9
        assert len(connector.channels[0].sent) == 1

    @pytest.mark.asyncio
    async def test_drop_before_any_answer_fails_without_resend(self, reducer, settings):
        connector = FakeConnector(lambda payload: [DROP])
        calls = []
        transport = httpx.MockTransport(fallback_handler(calls=calls))

        async with ChatClient(reducer, settings, connect=connector, http_transport=transport) as client:
            with pytest.raises(RequestFailedError, match="Connection lost"):
                await client.ask("q", ["alpha"])

        assert reducer.messages == []
        assert reducer.credits == 10
        assert len(connector.channels[0].sent) == 1
        assert calls == []

    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self, reducer, settings):
        connector = FakeConnector(lambda payload: [DROP])

        async with ChatClient(reducer, settings, connect=connector) as client:
            with pytest.raises(RequestFailedError):
                await client.ask("q", ["alpha"])
            connector.responder = answer_all
            message = await client.ask("again", ["alpha"])

        assert len(connector.channels) == 2
        assert message.responses == {"alpha": "alpha speaks."}

    @pytest.mark.asyncio
    async def test_idle_request_is_given_up(self, reducer):
        settings = ClientSettings(server_url="http://sages.test", idle_timeout=0.05)

        async with ChatClient(reducer, settings, connect=FakeConnector(lambda payload: [])) as client:
            with pytest.raises(RequestFailedError, match="Timed out"):
                await client.ask("q", ["alpha"])

        assert reducer.credits == 10

    @pytest.mark.asyncio
    async def test_unreadable_frames_are_skipped(self, reducer, settings):
        def noisy(payload):
            return [{"type": "mystery"}] + answer_all(payload)

        async with ChatClient(reducer, settings, connect=FakeConnector(noisy)) as client:
            message = await client.ask("q", ["alpha"])

        assert message.responses == {"alpha": "alpha speaks."}


class TestFallback:

    @pytest.mark.asyncio
    async def test_open_timeout_uses_http(self, reducer, settings):
        calls = []
        body = {"responses": {"alpha": "A.", "beta": "B."}, "messageId": 1, "balance": 9}
        transport = httpx.MockTransport(fallback_handler(body=body, calls=calls))

        async with ChatClient(reducer, settings, connect=FakeConnector(hang=True), http_transport=transport) as client:
            message = await client.ask("q", ["alpha", "beta"])

        assert message.responses == {"alpha": "A.", "beta": "B."}
        assert reducer.credits == 9
        assert calls[0]["selectedSages"] == ["alpha", "beta"]
        assert calls[0]["sessionId"] == "s1"
        assert "type" not in calls[0]

    @pytest.mark.asyncio
    async def test_refused_connection_uses_http(self, reducer, settings):
        body = {"responses": {"alpha": "A."}, "messageId": 1, "balance": 9}
        transport = httpx.MockTransport(fallback_handler(body=body))
        connector = FakeConnector(error=ConnectionRefusedError("refused"))

        async with ChatClient(reducer, settings, connect=connector, http_transport=transport) as client:
            message = await client.ask("q", ["alpha"])

        assert message.responses == {"alpha": "A."}

    @pytest.mark.asyncio
    async def test_fallback_failure_rolls_back(self, reducer, settings):
        body = {"error": "The sages are temporarily unavailable. Please try again in a moment."}
        transport = httpx.MockTransport(fallback_handler(status=500, body=body))

        async with ChatClient(reducer, settings, connect=FakeConnector(hang=True), http_transport=transport) as client:
            with pytest.raises(RequestFailedError) as exc_info:
                await client.ask("q", ["alpha"])

        assert exc_info.value.status_code == 500
        assert "temporarily unavailable" in exc_info.value.message
        assert reducer.messages == []
        assert reducer.credits == 10

    @pytest.mark.asyncio
    async def test_fallback_disabled(self, reducer):
        settings = ClientSettings(server_url="http://sages.test", open_timeout=0.05, http_fallback=False)

        async with ChatClient(reducer, settings, connect=FakeConnector(hang=True)) as client:
            with pytest.raises(TransportError):
                await client.ask("q", ["alpha"])

        assert reducer.messages == []
        assert reducer.credits == 10


class TestSession:

    @pytest.mark.asyncio
    async def test_open_session_syncs_credits(self, reducer, settings):
        def handler(request):
            assert request.url.path == "/api/session"
            return httpx.Response(200, json={"sessionId": "s1", "credits": 7})

        client = ChatClient(reducer, settings, http_transport=httpx.MockTransport(handler))

        assert await client.open_session() == 7
        assert reducer.credits == 7

    @pytest.mark.asyncio
    async def test_load_sages_updates_names(self, settings):
        reducer = ClientStreamReducer("s1")

        def handler(request):
            return httpx.Response(200, json=[{"id": "rumi", "name": "Rumi", "title": "The Mystic Poet"}])

        client = ChatClient(reducer, settings, http_transport=httpx.MockTransport(handler))

        assert await client.load_sages() == {"rumi": "Rumi"}
        assert reducer.placeholder("rumi") == "Rumi is currently in deep meditation and unable to respond."

    @pytest.mark.asyncio
    async def test_server_unreachable(self, reducer, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = ChatClient(reducer, settings, http_transport=httpx.MockTransport(handler))

        with pytest.raises(TransportError):
            await client.open_session()

"""Shared fixtures: scripted generation backend, temporary databases, a wired orchestrator."""

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import pytest
import pytest_asyncio

from sagechat.core.backend_health import BackendHealthTracker
from sagechat.core.ledger import SessionLedger
from sagechat.core.orchestrator import FanoutOrchestrator
from sagechat.core.personas import PersonaRegistry
from sagechat.db.database import build_engine, build_session_factory, close_db, init_db
from sagechat.models.persona import Persona
from sagechat.providers.base import GenerationClient


TEST_PERSONAS = [
    Persona(id="alpha", name="Alpha", title="The First", prompt="Speak plainly."),
    Persona(id="beta", name="Beta", title="The Second", prompt="Speak in riddles."),
    Persona(id="gamma", name="Gamma", title="The Third", prompt="Speak briefly."),
]


@dataclass
class Script:
    """What the fake backend does for one sage."""
    chunks: list[str] = field(default_factory=list)
    error: Optional[Exception] = None
    gate: Optional[asyncio.Event] = None  # held until set, before the first chunk


class FakeGenerationClient(GenerationClient):
    """Generation backend scripted per sage display name (read from the prompt)."""

    def __init__(self, scripts: Optional[dict[str, Script]] = None, supports_streaming: bool = True):
        self.scripts = scripts or {}
        self.supports_streaming = supports_streaming
        self.prompts: list[str] = []

    def _script(self, prompt: str) -> Script:
        self.prompts.append(prompt)
        name = prompt.split("You are ", 1)[1].split(",", 1)[0]
        return self.scripts.get(name, Script(chunks=[f"{name} ", "says ", "hello."]))

    async def generate(self, prompt: str) -> str:
        script = self._script(prompt)
        if script.gate is not None:
            await script.gate.wait()
        if script.error is not None:
            raise script.error
        return "".join(script.chunks)

    async def generate_stream(self, prompt: str) -> AsyncIterator[str]:
        script = self._script(prompt)
        if script.gate is not None:
            await script.gate.wait()
        for chunk in script.chunks:
            await asyncio.sleep(0)
            yield chunk
        if script.error is not None:
            raise script.error


@pytest.fixture
def registry() -> PersonaRegistry:
    return PersonaRegistry(TEST_PERSONAS)


@pytest.fixture
def backend() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield build_session_factory(engine)
    await close_db(engine)


@pytest.fixture
def ledger(session_factory) -> SessionLedger:
    return SessionLedger(session_factory, initial_credits=10)


@pytest.fixture
def orchestrator(registry, backend, ledger, session_factory) -> FanoutOrchestrator:
    return FanoutOrchestrator(
        registry,
        backend,
        ledger,
        session_factory=session_factory,
        health=BackendHealthTracker(),
    )


async def collect(orchestrator: FanoutOrchestrator, request) -> list:
    """Run a request to completion and return every frame it produced."""
    return [frame async for frame in orchestrator.handle(request)]

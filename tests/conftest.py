"""Shared fakes: scripted stream transport, deterministic embedder, test config."""

import asyncio
import json
from typing import Any, Callable

import pytest

from orchestra.agent.context import AgentContext
from orchestra.config.schema import Config
from orchestra.history.store import MemoryStore
from orchestra.knowledge.embedding import EmbeddingModel
from orchestra.knowledge.engine import KnowledgeEngine
from orchestra.providers.base import StreamTransport


# ---------------------------------------------------------------------------
# SSE frame helpers (OpenAI-compatible)
# ---------------------------------------------------------------------------

def sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}"


def text_turn(*chunks: str) -> list[str]:
    """A turn streaming plain content in the given chunks."""
    lines = [sse({"choices": [{"delta": {"content": c}}]}) for c in chunks]
    return lines + ["data: [DONE]"]


def tool_turn(name: str, arguments: str, call_id: str = "call_1", content: str = "") -> list[str]:
    """A turn producing one tool call whose arguments arrive in two fragments."""
    half = len(arguments) // 2
    lines = []
    if content:
        lines.append(sse({"choices": [{"delta": {"content": content}}]}))
    lines.append(sse({"choices": [{"delta": {"tool_calls": [
        {"index": 0, "id": call_id, "function": {"name": name, "arguments": arguments[:half]}},
    ]}}]}))
    lines.append(sse({"choices": [{"delta": {"tool_calls": [
        {"index": 0, "function": {"arguments": arguments[half:]}},
    ]}}]}))
    return lines + ["data: [DONE]"]


class FakeTransport(StreamTransport):
    """
    Replays scripted turns. Each turn is a list of raw lines or an exception
    to raise when the stream is opened. Every request body is recorded.
    """

    def __init__(self, turns: list[Any] | None = None):
        self.turns = list(turns or [])
        self.bodies: list[dict[str, Any]] = []
        self.endpoints: list[str] = []
        self.credentials = []
        self.cancelled: list[str] = []

    async def open_stream(self, endpoint, credentials, request_id, body):
        self.bodies.append(body)
        self.endpoints.append(endpoint)
        self.credentials.append(credentials)
        if not self.turns:
            raise AssertionError("FakeTransport ran out of scripted turns")
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        for line in turn:
            yield line

    async def cancel(self, request_id: str) -> None:
        self.cancelled.append(request_id)


class GatedTransport(FakeTransport):
    """
    FakeTransport whose streams pause after their first line until released,
    so a test can act while a request is still in flight.
    """

    def __init__(self, turns: list[Any] | None = None):
        super().__init__(turns)
        self.started: list[str] = []
        self.gates: dict[str, asyncio.Event] = {}

    async def open_stream(self, endpoint, credentials, request_id, body):
        gate = self.gates.setdefault(request_id, asyncio.Event())
        self.started.append(request_id)
        first = True
        async for line in super().open_stream(endpoint, credentials, request_id, body):
            yield line
            if first:
                first = False
                await gate.wait()

    def release(self, request_id: str) -> None:
        self.gates.setdefault(request_id, asyncio.Event()).set()


async def wait_until(predicate: Callable[[], bool], rounds: int = 200) -> None:
    """Yield to the event loop until predicate holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class KeywordEmbedding(EmbeddingModel):
    """
    Deterministic embedder: one dimension per keyword, counting occurrences.
    Texts without any keyword map to the zero vector.
    """

    def __init__(self, keywords: tuple[str, ...] = ("apple", "banana", "cherry")):
        self.keywords = keywords
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        lowered = text.lower()
        return [float(lowered.count(k)) for k in self.keywords]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config(tmp_path) -> Config:
    cfg = Config()
    cfg.providers.openai.api_key = "sk-test"
    cfg.agents.defaults.model = "gpt-4o-mini"
    cfg.agents.defaults.max_iterations = 3
    cfg.tools.skills_dir = str(tmp_path / "skills")
    cfg.storage.path = str(tmp_path / "storage")
    return cfg


@pytest.fixture
def embedder() -> KeywordEmbedding:
    return KeywordEmbedding()


@pytest.fixture
def knowledge(embedder) -> KnowledgeEngine:
    return KnowledgeEngine(store=MemoryStore(), base_model=embedder, threshold=0.5, limit=3)


@pytest.fixture
def make_context(config, knowledge):
    """Factory building an AgentContext around a FakeTransport."""

    def _make(turns=None, gated: bool = False, **kwargs) -> tuple[AgentContext, FakeTransport]:
        transport = GatedTransport(turns) if gated else FakeTransport(turns)
        kwargs.setdefault("knowledge", knowledge)
        context = AgentContext.from_config(config, store=MemoryStore(), transport=transport, **kwargs)
        return context, transport

    return _make

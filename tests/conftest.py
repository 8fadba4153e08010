"""Shared fixtures: scripted providers, in-memory stores and an orchestrator factory."""
import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence

import pytest

from companion.agent.nodes import TurnNodes
from companion.config import Settings
from companion.crisis_screen import CrisisKeywordScreen
from companion.errors import PersistenceFailure, UpstreamFailure
from companion.golden_cache import GoldenExampleCache
from companion.guardrails.input_guard import InputGuard
from companion.memory import MemoryContextAssembler
from companion.models import GoldenExample, Persona
from companion.monitoring.metrics_collector import MetricsCollector
from companion.orchestrator import ConversationOrchestrator
from companion.personas import PersonaRegistry
from companion.prompt_composer import PromptComposer
from companion.stores import InMemoryGoldenExampleStore, InMemoryMessageStore
from companion.triage import FastTriageClassifier


def triage_json(
    safety: str = "normal",
    route: str = "support",
    label: str = "平静",
    score: int = 5,
    **extra: Any,
) -> str:
    """Triage model output in the expected JSON shape."""
    payload: Dict[str, Any] = {
        "safety": safety,
        "safetyReasoning": f"test: {safety}",
        "emotion": {"label": label, "score": score},
        "route": route,
        "stateReasoning": f"test: {route}",
    }
    payload.update(extra)
    return json.dumps(payload, ensure_ascii=False)


class FakeTriageProvider:
    """Returns a scripted response, or raises a scripted error."""

    def __init__(self, response: str = "", error: Optional[Exception] = None, delay: float = 0.0):
        self.response = response or triage_json()
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, system_prompt: str, user_message: str, temperature: float, max_tokens: int) -> str:
        self.calls.append({
            "system_prompt": system_prompt,
            "user_message": user_message,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FakeChatProvider:
    """Streams scripted chunks; can fail before the first chunk or after some."""

    def __init__(
        self,
        chunks: Sequence[str] = ("你好，", "我在这里听你说。"),
        fail_before: Optional[Exception] = None,
        fail_after: Optional[int] = None,
    ):
        self.chunks = list(chunks)
        self.fail_before = fail_before
        self.fail_after = fail_after
        self.calls: List[Dict[str, Any]] = []

    async def stream(self, messages, temperature, max_tokens):
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if self.fail_before is not None:
            raise self.fail_before
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i >= self.fail_after:
                raise UpstreamFailure("connection reset")
            await asyncio.sleep(0)
            yield chunk


class FailingMessageStore(InMemoryMessageStore):
    """Message store whose writes always fail."""

    async def create_message(self, *args, **kwargs):
        raise PersistenceFailure("database unavailable")


class FailingMemoryProvider:
    async def get_memories_for_context(self, user_id: str, message: str):
        raise RuntimeError("memory service down")


class FailingGoldenStore:
    async def list_active_examples(self):
        raise RuntimeError("golden store down")


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


GOLDEN_EXAMPLES = [
    GoldenExample(id="ge-1", user_message="最近工作压力很大，晚上失眠", assistant_message="听起来你一直绷得很紧。"),
    GoldenExample(id="ge-2", user_message="一个人在外地工作，觉得很孤独", assistant_message="独自在陌生的城市确实不容易。"),
    GoldenExample(id="ge-3", user_message="马上考试了，特别焦虑", assistant_message="越临近考试越着急，这很正常。"),
    GoldenExample(id="ge-4", user_message="分手之后，一直走不出来", assistant_message="重要的关系结束，需要时间。"),
]

PERSONAS = [
    Persona(
        id="companion",
        name="心灵伙伴",
        system_prompt="你是一位温暖、专业的心理支持伙伴，擅长倾听和共情，从不评判用户。\n回复使用简体中文。",
    ),
    Persona(
        id="mentor",
        name="人生导师",
        system_prompt="你是一位阅历丰富、说话直率的人生导师，像朋友一样聊天。",
        temperature=0.9,
        max_tokens=800,
    ),
]


@pytest.fixture
def settings():
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        deepseek_api_key="test-deepseek",
        groq_api_key="test-groq",
        max_input_length=5000,
        stream_holdback_chars=8,
        triage_timeout_seconds=1.0,
    )


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def message_store(settings):
    return InMemoryMessageStore(default_title=settings.default_conversation_title)


@pytest.fixture
def golden_store():
    return InMemoryGoldenExampleStore(GOLDEN_EXAMPLES)


@pytest.fixture
def personas():
    return PersonaRegistry(PERSONAS, default_id="companion")


@pytest.fixture
def make_nodes(settings, metrics, message_store, golden_store):
    """Build turn nodes around fakes; keyword arguments override collaborators."""

    def _make(
        triage_provider: Optional[FakeTriageProvider] = None,
        store=None,
        memory_provider=None,
        examples_store=None,
    ) -> TurnNodes:
        return TurnNodes(
            input_guard=InputGuard(max_length=settings.max_input_length),
            classifier=FastTriageClassifier(
                provider=triage_provider or FakeTriageProvider(),
                settings=settings,
            ),
            crisis_screen=CrisisKeywordScreen(),
            memory=MemoryContextAssembler(memory_provider),
            golden_cache=GoldenExampleCache(examples_store or golden_store, settings=settings),
            composer=PromptComposer(),
            message_store=store if store is not None else message_store,
            metrics=metrics,
            settings=settings,
        )

    return _make


@pytest.fixture
def make_orchestrator(settings, personas, make_nodes):
    """Build an orchestrator around fakes; keyword arguments override collaborators."""

    def _make(
        triage_provider: Optional[FakeTriageProvider] = None,
        chat_provider: Optional[FakeChatProvider] = None,
        store=None,
        memory_provider=None,
        examples_store=None,
    ) -> ConversationOrchestrator:
        nodes = make_nodes(
            triage_provider=triage_provider,
            store=store,
            memory_provider=memory_provider,
            examples_store=examples_store,
        )
        return ConversationOrchestrator(
            nodes=nodes,
            chat_provider=chat_provider or FakeChatProvider(),
            personas=personas,
            settings=settings,
        )

    return _make

"""Turn orchestration: guard, triage, context, generation, post-guard, persistence.

``handle_turn`` returns either a ``BlockedReply`` (complete text, no model
calls) or a ``StreamingReply`` whose events are produced by a background
generation task. The task is owned by the orchestrator, so a client that
stops reading does not stop post-guarding and persistence.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Set, Union

import structlog

from companion.agent.graph import create_finalization_graph, create_preparation_graph
from companion.agent.nodes import TurnNodes
from companion.config import Settings, get_settings
from companion.crisis_screen import CrisisKeywordScreen
from companion.errors import CompanionError, TurnValidationError, UpstreamFailure
from companion.golden_cache import GoldenExampleCache
from companion.guardrails.input_guard import InputGuard
from companion.guardrails.output_guard import OutputGuard, ensure_crisis_referral
from companion.memory import InMemoryMemoryManager, MemoryContextAssembler, MemoryProvider
from companion.models import ChatMessage, InputGuardReason, Role, Route, TurnMetadata
from companion.monitoring.metrics_collector import MetricsCollector, get_metrics_collector
from companion.personas import PersonaRegistry, get_persona_registry
from companion.prompt_composer import PromptComposer
from companion.providers import (
    ChatCompletionProvider,
    DeepSeekChatProvider,
    GroqTriageProvider,
    TriageProvider,
)
from companion.stores import (
    GoldenExampleStore,
    InMemoryGoldenExampleStore,
    InMemoryMessageStore,
    MessageStore,
)
from companion.streaming import GuardedStream
from companion.triage import FastTriageClassifier

logger = structlog.get_logger(__name__)

DEFAULT_GOLDEN_EXAMPLES_PATH = Path(__file__).parent / "data" / "golden_examples.json"


@dataclass
class TurnRequest:
    """One user turn."""
    message: str
    history: List[ChatMessage] = field(default_factory=list)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    persona_id: Optional[str] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class TextDelta:
    """Guarded text ready to send."""
    text: str


@dataclass
class TurnCompleted:
    """Generation finished; carries the metadata packet."""
    metadata: TurnMetadata
    final_text: str
    persisted: bool


@dataclass
class TurnFailed:
    """Generation failed after streaming started."""
    error_code: str
    message: str


TurnEvent = Union[TextDelta, TurnCompleted, TurnFailed]


@dataclass
class BlockedReply:
    """Fixed reply for input rejected by the input guard."""
    text: str
    reason: Optional[InputGuardReason]


class StreamingReply:
    """Events of an in-flight generation."""

    def __init__(
        self,
        queue: "asyncio.Queue[TurnEvent]",
        task: "asyncio.Task[TurnEvent]",
        conversation_id: Optional[str],
        route: Route,
    ):
        self._queue = queue
        self.task = task
        self.conversation_id = conversation_id
        self.route = route

    async def events(self) -> AsyncIterator[TurnEvent]:
        """Yield events until the turn completes or fails."""
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, (TurnCompleted, TurnFailed)):
                return

    async def wait(self) -> TurnEvent:
        """Wait for the background task and return its final event."""
        return await self.task


class ConversationOrchestrator:
    """Run turns through the preparation graph, the model and the finalization graph."""

    def __init__(
        self,
        nodes: TurnNodes,
        chat_provider: ChatCompletionProvider,
        personas: PersonaRegistry,
        output_guard: Optional[OutputGuard] = None,
        settings: Optional[Settings] = None,
    ):
        self.nodes = nodes
        self.chat_provider = chat_provider
        self.personas = personas
        self.output_guard = output_guard or OutputGuard()
        self.settings = settings or get_settings()
        self.metrics = nodes.metrics
        self.preparation_graph = create_preparation_graph(nodes)
        self.finalization_graph = create_finalization_graph(nodes)
        self._tasks: Set[asyncio.Task] = set()

    async def handle_turn(self, request: TurnRequest) -> Union[BlockedReply, StreamingReply]:
        """
        Handle one user turn.

        Args:
            request: The turn

        Returns:
            BlockedReply when the input guard rejects the message, otherwise a
            StreamingReply whose first chunk has already arrived

        Raises:
            TurnValidationError: Empty message or unknown persona
            UpstreamFailure: The chat provider failed before its first chunk
        """
        log = logger.bind(request_id=request.request_id)

        if not request.message or not request.message.strip():
            raise TurnValidationError("Message is required", error_code="empty_message")
        persona = self.personas.get(request.persona_id)

        conversation_id = request.session_id
        if conversation_id is None and request.user_id:
            conversation_id = str(uuid.uuid4())

        log.info(
            "turn_received",
            message_length=len(request.message),
            history_length=len(request.history),
            persona=persona.id,
            authenticated=bool(request.user_id),
        )

        state = await self.preparation_graph.ainvoke({
            "request_id": request.request_id,
            "user_id": request.user_id,
            "conversation_id": conversation_id,
            "message": request.message,
            "history": request.history,
            "persona": persona,
            "start_time": time.perf_counter(),
        })

        if state.get("blocked_response") is not None:
            return BlockedReply(text=state["blocked_response"], reason=state["guard"].reason)

        route = state["triage_result"].route
        crisis = route == Route.CRISIS
        stream = GuardedStream(
            guard=self.output_guard,
            system_prompt=persona.system_prompt,
            holdback_chars=None if crisis else self.settings.stream_holdback_chars,
            finalize=ensure_crisis_referral if crisis else None,
        )

        iterator = self.chat_provider.stream(
            self._build_messages(state["system_prompt"], request),
            temperature=persona.temperature if persona.temperature is not None else self.settings.generation_temperature,
            max_tokens=persona.max_tokens or self.settings.generation_max_tokens,
        )

        try:
            first: Optional[str] = await iterator.__anext__()
        except StopAsyncIteration:
            first = None
            if not crisis:
                self.metrics.record_upstream_failure()
                log.error("generation_empty")
                raise UpstreamFailure("Chat completion returned no content", error_code="empty_completion")
        except UpstreamFailure:
            self.metrics.record_upstream_failure()
            log.error("generation_failed_before_stream")
            raise
        except Exception as e:
            self.metrics.record_upstream_failure()
            log.error("generation_failed_before_stream", error=str(e))
            raise UpstreamFailure(f"Chat completion failed: {e}") from e

        queue: "asyncio.Queue[TurnEvent]" = asyncio.Queue()
        task = asyncio.create_task(self._generate(state, iterator, first, stream, queue))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        return StreamingReply(queue, task, conversation_id, route)

    def _build_messages(self, system_prompt: str, request: TurnRequest) -> List[Dict[str, str]]:
        messages = [{"role": Role.SYSTEM.value, "content": system_prompt}]
        window = self.settings.history_window
        history = request.history[-window:] if window > 0 else []
        for turn in history:
            if turn.role in (Role.USER, Role.ASSISTANT) and turn.content:
                messages.append({"role": turn.role.value, "content": turn.content})
        messages.append({"role": Role.USER.value, "content": request.message})
        return messages

    async def _generate(
        self,
        state: dict,
        iterator: AsyncIterator[str],
        first: Optional[str],
        stream: GuardedStream,
        queue: "asyncio.Queue[TurnEvent]",
    ) -> TurnEvent:
        log = logger.bind(request_id=state["request_id"])

        def forward(delta: str) -> None:
            chunk = stream.feed(delta)
            if chunk:
                queue.put_nowait(TextDelta(chunk))

        try:
            if first is not None:
                forward(first)
                async for delta in iterator:
                    forward(delta)
        except Exception as e:
            self.metrics.record_upstream_failure()
            log.error("generation_failed_mid_stream", error=str(e), generated_length=len(stream.raw_text))
            error = e if isinstance(e, CompanionError) else UpstreamFailure(f"Chat completion failed: {e}")
            event: TurnEvent = TurnFailed(error_code=error.error_code, message=error.message)
            queue.put_nowait(event)
            return event

        try:
            final_state = await self.finalization_graph.ainvoke({**state, "stream": stream})
        except Exception as e:
            log.error("finalization_failed", error=str(e), exc_info=True)
            event = TurnFailed(error_code="internal_error", message="Failed to finalize response")
            queue.put_nowait(event)
            return event

        if final_state.get("tail"):
            queue.put_nowait(TextDelta(final_state["tail"]))

        metadata = final_state["metadata"]
        latency_ms = round((time.perf_counter() - state["start_time"]) * 1000, 1)
        self.metrics.record_turn(metadata.route.value, latency_ms)
        log.info(
            "turn_completed",
            route=metadata.route.value,
            safety=metadata.safety.label.value,
            response_length=len(final_state["final_response"]),
            content_replaced=metadata.content_replaced,
            persisted=final_state.get("persisted", False),
            latency_ms=latency_ms,
        )

        event = TurnCompleted(
            metadata=metadata,
            final_text=final_state["final_response"],
            persisted=final_state.get("persisted", False),
        )
        queue.put_nowait(event)
        return event


def build_orchestrator(
    settings: Optional[Settings] = None,
    chat_provider: Optional[ChatCompletionProvider] = None,
    triage_provider: Optional[TriageProvider] = None,
    message_store: Optional[MessageStore] = None,
    golden_store: Optional[GoldenExampleStore] = None,
    memory_provider: Optional[MemoryProvider] = None,
    personas: Optional[PersonaRegistry] = None,
    metrics: Optional[MetricsCollector] = None,
) -> ConversationOrchestrator:
    """
    Wire an orchestrator from its collaborators.

    Omitted collaborators get the configured providers and in-memory stores.

    Returns:
        Ready ConversationOrchestrator
    """
    settings = settings or get_settings()

    if golden_store is None:
        golden_store = InMemoryGoldenExampleStore.load_json(DEFAULT_GOLDEN_EXAMPLES_PATH)

    nodes = TurnNodes(
        input_guard=InputGuard(max_length=settings.max_input_length),
        classifier=FastTriageClassifier(
            provider=triage_provider or GroqTriageProvider(settings),
            settings=settings,
        ),
        crisis_screen=CrisisKeywordScreen(),
        memory=MemoryContextAssembler(memory_provider if memory_provider is not None else InMemoryMemoryManager()),
        golden_cache=GoldenExampleCache(golden_store, settings=settings),
        composer=PromptComposer(),
        message_store=message_store if message_store is not None else InMemoryMessageStore(settings.default_conversation_title),
        metrics=metrics or get_metrics_collector(),
        settings=settings,
    )

    return ConversationOrchestrator(
        nodes=nodes,
        chat_provider=chat_provider or DeepSeekChatProvider(settings),
        personas=personas or get_persona_registry(),
        settings=settings,
    )

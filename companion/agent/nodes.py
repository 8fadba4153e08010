"""Graph nodes for the turn pipeline.

Each node takes TurnState and returns a partial state update dict. Nodes are
bound methods of TurnNodes so collaborators are injected rather than global.
"""
import asyncio
import time
from typing import Any, Dict, List, Optional

import structlog

from companion.agent.state import TurnState
from companion.config import Settings, get_settings
from companion.crisis_screen import CrisisKeywordScreen
from companion.golden_cache import GoldenExampleCache, format_examples_for_prompt
from companion.guardrails.input_guard import InputGuard, get_blocked_response
from companion.memory import MemoryContextAssembler
from companion.models import (
    ExampleMatch,
    Role,
    Route,
    SafetySignal,
    TriageResult,
    TurnMetadata,
    max_safety_level,
)
from companion.monitoring.metrics_collector import MetricsCollector
from companion.prompt_composer import PromptComposer
from companion.stores import MessageStore
from companion.triage import FastTriageClassifier

logger = structlog.get_logger(__name__)


def derive_title(message: str, max_chars: int) -> str:
    """Conversation title from the first user message."""
    text = " ".join(message.split())
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def elapsed_ms(state: TurnState) -> float:
    start = state.get("start_time")
    if start is None:
        return 0.0
    return round((time.perf_counter() - start) * 1000, 1)


class TurnNodes:
    """Node implementations sharing the pipeline's collaborators."""

    def __init__(
        self,
        input_guard: InputGuard,
        classifier: FastTriageClassifier,
        crisis_screen: CrisisKeywordScreen,
        memory: MemoryContextAssembler,
        golden_cache: GoldenExampleCache,
        composer: PromptComposer,
        message_store: Optional[MessageStore],
        metrics: MetricsCollector,
        settings: Optional[Settings] = None,
    ):
        self.input_guard = input_guard
        self.classifier = classifier
        self.crisis_screen = crisis_screen
        self.memory = memory
        self.golden_cache = golden_cache
        self.composer = composer
        self.message_store = message_store
        self.metrics = metrics
        self.settings = settings or get_settings()

    async def input_guard_node(self, state: TurnState) -> Dict[str, Any]:
        """
        Node 1: Check the raw message before any model call.

        Args:
            state: Current turn state

        Returns:
            Partial state update with the guard decision
        """
        guard = self.input_guard.evaluate(state["message"])
        return {"guard": guard}

    async def blocked_reply_node(self, state: TurnState) -> Dict[str, Any]:
        """Short-circuit with the fixed reply for the block reason."""
        reason = state["guard"].reason
        log = logger.bind(request_id=state["request_id"], node="blocked_reply")

        latency_ms = elapsed_ms(state)
        self.metrics.record_blocked(reason.value if reason else "unknown", latency_ms)
        log.info("turn_blocked", reason=reason.value if reason else None, latency_ms=latency_ms)

        return {"blocked_response": get_blocked_response(reason)}

    async def triage_node(self, state: TurnState) -> Dict[str, Any]:
        """
        Node 2: Classify safety, emotion and route.

        The keyword screen may raise the safety level of the classifier's
        result; it never lowers it.

        Args:
            state: Current turn state

        Returns:
            Partial state update with the triage outcome and effective result
        """
        log = logger.bind(request_id=state["request_id"], node="triage")

        outcome = await self.classifier.analyze(state["message"], state.get("history", []))
        if outcome.is_fallback:
            self.metrics.record_triage_fallback(outcome.fallback_reason.value)

        result = outcome.result
        screen = self.crisis_screen.screen(state["message"])
        level = max_safety_level(result.safety_level, screen.safety_level)

        floor_applied = level != result.safety_level
        if floor_applied:
            result = TriageResult(
                safety_level=level,
                safety_reasoning=f"Keyword screen: {', '.join(screen.matched)}",
                emotion=result.emotion,
                route=Route.CRISIS,
                state_reasoning=result.state_reasoning,
            )
            self.metrics.record_safety_floor()
            log.warning(
                "safety_floor_applied",
                model_safety=outcome.result.safety_level.value,
                safety=level.value,
                triage_fallback=outcome.is_fallback,
            )

        log.info(
            "triage_resolved",
            safety=result.safety_level.value,
            route=result.route.value,
            triage_fallback=outcome.is_fallback,
        )

        return {
            "triage": outcome,
            "triage_result": result,
            "safety_floor_applied": floor_applied,
        }

    async def gather_context_node(self, state: TurnState) -> Dict[str, Any]:
        """
        Node 3: Fetch memory and golden examples concurrently.

        Either source failing leaves its part of the context empty.
        """
        log = logger.bind(request_id=state["request_id"], node="gather_context")

        memory_context, examples = await asyncio.gather(
            self.memory.assemble(state.get("user_id"), state["message"]),
            self._retrieve_examples(state["message"], log),
        )

        log.info(
            "context_gathered",
            memory_length=len(memory_context),
            example_count=len(examples),
        )

        return {
            "memory_context": memory_context,
            "examples": examples,
            "example_block": format_examples_for_prompt(examples),
        }

    async def _retrieve_examples(self, message: str, log) -> List[ExampleMatch]:
        try:
            return await self.golden_cache.retrieve(message, self.settings.golden_top_k)
        except Exception as e:
            log.warning("example_retrieval_failed", error=str(e))
            return []

    async def compose_prompt_node(self, state: TurnState) -> Dict[str, Any]:
        """Node 4: Build the system prompt."""
        system_prompt = self.composer.compose(
            persona=state["persona"],
            memory_context=state.get("memory_context", ""),
            example_block=state.get("example_block", ""),
            route=state["triage_result"].route,
        )
        return {"system_prompt": system_prompt}

    async def output_guard_node(self, state: TurnState) -> Dict[str, Any]:
        """
        Node 5: Guard the complete generation.

        Args:
            state: Turn state holding the GuardedStream that saw the generation

        Returns:
            Partial state update with final text, unsent tail and metadata
        """
        log = logger.bind(request_id=state["request_id"], node="output_guard")

        outcome = state["stream"].finish()
        if outcome.issues or outcome.content_replaced:
            self.metrics.record_output_issues(outcome.issues, outcome.content_replaced)
            log.warning(
                "output_guard_applied",
                issues=[issue.value for issue in outcome.issues],
                content_replaced=outcome.content_replaced,
            )

        triage = state["triage"]
        result = state["triage_result"]
        metadata = TurnMetadata(
            route=result.route,
            safety=SafetySignal(label=result.safety_level),
            emotion=result.emotion,
            assessment_stage=result.assessment_stage,
            triage_fallback=triage.is_fallback,
            safety_floor_applied=state.get("safety_floor_applied", False),
            output_issues=outcome.issues,
            content_replaced=outcome.content_replaced,
        )

        return {
            "final_response": outcome.final_text,
            "tail": outcome.tail,
            "output_issues": outcome.issues,
            "content_replaced": outcome.content_replaced,
            "metadata": metadata,
        }

    async def persist_node(self, state: TurnState) -> Dict[str, Any]:
        """
        Node 6: Store the user message, the title and the assistant message.

        Failures are logged at error level and counted; they never reach the
        client, which already has the reply.
        """
        log = logger.bind(request_id=state["request_id"], node="persist")

        user_id = state.get("user_id")
        conversation_id = state.get("conversation_id")
        if self.message_store is None or not user_id or not conversation_id:
            log.info("persistence_skipped", anonymous=not user_id)
            return {"persisted": False}

        result = state["triage_result"]
        metadata = state["metadata"].to_packet()
        metadata["safetyReasoning"] = result.safety_reasoning
        metadata["stateReasoning"] = result.state_reasoning

        try:
            await self.message_store.create_message(
                conversation_id=conversation_id,
                role=Role.USER,
                content=state["message"],
                user_id=user_id,
            )

            conversation = await self.message_store.get_conversation(conversation_id)
            if conversation is not None and conversation.title == self.settings.default_conversation_title:
                title = derive_title(state["message"], self.settings.title_max_chars)
                await self.message_store.update_conversation_title(conversation_id, title)

            await self.message_store.create_message(
                conversation_id=conversation_id,
                role=Role.ASSISTANT,
                content=state["final_response"],
                metadata=metadata,
                user_id=user_id,
            )
        except Exception as e:
            self.metrics.record_persistence_failure()
            log.error(
                "persistence_failed",
                conversation_id=conversation_id,
                error=str(e),
                exc_info=True,
            )
            return {"persisted": False, "persistence_error": str(e)}

        log.info("turn_persisted", conversation_id=conversation_id)
        return {"persisted": True}

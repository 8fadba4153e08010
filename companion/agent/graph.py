"""LangGraph definitions for the turn pipeline.

A turn runs in two graphs around the streamed generation: preparation
(input guard, triage, context, prompt) before the first token and
finalization (output guard, persistence) after the last one.
"""
from typing import Literal

from langgraph.graph import StateGraph, END
import structlog

from companion.agent.nodes import TurnNodes
from companion.agent.state import TurnState

logger = structlog.get_logger(__name__)


def should_block(state: TurnState) -> Literal["blocked", "continue"]:
    """
    Conditional edge: Short-circuit unsafe input.

    Args:
        state: Current turn state

    Returns:
        "blocked" if the input guard rejected the message, "continue" otherwise
    """
    guard = state.get("guard")
    if guard is not None and not guard.safe:
        return "blocked"

    return "continue"


def create_preparation_graph(nodes: TurnNodes):
    """
    Create the graph that runs before generation.

    Graph flow:
    1. Input guard (deterministic) -> blocked reply or continue
    2. Triage (LLM + keyword floor)
    3. Context (memory and golden examples, concurrently)
    4. Prompt composition

    Args:
        nodes: Node implementations bound to their collaborators

    Returns:
        Compiled LangGraph
    """
    graph = StateGraph(TurnState)

    graph.add_node("input_guard", nodes.input_guard_node)
    graph.add_node("blocked_reply", nodes.blocked_reply_node)
    graph.add_node("classify", nodes.triage_node)
    graph.add_node("gather_context", nodes.gather_context_node)
    graph.add_node("compose_prompt", nodes.compose_prompt_node)

    graph.set_entry_point("input_guard")

    graph.add_conditional_edges(
        "input_guard",
        should_block,
        {
            "blocked": "blocked_reply",
            "continue": "classify"
        }
    )

    graph.add_edge("blocked_reply", END)
    graph.add_edge("classify", "gather_context")
    graph.add_edge("gather_context", "compose_prompt")
    graph.add_edge("compose_prompt", END)

    compiled_graph = graph.compile()
    logger.info("preparation_graph_compiled")
    return compiled_graph


def create_finalization_graph(nodes: TurnNodes):
    """
    Create the graph that runs after generation.

    Graph flow:
    1. Output guard over the complete text
    2. Persistence (failures are logged, never raised)

    Args:
        nodes: Node implementations bound to their collaborators

    Returns:
        Compiled LangGraph
    """
    graph = StateGraph(TurnState)

    graph.add_node("output_guard", nodes.output_guard_node)
    graph.add_node("persist", nodes.persist_node)

    graph.set_entry_point("output_guard")
    graph.add_edge("output_guard", "persist")
    graph.add_edge("persist", END)

    compiled_graph = graph.compile()
    logger.info("finalization_graph_compiled")
    return compiled_graph

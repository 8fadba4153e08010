"""Turn state schema for the LangGraph turn pipeline."""
from typing import TypedDict, Optional, List, Any

from companion.models import (
    ChatMessage,
    ExampleMatch,
    InputGuardResult,
    OutputIssue,
    Persona,
    TriageOutcome,
    TriageResult,
    TurnMetadata,
)


class TurnState(TypedDict, total=False):
    """
    State that flows through the turn graphs.

    All fields are optional (total=False) to allow partial updates.
    """
    # Input
    request_id: str
    user_id: Optional[str]
    conversation_id: Optional[str]
    message: str
    history: List[ChatMessage]
    persona: Persona
    start_time: float

    # Input guard stage
    guard: InputGuardResult
    blocked_response: Optional[str]

    # Triage stage
    triage: TriageOutcome
    triage_result: TriageResult
    safety_floor_applied: bool

    # Context stage
    memory_context: str
    examples: List[ExampleMatch]
    example_block: str

    # Compose stage
    system_prompt: str

    # Output guard stage
    stream: Any  # GuardedStream
    final_response: str
    tail: str
    output_issues: List[OutputIssue]
    content_replaced: bool
    metadata: TurnMetadata

    # Persist stage
    persisted: bool
    persistence_error: Optional[str]

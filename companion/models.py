"""Data models for the companion chat service."""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# Triage
# ============================================================

class SafetyLevel(str, Enum):
    """Risk level assigned to a user message."""

    NORMAL = "normal"
    URGENT = "urgent"  # Ideation without a concrete plan
    CRISIS = "crisis"  # Explicit intent with a plan


class Route(str, Enum):
    """Conversational mode selected for a turn."""

    SUPPORT = "support"
    ASSESSMENT = "assessment"
    CRISIS = "crisis"


class EmotionLabel(str, Enum):
    """Emotion categories the triage model may assign."""

    ANXIETY = "焦虑"
    DEPRESSION = "抑郁"
    SADNESS = "悲伤"
    ANGER = "愤怒"
    FEAR = "恐惧"
    CALM = "平静"
    JOY = "快乐"


class AssessmentStage(str, Enum):
    """Progress of an assessment conversation."""

    INTAKE = "intake"
    CONCLUSION = "conclusion"


class Emotion(BaseModel):
    """Emotion label with intensity."""

    label: EmotionLabel
    score: int = Field(ge=1, le=10)

    @field_validator("score", mode="before")
    @classmethod
    def clamp_score(cls, value: Any) -> int:
        """Round and clamp model-provided intensities into 1-10."""
        try:
            score = int(round(float(value)))
        except (TypeError, ValueError):
            raise ValueError(f"emotion score is not numeric: {value!r}")
        return max(1, min(10, score))


ELEVATED_SAFETY_LEVELS = {SafetyLevel.URGENT, SafetyLevel.CRISIS}

_SAFETY_ORDER = {
    SafetyLevel.NORMAL: 0,
    SafetyLevel.URGENT: 1,
    SafetyLevel.CRISIS: 2,
}


def max_safety_level(first: SafetyLevel, second: SafetyLevel) -> SafetyLevel:
    """Return the more severe of two safety levels."""
    return first if _SAFETY_ORDER[first] >= _SAFETY_ORDER[second] else second


class TriageResult(BaseModel):
    """Per-turn classification of safety, emotion and route."""

    model_config = ConfigDict(populate_by_name=True)

    safety_level: SafetyLevel = Field(alias="safety")
    safety_reasoning: str = Field(default="", alias="safetyReasoning")
    emotion: Emotion
    route: Route
    state_reasoning: str = Field(default="", alias="stateReasoning")
    assessment_stage: Optional[AssessmentStage] = Field(default=None, alias="assessmentStage")

    @model_validator(mode="after")
    def elevated_safety_routes_to_crisis(self) -> "TriageResult":
        """Urgent and crisis safety levels always use the crisis route."""
        if self.safety_level in ELEVATED_SAFETY_LEVELS and self.route != Route.CRISIS:
            self.route = Route.CRISIS
            self.assessment_stage = None
        return self


class FallbackReason(str, Enum):
    """Why the triage classifier returned the default result."""

    MISSING_API_KEY = "missing_api_key"
    TRANSPORT_ERROR = "transport_error"
    UNPARSEABLE_RESPONSE = "unparseable_response"
    INVALID_RESPONSE = "invalid_response"


FALLBACK_REASONING = "Default fallback - no analysis performed"


def default_triage_result() -> TriageResult:
    """The fail-open result used whenever triage cannot classify a message."""
    return TriageResult(
        safety_level=SafetyLevel.NORMAL,
        safety_reasoning=FALLBACK_REASONING,
        emotion=Emotion(label=EmotionLabel.CALM, score=5),
        route=Route.SUPPORT,
        state_reasoning=FALLBACK_REASONING,
    )


class TriageOutcome(BaseModel):
    """Tagged result of a triage call: a real classification or the default."""

    kind: Literal["ok", "fallback"]
    result: TriageResult
    fallback_reason: Optional[FallbackReason] = None

    @classmethod
    def ok(cls, result: TriageResult) -> "TriageOutcome":
        return cls(kind="ok", result=result)

    @classmethod
    def fallback(cls, reason: FallbackReason) -> "TriageOutcome":
        return cls(kind="fallback", result=default_triage_result(), fallback_reason=reason)

    @property
    def is_fallback(self) -> bool:
        return self.kind == "fallback"


# ============================================================
# Guardrails
# ============================================================

class InputGuardReason(str, Enum):
    """Why an input message was blocked."""

    PROMPT_INJECTION = "prompt_injection"
    MESSAGE_TOO_LONG = "message_too_long"
    SUSPICIOUS_PATTERN = "suspicious_pattern"


class InputGuardResult(BaseModel):
    """Decision of the input guard."""

    safe: bool
    reason: Optional[InputGuardReason] = None


class OutputIssue(str, Enum):
    """Problems the output guard can find in generated text."""

    PII_DETECTED = "pii_detected"
    HARMFUL_CONTENT = "harmful_content"
    SYSTEM_LEAK = "system_leak"


class OutputGuardResult(BaseModel):
    """Decision of the output guard."""

    safe: bool
    issues: List[OutputIssue] = Field(default_factory=list)
    redacted_response: str


class PIIType(str, Enum):
    """Types of PII that can be detected."""

    PHONE = "phone"
    ID_CARD = "id_card"
    EMAIL = "email"
    BANK_CARD = "bank_card"
    QQ = "qq"
    WECHAT = "wechat"
    IP_ADDRESS = "ip"


class PIIMetadata(BaseModel):
    """Metadata about detected PII."""

    type: PIIType
    marker: str
    position_start: int
    position_end: int


class RedactionResult(BaseModel):
    """Result of PII redaction."""

    redacted_message: str
    pii_metadata: List[PIIMetadata] = Field(default_factory=list)
    redaction_count: int = 0

    @property
    def has_pii(self) -> bool:
        """Check if any PII was detected."""
        return len(self.pii_metadata) > 0

    @property
    def pii_types(self) -> List[PIIType]:
        """Get list of PII types detected, in first-seen order."""
        seen: List[PIIType] = []
        for p in self.pii_metadata:
            if p.type not in seen:
                seen.append(p.type)
        return seen


# ============================================================
# Context
# ============================================================

class GoldenExample(BaseModel):
    """Human-curated exemplar exchange."""

    id: str
    user_message: str
    assistant_message: str


class ExampleMatch(BaseModel):
    """A golden example retrieved for a query, with its coverage score."""

    user_message: str
    assistant_message: str
    score: float = Field(ge=0.0, le=1.0)


class MemoryTopic(str, Enum):
    """Topics of long-term user memory."""

    EMOTIONAL_PATTERN = "emotional_pattern"
    COPING_PREFERENCE = "coping_preference"
    PERSONAL_CONTEXT = "personal_context"
    THERAPY_PROGRESS = "therapy_progress"
    TRIGGER_WARNING = "trigger_warning"
    COMMUNICATION_STYLE = "communication_style"


class MemoryEntry(BaseModel):
    """A stored long-term memory about a user."""

    id: str
    user_id: str
    topic: MemoryTopic
    content: str
    confidence: float = Field(ge=0.0, le=1.0)
    updated_at: datetime = Field(default_factory=utcnow)


class MemoryContext(BaseModel):
    """Memory entries relevant to a message and their prompt rendering."""

    context_string: str = ""
    entries: List[MemoryEntry] = Field(default_factory=list)


class Persona(BaseModel):
    """A named system-prompt template."""

    id: str
    name: str
    system_prompt: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


# ============================================================
# Conversation
# ============================================================

class Role(str, Enum):
    """Author of a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChatMessage(BaseModel):
    """A prior turn supplied with a request."""

    role: Role
    content: str


class Message(BaseModel):
    """A persisted conversation message."""

    id: str
    conversation_id: str
    role: Role
    content: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    """A stored conversation header."""

    id: str
    user_id: Optional[str] = None
    title: str
    message_count: int = 0
    updated_at: datetime = Field(default_factory=utcnow)


class SafetySignal(BaseModel):
    """Safety part of the metadata packet."""

    label: SafetyLevel
    score: Optional[int] = None


class TurnMetadata(BaseModel):
    """Metadata packet closing a streamed reply; also stored on the assistant message."""

    route: Route
    safety: SafetySignal
    emotion: Emotion
    assessment_stage: Optional[AssessmentStage] = None
    triage_fallback: bool = False
    safety_floor_applied: bool = False
    output_issues: List[OutputIssue] = Field(default_factory=list)
    content_replaced: bool = False

    def to_packet(self) -> Dict[str, Any]:
        """Serialize with the camelCase keys the chat client reads."""
        packet: Dict[str, Any] = {
            "route": self.route.value,
            "safety": self.safety.model_dump(mode="json", exclude_none=True),
            "emotion": self.emotion.model_dump(mode="json"),
            "triageFallback": self.triage_fallback,
            "safetyFloorApplied": self.safety_floor_applied,
            "outputIssues": [issue.value for issue in self.output_issues],
            "contentReplaced": self.content_replaced,
        }
        if self.assessment_stage is not None:
            packet["assessmentStage"] = self.assessment_stage.value
        return packet


# ============================================================
# API
# ============================================================

class ChatRequest(BaseModel):
    """Request to the chat endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = ""
    history: List[ChatMessage] = Field(default_factory=list)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    persona_id: Optional[str] = Field(default=None, alias="personaId")


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    """Structured error payload."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    chat_provider_status: str
    triage_provider_status: str
    golden_examples_cached: int

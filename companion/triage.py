"""Fast triage classification: safety level, emotion and route per turn."""
import asyncio
import json
import math
import re
import time
from typing import Any, Dict, Optional, Sequence

from pydantic import ValidationError

from companion.config import Settings, get_settings
from companion.errors import UpstreamDegraded
from companion.logging_config import get_logger
from companion.models import (
    AssessmentStage,
    ChatMessage,
    EmotionLabel,
    FallbackReason,
    Route,
    TriageOutcome,
    TriageResult,
)
from companion.prompts.triage_prompt import get_triage_prompt
from companion.providers import TriageProvider, get_triage_provider

logger = get_logger(__name__)

CODE_FENCE_PATTERN = re.compile(r'```(?:json)?\n?|\n?```')

REQUIRED_FIELDS = ("safety", "emotion", "route")

EMOTION_LABELS = {label.value for label in EmotionLabel}
DEFAULT_EMOTION_SCORE = 5


class TriageParseError(ValueError):
    """Model output could not be turned into a TriageResult."""

    def __init__(self, message: str, reason: FallbackReason):
        super().__init__(message)
        self.reason = reason


def parse_triage_response(text: str) -> TriageResult:
    """
    Parse raw triage model output.

    Args:
        text: Model output, possibly wrapped in a markdown code fence

    Returns:
        Validated TriageResult

    Raises:
        TriageParseError: When the output is not JSON or lacks required fields
    """
    cleaned = CODE_FENCE_PATTERN.sub("", text.strip()).strip()

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise TriageParseError(f"not JSON: {e}", FallbackReason.UNPARSEABLE_RESPONSE) from e

    if not isinstance(data, dict):
        raise TriageParseError("top-level value is not an object", FallbackReason.UNPARSEABLE_RESPONSE)

    missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
    if missing:
        raise TriageParseError(f"missing fields: {missing}", FallbackReason.INVALID_RESPONSE)

    data = _normalize_fields(data)

    try:
        return TriageResult.model_validate(data)
    except ValidationError as e:
        raise TriageParseError(
            f"invalid fields: {e.error_count()} errors",
            FallbackReason.INVALID_RESPONSE,
        ) from e


def _normalize_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(data)
    for name in ("safety", "route"):
        if isinstance(data[name], str):
            data[name] = data[name].strip().lower()
    data["emotion"] = _normalize_emotion(data["emotion"])

    if not data.get("safetyReasoning"):
        data["safetyReasoning"] = f"Safety: {data['safety']}"
    if not data.get("stateReasoning"):
        data["stateReasoning"] = f"Route: {data['route']}"

    # Small models emit stages for every route and invent stage names
    stage = data.get("assessmentStage")
    valid_stages = {s.value for s in AssessmentStage}
    if data.get("route") != Route.ASSESSMENT.value or stage not in valid_stages:
        data["assessmentStage"] = None
    return data


def _normalize_emotion(value: Any) -> Dict[str, Any]:
    """Map off-vocabulary labels and unusable scores onto the calm default."""
    if isinstance(value, str):
        value = {"label": value}
    if not isinstance(value, dict):
        value = {}

    label = str(value.get("label", "")).strip()
    if label not in EMOTION_LABELS:
        logger.info("triage_emotion_coerced", label=label[:20], default=EmotionLabel.CALM.value)
        label = EmotionLabel.CALM.value

    try:
        score = float(value.get("score"))
    except (TypeError, ValueError):
        score = DEFAULT_EMOTION_SCORE
    if not math.isfinite(score):
        score = DEFAULT_EMOTION_SCORE

    return {"label": label, "score": score}


class FastTriageClassifier:
    """Single-call triage classifier with a fail-open default."""

    def __init__(
        self,
        provider: Optional[TriageProvider] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the classifier.

        Args:
            provider: Triage model client (defaults to the Groq provider)
            settings: Application settings (defaults to config)
        """
        self.settings = settings or get_settings()
        self.provider = provider or get_triage_provider()
        self.temperature = self.settings.triage_temperature
        self.max_tokens = self.settings.triage_max_tokens
        self.timeout = self.settings.triage_timeout_seconds
        self.history_turns = self.settings.triage_history_turns

    async def analyze(
        self,
        message: str,
        recent_history: Sequence[ChatMessage] = (),
    ) -> TriageOutcome:
        """
        Classify a user message.

        Never raises: every failure returns ``TriageOutcome.fallback`` carrying
        the default result (normal, 平静/5, support).

        Args:
            message: Current user message
            recent_history: Prior turns, oldest first

        Returns:
            TriageOutcome tagged ok or fallback
        """
        system_prompt, user_prompt = get_triage_prompt(message, recent_history, self.history_turns)
        start = time.perf_counter()

        try:
            text = await asyncio.wait_for(
                self.provider.complete(
                    system_prompt=system_prompt,
                    user_message=user_prompt,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ),
                timeout=self.timeout,
            )
            result = parse_triage_response(text)

        except UpstreamDegraded as e:
            return self._fallback(_degraded_reason(e), e.message)
        except asyncio.TimeoutError:
            return self._fallback(FallbackReason.TRANSPORT_ERROR, f"timed out after {self.timeout}s")
        except TriageParseError as e:
            return self._fallback(e.reason, str(e))
        except Exception as e:
            # Fail open on anything else the provider raises
            return self._fallback(FallbackReason.TRANSPORT_ERROR, f"{type(e).__name__}: {e}")

        logger.info(
            "triage_complete",
            safety=result.safety_level.value,
            route=result.route.value,
            emotion=result.emotion.label.value,
            emotion_score=result.emotion.score,
            latency_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return TriageOutcome.ok(result)

    @staticmethod
    def _fallback(reason: FallbackReason, detail: str) -> TriageOutcome:
        logger.warning("triage_fallback", reason=reason.value, detail=detail[:200])
        return TriageOutcome.fallback(reason)


def _degraded_reason(error: UpstreamDegraded) -> FallbackReason:
    try:
        return FallbackReason(error.error_code)
    except ValueError:
        return FallbackReason.TRANSPORT_ERROR

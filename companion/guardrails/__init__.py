"""Input and output guardrails."""
from companion.guardrails.input_guard import InputGuard, get_blocked_response
from companion.guardrails.output_guard import (
    OutputGuard,
    CRISIS_HOTLINE_MESSAGE,
    ensure_crisis_referral,
)
from companion.guardrails.pii_redactor import PIIRedactor

__all__ = [
    "InputGuard",
    "OutputGuard",
    "PIIRedactor",
    "get_blocked_response",
    "ensure_crisis_referral",
    "CRISIS_HOTLINE_MESSAGE",
]

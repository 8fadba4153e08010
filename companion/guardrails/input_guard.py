"""Input guard.

Blocks messages before any model call:
- overlong messages
- prompt injection (instruction override, role reassignment, hidden-prompt probes)
- suspicious payloads (control-character runs, invisible characters, encoded blobs)
"""
import re
from typing import Optional

from companion.config import get_settings
from companion.logging_config import get_logger
from companion.models import InputGuardReason, InputGuardResult

logger = get_logger(__name__)


INJECTION_PATTERNS = [
    # English
    re.compile(r'ignore\s+(all\s+)?(previous|above|prior)\s+(instructions?|prompts?)', re.IGNORECASE),
    re.compile(r'ignore\s+all\s+(instructions?|prompts?)', re.IGNORECASE),
    re.compile(r'you\s+are\s+now\s+[a-z]+', re.IGNORECASE),
    re.compile(r'disregard\s+(previous|your|all)\s+(instructions?|programming|rules)', re.IGNORECASE),
    re.compile(r'^\s*system\s*:', re.IGNORECASE | re.MULTILINE),
    re.compile(r'```\s*(system|assistant)', re.IGNORECASE),
    re.compile(r'\[\[.*SYSTEM.*\]\]', re.IGNORECASE),
    re.compile(r'<\|?(im_start|im_end|system)\|?>', re.IGNORECASE),
    re.compile(r'pretend\s+(that\s+)?you\s+are', re.IGNORECASE),
    re.compile(r'act\s+as\s+if\s+you', re.IGNORECASE),
    re.compile(r'new\s+instructions?\s*:', re.IGNORECASE),
    re.compile(r'(tell|show)\s+me\s+your\s+(system\s+)?(prompt|instructions)', re.IGNORECASE),
    re.compile(r'what\s+(is|are)\s+your\s+(system|initial)\s+(prompt|message|instructions)', re.IGNORECASE),
    re.compile(r'(print|reveal|repeat)\s+your\s+(system|initial|hidden)', re.IGNORECASE),

    # Chinese
    re.compile(r'不管前面说什么'),
    re.compile(r'忽略.{0,10}(指令|提示|设定|规则)'),
    re.compile(r'假装你是'),
    re.compile(r'扮演.{0,10}角色'),
    re.compile(r'你现在是(一个|一名|一位|个)'),
    re.compile(r'从现在开始你是'),
    re.compile(r'忘记.{0,10}设定'),
    re.compile(r'重置.{0,6}对话'),
    re.compile(r'你的系统提示'),
    re.compile(r'你的设定是什么'),
    re.compile(r'告诉我你的(指令|提示词)'),
]

SUSPICIOUS_PATTERNS = [
    # Runs of C0/C1 control characters (tab/newline/CR excluded)
    re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]{3,}'),
    # Runs of zero-width / bidi override characters used to hide text
    re.compile(r'[\u200b-\u200f\u202a-\u202e\u2060-\u2064\ufeff]{3,}'),
    # Long base64-looking blobs
    re.compile(r'(?<![A-Za-z0-9+/])[A-Za-z0-9+/]{80,}={0,2}(?![A-Za-z0-9+/])'),
    # Hex/unicode escaped payloads
    re.compile(r'(?:\\x[0-9a-fA-F]{2}){8,}'),
    re.compile(r'(?:\\u[0-9a-fA-F]{4}){8,}'),
    # Percent-encoded payloads
    re.compile(r'(?:%[0-9a-fA-F]{2}){12,}'),
]


BLOCKED_RESPONSES = {
    InputGuardReason.PROMPT_INJECTION: '我注意到你的消息包含一些特殊内容。让我们专注于你真正想讨论的话题吧。你现在感觉怎么样？',
    InputGuardReason.MESSAGE_TOO_LONG: '你的消息有点长，让我们把话题聚焦一些。能简单告诉我你最想讨论什么吗？',
    InputGuardReason.SUSPICIOUS_PATTERN: '这条消息里有一些我没法识别的内容。可以换一种方式告诉我你想聊什么吗？',
}

DEFAULT_BLOCKED_RESPONSE = '让我们继续我们的对话吧。你现在感觉怎么样？'


class InputGuard:
    """Synchronous pre-model check on raw user input."""

    def __init__(self, max_length: Optional[int] = None):
        settings = get_settings()
        self.max_length = max_length if max_length is not None else settings.max_input_length

    def evaluate(self, raw_message: str) -> InputGuardResult:
        """
        Check whether a message may enter the pipeline.

        Args:
            raw_message: Message exactly as submitted

        Returns:
            InputGuardResult; ``reason`` is set when ``safe`` is False
        """
        if len(raw_message) > self.max_length:
            _log_block(
                InputGuardReason.MESSAGE_TOO_LONG,
                length=len(raw_message),
                max_length=self.max_length,
            )
            return InputGuardResult(safe=False, reason=InputGuardReason.MESSAGE_TOO_LONG)

        for pattern in INJECTION_PATTERNS:
            if pattern.search(raw_message):
                _log_block(InputGuardReason.PROMPT_INJECTION, pattern=pattern.pattern[:50])
                return InputGuardResult(safe=False, reason=InputGuardReason.PROMPT_INJECTION)

        for pattern in SUSPICIOUS_PATTERNS:
            if pattern.search(raw_message):
                _log_block(InputGuardReason.SUSPICIOUS_PATTERN, pattern=pattern.pattern[:50])
                return InputGuardResult(safe=False, reason=InputGuardReason.SUSPICIOUS_PATTERN)

        return InputGuardResult(safe=True)


def get_blocked_response(reason: Optional[InputGuardReason]) -> str:
    """Fixed user-facing reply for a blocked message."""
    if reason is None:
        return DEFAULT_BLOCKED_RESPONSE
    return BLOCKED_RESPONSES.get(reason, DEFAULT_BLOCKED_RESPONSE)


def _log_block(reason: InputGuardReason, **context) -> None:
    logger.warning("input_guard_blocked", reason=reason.value, **context)

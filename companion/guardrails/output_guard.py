"""Output guard to keep unsafe generations away from users."""
import re
from typing import List, Optional
from companion.guardrails.pii_redactor import PIIRedactor
from companion.logging_config import get_logger
from companion.models import OutputGuardResult, OutputIssue

logger = get_logger(__name__)


# Never sent to a user, whatever the context
HARMFUL_KEYWORDS = [
    # Self-harm methods
    "自杀方法",
    "具体剂量",
    "怎么死",
    "割腕方法",
    "上吊方法",
    "服毒方法",
    "跳楼方法",
    "烧炭方法",
    "安眠药剂量",
    "致死剂量",
    "致死量",
    # Violence
    "如何伤害",
    "如何杀",
    "怎样杀人",
    # Illegal activity
    "如何制毒",
    "怎么买到毒品",
]

SYSTEM_LEAK_PATTERNS = [
    re.compile(r'system\s*prompt', re.IGNORECASE),
    re.compile(r'initial\s*instructions?', re.IGNORECASE),
    re.compile(r'我的系统提示'),
    re.compile(r'我的角色设定'),
    re.compile(r'我被设定为'),
    re.compile(r'我的初始指令'),
]

LEAK_MARKER = "[内容已隐藏]"

# Lines of the persona instructions at least this long count as verbatim leaks
MIN_ECHO_LINE_LENGTH = 24

CRISIS_HOTLINES = (
    "• 全国心理援助热线：400-161-9995\n"
    "• 北京心理危机研究与干预中心：010-82951332\n"
    "• 生命热线：400-821-1215"
)

CRISIS_HOTLINE_MESSAGE = (
    "我理解你正在经历困难的时刻。如果你正处于危机中，请拨打心理援助热线：\n"
    f"{CRISIS_HOTLINES}\n\n"
    "这里有专业的人愿意倾听和帮助你。"
)

CRISIS_REFERRAL = (
    "如果你现在有伤害自己的想法，请不要一个人扛着，可以马上拨打：\n"
    f"{CRISIS_HOTLINES}\n"
    "如果情况紧急，请拨打 120 或 110。"
)


def ensure_crisis_referral(text: str) -> str:
    """Append the hotline referral unless the text already carries one."""
    if "400-161-9995" in text:
        return text
    if not text.strip():
        return CRISIS_HOTLINE_MESSAGE
    return f"{text.rstrip()}\n\n{CRISIS_REFERRAL}"


class OutputGuard:
    """Check generated text for harmful content, instruction leaks and PII."""

    def __init__(self, redactor: Optional[PIIRedactor] = None):
        self.pii_redactor = redactor or PIIRedactor()

    def find_harmful_keyword(self, text: str) -> Optional[str]:
        for keyword in HARMFUL_KEYWORDS:
            if keyword in text:
                return keyword
        return None

    def evaluate(self, text: str, system_prompt: Optional[str] = None) -> OutputGuardResult:
        """
        Evaluate a completed generation and log what was found.

        Args:
            text: Generated text
            system_prompt: Private instructions whose verbatim echo counts as a leak

        Returns:
            OutputGuardResult; ``redacted_response`` is what may be shown and stored
        """
        result = self.check(text, system_prompt)
        if OutputIssue.HARMFUL_CONTENT in result.issues:
            logger.error("output_guard_harmful", keyword=self.find_harmful_keyword(text))
        elif result.issues:
            logger.warning(
                "output_guard_redacted",
                issues=[issue.value for issue in result.issues],
                original_length=len(text),
                redacted_length=len(result.redacted_response),
            )
        return result

    def check(self, text: str, system_prompt: Optional[str] = None) -> OutputGuardResult:
        """Same decision as ``evaluate`` without logging; used on partial text while streaming."""
        # 1. Harmful content replaces the whole response
        if self.find_harmful_keyword(text) is not None:
            return OutputGuardResult(
                safe=False,
                issues=[OutputIssue.HARMFUL_CONTENT],
                redacted_response=CRISIS_HOTLINE_MESSAGE,
            )

        issues: List[OutputIssue] = []
        response = text

        # 2. Instruction leakage
        leaked = False
        for pattern in SYSTEM_LEAK_PATTERNS:
            if pattern.search(response):
                response = pattern.sub(LEAK_MARKER, response)
                leaked = True

        for line in self.protected_lines(system_prompt):
            if line in response:
                response = response.replace(line, LEAK_MARKER)
                leaked = True

        if leaked:
            issues.append(OutputIssue.SYSTEM_LEAK)

        # 3. PII
        redaction = self.pii_redactor.redact(response)
        if redaction.has_pii:
            issues.append(OutputIssue.PII_DETECTED)
            response = redaction.redacted_message

        return OutputGuardResult(
            safe=len(issues) == 0,
            issues=issues,
            redacted_response=response,
        )

    @staticmethod
    def protected_lines(system_prompt: Optional[str]) -> List[str]:
        if not system_prompt:
            return []
        lines = {line.strip() for line in system_prompt.splitlines()}
        # Longest first so a line contained in another is not replaced piecemeal
        return sorted(
            (line for line in lines if len(line) >= MIN_ECHO_LINE_LENGTH),
            key=len,
            reverse=True,
        )

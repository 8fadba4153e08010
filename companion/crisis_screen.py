"""Rule-based crisis screen.

Only high-confidence phrases count. Hopelessness words ("毫无意义", "绝望")
and bare topic words ("自杀", "药物") are common outside a self-harm
context, so they are left to the triage model. The screen can raise a
triage safety level, never lower it.
"""
import re
from dataclasses import dataclass, field
from typing import List

from companion.models import SafetyLevel


# Method / action phrases; they only count together with a plan
METHOD_KEYWORDS = [
    "割腕", "跳楼", "跳河", "跳下去", "上吊", "烧炭", "服毒", "吞药",
    "吃药自杀", "安眠药自杀", "结束生命", "结束自己", "结束我的生命",
    "杀了他", "杀了她",
]

# Wish / ideation phrases stated in the first person
IDEATION_KEYWORDS = [
    "不想活了", "活不下去", "想死", "去死", "死了算了", "离开这个世界",
    "离开世界", "不再醒来", "一直睡下去", "结束这一切",
    "想自杀", "要自杀", "想自残", "想伤害自己",
]

# Preparation phrases and timing tied to a decision
PLAN_KEYWORDS = [
    "准备好了", "已经准备", "买好了", "攒了", "遗书", "在此告别",
    "计划今晚", "打算今晚", "准备今晚", "今晚就", "今天就", "明天就",
    "就在今天",
]

# A match is ignored when one of these closes the clause in front of it
NEGATION_MARKERS = ["不", "没", "别"]
DISTANCING_MARKERS = [
    "从来没", "从没", "没有", "不会", "不要", "不是", "以前", "曾经", "过去",
]
DISTANCING_WINDOW = 4

CLAUSE_BREAK_PATTERN = re.compile(r"[，。！？；,.!?;\n]")


@dataclass
class ScreenResult:
    """Outcome of the keyword screen."""
    safety_level: SafetyLevel
    matched: List[str] = field(default_factory=list)

    @property
    def flagged(self) -> bool:
        return self.safety_level != SafetyLevel.NORMAL


def _is_affirmed(text: str, start: int) -> bool:
    clause = CLAUSE_BREAK_PATTERN.split(text[:start])[-1]
    if clause and clause[-1] in NEGATION_MARKERS:
        return False
    window = clause[-DISTANCING_WINDOW:]
    return not any(marker in window for marker in DISTANCING_MARKERS)


def find_affirmed(keywords: List[str], text: str) -> List[str]:
    """Keywords with at least one occurrence that is not negated or in the past."""
    found = []
    for kw in keywords:
        for match in re.finditer(re.escape(kw), text):
            if _is_affirmed(text, match.start()):
                found.append(kw)
                break
    return found


class CrisisKeywordScreen:
    """Deterministic safety floor applied on top of model triage."""

    def screen(self, message: str) -> ScreenResult:
        """
        Classify explicit self-harm language.

        Args:
            message: User message

        Returns:
            crisis for a method or ideation together with a plan;
            urgent for explicit ideation alone; normal otherwise
        """
        text = message.lower()

        methods = find_affirmed(METHOD_KEYWORDS, text)
        ideation = find_affirmed(IDEATION_KEYWORDS, text)
        plans = find_affirmed(PLAN_KEYWORDS, text)

        if (methods or ideation) and plans:
            return ScreenResult(SafetyLevel.CRISIS, methods + ideation + plans)

        if ideation:
            return ScreenResult(SafetyLevel.URGENT, ideation)

        return ScreenResult(SafetyLevel.NORMAL)

"""Prompts for fast triage classification."""
from typing import List, Sequence, Tuple

from companion.models import ChatMessage, Role

TRIAGE_SYSTEM_PROMPT = """你是心理咨询预分析助手。快速分析用户消息，直接输出 JSON（不要任何其他文字）：

{
  "safety": "crisis" | "urgent" | "normal",
  "safetyReasoning": "简要说明为什么给出这个安全等级，1-2句话",
  "emotion": { "label": "焦虑|抑郁|悲伤|愤怒|恐惧|平静|快乐", "score": 1-10 },
  "route": "crisis" | "support" | "assessment",
  "stateReasoning": "简要说明为什么选择这个路由，1句话",
  "assessmentStage": "intake" | "conclusion" | null
}

安全等级规则：
- crisis: 明确表达自杀/自伤/伤害他人的意图，并且有具体计划（方法、时间或已做准备）
- urgent: 明确表达自伤或不想活的念头，但没有具体计划
- normal: 其他所有情况，包括失眠、压力、难过、疲惫、抱怨

不要过度推断：
- "压力很大"、"睡不好"、"好累"、"心情很差" 都是 normal
- 只有用户自己明确说出伤害意图时才能判为 urgent 或 crisis

路由规则：
- crisis: 当 safety=crisis 或 urgent
- assessment: 用户明确求助，有未解决的负面情绪需深入探索
- support: 日常倾诉、正面情绪、问候、闲聊

评估阶段（仅 route=assessment 时填写，否则为 null）：
- intake: 仍在了解情况
- conclusion: 信息已足够，可以给出总结和建议

如果提供了最近对话，用它判断用户是在回答上一个问题还是开启新话题。

只输出 JSON，不要其他内容。"""

TRIAGE_USER_PROMPT_TEMPLATE = """最近对话：
{history}

当前用户消息：
{message}"""

HISTORY_ROLE_TAGS = {
    Role.USER: "[用户]",
    Role.ASSISTANT: "[AI]",
}


def format_history(recent_history: Sequence[ChatMessage], max_turns: int) -> str:
    """
    Render recent turns as role-tagged lines.

    Args:
        recent_history: Prior turns, oldest first
        max_turns: Number of most recent turns to keep

    Returns:
        One ``[用户] ...`` / ``[AI] ...`` line per turn; system turns are skipped
    """
    if max_turns <= 0:
        return ""

    lines: List[str] = []
    for turn in list(recent_history)[-max_turns:]:
        tag = HISTORY_ROLE_TAGS.get(turn.role)
        if tag is None:
            continue
        lines.append(f"{tag} {turn.content.strip()}")
    return "\n".join(lines)


def get_triage_prompt(
    message: str,
    recent_history: Sequence[ChatMessage],
    max_turns: int,
) -> Tuple[str, str]:
    """
    Generate triage prompts for a user message.

    Args:
        message: Current user message
        recent_history: Prior turns, oldest first
        max_turns: History turns to include

    Returns:
        Tuple of (system_prompt, user_prompt)
    """
    history = format_history(recent_history, max_turns)
    if not history:
        return TRIAGE_SYSTEM_PROMPT, message

    user_prompt = TRIAGE_USER_PROMPT_TEMPLATE.format(history=history, message=message)
    return TRIAGE_SYSTEM_PROMPT, user_prompt

"""Long-term memory lookup for prompt context.

Memory extraction runs outside the turn pipeline; this module only reads.
"""
import time
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from companion.golden_cache import extract_keywords
from companion.logging_config import get_logger
from companion.models import MemoryContext, MemoryEntry, MemoryTopic, utcnow

logger = get_logger(__name__)


MEMORY_TOPIC_LABELS = {
    MemoryTopic.EMOTIONAL_PATTERN: "情绪模式",
    MemoryTopic.COPING_PREFERENCE: "偏好策略",
    MemoryTopic.PERSONAL_CONTEXT: "个人背景",
    MemoryTopic.THERAPY_PROGRESS: "疗愈进展",
    MemoryTopic.TRIGGER_WARNING: "敏感话题",
    MemoryTopic.COMMUNICATION_STYLE: "沟通偏好",
}

RECENCY_WINDOW_DAYS = 30


class MemoryProvider(Protocol):
    """Read side of the memory manager."""

    async def get_memories_for_context(self, user_id: str, message: str) -> MemoryContext:
        ...


def format_memories_for_prompt(entries: Iterable[MemoryEntry]) -> str:
    """
    Render memory entries grouped by topic.

    Args:
        entries: Entries in relevance order

    Returns:
        A "### 用户背景记忆" section, or "" when there are no entries
    """
    sections: Dict[str, List[str]] = {}
    for entry in entries:
        label = MEMORY_TOPIC_LABELS.get(entry.topic, entry.topic.value)
        sections.setdefault(label, []).append(f"- {entry.content}")

    if not sections:
        return ""

    body = "\n\n".join(f"**{label}:**\n" + "\n".join(items) for label, items in sections.items())
    return (
        "\n### 用户背景记忆\n\n"
        "以下是关于该用户的重要背景信息/模式，在回复时请参考：\n\n"
        f"{body}\n\n"
        "注意：自然地融入对话，不要显式提及\"根据记录\"。\n"
    )


class InMemoryMemoryManager:
    """Memory provider over entries held in process memory."""

    def __init__(
        self,
        limit: int = 10,
        min_confidence: float = 0.6,
        now: Callable[[], datetime] = utcnow,
    ):
        self.limit = limit
        self.min_confidence = min_confidence
        self.now = now
        self.entries: Dict[str, List[MemoryEntry]] = defaultdict(list)

    def add(self, entry: MemoryEntry) -> None:
        self.entries[entry.user_id].append(entry)

    def rank(self, user_id: str, message: str) -> List[MemoryEntry]:
        """
        Rank a user's memories against a message.

        Score is keyword hits (2 per keyword longer than two characters,
        else 1) plus a recency boost fading to 0 over 30 days plus confidence.
        Without keywords the five most recent entries are returned.
        """
        candidates = [e for e in self.entries.get(user_id, []) if e.confidence >= self.min_confidence]
        candidates.sort(key=lambda e: (e.updated_at, e.confidence), reverse=True)

        keywords = extract_keywords(message)
        if not keywords:
            return candidates[:5]

        now = self.now()
        scored = []
        for entry in candidates:
            hits = sum(2 if len(kw) > 2 else 1 for kw in keywords if kw in entry.content)
            days = (now - entry.updated_at).total_seconds() / 86400
            recency = max(0.0, 1 - days / RECENCY_WINDOW_DAYS)
            scored.append((hits + recency + entry.confidence, entry))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [entry for _, entry in scored[:self.limit]]

    async def get_memories_for_context(self, user_id: str, message: str) -> MemoryContext:
        entries = self.rank(user_id, message)
        return MemoryContext(
            context_string=format_memories_for_prompt(entries),
            entries=entries,
        )


class MemoryContextAssembler:
    """Fetch memory context for a turn; failures yield an empty context."""

    def __init__(self, provider: Optional[MemoryProvider] = None):
        self.provider = provider

    async def assemble(self, user_id: Optional[str], message: str) -> str:
        """
        Get the memory block for a user message.

        Args:
            user_id: Authenticated user, None for anonymous turns
            message: Current user message

        Returns:
            Memory context string, "" for anonymous users or on any failure
        """
        if not user_id or self.provider is None:
            return ""

        start = time.perf_counter()
        try:
            context = await self.provider.get_memories_for_context(user_id, message)
        except Exception as e:
            logger.warning("memory_fetch_failed", user_id=user_id, error=str(e))
            return ""

        logger.info(
            "memory_fetched",
            user_id=user_id,
            entry_count=len(context.entries),
            latency_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return context.context_string

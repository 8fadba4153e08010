"""Golden example cache with keyword-overlap retrieval.

Curated exchanges are loaded into memory and refreshed on a TTL. Retrieval
scores candidates by how much of the query's keyword set they cover, which
favors examples that match the whole intent of a short query over ones that
merely share a word or two.
"""
import re
import time
from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional, Sequence, Tuple

from companion.config import Settings, get_settings
from companion.logging_config import get_logger
from companion.models import ExampleMatch, GoldenExample
from companion.stores import GoldenExampleStore

logger = get_logger(__name__)


STOP_WORDS = frozenset([
    '的', '了', '是', '我', '你', '有', '在', '和', '这', '那',
    '就', '也', '都', '要', '会', '能', '到', '很', '但', '不',
    '吗', '呢', '啊', '吧', '咧', '嘛', '呀', '哦', '噢', '诶',
    '一', '一个', '什么', '怎么', '为什么', '可以', '应该', '可能',
])

TOKEN_SPLIT_PATTERN = re.compile(r'[，。！？、；：“”‘’（）,.!?;:"\'()\s]+')

MIN_KEYWORD_LENGTH = 2


def extract_keywords(text: str) -> FrozenSet[str]:
    """
    Extract the keyword set of a text.

    Args:
        text: Raw text

    Returns:
        Lowercased tokens of at least two characters that are not stopwords
    """
    return frozenset(
        token
        for token in TOKEN_SPLIT_PATTERN.split(text.lower())
        if len(token) >= MIN_KEYWORD_LENGTH and token not in STOP_WORDS
    )


def keyword_similarity(query_keywords: FrozenSet[str], target_keywords: FrozenSet[str]) -> float:
    """Share of query keywords present in the target, |Q ∩ T| / |Q|."""
    if not query_keywords or not target_keywords:
        return 0.0
    return len(query_keywords & target_keywords) / len(query_keywords)


def format_examples_for_prompt(examples: Sequence[ExampleMatch]) -> str:
    """
    Render retrieved examples as a prompt section.

    Args:
        examples: Retrieved examples in rank order

    Returns:
        Numbered user/assistant pairs under a heading, or "" when empty
    """
    if not examples:
        return ""

    formatted = "\n\n".join(
        f"### 示例 {i}\n**用户**: {ex.user_message}\n**AI**: {ex.assistant_message}"
        for i, ex in enumerate(examples, start=1)
    )
    return f"\n## 优秀回复参考\n以下是类似场景的高质量回复，请参考其风格：\n\n{formatted}\n"


@dataclass(frozen=True)
class CachedExample:
    """A golden example with its derived keyword set."""
    example: GoldenExample
    keywords: FrozenSet[str]


class GoldenExampleCache:
    """In-process TTL cache over the golden example store."""

    def __init__(
        self,
        store: GoldenExampleStore,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the cache.

        Args:
            store: Source of active curated examples
            ttl_seconds: Snapshot lifetime (defaults to settings)
            clock: Monotonic time source in seconds
            settings: Application settings (defaults to config)
        """
        settings = settings or get_settings()
        self.store = store
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.golden_cache_ttl_seconds
        self.top_k = settings.golden_top_k
        self.clock = clock
        self._snapshot: Tuple[CachedExample, ...] = ()
        self._loaded_at: Optional[float] = None

    @property
    def size(self) -> int:
        return len(self._snapshot)

    @property
    def loaded_at(self) -> Optional[float]:
        return self._loaded_at

    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return self.clock() - self._loaded_at >= self.ttl_seconds

    async def refresh(self) -> bool:
        """
        Reload the snapshot from the store.

        A failed load keeps the previous snapshot and its load time, so the
        next retrieval tries again.

        Returns:
            True when a new snapshot was installed
        """
        try:
            examples = await self.store.list_active_examples()
        except Exception as e:
            logger.error(
                "golden_cache_refresh_failed",
                error=str(e),
                cached_examples=len(self._snapshot),
            )
            return False

        snapshot = tuple(
            CachedExample(example=ex, keywords=extract_keywords(ex.user_message))
            for ex in examples
        )
        # Swap whole tuple; readers holding the old one are unaffected
        self._snapshot = snapshot
        self._loaded_at = self.clock()
        logger.info("golden_cache_loaded", example_count=len(snapshot))
        return True

    async def retrieve(self, query: str, top_k: Optional[int] = None) -> List[ExampleMatch]:
        """
        Retrieve the examples most relevant to a query.

        Args:
            query: User message
            top_k: Maximum number of examples (defaults to settings)

        Returns:
            Up to top_k matches. A query without keywords gets the first
            top_k cached examples in cache order; otherwise only examples
            with a positive score, best first, ties in cache order.
        """
        if top_k is None:
            top_k = self.top_k

        if self.is_stale():
            await self.refresh()

        snapshot = self._snapshot
        if not snapshot or top_k <= 0:
            return []

        query_keywords = extract_keywords(query)
        if not query_keywords:
            return [
                ExampleMatch(
                    user_message=cached.example.user_message,
                    assistant_message=cached.example.assistant_message,
                    score=0.0,
                )
                for cached in snapshot[:top_k]
            ]

        scored = [
            (keyword_similarity(query_keywords, cached.keywords), cached)
            for cached in snapshot
        ]
        # sorted() is stable, so equal scores keep cache order
        ranked = sorted(
            (item for item in scored if item[0] > 0),
            key=lambda item: item[0],
            reverse=True,
        )

        return [
            ExampleMatch(
                user_message=cached.example.user_message,
                assistant_message=cached.example.assistant_message,
                score=score,
            )
            for score, cached in ranked[:top_k]
        ]

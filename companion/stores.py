"""Message and golden example stores.

The in-memory implementations back development and tests; a database-backed
store only has to satisfy the same protocols.
"""
import asyncio
import json
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Union

from companion.config import get_settings
from companion.errors import PersistenceFailure
from companion.logging_config import get_logger
from companion.models import Conversation, GoldenExample, Message, Role, utcnow

logger = get_logger(__name__)


class MessageStore(Protocol):
    """Conversation persistence."""

    async def create_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Message:
        ...

    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        ...

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...


class GoldenExampleStore(Protocol):
    """Source of curated examples."""

    async def list_active_examples(self) -> Sequence[GoldenExample]:
        ...


class InMemoryMessageStore:
    """Message store that keeps conversations in process memory.

    Writes to one conversation are serialized in arrival order.
    """

    def __init__(self, default_title: Optional[str] = None):
        self.default_title = default_title or get_settings().default_conversation_title
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = defaultdict(list)
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def create_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Message:
        """
        Append a message, creating the conversation on first write.

        Args:
            conversation_id: Target conversation
            role: Message author
            content: Final (guarded) message text
            metadata: Turn metadata packet for assistant messages
            user_id: Owner recorded on a newly created conversation

        Returns:
            The stored Message
        """
        if not conversation_id:
            raise PersistenceFailure("conversation_id is required")

        async with self._lock_for(conversation_id):
            conversation = self.conversations.get(conversation_id)
            if conversation is None:
                conversation = Conversation(
                    id=conversation_id,
                    user_id=user_id,
                    title=self.default_title,
                )
                self.conversations[conversation_id] = conversation

            message = Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                role=role,
                content=content,
                metadata=metadata,
            )
            self.messages[conversation_id].append(message)
            conversation.message_count += 1
            conversation.updated_at = utcnow()
            return message

    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        async with self._lock_for(conversation_id):
            conversation = self.conversations.get(conversation_id)
            if conversation is None:
                raise PersistenceFailure(f"Unknown conversation: {conversation_id}")
            conversation.title = title
            conversation.updated_at = utcnow()

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations.get(conversation_id)

    async def list_messages(self, conversation_id: str) -> List[Message]:
        return list(self.messages.get(conversation_id, []))


class InMemoryGoldenExampleStore:
    """Golden example store over a list of curated examples."""

    def __init__(self, examples: Optional[Iterable[GoldenExample]] = None):
        self.examples: List[GoldenExample] = list(examples or [])

    async def list_active_examples(self) -> Sequence[GoldenExample]:
        return tuple(self.examples)

    def replace(self, examples: Iterable[GoldenExample]) -> None:
        """Replace the curated set; picked up at the next cache refresh."""
        self.examples = list(examples)

    @classmethod
    def load_json(cls, path: Union[str, Path]) -> "InMemoryGoldenExampleStore":
        """
        Load examples from a JSON file.

        Args:
            path: File holding a list of {id, user_message, assistant_message}

        Returns:
            Populated store
        """
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        examples = [GoldenExample.model_validate(item) for item in raw]
        logger.info("golden_examples_loaded", path=str(path), example_count=len(examples))
        return cls(examples)

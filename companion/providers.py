"""LLM provider clients.

Both providers speak the OpenAI chat completions protocol: the primary chat
model through the DeepSeek endpoint, triage through Groq.
"""
from typing import AsyncIterator, Dict, List, Optional, Protocol

import openai

from companion.config import Settings, get_settings
from companion.errors import UpstreamDegraded, UpstreamFailure
from companion.logging_config import get_logger
from companion.monitoring.usage_tracker import UsageTracker, get_usage_tracker

logger = get_logger(__name__)


class ChatCompletionProvider(Protocol):
    """Primary completion model."""

    def stream(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]:
        ...


class TriageProvider(Protocol):
    """Fast classification model."""

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        ...


def _prompt_text(messages: List[Dict[str, str]]) -> str:
    return "\n".join(m.get("content", "") for m in messages)


class DeepSeekChatProvider:
    """Streaming chat completions against a DeepSeek-compatible endpoint."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[openai.AsyncOpenAI] = None,
        usage_tracker: Optional[UsageTracker] = None,
    ):
        """
        Initialize the provider.

        Args:
            settings: Application settings (defaults to config)
            client: Preconfigured async client (built from settings when omitted)
            usage_tracker: Token accounting sink
        """
        self.settings = settings or get_settings()
        self.model = self.settings.chat_model
        self.usage_tracker = usage_tracker or get_usage_tracker()
        self.client = client
        if self.client is None and self.settings.has_chat_credentials():
            self.client = openai.AsyncOpenAI(
                api_key=self.settings.deepseek_api_key,
                base_url=self.settings.deepseek_base_url,
                timeout=self.settings.generation_timeout_seconds,
            )

    def _require_client(self) -> openai.AsyncOpenAI:
        if self.client is None:
            raise UpstreamFailure("Chat provider is not configured", error_code="missing_api_key")
        return self.client

    async def stream(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]:
        """
        Stream completion text deltas.

        Args:
            messages: Ordered role/content turns, system prompt first
            temperature: Sampling temperature
            max_tokens: Output bound

        Yields:
            Non-empty text deltas

        Raises:
            UpstreamFailure: On missing credentials or any provider error
        """
        client = self._require_client()
        collected: List[str] = []

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    collected.append(delta)
                    yield delta
        except openai.OpenAIError as e:
            logger.error("chat_stream_failed", model=self.model, error=str(e))
            raise UpstreamFailure(f"Chat completion failed: {e}") from e

        self.usage_tracker.record(
            stage="generation",
            model=self.model,
            prompt_text=_prompt_text(messages),
            completion_text="".join(collected),
        )


class GroqTriageProvider:
    """Low-latency classification calls against Groq."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[openai.AsyncOpenAI] = None,
        usage_tracker: Optional[UsageTracker] = None,
    ):
        self.settings = settings or get_settings()
        self.model = self.settings.triage_model
        self.usage_tracker = usage_tracker or get_usage_tracker()
        self.client = client
        if self.client is None and self.settings.has_triage_credentials():
            self.client = openai.AsyncOpenAI(
                api_key=self.settings.groq_api_key,
                base_url=self.settings.groq_base_url,
                timeout=self.settings.triage_timeout_seconds,
                max_retries=0,
            )

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        """
        Run one classification completion.

        Args:
            system_prompt: Classification instructions
            user_message: Message (with optional history) to classify
            temperature: Sampling temperature, 0 for classification
            max_tokens: Output bound

        Returns:
            Raw model text

        Raises:
            UpstreamDegraded: On missing credentials or any provider error
        """
        if self.client is None:
            raise UpstreamDegraded("Triage provider is not configured", error_code="missing_api_key")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as e:
            raise UpstreamDegraded(f"Triage call failed: {e}", error_code="transport_error") from e

        text = response.choices[0].message.content or ""
        self.usage_tracker.record(
            stage="triage",
            model=self.model,
            prompt_text=system_prompt + user_message,
            completion_text=text,
        )
        return text


# Global instance
_triage_provider: Optional[GroqTriageProvider] = None


def get_triage_provider() -> GroqTriageProvider:
    """Get the global triage provider instance."""
    global _triage_provider
    if _triage_provider is None:
        _triage_provider = GroqTriageProvider()
    return _triage_provider

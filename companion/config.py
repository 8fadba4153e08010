"""Configuration management for the companion chat service."""
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Primary chat provider (DeepSeek-compatible chat completions)
    deepseek_api_key: Optional[str] = None
    deepseek_base_url: str = "https://api.deepseek.com/v1"
    chat_model: str = "deepseek-chat"
    generation_temperature: float = 0.7
    generation_max_tokens: int = 800
    generation_timeout_seconds: float = 60.0

    # Fast triage provider (Groq, OpenAI-compatible)
    groq_api_key: Optional[str] = None
    groq_base_url: str = "https://api.groq.com/openai/v1"
    triage_model: str = "llama-3.1-8b-instant"
    triage_temperature: float = 0.0  # Deterministic for classification
    triage_max_tokens: int = 150
    triage_timeout_seconds: float = 5.0
    triage_history_turns: int = 6

    # Guardrails
    max_input_length: int = 5000  # ~2500 CJK characters
    stream_holdback_chars: int = 48

    # Golden examples
    golden_cache_ttl_seconds: float = 600.0
    golden_top_k: int = 3

    # Conversation
    history_window: int = 20
    title_max_chars: int = 20
    default_conversation_title: str = "新对话"
    default_persona_id: str = "companion"

    # Application Configuration
    log_level: str = "INFO"
    log_json: bool = False
    environment: str = "development"
    require_auth: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = False

    def has_chat_credentials(self) -> bool:
        """Check whether the primary chat provider is configured."""
        return bool(self.deepseek_api_key)

    def has_triage_credentials(self) -> bool:
        """Check whether the fast triage provider is configured."""
        return bool(self.groq_api_key)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

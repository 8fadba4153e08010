"""Token accounting for the two model calls of a turn: triage and generation."""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import tiktoken

STAGES = ("triage", "generation")

# USD per million tokens (prompt, completion)
PRICE_PER_MTOK = {
    "deepseek-chat": (0.27, 1.10),
    "llama-3.1-8b-instant": (0.05, 0.08),
}

# Neither provider publishes a tiktoken encoding; cl100k_base is a close estimate
ENCODING_NAME = "cl100k_base"


@dataclass
class StageUsage:
    """Running totals for one pipeline stage."""
    model: str = ""
    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0

    def add(self, model: str, prompt_tokens: int, completion_tokens: int) -> None:
        prompt_price, completion_price = PRICE_PER_MTOK.get(model, (0.0, 0.0))
        self.model = model
        self.calls += 1
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens
        self.cost_usd += (prompt_tokens * prompt_price + completion_tokens * completion_price) / 1_000_000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "calls": self.calls,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "cost_usd": round(self.cost_usd, 6),
        }


class UsageTracker:
    """Estimate tokens and cost per stage from the prompt and completion text."""

    def __init__(self, encoding: Optional[tiktoken.Encoding] = None):
        self.encoding = encoding
        self.stages: Dict[str, StageUsage] = {stage: StageUsage() for stage in STAGES}

    def count_tokens(self, text: str) -> int:
        if self.encoding is None:
            self.encoding = tiktoken.get_encoding(ENCODING_NAME)
        return len(self.encoding.encode(text))

    def record(self, stage: str, model: str, prompt_text: str, completion_text: str) -> StageUsage:
        """
        Add one completed call to a stage.

        Args:
            stage: "triage" or "generation"
            model: Model that served the call
            prompt_text: Everything sent as input
            completion_text: Everything received

        Returns:
            Updated totals for the stage
        """
        if stage not in self.stages:
            raise ValueError(f"Unknown usage stage: {stage}")

        usage = self.stages[stage]
        usage.add(model, self.count_tokens(prompt_text), self.count_tokens(completion_text))
        return usage

    def get_summary(self) -> Dict[str, Any]:
        triage = self.stages["triage"]
        generation = self.stages["generation"]
        return {
            "triage": triage.to_dict(),
            "generation": generation.to_dict(),
            "total_cost_usd": round(triage.cost_usd + generation.cost_usd, 6),
        }


# Global usage tracker instance
_usage_tracker: Optional[UsageTracker] = None


def get_usage_tracker() -> UsageTracker:
    """Get the global usage tracker instance."""
    global _usage_tracker
    if _usage_tracker is None:
        _usage_tracker = UsageTracker()
    return _usage_tracker

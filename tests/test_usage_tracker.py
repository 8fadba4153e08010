"""Unit tests for per-stage token accounting."""
import pytest

from companion.monitoring.usage_tracker import UsageTracker


class CharEncoding:
    """One token per character."""

    def encode(self, text):
        return list(text)


@pytest.fixture
def tracker():
    return UsageTracker(encoding=CharEncoding())


def test_stages_start_empty(tracker):
    summary = tracker.get_summary()

    assert summary["triage"]["calls"] == 0
    assert summary["generation"]["calls"] == 0
    assert summary["total_cost_usd"] == 0.0


def test_record_accumulates_per_stage(tracker):
    tracker.record("triage", "llama-3.1-8b-instant", "分类这句话", "{}")
    tracker.record("triage", "llama-3.1-8b-instant", "再分类", "{}")
    tracker.record("generation", "deepseek-chat", "你好", "你好，我在。")

    summary = tracker.get_summary()
    assert summary["triage"] == {
        "model": "llama-3.1-8b-instant",
        "calls": 2,
        "prompt_tokens": 8,
        "completion_tokens": 4,
        "cost_usd": round((8 * 0.05 + 4 * 0.08) / 1_000_000, 6),
    }
    assert summary["generation"]["prompt_tokens"] == 2
    assert summary["generation"]["completion_tokens"] == 6


def test_unpriced_model_costs_nothing(tracker):
    usage = tracker.record("generation", "local-model", "你好", "嗨")

    assert usage.calls == 1
    assert usage.cost_usd == 0.0


def test_unknown_stage_rejected(tracker):
    with pytest.raises(ValueError):
        tracker.record("embedding", "deepseek-chat", "a", "b")

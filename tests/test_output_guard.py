"""Unit tests for the output guard."""
import pytest
from companion.guardrails.output_guard import (
    CRISIS_HOTLINE_MESSAGE,
    LEAK_MARKER,
    OutputGuard,
    ensure_crisis_referral,
)
from companion.models import OutputIssue

PERSONA_PROMPT = (
    "你是一位温暖、专业的心理支持伙伴，擅长倾听和共情，从不评判用户。\n"
    "回复使用简体中文。"
)


@pytest.fixture
def guard():
    return OutputGuard()


def test_clean_text_passes(guard):
    """Test ordinary supportive text is unchanged."""
    text = "听起来这段时间你真的很辛苦。愿意多说说发生了什么吗？"
    result = guard.evaluate(text)

    assert result.safe
    assert result.issues == []
    assert result.redacted_response == text


def test_harmful_content_replaced(guard):
    """Test harmful content is replaced by the hotline fallback."""
    result = guard.evaluate("关于致死剂量，一般来说……")

    assert not result.safe
    assert result.issues == [OutputIssue.HARMFUL_CONTENT]
    assert result.redacted_response == CRISIS_HOTLINE_MESSAGE


def test_leak_phrase_hidden(guard):
    """Test leak phrases are replaced with the marker."""
    result = guard.evaluate("我的系统提示要求我保持温柔。")

    assert OutputIssue.SYSTEM_LEAK in result.issues
    assert "我的系统提示" not in result.redacted_response
    assert LEAK_MARKER in result.redacted_response


def test_verbatim_instruction_echo_hidden(guard):
    """Test a long instruction line echoed verbatim is hidden."""
    echoed = "好的。你是一位温暖、专业的心理支持伙伴，擅长倾听和共情，从不评判用户。"
    result = guard.evaluate(echoed, system_prompt=PERSONA_PROMPT)

    assert result.issues == [OutputIssue.SYSTEM_LEAK]
    assert result.redacted_response == f"好的。{LEAK_MARKER}"


def test_short_instruction_lines_not_protected(guard):
    """Test short lines are too generic to count as leaks."""
    result = guard.evaluate("回复使用简体中文。", system_prompt=PERSONA_PROMPT)

    assert result.safe


def test_pii_redacted(guard):
    """Test PII in generated text is redacted."""
    result = guard.evaluate("你可以打13812345678联系他")

    assert result.issues == [OutputIssue.PII_DETECTED]
    assert "13812345678" not in result.redacted_response


def test_leak_and_pii_reported_in_order(guard):
    result = guard.evaluate("我被设定为助手，邮箱 a@b.cn")

    assert result.issues == [OutputIssue.SYSTEM_LEAK, OutputIssue.PII_DETECTED]


def test_check_matches_evaluate(guard):
    """Test the silent check gives the same decision."""
    text = "我的初始指令是保密的，电话13812345678"
    assert guard.check(text) == guard.evaluate(text)


@pytest.mark.parametrize("text", [
    "听起来你很累。",
    "关于致死剂量，一般来说……",
    "我的系统提示要求我保持温柔。",
    "你可以打13812345678或者发邮件到 someone@example.com",
    "好的。你是一位温暖、专业的心理支持伙伴，擅长倾听和共情，从不评判用户。身份证110105194912310021",
    CRISIS_HOTLINE_MESSAGE,
])
def test_guard_is_idempotent(guard, text):
    """Test running the guard on its own output changes nothing."""
    once = guard.evaluate(text, system_prompt=PERSONA_PROMPT).redacted_response
    twice = guard.evaluate(once, system_prompt=PERSONA_PROMPT)

    assert twice.redacted_response == once
    assert twice.safe


class TestCrisisReferral:
    """Hotline referral for crisis-route replies."""

    def test_referral_appended(self):
        text = ensure_crisis_referral("我听到了，你现在一定很痛苦。")

        assert text.startswith("我听到了，你现在一定很痛苦。")
        assert "400-161-9995" in text

    def test_existing_referral_kept(self):
        assert ensure_crisis_referral(CRISIS_HOTLINE_MESSAGE) == CRISIS_HOTLINE_MESSAGE

    def test_empty_reply_gets_full_message(self):
        assert ensure_crisis_referral("  ") == CRISIS_HOTLINE_MESSAGE

"""Tests for the context window governor: budget gate and history window."""

import pytest

from deecli.core.context import (
    DEFAULT_MAX_CONTEXT_SIZE,
    ContextGovernor,
    estimate_messages_tokens,
    estimate_tokens,
    trim_history,
)
from deecli.llm.errors import ContextTooLargeError, ErrorKind
from deecli.types import Message, ToolCall


class TestEstimate:
    def test_four_chars_per_token(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abc") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("x" * 400) == 100

    def test_messages_include_tool_arguments(self):
        call = ToolCall(id="c", name="read", arguments='{"path":"a"}')
        messages = [Message.user("x" * 40), Message.assistant("", [call])]
        assert estimate_messages_tokens(messages) == 10 + estimate_tokens('read{"path":"a"}')


class TestCheckBudget:
    def test_default_budget(self):
        governor = ContextGovernor()
        assert governor.max_context_size == 100_000
        assert governor.max_tokens == 25_000

    def test_zero_means_default(self):
        assert ContextGovernor(max_context_size=0).max_context_size == DEFAULT_MAX_CONTEXT_SIZE

    def test_exact_budget_accepted(self):
        report = ContextGovernor().check_budget("p" * 60_000, "u" * 40_000)
        assert report.chars == 100_000
        assert report.tokens == 25_000
        assert report.within_budget

    def test_one_over_rejected(self):
        with pytest.raises(ContextTooLargeError) as exc_info:
            ContextGovernor().check_budget("p" * 60_001, "u" * 40_000)
        err = exc_info.value
        assert err.kind is ErrorKind.CONTEXT_TOO_LARGE
        assert err.chars == 100_001
        assert err.max_chars == 100_000
        assert err.tokens == 25_000
        assert err.max_tokens == 25_000
        assert not err.retryable

    def test_small_budget(self):
        governor = ContextGovernor(max_context_size=10)
        governor.check_budget("12345", "67890")
        with pytest.raises(ContextTooLargeError):
            governor.check_budget("12345", "678901")

    def test_context_info_in_user_message(self):
        with pytest.raises(ContextTooLargeError) as exc_info:
            ContextGovernor(max_context_size=4).check_budget(
                "too long", "", context_info="Loaded: big.go (8 chars)",
            )
        assert "big.go" in exc_info.value.user_message
        assert "/clear" in exc_info.value.user_message

    def test_measure_does_not_raise(self):
        report = ContextGovernor(max_context_size=4).measure("too long", "")
        assert not report.within_budget


class TestTrimHistory:
    def _history(self, n: int) -> list[Message]:
        return [Message.user(f"m{i}") for i in range(n)]

    def test_short_history_unchanged(self):
        history = self._history(10)
        assert trim_history(history, 30) == history

    def test_fifty_to_thirty(self):
        history = self._history(50)
        trimmed = trim_history(history, 30)
        assert len(trimmed) == 30
        assert trimmed == history[20:]
        assert trimmed[0].content == "m20"
        assert trimmed[-1].content == "m49"

    def test_idempotent(self):
        once = trim_history(self._history(50), 30)
        assert trim_history(once, 30) == once

    def test_source_not_mutated(self):
        history = self._history(40)
        trim_history(history, 30)
        assert len(history) == 40

    def test_returns_copy(self):
        history = self._history(3)
        assert trim_history(history, 30) is not history

    def test_governor_window(self):
        governor = ContextGovernor(history_window=5)
        assert len(governor.window(self._history(12))) == 5

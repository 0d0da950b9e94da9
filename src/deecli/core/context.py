"""Context window governor: size budget and history window.

The budget check runs before any network call.  It measures the loaded
context prompt plus the user's turn in characters, and again as estimated
tokens (1 token ~ 4 characters).  History is bounded separately by a
message-count window applied at read time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence, TypeVar

from deecli.config import debug_enabled
from deecli.llm.errors import ContextTooLargeError
from deecli.types import Message

_logger = logging.getLogger(__name__)

# Rough chars-per-token ratio for budget estimation
_CHARS_PER_TOKEN = 4

DEFAULT_MAX_CONTEXT_SIZE = 100_000  # characters
DEFAULT_HISTORY_WINDOW = 30  # messages

T = TypeVar("T")


def estimate_tokens(text: str) -> int:
    """Rough token count estimate."""
    return len(text) // _CHARS_PER_TOKEN


def estimate_messages_tokens(messages: Sequence[Message]) -> int:
    total = 0
    for m in messages:
        total += estimate_tokens(m.content)
        for tc in m.tool_calls:
            total += estimate_tokens(tc.name + tc.arguments)
    return total


def trim_history(history: Sequence[T], max_messages: int = DEFAULT_HISTORY_WINDOW) -> list[T]:
    """The most recent *max_messages* entries, in their original order.

    Never mutates *history*; a history within the window comes back whole.
    """
    if max_messages <= 0 or len(history) <= max_messages:
        return list(history)
    return list(history[-max_messages:])


@dataclass(frozen=True)
class BudgetReport:
    """Measured and allowed size of one prompt."""

    chars: int
    max_chars: int
    tokens: int
    max_tokens: int

    @property
    def within_budget(self) -> bool:
        return self.chars <= self.max_chars and self.tokens <= self.max_tokens


class ContextGovernor:
    """Gate outbound requests on size and window the history.

    Parameters
    ----------
    max_context_size:
        Character budget; ``0`` (unset) means 100,000.  The token budget
        is derived from it with the same 4-characters-per-token estimate.
    history_window:
        Number of most recent history messages sent with each request.
    """

    def __init__(
        self,
        max_context_size: int = DEFAULT_MAX_CONTEXT_SIZE,
        history_window: int = DEFAULT_HISTORY_WINDOW,
    ) -> None:
        self.max_context_size = max_context_size or DEFAULT_MAX_CONTEXT_SIZE
        self.history_window = history_window

    @property
    def max_tokens(self) -> int:
        return self.max_context_size // _CHARS_PER_TOKEN

    def measure(self, prompt: str, user: str) -> BudgetReport:
        return BudgetReport(
            chars=len(prompt) + len(user),
            max_chars=self.max_context_size,
            tokens=estimate_tokens(prompt + user),
            max_tokens=self.max_tokens,
        )

    def check_budget(
        self, prompt: str, user: str, context_info: str = "",
    ) -> BudgetReport:
        """Return the measurements, or raise ``ContextTooLargeError``.

        *context_info* (e.g. a summary of loaded files) is attached to the
        error's user message.
        """
        report = self.measure(prompt, user)
        if debug_enabled():
            _logger.debug(
                "Context size check - chars: %d (limit: %d), tokens: %d (limit: %d)",
                report.chars, report.max_chars, report.tokens, report.max_tokens,
            )
        if not report.within_budget:
            _logger.warning(
                "Rejecting request: chars %d/%d, tokens %d/%d",
                report.chars, report.max_chars, report.tokens, report.max_tokens,
            )
            raise ContextTooLargeError(
                report.chars, report.max_chars,
                report.tokens, report.max_tokens,
                context_info=context_info,
            )
        return report

    def window(self, history: Sequence[Message]) -> list[Message]:
        return trim_history(history, self.history_window)

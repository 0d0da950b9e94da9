"""Tool-call reconstruction and response text utilities.

Streaming providers deliver a tool call as many fragments: the first one
usually carries ``id`` and ``function.name``, later ones only slices of
``function.arguments``.  ``merge_tool_calls`` folds fragments into complete
invocations; ``ToolCallAccumulator`` holds that state for one streaming turn.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Iterable

from deecli.config import debug_enabled
from deecli.types import ToolCall

_logger = logging.getLogger(__name__)

# finish_reason values that close a tool-call turn
TOOL_FINISH_REASONS = frozenset({"tool_calls", "function_call"})


def is_tool_finish(finish_reason: str | None) -> bool:
    return finish_reason in TOOL_FINISH_REASONS


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _find_match(
    accumulated: list[ToolCall], fragment: ToolCall,
) -> int | None:
    """Position of the entry *fragment* continues, or ``None`` for a new call."""
    if fragment.id:
        for pos, call in enumerate(accumulated):
            if call.id == fragment.id:
                return pos
        return None
    # Continuation fragments without an id
    if fragment.index is not None:
        for pos in range(len(accumulated) - 1, -1, -1):
            if accumulated[pos].index == fragment.index:
                return pos
        return None
    if accumulated:
        return len(accumulated) - 1
    return None


def merge_tool_calls(
    accumulated: Iterable[ToolCall],
    fragments: Iterable[ToolCall],
) -> list[ToolCall]:
    """Fold *fragments* into *accumulated* and return the new list.

    Neither input is modified.  Unknown ids are appended in arrival order;
    known ids get their argument text appended and, when the fragment has
    a non-empty name, their name overwritten.
    """
    result = list(accumulated)
    for fragment in fragments:
        pos = _find_match(result, fragment)
        if pos is None:
            result.append(fragment)
            continue
        existing = result[pos]
        result[pos] = dataclasses.replace(
            existing,
            name=fragment.name or existing.name,
            arguments=existing.arguments + fragment.arguments,
            index=existing.index if existing.index is not None else fragment.index,
        )
    return result


class ToolCallAccumulator:
    """Reconstructed tool calls for a single streaming turn."""

    def __init__(self) -> None:
        self._calls: list[ToolCall] = []
        self._finalized_by = ""

    def feed(self, fragments: list[ToolCall]) -> None:
        if not fragments:
            return
        if self._finalized_by:
            _logger.warning(
                "Ignoring %d tool-call fragment(s) after finalization",
                len(fragments),
            )
            return
        self._calls = merge_tool_calls(self._calls, fragments)
        if debug_enabled():
            for call in self._calls:
                state = "complete" if call.arguments_complete else "partial"
                _logger.debug(
                    "Tool call id=%s name=%s %s args=%r",
                    call.id, call.name, state, call.arguments,
                )

    def finalize(self, reason: str) -> list[ToolCall]:
        """Freeze the set; *reason* is ``finish_reason`` or ``end_of_stream``."""
        if not self._finalized_by:
            self._finalized_by = reason
            incomplete = [c.id for c in self._calls if not c.arguments_complete]
            if incomplete:
                _logger.warning(
                    "Finalized tool calls with unparseable arguments: %s",
                    ", ".join(incomplete),
                )
        return list(self._calls)

    @property
    def calls(self) -> list[ToolCall]:
        return list(self._calls)

    @property
    def finalized_by(self) -> str:
        return self._finalized_by

    def has_calls(self) -> bool:
        return bool(self._calls)


# ---------------------------------------------------------------------------
# Inline tool-call markup
# ---------------------------------------------------------------------------

CALLS_BEGIN = "<｜tool▁calls▁begin｜>"
CALLS_END = "<｜tool▁calls▁end｜>"
CALL_BEGIN = "<｜tool▁call▁begin｜>"
CALL_END = "<｜tool▁call▁end｜>"
CALL_SEP = "<｜tool▁sep｜>"


def _parse_markup_block(block: str, first_id: int) -> list[ToolCall]:
    calls: list[ToolCall] = []
    search_from = 0
    while True:
        start = block.find(CALL_BEGIN, search_from)
        if start == -1:
            break
        end = block.find(CALL_END, start)
        if end == -1:
            break
        body = block[start + len(CALL_BEGIN):end]
        name, sep, args = body.partition(CALL_SEP)
        name, args = name.strip(), args.strip()
        if sep and name and args:
            calls.append(ToolCall(
                id=f"call_{first_id + len(calls)}", name=name, arguments=args,
            ))
            _logger.debug("Extracted markup tool call %s(%s)", name, args)
        search_from = end + len(CALL_END)
    return calls


def extract_markup_tool_calls(content: str) -> tuple[list[ToolCall], str]:
    """Pull inline tool-call markup out of *content*.

    Returns ``(tool_calls, remaining_text)``.  An unterminated block is
    dropped from the text together with everything after it.
    """
    if CALLS_BEGIN not in content:
        return [], content

    calls: list[ToolCall] = []
    filtered = content
    while True:
        start = filtered.find(CALLS_BEGIN)
        if start == -1:
            break
        end = filtered.find(CALLS_END, start)
        if end == -1:
            filtered = filtered[:start]
            break
        end += len(CALLS_END)
        calls.extend(_parse_markup_block(filtered[start:end], len(calls) + 1))
        filtered = filtered[:start] + filtered[end:]
    return calls, filtered.strip()


_ARG_ONLY_KEYS = ('"path":', '"recursive":', '"pattern":')
_SUPPRESSED_FALLBACK = "Tool execution completed. You can continue the conversation."


def clean_tool_like_content(content: str) -> str:
    """Drop stray tool-argument JSON lines from a tool_choice=none reply."""
    kept: list[str] = []
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped.startswith("{") and stripped.endswith("}"):
            if stripped == "{}" or (
                any(key in stripped for key in _ARG_ONLY_KEYS)
                and stripped.count(":") <= 2
            ):
                _logger.debug("Filtering out tool-like line: %s", stripped)
                continue
        kept.append(line)
    result = "\n".join(kept)
    if len(result.strip()) < 20:
        return _SUPPRESSED_FALLBACK
    return result

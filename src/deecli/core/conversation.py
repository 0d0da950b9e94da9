"""Conversation service: drives one turn at a time against the chat API.

    history + context prompt + user turn
        -> ContextGovernor (budget gate, history window)
        -> AsyncChatClient.send()          (non-streaming)
           or open_stream() + ToolCallAccumulator   (streaming)
        -> TurnResult / StreamEvent sequence

Per-turn state: IDLE -> SENDING -> [STREAMING -> FINALIZING] -> COMPLETED -> IDLE.
A failed turn goes straight back to IDLE.
The service owns the conversation history.  It is appended to only when a
turn succeeds; a failed or cancelled turn leaves it untouched.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Sequence

from deecli.core.context import ContextGovernor, estimate_messages_tokens
from deecli.core.prompts import (
    CODE_OPERATIONS,
    DEFAULT_SYSTEM_PROMPT,
    EDIT_SUGGESTIONS_PROMPT,
    code_chat_request,
    code_request,
    edit_suggestions_request,
)
from deecli.events.bus import EventBus
from deecli.llm.cancel import CancelToken
from deecli.llm.client import AsyncChatClient
from deecli.llm.errors import APIError, CancelledRequestError, ContextTooLargeError
from deecli.llm.response_parser import (
    ToolCallAccumulator,
    clean_tool_like_content,
    extract_markup_tool_calls,
    is_tool_finish,
)
from deecli.types import (
    EventType,
    Message,
    SourceFile,
    StreamEvent,
    StreamEventKind,
    ToolCall,
    ToolDefinition,
    TurnResult,
    TurnState,
)

_logger = logging.getLogger(__name__)

CONTEXT_HEADER = "Files Context:\n"


class ConversationService:
    """Assemble requests, run turns and keep the conversation history.

    Parameters
    ----------
    client:
        Request executor.  The service does not own its lifecycle.
    governor:
        Budget gate and history window (defaults: 100,000 chars, 30 msgs).
    tools:
        Tool definitions offered to the model.  Empty means tool-free sends.
    system_prompt:
        Fixed system instruction placed first in every request.
    event_bus:
        Receives turn events (optional).
    """

    def __init__(
        self,
        client: AsyncChatClient,
        governor: ContextGovernor | None = None,
        tools: Sequence[ToolDefinition] | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        event_bus: EventBus | None = None,
    ) -> None:
        self._client = client
        self._governor = governor or ContextGovernor()
        self._tools: list[ToolDefinition] = list(tools or [])
        self.system_prompt = system_prompt
        self._event_bus = event_bus or EventBus()
        self._history: list[Message] = []
        self._state = TurnState.IDLE
        self._token: CancelToken | None = None

    # ------------------------------------------------------------------
    # History and tools
    # ------------------------------------------------------------------

    @property
    def history(self) -> tuple[Message, ...]:
        """Read-only view of the full conversation history."""
        return tuple(self._history)

    def append(self, message: Message) -> None:
        self._history.append(message)

    def add_tool_result(self, tool_call_id: str, content: str) -> None:
        """Feed the output of an executed tool back into the conversation."""
        self.append(Message.tool_result(tool_call_id, content))

    def clear_history(self) -> None:
        self._history.clear()

    @property
    def tools(self) -> list[ToolDefinition]:
        return list(self._tools)

    def set_tools(self, tools: Sequence[ToolDefinition]) -> None:
        self._tools = list(tools)

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._token is not None

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    def build_messages(self, user: str, context_prompt: str = "") -> list[Message]:
        """System prompt, windowed history, loaded context, then the user turn.

        A blank user turn is left out entirely.
        """
        messages = [Message.system(self.system_prompt)]
        messages.extend(self._governor.window(self._history))
        if context_prompt:
            messages.append(Message.system(CONTEXT_HEADER + context_prompt))
        if user.strip():
            messages.append(Message.user(user))
        return messages

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def cancel(self) -> bool:
        """Cancel the turn in progress.  Returns False when idle."""
        if self._token is None:
            return False
        _logger.info("Cancelling turn in progress")
        self._token.cancel()
        return True

    async def send(
        self,
        user: str,
        context_prompt: str = "",
        *,
        tool_choice: str | None = None,
        context_info: str = "",
    ) -> TurnResult:
        """Run one non-streaming turn.

        Returns either text or, when the model asked for tools, the tool
        calls to execute.  Raises ``APIError`` on failure.
        """
        token = self._begin_turn()
        try:
            tools, choice = self._tool_args(tool_choice)
            await self._emit(
                EventType.TURN_STARTED,
                mode="send", model=self._client.profile.model, tool_choice=choice,
            )
            messages = self._prepare(user, context_prompt, context_info)
            response = await self._client.send(messages, tools, choice, token=token)

            self._set_state(TurnState.COMPLETED)
            content, calls = response.content, list(response.tool_calls)
            suppressed = choice == "none"
            if suppressed:
                content = self._suppress(content)
                calls = []
            elif tools and not calls:
                calls, content = extract_markup_tool_calls(content)

            result = TurnResult(
                content=content,
                tool_calls=calls,
                finish_reason=response.finish_reason,
                suppressed=suppressed,
            )
            self._record(user, result.content, result.tool_calls)
            if result.has_tool_calls:
                await self._emit(
                    EventType.TOOL_CALLS_READY,
                    tool_calls=[c.to_dict() for c in calls], finalized_by="response",
                )
            await self._emit(
                EventType.TURN_COMPLETED,
                content_length=len(content), tool_calls=len(calls),
                finish_reason=response.finish_reason,
            )
            return result
        except APIError as exc:
            await self._emit_failure(exc)
            raise
        finally:
            self._end_turn()

    async def finalize_turn(
        self, context_prompt: str = "", *, context_info: str = "",
    ) -> TurnResult:
        """Ask for a closing answer after tool results were added.

        Tools stay in the request (so the model sees their context) but
        ``tool_choice="none"`` forbids new calls, which breaks tool loops.
        """
        return await self.send(
            "", context_prompt, tool_choice="none", context_info=context_info,
        )

    # ------------------------------------------------------------------
    # One-shot code operations
    # ------------------------------------------------------------------
    # Each is a single tool-free request with its own system prompt.  They
    # go through the same budget gate, deadline and retry policy as a turn
    # but never extend the conversation history.

    async def analyze_code(self, code: str, filename: str) -> str:
        """Quality, bugs, performance, best practices and security review."""
        return await self._code_operation("analyze", code, filename)

    async def improve_code(self, code: str, filename: str) -> str:
        return await self._code_operation("improve", code, filename)

    async def explain_code(self, code: str, filename: str) -> str:
        return await self._code_operation("explain", code, filename)

    async def chat_about_code(self, code: str, message: str) -> str:
        """Ask *message* about *code* without touching the history."""
        return await self._one_shot(
            "chat_about_code", self.system_prompt, code_chat_request(code, message),
        )

    async def suggest_edits(self, files: Sequence[SourceFile]) -> str:
        """Suggest which of *files* to edit, given the conversation so far.

        Parameters
        ----------
        files:
            Loaded files.  Only the first 500 characters of each are sent.

        Returns
        -------
        str
            Markdown list of files by priority, with recommendations.
        """
        if not files:
            raise ValueError("no files loaded")
        user = edit_suggestions_request(files, self._history)
        return await self._one_shot("suggest_edits", EDIT_SUGGESTIONS_PROMPT, user)

    async def _code_operation(self, operation: str, code: str, filename: str) -> str:
        system, _ = CODE_OPERATIONS[operation]
        return await self._one_shot(
            operation, system, code_request(operation, code, filename),
            context_info=filename,
        )

    async def _one_shot(
        self, operation: str, system: str, user: str, *, context_info: str = "",
    ) -> str:
        token = self._begin_turn()
        try:
            await self._emit(
                EventType.TURN_STARTED,
                mode=operation, model=self._client.profile.model, tool_choice=None,
            )
            self._governor.check_budget(system, user, context_info=context_info)
            messages = [Message.system(system), Message.user(user)]
            response = await self._client.send(messages, token=token)
            self._set_state(TurnState.COMPLETED)
            await self._emit(
                EventType.TURN_COMPLETED,
                content_length=len(response.content), tool_calls=0,
                finish_reason=response.finish_reason,
            )
            return response.content
        except APIError as exc:
            await self._emit_failure(exc)
            raise
        finally:
            self._end_turn()

    async def stream(
        self,
        user: str,
        context_prompt: str = "",
        *,
        tool_choice: str | None = None,
        context_info: str = "",
    ) -> AsyncIterator[StreamEvent]:
        """Run one streaming turn.

        Yields ``TEXT`` events as deltas arrive, then exactly one terminal
        event: ``TOOL_CALLS``, ``DONE`` or ``ERROR``.  Errors are delivered
        as the ``ERROR`` event together with whatever text and tool calls
        had accumulated, never raised.
        """
        token = self._begin_turn()
        parts: list[str] = []
        accumulator = ToolCallAccumulator()
        try:
            tools, choice = self._tool_args(tool_choice)
            suppress = choice == "none"
            await self._emit(
                EventType.TURN_STARTED,
                mode="stream", model=self._client.profile.model, tool_choice=choice,
            )
            terminal: StreamEvent | None = None
            chunk_stream = None
            try:
                messages = self._prepare(user, context_prompt, context_info)
                chunk_stream = await self._client.open_stream(
                    messages, tools, choice, token=token,
                )
                self._set_state(TurnState.STREAMING)

                async for chunk in chunk_stream:
                    if chunk.content:
                        parts.append(chunk.content)
                        await self._emit(EventType.STREAM_TEXT, text=chunk.content)
                        yield StreamEvent(StreamEventKind.TEXT, text=chunk.content)
                    # Fragments on the finishing chunk belong to the set
                    accumulator.feed(chunk.tool_calls)
                    if is_tool_finish(chunk.finish_reason):
                        self._set_state(TurnState.FINALIZING)
                        if suppress:
                            break
                        terminal = StreamEvent(
                            StreamEventKind.TOOL_CALLS,
                            content="".join(parts),
                            tool_calls=accumulator.finalize("finish_reason"),
                            finalized_by="finish_reason",
                        )
                        break
            except APIError as exc:
                terminal = StreamEvent(
                    StreamEventKind.ERROR,
                    content="".join(parts),
                    tool_calls=accumulator.calls,
                    error=exc,
                )
            finally:
                if chunk_stream is not None:
                    await chunk_stream.close()

            if terminal is None:
                terminal = self._end_of_stream("".join(parts), accumulator, suppress)

            await self._conclude_stream(user, terminal)
            yield terminal
        finally:
            self._end_turn()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _begin_turn(self) -> CancelToken:
        if self._token is not None:
            raise RuntimeError("a turn is already in progress")
        timeout = self._client.profile.timeout_for()
        self._token = CancelToken(timeout=timeout)
        self._set_state(TurnState.SENDING)
        return self._token

    def _end_turn(self) -> None:
        self._token = None
        self._set_state(TurnState.IDLE)

    def _set_state(self, state: TurnState) -> None:
        if state is not self._state:
            _logger.debug("Turn state %s -> %s", self._state.value, state.value)
            self._state = state

    def _tool_args(
        self, tool_choice: str | None,
    ) -> tuple[list[ToolDefinition] | None, str | None]:
        if not self._tools:
            return None, None
        return self._tools, tool_choice or "auto"

    def _prepare(self, user: str, context_prompt: str, context_info: str) -> list[Message]:
        self._governor.check_budget(context_prompt, user, context_info=context_info)
        messages = self.build_messages(user, context_prompt)
        _logger.debug(
            "Request: %d message(s), ~%d tokens, %d in history",
            len(messages), estimate_messages_tokens(messages), len(self._history),
        )
        return messages

    @staticmethod
    def _suppress(content: str) -> str:
        # Markup is stripped, never executed, on a tool_choice=none turn
        _, stripped = extract_markup_tool_calls(content)
        return clean_tool_like_content(stripped)

    def _end_of_stream(
        self, content: str, accumulator: ToolCallAccumulator, suppress: bool,
    ) -> StreamEvent:
        self._set_state(TurnState.FINALIZING)
        if suppress:
            if accumulator.has_calls():
                _logger.warning(
                    "Dropping %d tool call(s) from a tool_choice=none turn",
                    len(accumulator.calls),
                )
            return StreamEvent(StreamEventKind.DONE, content=self._suppress(content))
        if accumulator.has_calls():
            # No tool finish_reason seen: surface what we have anyway
            _logger.warning(
                "Stream ended without a tool finish_reason; "
                "treating %d accumulated tool call(s) as complete",
                len(accumulator.calls),
            )
            return StreamEvent(
                StreamEventKind.TOOL_CALLS,
                content=content,
                tool_calls=accumulator.finalize("end_of_stream"),
                finalized_by="end_of_stream",
            )
        return StreamEvent(StreamEventKind.DONE, content=content)

    async def _conclude_stream(self, user: str, terminal: StreamEvent) -> None:
        if terminal.kind is StreamEventKind.ERROR:
            assert isinstance(terminal.error, APIError)
            await self._emit_failure(terminal.error)
            return
        self._set_state(TurnState.COMPLETED)
        self._record(user, terminal.content, terminal.tool_calls)
        if terminal.kind is StreamEventKind.TOOL_CALLS:
            await self._emit(
                EventType.TOOL_CALLS_READY,
                tool_calls=[c.to_dict() for c in terminal.tool_calls],
                finalized_by=terminal.finalized_by,
            )
        await self._emit(
            EventType.TURN_COMPLETED,
            content_length=len(terminal.content),
            tool_calls=len(terminal.tool_calls),
        )

    def _record(self, user: str, content: str, tool_calls: list[ToolCall]) -> None:
        if user.strip():
            self.append(Message.user(user))
        self.append(Message.assistant(content, tool_calls))

    async def _emit_failure(self, exc: APIError) -> None:
        if isinstance(exc, ContextTooLargeError):
            await self._emit(
                EventType.CONTEXT_REJECTED,
                chars=exc.chars, max_chars=exc.max_chars,
                tokens=exc.tokens, max_tokens=exc.max_tokens,
            )
        elif isinstance(exc, CancelledRequestError):
            await self._emit(
                EventType.TURN_CANCELLED, user_initiated=exc.user_initiated,
            )
        else:
            _logger.error("Turn failed: %s", exc.message)
            await self._emit(
                EventType.TURN_FAILED,
                kind=exc.kind.value, message=exc.message,
                status_code=exc.status_code,
            )

    async def _emit(self, event_type: EventType, **data: Any) -> None:
        await self._event_bus.emit(event_type, **data)

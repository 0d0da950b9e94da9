"""Async chat-completions client with retries, backoff and streaming.

One ``AsyncChatClient`` owns one pooled ``httpx.AsyncClient``.  Every
request attempt touches the shared ``ActivityTracker`` so that
``ConnectionLifecycle`` can close the pool after a long idle period; the
pool is rebuilt lazily on the next request.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Awaitable, Callable, Sequence, TypeVar

import httpx

from deecli.config import ProfileSpec
from deecli.types import ChatResponse, Message, ToolDefinition

from .cancel import CancelToken
from .errors import (
    APIError,
    CancelledRequestError,
    ErrorClassifier,
    RetriesExhaustedError,
)
from .lifecycle import ActivityTracker
from .stream import SSEChunkStream

_logger = logging.getLogger(__name__)

CHAT_PATH = "/chat/completions"

# Retry configuration
_MAX_RETRIES = 3  # retries after the first attempt
_BACKOFF_BASE = 1.0  # seconds -- exponential: 1, 2, 4
_BACKOFF_CAP = 30.0
_JITTER = 0.1  # up to +10% of the exponential delay

_STREAM_HEADERS = {
    "Accept": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

ToolSpec = ToolDefinition | dict[str, Any]
T = TypeVar("T")


async def _backoff_sleep(token: CancelToken, delay: float) -> None:
    await token.sleep(delay)


class AsyncChatClient:
    """Client for an OpenAI-compatible ``/chat/completions`` endpoint.

    Parameters
    ----------
    profile:
        Endpoint, credentials and model settings.
    max_retries:
        Retries after the first attempt (total attempts = max_retries + 1).
    base_delay, max_delay:
        Backoff before retry *n* is ``base_delay * 2**(n-1)`` plus jitter,
        capped at ``max_delay``.
    activity:
        Shared activity tracker; a private one is created if omitted.
    transport:
        Optional ``httpx`` transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        profile: ProfileSpec,
        *,
        max_retries: int = _MAX_RETRIES,
        base_delay: float = _BACKOFF_BASE,
        max_delay: float = _BACKOFF_CAP,
        activity: ActivityTracker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        http_timeout: float = 120,
    ) -> None:
        self.profile = profile
        self.max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._activity = activity or ActivityTracker()
        self._transport = transport
        self._http_timeout = http_timeout
        self._http: httpx.AsyncClient | None = None
        self._inflight = 0

    # ------------------------------------------------------------------
    # Connection pool
    # ------------------------------------------------------------------

    @property
    def activity(self) -> ActivityTracker:
        return self._activity

    @property
    def inflight(self) -> int:
        return self._inflight

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.profile.base_url,
                headers={
                    "Authorization": f"Bearer {self.profile.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self._http_timeout, connect=10.0),
                limits=httpx.Limits(
                    max_connections=10,
                    max_keepalive_connections=10,
                    keepalive_expiry=90.0,
                ),
                transport=self._transport,
            )
        return self._http

    async def close_idle_connections(self, force: bool = False) -> bool:
        """Drop the pool unless a request is in flight (or *force*)."""
        if self._http is None:
            return False
        if self._inflight and not force:
            _logger.debug("Skipping idle close: %d request(s) in flight", self._inflight)
            return False
        http, self._http = self._http, None
        await http.aclose()
        return True

    async def close(self) -> None:
        """Close underlying HTTP connections."""
        await self.close_idle_connections(force=True)

    # ------------------------------------------------------------------
    # Request body
    # ------------------------------------------------------------------

    def build_payload(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] | None = None,
        tool_choice: str | None = None,
        stream: bool = False,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Serialize one request.  *messages* is read, never modified."""
        model = self.profile.model
        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "max_tokens": max_tokens if max_tokens is not None
            else self.profile.max_tokens,
        }
        # Extended-reasoning models reject temperature
        if self.profile.supports_temperature(model):
            payload["temperature"] = self.profile.temperature
        if stream:
            payload["stream"] = True
        if tools:
            payload["tools"] = [
                t.to_dict() if isinstance(t, ToolDefinition) else t for t in tools
            ]
            if tool_choice:
                payload["tool_choice"] = tool_choice
        return payload

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based)."""
        raw = self._base_delay * (2 ** (attempt - 1))
        return min(self._max_delay, raw * (1 + random.uniform(0, _JITTER)))

    async def _with_retries(
        self,
        op: Callable[[], Awaitable[T]],
        token: CancelToken,
        label: str,
    ) -> T:
        attempts = self.max_retries + 1
        last_error: APIError | None = None

        for attempt in range(attempts):
            if attempt > 0:
                delay = self.backoff_delay(attempt)
                token.raise_if_cancelled()
                _logger.warning(
                    "%s failed (attempt %d/%d): %s -- retrying in %.1fs",
                    label, attempt, attempts,
                    last_error.message if last_error else "?", delay,
                )
                await _backoff_sleep(token, delay)

            token.raise_if_cancelled()
            try:
                return await op()
            except CancelledRequestError:
                raise
            except APIError as exc:
                if not exc.retryable:
                    _logger.warning("%s failed, not retryable: %s", label, exc.message)
                    raise
                last_error = exc

        assert last_error is not None
        _logger.warning("%s failed after %d attempts", label, attempts)
        raise RetriesExhaustedError(attempts, last_error) from last_error

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def send(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] | None = None,
        tool_choice: str | None = None,
        *,
        token: CancelToken | None = None,
    ) -> ChatResponse:
        """Send one chat request, retrying retryable failures.

        Raises ``APIError`` (``RetriesExhaustedError`` once every attempt
        failed, ``CancelledRequestError`` when the token fires).
        """
        token = token or CancelToken()
        payload = self.build_payload(messages, tools, tool_choice)
        return await self._with_retries(
            lambda: self._send_once(payload, token), token, "Chat request",
        )

    async def _send_once(
        self, payload: dict[str, Any], token: CancelToken,
    ) -> ChatResponse:
        self._activity.touch()
        self._inflight += 1
        start = time.monotonic()
        try:
            try:
                resp = await token.run(self._get_http().post(CHAT_PATH, json=payload))
            except httpx.HTTPError as exc:
                raise ErrorClassifier.from_exception(exc) from exc
        finally:
            self._inflight -= 1

        if resp.status_code != 200:
            raise ErrorClassifier.from_status(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as exc:
            raise ErrorClassifier.decode_failure(exc, resp.status_code) from exc
        if not isinstance(data, dict):
            raise ErrorClassifier.decode_failure(
                ValueError(f"expected object, got {type(data).__name__}"),
                resp.status_code,
            )

        choices = data.get("choices") or []
        if not choices:
            raise ErrorClassifier.empty_response(resp.status_code)

        try:
            response = ChatResponse.from_dict(data)
        except (AttributeError, TypeError, ValueError) as exc:
            raise ErrorClassifier.decode_failure(exc, resp.status_code) from exc
        response.model = response.model or payload["model"]
        response.latency_ms = (time.monotonic() - start) * 1000
        return response

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def open_stream(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec] | None = None,
        tool_choice: str | None = None,
        *,
        token: CancelToken | None = None,
    ) -> SSEChunkStream:
        """Open a streaming request and return its chunk decoder.

        Opening is retried like ``send``.  Once the stream is returned,
        failures surface from ``recv()`` and are never retried.  The caller
        must ``close()`` the stream.
        """
        token = token or CancelToken()
        payload = self.build_payload(messages, tools, tool_choice, stream=True)
        return await self._with_retries(
            lambda: self._open_stream_once(payload, token), token, "Stream request",
        )

    async def _open_stream_once(
        self, payload: dict[str, Any], token: CancelToken,
    ) -> SSEChunkStream:
        self._activity.touch()
        http = self._get_http()
        request = http.build_request(
            "POST", CHAT_PATH, json=payload, headers=_STREAM_HEADERS,
        )
        try:
            resp = await token.run(http.send(request, stream=True))
        except httpx.HTTPError as exc:
            raise ErrorClassifier.from_exception(exc) from exc

        if resp.status_code != 200:
            try:
                body = (await resp.aread()).decode(errors="replace")
            except httpx.HTTPError:
                body = ""
            finally:
                await resp.aclose()
            raise ErrorClassifier.from_status(resp.status_code, body)

        self._inflight += 1
        return SSEChunkStream(resp, token, on_close=self._stream_closed)

    def _stream_closed(self) -> None:
        self._inflight -= 1
        self._activity.touch()

    # ------------------------------------------------------------------
    # Warm-up
    # ------------------------------------------------------------------

    async def ping(self, timeout: float = 30) -> None:
        """One minimal request (max_tokens=1), no retries."""
        messages = [Message.system("ping"), Message.user("pong")]
        payload = self.build_payload(messages, max_tokens=1)
        await self._send_once(payload, CancelToken(timeout=timeout))

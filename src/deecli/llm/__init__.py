"""Chat API client, stream decoding and tool-call reconstruction."""

from deecli.llm.cancel import CancelToken
from deecli.llm.client import AsyncChatClient
from deecli.llm.errors import (
    APIError,
    CancelledRequestError,
    ContextTooLargeError,
    ErrorClassifier,
    ErrorKind,
    RetriesExhaustedError,
    display_message,
)
from deecli.llm.lifecycle import ActivityTracker, ConnectionLifecycle
from deecli.llm.response_parser import ToolCallAccumulator, merge_tool_calls
from deecli.llm.stream import ChunkStream, ReplayChunkStream, SSEChunkStream

__all__ = [
    "APIError",
    "ActivityTracker",
    "AsyncChatClient",
    "CancelToken",
    "CancelledRequestError",
    "ChunkStream",
    "ConnectionLifecycle",
    "ContextTooLargeError",
    "ErrorClassifier",
    "ErrorKind",
    "ReplayChunkStream",
    "RetriesExhaustedError",
    "SSEChunkStream",
    "ToolCallAccumulator",
    "display_message",
    "merge_tool_calls",
]

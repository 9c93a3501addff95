"""AI task orchestration and streaming-response normalization for the reader sidebar."""

from .cancellation import CancellationToken, StreamCancelled
from .config import Provider, ProviderConfig
from .events import Answer, Done, Error, Reasoning, StreamCallbacks, StreamEvent
from .ollama_channel import ChannelMessage, ChannelRequest, OllamaChannel
from .runner import ResultCache, TaskRunner
from .streaming_client import (
    LocalServerStreamClient,
    ManagedProcessStreamClient,
    RemoteAPIStreamClient,
    StreamOptions,
    create_stream_client,
)
from .task_store import TaskContext, TaskContextStore, TaskHandle, TaskResult
from .think_parser import ThinkBlockExtractor
from .thinking import ThinkingMode, ThinkingResolution, resolve_thinking_mode

__version__ = "0.1.0"
__all__ = [
    "CancellationToken",
    "StreamCancelled",
    "Provider",
    "ProviderConfig",
    "Answer",
    "Done",
    "Error",
    "Reasoning",
    "StreamCallbacks",
    "StreamEvent",
    "ChannelMessage",
    "ChannelRequest",
    "OllamaChannel",
    "ResultCache",
    "TaskRunner",
    "LocalServerStreamClient",
    "ManagedProcessStreamClient",
    "RemoteAPIStreamClient",
    "StreamOptions",
    "create_stream_client",
    "TaskContext",
    "TaskContextStore",
    "TaskHandle",
    "TaskResult",
    "ThinkBlockExtractor",
    "ThinkingMode",
    "ThinkingResolution",
    "resolve_thinking_mode",
]

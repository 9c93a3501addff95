"""Run one sidebar task end to end: store slot, stream, result."""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from .config import ProviderConfig
from .events import StreamCallbacks
from .logger import get_logger, task_scope
from .streaming_client import BaseStreamClient, StreamOptions, create_stream_client
from .task_store import TaskContext, TaskContextStore, TaskHandle
from .thinking import ThinkingMode

_log = get_logger("runner")


@dataclass(frozen=True)
class CachedResult:
    answer: str
    reasoning: str


class ResultCache:
    """Small LRU of finished answers keyed by (purpose key, source text)."""

    def __init__(self, max_entries: int = 64):
        self.max_entries = max_entries
        self._entries: "OrderedDict[Tuple[str, str], CachedResult]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, purpose_key: str, source_text: str) -> Optional[CachedResult]:
        key = (purpose_key, source_text)
        hit = self._entries.get(key)
        if hit is not None:
            self._entries.move_to_end(key)
        return hit

    def put(self, purpose_key: str, source_text: str, answer: str, reasoning: str) -> None:
        key = (purpose_key, source_text)
        self._entries[key] = CachedResult(answer, reasoning)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()


class TaskRunner:
    """Glue between the task store and a stream client.

    Starts (or adopts) a task for a purpose key, forwards reasoning and
    answer snapshots into the store under that task's id, and finishes or
    fails it when the stream ends. Updates from a superseded task are
    dropped by the store, so concurrent ``run`` calls on one key are safe.
    """

    def __init__(
        self,
        store: TaskContextStore,
        config: Union[ProviderConfig, Callable[[], ProviderConfig]],
        client_factory: Callable[[ProviderConfig], BaseStreamClient] = create_stream_client,
        cache: Optional[ResultCache] = None,
    ):
        self.store = store
        self._config = config
        self.client_factory = client_factory
        self.cache = cache if cache is not None else ResultCache()

    def _load_config(self) -> ProviderConfig:
        return self._config() if callable(self._config) else self._config

    async def run(
        self,
        purpose_key: str,
        prompt: str,
        *,
        source_text: str = "",
        thinking_mode: Union[ThinkingMode, str, None] = None,
        history: Optional[List[Dict[str, str]]] = None,
        handle: Optional[TaskHandle] = None,
        use_cache: bool = True,
    ) -> TaskContext:
        """Stream *prompt* for *purpose_key* and return the resulting context."""
        config = self._load_config()
        mode = ThinkingMode.parse(thinking_mode, config.thinking_mode)
        cacheable = use_cache and bool(source_text)

        if cacheable:
            hit = self.cache.get(purpose_key, source_text)
            if hit is not None:
                _log.info("cache hit: key=%s source_len=%d", purpose_key, len(source_text))
                handle = handle or self.store.start_task(purpose_key)
                if hit.reasoning:
                    self.store.set_reasoning(purpose_key, handle.task_id, hit.reasoning)
                self.store.finish(purpose_key, handle.task_id, hit.answer, hit.reasoning, source_text)
                return self.store.get(purpose_key)

        handle = handle or self.store.start_task(purpose_key)
        task_id = handle.task_id
        final = {"answer": "", "reasoning": ""}

        def on_reasoning(text: str) -> None:
            final["reasoning"] = text
            self.store.set_reasoning(purpose_key, task_id, text)

        def on_answer(text: str) -> None:
            final["answer"] = text
            self.store.set_answer(purpose_key, task_id, text)

        def on_done() -> None:
            finished = self.store.finish(
                purpose_key, task_id, final["answer"], final["reasoning"], source_text
            )
            if finished and cacheable and final["answer"]:
                self.cache.put(purpose_key, source_text, final["answer"], final["reasoning"])

        def on_error(message: str) -> None:
            self.store.fail(purpose_key, task_id, message)

        callbacks = StreamCallbacks(on_reasoning, on_answer, on_done, on_error)
        options = StreamOptions(thinking_mode=mode, token=handle.token, history=list(history or []))

        client = self.client_factory(config)
        with task_scope(purpose_key, task_id):
            async with client:
                await client.stream(prompt, callbacks, options)

        if handle.token.cancelled and self.store.get(purpose_key).is_active:
            # Cancelled by its own token (not superseded): settle the slot.
            self.store.cancel(purpose_key, task_id)
        return self.store.get(purpose_key)

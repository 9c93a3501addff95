"""Per-purpose task contexts with task-identity gating.

Each purpose key (one per translation style, ``explain``, ``chat``) owns a
single slot. Starting a task cancels whatever was running in that slot and
hands out a fresh task id; every later mutation names the task id it
believes is current and is dropped if that is no longer true. The id check
is the only synchronization: a superseded request that resolves late
cannot overwrite the newer task's state.
"""

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from .cancellation import CancellationToken
from .logger import get_logger

_log = get_logger("tasks")

TRANSLATE_MODES = ("literal", "free", "plain")

DEFAULT_PURPOSE_KEYS: Tuple[str, ...] = tuple(
    f"translate:{mode}" for mode in TRANSLATE_MODES
) + ("explain", "chat")


@dataclass(frozen=True)
class TaskResult:
    answer: str
    reasoning: str
    source_text: str
    completed_at: str


@dataclass(frozen=True)
class TaskHandle:
    task_id: str
    token: CancellationToken


@dataclass
class TaskContext:
    purpose_key: str
    active_task_id: Optional[str] = None
    token: Optional[CancellationToken] = None
    streaming_answer: str = ""
    streaming_reasoning: str = ""
    result: Optional[TaskResult] = None
    failure: Optional[str] = None
    is_active: bool = False


class TaskContextStore:
    """Owns one ``TaskContext`` per purpose key for the life of the process."""

    def __init__(self, purpose_keys: Iterable[str] = DEFAULT_PURPOSE_KEYS):
        self._contexts: Dict[str, TaskContext] = {
            key: TaskContext(purpose_key=key) for key in purpose_keys
        }

    @property
    def purpose_keys(self) -> List[str]:
        return list(self._contexts)

    def _context(self, key: str) -> TaskContext:
        try:
            return self._contexts[key]
        except KeyError:
            raise KeyError(f"Unknown purpose key: {key!r}") from None

    def get(self, key: str) -> TaskContext:
        """Copy of the context for *key*."""
        return replace(self._context(key))

    def is_current(self, key: str, task_id: str) -> bool:
        ctx = self._context(key)
        return ctx.active_task_id is not None and ctx.active_task_id == task_id

    def _current(self, key: str, task_id: str, op: str) -> Optional[TaskContext]:
        ctx = self._context(key)
        if ctx.active_task_id is None or ctx.active_task_id != task_id:
            _log.debug("dropping stale %s for %s: task=%s active=%s",
                       op, key, task_id, ctx.active_task_id)
            return None
        return ctx

    def start_task(self, key: str) -> TaskHandle:
        ctx = self._context(key)
        if ctx.token is not None:
            ctx.token.cancel("superseded")
        token = CancellationToken()
        task_id = uuid.uuid4().hex
        ctx.active_task_id = task_id
        ctx.token = token
        ctx.streaming_answer = ""
        ctx.streaming_reasoning = ""
        ctx.result = None
        ctx.failure = None
        ctx.is_active = True
        _log.info("task started: key=%s task=%s", key, task_id)
        return TaskHandle(task_id, token)

    def set_reasoning(self, key: str, task_id: str, text: str) -> bool:
        ctx = self._current(key, task_id, "set_reasoning")
        if ctx is None:
            return False
        ctx.streaming_reasoning = text
        return True

    def set_answer(self, key: str, task_id: str, text: str) -> bool:
        ctx = self._current(key, task_id, "set_answer")
        if ctx is None:
            return False
        ctx.streaming_answer = text
        return True

    def finish(self, key: str, task_id: str, answer: str, reasoning: str,
               source_text: str) -> bool:
        ctx = self._current(key, task_id, "finish")
        if ctx is None:
            return False
        ctx.result = TaskResult(
            answer=answer,
            reasoning=reasoning,
            source_text=source_text,
            completed_at=datetime.now(timezone.utc).isoformat(),
        )
        ctx.failure = None
        ctx.streaming_answer = ""
        ctx.streaming_reasoning = ""
        ctx.token = None
        ctx.is_active = False
        _log.info("task finished: key=%s task=%s answer_len=%d", key, task_id, len(answer))
        return True

    def fail(self, key: str, task_id: str, message: str) -> bool:
        ctx = self._current(key, task_id, "fail")
        if ctx is None:
            return False
        ctx.failure = message
        ctx.token = None
        ctx.is_active = False
        _log.warning("task failed: key=%s task=%s error=%s", key, task_id, message)
        return True

    def cancel(self, key: str, task_id: Optional[str] = None) -> bool:
        """Stop the in-flight task, keeping whatever text it streamed so far.

        With *task_id* the cancel is gated like any other mutation; without
        it, whatever task is current is cancelled. The task id is released,
        so late updates from the cancelled task are dropped.
        """
        ctx = self._context(key)
        if task_id is not None:
            ctx = self._current(key, task_id, "cancel")
            if ctx is None:
                return False
        if ctx.token is None:
            return False
        _log.info("task cancelled: key=%s task=%s", key, ctx.active_task_id)
        ctx.token.cancel("cancelled")
        ctx.token = None
        ctx.active_task_id = None
        ctx.is_active = False
        return True

    def clear(self, key: str) -> None:
        ctx = self._context(key)
        if ctx.token is not None:
            ctx.token.cancel("cleared")
        self._contexts[key] = TaskContext(purpose_key=key)

    def clear_all(self) -> None:
        for key in list(self._contexts):
            self.clear(key)

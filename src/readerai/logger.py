"""Centralized logger for readerai.

Writes an always-on log to .readerai_output/readerai.log so a broken
stream (retries, dropped frames, stale task updates) can be reconstructed
after the fact. Several purpose keys can stream at once, so every line
carries the task it belongs to (``translate:free#1a2b3c4d``, or ``-``
outside a task).

Usage in any module:
    from .logger import get_logger
    log = get_logger("streaming")
    log.info("request sent model=%s", model)

    with task_scope("chat", task_id):
        ...  # records logged here are labelled chat#<id>

The log file rotates at 5 MB and keeps the last 5 files.
"""

import contextvars
import logging
import os
import sys
import traceback
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

# ── Singleton state ──────────────────────────────────────────

_initialized = False
_log_dir: Optional[Path] = None

NO_TASK = "-"
TASK_ID_CHARS = 8

_task_label: contextvars.ContextVar = contextvars.ContextVar("readerai_task", default=NO_TASK)


def _ensure_log_dir() -> Path:
    """Return (and create) the log directory."""
    global _log_dir
    if _log_dir is not None:
        return _log_dir
    override = os.environ.get("READERAI_LOG_DIR")
    _log_dir = Path(override) if override else Path.cwd() / ".readerai_output"
    _log_dir.mkdir(parents=True, exist_ok=True)
    return _log_dir


# ── Task labelling ───────────────────────────────────────────

def task_label(purpose_key: str, task_id: str) -> str:
    return f"{purpose_key}#{task_id[:TASK_ID_CHARS]}"


def current_task_label() -> str:
    return _task_label.get()


@contextmanager
def task_scope(purpose_key: str, task_id: str) -> Iterator[str]:
    """Label every record logged inside the block (and tasks it spawns) with the task."""
    label = task_label(purpose_key, task_id)
    reset_token = _task_label.set(label)
    try:
        yield label
    finally:
        _task_label.reset(reset_token)


class TaskFilter(logging.Filter):
    """Adds ``record.task`` for the ``%(task)s`` format field."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.task = _task_label.get()
        return True


def init_logging(
    log_dir: Optional[str] = None,
    level: int = logging.DEBUG,
) -> None:
    """Initialise the file logger.  Safe to call more than once."""
    global _initialized, _log_dir

    if log_dir:
        _log_dir = Path(log_dir)
        _log_dir.mkdir(parents=True, exist_ok=True)
    else:
        _ensure_log_dir()

    if _initialized:
        return
    _initialized = True

    root = logging.getLogger("readerai")
    root.setLevel(level)

    if root.handlers:
        return

    log_path = _log_dir / "readerai.log"

    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=5 * 1024 * 1024,   # 5 MB per file
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(level)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d | %(levelname)-5s | %(task)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(fmt)
    handler.addFilter(TaskFilter())
    root.addHandler(handler)

    if os.environ.get("READERAI_DEBUG"):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.DEBUG)
        stderr_handler.setFormatter(fmt)
        stderr_handler.addFilter(TaskFilter())
        root.addHandler(stderr_handler)

    root.info(
        "=== Logging initialised === pid=%d python=%s log=%s",
        os.getpid(),
        sys.version.split()[0],
        log_path,
    )


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the 'readerai' namespace.

    Initialises logging on first call so module-level loggers created at
    import time still write somewhere.
    """
    if not _initialized:
        init_logging()
    return logging.getLogger(f"readerai.{name}")


# ── Convenience helpers ──────────────────────────────────────

def log_exception(logger: logging.Logger, msg: str, exc: BaseException) -> None:
    """Log an exception with full traceback."""
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("%s: %s\n%s", msg, exc, "".join(tb))


def truncate(text: str, max_len: int = 200) -> str:
    """Truncate a string for log readability."""
    if not text:
        return "(empty)"
    text = text.replace("\n", "\\n")
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"...[{len(text)} chars]"

"""Cooperative cancellation for streaming tasks."""

import asyncio
import signal
import threading
from typing import AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

T = TypeVar("T")


class StreamCancelled(Exception):
    """Raised inside an adapter once its token is observed cancelled."""


class CancellationToken:
    """One-shot cancellation flag shared between a task owner and its transport.

    Cancelling is idempotent and never fails; read loops poll ``cancelled``
    or call ``raise_if_cancelled()`` at every suspension point.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self.reason = ""
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self.reason = reason
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run *callback* on cancel, immediately if already cancelled."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise StreamCancelled(self.reason)

    def __repr__(self) -> str:
        state = f"cancelled:{self.reason}" if self._cancelled else "live"
        return f"<CancellationToken {state}>"


POLL_INTERVAL = 0.3


async def iter_until_cancelled(
    source: AsyncIterator[T],
    token: Optional[CancellationToken],
    poll_interval: float = POLL_INTERVAL,
) -> AsyncIterator[T]:
    """Yield from *source*, checking *token* at least every *poll_interval*.

    Uses a polling wait instead of a bare ``async for`` so a slow server
    (e.g. a model still thinking before its first token) cannot hold off
    cancellation until the next chunk arrives. Raises ``StreamCancelled``.
    """
    aiter = source.__aiter__()
    pending = None
    try:
        while True:
            if token is not None and token.cancelled:
                raise StreamCancelled(token.reason)
            if pending is None:
                pending = asyncio.ensure_future(aiter.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=poll_interval)
            if not done:
                continue
            try:
                item = pending.result()
            except StopAsyncIteration:
                pending = None
                return
            pending = None
            if token is not None and token.cancelled:
                raise StreamCancelled(token.reason)
            yield item
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            try:
                await pending
            except (asyncio.CancelledError, StopAsyncIteration):
                pass


async def run_until_cancelled(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken],
    poll_interval: float = POLL_INTERVAL,
) -> T:
    """Await *awaitable*, abandoning it once *token* is cancelled.

    Covers waits outside a read loop, such as a server that has not sent
    response headers yet. A result that is already available is returned
    even if the token was cancelled meanwhile; the caller owns it.
    """
    pending = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({pending}, timeout=poll_interval)
            if done:
                return pending.result()
            if token is not None and token.cancelled:
                raise StreamCancelled(token.reason)
    finally:
        if not pending.done():
            pending.cancel()
            try:
                await pending
            except asyncio.CancelledError:
                pass


async def sleep_cancellable(
    seconds: float,
    token: Optional[CancellationToken],
    poll_interval: float = POLL_INTERVAL,
) -> None:
    """Sleep in short slices so a cancel lands within *poll_interval*."""
    remaining = seconds
    while remaining > 0:
        if token is not None:
            token.raise_if_cancelled()
        step = min(poll_interval, remaining)
        await asyncio.sleep(step)
        remaining -= step
    if token is not None:
        token.raise_if_cancelled()


class CancelOnInterrupt:
    """Turn the first Ctrl+C into a token cancel; a second one aborts.

    Usage:
        with CancelOnInterrupt(token):
            await client.stream(...)
    """

    def __init__(self, token: CancellationToken):
        self.token = token
        self._original_sigint = None

    def __enter__(self) -> "CancelOnInterrupt":
        self._original_sigint = signal.signal(signal.SIGINT, self._sigint_handler)
        return self

    def __exit__(self, *exc) -> None:
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
            self._original_sigint = None

    def _sigint_handler(self, signum, frame):
        if not self.token.cancelled:
            self.token.cancel("ctrl-c")
            return
        if callable(self._original_sigint) and self._original_sigint is not signal.default_int_handler:
            self._original_sigint(signum, frame)
        else:
            raise KeyboardInterrupt()

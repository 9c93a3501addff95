"""Typed message channel to a locally supervised Ollama process.

The managed-process adapter never parses HTTP itself: it opens a channel
and receives already-normalized ``ChannelMessage`` objects whose ``text``
is the cumulative reasoning or answer so far. ``OllamaChannel`` is the
default implementation; it speaks Ollama's NDJSON ``/api/chat`` stream.
"""

import json
import httpx
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Protocol

from .cancellation import CancellationToken, iter_until_cancelled
from .logger import get_logger, truncate

_log = get_logger("ollama")

THINKING = "thinking"
CONTENT = "content"
DONE = "done"


class ChannelError(RuntimeError):
    """The managed process rejected the request or the stream broke."""


@dataclass(frozen=True)
class ChannelMessage:
    kind: str   # "thinking" | "content" | "done"
    text: str = ""


@dataclass
class ChannelRequest:
    """Invocation parameters for one streamed exchange."""
    base_url: str
    model: str
    messages: List[Dict[str, str]]
    think: Optional[bool] = None       # None: leave the field out
    options: Optional[Dict[str, Any]] = None

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
            "stream": True,
        }
        if self.think is not None:
            body["think"] = self.think
        if self.options:
            body["options"] = dict(self.options)
        return body


class ProcessChannel(Protocol):
    def open(
        self, request: ChannelRequest, token: Optional[CancellationToken] = None
    ) -> AsyncGenerator[ChannelMessage, None]:
        ...


@dataclass
class OllamaModel:
    name: str
    modified_at: str = ""
    size: int = 0


def format_model_size(size_bytes: int) -> str:
    """Human readable model size: MB below 1 GiB, GB with one decimal above."""
    if size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.0f} MB"
    return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"


def _decode_line(line: str) -> Optional[Dict[str, Any]]:
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        _log.debug("skipping malformed ollama line: %s", truncate(line))
        return None
    return data if isinstance(data, dict) else None


class OllamaChannel:
    """Channel backed by an Ollama server's streaming chat endpoint."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 600.0,
        poll_interval: float = 0.3,
    ):
        self._client = client
        self.timeout = timeout
        self.poll_interval = poll_interval

    def _make_client(self, read_timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(read_timeout or self.timeout, connect=10.0)
        )

    async def open(
        self, request: ChannelRequest, token: Optional[CancellationToken] = None
    ) -> AsyncGenerator[ChannelMessage, None]:
        client = self._client or self._make_client()
        try:
            async with aclosing(self._stream_chat(client, request, token)) as messages:
                async for message in messages:
                    yield message
        finally:
            if self._client is None:
                await client.aclose()

    async def _stream_chat(
        self,
        client: httpx.AsyncClient,
        request: ChannelRequest,
        token: Optional[CancellationToken],
    ) -> AsyncIterator[ChannelMessage]:
        url = f"{request.base_url.rstrip('/')}/api/chat"
        body = request.to_body()
        _log.info("ollama chat: url=%s model=%s msgs=%d think=%s",
                  url, request.model, len(request.messages), body.get("think", "(omitted)"))

        try:
            async with client.stream("POST", url, json=body) as response:
                if not response.is_success:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    raise ChannelError(
                        f"Ollama returned HTTP {response.status_code} :: {truncate(text, 500)}"
                    )

                thinking = ""
                content = ""
                async with aclosing(self._iter_lines(response, token)) as lines:
                    async for line in lines:
                        data = _decode_line(line)
                        if data is None:
                            continue
                        if data.get("error"):
                            raise ChannelError(f"Ollama error: {data['error']}")

                        message = data.get("message") or {}
                        think_delta = data.get("thinking") or message.get("thinking") or ""
                        if isinstance(think_delta, str) and think_delta:
                            thinking += think_delta
                            yield ChannelMessage(THINKING, thinking)

                        # /api/generate uses "response", /api/chat uses message.content
                        delta = data.get("response") or message.get("content") or ""
                        if isinstance(delta, str) and delta:
                            content += delta
                            yield ChannelMessage(CONTENT, content)

                        if data.get("done") is True:
                            yield ChannelMessage(DONE, "")
        except httpx.HTTPError as e:
            raise ChannelError(f"Ollama request failed: {e}") from e

    async def _iter_lines(
        self, response: httpx.Response, token: Optional[CancellationToken]
    ) -> AsyncIterator[str]:
        line_buffer = ""
        async with aclosing(iter_until_cancelled(response.aiter_text(), token,
                                                 self.poll_interval)) as chunks:
            async for chunk in chunks:
                line_buffer += chunk
                while "\n" in line_buffer:
                    line, line_buffer = line_buffer.split("\n", 1)
                    yield line
        if line_buffer.strip():
            yield line_buffer

    async def list_models(self, base_url: str) -> List[OllamaModel]:
        """Models installed on the Ollama server (GET /api/tags)."""
        url = f"{base_url.rstrip('/')}/api/tags"
        client = self._client or self._make_client(30.0)
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise ChannelError(f"Ollama connection failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()
        if not response.is_success:
            raise ChannelError(f"Ollama returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise ChannelError(f"Failed to parse Ollama response: {e}") from e
        return [
            OllamaModel(
                name=item.get("name", ""),
                modified_at=item.get("modified_at", ""),
                size=int(item.get("size", 0) or 0),
            )
            for item in (data.get("models") or [])
            if isinstance(item, dict)
        ]

    async def test_connection(self, base_url: str) -> bool:
        """True if the Ollama server answers /api/tags with a 2xx."""
        url = f"{base_url.rstrip('/')}/api/tags"
        client = self._client or self._make_client(10.0)
        try:
            response = await client.get(url)
            return response.is_success
        except httpx.HTTPError as e:
            _log.info("ollama connection test failed: %s", e)
            return False
        finally:
            if self._client is None:
                await client.aclose()

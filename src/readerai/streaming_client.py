"""Streaming clients that normalize three backend protocols into one event contract.

Every variant turns its backend's wire format into the same four events:
reasoning snapshot, answer snapshot, done, error. ``stream()`` never raises
for backend trouble; failures reach ``on_error`` as a message. A cancelled
token ends the exchange silently.
"""

import asyncio
import codecs
import json
import time
import httpx
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .cancellation import (
    POLL_INTERVAL,
    CancellationToken,
    StreamCancelled,
    iter_until_cancelled,
    run_until_cancelled,
    sleep_cancellable,
)
from .config import Provider, ProviderConfig
from .events import Answer, Done, Error, Reasoning, StreamCallbacks, StreamEvent
from .logger import get_logger, log_exception, truncate
from .ollama_channel import (
    CONTENT,
    DONE,
    THINKING,
    ChannelRequest,
    OllamaChannel,
    ProcessChannel,
)
from .think_parser import ThinkBlockExtractor
from .thinking import (
    NO_THINK_DIRECTIVE,
    QUICK_THINKING_INSTRUCTION,
    THINK_DIRECTIVE,
    ThinkingMode,
    ThinkingResolution,
    has_directive,
    resolve_thinking_mode,
    sampling_preset,
    think_parameter,
)

_log = get_logger("streaming")

# Delta fields that carry reasoning on OpenAI-style SSE payloads.
REASONING_FIELDS = ("reasoning_content", "reasoning", "thinking")

ERROR_BODY_EXCERPT = 500

_SSE_DONE = object()


@dataclass
class StreamOptions:
    """Per-call options for ``stream()``."""
    thinking_mode: ThinkingMode = ThinkingMode.QUICK
    token: Optional[CancellationToken] = None
    # Earlier turns of a conversation; the prompt becomes the final user message.
    history: List[Dict[str, str]] = field(default_factory=list)


class _Emitter:
    """Gate between an adapter and the caller's callbacks.

    Checks the token before every delivery, fires done at most once and
    hides reasoning when the resolved mode has it off.
    """

    def __init__(self, callbacks: StreamCallbacks, token: Optional[CancellationToken],
                 show_reasoning: bool):
        self.callbacks = callbacks
        self.token = token
        self.show_reasoning = show_reasoning
        self.done_called = False
        self.reasoning_text = ""
        self.answer_text = ""

    def _check_live(self) -> None:
        if self.token is not None:
            self.token.raise_if_cancelled()

    def reasoning(self, text: str) -> None:
        if not self.show_reasoning or not text:
            return
        self._check_live()
        self.reasoning_text = text
        self.callbacks.dispatch(Reasoning(text))

    def answer(self, text: str) -> None:
        self._check_live()
        self.answer_text = text
        self.callbacks.dispatch(Answer(text))

    def done(self) -> None:
        if self.done_called:
            return
        self._check_live()
        self.done_called = True
        self.callbacks.dispatch(Done())

    def error(self, message: str) -> None:
        if self.token is not None and self.token.cancelled:
            return
        self.callbacks.dispatch(Error(message))


def _content_text(content: Any) -> str:
    """Flatten a delta ``content`` that may be a list of parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        joined = []
        for part in content:
            if isinstance(part, dict):
                txt = part.get("text")
                if isinstance(txt, str):
                    joined.append(txt)
        return "".join(joined)
    return ""


def _reasoning_text(delta: Dict[str, Any]) -> str:
    for key in REASONING_FIELDS:
        value = delta.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _first_choice(payload: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[str]]:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return {}, None
    choice = choices[0]
    delta = choice.get("delta")
    return (delta if isinstance(delta, dict) else {}), choice.get("finish_reason")


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return f"Request timed out: {exc}" if str(exc) else "Request timed out"
    if isinstance(exc, httpx.RequestError):
        return f"Request failed: {type(exc).__name__}: {exc}"
    return str(exc) or type(exc).__name__


class BaseStreamClient:
    """Shared plumbing: message building, SSE framing, cancellation, error funnel."""

    provider: Provider

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.config = config
        self._client = client
        self._owns_client = False
        self.poll_interval = poll_interval

    async def __aenter__(self):
        if self._client is None:
            self._client = self._make_client()
            self._owns_client = True
        return self

    async def __aexit__(self, *args):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            self._owns_client = False

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout, connect=30.0)
        )

    # ── public contract ──────────────────────────────────────

    async def stream(
        self,
        prompt: str,
        callbacks: StreamCallbacks,
        options: Optional[StreamOptions] = None,
    ) -> None:
        """Run one exchange, reporting through *callbacks*. Does not raise."""
        options = options or StreamOptions()
        token = options.token
        emitter = _Emitter(callbacks, token, show_reasoning=False)
        t0 = time.time()
        try:
            resolution = resolve_thinking_mode(prompt, options.thinking_mode)
            emitter.show_reasoning = resolution.thinking
            _log.info("stream[%s]: mode=%s thinking=%s history=%d prompt=%s",
                      self.provider.value, resolution.mode.value, resolution.thinking,
                      len(options.history), truncate(prompt, 120))
            if token is not None:
                token.raise_if_cancelled()
            await self._run(prompt, resolution, options, emitter)
            emitter.done()
        except StreamCancelled as e:
            _log.info("stream[%s] cancelled (%s) after %.1fs",
                      self.provider.value, e, time.time() - t0)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if token is not None and token.cancelled:
                _log.info("stream[%s] error after cancel ignored: %s", self.provider.value, e)
                return
            log_exception(_log, f"stream[{self.provider.value}] failed", e)
            emitter.error(_error_message(e))
            return
        _log.info("stream[%s] complete: answer_len=%d reasoning_len=%d elapsed=%.1fs",
                  self.provider.value, len(emitter.answer_text),
                  len(emitter.reasoning_text), time.time() - t0)

    async def events(
        self, prompt: str, options: Optional[StreamOptions] = None
    ) -> AsyncIterator[StreamEvent]:
        """The same exchange as ``stream()``, as an async iterator of events."""
        queue: asyncio.Queue = asyncio.Queue()
        finished = object()

        async def _produce():
            try:
                await self.stream(prompt, StreamCallbacks.from_sink(queue.put_nowait), options)
            finally:
                queue.put_nowait(finished)

        task = asyncio.ensure_future(_produce())
        try:
            while True:
                item = await queue.get()
                if item is finished:
                    break
                yield item
        finally:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    # ── helpers for variants ─────────────────────────────────

    async def _run(self, prompt: str, resolution: ThinkingResolution,
                   options: StreamOptions, emitter: _Emitter) -> None:
        raise NotImplementedError

    def _build_messages(self, user_text: str, resolution: ThinkingResolution,
                        history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if resolution.is_quick:
            messages.append({"role": "system", "content": QUICK_THINKING_INSTRUCTION})
        messages.extend({"role": m["role"], "content": m["content"]} for m in history)
        messages.append({"role": "user", "content": user_text})
        return messages

    def _sampling(self, model: str, thinking: bool) -> Dict[str, Any]:
        params = sampling_preset(model, thinking) or {}
        params.update(self.config.sampling)
        return params

    @asynccontextmanager
    async def _open_stream(self, client: httpx.AsyncClient,
                           token: Optional[CancellationToken], method: str, url: str,
                           **kwargs) -> AsyncIterator[httpx.Response]:
        """``client.stream()`` that gives up waiting for headers once *token* is cancelled."""
        request = client.build_request(method, url, **kwargs)
        response = await run_until_cancelled(
            client.send(request, stream=True), token, self.poll_interval
        )
        try:
            yield response
        finally:
            await response.aclose()

    async def _raise_for_status(self, response: httpx.Response, label: str) -> None:
        if response.is_success:
            return
        body = ""
        try:
            body = (await response.aread()).decode("utf-8", errors="replace").strip()
        except httpx.HTTPError:
            pass
        excerpt = body[:ERROR_BODY_EXCERPT]
        raise RuntimeError(
            f"{label}: {response.status_code}" + (f" :: {excerpt}" if excerpt else "")
        )

    @staticmethod
    def _parse_sse_line(line: str) -> Any:
        """Return a payload dict, ``_SSE_DONE``, or None for lines to skip."""
        line = line.strip()
        if not line.startswith("data:"):
            return None
        data_str = line[5:].strip()
        if not data_str:
            return None
        if data_str == "[DONE]":
            return _SSE_DONE
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            _log.debug("skipping malformed frame: %s", truncate(data_str))
            return None
        return data if isinstance(data, dict) else None

    async def _iter_sse(
        self, response: httpx.Response, token: Optional[CancellationToken]
    ) -> AsyncIterator[Any]:
        """Decode a ``data:`` line stream, yielding payloads in arrival order."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        line_buffer = ""
        async with aclosing(iter_until_cancelled(response.aiter_bytes(), token,
                                                 self.poll_interval)) as chunks:
            async for chunk in chunks:
                line_buffer += decoder.decode(chunk)
                while "\n" in line_buffer:
                    line, line_buffer = line_buffer.split("\n", 1)
                    payload = self._parse_sse_line(line)
                    if payload is not None:
                        yield payload
        line_buffer += decoder.decode(b"", final=True)
        payload = self._parse_sse_line(line_buffer)
        if payload is not None:
            yield payload


class LocalServerStreamClient(BaseStreamClient):
    """Built-in llama-server speaking OpenAI-style SSE on /v1/chat/completions.

    The server may still be loading the model right after start-up and
    answers 503 meanwhile, so those are retried with a linear backoff.
    """

    provider = Provider.BUILTIN_LOCAL
    max_retries = 6

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = POLL_INTERVAL,
        retry_base_delay: float = 1.0,
        retry_step: float = 0.5,
    ):
        super().__init__(config, client, poll_interval)
        self.retry_base_delay = retry_base_delay
        self.retry_step = retry_step

    def build_payload(self, prompt: str, resolution: ThinkingResolution,
                      history: List[Dict[str, str]]) -> Dict[str, Any]:
        model = self.config.builtin_model_id
        messages = self._build_messages(prompt, resolution, history)
        # Some llama-server builds ignore the boolean flag, so the prompt
        # always carries the directive as well.
        last = messages[-1]
        if not has_directive(last["content"]):
            tag = THINK_DIRECTIVE if resolution.thinking else NO_THINK_DIRECTIVE
            last["content"] = f"{last['content']} {tag}"

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
        }
        think = think_parameter(resolution.thinking, model)
        if think is not None:
            payload["think"] = think
        payload.update(self._sampling(model, resolution.thinking))
        return payload

    async def _run(self, prompt, resolution, options, emitter):
        self.config.validate(Provider.BUILTIN_LOCAL)
        token = options.token
        url = f"{self.config.builtin_base_url.rstrip('/')}/v1/chat/completions"
        payload = self.build_payload(prompt, resolution, options.history)
        _log.info("local request: url=%s model=%s msgs=%d think=%s",
                  url, payload["model"], len(payload["messages"]),
                  payload.get("think", "(omitted)"))

        client = self._client or self._make_client()
        try:
            attempt = 0
            while True:
                if token is not None:
                    token.raise_if_cancelled()
                retry = False
                async with self._open_stream(client, token, "POST", url,
                                             json=payload) as response:
                    if response.status_code == 503 and attempt < self.max_retries:
                        retry = True
                    else:
                        await self._raise_for_status(response, "Local model request failed")
                        await self._consume(response, token, emitter)
                if not retry:
                    return
                wait = self.retry_base_delay + attempt * self.retry_step
                attempt += 1
                _log.warning("local server 503 (model loading); retry %d/%d in %.1fs",
                             attempt, self.max_retries, wait)
                await sleep_cancellable(wait, token, self.poll_interval)
        finally:
            if client is not self._client:
                await client.aclose()

    async def _consume(self, response: httpx.Response,
                       token: Optional[CancellationToken], emitter: _Emitter) -> None:
        extractor = ThinkBlockExtractor()
        reasoning = ""
        answer = ""
        has_reasoning_field = False

        async with aclosing(self._iter_sse(response, token)) as payloads:
            async for payload in payloads:
                if payload is _SSE_DONE:
                    break
                delta, finish_reason = _first_choice(payload)

                reasoning_delta = _reasoning_text(delta)
                if reasoning_delta:
                    if not has_reasoning_field:
                        # Continue from what the tag parser already produced.
                        has_reasoning_field = True
                        split = extractor.flush()
                        if split.answer is not None:
                            emitter.answer(split.answer)
                        reasoning = extractor.reasoning
                        answer = extractor.answer
                    reasoning += reasoning_delta
                    emitter.reasoning(reasoning)

                content = _content_text(delta.get("content"))
                if content:
                    if has_reasoning_field:
                        answer += content
                        emitter.answer(answer)
                    else:
                        split = extractor.feed(content)
                        if split.reasoning is not None:
                            emitter.reasoning(split.reasoning)
                        if split.answer is not None:
                            emitter.answer(split.answer)

                if finish_reason:
                    break

        if not has_reasoning_field:
            split = extractor.flush()
            if split.answer is not None:
                emitter.answer(split.answer)
        emitter.done()


class RemoteAPIStreamClient(BaseStreamClient):
    """OpenAI-compatible remote API with Bearer auth. No retries, no tag parsing."""

    provider = Provider.OPENAI_COMPATIBLE

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.openai_api_key}",
        }

    def build_payload(self, prompt: str, resolution: ThinkingResolution,
                      history: List[Dict[str, str]]) -> Dict[str, Any]:
        return {
            "model": self.config.openai_model,
            "messages": self._build_messages(prompt, resolution, history),
            "stream": True,
        }

    async def _run(self, prompt, resolution, options, emitter):
        self.config.validate(Provider.OPENAI_COMPATIBLE)
        token = options.token
        url = f"{self.config.openai_base_url.strip().rstrip('/')}/chat/completions"
        payload = self.build_payload(prompt, resolution, options.history)
        _log.info("remote request: url=%s model=%s msgs=%d",
                  url, payload["model"], len(payload["messages"]))

        client = self._client or self._make_client()
        try:
            async with self._open_stream(
                client, token, "POST", url, headers=self._get_headers(), json=payload
            ) as response:
                await self._raise_for_status(response, "OpenAI-compatible request failed")
                await self._consume(response, token, emitter)
        finally:
            if client is not self._client:
                await client.aclose()

    async def _consume(self, response: httpx.Response,
                       token: Optional[CancellationToken], emitter: _Emitter) -> None:
        reasoning = ""
        answer = ""
        async with aclosing(self._iter_sse(response, token)) as payloads:
            async for payload in payloads:
                if payload is _SSE_DONE:
                    break
                delta, finish_reason = _first_choice(payload)
                reasoning_delta = _reasoning_text(delta)
                if reasoning_delta:
                    reasoning += reasoning_delta
                    emitter.reasoning(reasoning)
                content = _content_text(delta.get("content"))
                if content:
                    answer += content
                    emitter.answer(answer)
                if finish_reason:
                    break
        emitter.done()


class ManagedProcessStreamClient(BaseStreamClient):
    """Ollama reached through a typed channel instead of raw HTTP."""

    provider = Provider.OLLAMA

    def __init__(
        self,
        config: ProviderConfig,
        channel: Optional[ProcessChannel] = None,
        poll_interval: float = POLL_INTERVAL,
    ):
        super().__init__(config, None, poll_interval)
        self.channel = channel or OllamaChannel(
            timeout=config.request_timeout, poll_interval=poll_interval
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    def build_request(self, resolution: ThinkingResolution,
                      history: List[Dict[str, str]]) -> ChannelRequest:
        model = self.config.ollama_model
        return ChannelRequest(
            base_url=self.config.ollama_url.rstrip("/"),
            model=model,
            messages=self._build_messages(resolution.prompt_to_send, resolution, history),
            think=think_parameter(resolution.thinking, model),
            options=self._sampling(model, resolution.thinking) or None,
        )

    async def _run(self, prompt, resolution, options, emitter):
        self.config.validate(Provider.OLLAMA)
        token = options.token
        request = self.build_request(resolution, options.history)
        async with aclosing(self.channel.open(request, token)) as messages, \
                aclosing(iter_until_cancelled(messages, token, self.poll_interval)) as stream:
            async for message in stream:
                if message.kind == THINKING:
                    emitter.reasoning(message.text)
                elif message.kind == CONTENT:
                    emitter.answer(message.text)
                elif message.kind == DONE:
                    break
                else:
                    _log.debug("ignoring channel message kind=%s", message.kind)
        emitter.done()


_VARIANTS = {
    Provider.BUILTIN_LOCAL: LocalServerStreamClient,
    Provider.OPENAI_COMPATIBLE: RemoteAPIStreamClient,
}


def create_stream_client(
    config: ProviderConfig,
    client: Optional[httpx.AsyncClient] = None,
    channel: Optional[ProcessChannel] = None,
) -> BaseStreamClient:
    """Pick the adapter for ``config.provider``."""
    if config.provider is Provider.OLLAMA:
        return ManagedProcessStreamClient(config, channel=channel)
    try:
        cls = _VARIANTS[config.provider]
    except KeyError:
        raise ValueError(f"Unsupported provider: {config.provider!r}")
    return cls(config, client=client)

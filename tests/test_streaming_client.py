"""Tests for the HTTP streaming adapters (local llama-server and remote OpenAI-compatible)."""

import sys
import os
import json
import time
import asyncio
import httpx

# Ensure src is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from readerai.cancellation import CancellationToken
from readerai.config import Provider, ProviderConfig
from readerai.events import Answer, Done, Error, Reasoning, StreamCallbacks
from readerai.streaming_client import (
    LocalServerStreamClient,
    ManagedProcessStreamClient,
    RemoteAPIStreamClient,
    StreamOptions,
    create_stream_client,
)
from readerai.thinking import QUICK_THINKING_INSTRUCTION, ThinkingMode


BASE_URL = "http://127.0.0.1:8080"

SSE_EXAMPLE = (
    b'data:{"choices":[{"delta":{"content":"Hi"}}]}\n'
    b'data:{"choices":[{"delta":{"content":" there"},"finish_reason":"stop"}]}\n'
    b'data:[DONE]\n'
)


def run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def sse(*payloads) -> bytes:
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def content(text, finish=None):
    choice = {"delta": {"content": text}}
    if finish:
        choice["finish_reason"] = finish
    return {"choices": [choice]}


def chunked(*chunks):
    async def body():
        for chunk in chunks:
            yield chunk
    return body()


class Recorder:
    def __init__(self):
        self.events = []

    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks.from_sink(self.events.append)

    @property
    def answers(self):
        return [e.text for e in self.events if isinstance(e, Answer)]

    @property
    def reasoning(self):
        return [e.text for e in self.events if isinstance(e, Reasoning)]

    @property
    def errors(self):
        return [e.message for e in self.events if isinstance(e, Error)]

    @property
    def done_count(self):
        return sum(1 for e in self.events if isinstance(e, Done))


class Backend:
    """Records requests and answers them with a handler."""

    def __init__(self, respond):
        self.respond = respond
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request, len(self.requests))

    @property
    def calls(self):
        return len(self.requests)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


def make_local(backend, **config_kw):
    config_kw.setdefault("builtin_base_url", BASE_URL)
    config = ProviderConfig(provider=Provider.BUILTIN_LOCAL, **config_kw)
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    return LocalServerStreamClient(config, client=http, poll_interval=0.01,
                                   retry_base_delay=0, retry_step=0)


def make_remote(backend, **config_kw):
    config_kw.setdefault("openai_base_url", "https://api.example.com/v1/")
    config_kw.setdefault("openai_api_key", "sk-test")
    config = ProviderConfig(provider=Provider.OPENAI_COMPATIBLE, **config_kw)
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    return RemoteAPIStreamClient(config, client=http, poll_interval=0.01)


def collect(client, prompt, options=None):
    rec = Recorder()

    async def _go():
        try:
            await client.stream(prompt, rec.callbacks(), options)
        finally:
            await client._client.aclose()

    run(_go())
    return rec


def ok(body=SSE_EXAMPLE):
    return lambda request, n: httpx.Response(200, content=body)


# ── local server: framing and events ──────────────────────────


class TestLocalStreaming:
    def test_basic_sse_example(self):
        backend = Backend(ok())
        rec = collect(make_local(backend), "hello")
        assert rec.answers == ["Hi", "Hi there"]
        assert rec.done_count == 1
        assert rec.errors == []
        assert isinstance(rec.events[-1], Done)

    def test_request_url(self):
        backend = Backend(ok())
        collect(make_local(backend, builtin_base_url=BASE_URL + "/"), "hello")
        assert str(backend.requests[0].url) == BASE_URL + "/v1/chat/completions"

    def test_think_tags_split_across_network_chunks(self):
        chunks = (
            b'data: {"choices":[{"delta":{"content":"<thi"}}]}\n',
            b'\ndata: {"choices":[{"delta":{"content":"nk>Hel"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":"lo</think>Wor"}}]}\n\ndata: {"choi',
            b'ces":[{"delta":{"content":"ld"},"finish_reason":"stop"}]}\n\n',
        )
        backend = Backend(lambda request, n: httpx.Response(200, content=chunked(*chunks)))
        rec = collect(make_local(backend), "hello")
        assert rec.reasoning[-1] == "Hello"
        assert rec.answers[-1] == "World"
        assert rec.done_count == 1

    def test_multibyte_character_split_across_chunks(self):
        raw = 'data: {"choices":[{"delta":{"content":"你好"}}]}\n\ndata: [DONE]\n\n'.encode("utf-8")
        cut = raw.index("你".encode("utf-8")) + 1
        backend = Backend(lambda request, n: httpx.Response(
            200, content=chunked(raw[:cut], raw[cut:])))
        rec = collect(make_local(backend), "hello")
        assert rec.answers == ["你好"]
        assert rec.errors == []

    def test_reasoning_field_disables_tag_parsing(self):
        body = sse(
            {"choices": [{"delta": {"reasoning_content": "plan"}}]},
            {"choices": [{"delta": {"reasoning_content": " more"}}]},
            content("<think>x</think>"),
            content("y", finish="stop"),
        )
        rec = collect(make_local(Backend(ok(body))), "hello")
        assert rec.reasoning == ["plan", "plan more"]
        assert rec.answers == ["<think>x</think>", "<think>x</think>y"]
        assert rec.done_count == 1

    def test_reasoning_field_after_answer_text_keeps_answer(self):
        body = sse(
            content("Hello world, "),
            {"choices": [{"delta": {"reasoning_content": "hmm"}}]},
            content("more", finish="stop"),
        )
        rec = collect(make_local(Backend(ok(body))), "hello")
        assert rec.answers == ["Hello world, ", "Hello world, more"]
        assert rec.reasoning == ["hmm"]

    def test_reasoning_field_after_think_tag_keeps_reasoning(self):
        body = sse(
            content("<think>plan"),
            {"choices": [{"delta": {"reasoning_content": " more"}}]},
            content("done", finish="stop"),
        )
        rec = collect(make_local(Backend(ok(body))), "hello")
        assert rec.reasoning == ["plan", "plan more"]
        assert rec.answers == ["done"]

    def test_undecided_text_is_kept_when_reasoning_field_appears(self):
        body = sse(
            content("<b>"),
            {"choices": [{"delta": {"reasoning_content": "r"}}]},
            content("!", finish="stop"),
        )
        rec = collect(make_local(Backend(ok(body))), "hello")
        assert rec.answers == ["<b>", "<b>!"]

    def test_unknown_thinking_mode_reaches_on_error(self):
        backend = Backend(ok())
        rec = collect(make_local(backend), "hello", StreamOptions(thinking_mode="none"))
        assert backend.calls == 0
        assert len(rec.errors) == 1
        assert "Unknown thinking mode" in rec.errors[0]
        assert rec.done_count == 0

    def test_alternate_reasoning_field_names(self):
        body = sse(
            {"choices": [{"delta": {"reasoning": "a"}}]},
            {"choices": [{"delta": {"thinking": "b"}}]},
            content("ok", finish="stop"),
        )
        rec = collect(make_local(Backend(ok(body))), "hello")
        assert rec.reasoning == ["a", "ab"]
        assert rec.answers == ["ok"]

    def test_short_reply_is_flushed_as_answer(self):
        body = sse(content("<b>", finish="stop"))
        rec = collect(make_local(Backend(ok(body))), "hello")
        assert rec.answers == ["<b>"]
        assert rec.done_count == 1

    def test_malformed_and_comment_lines_are_skipped(self):
        body = (b': keep-alive\n\ndata: {not json}\n\n'
                b'data: {"choices":[{"delta":{"content":"fine"}}]}\n\ndata: [DONE]\n\n')
        rec = collect(make_local(Backend(ok(body))), "hello")
        assert rec.answers == ["fine"]
        assert rec.errors == []

    def test_stops_reading_after_done_marker(self):
        body = sse(content("one")) + sse(content("two"))
        rec = collect(make_local(Backend(ok(body))), "hello")
        assert rec.answers == ["one"]
        assert rec.done_count == 1

    def test_events_iterator(self):
        client = make_local(Backend(ok()))

        async def _go():
            try:
                return [event async for event in client.events("hello")]
            finally:
                await client._client.aclose()

        assert run(_go()) == [Answer("Hi"), Answer("Hi there"), Done()]


# ── local server: request body ────────────────────────────────


class TestLocalPayload:
    def test_off_mode_hides_reasoning_and_sends_no_think(self):
        backend = Backend(ok(sse(content("<think>r</think>ans", finish="stop"))))
        rec = collect(make_local(backend), "hello",
                      StreamOptions(thinking_mode=ThinkingMode.OFF))
        assert rec.reasoning == []
        assert rec.answers == ["ans"]
        body = backend.body()
        assert body["messages"][-1] == {"role": "user", "content": "hello /no_think"}
        assert body["think"] is False
        assert body["stream"] is True
        assert body["temperature"] == 0.7
        assert body["top_p"] == 0.8

    def test_thinking_mode_appends_think_tag(self):
        backend = Backend(ok())
        collect(make_local(backend), "hello", StreamOptions(thinking_mode="deep"))
        body = backend.body()
        assert body["messages"] == [{"role": "user", "content": "hello /think"}]
        assert body["think"] is True
        assert body["temperature"] == 0.6

    def test_existing_directive_is_not_duplicated(self):
        backend = Backend(ok())
        collect(make_local(backend), "why /think", StreamOptions(thinking_mode="off"))
        body = backend.body()
        assert body["messages"][-1]["content"] == "why /think"
        assert body["think"] is True

    def test_denylisted_model_omits_think_field(self):
        backend = Backend(ok())
        collect(make_local(backend, builtin_model_id="deepseek-r1-distill-qwen-7b"),
                "hello", StreamOptions(thinking_mode="off"))
        body = backend.body()
        assert "think" not in body
        assert body["messages"][-1]["content"] == "hello /no_think"
        assert "temperature" not in body

    def test_configured_sampling_overrides_preset(self):
        backend = Backend(ok())
        collect(make_local(backend, sampling={"temperature": 0.2}), "hello")
        body = backend.body()
        assert body["temperature"] == 0.2
        assert body["top_p"] == 0.95
        assert body["top_k"] == 20
        assert body["min_p"] == 0.0

    def test_quick_mode_prepends_system_message_and_history(self):
        backend = Backend(ok())
        history = [{"role": "user", "content": "earlier"},
                   {"role": "assistant", "content": "reply"}]
        collect(make_local(backend), "hello",
                StreamOptions(thinking_mode="quick", history=history))
        messages = backend.body()["messages"]
        assert messages[0] == {"role": "system", "content": QUICK_THINKING_INSTRUCTION}
        assert messages[1:3] == history
        assert messages[-1] == {"role": "user", "content": "hello /think"}


# ── local server: retries and errors ──────────────────────────


class TestLocalRetry:
    def test_recovers_after_five_503s(self):
        def respond(request, n):
            if n <= 5:
                return httpx.Response(503, text="Loading model")
            return httpx.Response(200, content=SSE_EXAMPLE)

        backend = Backend(respond)
        rec = collect(make_local(backend), "hello")
        assert backend.calls == 6
        assert rec.errors == []
        assert rec.answers == ["Hi", "Hi there"]
        assert rec.done_count == 1

    def test_gives_up_after_seven_503s(self):
        backend = Backend(lambda request, n: httpx.Response(503, text="Loading model"))
        rec = collect(make_local(backend), "hello")
        assert backend.calls == 7
        assert len(rec.errors) == 1
        assert "503" in rec.errors[0]
        assert "Loading model" in rec.errors[0]
        assert rec.done_count == 0

    def test_other_status_is_not_retried(self):
        backend = Backend(lambda request, n: httpx.Response(500, text="boom"))
        rec = collect(make_local(backend), "hello")
        assert backend.calls == 1
        assert rec.errors == ["Local model request failed: 500 :: boom"]
        assert rec.done_count == 0

    def test_long_error_body_is_truncated(self):
        backend = Backend(lambda request, n: httpx.Response(400, text="x" * 2000))
        rec = collect(make_local(backend), "hello")
        assert len(rec.errors[0]) < 600

    def test_missing_base_url_fails_without_request(self):
        backend = Backend(ok())
        rec = collect(make_local(backend, builtin_base_url=""), "hello")
        assert backend.calls == 0
        assert len(rec.errors) == 1
        assert "not running" in rec.errors[0]

    def test_cancel_during_retry_wait(self):
        token = CancellationToken()

        def respond(request, n):
            token.cancel()
            return httpx.Response(503)

        backend = Backend(respond)
        rec = collect(make_local(backend), "hello", StreamOptions(token=token))
        assert backend.calls == 1
        assert rec.events == []


# ── cancellation ──────────────────────────────────────────────


class TestCancellation:
    def test_cancel_from_callback_is_silent(self):
        token = CancellationToken()
        rec = Recorder()
        callbacks = rec.callbacks()
        forward = callbacks.on_answer

        def on_answer(text):
            forward(text)
            token.cancel()

        callbacks.on_answer = on_answer
        client = make_local(Backend(ok()))

        async def _go():
            try:
                await client.stream("hello", callbacks, StreamOptions(token=token))
            finally:
                await client._client.aclose()

        run(_go())
        assert rec.answers == ["Hi"]
        assert rec.done_count == 0
        assert rec.errors == []

    def test_already_cancelled_token_sends_nothing(self):
        token = CancellationToken()
        token.cancel()
        backend = Backend(ok())
        rec = collect(make_local(backend), "hello", StreamOptions(token=token))
        assert backend.calls == 0
        assert rec.events == []

    def test_cancel_interrupts_slow_read(self):
        token = CancellationToken()
        first = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'

        def slow(request, n):
            async def body():
                yield first
                await asyncio.sleep(30)
                yield b"data: [DONE]\n\n"
            return httpx.Response(200, content=body())

        client = make_local(Backend(slow))
        rec = Recorder()

        async def _go():
            asyncio.get_running_loop().call_later(0.1, token.cancel)
            try:
                await asyncio.wait_for(
                    client.stream("hello", rec.callbacks(), StreamOptions(token=token)), 5)
            finally:
                await client._client.aclose()

        t0 = time.time()
        run(_go())
        assert time.time() - t0 < 2
        assert rec.answers == ["Hi"]
        assert rec.done_count == 0
        assert rec.errors == []

    def test_cancel_while_waiting_for_headers(self):
        async def stalled(request, n):
            await asyncio.sleep(30)
            return httpx.Response(200, content=SSE_EXAMPLE)

        for make in (make_local, make_remote):
            token = CancellationToken()
            backend = Backend(stalled)
            client = make(backend)
            rec = Recorder()

            async def _go():
                asyncio.get_running_loop().call_later(0.1, token.cancel)
                try:
                    await asyncio.wait_for(
                        client.stream("hello", rec.callbacks(), StreamOptions(token=token)), 5)
                finally:
                    await client._client.aclose()

            t0 = time.time()
            run(_go())
            assert time.time() - t0 < 2
            assert backend.calls == 1
            assert rec.events == []


# ── remote OpenAI-compatible ──────────────────────────────────


class TestRemote:
    def test_validates_before_any_request(self):
        backend = Backend(ok())
        rec = collect(make_remote(backend, openai_api_key=""), "hello")
        assert backend.calls == 0
        assert rec.errors == ["OpenAI-compatible API key is required."]

    def test_request_shape(self):
        backend = Backend(ok())
        rec = collect(make_remote(backend), "hello", StreamOptions(thinking_mode="off"))
        request = backend.requests[0]
        assert str(request.url) == "https://api.example.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        assert backend.body() == {
            "model": "gpt-4o-mini",
            "messages": [{"role": "user", "content": "hello"}],
            "stream": True,
        }
        assert rec.answers == ["Hi", "Hi there"]
        assert rec.done_count == 1

    def test_reasoning_field_is_surfaced(self):
        body = sse({"choices": [{"delta": {"reasoning_content": "hmm"}}]},
                   content("<think>kept</think>", finish="stop"))
        rec = collect(make_remote(Backend(ok(body))), "hello")
        assert rec.reasoning == ["hmm"]
        assert rec.answers == ["<think>kept</think>"]

    def test_503_is_not_retried(self):
        backend = Backend(lambda request, n: httpx.Response(503, text="busy"))
        rec = collect(make_remote(backend), "hello")
        assert backend.calls == 1
        assert rec.errors == ["OpenAI-compatible request failed: 503 :: busy"]

    def test_connection_error_reaches_on_error(self):
        def respond(request, n):
            raise httpx.ConnectError("connection refused", request=request)

        rec = collect(make_remote(Backend(respond)), "hello")
        assert len(rec.errors) == 1
        assert "ConnectError" in rec.errors[0]
        assert "connection refused" in rec.errors[0]
        assert rec.done_count == 0


class TestFactory:
    def test_selects_adapter_by_provider(self):
        assert isinstance(create_stream_client(ProviderConfig(provider=Provider.BUILTIN_LOCAL)),
                          LocalServerStreamClient)
        assert isinstance(create_stream_client(ProviderConfig(provider=Provider.OPENAI_COMPATIBLE)),
                          RemoteAPIStreamClient)
        assert isinstance(create_stream_client(ProviderConfig(provider=Provider.OLLAMA)),
                          ManagedProcessStreamClient)

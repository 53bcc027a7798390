"""Tests for the generation backend over the AI client."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Sequence

import pytest

from paperchat.ai.backend import (
    GenerationBackend,
    GenerationRequest,
    OpenAIGenerationBackend,
    build_messages,
    build_responses_input,
    is_responses_base,
    normalize_api_base,
    uses_max_completion_tokens,
)
from paperchat.ai.client import AIStreamEvent, ClientSettings
from paperchat.ai.reasoning import ReasoningConfig, ReasoningProvider
from paperchat.chat.message_model import ReasoningDelta
from paperchat.chat.request_tracker import CancellationHandle
from paperchat.errors import ConfigurationGap, GenerationCancelled


class _FakeClient:
    def __init__(self, settings: ClientSettings, events: Sequence[AIStreamEvent], *, hang: bool = False) -> None:
        self.settings = settings
        self._events = list(events)
        self._hang = hang
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def stream_chat(self, messages: Any, **kwargs: Any) -> AsyncIterator[AIStreamEvent]:
        self.calls.append({"messages": messages, **kwargs})
        for event in self._events:
            yield event
        if self._hang:
            await asyncio.Event().wait()

    async def stream_responses(self, input_items: Any, **kwargs: Any) -> AsyncIterator[AIStreamEvent]:
        self.calls.append({"api": "responses", "input": input_items, **kwargs})
        for event in self._events:
            yield event

    async def aclose(self) -> None:
        self.closed = True


class _Factory:
    def __init__(self, events: Sequence[AIStreamEvent] = (), *, hang: bool = False) -> None:
        self._events = events
        self._hang = hang
        self.clients: list[_FakeClient] = []

    def __call__(self, settings: ClientSettings) -> _FakeClient:
        client = _FakeClient(settings, self._events, hang=self._hang)
        self.clients.append(client)
        return client


def _request(**overrides: Any) -> GenerationRequest:
    values: dict[str, Any] = {
        "prompt": "What is this?",
        "model": "gpt-4o-mini",
        "api_base": "https://api.example.com",
        "api_key": "sk-test",
    }
    values.update(overrides)
    return GenerationRequest(**values)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("https://api.openai.com", "https://api.openai.com/v1"),
        ("https://api.openai.com/v1/", "https://api.openai.com/v1"),
        ("https://host/v1/chat/completions", "https://host/v1"),
        ("https://host/v1/responses", "https://host/v1"),
        ("https://generativelanguage.googleapis.com/v1beta/openai", "https://generativelanguage.googleapis.com/v1beta/openai"),
        ("https://open.bigmodel.cn/api/paas/v4", "https://open.bigmodel.cn/api/paas/v4"),
        ("  ", ""),
    ],
)
def test_normalize_api_base(raw: str, expected: str) -> None:
    assert normalize_api_base(raw) == expected


def test_token_limit_field_selection() -> None:
    assert uses_max_completion_tokens("gpt-5-mini")
    assert uses_max_completion_tokens("o3")
    assert not uses_max_completion_tokens("gpt-4o-mini")
    assert uses_max_completion_tokens("qwen-plus", ReasoningConfig(ReasoningProvider.QWEN, "high"))


def test_build_messages_layout() -> None:
    request = _request(
        context="Paper body",
        history=[{"role": "user", "content": "Earlier"}, {"role": "assistant", "content": "Reply"}],
    )

    messages = build_messages(request, "Be brief.")

    assert messages == [
        {"role": "system", "content": "Be brief."},
        {"role": "system", "content": "Document Context:\nPaper body"},
        {"role": "user", "content": "Earlier"},
        {"role": "assistant", "content": "Reply"},
        {"role": "user", "content": "What is this?"},
    ]


def test_build_messages_with_images_uses_parts() -> None:
    messages = build_messages(_request(images=["data:image/png;base64,AA"]), "sys")

    assert len(messages) == 2
    assert messages[-1]["content"] == [
        {"type": "text", "text": "What is this?"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AA", "detail": "high"}},
    ]


def test_backend_satisfies_protocol() -> None:
    assert isinstance(OpenAIGenerationBackend(), GenerationBackend)


@pytest.mark.asyncio
async def test_stream_completion_forwards_deltas_and_returns_final_text() -> None:
    factory = _Factory(
        [
            AIStreamEvent(type="reasoning.delta", summary="hmm", details=None),
            AIStreamEvent(type="content.delta", content="Hel"),
            AIStreamEvent(type="content.delta", content="lo"),
            AIStreamEvent(type="content.done", content="Hello"),
        ]
    )
    backend = OpenAIGenerationBackend(system_prompt="sys", client_factory=factory)
    texts: list[str] = []
    reasoning: list[ReasoningDelta] = []

    answer = await backend.stream_completion(_request(max_tokens=300, temperature=0.7), texts.append, reasoning.append)

    assert answer == "Hello"
    assert texts == ["Hel", "lo"]
    assert reasoning == [ReasoningDelta(summary="hmm", details=None)]
    call = factory.clients[0].calls[0]
    assert call["temperature"] == 0.7
    assert call["max_tokens"] == 300
    assert "max_completion_tokens" not in call
    assert call["messages"][0] == {"role": "system", "content": "sys"}
    assert factory.clients[0].settings.base_url == "https://api.example.com/v1"


@pytest.mark.asyncio
async def test_stream_completion_returns_accumulated_text_without_done_event() -> None:
    factory = _Factory([AIStreamEvent(type="content.delta", content="a"), AIStreamEvent(type="content.delta", content="b")])
    backend = OpenAIGenerationBackend(client_factory=factory)

    answer = await backend.stream_completion(_request(), lambda _: None, lambda _: None)

    assert answer == "ab"


@pytest.mark.asyncio
async def test_reasoning_requests_drop_temperature_and_add_params() -> None:
    factory = _Factory()
    backend = OpenAIGenerationBackend(client_factory=factory)
    request = _request(model="gpt-5", reasoning=ReasoningConfig(ReasoningProvider.OPENAI, "high"), max_tokens=500)

    await backend.stream_completion(request, lambda _: None, lambda _: None)

    call = factory.clients[0].calls[0]
    assert call["temperature"] is None
    assert call["max_completion_tokens"] == 500
    assert call["reasoning_effort"] == "high"


@pytest.mark.asyncio
async def test_request_system_prompt_overrides_default() -> None:
    factory = _Factory()
    backend = OpenAIGenerationBackend(system_prompt="default", client_factory=factory)

    await backend.stream_completion(_request(system_prompt="custom"), lambda _: None, lambda _: None)

    assert factory.clients[0].calls[0]["messages"][0]["content"] == "custom"


@pytest.mark.asyncio
async def test_missing_endpoint_raises_configuration_gap() -> None:
    backend = OpenAIGenerationBackend(client_factory=_Factory())

    with pytest.raises(ConfigurationGap):
        await backend.stream_completion(_request(api_base=""), lambda _: None, lambda _: None)


@pytest.mark.asyncio
async def test_clients_are_reused_per_endpoint_and_closed() -> None:
    factory = _Factory()
    backend = OpenAIGenerationBackend(client_factory=factory)

    await backend.stream_completion(_request(), lambda _: None, lambda _: None)
    await backend.stream_completion(_request(), lambda _: None, lambda _: None)
    await backend.stream_completion(_request(model="other"), lambda _: None, lambda _: None)
    await backend.aclose()

    assert len(factory.clients) == 2
    assert all(client.closed for client in factory.clients)


@pytest.mark.asyncio
async def test_signal_stops_a_hanging_stream() -> None:
    factory = _Factory([AIStreamEvent(type="content.delta", content="partial")], hang=True)
    backend = OpenAIGenerationBackend(client_factory=factory)
    handle = CancellationHandle(1)
    texts: list[str] = []

    task = asyncio.create_task(backend.stream_completion(_request(signal=handle), texts.append, lambda _: None))
    await asyncio.sleep(0.01)
    handle.cancel()

    with pytest.raises(GenerationCancelled):
        await asyncio.wait_for(task, timeout=1)
    assert texts == ["partial"]


@pytest.mark.asyncio
async def test_already_cancelled_signal_short_circuits() -> None:
    factory = _Factory([AIStreamEvent(type="content.delta", content="never")])
    backend = OpenAIGenerationBackend(client_factory=factory)
    handle = CancellationHandle(1)
    handle.cancel()

    with pytest.raises(GenerationCancelled):
        await backend.stream_completion(_request(signal=handle), lambda _: None, lambda _: None)
    assert factory.clients[0].calls == []


def test_responses_base_detection() -> None:
    assert is_responses_base("https://api.openai.com/v1/responses/")
    assert is_responses_base("https://proxy.local/responses")
    assert not is_responses_base("https://api.openai.com/v1/chat/completions")
    assert not is_responses_base("https://api.openai.com/v1")
    assert not is_responses_base("")


def test_build_responses_input_moves_system_messages_to_instructions() -> None:
    request = _request(
        context="Paper body",
        history=[{"role": "assistant", "content": "Reply"}],
        images=["data:image/png;base64,AA"],
    )

    instructions, items = build_responses_input(build_messages(request, "Be brief."))

    assert instructions == "Be brief.\n\nDocument Context:\nPaper body"
    assert items == [
        {"type": "message", "role": "assistant", "content": "Reply"},
        {
            "type": "message",
            "role": "user",
            "content": [
                {"type": "input_text", "text": "What is this?"},
                {"type": "input_image", "image_url": "data:image/png;base64,AA", "detail": "high"},
            ],
        },
    ]


@pytest.mark.asyncio
async def test_responses_endpoint_streams_through_responses_api() -> None:
    factory = _Factory(
        [
            AIStreamEvent(type="reasoning.delta", summary="plan", details=None),
            AIStreamEvent(type="content.delta", content="An"),
            AIStreamEvent(type="content.delta", content="swer"),
            AIStreamEvent(type="content.done", content="Answer"),
        ]
    )
    backend = OpenAIGenerationBackend(system_prompt="sys", client_factory=factory)
    texts: list[str] = []
    reasoning: list[ReasoningDelta] = []

    answer = await backend.stream_completion(
        _request(api_base="https://api.openai.com/v1/responses", max_tokens=400, temperature=0.2),
        texts.append,
        reasoning.append,
    )

    assert answer == "Answer"
    assert texts == ["An", "swer"]
    assert reasoning == [ReasoningDelta(summary="plan", details=None)]
    call = factory.clients[0].calls[0]
    assert call["api"] == "responses"
    assert call["instructions"] == "sys"
    assert call["input"] == [{"type": "message", "role": "user", "content": "What is this?"}]
    assert call["max_output_tokens"] == 400
    assert call["temperature"] == 0.2
    assert "max_tokens" not in call and "max_completion_tokens" not in call
    assert factory.clients[0].settings.base_url == "https://api.openai.com/v1"


@pytest.mark.asyncio
async def test_responses_reasoning_effort_is_nested() -> None:
    factory = _Factory()
    backend = OpenAIGenerationBackend(client_factory=factory)
    request = _request(
        api_base="https://api.openai.com/v1/responses",
        model="gpt-5",
        reasoning=ReasoningConfig(ReasoningProvider.OPENAI, "high"),
    )

    await backend.stream_completion(request, lambda _: None, lambda _: None)

    call = factory.clients[0].calls[0]
    assert call["reasoning"] == {"effort": "high", "summary": "auto"}
    assert "reasoning_effort" not in call
    assert call["temperature"] is None


@pytest.mark.asyncio
async def test_final_text_without_deltas_is_forwarded() -> None:
    factory = _Factory([AIStreamEvent(type="content.done", content="Whole answer")])
    backend = OpenAIGenerationBackend(client_factory=factory)
    texts: list[str] = []

    answer = await backend.stream_completion(
        _request(api_base="https://host/v1/responses"), texts.append, lambda _: None
    )

    assert answer == "Whole answer"
    assert texts == ["Whole answer"]

"""Generation backend consumed by :class:`~paperchat.chat.session.ChatSession`."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from ..chat.constants import DEFAULT_MAX_TOKENS, DEFAULT_SYSTEM_PROMPT, DEFAULT_TEMPERATURE
from ..chat.message_model import ReasoningDelta
from ..chat.request_tracker import CancellationHandle
from ..errors import ConfigurationGap, GenerationCancelled
from .client import AIClient, ClientSettings
from .reasoning import ReasoningConfig, build_reasoning_params

LOGGER = logging.getLogger(__name__)

TextDeltaHandler = Callable[[str], None]
ReasoningDeltaHandler = Callable[[ReasoningDelta], None]
ClientFactory = Callable[[ClientSettings], AIClient]

_ENDPOINT_SUFFIXES = ("/chat/completions", "/responses", "/embeddings")
_VERSION_SEGMENT = re.compile(r"/v\d+(?:beta)?\b")


@dataclass(slots=True)
class GenerationRequest:
    """Everything needed to produce one assistant reply."""

    prompt: str
    model: str
    api_base: str
    api_key: str = ""
    context: str = ""
    history: Sequence[Mapping[str, str]] = ()
    images: Sequence[str] = ()
    reasoning: Optional[ReasoningConfig] = None
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    system_prompt: Optional[str] = None
    signal: Optional[CancellationHandle] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class GenerationBackend(Protocol):
    """Opaque streaming generation call.

    Implementations report text and reasoning increments through the two
    callbacks, honour ``request.signal``, and return the final answer. When
    the signal fires they raise :class:`~paperchat.errors.GenerationCancelled`.
    """

    async def stream_completion(
        self,
        request: GenerationRequest,
        on_text_delta: TextDeltaHandler,
        on_reasoning_delta: ReasoningDeltaHandler,
    ) -> str: ...


def normalize_api_base(api_base: str) -> str:
    """Turn a configured endpoint or base URL into an OpenAI client ``base_url``.

    The endpoint suffix is dropped; :func:`is_responses_base` tells which API
    a configured ``/responses`` endpoint should use.
    """

    cleaned = (api_base or "").strip().rstrip("/")
    if not cleaned:
        return ""
    for suffix in _ENDPOINT_SUFFIXES:
        if cleaned.endswith(suffix):
            return cleaned[: -len(suffix)]
    if not _VERSION_SEGMENT.search(cleaned):
        cleaned = f"{cleaned}/v1"
    return cleaned


def is_responses_base(api_base: str) -> bool:
    """Whether the configured endpoint points at the Responses API."""

    return (api_base or "").strip().rstrip("/").endswith("/responses")


def uses_max_completion_tokens(model: str, reasoning: ReasoningConfig | None = None) -> bool:
    name = (model or "").lower()
    if reasoning is not None:
        return True
    return name.startswith("gpt-5") or bool(re.match(r"o\d", name)) or "reasoning" in name


def build_messages(request: GenerationRequest, system_prompt: str) -> List[Dict[str, Any]]:
    """Lay out system prompt, document context, history and the user turn."""

    messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    if request.context:
        messages.append({"role": "system", "content": f"Document Context:\n{request.context}"})
    for entry in request.history:
        messages.append({"role": entry["role"], "content": entry["content"]})
    if request.images:
        parts: List[Dict[str, Any]] = [{"type": "text", "text": request.prompt}]
        for image in request.images:
            parts.append({"type": "image_url", "image_url": {"url": image, "detail": "high"}})
        messages.append({"role": "user", "content": parts})
    else:
        messages.append({"role": "user", "content": request.prompt})
    return messages


def build_responses_input(messages: Sequence[Mapping[str, Any]]) -> tuple[str, List[Dict[str, Any]]]:
    """Split chat messages into Responses ``instructions`` and ``input`` items."""

    instructions: List[str] = []
    items: List[Dict[str, Any]] = []
    for message in messages:
        content = message["content"]
        if message["role"] == "system":
            if content:
                instructions.append(str(content))
            continue
        if isinstance(content, str):
            items.append({"type": "message", "role": message["role"], "content": content})
            continue
        parts: List[Dict[str, Any]] = []
        for part in content:
            if part["type"] == "text":
                parts.append({"type": "input_text", "text": part["text"]})
            else:
                image = part["image_url"]
                parts.append({"type": "input_image", "image_url": image["url"], "detail": image.get("detail", "auto")})
        items.append({"type": "message", "role": message["role"], "content": parts})
    return "\n\n".join(instructions), items


class OpenAIGenerationBackend:
    """:class:`GenerationBackend` over OpenAI-compatible Chat Completions or Responses."""

    def __init__(
        self,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        request_timeout: float | None = 90.0,
        max_retries: int = 3,
        debug_logging: bool = False,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._system_prompt = system_prompt
        self._request_timeout = request_timeout
        self._max_retries = max_retries
        self._debug_logging = debug_logging
        self._client_factory = client_factory or AIClient
        self._clients: dict[tuple[str, str, str], AIClient] = {}

    def client_for(self, request: GenerationRequest) -> AIClient:
        base_url = normalize_api_base(request.api_base)
        if not base_url:
            raise ConfigurationGap("API URL is missing in preferences")
        if not request.model:
            raise ConfigurationGap("No model configured")
        key = (base_url, request.api_key, request.model)
        client = self._clients.get(key)
        if client is None:
            client = self._client_factory(
                ClientSettings(
                    base_url=base_url,
                    api_key=request.api_key,
                    model=request.model,
                    request_timeout=self._request_timeout,
                    max_retries=self._max_retries,
                    debug_logging=self._debug_logging,
                )
            )
            self._clients[key] = client
        return client

    async def stream_completion(
        self,
        request: GenerationRequest,
        on_text_delta: TextDeltaHandler,
        on_reasoning_delta: ReasoningDeltaHandler,
    ) -> str:
        client = self.client_for(request)
        signal = request.signal
        if signal is not None and signal.cancelled:
            raise GenerationCancelled()

        consume = asyncio.ensure_future(self._consume(client, request, on_text_delta, on_reasoning_delta))
        if signal is None:
            return await consume

        watcher = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait({consume, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            consume.cancel()
            raise
        finally:
            watcher.cancel()
        if consume in done:
            return consume.result()
        consume.cancel()
        try:
            await consume
        except asyncio.CancelledError:
            pass
        except Exception:
            LOGGER.debug("Stream raised while being cancelled", exc_info=True)
        raise GenerationCancelled()

    async def _consume(
        self,
        client: AIClient,
        request: GenerationRequest,
        on_text_delta: TextDeltaHandler,
        on_reasoning_delta: ReasoningDeltaHandler,
    ) -> str:
        messages = build_messages(request, request.system_prompt or self._system_prompt)
        params: Dict[str, Any] = dict(build_reasoning_params(request.reasoning, request.model))
        # Reasoning models reject a custom temperature.
        temperature = None if request.reasoning is not None else request.temperature
        if is_responses_base(request.api_base):
            effort = params.pop("reasoning_effort", None)
            if effort is not None:
                params["reasoning"] = {"effort": effort, "summary": "auto"}
            instructions, items = build_responses_input(messages)
            events = client.stream_responses(
                items,
                instructions=instructions or None,
                temperature=temperature,
                max_output_tokens=request.max_tokens,
                **params,
            )
        else:
            if uses_max_completion_tokens(request.model, request.reasoning):
                params["max_completion_tokens"] = request.max_tokens
            else:
                params["max_tokens"] = request.max_tokens
            events = client.stream_chat(messages, temperature=temperature, **params)

        accumulated: list[str] = []
        final: str | None = None
        async for event in events:
            if event.type == "content.delta" and event.content:
                accumulated.append(event.content)
                on_text_delta(event.content)
            elif event.type == "reasoning.delta":
                on_reasoning_delta(ReasoningDelta(summary=event.summary, details=event.details))
            elif event.type == "content.done" and event.content:
                final = event.content
        if final and not accumulated:
            on_text_delta(final)
        return final if final else "".join(accumulated)

    async def aclose(self) -> None:
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            try:
                await client.aclose()
            except Exception:
                LOGGER.debug("Failed to close AI client", exc_info=True)


__all__ = [
    "GenerationRequest",
    "GenerationBackend",
    "OpenAIGenerationBackend",
    "TextDeltaHandler",
    "ReasoningDeltaHandler",
    "build_messages",
    "build_responses_input",
    "is_responses_base",
    "normalize_api_base",
    "uses_max_completion_tokens",
]

"""Async streaming client for OpenAI-compatible chat endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Mapping, MutableMapping, Sequence, cast

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..services.preferences import redact_secret

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    RateLimitError,
    APIStatusError,
    APIError,
    httpx.TimeoutException,
)
# Fields OpenAI-compatible providers use for streamed reasoning text.
_REASONING_DETAIL_FIELDS: tuple[str, ...] = ("reasoning_content", "reasoning")
_REASONING_SUMMARY_FIELDS: tuple[str, ...] = ("reasoning_summary",)


@dataclass(slots=True)
class ClientSettings:
    """Connection settings for one endpoint/model pair."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming deltas."""

    type: str
    content: str | None = None
    summary: str | None = None
    details: str | None = None


class AIClient:
    """Async client providing streaming helpers with retry semantics."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        temperature: float | None = None,
        max_completion_tokens: int | None = None,
        max_tokens: int | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream chat completions for the provided messages.

        Failed attempts are retried only while nothing has been yielded yet;
        replaying a partially delivered answer would duplicate text.
        """

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            temperature=temperature,
            max_completion_tokens=max_completion_tokens,
            max_tokens=max_tokens,
            extra_params=extra_params,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        async for normalized in self._stream_with_retry(
            lambda: self._client.chat.completions.stream(**payload),
            self._normalize_stream_event,
        ):
            yield normalized

    async def stream_responses(
        self,
        input_items: Sequence[Mapping[str, Any]],
        *,
        instructions: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream a reply through the Responses API.

        Events are mapped onto the same :class:`AIStreamEvent` types as
        :meth:`stream_chat`, with the same retry rule.
        """

        items = [dict(item) for item in input_items]
        if not items:
            raise ValueError("At least one input item is required to start a response")
        payload: Dict[str, Any] = {"model": self._settings.model, "input": items}
        if instructions:
            payload["instructions"] = instructions
        if temperature is not None:
            payload["temperature"] = temperature
        if max_output_tokens is not None:
            payload["max_output_tokens"] = max_output_tokens
        if extra_params:
            payload.update(extra_params)
        LOGGER.debug(
            "Starting streamed response via %s with %s input item(s)",
            self._settings.model,
            len(items),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        async for normalized in self._stream_with_retry(
            lambda: self._client.responses.stream(**payload),
            self._normalize_response_event,
        ):
            yield normalized

    async def _stream_with_retry(
        self,
        open_stream: Callable[[], Any],
        normalize: Callable[[Any], list[AIStreamEvent]],
    ) -> AsyncIterator[AIStreamEvent]:
        emitted = False
        async for attempt in self._retrying(lambda: not emitted):
            with attempt:
                async with open_stream() as stream:
                    async for event in stream:
                        for normalized in normalize(event):
                            emitted = True
                            yield normalized
                break

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key or "not-needed",
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self, may_retry: Any) -> AsyncRetrying:
        def _should_retry(exc: BaseException) -> bool:
            if not isinstance(exc, _RETRYABLE_ERRORS) or not may_retry():
                return False
            if isinstance(exc, APIStatusError):
                return exc.status_code == 429 or exc.status_code >= 500
            return True

        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(_should_retry),
        )

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        temperature: float | None,
        max_completion_tokens: int | None,
        max_tokens: int | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_completion_tokens is not None:
            payload["max_completion_tokens"] = max_completion_tokens
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if extra_params:
            payload.update(extra_params)
        return payload

    def _normalize_stream_event(self, event: ChatCompletionStreamEvent[Any]) -> list[AIStreamEvent]:
        event_type = getattr(event, "type", None)
        if event_type is None:
            return []

        if event_type == "chunk":
            reasoning = self._extract_reasoning(getattr(event, "chunk", None))
            return [reasoning] if reasoning is not None else []
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return [AIStreamEvent(type=event_type, content=str(delta_text))]
            return []
        if event_type == "content.done":
            return [AIStreamEvent(type=event_type, content=getattr(event, "content", None))]
        if event_type == "refusal.delta":
            return [AIStreamEvent(type=event_type, content=getattr(event, "delta", None))]
        return []

    def _normalize_response_event(self, event: Any) -> list[AIStreamEvent]:
        event_type = getattr(event, "type", None)
        if event_type == "response.output_text.delta":
            delta_text = getattr(event, "delta", None)
            return [AIStreamEvent(type="content.delta", content=str(delta_text))] if delta_text else []
        if event_type == "response.output_text.done":
            return [AIStreamEvent(type="content.done", content=getattr(event, "text", None))]
        if event_type == "response.completed":
            text = getattr(getattr(event, "response", None), "output_text", None)
            return [AIStreamEvent(type="content.done", content=text)] if text else []
        if event_type == "response.reasoning_summary_text.delta":
            delta_text = getattr(event, "delta", None)
            return [AIStreamEvent(type="reasoning.delta", summary=delta_text)] if delta_text else []
        if event_type == "response.reasoning_text.delta":
            delta_text = getattr(event, "delta", None)
            return [AIStreamEvent(type="reasoning.delta", details=delta_text)] if delta_text else []
        if event_type == "response.refusal.delta":
            return [AIStreamEvent(type="refusal.delta", content=getattr(event, "delta", None))]
        return []

    def _extract_reasoning(self, chunk: Any) -> AIStreamEvent | None:
        choices = getattr(chunk, "choices", None) or ()
        if not choices:
            return None
        delta = getattr(choices[0], "delta", None)
        if delta is None:
            return None
        details = _first_text(delta, _REASONING_DETAIL_FIELDS)
        summary = _first_text(delta, _REASONING_SUMMARY_FIELDS)
        if not details and not summary:
            return None
        return AIStreamEvent(type="reasoning.delta", summary=summary, details=details)

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        key = redact_secret(self._settings.api_key) or "<none>"
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload for %s (key %s, unserializable): %s", self._settings.base_url, key, payload)
        else:
            LOGGER.debug("AI prompt payload for %s (key %s):\n%s", self._settings.base_url, key, serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


def _first_text(delta: Any, names: Sequence[str]) -> str | None:
    extra = getattr(delta, "model_extra", None) or {}
    for name in names:
        value = getattr(delta, name, None)
        if value is None and isinstance(extra, Mapping):
            value = extra.get(name)
        if isinstance(value, str) and value:
            return value
    return None


__all__ = ["AIClient", "AIStreamEvent", "ClientSettings"]

"""Streaming chat session engine.

:class:`ChatSession` owns the conversation cache, the request tracker and the
event bus for one host. Each :meth:`ChatSession.send` runs
``Preparing -> Sending -> {Completed | Cancelled | Errored}``. Deltas are
applied to a streaming placeholder as they arrive. The outcome is decided
once, after the backend call settles, from a single
:class:`~paperchat.chat.request_tracker.CancellationToken`.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from functools import partial
from typing import Optional, Sequence

from ..ai.backend import GenerationBackend, GenerationRequest
from ..ai.context import ContextBuilder, Credentials, DocumentTextCache, ExcerptContextBuilder
from ..ai.reasoning import (
    ReasoningConfig,
    ReasoningOption,
    ReasoningProvider,
    ReasoningSelector,
    classify,
    reasoning_options,
)
from ..errors import ConfigurationGap, GenerationCancelled, is_cancellation_error
from ..services.message_store import InMemoryMessageStore, MessageStore
from ..services.profiles import AdvancedParams, ProfileRegistry
from ..services.settings import Settings
from .constants import CANCELLED_MARKER, ERROR_STATUS_LIMIT, ERROR_TEXT_LIMIT, NO_RESPONSE_MARKER
from .conversation_cache import ConversationCache
from .documents import ContextSource, DocumentRef, resolve_context_source
from .events import (
    ConversationUpdated,
    Event,
    EventBus,
    InputStateChanged,
    RequestFinished,
    RequestStarted,
    StatusChanged,
    StatusVariant,
)
from .message_model import ChatMessage, ReasoningDelta
from .notes import NoteSink, build_history_export
from .refresh import RefreshScheduler
from .request_tracker import CancellationHandle, CancellationToken, RequestTracker
from .text_utils import (
    build_question_with_selection,
    build_user_message_text,
    normalize_selected_text,
    sanitize_text,
    truncate,
)

LOGGER = logging.getLogger(__name__)


class SendOutcome(str, enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


class SendState(str, enum.Enum):
    PREPARING = "preparing"
    SENDING = "sending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass(slots=True)
class ModelConfig:
    """Explicit per-send overrides; ``None`` fields fall through to preferences."""

    model: Optional[str] = None
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    reasoning: Optional[ReasoningConfig] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass(frozen=True, slots=True)
class ResolvedModel:
    model: str
    api_base: str
    api_key: str
    reasoning: Optional[ReasoningConfig]
    temperature: float
    max_tokens: int
    profile_key: Optional[str] = None
    model_configured: bool = True

    def validate(self, *, require_model: bool) -> None:
        if require_model and not self.model_configured:
            raise ConfigurationGap("No model configured")
        if not self.api_base:
            raise ConfigurationGap("API URL is missing in preferences")


@dataclass(slots=True)
class SendResult:
    request_id: int
    conversation_key: int
    outcome: SendOutcome
    message: ChatMessage
    error: Optional[str] = None


@dataclass(slots=True)
class _SendContext:
    """Mutable bookkeeping for one in-flight send."""

    key: int
    token: CancellationToken
    state: SendState = SendState.PREPARING
    assistant: Optional[ChatMessage] = None
    handle: Optional[CancellationHandle] = None
    persisted: bool = False
    scheduler: Optional[RefreshScheduler] = None
    clear_generation: int = 0

    @property
    def request_id(self) -> int:
        return self.token.request_id


class ChatSession:
    """Per-document conversations with a streaming generation backend."""

    def __init__(
        self,
        *,
        backend: GenerationBackend,
        store: MessageStore | None = None,
        settings: Settings | None = None,
        profiles: ProfileRegistry | None = None,
        context_builder: ContextBuilder | None = None,
        document_cache: DocumentTextCache | None = None,
        reasoning: ReasoningSelector | None = None,
        events: EventBus | None = None,
        tracker: RequestTracker | None = None,
        cache: ConversationCache | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._backend = backend
        self._store = store or InMemoryMessageStore()
        self._cache = cache or ConversationCache(self._store, limit=self._settings.persisted_history_limit)
        self._tracker = tracker or RequestTracker()
        self._events = events or EventBus()
        self._profiles = profiles
        self._context_builder = context_builder or ExcerptContextBuilder()
        self._document_cache = document_cache or DocumentTextCache()
        self._reasoning = reasoning or ReasoningSelector()
        self._prepare_locks: dict[int, asyncio.Lock] = {}
        self._live_requests: set[int] = set()
        self._clear_generations: dict[int, int] = {}

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def cache(self) -> ConversationCache:
        return self._cache

    @property
    def tracker(self) -> RequestTracker:
        return self._tracker

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def reasoning(self) -> ReasoningSelector:
        return self._reasoning

    @property
    def document_cache(self) -> DocumentTextCache:
        return self._document_cache

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    async def ensure_conversation_loaded(self, document: DocumentRef | int) -> int:
        """Load the conversation for *document* once; return its key."""

        key = _conversation_key(document)
        await self._cache.ensure_loaded(key)
        return key

    def get_history(self, document: DocumentRef | int) -> list[ChatMessage]:
        return self._cache.get(_conversation_key(document))

    def clear(self, document: DocumentRef | int) -> asyncio.Task[None] | None:
        """Forget a conversation in memory and delete its durable log in the background.

        Replies still streaming for the conversation finish normally but are
        not written to the store.
        """

        key = _conversation_key(document)
        self._clear_generations[key] = self._clear_generations.get(key, 0) + 1
        task = self._cache.clear(key)
        self._publish(ConversationUpdated(key, streaming=False))
        return task

    def cancel(self, request_id: int | None = None) -> int:
        """Cancel *request_id* and everything older; default is the latest request.

        Status and input are only reset when a live request is covered.
        Returns the new watermark.
        """

        target = request_id if request_id is not None else self._tracker.current_request_id
        watermark = self._tracker.cancel_up_to(target)
        if not any(live <= target for live in self._live_requests):
            LOGGER.debug("Cancel through %s covers no live request", target)
            return watermark
        if self._tracker.signal_active(target):
            LOGGER.debug("Signalled active cancellation handle for request %s", target)
        self._publish(StatusChanged(None, "Cancelled", "ready"))
        self._publish(InputStateChanged(None, enabled=True, request_id=target))
        return watermark

    def classify(self, model_name: str | None) -> ReasoningProvider:
        return classify(model_name)

    def reasoning_options(self, model_name: str | None) -> list[ReasoningOption]:
        return reasoning_options(classify(model_name), model_name)

    def select_reasoning_level(
        self,
        item_id: int,
        provider: ReasoningProvider,
        available: Sequence[ReasoningOption | str],
    ) -> ReasoningConfig | None:
        return self._reasoning.select_level(item_id, provider, available)

    async def export_history(self, document: DocumentRef | int, sink: NoteSink) -> bool:
        """Send the finished messages of a conversation to *sink*.

        Returns ``False`` without calling the sink when nothing is exportable.
        """

        key = await self.ensure_conversation_loaded(document)
        export = build_history_export(self._cache.get(key))
        if export.empty:
            return False
        await sink.save_history(key, export)
        return True

    async def aclose(self) -> None:
        await self._cache.drain()
        close = getattr(self._backend, "aclose", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------
    async def send(
        self,
        document: DocumentRef | int,
        question: str,
        *,
        images: Sequence[str] | None = None,
        model_config: ModelConfig | None = None,
        display_question: str | None = None,
        selected_text: str | None = None,
        context_source: ContextSource | None = None,
    ) -> SendResult:
        """Ask *question* about *document* and stream the reply into its conversation.

        The request id is minted when the coroutine starts running. Hosts that
        schedule the send and may cancel before it runs should use
        :meth:`start_send`.
        """

        document = _as_ref(document)
        request_id = self._mint_request_id()
        return await self._run_send(
            request_id,
            document,
            question,
            images=images,
            model_config=model_config,
            display_question=display_question,
            selected_text=selected_text,
            context_source=context_source,
        )

    def start_send(
        self,
        document: DocumentRef | int,
        question: str,
        *,
        images: Sequence[str] | None = None,
        model_config: ModelConfig | None = None,
        display_question: str | None = None,
        selected_text: str | None = None,
        context_source: ContextSource | None = None,
    ) -> asyncio.Task[SendResult]:
        """Mint the request id now and run the send as a task on the running loop.

        A :meth:`cancel` issued right after this call covers the new request.
        """

        loop = asyncio.get_running_loop()
        document = _as_ref(document)
        request_id = self._mint_request_id()
        task = loop.create_task(
            self._run_send(
                request_id,
                document,
                question,
                images=images,
                model_config=model_config,
                display_question=display_question,
                selected_text=selected_text,
                context_source=context_source,
            ),
            name=f"paperchat-send-{request_id}",
        )
        task.add_done_callback(lambda _: self._live_requests.discard(request_id))
        return task

    async def _run_send(
        self,
        request_id: int,
        document: DocumentRef | int,
        question: str,
        *,
        images: Sequence[str] | None,
        model_config: ModelConfig | None,
        display_question: str | None,
        selected_text: str | None,
        context_source: ContextSource | None,
    ) -> SendResult:
        ref = _as_ref(document)
        key = ref.conversation_key
        ctx = _SendContext(key=key, token=CancellationToken(request_id, self._tracker))
        LOGGER.debug("Request %s started for conversation %s", request_id, key)
        self._publish(RequestStarted(key, request_id))
        if not ctx.token.is_cancelled:
            self._publish(InputStateChanged(key, enabled=False, request_id=request_id))
            self._status(key, "Preparing request...")
        image_list = [image for image in images or () if image]
        selection = normalize_selected_text(selected_text)

        try:
            async with self._prepare_lock(key):
                await self._cache.ensure_loaded(key)
                ctx.clear_generation = self._clear_generations.get(key, 0)
                history = self._history_window(key)
                resolved = self.resolve_model(ref.item_id, model_config)
                user_message = ChatMessage(
                    role="user",
                    text=build_user_message_text(display_question or question, len(image_list)),
                    selected_text=selection or None,
                )
                self._cache.append(key, user_message)
                await self._persist(key, user_message)
                ctx.assistant = ChatMessage(
                    role="assistant",
                    text="",
                    model_name=resolved.model,
                    streaming=True,
                )
                self._cache.append(key, ctx.assistant)
            self._publish(ConversationUpdated(key, streaming=True))

            ctx.state = SendState.SENDING
            ctx.handle = self._tracker.issue_handle(request_id)
            ctx.token.bind(ctx.handle)
            ctx.scheduler = RefreshScheduler(self._settings.refresh_interval)
            try:
                answer = await self._stream(ctx, ref, question, selection, image_list, history, resolved, context_source)
            except asyncio.CancelledError:
                await self._settle(ctx, cancelled=True)
                raise
            except Exception as exc:
                return await self._settle(ctx, failure=exc)
            return await self._settle(ctx, answer=answer)
        finally:
            self._live_requests.discard(request_id)
            if ctx.scheduler is not None:
                ctx.scheduler.cancel()
            if not ctx.token.is_cancelled and not ctx.token.superseded():
                self._publish(InputStateChanged(key, enabled=True, request_id=request_id))
            if ctx.handle is not None:
                self._tracker.release_handle(ctx.handle)

    def resolve_model(self, item_id: int, explicit: ModelConfig | None = None) -> ResolvedModel:
        """Resolve model settings: explicit value, item profile, global preference, default."""

        explicit = explicit or ModelConfig()
        profile = self._profiles.selected_for_item(item_id) if self._profiles is not None else None
        global_model = self._profiles.global_default_model() if self._profiles is not None else ""
        configured = (explicit.model or (profile.model if profile else "") or global_model or "").strip()
        model = configured or self._settings.default_model
        api_base = (explicit.api_base or (profile.api_base if profile else "") or "").strip()
        api_key = (explicit.api_key or (profile.api_key if profile else "") or "").strip()
        if explicit.reasoning is not None:
            reasoning = explicit.reasoning
        else:
            reasoning = self._reasoning.resolve_for_model(item_id, model)
        if self._profiles is not None:
            advanced = self._profiles.advanced_params(profile.key if profile else None)
        else:
            advanced = AdvancedParams()
        return ResolvedModel(
            model=model,
            api_base=api_base,
            api_key=api_key,
            reasoning=reasoning,
            temperature=explicit.temperature if explicit.temperature is not None else advanced.temperature,
            max_tokens=explicit.max_tokens if explicit.max_tokens is not None else advanced.max_tokens,
            profile_key=profile.key if profile else None,
            model_configured=bool(configured),
        )

    async def _stream(
        self,
        ctx: _SendContext,
        ref: DocumentRef,
        question: str,
        selection: str,
        images: list[str],
        history: list[dict[str, str]],
        resolved: ResolvedModel,
        context_source: ContextSource | None,
    ) -> str:
        resolved.validate(require_model=self._settings.require_model)
        context = await self._build_context(ctx.key, ref, question, bool(images), resolved, context_source)
        if ctx.token.is_cancelled:
            raise GenerationCancelled()
        assistant = ctx.assistant
        assert assistant is not None and ctx.scheduler is not None
        scheduler = ctx.scheduler
        render = partial(self._publish, ConversationUpdated(ctx.key, streaming=True))
        token = ctx.token

        def on_text_delta(delta: str) -> None:
            if not delta or token.is_cancelled:
                return
            assistant.text += delta
            scheduler.request(render)

        def on_reasoning_delta(delta: ReasoningDelta) -> None:
            if token.is_cancelled:
                return
            if assistant.apply_reasoning(delta):
                scheduler.request(render)

        request = GenerationRequest(
            prompt=build_question_with_selection(question, selection),
            model=resolved.model,
            api_base=resolved.api_base,
            api_key=resolved.api_key,
            context=context,
            history=history,
            images=images,
            reasoning=resolved.reasoning,
            temperature=resolved.temperature,
            max_tokens=resolved.max_tokens,
            system_prompt=self._settings.system_prompt,
            signal=ctx.handle,
        )
        return await self._backend.stream_completion(request, on_text_delta, on_reasoning_delta)

    async def _settle(
        self,
        ctx: _SendContext,
        *,
        answer: str | None = None,
        failure: BaseException | None = None,
        cancelled: bool = False,
    ) -> SendResult:
        """Decide the terminal state of a send and persist its reply once."""

        assistant = ctx.assistant
        assert assistant is not None
        if ctx.scheduler is not None:
            ctx.scheduler.cancel()
        error: str | None = None
        if cancelled or ctx.token.is_cancelled or (failure is not None and is_cancellation_error(failure)):
            ctx.state = SendState.CANCELLED
            assistant.text = CANCELLED_MARKER
            assistant.clear_reasoning()
            status, variant = "Cancelled", "ready"
        elif failure is None:
            ctx.state = SendState.COMPLETED
            assistant.text = sanitize_text(answer) or assistant.text or NO_RESPONSE_MARKER
            status, variant = "Ready", "ready"
        else:
            ctx.state = SendState.ERRORED
            error = str(failure) or type(failure).__name__
            LOGGER.warning("Request %s failed: %s", ctx.request_id, error, exc_info=failure)
            assistant.text = f"Error: {truncate(error, ERROR_TEXT_LIMIT)}"
            status, variant = f"Error: {error[:ERROR_STATUS_LIMIT]}", "error"
        assistant.streaming = False
        self._publish(ConversationUpdated(ctx.key, streaming=False))
        await self._persist_assistant_once(ctx)
        self._status(ctx.key, status, variant)  # type: ignore[arg-type]
        outcome = SendOutcome(ctx.state.value)
        LOGGER.debug("Request %s finished: %s", ctx.request_id, outcome.value)
        self._publish(RequestFinished(ctx.key, ctx.request_id, outcome.value, error))
        return SendResult(
            request_id=ctx.request_id,
            conversation_key=ctx.key,
            outcome=outcome,
            message=assistant,
            error=error,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _build_context(
        self,
        key: int,
        ref: DocumentRef,
        question: str,
        has_images: bool,
        resolved: ResolvedModel,
        context_source: ContextSource | None,
    ) -> str:
        source = context_source or resolve_context_source(ref)
        self._status(key, source.status)
        document = source.document
        if document is None:
            return ""
        await self._document_cache.ensure_cached(document)
        credentials = Credentials(api_base=resolved.api_base, api_key=resolved.api_key, model=resolved.model)
        return await self._context_builder.build_context(
            self._document_cache.get(document.item_id),
            question,
            has_images,
            credentials,
        )

    def _history_window(self, key: int) -> list[dict[str, str]]:
        limit = max(0, self._settings.max_history_messages)
        if limit == 0:
            return []
        finished = [message for message in self._cache.get(key) if not message.streaming]
        return [message.as_history_entry() for message in finished[-limit:]]

    def _prepare_lock(self, key: int) -> asyncio.Lock:
        lock = self._prepare_locks.get(key)
        if lock is None:
            lock = self._prepare_locks[key] = asyncio.Lock()
        return lock

    def _mint_request_id(self) -> int:
        request_id = self._tracker.next_request_id()
        self._live_requests.add(request_id)
        return request_id

    async def _persist_assistant_once(self, ctx: _SendContext) -> None:
        if ctx.persisted or ctx.assistant is None:
            return
        ctx.persisted = True
        if self._clear_generations.get(ctx.key, 0) != ctx.clear_generation:
            LOGGER.debug("Conversation %s was cleared during request %s; reply not stored", ctx.key, ctx.request_id)
            return
        await self._persist(ctx.key, ctx.assistant)

    async def _persist(self, key: int, message: ChatMessage) -> None:
        """Append then prune; failures are logged and swallowed."""

        try:
            await self._store.append(key, message.to_record())
            await self._store.prune(key, self._settings.persisted_history_limit)
        except Exception:
            LOGGER.warning("Failed to persist %s message for conversation %s", message.role, key, exc_info=True)

    def _status(self, key: int | None, text: str, variant: StatusVariant = "sending") -> None:
        self._publish(StatusChanged(key, text, variant))

    def _publish(self, event: Event) -> None:
        self._events.publish(event)


def _as_ref(document: DocumentRef | int) -> DocumentRef:
    if isinstance(document, DocumentRef):
        return document
    return DocumentRef(item_id=int(document))


def _conversation_key(document: DocumentRef | int) -> int:
    return _as_ref(document).conversation_key


__all__ = [
    "ChatSession",
    "ModelConfig",
    "ResolvedModel",
    "SendOutcome",
    "SendResult",
    "SendState",
]

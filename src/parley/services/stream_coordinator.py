from __future__ import annotations

"""Turn orchestration: resolve, persist the user turn, generate, persist the reply.

Blocking turns return a ``ChatResponse``. Streaming turns return a
``TurnStream``: a pull-based iterator that advances the provider by at most one
delta per ``next()`` call and ends with exactly one terminal event, unless the
caller cancels first.
"""

import logging
import uuid
from datetime import datetime
from enum import Enum
from threading import Event
from typing import Callable, Iterator, List, Optional

from ..domain.chat_models import (
    AssistantMessage,
    AssistantTurn,
    ChatContext,
    ChatResponse,
    ChunkEvent,
    CompleteEvent,
    ConversationPage,
    ConversationSummary,
    ErrorEvent,
    Pagination,
    StreamChunkData,
    StreamCompleteData,
    StreamErrorData,
    StreamEvent,
    UserTurn,
)
from ..domain.errors import AccessDenied, ChatError, InternalError, NotFound, ServiceUnavailable
from ..infrastructure.conversation_store import ConversationStore, new_id
from ..observability.metrics import CHAT_TURNS, STREAM_CHUNKS
from .completion_provider import CompletionProvider
from .context_builder import ContextBuilder, utc_now
from .error_classifier import classify, sanitize


logger = logging.getLogger(__name__)
LOG = logging.getLogger("parley.stream")


class StreamState(str, Enum):
    INIT = "init"
    CONTEXT_BUILT = "context_built"
    USER_PERSISTED = "user_persisted"
    GENERATING = "generating"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({StreamState.COMPLETE, StreamState.ERROR, StreamState.CANCELLED})


def event_id() -> str:
    return f"evt-{uuid.uuid4().hex}"


class TurnStream:
    """Lazy event sequence for one streamed turn."""

    def __init__(
        self,
        store: ConversationStore,
        provider: CompletionProvider,
        context: ChatContext,
        *,
        cancel: Optional[Event] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._provider = provider
        self._context = context
        self._cancel = cancel if cancel is not None else Event()
        self._clock = clock
        self.state = StreamState.USER_PERSISTED
        self.assistant_message_id: Optional[str] = None
        self._events = self._run()

    @property
    def conversation_id(self) -> str:
        return self._context.conversation_id

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def __iter__(self) -> "TurnStream":
        return self

    def __next__(self) -> StreamEvent:
        return next(self._events)

    def cancel(self) -> None:
        self._cancel.set()

    def close(self) -> None:
        """Stop the stream; an unfinished turn counts as cancelled."""
        self._cancel.set()
        try:
            self._events.close()
        except ValueError:
            # mid-pull on a worker thread; the cancel flag stops it after that pull
            LOG.debug("stream_close_deferred", extra={"conversation_id": self.conversation_id})
            return
        if not self.finished:
            # never started, so the generator's own cleanup did not run
            self._transition(StreamState.CANCELLED)

    def _transition(self, state: StreamState) -> None:
        LOG.debug(
            "stream_state",
            extra={"conversation_id": self.conversation_id, "from": self.state.value, "to": state.value},
        )
        self.state = state
        if state in TERMINAL_STATES:
            CHAT_TURNS.labels(mode="stream", outcome=state.value).inc()

    def _cancelled(self) -> bool:
        if not self._cancel.is_set():
            return False
        LOG.info("stream_cancelled", extra={"conversation_id": self.conversation_id})
        self._transition(StreamState.CANCELLED)
        return True

    def _failed(self, exc: BaseException) -> ErrorEvent:
        logger.warning(
            "stream_failed",
            extra={"conversation_id": self.conversation_id, "err_type": exc.__class__.__name__},
        )
        self._transition(StreamState.ERROR)
        return ErrorEvent(id=event_id(), data=StreamErrorData(message=sanitize(exc)))

    def _run(self) -> Iterator[StreamEvent]:
        upstream: Optional[Iterator[str]] = None
        try:
            if self._cancelled():
                return
            self._transition(StreamState.GENERATING)

            parts: List[str] = []
            try:
                upstream = iter(self._provider.stream(self._context.prompt_messages))
            except Exception as exc:
                yield self._failed(exc)
                return

            while True:
                if self._cancelled():
                    return
                try:
                    delta = next(upstream)
                except StopIteration:
                    break
                except Exception as exc:
                    yield self._failed(exc)
                    return
                if not delta:
                    continue
                # the pull may have blocked; re-check before delivering
                if self._cancelled():
                    return
                parts.append(delta)
                STREAM_CHUNKS.inc()
                yield ChunkEvent(id=event_id(), data=StreamChunkData(content=delta))

            if self._cancelled():
                return

            message_id = new_id()
            try:
                self._store.persist_assistant_turn(
                    AssistantTurn(
                        conversation_id=self.conversation_id,
                        assistant_message_id=message_id,
                        content="".join(parts),
                        timestamp=self._clock(),
                    )
                )
            except Exception as exc:
                logger.error(
                    "assistant_persist_failed",
                    extra={"conversation_id": self.conversation_id, "err_type": exc.__class__.__name__},
                )
                yield self._failed(InternalError("Failed to save assistant reply"))
                return

            self.assistant_message_id = message_id
            self._transition(StreamState.COMPLETE)
            yield CompleteEvent(
                id=event_id(),
                data=StreamCompleteData(conversation_id=self.conversation_id, message_id=message_id),
            )
        finally:
            if upstream is not None:
                close = getattr(upstream, "close", None)
                if close is not None:
                    close()
            if not self.finished:
                # closed by the consumer mid-stream
                LOG.info("stream_closed_by_consumer", extra={"conversation_id": self.conversation_id})
                self._transition(StreamState.CANCELLED)


class StreamCoordinator:
    def __init__(
        self,
        store: ConversationStore,
        provider: Optional[CompletionProvider],
        *,
        context_builder: Optional[ContextBuilder] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._provider = provider
        self._clock = clock
        self._context_builder = context_builder or ContextBuilder(store, clock=clock)

    @property
    def provider_available(self) -> bool:
        return self._provider is not None

    def _require_provider(self) -> CompletionProvider:
        if self._provider is None:
            raise ServiceUnavailable("Completion service not configured", retry_after=0)
        return self._provider

    def _prepare_turn(self, owner_account_id: str, message: str, conversation_id: Optional[str]) -> ChatContext:
        """Resolve, build the prompt and durably record the user's message."""
        try:
            context = self._context_builder.build_context(owner_account_id, message, conversation_id)
            LOG.debug("turn_context_built", extra={"conversation_id": context.conversation_id, "is_new": context.is_new})
            self._store.persist_user_turn(
                UserTurn(
                    owner_account_id=owner_account_id,
                    conversation_id=context.conversation_id,
                    is_new=context.is_new,
                    content=message,
                    timestamp=context.timestamp,
                )
            )
        except ChatError:
            raise
        except Exception as exc:
            raise classify(exc) from exc
        LOG.debug("turn_user_persisted", extra={"conversation_id": context.conversation_id})
        return context

    def send_message(
        self,
        owner_account_id: str,
        message: str,
        conversation_id: Optional[str] = None,
    ) -> ChatResponse:
        provider = self._require_provider()
        logger.info("chat_turn_start", extra={"mode": "blocking", "preview": message[:50]})
        context = self._prepare_turn(owner_account_id, message, conversation_id)

        try:
            content = provider.complete(context.prompt_messages)
        except Exception as exc:
            CHAT_TURNS.labels(mode="blocking", outcome="error").inc()
            logger.warning(
                "chat_turn_provider_failed",
                extra={"conversation_id": context.conversation_id, "err_type": exc.__class__.__name__},
            )
            # The user's message stays recorded even though the reply failed.
            raise classify(exc) from exc

        assistant_id = new_id()
        created_at = self._clock()
        try:
            self._store.persist_assistant_turn(
                AssistantTurn(
                    conversation_id=context.conversation_id,
                    assistant_message_id=assistant_id,
                    content=content,
                    timestamp=created_at,
                )
            )
        except Exception as exc:
            CHAT_TURNS.labels(mode="blocking", outcome="error").inc()
            logger.error("assistant_persist_failed", extra={"conversation_id": context.conversation_id})
            raise InternalError("Failed to save assistant reply") from exc

        CHAT_TURNS.labels(mode="blocking", outcome="complete").inc()
        return ChatResponse(
            conversation_id=context.conversation_id,
            message=AssistantMessage(id=assistant_id, content=content, created_at=created_at),
        )

    def stream_message(
        self,
        owner_account_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        cancel: Optional[Event] = None,
    ) -> TurnStream:
        provider = self._require_provider()
        logger.info("chat_turn_start", extra={"mode": "stream", "preview": message[:50]})
        context = self._prepare_turn(owner_account_id, message, conversation_id)
        return TurnStream(self._store, provider, context, cancel=cancel, clock=self._clock)

    def list_conversations(self, owner_account_id: str, limit: int = 50) -> List[ConversationSummary]:
        return self._store.list_conversations(owner_account_id, limit=limit)

    def get_conversation(
        self,
        owner_account_id: str,
        conversation_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> ConversationPage:
        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if conversation.owner_account_id != owner_account_id:
            raise AccessDenied()
        messages, has_more = self._store.list_messages(conversation_id, limit=limit, offset=offset)
        return ConversationPage(
            conversation=conversation,
            messages=messages,
            pagination=Pagination(limit=limit, offset=offset, has_more=has_more),
        )

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from threading import RLock
from typing import Dict, List, Optional, Protocol, Tuple
import logging
import os
import uuid

from ..config import TITLE_MAX_CHARS
from ..domain.chat_models import AssistantTurn, Conversation, ConversationSummary, Message, UserTurn
from ..domain.errors import AccessDenied, NotFound


logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    def list_recent_messages(self, conversation_id: str, limit: int) -> List[Message]: ...

    def list_messages(self, conversation_id: str, limit: int = 100, offset: int = 0) -> Tuple[List[Message], bool]: ...

    def count_messages(self, conversation_id: str) -> int: ...

    def list_conversations(self, owner_account_id: str, limit: int = 50) -> List[ConversationSummary]: ...

    def persist_user_turn(self, turn: UserTurn) -> str: ...

    def persist_assistant_turn(self, turn: AssistantTurn) -> None: ...

    def delete_conversation(self, conversation_id: str) -> bool: ...


def new_id() -> str:
    return uuid.uuid4().hex


def make_title(content: str) -> str:
    return content[:TITLE_MAX_CHARS]


@dataclass
class _Conversation:
    id: str
    owner_account_id: str
    title: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class _Message:
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime


class InMemoryConversationStore:
    """Lock-protected store; each turn is staged first and applied in one critical section."""

    def __init__(self) -> None:
        self._conversations: Dict[str, _Conversation] = {}
        self._messages: Dict[str, List[_Message]] = {}
        self._lock = RLock()

    def _conversation_model(self, conv: _Conversation) -> Conversation:
        return Conversation(**conv.__dict__)

    def _message_model(self, message: _Message) -> Message:
        return Message(**message.__dict__)

    def _ordered(self, conversation_id: str) -> List[_Message]:
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(self._messages.get(conversation_id, []), key=lambda m: m.created_at)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conv = self._conversations.get(conversation_id)
            if not conv:
                return None
            return self._conversation_model(conv)

    def list_recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        with self._lock:
            recent = self._ordered(conversation_id)[-limit:]
            return [self._message_model(m) for m in recent]

    def list_messages(self, conversation_id: str, limit: int = 100, offset: int = 0) -> Tuple[List[Message], bool]:
        with self._lock:
            newest_first = list(reversed(self._ordered(conversation_id)))
            window = newest_first[offset : offset + limit + 1]
            has_more = len(window) > limit
            page = list(reversed(window[:limit]))
            return [self._message_model(m) for m in page], has_more

    def count_messages(self, conversation_id: str) -> int:
        with self._lock:
            return len(self._messages.get(conversation_id, []))

    def list_conversations(self, owner_account_id: str, limit: int = 50) -> List[ConversationSummary]:
        with self._lock:
            owned = [c for c in self._conversations.values() if c.owner_account_id == owner_account_id]
            owned.sort(key=lambda c: c.updated_at, reverse=True)
            out: List[ConversationSummary] = []
            for conv in owned[: max(0, limit)]:
                msgs = self._messages.get(conv.id, [])
                out.append(
                    ConversationSummary(
                        id=conv.id,
                        title=conv.title,
                        message_count=len(msgs),
                        last_message_at=max((m.created_at for m in msgs), default=None),
                    )
                )
            return out

    def persist_user_turn(self, turn: UserTurn) -> str:
        message_id = new_id()
        message = _Message(
            message_id,
            turn.conversation_id,
            "user",
            turn.content,
            turn.timestamp,
        )
        with self._lock:
            existing = self._conversations.get(turn.conversation_id)
            if existing is not None and existing.owner_account_id != turn.owner_account_id:
                raise AccessDenied()
            if existing is None:
                conv = _Conversation(
                    id=turn.conversation_id,
                    owner_account_id=turn.owner_account_id,
                    title=make_title(turn.content),
                    created_at=turn.timestamp,
                    updated_at=turn.timestamp,
                )
            else:
                conv = replace(existing, updated_at=max(existing.updated_at, turn.timestamp))
            # Both writes are applied together; nothing above can fail halfway.
            self._conversations[conv.id] = conv
            self._messages.setdefault(conv.id, []).append(message)
        return message_id

    def persist_assistant_turn(self, turn: AssistantTurn) -> None:
        message = _Message(
            turn.assistant_message_id,
            turn.conversation_id,
            "assistant",
            turn.content,
            turn.timestamp,
        )
        with self._lock:
            existing = self._conversations.get(turn.conversation_id)
            if existing is None:
                raise NotFound("Conversation not found")
            conv = replace(existing, updated_at=max(existing.updated_at, turn.timestamp))
            self._conversations[conv.id] = conv
            self._messages.setdefault(conv.id, []).append(message)

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            removed = self._conversations.pop(conversation_id, None)
            self._messages.pop(conversation_id, None)
            return removed is not None


def build_conversation_store(impl: Optional[str] = None, database_url: Optional[str] = None) -> ConversationStore:
    impl = (impl or os.getenv("PARLEY_STORE_IMPL") or "memory").lower()
    if impl == "sql":
        from .conversation_store_sql import SqlConversationStore

        url = database_url or os.getenv("PARLEY_DATABASE_URL") or "sqlite:///parley.sqlite3"
        logger.info("Using SQL conversation store url=%s", url.split("@")[-1])
        return SqlConversationStore.from_url(url)
    if impl != "memory":
        raise ValueError(f"Unsupported conversation store: {impl}")
    return InMemoryConversationStore()

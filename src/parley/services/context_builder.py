from __future__ import annotations

from datetime import UTC, datetime
from typing import Callable, Dict, List, Optional

from ..config import DEFAULT_HISTORY_LIMIT, DEFAULT_SYSTEM_PROMPT
from ..domain.chat_models import ChatContext
from ..infrastructure.conversation_store import ConversationStore
from .conversation_resolver import ConversationResolver


def utc_now() -> datetime:
    return datetime.now(UTC)


class ContextBuilder:
    """Assemble the prompt for one turn: system instruction, recent history, new message."""

    def __init__(
        self,
        store: ConversationStore,
        resolver: Optional[ConversationResolver] = None,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._resolver = resolver or ConversationResolver(store)
        self._system_prompt = system_prompt
        self._history_limit = history_limit
        self._clock = clock

    def build_context(
        self,
        owner_account_id: str,
        user_message: str,
        conversation_id: Optional[str] = None,
    ) -> ChatContext:
        resolved = self._resolver.resolve(owner_account_id, conversation_id)
        timestamp = self._clock()

        history = self._store.list_recent_messages(resolved.conversation_id, self._history_limit)

        prompt: List[Dict[str, str]] = [{"role": "system", "content": self._system_prompt}]
        for msg in history:
            if msg.conversation_id != resolved.conversation_id:
                continue
            prompt.append({"role": msg.role, "content": msg.content})
        prompt.append({"role": "user", "content": user_message})

        return ChatContext(
            conversation_id=resolved.conversation_id,
            is_new=resolved.is_new,
            timestamp=timestamp,
            prompt_messages=prompt,
        )

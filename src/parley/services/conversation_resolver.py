from __future__ import annotations

import logging
from typing import Optional

from ..domain.chat_models import ResolvedConversation
from ..domain.errors import AccessDenied
from ..infrastructure.conversation_store import ConversationStore, new_id


logger = logging.getLogger(__name__)


class ConversationResolver:
    def __init__(self, store: ConversationStore) -> None:
        self._store = store

    def resolve(self, owner_account_id: str, conversation_id: Optional[str] = None) -> ResolvedConversation:
        """Map an optional id to a conversation owned by ``owner_account_id``.

        An unknown id is adopted as a new conversation. A known id owned by
        another account raises ``AccessDenied``; nothing about it is returned.
        """
        conv_id = conversation_id or new_id()
        conversation = self._store.get_conversation(conv_id) if conversation_id else None

        if conversation is not None and conversation.owner_account_id != owner_account_id:
            logger.warning("conversation_access_denied", extra={"conversation_id": conv_id})
            raise AccessDenied()

        return ResolvedConversation(conversation_id=conv_id, is_new=conversation is None)

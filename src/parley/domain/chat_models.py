from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from ..config import CONVERSATION_ID_MAX_CHARS, MAX_MESSAGE_CHARS


Role = Literal["system", "user", "assistant"]


class Conversation(BaseModel):
    id: str
    owner_account_id: str
    title: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Message(BaseModel):
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: datetime


class ConversationSummary(BaseModel):
    id: str
    title: Optional[str] = None
    message_count: int = 0
    last_message_at: Optional[datetime] = None


class Pagination(BaseModel):
    limit: int
    offset: int
    has_more: bool


class ConversationPage(BaseModel):
    conversation: Conversation
    messages: List[Message]
    pagination: Pagination


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=MAX_MESSAGE_CHARS)
    conversation_id: Optional[str] = Field(default=None, max_length=CONVERSATION_ID_MAX_CHARS)


class AssistantMessage(BaseModel):
    id: str
    role: Literal["assistant"] = "assistant"
    content: str
    created_at: datetime


class ChatResponse(BaseModel):
    conversation_id: str
    message: AssistantMessage


class ResolvedConversation(BaseModel):
    conversation_id: str
    is_new: bool


class ChatContext(BaseModel):
    conversation_id: str
    is_new: bool
    timestamp: datetime
    prompt_messages: List[Dict[str, str]]


class UserTurn(BaseModel):
    owner_account_id: str
    conversation_id: str
    is_new: bool
    content: str
    timestamp: datetime


class AssistantTurn(BaseModel):
    conversation_id: str
    assistant_message_id: str
    content: str
    timestamp: datetime


class StreamChunkData(BaseModel):
    content: str


class StreamCompleteData(BaseModel):
    conversation_id: str
    message_id: str


class StreamErrorData(BaseModel):
    message: str


class ChunkEvent(BaseModel):
    type: Literal["chunk"] = "chunk"
    id: str
    data: StreamChunkData


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    id: str
    data: StreamCompleteData


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    id: str
    data: StreamErrorData


StreamEvent = Union[ChunkEvent, CompleteEvent, ErrorEvent]

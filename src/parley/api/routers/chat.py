from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Dict, List

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import StreamingResponse
from starlette.concurrency import iterate_in_threadpool

from ...domain.chat_models import (
    ChatRequest,
    ChatResponse,
    ConversationPage,
    ConversationSummary,
    StreamEvent,
)
from ...security.identity import get_account_id
from ...services.stream_coordinator import StreamCoordinator, TurnStream
from ..deps import get_coordinator, rate_limit


logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def format_sse(event: StreamEvent) -> str:
    data = json.dumps(event.data.model_dump(mode="json"))
    return f"event: {event.type}\nid: {event.id}\ndata: {data}\n\n"


async def _event_source(request: Request, stream: TurnStream) -> AsyncIterator[str]:
    try:
        async for event in iterate_in_threadpool(stream):
            if await request.is_disconnected():
                logger.info("client_disconnected", extra={"conversation_id": stream.conversation_id})
                stream.cancel()
                break
            yield format_sse(event)
    finally:
        stream.close()


@router.post("/chat", response_model=ChatResponse)
def chat(
    req: ChatRequest,
    account_id: str = Depends(rate_limit("chat")),
    coordinator: StreamCoordinator = Depends(get_coordinator),
) -> ChatResponse:
    return coordinator.send_message(account_id, req.message, req.conversation_id)


@router.post("/chat/stream")
def chat_stream(
    req: ChatRequest,
    request: Request,
    response: Response,
    account_id: str = Depends(rate_limit("chat")),
    coordinator: StreamCoordinator = Depends(get_coordinator),
) -> StreamingResponse:
    stream = coordinator.stream_message(account_id, req.message, req.conversation_id)
    headers: Dict[str, str] = {k: v for k, v in response.headers.items() if k.lower().startswith("x-ratelimit")}
    headers["Cache-Control"] = "no-cache"
    headers["X-Conversation-Id"] = stream.conversation_id
    return StreamingResponse(_event_source(request, stream), media_type="text/event-stream", headers=headers)


@router.get("/conversations", response_model=List[ConversationSummary])
def list_conversations(
    account_id: str = Depends(get_account_id),
    coordinator: StreamCoordinator = Depends(get_coordinator),
) -> List[ConversationSummary]:
    return coordinator.list_conversations(account_id)


@router.get("/conversations/{conversation_id}", response_model=ConversationPage)
def get_conversation(
    conversation_id: str,
    limit: int = Query(100, ge=1, le=200),
    offset: int = Query(0, ge=0),
    account_id: str = Depends(get_account_id),
    coordinator: StreamCoordinator = Depends(get_coordinator),
) -> ConversationPage:
    return coordinator.get_conversation(account_id, conversation_id, limit=limit, offset=offset)

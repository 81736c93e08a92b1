from __future__ import annotations

from contextlib import aclosing
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from ...security.auth import User, get_current_user
from ...security.rate_limit import limit_message_sends
from ...domain.chat_models import (
    ChatCreate,
    ChatCreated,
    ChatDeleted,
    ChatHistory,
    ChatList,
    ChatRename,
    ChatRenamed,
    DoneEvent,
    FragmentEvent,
    MessageCreate,
    UsageSummary,
)
from ...infrastructure.chat_store import get_chat_store
from ...infrastructure.usage_ledger import get_usage_ledger
from ...services.chat_stream import get_chat_orchestrator
from ...services.streaming import sse_event, sse_json


MAX_PAGE_SIZE = 100

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _page(limit: int, offset: int, default: int) -> tuple[int, int]:
    size = min(limit, MAX_PAGE_SIZE) if limit > 0 else default
    return size, max(offset, 0)


router = APIRouter(prefix="/chat", tags=["chat"])


@router.get("", response_model=ChatList)
def list_chats(
    limit: int = Query(20),
    offset: int = Query(0),
    user: User = Depends(get_current_user),
) -> ChatList:
    size, start = _page(limit, offset, 20)
    chats, active = get_chat_store().list_active_chats(user.user_id, limit=size, offset=start)
    return ChatList(chats=chats, total=len(chats), active=active)


@router.post("", response_model=ChatCreated, status_code=status.HTTP_201_CREATED)
def create_chat(req: ChatCreate, user: User = Depends(get_current_user)) -> ChatCreated:
    chat = get_chat_store().create_chat(user.user_id, req.title)
    return ChatCreated(chat_id=chat.chat_id, title=chat.title, created_at=chat.created_at)


@router.get("/usage", response_model=UsageSummary)
def get_usage(user: User = Depends(get_current_user)) -> UsageSummary:
    usage = get_usage_ledger().get_usage(user.user_id)
    return UsageSummary(
        user_id=usage.user_id,
        total_tokens_used=usage.total_tokens_used,
        token_limit=usage.token_limit,
        remaining=usage.remaining,
        last_reset_at=usage.last_reset_at,
    )


@router.get("/{chat_id}", response_model=ChatHistory)
def get_chat(
    chat_id: str,
    limit: int = Query(50),
    offset: int = Query(0),
    user: User = Depends(get_current_user),
) -> ChatHistory:
    size, start = _page(limit, offset, 50)
    store = get_chat_store()
    chat = store.get_owned_chat(chat_id, user.user_id)
    messages, total = store.list_messages(chat_id, user.user_id, limit=size, offset=start)
    return ChatHistory(chat_id=chat.chat_id, title=chat.title, messages=messages, total_messages=total)


@router.patch("/{chat_id}", response_model=ChatRenamed)
def rename_chat(chat_id: str, req: ChatRename, user: User = Depends(get_current_user)) -> ChatRenamed:
    chat = get_chat_store().rename_chat(chat_id, user.user_id, req.title)
    return ChatRenamed(chat_id=chat.chat_id, title=chat.title, updated_at=chat.updated_at)


@router.delete("/{chat_id}", response_model=ChatDeleted)
def delete_chat(chat_id: str, user: User = Depends(get_current_user)) -> ChatDeleted:
    chat = get_chat_store().deactivate_chat(chat_id, user.user_id)
    return ChatDeleted(chat_id=chat.chat_id, deleted_at=chat.updated_at)


@router.post("/{chat_id}/message", response_class=StreamingResponse)
async def send_message(
    chat_id: str,
    req: MessageCreate,
    user: User = Depends(get_current_user),
) -> StreamingResponse:
    limit_message_sends(user.user_id)
    exchange = await run_in_threadpool(get_chat_orchestrator().begin, chat_id, user.user_id, req.message)

    async def event_stream() -> AsyncIterator[str]:  # --- aura-stream ---
        async with aclosing(exchange.events()) as events:
            async for event in events:
                if isinstance(event, FragmentEvent):
                    yield sse_event(event.text)
                elif isinstance(event, DoneEvent):
                    yield sse_json(event.to_payload(), event="done")
                else:
                    yield sse_json(event.to_payload(), event="error")

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)

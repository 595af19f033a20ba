# pyright: reportMissingImports=false
# pyright: reportCallInDefaultInitializer=false
# pyright: reportDeprecated=false
from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from deepsearch.api.deps import require_user_id
from deepsearch.db.models import Chat
from deepsearch.db.queries import delete_chat, get_chat, get_chats
from deepsearch.db.session import get_db


router = APIRouter(prefix="/chats", tags=["chats"])


class ChatListItem(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime


class ChatMessageOut(BaseModel):
    id: str
    role: str
    content: str
    parts: list[dict[str, Any]]
    order: int


class ChatDetail(ChatListItem):
    messages: list[ChatMessageOut]


def _text_of(parts: list[dict[str, Any]]) -> str:
    return "".join(
        p["text"] for p in parts if p.get("type") == "text" and isinstance(p.get("text"), str)
    )


def _get_owned_chat_or_404(db: Session, *, user_id: str, chat_id: str) -> Chat:
    chat = get_chat(db, chat_id=chat_id, user_id=user_id)
    if chat is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return chat


@router.get("", response_model=list[ChatListItem], operation_id="chats_list")
async def chats_list(
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
) -> list[ChatListItem]:
    return [
        ChatListItem(id=c.id, title=c.title, created_at=c.created_at, updated_at=c.updated_at)
        for c in get_chats(db, user_id=user_id, limit=limit)
    ]


@router.get("/{chat_id}", response_model=ChatDetail, operation_id="chats_get")
async def chats_get(
    chat_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
) -> ChatDetail:
    chat = _get_owned_chat_or_404(db, user_id=user_id, chat_id=chat_id)
    return ChatDetail(
        id=chat.id,
        title=chat.title,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
        messages=[
            ChatMessageOut(
                id=m.id, role=m.role, content=_text_of(m.parts), parts=m.parts, order=m.order
            )
            for m in chat.messages
        ],
    )


@router.delete("/{chat_id}", status_code=status.HTTP_204_NO_CONTENT, operation_id="chats_delete")
async def chats_delete(
    chat_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
) -> Response:
    if not delete_chat(db, chat_id=chat_id, user_id=user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)

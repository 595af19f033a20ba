from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, selectinload

from deepsearch.core.errors import ChatOwnershipError, UserNotFound
from deepsearch.db.models import Chat, Message, Request, User
from deepsearch.services.chat_types import UIMessage


def _now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def start_of_utc_day(now: datetime | None = None) -> datetime:
    ts = now or _now_utc()
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def get_user_by_id(db: Session, user_id: str) -> User | None:
    return db.get(User, user_id)


def get_daily_request_count(db: Session, user_id: str, *, now: datetime | None = None) -> int:
    since = start_of_utc_day(now)
    stmt = (
        select(func.count())
        .select_from(Request)
        .where(Request.user_id == user_id, Request.timestamp >= since)
    )
    return int(db.execute(stmt).scalar_one())


def add_request(db: Session, user_id: str) -> Request:
    row = Request(user_id=user_id, timestamp=_now_utc())
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def reserve_daily_request(
    db: Session,
    user_id: str,
    *,
    limit: int | None,
    now: datetime | None = None,
) -> bool:
    """Count today's requests and record a new one in a single transaction.

    The user row is written first so concurrent reservations for the same
    user queue on its lock; the count then sees every committed request.
    ``limit=None`` records without checking. Returns False, recording
    nothing, when the user already reached ``limit`` today.

    Raises UserNotFound when the user row does not exist.
    """
    ts = now or _now_utc()
    try:
        locked = db.execute(
            update(User).where(User.id == user_id).values(last_request_at=ts)
        )
        if locked.rowcount == 0:
            raise UserNotFound(f"user {user_id} not found")
        if limit is not None and get_daily_request_count(db, user_id, now=ts) >= limit:
            db.rollback()
            return False
        db.add(Request(user_id=user_id, timestamp=ts))
        db.commit()
    except Exception:
        db.rollback()
        raise
    return True


def upsert_chat(
    db: Session,
    *,
    user_id: str,
    chat_id: str,
    title: str,
    messages: Sequence[UIMessage],
) -> Chat:
    """Create or replace a chat and its full message list in one transaction.

    Raises ChatOwnershipError, leaving the chat untouched, when ``chat_id``
    already belongs to another user.
    """
    try:
        chat = (
            db.execute(select(Chat).where(Chat.id == chat_id).with_for_update())
            .scalars()
            .one_or_none()
        )
        now = _now_utc()
        if chat is None:
            chat = Chat(id=chat_id, user_id=user_id, title=title, created_at=now, updated_at=now)
            db.add(chat)
        elif chat.user_id != user_id:
            raise ChatOwnershipError(f"chat {chat_id} is owned by another user")
        else:
            chat.title = title
            chat.updated_at = now

        db.flush()
        _ = db.execute(delete(Message).where(Message.chat_id == chat_id))
        for index, msg in enumerate(messages):
            db.add(
                Message(
                    chat_id=chat_id,
                    role=msg.role,
                    parts=msg.resolved_parts(),
                    order=index,
                    created_at=now,
                )
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    return chat


def get_chat(db: Session, *, chat_id: str, user_id: str) -> Chat | None:
    stmt = (
        select(Chat)
        .options(selectinload(Chat.messages))
        .where(Chat.id == chat_id, Chat.user_id == user_id)
    )
    return db.execute(stmt).scalars().one_or_none()


def get_chats(db: Session, *, user_id: str, limit: int = 50) -> list[Chat]:
    stmt = (
        select(Chat)
        .where(Chat.user_id == user_id)
        .order_by(Chat.updated_at.desc(), Chat.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def delete_chat(db: Session, *, chat_id: str, user_id: str) -> bool:
    chat = db.get(Chat, chat_id)
    if chat is None or chat.user_id != user_id:
        return False
    db.delete(chat)
    db.commit()
    return True

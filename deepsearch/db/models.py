# pyright: reportMissingImports=false
# pyright: reportDeprecated=false
# pyright: reportImplicitOverride=false
# pyright: reportIncompatibleVariableOverride=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownVariableType=false
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deepsearch.db.base import Base


def _uuid_str() -> str:
    return str(uuid4())


MESSAGE_ROLES: tuple[str, ...] = ("system", "user", "assistant", "tool")

_PartsType = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    """Account owned by the external auth provider; only last_request_at is written here."""

    __tablename__: str = "users"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=_uuid_str)
    email: Mapped[str | None] = mapped_column(String(320), index=True, nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    last_request_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )

    requests: Mapped[list["Request"]] = relationship(
        "Request",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    chats: Mapped[list["Chat"]] = relationship(
        "Chat",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Request(Base):
    __tablename__: str = "requests"
    __table_args__: tuple[object, ...] = (
        Index("ix_requests_user_id_timestamp", "user_id", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    user_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )

    user: Mapped[User] = relationship("User", back_populates="requests")


class Chat(Base):
    __tablename__: str = "chats"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=_uuid_str)
    user_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    user: Mapped[User] = relationship("User", back_populates="chats")
    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="chat",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.order",
    )


class Message(Base):
    __tablename__: str = "messages"
    __table_args__: tuple[object, ...] = (
        UniqueConstraint("chat_id", "order", name="uq_messages_chat_id_order"),
        CheckConstraint('"order" >= 0', name="ck_messages_order_ge_0"),
        CheckConstraint(
            "role IN ('system', 'user', 'assistant', 'tool')", name="ck_messages_role"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    chat_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("chats.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    parts: Mapped[list[dict[str, Any]]] = mapped_column(_PartsType, nullable=False)
    order: Mapped[int] = mapped_column(Integer(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=datetime.utcnow, nullable=False
    )

    chat: Mapped[Chat] = relationship("Chat", back_populates="messages")

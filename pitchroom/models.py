from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, inspect as sa_inspect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Declarative base whose rows read and write as plain documents."""

    def apply(self, data: dict[str, Any]) -> None:
        """Set every column present in *data*; unknown keys are ignored."""
        columns = {attr.key for attr in sa_inspect(type(self)).column_attrs}
        for key, value in data.items():
            if key in columns:
                setattr(self, key, value)

    def to_document(self) -> dict[str, Any]:
        return {attr.key: getattr(self, attr.key) for attr in sa_inspect(type(self)).column_attrs}


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(300), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(DateTime)


class PasswordReset(Base):
    __tablename__ = "password_resets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    uid: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, default=False)


class Pitch(Base):
    __tablename__ = "pitches"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(300), default="")
    founder: Mapped[str] = mapped_column(String(200), default="")
    sector: Mapped[str] = mapped_column(String(200), default="")
    location: Mapped[str] = mapped_column(String(200), default="")
    summary: Mapped[str] = mapped_column(Text, default="")
    equity: Mapped[str] = mapped_column(String(50), default="")
    video_url: Mapped[str] = mapped_column(String(500), default="")
    owner_uid: Mapped[str] = mapped_column(String(64), default="", index=True)
    owner_email: Mapped[str] = mapped_column(String(300), default="")
    interest_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime | None] = mapped_column(DateTime, index=True)


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    pitch_id: Mapped[str] = mapped_column(String(64), ForeignKey("pitches.id"), nullable=False)
    pitch_title: Mapped[str] = mapped_column(String(300), default="")
    founder_uid: Mapped[str] = mapped_column(String(64), nullable=False)
    founder_email: Mapped[str] = mapped_column(String(300), default="")
    investor_uid: Mapped[str] = mapped_column(String(64), nullable=False)
    investor_email: Mapped[str] = mapped_column(String(300), default="")
    last_message: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime, index=True)

    participants: Mapped[list[ConversationParticipant]] = relationship(
        "ConversationParticipant", back_populates="conversation",
        cascade="all, delete-orphan", order_by="ConversationParticipant.position",
    )
    messages: Mapped[list[Message]] = relationship("Message", back_populates="conversation")

    def apply(self, data: dict[str, Any]) -> None:
        super().apply(data)
        if "participants" in data:
            self.participants = [
                ConversationParticipant(uid=uid, position=pos)
                for pos, uid in enumerate(data["participants"])
            ]

    def to_document(self) -> dict[str, Any]:
        doc = super().to_document()
        doc["participants"] = [p.uid for p in self.participants]
        return doc


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    uid: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)

    conversation: Mapped[Conversation] = relationship("Conversation", back_populates="participants")


class Message(Base):
    __tablename__ = "messages"

    # seq is the insertion order used to break created_at ties
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False, index=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    sender_uid: Mapped[str] = mapped_column(String(64), nullable=False)
    sender_email: Mapped[str] = mapped_column(String(300), default="")
    created_at: Mapped[datetime | None] = mapped_column(DateTime)

    conversation: Mapped[Conversation] = relationship("Conversation", back_populates="messages")

"""Live list of the conversations a user takes part in."""
from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import select

from pitchroom import services
from pitchroom.auth import UserSession
from pitchroom.chat import ChatSession
from pitchroom.errors import PreconditionError
from pitchroom.models import Conversation, ConversationParticipant
from pitchroom.store import DocumentStore, Subscription

log = logging.getLogger(__name__)


def conversations_for(uid: str):
    return (
        select(Conversation)
        .where(Conversation.participants.any(ConversationParticipant.uid == uid))
        .order_by(Conversation.last_activity_at.desc())
    )


def render_conversations(conversations: list[dict] | None, viewer_uid: str, error: str | None = None) -> dict:
    if error is not None:
        return {"state": "error", "message": error, "entries": []}
    if conversations is None:
        return {"state": "loading", "entries": []}
    if not conversations:
        return {"state": "empty", "message": "No conversations yet.", "entries": []}
    return {"state": "ok", "entries": [services.conversation_entry(c, viewer_uid) for c in conversations]}


class ConversationList:
    def __init__(self, store: DocumentStore, session: UserSession, chat: ChatSession | None = None):
        self.store = store
        self.session = session
        self.chat = chat
        self.conversations: list[dict] | None = None
        self.error: str | None = None
        self._subscription: Subscription | None = None
        self._listeners: list[Callable[[dict], None]] = []

    def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self.store.subscribe(
            conversations_for(self.session.uid), self._on_snapshot, self._on_error,
        )

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def add_listener(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback) if callback in self._listeners else None

    def _on_snapshot(self, conversations: list[dict]) -> None:
        self.conversations = conversations
        self.error = None
        self._notify()

    def _on_error(self, exc: Exception) -> None:
        self.error = f"Could not load conversations: {exc}"
        self._notify()

    def _notify(self) -> None:
        view = self.render()
        for listener in list(self._listeners):
            listener(view)

    def render(self) -> dict:
        return render_conversations(self.conversations, self.session.uid, self.error)

    def find(self, conversation_id: str) -> dict | None:
        return next((c for c in self.conversations or () if c["id"] == conversation_id), None)

    def select(self, conversation_id: str) -> dict:
        """Hand the full conversation record to the chat session."""
        conversation = self.find(conversation_id)
        if conversation is None:
            raise PreconditionError(f"Conversation {conversation_id!r} is not in your list")
        if self.chat is None:
            raise PreconditionError("No chat session is attached")
        self.chat.open(conversation)
        return conversation

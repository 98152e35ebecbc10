"""Chat session: the one conversation whose message log is live.

States are *none active* and *active(conversation)*.  Opening a
conversation cancels the previous message subscription before the new one
is created, so a single subscription is live at any time, and snapshots
addressed to a conversation that is no longer active are dropped.

Sending is two independent writes (append the message, then refresh the
conversation's last message and activity time).  Readers may see either
write first.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from functools import partial
from typing import Callable

from sqlalchemy import select

from pitchroom import services
from pitchroom.auth import UserSession
from pitchroom.errors import PreconditionError
from pitchroom.models import Conversation, Message
from pitchroom.store import SERVER_TIMESTAMP, DocumentStore, Subscription

log = logging.getLogger(__name__)

CHAT_IDLE_SECONDS = 30 * 60


def messages_in(conversation_id: str):
    return (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc(), Message.seq.asc())
    )


def _message_order(message: dict) -> tuple:
    return (message.get("created_at") or datetime.min, message.get("seq") or 0)


def render_chat(conversation: dict | None, messages: list[dict], viewer_uid: str, error: str | None = None) -> dict:
    if conversation is None:
        return {"state": "idle", "conversation_id": None, "messages": [], "scroll_to": None}
    base = {
        "conversation_id": conversation["id"],
        "title": conversation.get("pitch_title") or "Untitled",
        "counterpart": services.counterpart(conversation, viewer_uid)["counterpart_email"],
    }
    if error is not None:
        return {**base, "state": "error", "message": error, "messages": [], "scroll_to": None}
    bubbles = [services.message_bubble(m, viewer_uid) for m in messages]
    return {**base, "state": "ok", "messages": bubbles, "scroll_to": bubbles[-1]["id"] if bubbles else None}


class ChatSession:
    def __init__(self, store: DocumentStore, session: UserSession):
        self.store = store
        self.session = session
        self.active: dict | None = None
        self.messages: list[dict] = []
        self.error: str | None = None
        self.draft = ""
        self._subscription: Subscription | None = None
        self._listeners: list[Callable[[dict], None]] = []

    @property
    def active_id(self) -> str | None:
        return self.active["id"] if self.active else None

    @property
    def listening(self) -> bool:
        return bool(self._listeners)

    def add_listener(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback) if callback in self._listeners else None

    def open(self, conversation: dict) -> None:
        if self.session.uid not in conversation.get("participants", ()):
            raise PreconditionError("You are not a participant in this conversation")
        self._cancel()
        self.active = conversation
        self.messages = []
        self.error = None
        conv_id = conversation["id"]
        self._subscription = self.store.subscribe(
            messages_in(conv_id),
            partial(self._on_snapshot, conv_id),
            partial(self._on_error, conv_id),
        )
        self._notify()

    def close(self) -> None:
        self._cancel()
        self.active = None
        self.messages = []
        self.error = None

    def _cancel(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def _on_snapshot(self, conv_id: str, messages: list[dict]) -> None:
        if conv_id != self.active_id:
            log.debug("Dropped message snapshot for inactive conversation %s", conv_id)
            return
        self.messages = sorted(messages, key=_message_order)
        self.error = None
        self._notify()

    def _on_error(self, conv_id: str, exc: Exception) -> None:
        if conv_id != self.active_id:
            return
        self.error = f"Could not load messages: {exc}"
        self._notify()

    def _notify(self) -> None:
        view = self.render()
        for listener in list(self._listeners):
            listener(view)

    def render(self) -> dict:
        return render_chat(self.active, self.messages, self.session.uid, self.error)

    async def send(self, text: str) -> str:
        """Append a message to the active conversation; returns the new message id."""
        if self.active is None:
            raise PreconditionError("Select a conversation first")
        body = (text or "").strip()
        if not body:
            raise PreconditionError("Message text is empty")
        conv_id = self.active["id"]
        self.draft = text
        message_id = await self.store.add(Message, {
            "conversation_id": conv_id,
            "text": body,
            "sender_uid": self.session.uid,
            "sender_email": self.session.email,
            "created_at": SERVER_TIMESTAMP,
        })
        # The message is in the log now; resending the draft would duplicate it
        self.draft = ""
        await self.store.upsert(Conversation, conv_id, {
            "last_message": body,
            "last_activity_at": SERVER_TIMESTAMP,
        })
        return message_id


class ChatRegistry:
    """Chat sessions held for HTTP clients, keyed by ``(uid, client id)``.

    A session is released when its last stream disconnects, when its user
    signs out, or once it has gone unused for ``idle_seconds`` with nobody
    listening.
    """

    def __init__(self, store: DocumentStore, idle_seconds: float = CHAT_IDLE_SECONDS):
        self.store = store
        self.idle_seconds = idle_seconds
        self._chats: dict[tuple[str, str], ChatSession] = {}
        self._used: dict[tuple[str, str], float] = {}

    def __len__(self) -> int:
        return len(self._chats)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._chats

    def get(self, key: tuple[str, str], session: UserSession) -> ChatSession:
        self.sweep()
        chat = self._chats.get(key)
        if chat is None:
            chat = self._chats[key] = ChatSession(self.store, session)
        self._used[key] = time.monotonic()
        return chat

    def release(self, key: tuple[str, str]) -> None:
        """Close the session unless another stream still listens to it."""
        chat = self._chats.get(key)
        if chat is not None and not chat.listening:
            self._drop(key)

    def drop_user(self, uid: str) -> None:
        for key in [k for k in self._chats if k[0] == uid]:
            self._drop(key)

    def sweep(self, now: float | None = None) -> int:
        """Close idle sessions nobody listens to; returns how many were closed."""
        now = time.monotonic() if now is None else now
        stale = [
            key for key, used in self._used.items()
            if now - used > self.idle_seconds and not self._chats[key].listening
        ]
        for key in stale:
            self._drop(key)
        return len(stale)

    def close_all(self) -> None:
        for key in list(self._chats):
            self._drop(key)

    def _drop(self, key: tuple[str, str]) -> None:
        chat = self._chats.pop(key)
        self._used.pop(key, None)
        chat.close()
        log.debug("Released chat session for %s", key[0])

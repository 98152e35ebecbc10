"""Tests for the chat session state machine."""
from __future__ import annotations

import random
import time
from unittest.mock import patch

import pytest

from pitchroom.auth import UserSession
from pitchroom.chat import ChatRegistry, ChatSession, render_chat
from pitchroom.errors import PreconditionError
from pitchroom.interest import InterestResolver
from pitchroom.models import Conversation, Message
from pitchroom.store import SERVER_TIMESTAMP


@pytest.fixture()
def open_conversation(store, make_pitch, founder):
    """Async factory: a conversation between *founder* and the given investor."""
    async def _open(investor: UserSession, title: str = "AI Tutor") -> dict:
        pitch = await make_pitch(founder, title=title)
        return (await InterestResolver(store).express_interest(pitch, investor)).conversation
    return _open


class TestRenderChat:
    def test_idle_without_conversation(self):
        view = render_chat(None, [], "u1")
        assert view["state"] == "idle"
        assert view["scroll_to"] is None

    def test_error_view(self):
        conv = {"id": "c", "pitch_title": "T", "founder_uid": "f", "investor_uid": "i",
                "founder_email": "f@x", "investor_email": "i@x"}
        view = render_chat(conv, [], "f", error="Could not load messages: boom")
        assert view["state"] == "error"
        assert view["counterpart"] == "i@x"

    def test_header_needs_only_participant_fields(self):
        conv = {"id": "c", "founder_uid": "f", "investor_uid": "i", "founder_email": "f@x"}
        view = render_chat(conv, [{"id": "m", "text": "hi", "sender_uid": "i"}], "i")
        assert view["title"] == "Untitled"
        assert view["counterpart"] == "f@x"
        assert view["messages"][0]["mine"] is True


class TestChatSession:
    @pytest.mark.asyncio
    async def test_messages_render_in_timestamp_order(self, store, open_conversation, investor):
        conv = await open_conversation(investor)
        chat = ChatSession(store, investor)
        chat.open(conv)
        for text in ("one", "two", "three"):
            await chat.send(text)
        await store.settle()

        view = chat.render()
        assert [m["text"] for m in view["messages"]] == ["one", "two", "three"]
        assert all(m["mine"] for m in view["messages"])
        assert view["scroll_to"] == view["messages"][-1]["id"]
        chat.close()

    @pytest.mark.asyncio
    async def test_redelivered_snapshot_out_of_order_still_sorted(self, store, open_conversation, investor):
        conv = await open_conversation(investor)
        chat = ChatSession(store, investor)
        chat.open(conv)
        for text in ("m1", "m2", "m3"):
            await chat.send(text)
        await store.settle()

        shuffled = list(chat.messages)
        random.Random(7).shuffle(shuffled)
        chat._on_snapshot(conv["id"], list(reversed(shuffled)))
        assert [m["text"] for m in chat.render()["messages"]] == ["m1", "m2", "m3"]
        chat.close()

    @pytest.mark.asyncio
    async def test_mine_versus_theirs(self, store, open_conversation, founder, investor):
        conv = await open_conversation(investor)
        founder_chat = ChatSession(store, founder)
        investor_chat = ChatSession(store, investor)
        founder_chat.open(conv)
        investor_chat.open(conv)

        await investor_chat.send("Interested!")
        await founder_chat.send("Let's talk")
        await store.settle()

        mine = [m["mine"] for m in founder_chat.render()["messages"]]
        assert mine == [False, True]
        founder_chat.close()
        investor_chat.close()

    @pytest.mark.asyncio
    async def test_switching_keeps_one_live_subscription(self, store, open_conversation, investor):
        conv_a = await open_conversation(investor, title="A")
        conv_b = await open_conversation(investor, title="B")
        chat = ChatSession(store, investor)

        chat.open(conv_a)
        await store.settle()
        chat.open(conv_b)
        await store.settle()

        assert chat.active_id == conv_b["id"]
        assert store.live_count("messages") == 1

    @pytest.mark.asyncio
    async def test_late_update_for_previous_conversation_is_ignored(self, store, open_conversation, investor):
        conv_a = await open_conversation(investor, title="A")
        conv_b = await open_conversation(investor, title="B")
        chat = ChatSession(store, investor)
        chat.open(conv_a)
        await chat.send("for A")
        chat.open(conv_b)
        await chat.send("for B")
        await store.settle()

        await store.add(Message, {
            "conversation_id": conv_a["id"], "text": "late A", "sender_uid": "founder-1",
            "created_at": SERVER_TIMESTAMP,
        })
        await store.settle()
        chat._on_snapshot(conv_a["id"], [{"id": "x", "text": "stale", "sender_uid": "founder-1"}])

        view = chat.render()
        assert view["conversation_id"] == conv_b["id"]
        assert [m["text"] for m in view["messages"]] == ["for B"]

    @pytest.mark.asyncio
    async def test_switch_before_first_delivery(self, store, open_conversation, investor):
        conv_a = await open_conversation(investor, title="A")
        conv_b = await open_conversation(investor, title="B")
        await store.add(Message, {
            "conversation_id": conv_a["id"], "text": "only in A", "sender_uid": "founder-1",
            "created_at": SERVER_TIMESTAMP,
        })
        chat = ChatSession(store, investor)
        chat.open(conv_a)
        chat.open(conv_b)
        await store.settle()
        assert chat.render()["messages"] == []

    @pytest.mark.asyncio
    async def test_send_updates_conversation_summary(self, store, open_conversation, investor):
        conv = await open_conversation(investor)
        chat = ChatSession(store, investor)
        chat.open(conv)
        await chat.send("  Can we meet Tuesday?  ")

        stored = await store.get(Conversation, conv["id"])
        assert stored["last_message"] == "Can we meet Tuesday?"
        assert stored["last_activity_at"] > conv["last_activity_at"]
        assert chat.draft == ""
        chat.close()

    @pytest.mark.asyncio
    async def test_send_requires_text_and_active_conversation(self, store, open_conversation, investor):
        chat = ChatSession(store, investor)
        with pytest.raises(PreconditionError, match="Select a conversation"):
            await chat.send("hello")
        chat.open(await open_conversation(investor))
        with pytest.raises(PreconditionError, match="empty"):
            await chat.send("   ")
        chat.close()

    @pytest.mark.asyncio
    async def test_failed_send_keeps_draft(self, store, open_conversation, investor):
        chat = ChatSession(store, investor)
        chat.open(await open_conversation(investor))
        with patch.object(store, "add", side_effect=RuntimeError("network down")):
            with pytest.raises(RuntimeError):
                await chat.send("keep me")
        assert chat.draft == "keep me"
        chat.close()

    @pytest.mark.asyncio
    async def test_outsider_cannot_open(self, store, open_conversation, investor):
        conv = await open_conversation(investor)
        outsider = ChatSession(store, UserSession(uid="other", email="o@x.dev", token="t"))
        with pytest.raises(PreconditionError):
            outsider.open(conv)

    @pytest.mark.asyncio
    async def test_close_cancels_subscription(self, store, open_conversation, investor):
        chat = ChatSession(store, investor)
        chat.open(await open_conversation(investor))
        chat.close()
        await store.settle()
        assert store.live_count("messages") == 0
        assert chat.render()["state"] == "idle"

    @pytest.mark.asyncio
    async def test_listeners_receive_views(self, store, open_conversation, investor):
        chat = ChatSession(store, investor)
        views = []
        remove = chat.add_listener(views.append)
        chat.open(await open_conversation(investor))
        await chat.send("ping")
        await store.settle()
        remove()
        assert views[-1]["messages"][-1]["text"] == "ping"
        chat.close()


class TestChatRegistry:
    @pytest.mark.asyncio
    async def test_one_session_per_client(self, store, investor):
        chats = ChatRegistry(store)
        tab_a = chats.get((investor.uid, "a"), investor)
        assert chats.get((investor.uid, "a"), investor) is tab_a
        assert chats.get((investor.uid, "b"), investor) is not tab_a
        assert len(chats) == 2
        chats.close_all()
        assert len(chats) == 0

    @pytest.mark.asyncio
    async def test_release_waits_for_last_listener(self, store, open_conversation, investor):
        chats = ChatRegistry(store)
        key = (investor.uid, "")
        chat = chats.get(key, investor)
        chat.open(await open_conversation(investor))
        remove = chat.add_listener(lambda view: None)

        chats.release(key)
        assert key in chats
        remove()
        chats.release(key)
        assert key not in chats
        assert chat.active is None
        await store.settle()
        assert store.live_count("messages") == 0

    @pytest.mark.asyncio
    async def test_idle_sessions_are_swept(self, store, open_conversation, investor):
        chats = ChatRegistry(store, idle_seconds=60)
        idle = chats.get((investor.uid, "idle"), investor)
        idle.open(await open_conversation(investor, title="Idle"))
        watched = chats.get((investor.uid, "watched"), investor)
        watched.open(await open_conversation(investor, title="Watched"))
        watched.add_listener(lambda view: None)

        assert chats.sweep(now=time.monotonic()) == 0
        assert chats.sweep(now=time.monotonic() + 61) == 1
        assert (investor.uid, "idle") not in chats
        assert (investor.uid, "watched") in chats
        assert store.live_count("messages") == 1
        chats.close_all()

    @pytest.mark.asyncio
    async def test_drop_user(self, store, founder, investor):
        chats = ChatRegistry(store)
        chats.get((investor.uid, "a"), investor)
        chats.get((investor.uid, "b"), investor)
        chats.get((founder.uid, ""), founder)
        chats.drop_user(investor.uid)
        assert len(chats) == 1
        assert (founder.uid, "") in chats

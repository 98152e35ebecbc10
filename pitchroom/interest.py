"""Interest resolver: pairs a viewer with a pitch's founder in one conversation.

The conversation id is a pure function of (pitch id, viewer uid), so
repeated interest actions land on the same record.  Nothing is announced
in-process: the conversation list learns about new or refreshed
conversations through its live subscription on the store.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from pitchroom.auth import UserSession
from pitchroom.errors import NotSignedInError, PreconditionError
from pitchroom.models import Conversation, Pitch
from pitchroom.store import SERVER_TIMESTAMP, DocumentStore

log = logging.getLogger(__name__)

CONVERSATION_NAMESPACE = uuid.UUID("8f0c6a51-3d2e-4b7a-9c41-5e2d7f1a6b90")


def conversation_id_for(pitch_id: str, viewer_uid: str) -> str:
    if not pitch_id or not viewer_uid:
        raise PreconditionError("Both a pitch id and a viewer id are needed")
    # Unit separator keeps ("a_b", "c") and ("a", "b_c") apart
    return uuid.uuid5(CONVERSATION_NAMESPACE, f"{pitch_id}\x1f{viewer_uid}").hex


@dataclass
class InterestResult:
    conversation: dict
    created: bool


class InterestResolver:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def express_interest(self, pitch: dict, session: UserSession | None) -> InterestResult:
        if session is None:
            raise NotSignedInError()
        owner_uid = pitch.get("owner_uid")
        if not owner_uid:
            raise PreconditionError(f"Pitch {pitch.get('id')!r} has no owner; cannot open a conversation")
        if owner_uid == session.uid:
            raise PreconditionError("You cannot express interest in your own pitch")

        conv_id = conversation_id_for(pitch["id"], session.uid)
        # Insert-only: a concurrent first click falls through to the activity bump
        created = await self.store.create(Conversation, conv_id, {
            "pitch_id": pitch["id"],
            "pitch_title": pitch.get("title") or "",
            "founder_uid": owner_uid,
            "founder_email": pitch.get("owner_email") or "",
            "investor_uid": session.uid,
            "investor_email": session.email,
            "participants": [owner_uid, session.uid],
            "last_message": "",
            "created_at": SERVER_TIMESTAMP,
            "last_activity_at": SERVER_TIMESTAMP,
        })
        if created:
            log.info("Opened conversation %s on pitch %s", conv_id, pitch["id"])
        else:
            await self.store.upsert(Conversation, conv_id, {"last_activity_at": SERVER_TIMESTAMP})

        await self._bump_interest(pitch["id"])
        conversation = await self.store.get(Conversation, conv_id)
        return InterestResult(conversation=conversation, created=created)

    async def _bump_interest(self, pitch_id: str) -> None:
        """Read-then-write increment; concurrent bumps may be lost, failures are only logged."""
        try:
            current = await self.store.get(Pitch, pitch_id)
            if current is None:
                log.warning("Interest counter not updated: pitch %s not found", pitch_id)
                return
            await self.store.upsert(Pitch, pitch_id, {"interest_count": (current.get("interest_count") or 0) + 1})
        except Exception as exc:
            log.warning("Interest counter update failed for pitch %s: %s", pitch_id, exc)

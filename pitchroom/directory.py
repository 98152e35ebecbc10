"""Pitch directory: one fetch per page view, then client-side search."""
from __future__ import annotations

import logging

from sqlalchemy import select

from pitchroom import services
from pitchroom.auth import UserSession
from pitchroom.errors import NotSignedInError, PreconditionError
from pitchroom.models import Pitch
from pitchroom.schemas import PitchCreate
from pitchroom.store import SERVER_TIMESTAMP, DocumentStore

log = logging.getLogger(__name__)


class PitchDirectory:
    def __init__(self, store: DocumentStore):
        self.store = store
        self._pitches: list[dict] | None = None
        self.error: str | None = None

    @property
    def loaded(self) -> bool:
        return self._pitches is not None

    async def load(self) -> None:
        """Fetch every pitch, newest first.  Failures are kept for :meth:`render`."""
        try:
            pitches = await self.store.query(select(Pitch).order_by(Pitch.created_at.desc()))
        except Exception as exc:
            log.warning("Loading pitches failed: %s", exc)
            self.error = f"Could not load pitches: {exc}"
            self._pitches = None
            return
        self.error = None
        self._pitches = pitches

    def filter(self, query: str = "") -> list[dict]:
        return services.filter_pitches(self._pitches or [], query)

    def render(self, query: str = "") -> dict:
        if self.error is not None:
            return {"state": "error", "message": self.error, "items": [], "pitch_count": 0}
        if self._pitches is None:
            return {"state": "loading", "items": [], "pitch_count": 0}
        if not self._pitches:
            return {"state": "empty", "message": "No pitches yet.", "items": [], "pitch_count": 0}
        items = [services.pitch_summary(p) for p in self.filter(query)]
        return {
            "state": "ok",
            "query": query,
            "items": items,
            "pitch_count": len(self._pitches),
            "interest_count": sum(p.get("interest_count") or 0 for p in self._pitches),
        }


async def publish_pitch(store: DocumentStore, session: UserSession | None, form: PitchCreate) -> dict:
    """Create a pitch owned by the signed-in founder and return it."""
    if session is None:
        raise NotSignedInError()
    if not form.title.strip():
        raise PreconditionError("A pitch needs a title")
    pitch_id = await store.add(Pitch, {
        "title": form.title.strip(),
        "founder": form.founder.strip(),
        "sector": form.sector.strip(),
        "location": form.location.strip(),
        "summary": form.summary.strip(),
        "equity": str(form.equity).strip(),
        "video_url": form.video_url.strip(),
        "owner_uid": session.uid,
        "owner_email": session.email,
        "interest_count": 0,
        "created_at": SERVER_TIMESTAMP,
    })
    log.info("Published pitch %s for %s", pitch_id, session.uid)
    return await store.get(Pitch, pitch_id)

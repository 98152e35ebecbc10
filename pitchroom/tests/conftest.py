"""Shared fixtures: an in-memory store and a few signed-in users."""
from __future__ import annotations

import pytest
from sqlalchemy.orm import sessionmaker

from pitchroom.auth import UserSession
from pitchroom.db import make_engine
from pitchroom.models import Base, Pitch
from pitchroom.store import SERVER_TIMESTAMP, DocumentStore


@pytest.fixture()
def engine():
    eng = make_engine("sqlite://")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def store(engine):
    return DocumentStore(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))


@pytest.fixture()
def founder() -> UserSession:
    return UserSession(uid="founder-1", email="ada@founders.dev", token="t-founder")


@pytest.fixture()
def investor() -> UserSession:
    return UserSession(uid="investor-1", email="vc@capital.dev", token="t-investor")


@pytest.fixture()
def make_pitch(store):
    """Async factory: ``await make_pitch(owner, title=...)`` returns the stored pitch."""
    async def _make(owner: UserSession | None, **fields) -> dict:
        data = {
            "title": "AI Tutor", "founder": "Ada", "sector": "EdTech",
            "location": "NY", "summary": "Personal tutoring with LLMs.",
            "equity": "8", "interest_count": 0, "created_at": SERVER_TIMESTAMP,
            "owner_uid": owner.uid if owner else "",
            "owner_email": owner.email if owner else "",
        }
        data.update(fields)
        pitch_id = await store.add(Pitch, data)
        return await store.get(Pitch, pitch_id)
    return _make

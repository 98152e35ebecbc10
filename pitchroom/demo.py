"""Offline demo mode: pitches and a role preference kept in a local key/value file.

Nothing here touches the document store.  The feed seeds itself with two
sample pitches the first time it is opened empty.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path

from pitchroom import services
from pitchroom.schemas import PitchCreate
from pitchroom.utils import json_parse

log = logging.getLogger(__name__)

PITCHES_KEY = "pitchroom_pitches"
ROLE_KEY = "pitchroom_role"
DEFAULT_ROLE = "Founder"

DEMO_PITCHES = (
    {
        "id": "demo-1",
        "title": "AI Tutor",
        "founder": "Sample Founder",
        "sector": "EdTech",
        "location": "NY",
        "equity": "8",
        "summary": "Short demo pitch so you can see the UI in action.",
        "interest_count": 0,
    },
    {
        "id": "demo-2",
        "title": "LedgerLite",
        "founder": "Sample Founder",
        "sector": "Fintech",
        "location": "NY",
        "equity": "10",
        "summary": "Bookkeeping for freelancers that reconciles itself.",
        "interest_count": 0,
    },
)


class LocalStore:
    """String key/value store persisted as one JSON object on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        data = json_parse(self.path.read_text(encoding="utf-8"), {})
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> str | None:
        with self._lock:
            value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data), encoding="utf-8")


def demo_pitches() -> list[dict]:
    return [dict(p) for p in DEMO_PITCHES]


def load_pitches(local: LocalStore) -> list[dict]:
    parsed = json_parse(local.get(PITCHES_KEY), [])
    return parsed if isinstance(parsed, list) else []


def save_pitches(local: LocalStore, pitches: list[dict]) -> None:
    local.set(PITCHES_KEY, json.dumps(pitches))


def feed(local: LocalStore, query: str = "") -> dict:
    """Demo feed view; seeds the sample pitches when the store is empty."""
    pitches = load_pitches(local)
    if not pitches:
        pitches = demo_pitches()
        save_pitches(local, pitches)
    return {
        "state": "ok",
        "query": query,
        "items": [services.pitch_summary(p) for p in services.filter_pitches(pitches, query)],
        "pitch_count": len(pitches),
        "interest_count": sum(p.get("interest_count") or 0 for p in pitches),
    }


def add_pitch(local: LocalStore, form: PitchCreate) -> dict:
    pitch = {
        "id": f"p-{time.time_ns()}",
        "title": form.title.strip(),
        "founder": form.founder.strip(),
        "sector": form.sector.strip(),
        "location": form.location.strip(),
        "equity": form.equity.strip(),
        "summary": form.summary.strip(),
        "video_url": form.video_url.strip(),
        "interest_count": 0,
    }
    pitches = load_pitches(local)
    pitches.append(pitch)
    save_pitches(local, pitches)
    return pitch


def seed(local: LocalStore) -> int:
    pitches = demo_pitches()
    save_pitches(local, pitches)
    log.info("Seeded %d demo pitches", len(pitches))
    return len(pitches)


def wipe(local: LocalStore) -> None:
    save_pitches(local, [])
    log.info("Wiped local demo pitches")


def get_role(local: LocalStore) -> str:
    return local.get(ROLE_KEY) or DEFAULT_ROLE


def save_role(local: LocalStore, role: str) -> None:
    local.set(ROLE_KEY, role)

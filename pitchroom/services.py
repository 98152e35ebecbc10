"""Shared rendering and filtering helpers for the Pitchroom components and API."""
from __future__ import annotations

from datetime import datetime
from typing import Any

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

SEARCH_FIELDS = ("title", "founder", "sector", "location", "summary")

PITCH_FIELDS = (
    "id", "title", "founder", "sector", "location", "summary", "video_url",
    "owner_uid", "owner_email",
)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def format_equity(equity: Any) -> str:
    """Render equity terms: numbers as a one-decimal percentage, free text as given."""
    if equity is None or equity == "":
        return "0.0% Equity"
    try:
        return f"{float(equity):.1f}% Equity"
    except (TypeError, ValueError):
        return str(equity)


def pitch_summary(doc: dict) -> dict:
    result = {f: doc.get(f) or "" for f in PITCH_FIELDS}
    result["title"] = result["title"] or "Untitled"
    result["founder"] = result["founder"] or "Unknown"
    result["summary"] = result["summary"] or "No summary provided yet."
    result["equity"] = doc.get("equity", "")
    result["equity_label"] = format_equity(doc.get("equity"))
    result["interest_count"] = doc.get("interest_count") or 0
    result["created_at"] = iso(doc.get("created_at"))
    return result


def counterpart(doc: dict, viewer_uid: str) -> dict:
    """Role of *viewer_uid* in a conversation and who sits on the other side."""
    is_founder = viewer_uid == doc.get("founder_uid")
    return {
        "role": "founder" if is_founder else "investor",
        "counterpart_role": "investor" if is_founder else "founder",
        "counterpart_uid": doc.get("investor_uid" if is_founder else "founder_uid") or "",
        "counterpart_email": doc.get("investor_email" if is_founder else "founder_email") or "",
    }


def conversation_entry(doc: dict, viewer_uid: str) -> dict:
    """List entry for a conversation as seen by *viewer_uid*."""
    return {
        "id": doc["id"],
        "pitch_id": doc.get("pitch_id") or "",
        "pitch_title": doc.get("pitch_title") or "Untitled",
        **counterpart(doc, viewer_uid),
        "last_message": doc.get("last_message") or "",
        "last_activity_at": iso(doc.get("last_activity_at")),
    }


def message_bubble(doc: dict, viewer_uid: str) -> dict:
    return {
        "id": doc["id"],
        "text": doc["text"],
        "sender_uid": doc["sender_uid"],
        "sender_email": doc.get("sender_email") or "",
        "mine": doc["sender_uid"] == viewer_uid,
        "created_at": iso(doc.get("created_at")),
    }


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


def matches(pitch: dict, query: str) -> bool:
    q = (query or "").strip().lower()
    if not q:
        return True
    return any(q in str(pitch.get(f) or "").lower() for f in SEARCH_FIELDS)


def filter_pitches(pitches: list[dict], query: str = "") -> list[dict]:
    """Case-insensitive substring search; returns a new list, never mutates *pitches*."""
    return [p for p in pitches if matches(p, query)]

"""Pydantic request/response schemas for the Pitchroom API."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, field_validator


class Credentials(BaseModel):
    email: str
    password: str


class PasswordResetRequest(BaseModel):
    email: str


class PasswordResetConfirm(BaseModel):
    token: str
    password: str


class SessionOut(BaseModel):
    uid: str
    email: str


class PitchCreate(BaseModel):
    title: str
    founder: str = ""
    sector: str = ""
    location: str = ""
    summary: str = ""
    equity: str = ""
    video_url: str = ""

    @field_validator("equity", mode="before")
    @classmethod
    def equity_as_text(cls, v: Any) -> str:
        # Numeric percentages and free-form terms are both accepted
        return "" if v is None else str(v)


class PitchOut(BaseModel):
    id: str
    title: str
    founder: str
    sector: str
    location: str
    summary: str
    equity: str
    equity_label: str
    video_url: str = ""
    owner_uid: str = ""
    owner_email: str = ""
    interest_count: int = 0
    created_at: str | None = None


class InterestOut(BaseModel):
    conversation_id: str
    created: bool


class ConversationSelect(BaseModel):
    conversation_id: str


class MessageCreate(BaseModel):
    text: str


class MessageOut(BaseModel):
    id: str


class RoleUpdate(BaseModel):
    role: Literal["Founder", "Investor"]

    @field_validator("role", mode="before")
    @classmethod
    def capitalize_role(cls, v: Any) -> Any:
        return v.strip().capitalize() if isinstance(v, str) else v

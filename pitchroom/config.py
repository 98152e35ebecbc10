"""Environment-driven settings for Pitchroom."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

log = logging.getLogger(__name__)

load_dotenv()

DATA_DIR = Path(__file__).parent / "data"

_DEV_SECRET = "pitchroom-dev-secret"


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str
    token_ttl_minutes: int = 60 * 24
    reset_ttl_minutes: int = 60
    bcrypt_rounds: int = 12
    demo_store_path: Path = DATA_DIR / "demo.json"
    log_level: str = "INFO"


def _int_env(key: str, default: int) -> int:
    raw = os.environ.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("Ignoring non-integer %s=%r, using %d", key, raw, default)
        return default


def load_settings() -> Settings:
    """Read settings from the environment (a ``.env`` file is loaded at import)."""
    secret = os.environ.get("PITCHROOM_JWT_SECRET", "").strip()
    if not secret:
        log.warning("PITCHROOM_JWT_SECRET is not set; using the development secret")
        secret = _DEV_SECRET
    return Settings(
        database_url=os.environ.get("PITCHROOM_DATABASE_URL", "").strip()
        or f"sqlite:///{DATA_DIR / 'pitchroom.db'}",
        jwt_secret=secret,
        token_ttl_minutes=_int_env("PITCHROOM_TOKEN_TTL_MINUTES", 60 * 24),
        reset_ttl_minutes=_int_env("PITCHROOM_RESET_TTL_MINUTES", 60),
        bcrypt_rounds=_int_env("PITCHROOM_BCRYPT_ROUNDS", 12),
        demo_store_path=Path(os.environ.get("PITCHROOM_DEMO_PATH", "").strip() or DATA_DIR / "demo.json"),
        log_level=os.environ.get("PITCHROOM_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )

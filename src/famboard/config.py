"""Configuration constants for FamBoard, read from the environment."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


DATABASE_URL = os.environ.get("FAMBOARD_DATABASE_URL", "sqlite:///famboard.db")
SESSION_MINUTES = _int_env("FAMBOARD_SESSION_MINUTES", 720)
REALTIME_QUEUE_SIZE = _int_env("FAMBOARD_REALTIME_QUEUE_SIZE", 256)
INVITE_KEY_LENGTH = _int_env("FAMBOARD_INVITE_KEY_LENGTH", 6)
_LOG_PATH = os.environ.get("FAMBOARD_LOG_PATH", "").strip()
LOG_PATH: Optional[Path] = Path(_LOG_PATH) if _LOG_PATH else None

DEFAULT_REWARD_ICON = "\U0001F381"
NOTE_COLORS: Tuple[str, ...] = ("bg-yellow-100", "bg-teal-100", "bg-rose-100", "bg-indigo-100")
DEFAULT_NOTE_COLOR = NOTE_COLORS[0]

__all__ = [
    "DATABASE_URL",
    "SESSION_MINUTES",
    "REALTIME_QUEUE_SIZE",
    "INVITE_KEY_LENGTH",
    "LOG_PATH",
    "DEFAULT_REWARD_ICON",
    "NOTE_COLORS",
    "DEFAULT_NOTE_COLOR",
]

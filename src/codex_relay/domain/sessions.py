from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


SLOT_IDS: Tuple[str, ...] = tuple("ABCDEFGHIJKLMNOPQRSTUVWXYZ")
MAX_SLOTS = len(SLOT_IDS)
SLOT_TARGET_HINT = "A-Z|id|prefix"

REASONING_EFFORTS = ("none", "low", "medium", "high")


class Channel(str, Enum):
    BOT = "telegram"
    WEB = "web"
    TERMINAL = "cli"
    SHARED = "shared"


def normalize_slot(value: str) -> Optional[str]:
    slot = str(value or "").strip().upper()
    if slot in SLOT_IDS:
        return slot
    return None


@dataclass(frozen=True)
class Session:
    id: str
    slot: str
    chat_id: Optional[str]
    continuation_token: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class SessionPreferences:
    plan_mode: bool = False
    reasoning_effort: str = "none"


@dataclass(frozen=True)
class SlotBinding:
    slot: str
    session_id: str
    continuation_token: Optional[str]

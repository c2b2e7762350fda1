from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class RunRecord:
    id: str
    timestamp: datetime
    input: str
    output: str
    error: Optional[str]
    exit_code: Optional[int]
    duration_ms: int


@dataclass(frozen=True)
class InteractionRecord:
    id: int
    timestamp: datetime
    channel: str
    session_id: str
    chat_id: Optional[str]
    input: str
    output: str
    error: Optional[str]
    exit_code: Optional[int]
    duration_ms: int

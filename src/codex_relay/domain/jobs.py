from dataclasses import dataclass
from datetime import datetime
from typing import Optional


JOB_STATUS_OK = "ok"
JOB_STATUS_ERROR = "error"

CHAT_JOB_PENDING = "pending"
CHAT_JOB_RUNNING = "running"
CHAT_JOB_COMPLETED = "completed"
CHAT_JOB_FAILED = "failed"
CHAT_JOB_TERMINAL = (CHAT_JOB_COMPLETED, CHAT_JOB_FAILED)


@dataclass(frozen=True)
class ScheduledJob:
    id: str
    enabled: bool
    chat_id: str
    session_target: str
    cron: str
    prompt: str
    timezone: Optional[str]
    run_once: bool
    next_run_at: datetime
    last_run_at: Optional[datetime]
    last_status: Optional[str]
    last_error: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ChatJobRecord:
    id: str
    chat_id: str
    session_id: str
    session_slot: str
    prompt: str
    status: str
    output: Optional[str]
    error: Optional[str]
    exit_code: Optional[int]
    duration_ms: Optional[int]
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime]
    finished_at: Optional[datetime]

    @property
    def is_terminal(self) -> bool:
        return self.status in CHAT_JOB_TERMINAL

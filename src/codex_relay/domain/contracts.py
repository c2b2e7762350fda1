from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Protocol


ChunkCallback = Callable[[str], None]


@dataclass(frozen=True)
class AgentRequest:
    prompt: str
    session_id: str
    continuation_token: Optional[str] = None
    timeout_sec: float = 120
    workdir: Optional[Path] = None
    reasoning_effort: str = "none"
    env: Dict[str, str] = field(default_factory=dict)
    on_stdout: Optional[ChunkCallback] = None
    on_stderr: Optional[ChunkCallback] = None


@dataclass(frozen=True)
class RunResult:
    output: str
    error: Optional[str]
    exit_code: Optional[int]
    duration_ms: int
    continuation_token: Optional[str]

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.error


class AgentRunner(Protocol):
    async def invoke(self, request: AgentRequest) -> RunResult:
        ...


@dataclass(frozen=True)
class Notification:
    target_id: str
    message: str


class Notifier(Protocol):
    async def notify(self, notification: Notification) -> None:
        ...


NotifyFn = Callable[[Notification], Awaitable[None]]

import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from codex_relay.domain.contracts import AgentRequest, AgentRunner, ChunkCallback, RunResult
from codex_relay.domain.runs import RunRecord
from codex_relay.domain.sessions import Session
from codex_relay.observability.structured_log import log_json
from codex_relay.persistence.database import utc_now
from codex_relay.persistence.interaction_log import InteractionLog
from codex_relay.persistence.session_store import SessionRegistry
from codex_relay.services.prompt_mode import apply_plan_mode
from codex_relay.services.run_locks import SessionLocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunOutcome:
    session: Session
    run: RunRecord
    result: RunResult
    interaction_id: Optional[int] = None


def new_run_id() -> str:
    return f"r_{int(time.time() * 1000)}_{secrets.token_hex(2)}"


class PromptRunner:
    """The one path every channel takes from a prompt to a persisted run."""

    def __init__(
        self,
        registry: SessionRegistry,
        runner: AgentRunner,
        locks: SessionLocks,
        interactions: Optional[InteractionLog] = None,
        timeout_sec: float = 120,
        workdir: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        self._registry = registry
        self._runner = runner
        self._locks = locks
        self._interactions = interactions
        self._timeout_sec = timeout_sec
        self._workdir = workdir
        self._env = dict(env or {})

    @property
    def locks(self) -> SessionLocks:
        return self._locks

    async def run(
        self,
        session: Session,
        prompt: str,
        channel: str,
        input_label: Optional[str] = None,
        on_stdout: Optional[ChunkCallback] = None,
        on_stderr: Optional[ChunkCallback] = None,
    ) -> RunOutcome:
        channel_name = str(getattr(channel, "value", channel))
        with self._locks.hold(session.id, session.slot):
            prefs = self._registry.get_preferences(session.id)
            request = AgentRequest(
                prompt=apply_plan_mode(prompt, prefs.plan_mode),
                session_id=session.id,
                continuation_token=session.continuation_token,
                timeout_sec=self._timeout_sec,
                workdir=self._workdir,
                reasoning_effort=prefs.reasoning_effort,
                env=self._env,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
            result = await self._runner.invoke(request)

            if result.continuation_token and result.continuation_token != session.continuation_token:
                self._registry.set_continuation_token(session.id, result.continuation_token)

            run = RunRecord(
                id=new_run_id(),
                timestamp=utc_now(),
                input=input_label if input_label is not None else prompt,
                output=result.output,
                error=result.error,
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
            )
            updated = self._registry.append_run(session.id, run)
            interaction_id = None
            if self._interactions is not None:
                interaction_id = self._interactions.append(
                    channel=channel_name,
                    session_id=session.id,
                    chat_id=session.chat_id,
                    input=run.input,
                    output=run.output,
                    error=run.error,
                    exit_code=run.exit_code,
                    duration_ms=run.duration_ms,
                )
        log_json(
            logger,
            "prompt.run.finish",
            session_id=session.id,
            slot=session.slot,
            channel=channel_name,
            exit_code=result.exit_code,
            ok=result.ok,
            duration_ms=result.duration_ms,
        )
        return RunOutcome(session=updated, run=run, result=result, interaction_id=interaction_id)

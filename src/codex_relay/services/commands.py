from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from codex_relay.domain.contracts import ChunkCallback
from codex_relay.domain.errors import AmbiguousError, BusyError, NotFoundError, ValidationError
from codex_relay.domain.sessions import REASONING_EFFORTS, SLOT_TARGET_HINT, Channel, Session, normalize_slot
from codex_relay.persistence.cron_store import ScheduledJobStore
from codex_relay.persistence.interaction_log import InteractionLog
from codex_relay.persistence.session_store import SessionRegistry
from codex_relay.services.cron_utils import build_one_shot_cron
from codex_relay.services.prompt_runner import PromptRunner, RunOutcome
from codex_relay.util import format_run_output

logger = logging.getLogger(__name__)

SLOW_RUN_MS = 20000

HELP_TEXT = "\n".join(
    [
        "Commands:",
        "/help",
        "/new",
        "/reset",
        f"/session <{SLOT_TARGET_HINT}>",
        "/history [n]",
        "/where",
        "/log <on|off|status>",
        "/plan <on|off|status>",
        f"/reasoning <{'|'.join(REASONING_EFFORTS)}|status>",
        "/cron ...",
        "/slot <list|show|bind>",
    ]
)

CRON_USAGE = "\n".join(
    [
        "Usage:",
        "/cron list",
        '/cron add --session A --cron "*/5 * * * *" --prompt "status report" [--tz Asia/Seoul]',
        '/cron once --session A --at "2026-02-21T16:00:00+09:00" --prompt "one shot" [--tz Asia/Seoul]',
        "/cron remove <job_id>",
        "/cron enable <job_id>",
        "/cron disable <job_id>",
    ]
)

_USAGE: Dict[str, str] = {
    "/session": f"Usage: /session <{SLOT_TARGET_HINT}>",
    "/history": "Usage: /history [n]",
    "/log": "Usage: /log <on|off|status>",
    "/plan": "Usage: /plan <on|off|status>",
    "/reasoning": f"Usage: /reasoning <{'|'.join(REASONING_EFFORTS)}|status>",
    "/cron": CRON_USAGE,
    "/slot": "Usage: /slot <list|show <A-Z>|bind <A-Z> <continuation_token>>",
}


@dataclass(frozen=True)
class CommandReply:
    text: str
    session: Session
    log_enabled: bool = False
    outcome: Optional[RunOutcome] = None
    failed: bool = False


def session_summary(session: Session) -> str:
    return f"Session Slot: {session.slot}\nSession Name: {session.id}"


def is_command(text: str) -> bool:
    value = str(text or "").lstrip()
    return value.startswith("/") or value.startswith(":")


def parse_args(raw: str) -> Tuple[List[str], Dict[str, str]]:
    try:
        tokens = shlex.split(raw)
    except ValueError as exc:
        raise ValidationError(f"Could not parse arguments: {exc}") from exc
    positional: List[str] = []
    flags: Dict[str, str] = {}
    idx = 0
    while idx < len(tokens):
        token = tokens[idx]
        if token.startswith("--"):
            flags[token[2:]] = tokens[idx + 1] if idx + 1 < len(tokens) else ""
            idx += 2
            continue
        positional.append(token)
        idx += 1
    return positional, flags


Handler = Callable[["CommandRouter", str, Channel, Session, List[str], str], Awaitable[str]]


class CommandRouter:
    """Slash commands and plain prompts shared by every front-end."""

    def __init__(
        self,
        registry: SessionRegistry,
        prompt_runner: PromptRunner,
        cron_store: ScheduledJobStore,
        interactions: InteractionLog,
        default_tz: str = "UTC",
        max_output_chars: int = 3500,
    ):
        self._registry = registry
        self._prompt_runner = prompt_runner
        self._cron_store = cron_store
        self._interactions = interactions
        self._default_tz = default_tz
        self._max_output_chars = max_output_chars

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def current_session(self, chat_id: str, channel: Channel) -> Session:
        return self._registry.get_or_create_active_session(chat_id, channel)

    async def handle(
        self,
        chat_id: str,
        channel: Channel,
        text: str,
        on_stdout: Optional[ChunkCallback] = None,
    ) -> CommandReply:
        line = str(text or "").strip()
        if is_command(line):
            return await self.handle_command(chat_id, channel, line)
        return await self.run_prompt(chat_id, channel, line, on_stdout=on_stdout)

    async def handle_command(self, chat_id: str, channel: Channel, line: str) -> CommandReply:
        if line.startswith(":"):
            line = f"/{line[1:]}"
        cmd, _, rest = line.partition(" ")
        cmd = cmd.lower().split("@", 1)[0]
        session = self.current_session(chat_id, channel)
        handler = _COMMANDS.get(cmd)
        if handler is None:
            return self._reply(f"Unknown command: {cmd}\n\n{HELP_TEXT}", session, failed=True)
        try:
            text = await handler(self, chat_id, channel, session, rest.split(), rest)
        except BusyError as exc:
            return self._reply(f"{exc} Try again shortly.", self.current_session(chat_id, channel), failed=True)
        except (NotFoundError, AmbiguousError, ValidationError) as exc:
            usage = _USAGE.get(cmd, HELP_TEXT)
            return self._reply(f"{exc}\n{usage}", self.current_session(chat_id, channel), failed=True)
        return self._reply(text, self.current_session(chat_id, channel))

    async def run_prompt(
        self,
        chat_id: str,
        channel: Channel,
        prompt: str,
        on_stdout: Optional[ChunkCallback] = None,
    ) -> CommandReply:
        session = self.current_session(chat_id, channel)
        if not prompt:
            return self._reply("(empty prompt)", session)
        try:
            outcome = await self._prompt_runner.run(session, prompt, channel, on_stdout=on_stdout)
        except BusyError as exc:
            return self._reply(f"{exc} Try again shortly.", session, failed=True)
        except NotFoundError as exc:
            # The session was replaced while its run was in flight.
            return self._reply(f"{exc}\nThe run finished but its session no longer exists.", session, failed=True)
        body = format_run_output(outcome.result.output, outcome.result.error, self._max_output_chars)
        return CommandReply(
            text=self._with_headers(outcome, body),
            session=outcome.session,
            log_enabled=self._interactions.is_enabled(),
            outcome=outcome,
        )

    def _with_headers(self, outcome: RunOutcome, body: str) -> str:
        if not self._interactions.is_enabled():
            return body
        lines: List[str] = []
        if outcome.interaction_id is not None:
            lines.append(f"Req#: {outcome.interaction_id}")
        lines.append(session_summary(outcome.session))
        if (outcome.result.exit_code or 0) != 0:
            lines.append(f"Exit: {outcome.result.exit_code if outcome.result.exit_code is not None else 'null'}")
        if outcome.result.duration_ms > SLOW_RUN_MS:
            lines.append(f"Time: {outcome.result.duration_ms}ms")
        return "\n".join(lines) + "\n\n" + body

    def _reply(self, text: str, session: Session, failed: bool = False) -> CommandReply:
        return CommandReply(text=text, session=session, log_enabled=self._interactions.is_enabled(), failed=failed)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _help(self, chat_id, channel, session, parts, rest) -> str:
        return HELP_TEXT

    async def _new(self, chat_id, channel, session, parts, rest) -> str:
        created = self._registry.create_and_activate(chat_id, channel, is_busy=self._prompt_runner.locks.is_busy)
        return f"Switched to session slot {created.slot}"

    async def _reset(self, chat_id, channel, session, parts, rest) -> str:
        fresh = self._registry.recreate_at_slot(
            chat_id, session.slot, channel, is_busy=self._prompt_runner.locks.is_busy
        )
        return f"Started a fresh session in slot {fresh.slot}"

    async def _session(self, chat_id, channel, session, parts, rest) -> str:
        if not parts:
            rows = self._registry.list_sessions(chat_id)
            lines = [
                f"{'*' if s.id == session.id else ' '} {s.slot} | {s.id} | updated={s.updated_at.isoformat()}"
                for s in rows
            ]
            return "\n".join(lines + ["", _USAGE["/session"]])
        target = self._registry.set_active_session(
            chat_id, parts[0], channel, is_busy=self._prompt_runner.locks.is_busy
        )
        return f"Switched to session slot {target.slot}"

    async def _where(self, chat_id, channel, session, parts, rest) -> str:
        prefs = self._registry.get_preferences(session.id)
        return "\n".join(
            [
                session_summary(session),
                f"Continuation: {session.continuation_token or '-'}",
                f"Channel: {channel.value}",
                f"Plan mode: {'ON' if prefs.plan_mode else 'OFF'}",
                f"Reasoning: {prefs.reasoning_effort}",
            ]
        )

    async def _history(self, chat_id, channel, session, parts, rest) -> str:
        limit = 5
        if parts:
            try:
                limit = max(1, int(parts[0]))
            except ValueError as exc:
                raise ValidationError(f"Invalid history size: {parts[0]}") from exc
        rows = self._registry.list_history(session.id, limit)
        if not rows:
            return "No history yet."
        return "\n".join(
            f"{r.id} | {r.timestamp.isoformat()} | exit={r.exit_code if r.exit_code is not None else 'null'}"
            f" | {r.duration_ms}ms | {r.input[:60]}"
            for r in rows
        )

    async def _log(self, chat_id, channel, session, parts, rest) -> str:
        mode = (parts[0] if parts else "status").lower()
        if mode == "on":
            self._interactions.set_enabled(True)
        elif mode == "off":
            self._interactions.set_enabled(False)
        elif mode != "status":
            return _USAGE["/log"]
        return f"Interaction log: {'ON' if self._interactions.is_enabled() else 'OFF'}"

    async def _plan(self, chat_id, channel, session, parts, rest) -> str:
        mode = (parts[0] if parts else "status").lower()
        if mode == "on":
            enabled = self._registry.set_plan_mode(session.id, True)
        elif mode == "off":
            enabled = self._registry.set_plan_mode(session.id, False)
        elif mode == "status":
            enabled = self._registry.get_plan_mode(session.id)
        else:
            return _USAGE["/plan"]
        return f"Plan mode: {'ON' if enabled else 'OFF'}"

    async def _reasoning(self, chat_id, channel, session, parts, rest) -> str:
        mode = (parts[0] if parts else "status").lower()
        if mode == "status":
            effort = self._registry.get_reasoning_effort(session.id)
        else:
            effort = self._registry.set_reasoning_effort(session.id, mode)
        return f"Reasoning effort: {effort}"

    async def _slot(self, chat_id, channel, session, parts, rest) -> str:
        sub = (parts[0] if parts else "list").lower()
        if sub == "list":
            rows = self._registry.list_slot_bindings(chat_id)
            if not rows:
                return "No slots found."
            return "\n".join(
                f"{r.slot} | session={r.session_id} | continuation={r.continuation_token or '-'}" for r in rows
            )
        if sub == "show":
            slot = normalize_slot(parts[1] if len(parts) > 1 else "")
            if slot is None:
                return "Usage: /slot show <A-Z>"
            session_id = self._registry.resolve_session_id(slot, chat_id)
            target = self._registry.get_session(session_id) if session_id else None
            if target is None:
                return f"No session in slot {slot}"
            return f"{session_summary(target)}\nContinuation: {target.continuation_token or '-'}"
        if sub == "bind":
            if len(parts) < 3:
                return "Usage: /slot bind <A-Z> <continuation_token>"
            bound = self._registry.bind_continuation(chat_id, parts[1], parts[2])
            return f"Bound {bound.slot} -> {bound.continuation_token}\nSession Name: {bound.id}"
        return _USAGE["/slot"]

    async def _cron(self, chat_id, channel, session, parts, rest) -> str:
        positional, flags = parse_args(rest)
        sub = positional[0].lower() if positional else "help"
        if sub == "help":
            return CRON_USAGE
        if sub == "list":
            jobs = self._cron_store.list(chat_id)
            if not jobs:
                return "No cron jobs."
            return "\n".join(
                f"{j.id} | {'on' if j.enabled else 'off'}{' | once' if j.run_once else ''}"
                f" | session={j.session_target} | cron={j.cron}{f' tz={j.timezone}' if j.timezone else ''}"
                f" | next={j.next_run_at.isoformat()}"
                f" | last={j.last_run_at.isoformat() if j.last_run_at else '-'} | status={j.last_status or '-'}"
                for j in jobs
            )
        if sub in ("add", "once"):
            return self._cron_create(chat_id, sub, flags)
        if sub in ("remove", "enable", "disable"):
            if len(positional) < 2:
                return "Missing job id."
            job_id = positional[1]
            existing = self._cron_store.get(job_id)
            if existing is None:
                raise NotFoundError(f"Not found: {job_id}")
            if existing.chat_id != chat_id:
                return "Access denied for this job."
            if sub == "remove":
                self._cron_store.remove(job_id)
                return f"Removed {job_id}"
            self._cron_store.set_enabled(job_id, sub == "enable")
            return f"{'Enabled' if sub == 'enable' else 'Disabled'} {job_id}"
        return "Unknown /cron subcommand. Use /cron help"

    def _cron_create(self, chat_id: str, sub: str, flags: Dict[str, str]) -> str:
        target = flags.get("session", "").strip()
        prompt = flags.get("prompt", "").strip()
        tz_name = flags.get("tz", "").strip() or self._default_tz
        when_key = "at" if sub == "once" else "cron"
        when = flags.get(when_key, "").strip()
        if not target or not when or not prompt:
            raise ValidationError(f"Missing --session, --{when_key} or --prompt.")
        self._registry.ensure_session_for_target(chat_id, target)
        if sub == "once":
            shot = build_one_shot_cron(when, tz_name=tz_name)
            job = self._cron_store.create(chat_id, target, shot.cron, prompt, timezone=tz_name, run_once=True)
            return f"Created one-shot {job.id}\nrunAt={shot.run_at.isoformat()}\nnext={job.next_run_at.isoformat()}"
        job = self._cron_store.create(chat_id, target, when, prompt, timezone=tz_name)
        return f"Created {job.id}\nnext={job.next_run_at.isoformat()}"


_COMMANDS: Dict[str, Handler] = {
    "/help": CommandRouter._help,
    "/start": CommandRouter._help,
    "/new": CommandRouter._new,
    "/reset": CommandRouter._reset,
    "/session": CommandRouter._session,
    "/where": CommandRouter._where,
    "/history": CommandRouter._history,
    "/log": CommandRouter._log,
    "/plan": CommandRouter._plan,
    "/reasoning": CommandRouter._reasoning,
    "/slot": CommandRouter._slot,
    "/cron": CommandRouter._cron,
}

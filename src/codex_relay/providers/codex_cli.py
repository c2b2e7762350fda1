import asyncio
import codecs
import logging
import os
import re
import shlex
import shutil
import time
from pathlib import Path
from typing import Dict, List, Optional

from codex_relay.domain.contracts import AgentRequest, ChunkCallback, RunResult
from codex_relay.observability.structured_log import log_json
from codex_relay.util import redact

logger = logging.getLogger(__name__)

DEFAULT_ARGS_TEMPLATE = "exec --skip-git-repo-check {prompt}"
DEFAULT_VERSION_TIMEOUT_SEC = 10
READ_CHUNK_BYTES = 4096

_SESSION_ID_RE = re.compile(r"session id:\s*([0-9a-f-]{16,})", re.IGNORECASE)


def extract_continuation_token(stdout: str, stderr: str) -> Optional[str]:
    match = _SESSION_ID_RE.search(f"{stdout}\n{stderr}")
    return match.group(1) if match else None


def reasoning_args(effort: str) -> List[str]:
    value = str(effort or "none").strip().lower()
    if value in ("", "none"):
        return []
    return ["-c", f'model_reasoning_effort="{value}"']


def build_args(
    template: str,
    prompt: str,
    session_id: str,
    continuation_token: Optional[str] = None,
    reasoning_effort: str = "none",
) -> List[str]:
    template_tokens = shlex.split(template or "{prompt}")
    substitutions = {
        "{prompt}": prompt,
        "{session_id}": session_id,
        "{codex_session_id}": continuation_token or "",
    }
    parsed: List[str] = []
    for token in template_tokens:
        for placeholder, value in substitutions.items():
            token = token.replace(placeholder, value)
        parsed.append(token)

    effort_args = reasoning_args(reasoning_effort)
    if continuation_token and parsed and parsed[0] == "exec" and "resume" not in parsed:
        # Options come from the raw template so prompt text is never taken for an option value.
        options = [t for t in template_tokens[1:] if t.startswith("-")]
        return ["exec", "resume", *options, *effort_args, continuation_token, prompt]
    if parsed and parsed[0] == "exec" and effort_args:
        return [parsed[0], *effort_args, *parsed[1:]]
    return parsed


def resolve_codex_command(configured: str) -> str:
    preferred = str(configured or "").strip()
    if preferred and preferred != "auto":
        if os.sep in preferred or "/" in preferred or preferred.endswith(".exe"):
            candidate = Path(preferred).expanduser().resolve()
            if candidate.exists():
                return str(candidate)
            raise FileNotFoundError(f"Configured CODEX_COMMAND path does not exist: {candidate}")
        located = shutil.which(preferred)
        if located:
            return located
    located = shutil.which("codex")
    if located:
        return located
    raise FileNotFoundError("Could not locate codex executable. Set CODEX_COMMAND to an absolute path.")


class CodexCliRunner:
    """Runs one ``codex`` invocation per request and never raises.

    Spawn failures, timeouts and non-zero exits all come back inside the
    ``RunResult`` so callers handle a single success/failure surface.
    """

    def __init__(
        self,
        command: str = "codex",
        args_template: str = DEFAULT_ARGS_TEMPLATE,
        node_options: str = "",
        base_env: Optional[Dict[str, str]] = None,
    ):
        self._command = command
        self._args_template = args_template
        self._node_options = node_options
        self._base_env = base_env

    async def invoke(self, request: AgentRequest) -> RunResult:
        started = time.monotonic()
        args = build_args(
            self._args_template,
            prompt=request.prompt,
            session_id=request.session_id,
            continuation_token=request.continuation_token,
            reasoning_effort=request.reasoning_effort,
        )
        log_json(
            logger,
            "agent.invoke.start",
            session_id=request.session_id,
            resume=bool(request.continuation_token),
            timeout_sec=request.timeout_sec,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(request.workdir) if request.workdir else None,
                env=self._build_env(request.env),
            )
        except (OSError, ValueError) as exc:
            log_json(logger, "agent.invoke.error", session_id=request.session_id, kind="spawn_failed")
            return RunResult(
                output="",
                error=f"Failed to execute command: {exc}",
                exit_code=None,
                duration_ms=_elapsed_ms(started),
                continuation_token=None,
            )

        stdout_parts: List[str] = []
        stderr_parts: List[str] = []
        completion = asyncio.gather(
            _pump(proc.stdout, stdout_parts, request.on_stdout),
            _pump(proc.stderr, stderr_parts, request.on_stderr),
            proc.wait(),
        )
        timed_out = False
        try:
            await asyncio.wait_for(asyncio.shield(completion), timeout=max(0.001, float(request.timeout_sec)))
        except asyncio.TimeoutError:
            timed_out = True
            _kill(proc)
            try:
                await asyncio.wait_for(completion, timeout=2)
            except asyncio.TimeoutError:
                completion.cancel()

        stdout = "".join(stdout_parts)
        stderr = "".join(stderr_parts)
        token = extract_continuation_token(stdout, stderr)
        duration_ms = _elapsed_ms(started)

        if timed_out:
            error = f"Timed out after {request.timeout_sec}s"
            if stderr:
                error += f"\n{stderr}"
            log_json(logger, "agent.invoke.finish", session_id=request.session_id, status="timeout")
            return RunResult(output=stdout, error=error, exit_code=None, duration_ms=duration_ms, continuation_token=token)

        exit_code = proc.returncode
        if stderr.strip():
            logger.debug("codex stderr:\n%s", redact(stderr))
        error: Optional[str] = None
        if exit_code != 0:
            error = stderr.strip() or f"Exited with code {exit_code}"
        log_json(
            logger,
            "agent.invoke.finish",
            session_id=request.session_id,
            returncode=exit_code,
            status="completed" if exit_code == 0 else "failed",
            duration_ms=duration_ms,
        )
        return RunResult(
            output=stdout,
            error=error,
            exit_code=exit_code,
            duration_ms=duration_ms,
            continuation_token=token,
        )

    async def version(self) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=DEFAULT_VERSION_TIMEOUT_SEC)
        except (OSError, asyncio.TimeoutError):
            return "unknown"
        if proc.returncode != 0:
            return "unknown"
        return redact(stdout.decode(errors="replace").strip() or "unknown")

    def _build_env(self, overrides: Dict[str, str]) -> Dict[str, str]:
        env = dict(self._base_env if self._base_env is not None else os.environ)
        if self._node_options:
            env["NODE_OPTIONS"] = self._node_options
        env.update(overrides or {})
        return env


async def _pump(
    stream: Optional[asyncio.StreamReader],
    parts: List[str],
    callback: Optional[ChunkCallback],
) -> None:
    if stream is None:
        return
    # Reads can split a multi-byte character; the decoder carries the tail over.
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        text = decoder.decode(chunk, final=not chunk)
        if text:
            parts.append(text)
            if callback is not None:
                try:
                    callback(text)
                except Exception:
                    logger.exception("output callback failed")
        if not chunk:
            return


def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Mapping, Optional

from codex_relay.providers.codex_cli import DEFAULT_ARGS_TEMPLATE
from codex_relay.services.session_files import DEFAULT_SESSIONS_DIR

TOKEN_KEY = "TELEGRAM_BOT_TOKEN"
ALLOWLIST_KEY = "ALLOWED_CHAT_IDS"

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "codex-relay"
DEFAULT_DB_NAME = "relay.db"


@dataclass(frozen=True)
class Config:
    telegram_token: str
    allowed_chat_ids: FrozenSet[str]
    config_dir: Path
    env_path: Path
    db_path: Path
    codex_command: str = "auto"
    codex_args_template: str = DEFAULT_ARGS_TEMPLATE
    codex_workdir: Path = Path(".")
    codex_timeout_sec: int = 120
    codex_node_options: str = ""
    codex_sessions_dir: Path = DEFAULT_SESSIONS_DIR
    max_output_chars: int = 3500
    cron_poll_sec: int = 10
    cron_notify_telegram: bool = True
    cron_notify_verbose: bool = False
    cron_notify_max_chars: int = 1200
    cron_default_tz: str = "UTC"
    chat_job_concurrency: int = 2
    chat_job_max_rows: int = 500
    crash_review_slot: str = ""
    log_level: str = "INFO"

    def is_allowed(self, chat_id: str) -> bool:
        if not self.allowed_chat_ids:
            return True
        return str(chat_id) in self.allowed_chat_ids

    def redacted(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for key, value in self.__dict__.items():
            if key == "telegram_token":
                value = f"{value[:4]}...REDACTED" if value else ""
            elif isinstance(value, frozenset):
                value = ",".join(sorted(value))
            out[key] = str(value)
        return out


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip().strip('"').strip("'")
    except OSError as exc:
        print(f"Failed to read .env: {exc}", file=sys.stderr)
    return data


def get_env_value(key: str, env_file: Mapping[str, str], environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    source = os.environ if environ is None else environ
    return source.get(key) or env_file.get(key)


def apply_env_defaults(env_file: Dict[str, str], target_env: Optional[Dict[str, str]] = None) -> int:
    """Populate missing process env vars from .env-style mapping.

    Existing environment values are never overwritten.
    Returns the number of keys applied.
    """
    target = target_env if target_env is not None else os.environ  # type: ignore[assignment]
    applied = 0
    for raw_key, raw_value in (env_file or {}).items():
        key = str(raw_key or "").strip()
        if not key:
            continue
        if key in target and str(target.get(key) or "").strip():
            continue
        target[key] = str(raw_value or "")
        applied += 1
    return applied


def parse_allowlist(raw: Optional[str]) -> FrozenSet[str]:
    if not raw:
        return frozenset()
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def load_env_with_fallback(config_dir: Path) -> Dict[str, str]:
    data = load_env_file(get_env_path(config_dir))
    if data:
        return data
    return load_env_file(Path.cwd() / ".env")


def load_config(config_dir: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    resolved_dir = Path(config_dir or DEFAULT_CONFIG_DIR).expanduser()
    env_file = load_env_with_fallback(resolved_dir)

    def _str(key: str, default: str = "") -> str:
        value = get_env_value(key, env_file, environ)
        return value.strip() if value is not None else default

    def _int(key: str, default: int) -> int:
        raw = _str(key)
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError:
            return default
        return max(1, value)

    def _bool(key: str, default: bool) -> bool:
        raw = _str(key).lower()
        if not raw:
            return default
        return raw in ("1", "true", "yes", "on")

    db_raw = _str("DB_FILE")
    db_path = Path(db_raw).expanduser() if db_raw else resolved_dir / DEFAULT_DB_NAME
    sessions_raw = _str("CODEX_SESSIONS_DIR")
    return Config(
        telegram_token=_str(TOKEN_KEY),
        allowed_chat_ids=parse_allowlist(_str(ALLOWLIST_KEY)),
        config_dir=resolved_dir,
        env_path=get_env_path(resolved_dir),
        db_path=db_path,
        codex_command=_str("CODEX_COMMAND", "auto") or "auto",
        codex_args_template=_str("CODEX_ARGS_TEMPLATE") or DEFAULT_ARGS_TEMPLATE,
        codex_workdir=Path(_str("CODEX_WORKDIR", ".") or ".").expanduser(),
        codex_timeout_sec=_int("CODEX_TIMEOUT_SEC", 120),
        codex_node_options=_str("CODEX_NODE_OPTIONS"),
        codex_sessions_dir=Path(sessions_raw).expanduser() if sessions_raw else DEFAULT_SESSIONS_DIR,
        max_output_chars=_int("MAX_OUTPUT_CHARS", 3500),
        cron_poll_sec=_int("CRON_POLL_SEC", 10),
        cron_notify_telegram=_bool("CRON_NOTIFY_TELEGRAM", True),
        cron_notify_verbose=_bool("CRON_NOTIFY_VERBOSE", False),
        cron_notify_max_chars=_int("CRON_NOTIFY_MAX_CHARS", 1200),
        cron_default_tz=_str("CRON_DEFAULT_TZ", "UTC") or "UTC",
        chat_job_concurrency=_int("CHAT_JOB_CONCURRENCY", 2),
        chat_job_max_rows=_int("CHAT_JOB_MAX_ROWS", 500),
        crash_review_slot=_str("CRASH_REVIEW_SLOT").upper(),
        log_level=(_str("LOG_LEVEL", "INFO") or "INFO").upper(),
    )

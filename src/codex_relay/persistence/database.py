import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Optional


class Database:
    """One shared sqlite connection for every store pointed at the same file.

    Writers serialize on a re-entrant lock; ``transaction()`` blocks nest and
    only the outermost one commits.
    """

    def __init__(self, db_path: Path):
        self.path = Path(db_path).expanduser().resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.path), check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA foreign_keys = ON")
        with self.transaction() as conn:
            _init_schema(conn)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if outermost:
                self._conn.execute("COMMIT")

    def query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def query_all(self, sql: str, params: tuple = ()) -> list:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class ConnectionRegistry:
    """Process-scoped cache of open databases keyed by resolved file path."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._databases: Dict[Path, Database] = {}

    def open(self, db_path: Path) -> Database:
        resolved = Path(db_path).expanduser().resolve()
        with self._lock:
            existing = self._databases.get(resolved)
            if existing is not None:
                return existing
            db = Database(resolved)
            self._databases[resolved] = db
            return db

    def close_all(self) -> None:
        with self._lock:
            for db in self._databases.values():
                db.close()
            self._databases.clear()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _init_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            short_id TEXT NOT NULL,
            chat_id TEXT,
            codex_session_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_chat_slot ON sessions (chat_id, short_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_chat ON sessions (chat_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS run_history (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            input TEXT NOT NULL,
            output TEXT NOT NULL,
            error TEXT,
            exit_code INTEGER,
            duration_ms INTEGER NOT NULL,
            FOREIGN KEY (session_id) REFERENCES sessions (id) ON DELETE CASCADE
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_run_history_session_ts ON run_history (session_id, timestamp)")
    _ensure_active_sessions_table(conn)
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chat_meta (
            chat_id TEXT PRIMARY KEY,
            next_slot INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS session_preferences (
            session_id TEXT PRIMARY KEY,
            plan_mode INTEGER NOT NULL DEFAULT 0,
            reasoning_effort TEXT NOT NULL DEFAULT 'none'
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scheduled_jobs (
            id TEXT PRIMARY KEY,
            enabled INTEGER NOT NULL,
            chat_id TEXT NOT NULL,
            session_target TEXT NOT NULL,
            cron TEXT NOT NULL,
            prompt TEXT NOT NULL,
            timezone TEXT,
            run_once INTEGER NOT NULL DEFAULT 0,
            next_run_at TEXT NOT NULL,
            last_run_at TEXT,
            last_status TEXT,
            last_error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_due ON scheduled_jobs (enabled, next_run_at)")
    # Lightweight migration for job tables created before run-once jobs existed.
    job_cols = {c["name"] for c in conn.execute("PRAGMA table_info(scheduled_jobs)").fetchall()}
    if "run_once" not in job_cols:
        conn.execute("ALTER TABLE scheduled_jobs ADD COLUMN run_once INTEGER NOT NULL DEFAULT 0")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chat_jobs (
            id TEXT PRIMARY KEY,
            chat_id TEXT NOT NULL,
            session_id TEXT NOT NULL,
            session_slot TEXT NOT NULL,
            prompt TEXT NOT NULL,
            status TEXT NOT NULL,
            output TEXT,
            error TEXT,
            exit_code INTEGER,
            duration_ms INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            started_at TEXT,
            finished_at TEXT
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chat_jobs_status ON chat_jobs (status, created_at)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS interaction_settings (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            enabled INTEGER NOT NULL,
            last_id INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS interactions (
            id INTEGER PRIMARY KEY,
            timestamp TEXT NOT NULL,
            channel TEXT NOT NULL,
            session_id TEXT NOT NULL,
            chat_id TEXT,
            input TEXT NOT NULL,
            output TEXT NOT NULL,
            error TEXT,
            exit_code INTEGER,
            duration_ms INTEGER NOT NULL
        )
        """
    )


def _ensure_active_sessions_table(conn: sqlite3.Connection) -> None:
    exists = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'active_sessions'"
    ).fetchone()
    create_sql = """
        CREATE TABLE active_sessions (
            chat_id TEXT NOT NULL,
            channel TEXT NOT NULL,
            session_id TEXT NOT NULL,
            PRIMARY KEY (chat_id, channel)
        )
    """
    if not exists:
        conn.execute(create_sql)
        return
    cols = {c["name"] for c in conn.execute("PRAGMA table_info(active_sessions)").fetchall()}
    if "channel" in cols:
        return
    # Pointers from before per-channel tracking all become the shared pointer.
    conn.execute("ALTER TABLE active_sessions RENAME TO active_sessions_legacy")
    conn.execute(create_sql)
    conn.execute(
        """
        INSERT INTO active_sessions (chat_id, channel, session_id)
        SELECT chat_id, 'shared', session_id FROM active_sessions_legacy
        """
    )
    conn.execute("DROP TABLE active_sessions_legacy")

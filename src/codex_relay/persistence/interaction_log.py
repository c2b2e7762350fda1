import sqlite3
from typing import List, Optional

from codex_relay.domain.runs import InteractionRecord
from codex_relay.persistence.database import Database, parse_iso, to_iso, utc_now

CRON_CHANNEL = "cron"


class InteractionLog:
    """Opt-in audit trail of every prompt/response pair across channels.

    Disabled by default; ``append`` is a no-op until ``set_enabled(True)``.
    """

    def __init__(self, db: Database):
        self._db = db

    def is_enabled(self) -> bool:
        row = self._db.query_one("SELECT enabled FROM interaction_settings WHERE id = 1")
        return bool(row["enabled"]) if row else False

    def set_enabled(self, enabled: bool) -> bool:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO interaction_settings (id, enabled, last_id) VALUES (1, ?, 0)
                ON CONFLICT (id) DO UPDATE SET enabled = excluded.enabled
                """,
                (1 if enabled else 0,),
            )
        return self.is_enabled()

    def append(
        self,
        channel: str,
        session_id: str,
        chat_id: Optional[str],
        input: str,
        output: str,
        error: Optional[str],
        exit_code: Optional[int],
        duration_ms: int,
    ) -> Optional[int]:
        with self._db.transaction() as conn:
            row = conn.execute("SELECT enabled, last_id FROM interaction_settings WHERE id = 1").fetchone()
            if not row or not row["enabled"]:
                return None
            next_id = int(row["last_id"]) + 1
            conn.execute("UPDATE interaction_settings SET last_id = ? WHERE id = 1", (next_id,))
            conn.execute(
                """
                INSERT INTO interactions
                    (id, timestamp, channel, session_id, chat_id, input, output, error, exit_code, duration_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    next_id,
                    to_iso(utc_now()),
                    str(getattr(channel, "value", channel)),
                    session_id,
                    chat_id,
                    input,
                    output,
                    error,
                    exit_code,
                    int(duration_ms),
                ),
            )
            return next_id

    def list_recent(self, limit: int = 20, chat_id: Optional[str] = None) -> List[InteractionRecord]:
        if chat_id is None:
            rows = self._db.query_all(
                "SELECT * FROM interactions ORDER BY id DESC LIMIT ?",
                (max(1, int(limit)),),
            )
        else:
            rows = self._db.query_all(
                "SELECT * FROM interactions WHERE chat_id = ? ORDER BY id DESC LIMIT ?",
                (chat_id, max(1, int(limit))),
            )
        return [_row_to_interaction(r) for r in reversed(rows)]


def _row_to_interaction(row: sqlite3.Row) -> InteractionRecord:
    return InteractionRecord(
        id=int(row["id"]),
        timestamp=parse_iso(row["timestamp"]),  # type: ignore[arg-type]
        channel=row["channel"],
        session_id=row["session_id"],
        chat_id=row["chat_id"],
        input=row["input"],
        output=row["output"],
        error=row["error"],
        exit_code=row["exit_code"],
        duration_ms=int(row["duration_ms"] or 0),
    )

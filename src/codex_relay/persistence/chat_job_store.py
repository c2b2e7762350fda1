import logging
import secrets
import sqlite3
import time
from typing import List, Optional

from codex_relay.domain.jobs import (
    CHAT_JOB_COMPLETED,
    CHAT_JOB_FAILED,
    CHAT_JOB_PENDING,
    CHAT_JOB_RUNNING,
    ChatJobRecord,
)
from codex_relay.persistence.database import Database, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

MIN_RETAINED_ROWS = 100

_JOB_COLUMNS = (
    "id, chat_id, session_id, session_slot, prompt, status, output, error, exit_code, duration_ms, "
    "created_at, updated_at, started_at, finished_at"
)


class ChatJobStore:
    """Durable prompt queue: pending -> running -> completed | failed."""

    def __init__(self, db: Database):
        self._db = db

    def recover_stuck(self) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE chat_jobs
                SET status = ?, updated_at = ?, started_at = NULL, error = NULL
                WHERE status = ?
                """,
                (CHAT_JOB_PENDING, to_iso(utc_now()), CHAT_JOB_RUNNING),
            )
            recovered = cur.rowcount
        if recovered:
            logger.warning("chat_job.recovered count=%d", recovered)
        return recovered

    def create_pending(self, chat_id: str, session_id: str, session_slot: str, prompt: str) -> ChatJobRecord:
        now = to_iso(utc_now())
        job_id = f"job_{int(time.time() * 1000)}_{secrets.token_hex(2)}"
        with self._db.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO chat_jobs ({_JOB_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, NULL, NULL, NULL, NULL, ?, ?, NULL, NULL)
                """,
                (job_id, chat_id, session_id, session_slot, prompt, CHAT_JOB_PENDING, now, now),
            )
            return self._fetch(conn, job_id)  # type: ignore[return-value]

    def get(self, job_id: str) -> Optional[ChatJobRecord]:
        row = self._db.query_one(f"SELECT {_JOB_COLUMNS} FROM chat_jobs WHERE id = ?", (job_id,))
        return _row_to_job(row) if row else None

    def list_recent_by_slot(self, chat_id: str, session_slot: str, limit: int = 20) -> List[ChatJobRecord]:
        rows = self._db.query_all(
            f"""
            SELECT {_JOB_COLUMNS} FROM chat_jobs
            WHERE chat_id = ? AND session_slot = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (chat_id, session_slot, max(1, int(limit))),
        )
        return [_row_to_job(r) for r in rows]

    def claim_next_pending(self) -> Optional[ChatJobRecord]:
        row = self._db.query_one(
            "SELECT id FROM chat_jobs WHERE status = ? ORDER BY created_at ASC, rowid ASC LIMIT 1",
            (CHAT_JOB_PENDING,),
        )
        if not row:
            return None
        return self.claim(row["id"])

    def claim(self, job_id: str) -> Optional[ChatJobRecord]:
        """Conditional pending -> running; None when another worker got there first."""
        now = to_iso(utc_now())
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE chat_jobs
                SET status = ?, updated_at = ?, started_at = ?, error = NULL
                WHERE id = ? AND status = ?
                """,
                (CHAT_JOB_RUNNING, now, now, job_id, CHAT_JOB_PENDING),
            )
            if cur.rowcount == 0:
                return None
            return self._fetch(conn, job_id)

    def mark_completed(
        self,
        job_id: str,
        output: str,
        error: Optional[str],
        exit_code: Optional[int],
        duration_ms: int,
    ) -> Optional[ChatJobRecord]:
        now = to_iso(utc_now())
        with self._db.transaction() as conn:
            conn.execute(
                """
                UPDATE chat_jobs
                SET status = ?, updated_at = ?, finished_at = ?,
                    output = ?, error = ?, exit_code = ?, duration_ms = ?
                WHERE id = ? AND status = ?
                """,
                (CHAT_JOB_COMPLETED, now, now, output, error, exit_code, int(duration_ms), job_id, CHAT_JOB_RUNNING),
            )
            return self._fetch(conn, job_id)

    def mark_failed(self, job_id: str, error: str) -> Optional[ChatJobRecord]:
        now = to_iso(utc_now())
        with self._db.transaction() as conn:
            conn.execute(
                """
                UPDATE chat_jobs
                SET status = ?, updated_at = ?, finished_at = ?, error = ?
                WHERE id = ? AND status = ?
                """,
                (CHAT_JOB_FAILED, now, now, error, job_id, CHAT_JOB_RUNNING),
            )
            return self._fetch(conn, job_id)

    def prune(self, max_rows: int) -> int:
        cap = max(MIN_RETAINED_ROWS, int(max_rows))
        with self._db.transaction() as conn:
            total = conn.execute("SELECT COUNT(1) AS c FROM chat_jobs").fetchone()["c"]
            if total <= cap:
                return 0
            cur = conn.execute(
                """
                DELETE FROM chat_jobs
                WHERE id IN (
                    SELECT id FROM chat_jobs
                    WHERE status IN (?, ?)
                    ORDER BY updated_at ASC
                    LIMIT ?
                )
                """,
                (CHAT_JOB_COMPLETED, CHAT_JOB_FAILED, total - cap),
            )
            return cur.rowcount

    def _fetch(self, conn: sqlite3.Connection, job_id: str) -> Optional[ChatJobRecord]:
        row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM chat_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None


def _row_to_job(row: sqlite3.Row) -> ChatJobRecord:
    return ChatJobRecord(
        id=row["id"],
        chat_id=row["chat_id"],
        session_id=row["session_id"],
        session_slot=row["session_slot"],
        prompt=row["prompt"],
        status=row["status"],
        output=row["output"],
        error=row["error"],
        exit_code=row["exit_code"],
        duration_ms=row["duration_ms"],
        created_at=parse_iso(row["created_at"]),  # type: ignore[arg-type]
        updated_at=parse_iso(row["updated_at"]),  # type: ignore[arg-type]
        started_at=parse_iso(row["started_at"]),
        finished_at=parse_iso(row["finished_at"]),
    )

import logging
import secrets
import sqlite3
from datetime import datetime
from typing import List, Optional

from codex_relay.domain.errors import ValidationError
from codex_relay.domain.jobs import JOB_STATUS_ERROR, JOB_STATUS_OK, ScheduledJob
from codex_relay.persistence.database import Database, parse_iso, to_iso, utc_now
from codex_relay.services.cron_utils import cron_next_run, resolve_zone, validate_cron

logger = logging.getLogger(__name__)

_JOB_COLUMNS = (
    "id, enabled, chat_id, session_target, cron, prompt, timezone, run_once, next_run_at, "
    "last_run_at, last_status, last_error, created_at, updated_at"
)


class ScheduledJobStore:
    def __init__(self, db: Database):
        self._db = db

    def create(
        self,
        chat_id: str,
        session_target: str,
        cron: str,
        prompt: str,
        timezone: Optional[str] = None,
        run_once: bool = False,
        now: Optional[datetime] = None,
    ) -> ScheduledJob:
        if not str(chat_id or "").strip():
            raise ValidationError("chat id is required")
        if not str(session_target or "").strip():
            raise ValidationError("session target is required")
        if not str(prompt or "").strip():
            raise ValidationError("prompt is required")
        cron_expr = validate_cron(cron)
        tz_name = str(timezone or "").strip() or None
        if tz_name:
            resolve_zone(tz_name)
        current = now or utc_now()
        next_run = cron_next_run(cron_expr, current, tz_name)
        job_id = f"cj_{secrets.token_hex(3)}"
        stamp = to_iso(utc_now())
        with self._db.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO scheduled_jobs ({_JOB_COLUMNS})
                VALUES (?, 1, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL, ?, ?)
                """,
                (
                    job_id,
                    chat_id,
                    session_target.strip(),
                    cron_expr,
                    prompt,
                    tz_name,
                    1 if run_once else 0,
                    to_iso(next_run),
                    stamp,
                    stamp,
                ),
            )
            job = self._fetch(conn, job_id)
        logger.info("cron.job.created id=%s chat=%s cron=%r run_once=%s", job_id, chat_id, cron_expr, run_once)
        return job  # type: ignore[return-value]

    def get(self, job_id: str) -> Optional[ScheduledJob]:
        row = self._db.query_one(f"SELECT {_JOB_COLUMNS} FROM scheduled_jobs WHERE id = ?", (job_id,))
        return _row_to_job(row) if row else None

    def list(self, chat_id: Optional[str] = None) -> List[ScheduledJob]:
        if chat_id is None:
            rows = self._db.query_all(f"SELECT {_JOB_COLUMNS} FROM scheduled_jobs ORDER BY created_at ASC")
        else:
            rows = self._db.query_all(
                f"SELECT {_JOB_COLUMNS} FROM scheduled_jobs WHERE chat_id = ? ORDER BY created_at ASC",
                (chat_id,),
            )
        return [_row_to_job(r) for r in rows]

    def remove(self, job_id: str) -> bool:
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM scheduled_jobs WHERE id = ?", (job_id,))
            return cur.rowcount > 0

    def set_enabled(self, job_id: str, enabled: bool, now: Optional[datetime] = None) -> Optional[ScheduledJob]:
        with self._db.transaction() as conn:
            existing = self._fetch(conn, job_id)
            if existing is None:
                return None
            next_run = existing.next_run_at
            if enabled:
                next_run = cron_next_run(existing.cron, now or utc_now(), existing.timezone)
            conn.execute(
                "UPDATE scheduled_jobs SET enabled = ?, next_run_at = ?, updated_at = ? WHERE id = ?",
                (1 if enabled else 0, to_iso(next_run), to_iso(utc_now()), job_id),
            )
            return self._fetch(conn, job_id)

    def due_jobs(self, now: Optional[datetime] = None) -> List[ScheduledJob]:
        rows = self._db.query_all(
            f"""
            SELECT {_JOB_COLUMNS} FROM scheduled_jobs
            WHERE enabled = 1 AND next_run_at <= ?
            ORDER BY next_run_at ASC
            """,
            (to_iso(now or utc_now()),),
        )
        return [_row_to_job(r) for r in rows]

    def mark_run_result(
        self,
        job_id: str,
        ok: bool,
        error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> Optional[ScheduledJob]:
        finished = completed_at or utc_now()
        with self._db.transaction() as conn:
            existing = self._fetch(conn, job_id)
            if existing is None:
                return None
            next_run = cron_next_run(existing.cron, finished, existing.timezone)
            conn.execute(
                """
                UPDATE scheduled_jobs
                SET last_run_at = ?, last_status = ?, last_error = ?, next_run_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    to_iso(finished),
                    JOB_STATUS_OK if ok else JOB_STATUS_ERROR,
                    None if ok else error,
                    to_iso(next_run),
                    to_iso(utc_now()),
                    job_id,
                ),
            )
            return self._fetch(conn, job_id)

    def _fetch(self, conn: sqlite3.Connection, job_id: str) -> Optional[ScheduledJob]:
        row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM scheduled_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None


def _row_to_job(row: sqlite3.Row) -> ScheduledJob:
    return ScheduledJob(
        id=row["id"],
        enabled=bool(row["enabled"]),
        chat_id=row["chat_id"],
        session_target=row["session_target"],
        cron=row["cron"],
        prompt=row["prompt"],
        timezone=row["timezone"],
        run_once=bool(row["run_once"]),
        next_run_at=parse_iso(row["next_run_at"]),  # type: ignore[arg-type]
        last_run_at=parse_iso(row["last_run_at"]),
        last_status=row["last_status"],
        last_error=row["last_error"],
        created_at=parse_iso(row["created_at"]),  # type: ignore[arg-type]
        updated_at=parse_iso(row["updated_at"]),  # type: ignore[arg-type]
    )

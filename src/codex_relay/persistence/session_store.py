import logging
import re
import secrets
import sqlite3
from typing import Callable, Dict, List, Optional, Set

from codex_relay.domain.errors import AmbiguousError, BusyError, NotFoundError, ValidationError
from codex_relay.domain.runs import RunRecord
from codex_relay.domain.sessions import (
    MAX_SLOTS,
    REASONING_EFFORTS,
    SLOT_IDS,
    Channel,
    Session,
    SessionPreferences,
    SlotBinding,
    normalize_slot,
)
from codex_relay.persistence.database import Database, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

ArtifactCleaner = Callable[[str], None]
BusyCheck = Callable[[str], bool]

_SESSION_COLUMNS = "id, short_id, chat_id, codex_session_id, created_at, updated_at"


class SessionRegistry:
    """Slot-addressed sessions per chat, plus per-channel active pointers.

    Every chat owns at most 26 sessions, one per slot letter A-Z. New sessions
    take the next slot from a round-robin counter and silently evict whatever
    occupied it before. Each front-end channel keeps its own pointer to the
    session it currently talks to; the shared pointer is the fallback.
    """

    def __init__(self, db: Database, artifact_cleaner: Optional[ArtifactCleaner] = None):
        self._db = db
        self._artifact_cleaner = artifact_cleaner

    def init(self) -> None:
        with self._db.transaction() as conn:
            chat_rows = conn.execute(
                "SELECT DISTINCT chat_id FROM sessions WHERE chat_id IS NOT NULL"
            ).fetchall()
            for row in chat_rows:
                self._normalize_chat(conn, row["chat_id"])

    # ------------------------------------------------------------------
    # Active-session pointers
    # ------------------------------------------------------------------

    def get_or_create_active_session(self, chat_id: str, channel: Channel = Channel.SHARED) -> Session:
        with self._db.transaction() as conn:
            active_id = self._get_pointer(conn, chat_id, channel)
            if active_id:
                session = self._fetch_session(conn, active_id)
                if session:
                    return session
            if channel is not Channel.SHARED:
                shared_id = self._get_pointer(conn, chat_id, Channel.SHARED)
                if shared_id:
                    shared = self._fetch_session(conn, shared_id)
                    if shared:
                        self._upsert_pointer(conn, chat_id, channel, shared.id)
                        return shared
            return self.create_and_activate(chat_id, channel)

    def create_and_activate(
        self,
        chat_id: str,
        channel: Channel = Channel.SHARED,
        is_busy: Optional[BusyCheck] = None,
    ) -> Session:
        with self._db.transaction() as conn:
            slot = self._allocate_next_slot(conn, chat_id)
            return self._replace_slot(conn, chat_id, slot, channel, is_busy)

    def recreate_at_slot(
        self,
        chat_id: str,
        slot: str,
        channel: Channel = Channel.SHARED,
        is_busy: Optional[BusyCheck] = None,
    ) -> Session:
        slot_id = normalize_slot(slot)
        if slot_id is None:
            raise ValidationError(f"Invalid slot id: {slot}")
        with self._db.transaction() as conn:
            return self._replace_slot(conn, chat_id, slot_id, channel, is_busy)

    def set_active_session(
        self,
        chat_id: str,
        target: str,
        channel: Channel = Channel.SHARED,
        is_busy: Optional[BusyCheck] = None,
    ) -> Session:
        """Point ``channel`` at ``target``, creating or moving sessions as needed.

        ``is_busy`` guards every session this call would evict; a busy occupant
        raises ``BusyError`` and leaves the registry untouched.
        """
        with self._db.transaction() as conn:
            resolved = self._resolve(conn, target, chat_id)
            if not resolved:
                slot = normalize_slot(target)
                if slot is not None:
                    return self._replace_slot(conn, chat_id, slot, channel, is_busy)
                raise NotFoundError(f"Session not found: {target}")

            existing = self._fetch_session(conn, resolved)
            if existing is None:
                raise NotFoundError(f"Session not found: {target}")
            if existing.chat_id != chat_id:
                # Keep slot letters unique inside the destination chat.
                self._remove_by_chat_and_slot(conn, chat_id, existing.slot, is_busy)
                if existing.chat_id:
                    conn.execute(
                        "DELETE FROM active_sessions WHERE chat_id = ? AND session_id = ?",
                        (existing.chat_id, existing.id),
                    )
            conn.execute(
                "UPDATE sessions SET chat_id = ?, updated_at = ? WHERE id = ?",
                (chat_id, to_iso(utc_now()), resolved),
            )
            self._upsert_pointer(conn, chat_id, channel, resolved)
            return self._require_session(conn, resolved)

    def active_session_id(self, chat_id: str, channel: Channel = Channel.SHARED) -> Optional[str]:
        with self._db.transaction() as conn:
            return self._get_pointer(conn, chat_id, channel)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_session_id(self, target: str, chat_id: Optional[str] = None) -> Optional[str]:
        with self._db.transaction() as conn:
            return self._resolve(conn, target, chat_id)

    def ensure_session_for_target(self, chat_id: str, target: str) -> Session:
        with self._db.transaction() as conn:
            resolved = self._resolve(conn, target, chat_id)
            if resolved:
                return self._require_session(conn, resolved, label=target)
            slot = normalize_slot(target)
            if slot is None:
                raise NotFoundError(f"Session not found: {target}")
            return self._insert_session(conn, chat_id, slot)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._db.transaction() as conn:
            return self._fetch_session(conn, session_id)

    def list_sessions(self, chat_id: str) -> List[Session]:
        rows = self._db.query_all(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE chat_id = ? ORDER BY short_id ASC",
            (chat_id,),
        )
        return [_row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # Continuation tokens
    # ------------------------------------------------------------------

    def set_continuation_token(self, session_id: str, token: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE sessions SET codex_session_id = ?, updated_at = ? WHERE id = ?",
                (token, to_iso(utc_now()), session_id),
            )

    def bind_continuation(self, chat_id: str, slot: str, token: str) -> Session:
        slot_id = normalize_slot(slot)
        if slot_id is None:
            raise ValidationError(f"Invalid slot id: {slot}")
        if not str(token or "").strip():
            raise ValidationError("Continuation token is required.")
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT id FROM sessions WHERE chat_id = ? AND short_id = ?",
                (chat_id, slot_id),
            ).fetchone()
            if row:
                conn.execute(
                    "UPDATE sessions SET codex_session_id = ?, updated_at = ? WHERE id = ?",
                    (token, to_iso(utc_now()), row["id"]),
                )
                return self._require_session(conn, row["id"])
            return self._insert_session(conn, chat_id, slot_id, token=token)

    def list_slot_bindings(self, chat_id: str) -> List[SlotBinding]:
        return [
            SlotBinding(slot=s.slot, session_id=s.id, continuation_token=s.continuation_token)
            for s in self.list_sessions(chat_id)
        ]

    # ------------------------------------------------------------------
    # Run history
    # ------------------------------------------------------------------

    def append_run(self, session_id: str, run: RunRecord) -> Session:
        with self._db.transaction() as conn:
            self._require_session(conn, session_id)
            conn.execute(
                """
                INSERT INTO run_history (id, session_id, timestamp, input, output, error, exit_code, duration_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    session_id,
                    to_iso(run.timestamp),
                    run.input,
                    run.output,
                    run.error,
                    run.exit_code,
                    int(run.duration_ms),
                ),
            )
            conn.execute(
                "UPDATE sessions SET updated_at = ? WHERE id = ?",
                (to_iso(utc_now()), session_id),
            )
            return self._require_session(conn, session_id)

    def list_history(self, session_id: str, limit: int = 10) -> List[RunRecord]:
        with self._db.transaction() as conn:
            self._require_session(conn, session_id)
            rows = conn.execute(
                """
                SELECT id, timestamp, input, output, error, exit_code, duration_ms
                FROM run_history
                WHERE session_id = ?
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
                """,
                (session_id, max(1, int(limit))),
            ).fetchall()
        # Return chronological order.
        return [_row_to_run(r) for r in reversed(rows)]

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def get_preferences(self, session_id: str) -> SessionPreferences:
        row = self._db.query_one(
            "SELECT plan_mode, reasoning_effort FROM session_preferences WHERE session_id = ?",
            (session_id,),
        )
        if not row:
            return SessionPreferences()
        effort = str(row["reasoning_effort"] or "none").lower()
        return SessionPreferences(
            plan_mode=bool(row["plan_mode"]),
            reasoning_effort=effort if effort in REASONING_EFFORTS else "none",
        )

    def get_plan_mode(self, session_id: str) -> bool:
        return self.get_preferences(session_id).plan_mode

    def set_plan_mode(self, session_id: str, enabled: bool) -> bool:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO session_preferences (session_id, plan_mode) VALUES (?, ?)
                ON CONFLICT (session_id) DO UPDATE SET plan_mode = excluded.plan_mode
                """,
                (session_id, 1 if enabled else 0),
            )
        return self.get_plan_mode(session_id)

    def get_reasoning_effort(self, session_id: str) -> str:
        return self.get_preferences(session_id).reasoning_effort

    def set_reasoning_effort(self, session_id: str, effort: str) -> str:
        value = str(effort or "").strip().lower()
        if value not in REASONING_EFFORTS:
            raise ValidationError(f"Invalid reasoning effort: {effort}. Use {'|'.join(REASONING_EFFORTS)}.")
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO session_preferences (session_id, reasoning_effort) VALUES (?, ?)
                ON CONFLICT (session_id) DO UPDATE SET reasoning_effort = excluded.reasoning_effort
                """,
                (session_id, value),
            )
        return self.get_reasoning_effort(session_id)

    # ------------------------------------------------------------------
    # Internals (callers hold a transaction)
    # ------------------------------------------------------------------

    def _resolve(self, conn: sqlite3.Connection, target: str, chat_id: Optional[str]) -> Optional[str]:
        raw = str(target or "")
        exact = conn.execute("SELECT id FROM sessions WHERE id = ?", (raw,)).fetchone()
        if exact:
            return exact["id"]
        value = raw.strip()
        if not value:
            return None
        if chat_id is not None:
            candidates = conn.execute("SELECT id, short_id FROM sessions WHERE chat_id = ?", (chat_id,)).fetchall()
        else:
            candidates = conn.execute("SELECT id, short_id FROM sessions").fetchall()

        wanted_slot = value.upper()
        slot_matches = [c["id"] for c in candidates if str(c["short_id"]).upper() == wanted_slot]
        if len(slot_matches) == 1:
            return slot_matches[0]
        if len(slot_matches) > 1:
            raise AmbiguousError(f"Ambiguous slot id: {value}")

        prefix_matches = [c["id"] for c in candidates if str(c["id"]).startswith(value)]
        if len(prefix_matches) == 1:
            return prefix_matches[0]
        if len(prefix_matches) > 1:
            raise AmbiguousError(f"Ambiguous session id prefix: {value}")
        return None

    def _replace_slot(
        self,
        conn: sqlite3.Connection,
        chat_id: str,
        slot: str,
        channel: Channel,
        is_busy: Optional[BusyCheck] = None,
    ) -> Session:
        self._remove_by_chat_and_slot(conn, chat_id, slot, is_busy)
        session = self._insert_session(conn, chat_id, slot)
        self._upsert_pointer(conn, chat_id, channel, session.id)
        return session

    def _insert_session(
        self,
        conn: sqlite3.Connection,
        chat_id: str,
        slot: str,
        token: Optional[str] = None,
    ) -> Session:
        now = to_iso(utc_now())
        session_id = _generate_session_id(chat_id, slot)
        conn.execute(
            f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            (session_id, slot, chat_id, token, now, now),
        )
        logger.info("session.created id=%s chat=%s slot=%s", session_id, chat_id, slot)
        return self._require_session(conn, session_id)

    def _allocate_next_slot(self, conn: sqlite3.Connection, chat_id: str) -> str:
        row = conn.execute("SELECT next_slot FROM chat_meta WHERE chat_id = ?", (chat_id,)).fetchone()
        idx = int(row["next_slot"]) if row else 0
        slot = SLOT_IDS[idx % MAX_SLOTS]
        self._set_next_slot(conn, chat_id, (idx + 1) % MAX_SLOTS)
        return slot

    def _set_next_slot(self, conn: sqlite3.Connection, chat_id: str, value: int) -> None:
        conn.execute(
            """
            INSERT INTO chat_meta (chat_id, next_slot) VALUES (?, ?)
            ON CONFLICT (chat_id) DO UPDATE SET next_slot = excluded.next_slot
            """,
            (chat_id, value),
        )

    def _remove_by_chat_and_slot(
        self,
        conn: sqlite3.Connection,
        chat_id: str,
        slot: str,
        is_busy: Optional[BusyCheck] = None,
    ) -> None:
        row = conn.execute(
            "SELECT id FROM sessions WHERE chat_id = ? AND short_id = ?",
            (chat_id, slot),
        ).fetchone()
        if not row:
            return
        if is_busy is not None and is_busy(row["id"]):
            raise BusyError(row["id"], slot)
        self._remove_session(conn, row["id"])

    def _remove_session(self, conn: sqlite3.Connection, session_id: str) -> None:
        row = conn.execute(
            "SELECT id, chat_id, codex_session_id FROM sessions WHERE id = ?",
            (session_id,),
        ).fetchone()
        if not row:
            return
        conn.execute("DELETE FROM run_history WHERE session_id = ?", (session_id,))
        conn.execute("DELETE FROM session_preferences WHERE session_id = ?", (session_id,))
        conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        conn.execute("DELETE FROM active_sessions WHERE session_id = ?", (session_id,))
        logger.info("session.removed id=%s chat=%s", session_id, row["chat_id"])

        token = row["codex_session_id"]
        if token and self._artifact_cleaner is not None:
            still_referenced = conn.execute(
                "SELECT COUNT(1) AS c FROM sessions WHERE codex_session_id = ?",
                (token,),
            ).fetchone()["c"]
            if not still_referenced:
                try:
                    self._artifact_cleaner(token)
                except OSError:
                    logger.warning("failed to delete artifacts for continuation %s", token, exc_info=True)

    def _get_pointer(self, conn: sqlite3.Connection, chat_id: str, channel: Channel) -> Optional[str]:
        row = conn.execute(
            "SELECT session_id FROM active_sessions WHERE chat_id = ? AND channel = ?",
            (chat_id, channel.value),
        ).fetchone()
        return row["session_id"] if row else None

    def _upsert_pointer(self, conn: sqlite3.Connection, chat_id: str, channel: Channel, session_id: str) -> None:
        conn.execute(
            """
            INSERT INTO active_sessions (chat_id, channel, session_id) VALUES (?, ?, ?)
            ON CONFLICT (chat_id, channel) DO UPDATE SET session_id = excluded.session_id
            """,
            (chat_id, channel.value, session_id),
        )

    def _fetch_session(self, conn: sqlite3.Connection, session_id: str) -> Optional[Session]:
        row = conn.execute(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return _row_to_session(row) if row else None

    def _require_session(self, conn: sqlite3.Connection, session_id: str, label: str = "") -> Session:
        session = self._fetch_session(conn, session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {label or session_id}")
        return session

    def _normalize_chat(self, conn: sqlite3.Connection, chat_id: str) -> None:
        oldest_first = conn.execute(
            "SELECT id FROM sessions WHERE chat_id = ? ORDER BY updated_at ASC",
            (chat_id,),
        ).fetchall()
        overflow = max(0, len(oldest_first) - MAX_SLOTS)
        for row in oldest_first[:overflow]:
            self._remove_session(conn, row["id"])

        newest_first = conn.execute(
            "SELECT id, short_id FROM sessions WHERE chat_id = ? ORDER BY updated_at DESC",
            (chat_id,),
        ).fetchall()
        claimed: Set[str] = set()
        needs_slot: List[str] = []
        for row in newest_first:
            slot = str(row["short_id"] or "")
            if slot in SLOT_IDS and slot not in claimed:
                claimed.add(slot)
            else:
                needs_slot.append(row["id"])
        if needs_slot:
            # Park colliding rows first so the unique index never trips mid-repair.
            for session_id in needs_slot:
                conn.execute("UPDATE sessions SET short_id = ? WHERE id = ?", (f"~{session_id}", session_id))
            free = [s for s in SLOT_IDS if s not in claimed]
            for session_id, slot in zip(needs_slot, free):
                conn.execute("UPDATE sessions SET short_id = ? WHERE id = ?", (slot, session_id))
                logger.info("session.slot_repaired id=%s slot=%s", session_id, slot)

        meta = conn.execute("SELECT next_slot FROM chat_meta WHERE chat_id = ?", (chat_id,)).fetchone()
        if meta is None or not (0 <= int(meta["next_slot"]) < MAX_SLOTS):
            occupied = {
                r["short_id"]
                for r in conn.execute("SELECT short_id FROM sessions WHERE chat_id = ?", (chat_id,)).fetchall()
            }
            first_free = next((i for i, s in enumerate(SLOT_IDS) if s not in occupied), 0)
            self._set_next_slot(conn, chat_id, first_free)

        pointers: Dict[str, str] = {
            r["channel"]: r["session_id"]
            for r in conn.execute(
                "SELECT channel, session_id FROM active_sessions WHERE chat_id = ?",
                (chat_id,),
            ).fetchall()
        }
        for channel, session_id in pointers.items():
            if self._fetch_session(conn, session_id) is None:
                conn.execute(
                    "DELETE FROM active_sessions WHERE chat_id = ? AND channel = ?",
                    (chat_id, channel),
                )

        shared_id = self._get_pointer(conn, chat_id, Channel.SHARED)
        if shared_id is None:
            latest = conn.execute(
                "SELECT id FROM sessions WHERE chat_id = ? ORDER BY updated_at DESC LIMIT 1",
                (chat_id,),
            ).fetchone()
            if latest:
                self._upsert_pointer(conn, chat_id, Channel.SHARED, latest["id"])


def _generate_session_id(chat_id: Optional[str], slot: str) -> str:
    suffix = secrets.token_hex(3)[:5]
    chat_tag = re.sub(r"[^a-zA-Z0-9]", "", chat_id or "local")[-4:].lower() or "locl"
    return f"s_{chat_tag}_{slot.lower()}_{suffix}"


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        slot=row["short_id"],
        chat_id=row["chat_id"],
        continuation_token=row["codex_session_id"],
        created_at=parse_iso(row["created_at"]),  # type: ignore[arg-type]
        updated_at=parse_iso(row["updated_at"]),  # type: ignore[arg-type]
    )


def _row_to_run(row: sqlite3.Row) -> RunRecord:
    return RunRecord(
        id=row["id"],
        timestamp=parse_iso(row["timestamp"]),  # type: ignore[arg-type]
        input=row["input"],
        output=row["output"],
        error=row["error"],
        exit_code=row["exit_code"],
        duration_ms=int(row["duration_ms"] or 0),
    )

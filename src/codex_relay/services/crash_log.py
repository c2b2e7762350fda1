import json
import logging
import secrets
import time
import traceback
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

ReviewFn = Callable[[str], Awaitable[Any]]


@dataclass
class CrashRecord:
    id: str
    timestamp: str
    source: str
    message: str
    stack: str
    processed: bool = False
    processed_at: Optional[str] = None
    processed_note: Optional[str] = None


class CrashLog:
    """JSON file of unhandled front-end errors awaiting review."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def append(self, source: str, exc: BaseException) -> CrashRecord:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        record = CrashRecord(
            id=f"te_{int(time.time() * 1000)}_{secrets.token_hex(2)}",
            timestamp=_now(),
            source=source,
            message=str(exc) or type(exc).__name__,
            stack=stack or str(exc),
        )
        records = self._read()
        records.append(record)
        self._write(records)
        return record

    def unprocessed(self) -> List[CrashRecord]:
        return [r for r in self._read() if not r.processed]

    def mark_processed(self, ids: List[str], note: str) -> None:
        if not ids:
            return
        wanted = set(ids)
        records = self._read()
        stamp = _now()
        for record in records:
            if record.id in wanted:
                record.processed = True
                record.processed_at = stamp
                record.processed_note = note
        self._write(records)

    def _read(self) -> List[CrashRecord]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except ValueError:
            logger.warning("crash log %s is unreadable; starting fresh", self.path)
            return []
        rows: List[Dict[str, Any]] = raw.get("records", []) if isinstance(raw, dict) else []
        fields = CrashRecord.__dataclass_fields__
        return [CrashRecord(**{k: v for k, v in row.items() if k in fields}) for row in rows if isinstance(row, dict)]

    def _write(self, records: List[CrashRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"records": [asdict(r) for r in records]}
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def build_review_prompt(records: List[CrashRecord]) -> str:
    lines = [
        "The relay recorded unhandled errors since the last review.",
        "Find the likely root cause of each and suggest a fix.",
        "",
    ]
    for record in records:
        lines.append(f"## {record.id} [{record.source}] {record.timestamp}")
        lines.append(record.message)
        lines.append(record.stack.strip())
        lines.append("")
    return "\n".join(lines).rstrip()


async def review_pending_crashes(crash_log: CrashLog, review: ReviewFn) -> int:
    """Sends unprocessed records to ``review`` as one prompt and marks them."""
    pending = crash_log.unprocessed()
    if not pending:
        return 0
    await review(build_review_prompt(pending))
    crash_log.mark_processed([r.id for r in pending], "sent for review")
    return len(pending)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from codex_relay.domain.errors import ValidationError
from codex_relay.domain.sessions import normalize_slot
from codex_relay.persistence.session_store import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImportReport:
    chat_id: str
    applied: int
    skipped: List[str]


def export_bindings(registry: SessionRegistry, chat_id: str) -> Dict[str, Any]:
    rows = [
        {"slot": b.slot, "continuation_token": b.continuation_token, "session_id": b.session_id}
        for b in registry.list_slot_bindings(chat_id)
        if b.continuation_token
    ]
    return {"chat_id": chat_id, "bindings": rows}


def write_bindings_file(registry: SessionRegistry, chat_id: str, path: Path) -> int:
    payload = export_bindings(registry, chat_id)
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    return len(payload["bindings"])


def import_bindings(
    registry: SessionRegistry,
    payload: Dict[str, Any],
    chat_id: Optional[str] = None,
) -> ImportReport:
    target_chat = str(chat_id or payload.get("chat_id") or "").strip()
    if not target_chat:
        raise ValidationError("Missing chat id. Provide --chat or chat_id in file.")
    applied = 0
    skipped: List[str] = []
    for row in payload.get("bindings") or []:
        raw_slot = str(row.get("slot") or "")
        slot = normalize_slot(raw_slot)
        if slot is None:
            skipped.append(f"invalid slot: {raw_slot}")
            continue
        token = str(row.get("continuation_token") or "").strip()
        if not token:
            skipped.append(f"empty continuation token: {slot}")
            continue
        registry.bind_continuation(target_chat, slot, token)
        applied += 1
    for reason in skipped:
        logger.info("slot import skipped %s", reason)
    return ImportReport(chat_id=target_chat, applied=applied, skipped=skipped)


def read_bindings_file(registry: SessionRegistry, path: Path, chat_id: Optional[str] = None) -> ImportReport:
    try:
        payload = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid bindings file: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Invalid bindings file: expected a JSON object")
    return import_bindings(registry, payload, chat_id=chat_id)

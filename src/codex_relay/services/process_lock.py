import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ProcessLockError(RuntimeError):
    pass


def _pid_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProcessLock:
    """Pid file guarding one worker kind per data directory.

    A lock left behind by a dead pid is taken over.
    """

    def __init__(self, path: Path, label: str):
        self.path = Path(path).expanduser()
        self.label = label
        self._held = False

    def read(self) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict) or not isinstance(data.get("pid"), int):
            return None
        return data

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._write()
        except FileExistsError:
            existing = self.read()
            if existing is not None and _pid_running(existing["pid"]):
                raise ProcessLockError(f"{self.label} already running (pid={existing['pid']}). lock={self.path}")
            logger.warning("replacing stale lock %s (pid=%s)", self.path, existing and existing.get("pid"))
            self.path.unlink(missing_ok=True)
            self._write()
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        existing = self.read()
        if existing is not None and existing["pid"] != os.getpid():
            return
        self.path.unlink(missing_ok=True)

    def __enter__(self) -> "ProcessLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()

    def _write(self) -> None:
        payload = {
            "pid": os.getpid(),
            "started_at": datetime.now(timezone.utc).isoformat(),
            "label": self.label,
        }
        with self.path.open("x", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)

import logging
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

DEFAULT_SESSIONS_DIR = Path.home() / ".codex" / "sessions"


class CodexSessionFiles:
    """Removes on-disk transcripts the codex CLI keeps per continuation token."""

    def __init__(self, root: Path = DEFAULT_SESSIONS_DIR):
        self._root = Path(root).expanduser()

    def find(self, token: str) -> List[Path]:
        value = str(token or "").strip()
        if not value or not self._root.is_dir():
            return []
        return sorted(p for p in self._root.rglob(f"*{value}*") if p.is_file())

    def delete(self, token: str) -> int:
        removed = 0
        for path in self.find(token):
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.info("codex.session_files.removed token=%s count=%d", token, removed)
        return removed

    __call__ = delete

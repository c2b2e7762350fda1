import re
from typing import List, Optional

# Codex output and error text can echo credentials from the agent's environment.
_SECRET_PATTERNS = [
    (re.compile(r"sk-[A-Za-z0-9_-]{10,}"), "sk-REDACTED"),
    (re.compile(r"\b\d{6,12}:[A-Za-z0-9_-]{30,}\b"), "TELEGRAM_TOKEN_REDACTED"),
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*"), "Bearer REDACTED"),
    (
        re.compile(r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|secret|password))\s*[:=]\s*([^\s,;]+)"),
        r"\1=REDACTED",
    ),
]


def redact(text: str) -> str:
    value = text or ""
    for regex, replacement in _SECRET_PATTERNS:
        value = regex.sub(replacement, value)
    return value


def chunk_text(text: str, max_len: int) -> List[str]:
    if max_len <= 0:
        return [text]
    return [text[i:i + max_len] for i in range(0, len(text), max_len)]


def truncate(text: str, max_chars: int, marker: str = "\n...[truncated]") -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    kept = text[: max(0, max_chars - len(marker))]
    return f"{kept}{marker}"


def format_run_output(output: str, error: Optional[str], max_chars: int) -> str:
    merged = "\n\n".join(part for part in (output.strip(), f"ERR:\n{error}" if error else "") if part)
    if not merged:
        return "(no output)"
    if len(merged) <= max_chars:
        return merged
    return f"{merged[:max_chars]}\n\n[truncated {len(merged) - max_chars} chars]"

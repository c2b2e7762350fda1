from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from codex_relay.domain.contracts import Notification
from codex_relay.domain.jobs import JOB_STATUS_OK, ScheduledJob
from codex_relay.util import truncate

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MESSAGE_LIMIT = 4096


def format_cron_message(
    job: ScheduledJob,
    status: str,
    output: str,
    error: Optional[str],
    exit_code: Optional[int],
    duration_ms: int,
    session_name: Optional[str] = None,
    max_chars: int = 1200,
    verbose: bool = False,
) -> str:
    detail_source = output if status == JOB_STATUS_OK else (error if error is not None else output)
    detail_source = (detail_source or "").strip()
    lines: List[str] = []
    if not verbose:
        if status == JOB_STATUS_OK:
            lines.append(f"[cron] session: {job.session_target}")
        else:
            lines.append(f"[cron] ERROR | session: {job.session_target}")
        lines.append(truncate(detail_source, int(max_chars * 0.85)) or "(empty)")
        return truncate("\n".join(lines), max_chars)

    lines.append(f"[cron] {status.upper()} {job.id}")
    lines.append(f"slot: {job.session_target}")
    if session_name:
        lines.append(f"session: {session_name}")
    lines.append(f"exit: {exit_code if exit_code is not None else 'null'}")
    lines.append(f"time: {duration_ms}ms")
    prompt = truncate(job.prompt.strip(), int(max_chars * 0.3))
    lines.append(f"prompt: {prompt or '(empty)'}")
    detail = truncate(detail_source, int(max_chars * 0.6))
    if detail:
        lines.append("detail:")
        lines.append(detail)
    return truncate("\n".join(lines), max_chars)


class TelegramNotifier:
    """Delivers notifications as plain Telegram messages via the Bot API."""

    def __init__(
        self,
        bot_token: str,
        timeout_s: float = 15.0,
        api_base: str = TELEGRAM_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._bot_token = bot_token
        self._timeout_s = timeout_s
        self._api_base = api_base.rstrip("/")
        self._transport = transport

    async def notify(self, notification: Notification) -> None:
        text = str(notification.message or "").strip()
        if not self._bot_token.strip() or not text:
            return
        url = f"{self._api_base}/bot{self._bot_token}/sendMessage"
        payload = {"chat_id": notification.target_id, "text": text[:TELEGRAM_MESSAGE_LIMIT]}
        async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
            resp = await client.post(url, json=payload)
            if resp.status_code >= 400:
                logger.warning(
                    "telegram.notify.failed status=%s body=%s",
                    resp.status_code,
                    (resp.text or "")[:240],
                )
                resp.raise_for_status()


class NullNotifier:
    async def notify(self, notification: Notification) -> None:
        logger.debug("notification dropped target=%s", notification.target_id)

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional, Set

from codex_relay.domain.contracts import Notification, Notifier
from codex_relay.domain.errors import BusyError, RelayError
from codex_relay.domain.jobs import JOB_STATUS_ERROR, JOB_STATUS_OK, ScheduledJob
from codex_relay.observability.structured_log import log_json
from codex_relay.persistence.cron_store import ScheduledJobStore
from codex_relay.persistence.database import utc_now
from codex_relay.persistence.interaction_log import CRON_CHANNEL
from codex_relay.persistence.session_store import SessionRegistry
from codex_relay.services.notify import format_cron_message
from codex_relay.services.prompt_runner import PromptRunner

logger = logging.getLogger(__name__)


class CronScheduler:
    """Polls the job table and runs every due job as its own task.

    A job id stays in the executing set for the whole run, so a tick that
    fires while a previous run is still in flight skips that job.
    """

    def __init__(
        self,
        store: ScheduledJobStore,
        registry: SessionRegistry,
        prompt_runner: PromptRunner,
        notifier: Optional[Notifier] = None,
        poll_interval_sec: float = 10,
        notify_verbose: bool = False,
        notify_max_chars: int = 1200,
    ) -> None:
        self._store = store
        self._registry = registry
        self._prompt_runner = prompt_runner
        self._notifier = notifier
        self._poll_interval = max(0.05, float(poll_interval_sec))
        self._notify_verbose = notify_verbose
        self._notify_max_chars = notify_max_chars
        self._executing: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @property
    def executing(self) -> Set[str]:
        return set(self._executing)

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopped.clear()
        self._task = asyncio.create_task(self._run_loop(), name="cron-scheduler")
        logger.info("cron scheduler started poll=%.1fs notify=%s", self._poll_interval, self._notifier is not None)

    async def stop(self) -> None:
        self._stopped.set()
        task = self._task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            self._task = None
        pending = list(self._tasks.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def tick_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        due = self._store.due_jobs(now or utc_now())
        started = 0
        for job in due:
            if job.id in self._executing:
                continue
            self._executing.add(job.id)
            task = asyncio.create_task(self._execute(job.id), name=f"cron-job-{job.id}")
            self._tasks[job.id] = task
            started += 1
        return {"due": len(due), "started": started}

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def run_job(self, job_id: str) -> bool:
        """Runs one job inline; returns False when it was already executing."""
        if job_id in self._executing:
            return False
        self._executing.add(job_id)
        await self._execute(job_id)
        return True

    async def _run_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                await self.tick_once()
            except Exception:
                logger.exception("cron scheduler tick failed")
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _execute(self, job_id: str) -> None:
        try:
            job = self._store.get(job_id)
            if job is None or not job.enabled:
                return
            await self._run(job)
        except Exception as exc:
            logger.exception("cron job %s failed", job_id)
            job = self._store.get(job_id)
            if job is not None:
                await self._record_failure(job, None, str(exc))
        finally:
            self._executing.discard(job_id)
            self._tasks.pop(job_id, None)

    async def _run(self, job: ScheduledJob) -> None:
        try:
            session = self._registry.ensure_session_for_target(job.chat_id, job.session_target)
        except RelayError as exc:
            await self._record_failure(job, None, str(exc))
            return

        try:
            outcome = await self._prompt_runner.run(
                session,
                job.prompt,
                CRON_CHANNEL,
                input_label=f"[cron:{job.id}] {job.prompt}",
            )
        except BusyError as exc:
            await self._record_failure(job, session.id, str(exc))
            return

        result = outcome.result
        self._store.mark_run_result(job.id, result.ok, result.error, completed_at=utc_now())
        log_json(
            logger,
            "cron.job.finish",
            job_id=job.id,
            slot=session.slot,
            exit_code=result.exit_code,
            status=JOB_STATUS_OK if result.ok else JOB_STATUS_ERROR,
        )
        await self._notify(
            job,
            status=JOB_STATUS_OK if result.ok else JOB_STATUS_ERROR,
            session_name=session.id,
            output=result.output,
            error=result.error,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
        )
        self._finish(job)

    async def _record_failure(self, job: ScheduledJob, session_name: Optional[str], reason: str) -> None:
        self._store.mark_run_result(job.id, False, reason, completed_at=utc_now())
        log_json(logger, "cron.job.finish", level=logging.WARNING, job_id=job.id, status=JOB_STATUS_ERROR, error=reason)
        await self._notify(
            job,
            status=JOB_STATUS_ERROR,
            session_name=session_name,
            output="",
            error=reason,
            exit_code=None,
            duration_ms=0,
        )
        self._finish(job)

    def _finish(self, job: ScheduledJob) -> None:
        if job.run_once:
            self._store.remove(job.id)
            logger.info("cron.job.removed id=%s reason=run_once", job.id)

    async def _notify(self, job: ScheduledJob, status: str, session_name: Optional[str], **result) -> None:
        if self._notifier is None:
            return
        message = format_cron_message(
            job,
            status=status,
            session_name=session_name,
            max_chars=self._notify_max_chars,
            verbose=self._notify_verbose,
            **result,
        )
        try:
            await self._notifier.notify(Notification(target_id=job.chat_id, message=message))
        except Exception:
            logger.exception("cron notify failed for %s", job.id)

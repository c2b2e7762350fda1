from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from codex_relay.domain.errors import BusyError, NotFoundError
from codex_relay.domain.jobs import ChatJobRecord
from codex_relay.domain.sessions import Channel
from codex_relay.events.event_bus import JobEventBus
from codex_relay.observability.structured_log import log_json
from codex_relay.persistence.chat_job_store import ChatJobStore
from codex_relay.persistence.session_store import SessionRegistry
from codex_relay.services.prompt_runner import PromptRunner

logger = logging.getLogger(__name__)


class ChatJobQueue:
    """Bounded worker pool draining the durable prompt queue.

    At most ``concurrency`` jobs run at once. Every finished worker
    immediately tries to claim the next pending row.
    """

    def __init__(
        self,
        store: ChatJobStore,
        registry: SessionRegistry,
        prompt_runner: PromptRunner,
        events: JobEventBus,
        concurrency: int = 2,
        max_rows: int = 500,
        channel: Channel = Channel.WEB,
    ) -> None:
        self._store = store
        self._registry = registry
        self._prompt_runner = prompt_runner
        self._events = events
        self._concurrency = max(1, int(concurrency))
        self._max_rows = max_rows
        self._channel = channel
        self._workers: Set[asyncio.Task] = set()
        self._running = False

    @property
    def events(self) -> JobEventBus:
        return self._events

    @property
    def in_flight(self) -> int:
        return len(self._workers)

    async def start(self) -> None:
        if self._running:
            return
        self._store.recover_stuck()
        self._running = True
        self._fill()
        logger.info("chat job queue started concurrency=%d", self._concurrency)

    async def stop(self) -> None:
        self._running = False
        workers = list(self._workers)
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    async def submit(self, chat_id: str, prompt: str, channel: Optional[Channel] = None) -> ChatJobRecord:
        session = self._registry.get_or_create_active_session(chat_id, channel or self._channel)
        job = self._store.create_pending(chat_id, session.id, session.slot, prompt)
        self._store.prune(self._max_rows)
        log_json(logger, "chat_job.transition", job_id=job.id, status=job.status, slot=session.slot)
        self._events.publish(job)
        self._fill()
        return job

    def get(self, job_id: str) -> Optional[ChatJobRecord]:
        return self._store.get(job_id)

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> ChatJobRecord:
        queue = self._events.subscribe(job_id)
        try:
            current = self._store.get(job_id)
            if current is None:
                raise NotFoundError(f"Job not found: {job_id}")
            if current.is_terminal:
                return current

            async def _drain() -> None:
                while await queue.get() is not None:
                    pass

            await asyncio.wait_for(_drain(), timeout=timeout)
        finally:
            self._events.unsubscribe(job_id, queue)
        return self._store.get(job_id)  # type: ignore[return-value]

    def _fill(self) -> None:
        while self._running and len(self._workers) < self._concurrency:
            job = self._store.claim_next_pending()
            if job is None:
                return
            task = asyncio.create_task(self._work(job), name=f"chat-job-{job.id}")
            self._workers.add(task)
            task.add_done_callback(self._on_worker_done)

    def _on_worker_done(self, task: asyncio.Task) -> None:
        self._workers.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("chat job worker crashed", exc_info=task.exception())
        self._fill()

    async def _work(self, job: ChatJobRecord) -> None:
        self._publish(job)
        session = self._registry.get_session(job.session_id)
        if session is None:
            self._publish(self._store.mark_failed(job.id, f"Session not found: {job.session_slot}"))
            return
        try:
            outcome = await self._prompt_runner.run(session, job.prompt, self._channel)
        except (BusyError, NotFoundError) as exc:
            self._publish(self._store.mark_failed(job.id, str(exc)))
            return
        except Exception as exc:
            logger.exception("chat job %s failed", job.id)
            self._publish(self._store.mark_failed(job.id, str(exc)))
            return
        result = outcome.result
        self._publish(
            self._store.mark_completed(
                job.id,
                output=result.output,
                error=result.error,
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
            )
        )

    def _publish(self, job: Optional[ChatJobRecord]) -> None:
        if job is None:
            return
        log_json(logger, "chat_job.transition", job_id=job.id, status=job.status, slot=job.session_slot)
        self._events.publish(job)

import asyncio
from typing import Dict, List, Optional

from codex_relay.domain.jobs import ChatJobRecord


class JobEventBus:
    """Per-job fan-out of state transitions to in-process subscribers.

    Each subscriber gets its own queue. A terminal transition is delivered
    and followed by ``None``, after which the job has no subscribers left.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, job_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(job_id, []).append(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(job_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))

    def publish(self, job: Optional[ChatJobRecord]) -> None:
        if job is None:
            return
        queues = list(self._subscribers.get(job.id, []))
        for queue in queues:
            queue.put_nowait(job)
        if job.is_terminal:
            for queue in queues:
                queue.put_nowait(None)
            self._subscribers.pop(job.id, None)

"""
Per-Patient Workup Queue: runs detached workup jobs off the request path.

Each patient gets a lane: an asyncio.Queue drained by its own worker task.
Jobs in a lane run FIFO, one at a time; lanes run in parallel.  A failing
job is logged and the worker moves on.  A worker that sees no job for
idle_timeout_seconds retires and drops its lane; the next job for that
patient opens a fresh one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from funnelcore.completion.models import WorkupJob

logger = logging.getLogger("completion.queue")

JobProcessor = Callable[[WorkupJob], Awaitable[Any]]


class WorkupQueueManager:
    """
    Usage:
        mgr = WorkupQueueManager(processor=workup_service.run)
        await mgr.start()
        await mgr.enqueue(job)
    """

    def __init__(
        self,
        processor: JobProcessor,
        idle_timeout_seconds: float = 1800,
        slow_job_seconds: float = 30.0,
    ) -> None:
        self._processor = processor
        self._idle_timeout = idle_timeout_seconds
        self._slow_job_seconds = slow_job_seconds

        self._lanes: dict[str, tuple[asyncio.Queue[WorkupJob], asyncio.Task]] = {}
        self._running = False
        self.processed_count = 0
        self.failed_count = 0

    async def start(self) -> None:
        self._running = True
        logger.info("WorkupQueueManager started (idle timeout=%ss)", self._idle_timeout)

    async def stop(self) -> None:
        """Cancel every worker.  Jobs still waiting in a lane are dropped."""
        self._running = False
        lanes = list(self._lanes.values())
        self._lanes.clear()
        for _, worker in lanes:
            worker.cancel()
        await asyncio.gather(*(worker for _, worker in lanes), return_exceptions=True)
        logger.info("WorkupQueueManager stopped (%d lanes cancelled)", len(lanes))

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_count(self) -> int:
        return len(self._lanes)

    async def enqueue(self, job: WorkupJob) -> None:
        lane = self._lanes.get(job.patient_id)
        if lane is None:
            q: asyncio.Queue[WorkupJob] = asyncio.Queue()
            lane = (q, asyncio.create_task(self._drain(job.patient_id, q)))
            self._lanes[job.patient_id] = lane
            logger.debug("Opened workup lane for patient %s", job.patient_id)
        lane[0].put_nowait(job)

    async def wait_idle(self) -> None:
        """Block until every queued job has been processed."""
        for q, _ in list(self._lanes.values()):
            await q.join()

    async def _drain(self, patient_id: str, q: asyncio.Queue[WorkupJob]) -> None:
        while True:
            try:
                job = await asyncio.wait_for(q.get(), timeout=self._idle_timeout)
            except asyncio.TimeoutError:
                if q.empty():
                    self._retire(patient_id, q)
                    return
                continue

            try:
                await self._process(patient_id, job)
            finally:
                q.task_done()

            if not self._running and q.empty():
                self._retire(patient_id, q)
                return

    async def _process(self, patient_id: str, job: WorkupJob) -> None:
        started = time.monotonic()
        try:
            # No wait_for here: cancelling a to_thread call leaves the
            # storage request running in its thread.
            await self._processor(job)
        except Exception as exc:
            self.failed_count += 1
            logger.error(
                "Workup failed for assessment %s (patient %s, correlation %s): %s",
                job.assessment_id, patient_id, job.correlation_id, exc,
                exc_info=True,
            )
            return

        self.processed_count += 1
        elapsed = time.monotonic() - started
        if elapsed > self._slow_job_seconds:
            logger.warning(
                "Slow workup: assessment %s for %s took %.1fs",
                job.assessment_id, patient_id, elapsed,
            )

    def _retire(self, patient_id: str, q: asyncio.Queue[WorkupJob]) -> None:
        # Runs with no await since the emptiness check, so no job can slip in
        lane = self._lanes.get(patient_id)
        if lane is not None and lane[0] is q:
            del self._lanes[patient_id]
            logger.debug("Retired idle workup lane for patient %s", patient_id)

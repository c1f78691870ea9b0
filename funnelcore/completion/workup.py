"""
Workup Service: runs the sufficiency check for a completed assessment
and persists the outcome (workup_status + missing_data_fields).

Scheduled after the completion response is decided; never awaited by the
request.  With a WorkupQueueManager, jobs go onto the patient's queue;
otherwise they run as tracked background tasks.
"""

from __future__ import annotations

import asyncio
import logging

from funnelcore.completion.models import WorkupJob
from funnelcore.completion.queue import WorkupQueueManager
from funnelcore.completion.store import AssessmentStore
from funnelcore.completion.sufficiency import (
    DEFAULT_RULESET_VERSION,
    EvidencePack,
    WorkupResult,
    check_data_sufficiency,
    determine_workup_status,
    get_ruleset_version,
)

logger = logging.getLogger("completion.workup")


class WorkupService:
    def __init__(
        self,
        store: AssessmentStore,
        queue_manager: WorkupQueueManager | None = None,
    ) -> None:
        self._store = store
        self._queue = queue_manager
        self._background_tasks: set[asyncio.Task] = set()

    def attach_queue(self, queue_manager: WorkupQueueManager | None) -> None:
        self._queue = queue_manager

    async def schedule(self, job: WorkupJob) -> None:
        if self._queue is not None and self._queue.is_running:
            await self._queue.enqueue(job)
            return

        task = asyncio.create_task(self._run_detached(job))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _run_detached(self, job: WorkupJob) -> None:
        try:
            await self.run(job)
        except Exception as exc:
            logger.error(
                "Workup failed for assessment %s (correlation %s): %s",
                job.assessment_id, job.correlation_id, exc,
                exc_info=True,
            )

    async def run(self, job: WorkupJob) -> WorkupResult:
        """Evaluate and persist.  Failures propagate to the caller."""
        answers = await asyncio.to_thread(self._store.load_answers, job.assessment_id)
        pack = EvidencePack(
            assessment_id=job.assessment_id,
            funnel_slug=job.funnel_slug,
            answers=answers,
        )
        result = check_data_sufficiency(pack)
        status = determine_workup_status(result)

        await asyncio.to_thread(
            self._store.update_workup, job.assessment_id, status, result.missing_data_fields
        )

        logger.info(
            "Workup %s for assessment %s (funnel=%s, ruleset=%s, missing=%s, evidence=%s, correlation=%s)",
            status.value,
            job.assessment_id,
            job.funnel_slug,
            get_ruleset_version(job.funnel_slug) or DEFAULT_RULESET_VERSION,
            result.missing_data_fields,
            result.evidence_pack_hash[:12],
            job.correlation_id,
        )
        return result

    @property
    def pending_count(self) -> int:
        return len(self._background_tasks)

    async def drain(self) -> None:
        """Wait for every scheduled job to finish (tests, shutdown)."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        if self._queue is not None:
            await self._queue.wait_idle()

"""
Batch Scheduler

Runs a worklist in waves of at most `concurrency_limit` jobs. A wave starts
only after every job of the previous wave has settled (retries included),
so no more than `concurrency_limit` batch jobs are ever PROCESSING at once.
"""

import asyncio
from typing import Callable, Iterable, List, Optional, Sequence

from cutout.core.exceptions import BatchAlreadyRunningError
from cutout.core.logging import get_logger
from cutout.core.metrics import record_batch_run
from cutout.modules.imagery.models import (
    BatchProgress,
    BatchResult,
    BatchRun,
    EpisodeOutcome,
    Job,
    JobStatus
)
from cutout.pipeline.tasks import JobRunner

logger = get_logger(__name__)

ProgressSink = Callable[[BatchProgress], None]


def partition_waves(jobs: Sequence[Job], size: int) -> List[List[Job]]:
    return [list(jobs[i:i + size]) for i in range(0, len(jobs), size)]


class BatchScheduler:
    """Single-flight batch runner: one run at a time."""

    def __init__(
        self,
        runner: JobRunner,
        lookup: Callable[[str], Optional[Job]],
        concurrency_limit: int = 2
    ):
        self.runner = runner
        self.concurrency_limit = concurrency_limit
        self._lookup = lookup
        self._run: Optional[BatchRun] = None
        self._wave: List[Job] = []
        self._aborted = False

    @property
    def running(self) -> bool:
        return self._run is not None

    @property
    def current_run(self) -> Optional[BatchRun]:
        return self._run

    async def run(
        self,
        job_ids: Iterable[str],
        concurrency_limit: Optional[int] = None,
        on_progress: Optional[ProgressSink] = None
    ) -> BatchResult:
        """
        Process every listed job that is not already COMPLETED.

        Raises:
            BatchAlreadyRunningError: another run is still active
        """
        if self._run is not None:
            logger.warning("batch_rejected", reason="already_running")
            raise BatchAlreadyRunningError()

        limit = concurrency_limit if concurrency_limit is not None else self.concurrency_limit
        if limit < 1:
            raise ValueError("concurrency_limit must be at least 1")

        selected = []
        seen = set()
        for job_id in job_ids:
            job = self._lookup(job_id)
            if job is None or job.id in seen or job.status == JobStatus.COMPLETED:
                continue
            seen.add(job.id)
            selected.append(job)

        result = BatchResult(total=len(selected))
        if not selected:
            logger.info("batch_skipped", reason="nothing_to_process")
            return result

        run = BatchRun(target_ids=seen, concurrency_limit=limit)
        self._run = run
        self._aborted = False
        waves = partition_waves(selected, limit)
        logger.info("batch_started", total=len(selected), waves=len(waves), concurrency_limit=limit)

        def settled(outcome: EpisodeOutcome):
            if outcome == EpisodeOutcome.COMPLETED:
                result.succeeded += 1
            elif outcome == EpisodeOutcome.FAILED:
                result.failed += 1
            else:
                result.cancelled += 1
            run.completed_count += 1
            if on_progress is None:
                return
            try:
                on_progress(BatchProgress(completed=run.completed_count, total=len(selected)))
            except Exception as e:
                logger.error(
                    "batch_progress_callback_failed",
                    error=str(e),
                    error_type=type(e).__name__
                )

        async def run_member(job: Job):
            if job.deleted:
                settled(EpisodeOutcome.CANCELLED)
                return
            outcome = await self.runner.submit(job)
            if outcome == EpisodeOutcome.SUPERSEDED:
                # A newer episode took the job over; it still occupies this slot
                outcome = await job.wait_settled() or EpisodeOutcome.CANCELLED
            settled(outcome)

        try:
            for index, wave in enumerate(waves):
                if self._aborted:
                    break
                self._wave = wave
                result.waves += 1
                logger.info("batch_wave_started", wave=index + 1, size=len(wave))
                await asyncio.gather(*(run_member(job) for job in wave))
        finally:
            self._wave = []
            self._run = None

        result.aborted = self._aborted
        record_batch_run("aborted" if result.aborted else "completed")
        logger.info(
            "batch_completed",
            succeeded=result.succeeded,
            failed=result.failed,
            cancelled=result.cancelled,
            total=result.total,
            aborted=result.aborted
        )
        return result

    def abort(self) -> bool:
        """Cancel the active wave and skip the remaining ones."""
        if self._run is None:
            return False
        self._aborted = True
        for job in self._wave:
            self.runner.cancel(job, "batch_aborted")
        logger.info("batch_abort_requested")
        return True

"""
Job Episodes

JobRunner drives one job through a processing episode:
- supersedes (cancels) any episode already running for the job
- calls the transform client with the job's source image
- retries failures with exponential backoff (cancellable)
- records the result through the handle manager, or fails the job
"""

import asyncio
import traceback
from typing import Callable, Optional

from cutout.core.cancellation import CancellationToken
from cutout.core.exceptions import RetriesExhausted, TransformCancelled
from cutout.core.handles import HandleKind, ResourceLifecycleManager
from cutout.core.logging import get_logger, LogContext
from cutout.core.metrics import (
    track_stage_latency,
    record_transform_attempt,
    record_episode_start,
    record_episode_end
)
from cutout.modules.imagery.models import (
    EpisodeOutcome,
    Job,
    JobEvent,
    TransformOptions
)
from cutout.pipeline.retry import GiveUp, RetryPolicy
from cutout.pipeline.stages import TransformClient

logger = get_logger(__name__)

EventSink = Callable[[JobEvent], None]


class JobRunner:
    """Runs job episodes against one transform client."""

    def __init__(
        self,
        client: TransformClient,
        policy: RetryPolicy,
        handles: ResourceLifecycleManager,
        options: TransformOptions,
        notify: Optional[EventSink] = None,
        progress_step: float = 0.01
    ):
        self.client = client
        self.policy = policy
        self.handles = handles
        self.options = options
        self.progress_step = progress_step
        self._notify = notify

    async def submit(self, job: Job) -> EpisodeOutcome:
        """
        Start a new episode for `job` and wait for it to settle.

        The previous episode, if any, is cancelled before the first transform
        call of the new one is issued.
        """
        if job.token is not None:
            job.token.cancel("superseded")
            logger.info("episode_superseded", job_id=job.id, episode=job.episode)

        token = CancellationToken()
        job.begin_episode(token)
        record_episode_start()
        self._emit(job)

        with LogContext(job_id=job.id, stage="transform", episode=job.episode):
            logger.info("episode_started", name=job.name)
            try:
                outcome = await self._run_episode(job, token)
            except asyncio.CancelledError:
                # The awaiting task was cancelled: settle the episode, then propagate
                token.cancel("cancelled")
                record_episode_end(self._cancelled(job, token).value)
                raise

        record_episode_end(outcome.value)
        return outcome

    def cancel(self, job: Job, reason: str = "cancelled") -> bool:
        """Signal the job's running episode to stop. It settles back to PENDING."""
        if job.token is None:
            return False
        job.token.cancel(reason)
        return True

    async def _run_episode(self, job: Job, token: CancellationToken) -> EpisodeOutcome:
        last_reported = 0.0

        def on_progress(fraction: float):
            nonlocal last_reported
            if job.update_progress(token, fraction):
                if job.progress - last_reported >= self.progress_step or job.progress >= 1.0:
                    last_reported = job.progress
                    self._emit(job)

        while True:
            try:
                token.raise_if_cancelled()
                with track_stage_latency("transform"):
                    output = await self.client.invoke(
                        job.source.data,
                        self.options,
                        on_progress,
                        token
                    )
            except TransformCancelled:
                record_transform_attempt("cancelled")
                return self._cancelled(job, token)
            except Exception as e:
                record_transform_attempt("error")
                logger.warning(
                    "transform_attempt_failed",
                    attempt=job.attempt,
                    error=str(e),
                    error_type=type(e).__name__
                )

                decision = self.policy.decide(job.attempt, e)
                if isinstance(decision, GiveUp):
                    return self._failed(job, token, e)

                logger.info("retry_scheduled", attempt=job.attempt + 1, delay_seconds=decision.after)
                try:
                    await token.sleep(decision.after)
                except TransformCancelled:
                    return self._cancelled(job, token)

                if not job.record_retry(token):
                    return self._cancelled(job, token)
                continue

            record_transform_attempt("success")
            return self._completed(job, token, output)

    def _completed(self, job: Job, token: CancellationToken, output: bytes) -> EpisodeOutcome:
        if not job.owns(token):
            logger.info("stale_result_discarded", output_size=len(output))
            return EpisodeOutcome.SUPERSEDED

        result = self.handles.acquire(output, HandleKind.RESULT, self.options.content_type)
        job.complete(token, result, self.handles)
        logger.info("job_completed", attempt=job.attempt, output_size=len(output))
        self._emit(job)
        return EpisodeOutcome.COMPLETED

    def _failed(self, job: Job, token: CancellationToken, error: Exception) -> EpisodeOutcome:
        if not job.owns(token):
            return EpisodeOutcome.SUPERSEDED

        exhausted = RetriesExhausted(job.attempt + 1, error, job_id=job.id)
        job.fail(token, exhausted.message)
        logger.error(
            "job_failed",
            attempts=exhausted.attempts,
            error=str(error),
            traceback="".join(traceback.format_exception(type(error), error, error.__traceback__))
        )
        self._emit(job, message="processing failed")
        return EpisodeOutcome.FAILED

    def _cancelled(self, job: Job, token: CancellationToken) -> EpisodeOutcome:
        if job.revert(token):
            logger.info("episode_cancelled", reason=token.reason)
            self._emit(job, message="cancelled")
            return EpisodeOutcome.CANCELLED
        if token.reason == "superseded":
            return EpisodeOutcome.SUPERSEDED
        return EpisodeOutcome.CANCELLED

    def _emit(self, job: Job, message: Optional[str] = None):
        if self._notify is None or job.deleted:
            return
        self._notify(JobEvent(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            attempt=job.attempt,
            message=message or job.error_message
        ))

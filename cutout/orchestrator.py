"""
Orchestrator - the façade over jobs, batches and image buffers

The only component callers talk to. It owns the worklist, the handle
manager, the job runner and the batch scheduler, and it is the single
writer of job state: everything runs on one event loop.

Usage:
    async with Orchestrator.open() as orchestrator:
        intake = await orchestrator.add_images([RawImage(name="a.png", data=...)])
        await orchestrator.process_batch()
        handle = orchestrator.get_result(intake.job_ids[0])
"""

import asyncio
import traceback
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, TypeVar, Union

from cutout.core.config import Settings, settings as default_settings
from cutout.core.exceptions import (
    CutoutBaseException,
    JobNotFoundError,
    OrchestratorClosedError
)
from cutout.core.handles import Handle, HandleKind, ResourceLifecycleManager
from cutout.core.logging import get_logger, setup_logging
from cutout.core.metrics import record_intake, set_app_info
from cutout.core.storage import IResultStore, LocalResultStore
from cutout.modules.imagery.models import (
    BatchProgress,
    BatchResult,
    IntakeResult,
    Job,
    JobEvent,
    JobSnapshot,
    RawImage,
    RejectedInput,
    TransformOptions
)
from cutout.pipeline.intake import (
    CompressionLimits,
    ImageCompressor,
    PillowCompressor,
    validate_upload
)
from cutout.pipeline.retry import RetryPolicy
from cutout.pipeline.scheduler import BatchScheduler
from cutout.pipeline.stages import TransformClient, create_transform_client
from cutout.pipeline.tasks import JobRunner

logger = get_logger(__name__)

T = TypeVar("T")
Event = Union[JobEvent, BatchProgress]
Listener = Callable[[Event], None]


class Orchestrator:
    """Owns every job and runs them through the background-removal transform."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transform: Optional[TransformClient] = None,
        compressor: Optional[ImageCompressor] = None,
        result_store: Optional[IResultStore] = None,
        policy: Optional[RetryPolicy] = None
    ):
        self.settings = settings or default_settings
        self.handles = ResourceLifecycleManager()
        self.options = TransformOptions.from_settings(self.settings)
        self.limits = CompressionLimits.from_settings(self.settings)
        self.client = transform or create_transform_client(self.settings)
        self.compressor = compressor or PillowCompressor()
        self.result_store = result_store or LocalResultStore(self.settings.EXPORT_PATH)

        self.runner = JobRunner(
            self.client,
            policy or RetryPolicy.from_settings(self.settings),
            self.handles,
            self.options,
            notify=self._publish,
            progress_step=self.settings.PROGRESS_STEP
        )

        # Insertion order is display order
        self._jobs: Dict[str, Job] = {}
        self.scheduler = BatchScheduler(
            self.runner,
            self._jobs.get,
            concurrency_limit=self.settings.BATCH_CONCURRENCY
        )

        self._listeners: List[Listener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    @classmethod
    def create(cls, settings: Optional[Settings] = None, **kwargs) -> "Orchestrator":
        """Configure logging and metrics, then build an orchestrator."""
        settings = settings or default_settings
        setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.LOG_FORMAT_JSON)
        set_app_info(version=settings.APP_VERSION, environment=settings.ENVIRONMENT)

        orchestrator = cls(settings=settings, **kwargs)
        logger.info(
            "orchestrator_created",
            app_name=settings.APP_NAME,
            version=settings.APP_VERSION,
            backend=settings.TRANSFORM_BACKEND,
            concurrency=settings.BATCH_CONCURRENCY
        )
        return orchestrator

    @classmethod
    @asynccontextmanager
    async def open(cls, settings: Optional[Settings] = None, **kwargs):
        orchestrator = cls.create(settings=settings, **kwargs)
        try:
            yield orchestrator
        finally:
            await orchestrator.teardown()

    @property
    def closed(self) -> bool:
        return self._closed

    async def teardown(self):
        """
        Stop everything and release every handle exactly once.

        Cancels the running batch and all episodes, waits for them to settle,
        then releases source, preview and result of every job.
        """
        if self._closed:
            return
        self._closed = True
        logger.info("orchestrator_teardown_started", jobs=len(self._jobs), in_flight=len(self._tasks))

        self.scheduler.abort()
        for job in self._jobs.values():
            self.runner.cancel(job, "teardown")

        if self._tasks:
            results = await asyncio.gather(*list(self._tasks), return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                    logger.error(
                        "episode_crashed_during_teardown",
                        error=str(result),
                        error_type=type(result).__name__
                    )

        for job in self._jobs.values():
            job.release_handles(self.handles)
        self._jobs.clear()

        leftover = self.handles.release_all()
        if leftover:
            logger.warning("orphan_handles_released", count=leftover)

        await self.client.close()
        self._listeners.clear()
        logger.info("orchestrator_teardown_completed")

    # ==========================================================================
    # Intake
    # ==========================================================================

    async def add_images(self, raw_inputs: Iterable[RawImage]) -> IntakeResult:
        """
        Validate, compress and enqueue images as PENDING jobs.

        A rejected input never aborts the others; the result lists the new
        job ids and every rejection with its reason.
        """
        self._ensure_open()
        inputs = list(raw_inputs)
        outcomes = await asyncio.gather(*(self._intake_one(image) for image in inputs))

        result = IntakeResult()
        for outcome in outcomes:
            if isinstance(outcome, Job):
                if self._closed:
                    outcome.release_handles(self.handles)
                    continue
                self._jobs[outcome.id] = outcome
                result.job_ids.append(outcome.id)
                self._publish(JobEvent(job_id=outcome.id, status=outcome.status, progress=0.0))
            else:
                result.rejected.append(outcome)

        self._ensure_open()
        record_intake("accepted", result.succeeded)
        record_intake("rejected", len(result.rejected))
        logger.info(
            "intake_completed",
            accepted=result.succeeded,
            rejected=len(result.rejected),
            summary=result.summary
        )
        return result

    async def _intake_one(self, image: RawImage) -> Union[Job, RejectedInput]:
        preview: Optional[Handle] = None
        try:
            content_type = validate_upload(image, self.settings)
            preview = self.handles.acquire(image.data, HandleKind.PREVIEW, content_type)
            compressed = await self.compressor.compress(image.data, self.limits, content_type)
            source = self.handles.acquire(compressed, HandleKind.SOURCE, content_type)
        except CutoutBaseException as e:
            self.handles.release(preview)
            logger.warning("intake_rejected", name=image.name, reason=e.message, code=e.code)
            return RejectedInput(name=image.name, reason=e.message, code=e.code)
        except Exception as e:
            self.handles.release(preview)
            logger.error(
                "intake_failed",
                name=image.name,
                error=str(e),
                error_type=type(e).__name__,
                traceback=traceback.format_exc()
            )
            return RejectedInput(name=image.name, reason=f"Failed to upload: {e}", code=500)

        return Job(name=image.name, source=source, preview=preview)

    # ==========================================================================
    # Processing
    # ==========================================================================

    async def process_one(self, job_id: str) -> JobSnapshot:
        """
        Run one processing episode for a job and return its settled state.

        Re-submitting a job that is already processing supersedes the
        running episode.
        """
        job = self._require(job_id)
        await self._track(self.runner.submit(job))
        return job.snapshot()

    async def process_batch(
        self,
        job_ids: Optional[Iterable[str]] = None,
        concurrency_limit: Optional[int] = None,
        on_progress: Optional[Callable[[BatchProgress], None]] = None
    ) -> BatchResult:
        """
        Process the given jobs (default: all) that are not COMPLETED, in waves.

        Raises:
            BatchAlreadyRunningError: a batch is already active
        """
        self._ensure_open()
        ids = list(job_ids) if job_ids is not None else list(self._jobs)

        def report(progress: BatchProgress):
            self._publish(progress)
            if on_progress is not None:
                on_progress(progress)

        return await self._track(self.scheduler.run(ids, concurrency_limit, report))

    def cancel(self, job_id: str) -> bool:
        """Cancel the job's running episode; it settles back to PENDING."""
        job = self._require(job_id)
        cancelled = self.runner.cancel(job, "cancelled")
        if cancelled:
            logger.info("cancel_requested", job_id=job_id)
        return cancelled

    def cancel_batch(self) -> bool:
        self._ensure_open()
        return self.scheduler.abort()

    # ==========================================================================
    # Worklist
    # ==========================================================================

    def delete(self, job_id: str):
        """Remove a job, cancelling its episode and releasing all its handles."""
        job = self._require(job_id)
        del self._jobs[job_id]
        job.release_handles(self.handles)
        logger.info("job_deleted", job_id=job_id)

    def get_result(self, job_id: str) -> Optional[Handle]:
        return self._require(job_id).result

    def get_job(self, job_id: str) -> JobSnapshot:
        return self._require(job_id).snapshot()

    def list_jobs(self) -> List[JobSnapshot]:
        self._ensure_open()
        return [job.snapshot() for job in self._jobs.values()]

    def __len__(self) -> int:
        return len(self._jobs)

    # ==========================================================================
    # Export
    # ==========================================================================

    def download_name(self, job_id: str) -> str:
        job = self._require(job_id)
        return f"{Path(job.name).stem}_processed.{self.options.output_format.value}"

    async def export_result(self, job_id: str, directory: Optional[str] = None) -> Optional[str]:
        """
        Write the job's result through the result store. None if it has no result.

        `directory` exports to a local folder instead of the configured store.
        """
        job = self._require(job_id)
        if job.result is None:
            return None
        store = LocalResultStore(directory) if directory is not None else self.result_store
        location = await store.save(job.result.data, self.download_name(job_id))
        logger.info("result_exported", job_id=job_id, location=location)
        return location

    # ==========================================================================
    # Events
    # ==========================================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for job and batch events. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, event: Event):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "event_listener_failed",
                    event_type=event.type,
                    error=str(e),
                    error_type=type(e).__name__
                )

    # ==========================================================================
    # Internals
    # ==========================================================================

    def _ensure_open(self):
        if self._closed:
            raise OrchestratorClosedError()

    def _require(self, job_id: str) -> Job:
        self._ensure_open()
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _track(self, coro: Awaitable[T]) -> T:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await task

"""
Job Model with Episode State Tracking

A Job is one image's processing unit. Its status only changes through the
transition methods below, driven by the episode runner:

    PENDING --begin_episode--> PROCESSING --complete--> COMPLETED
                                          --fail------> FAILED
                                          --revert----> PENDING
    COMPLETED | FAILED --begin_episode--> PROCESSING

Every transition that ends an episode takes the episode's token and is
ignored unless that token is still the job's current one, so a superseded
episode can never write into a newer one.
"""

import uuid
import asyncio
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, List, Set

from pydantic import BaseModel, Field

from cutout.core.cancellation import CancellationToken
from cutout.core.handles import Handle, ResourceLifecycleManager


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job lifecycle states."""
    PENDING = "PENDING"           # Added, not processed (or cancelled)
    PROCESSING = "PROCESSING"     # An episode is running
    COMPLETED = "COMPLETED"       # Has a result
    FAILED = "FAILED"             # Last episode gave up


class EpisodeOutcome(str, Enum):
    """How one episode ended, from the point of view of whoever started it."""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"       # Explicit cancel, or the job was deleted
    SUPERSEDED = "superseded"     # A newer episode took over the job


class OutputFormat(str, Enum):
    PNG = "png"
    WEBP = "webp"


class TransformOptions(BaseModel):
    """Options passed to every transform call."""
    model: str = "u2net"
    output_format: OutputFormat = OutputFormat.PNG
    output_quality: float = Field(default=0.9, ge=0.0, le=1.0)

    @classmethod
    def from_settings(cls, settings) -> "TransformOptions":
        return cls(
            model=settings.TRANSFORM_MODEL,
            output_format=OutputFormat(settings.TRANSFORM_OUTPUT_FORMAT.lower()),
            output_quality=settings.TRANSFORM_OUTPUT_QUALITY,
        )

    @property
    def content_type(self) -> str:
        return f"image/{self.output_format.value}"


class Job:
    """One image and its processing lifecycle."""

    def __init__(self, name: str, source: Handle, preview: Handle, job_id: Optional[str] = None):
        self.id = job_id or uuid.uuid4().hex
        self.name = name
        self.source = source
        self.preview = preview
        self.result: Optional[Handle] = None

        self.status = JobStatus.PENDING
        self.attempt = 0
        self.episode = 0
        self.progress = 0.0
        self.error_message: Optional[str] = None
        self.token: Optional[CancellationToken] = None
        self.deleted = False
        self.last_outcome: Optional[EpisodeOutcome] = None
        self._settled = asyncio.Event()
        self._settled.set()

        self.created_at = _utcnow()
        self.updated_at = self.created_at
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def begin_episode(self, token: CancellationToken):
        """Enter PROCESSING with a fresh token. Any prior token must already be cancelled."""
        self.token = token
        self.episode += 1
        self.attempt = 0
        self.progress = 0.0
        self.error_message = None
        self.status = JobStatus.PROCESSING
        self.started_at = _utcnow()
        self.updated_at = self.started_at
        self._settled.clear()

    def owns(self, token: CancellationToken) -> bool:
        return not self.deleted and self.token is token

    def record_retry(self, token: CancellationToken) -> bool:
        if not self.owns(token):
            return False
        self.attempt += 1
        self.updated_at = _utcnow()
        return True

    def update_progress(self, token: CancellationToken, fraction: float) -> bool:
        """Raise progress monotonically. Returns True if it moved."""
        if not self.owns(token):
            return False
        fraction = min(max(float(fraction), 0.0), 1.0)
        if fraction <= self.progress:
            return False
        self.progress = fraction
        return True

    def complete(
        self,
        token: CancellationToken,
        result: Handle,
        handles: ResourceLifecycleManager
    ) -> bool:
        if not self.owns(token):
            return False
        self.result = handles.replace(self.result, result)
        self.status = JobStatus.COMPLETED
        self.progress = 1.0
        self.error_message = None
        self._end_episode(EpisodeOutcome.COMPLETED)
        return True

    def fail(self, token: CancellationToken, message: str) -> bool:
        """
        End the episode without a result.

        A job that still holds the result of an earlier episode keeps it and
        goes back to COMPLETED; the failure is kept in error_message.
        """
        if not self.owns(token):
            return False
        self.status = JobStatus.COMPLETED if self.result is not None else JobStatus.FAILED
        self.error_message = message
        self._end_episode(EpisodeOutcome.FAILED)
        return True

    def revert(self, token: CancellationToken) -> bool:
        """Cancelled episode: no result is recorded."""
        if not self.owns(token):
            return False
        self.status = JobStatus.COMPLETED if self.result is not None else JobStatus.PENDING
        self.progress = 1.0 if self.result is not None else 0.0
        self._end_episode(EpisodeOutcome.CANCELLED)
        return True

    def release_handles(self, handles: ResourceLifecycleManager):
        """Detach and release source, preview and result. Used on delete and teardown."""
        self.deleted = True
        if self.token is not None:
            self.token.cancel("deleted")
            self.token = None
            self.last_outcome = EpisodeOutcome.CANCELLED
        self.source = handles.replace(self.source, None)
        self.preview = handles.replace(self.preview, None)
        self.result = handles.replace(self.result, None)
        self._settled.set()

    def _end_episode(self, outcome: EpisodeOutcome):
        self.token = None
        self.last_outcome = outcome
        self.completed_at = _utcnow()
        self.updated_at = self.completed_at
        self._settled.set()

    async def wait_settled(self) -> Optional[EpisodeOutcome]:
        """
        Wait until no episode is running for this job, across supersessions.

        Returns the outcome of the episode that settled it last.
        """
        while self.is_processing and not self.deleted:
            await self._settled.wait()
        return self.last_outcome

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def is_processing(self) -> bool:
        return self.status == JobStatus.PROCESSING

    def snapshot(self) -> "JobSnapshot":
        return JobSnapshot(
            id=self.id,
            name=self.name,
            status=self.status,
            attempt=self.attempt,
            episode=self.episode,
            progress=self.progress,
            error=self.error_message,
            has_result=self.result is not None,
            created_at=self.created_at,
            updated_at=self.updated_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    def __repr__(self) -> str:
        return f"<Job {self.id} {self.name!r} {self.status.value}>"


# =============================================================================
# Snapshots & Events (what callers render)
# =============================================================================

class JobSnapshot(BaseModel):
    """Read-only view of a job."""
    id: str
    name: str
    status: JobStatus
    attempt: int
    episode: int
    progress: float
    error: Optional[str] = None
    has_result: bool = False
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobEvent(BaseModel):
    """Status or progress change of one job."""
    type: str = "job"
    job_id: str
    status: JobStatus
    progress: float
    attempt: int = 0
    message: Optional[str] = None


class BatchProgress(BaseModel):
    """Batch progress after an individual job settled."""
    type: str = "batch"
    completed: int
    total: int

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 1.0


# =============================================================================
# Intake
# =============================================================================

class RawImage(BaseModel):
    """One user-supplied image, before validation and compression."""
    name: str
    data: bytes
    content_type: Optional[str] = None


class RejectedInput(BaseModel):
    name: str
    reason: str
    code: int


class IntakeResult(BaseModel):
    """Partial-success summary of add_images."""
    job_ids: List[str] = Field(default_factory=list)
    rejected: List[RejectedInput] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.job_ids)

    @property
    def total(self) -> int:
        return len(self.job_ids) + len(self.rejected)

    @property
    def summary(self) -> str:
        return f"{self.succeeded} of {self.total} succeeded"


# =============================================================================
# Batch
# =============================================================================

class BatchRun(BaseModel):
    """Ephemeral bookkeeping of an active batch."""
    target_ids: Set[str]
    concurrency_limit: int
    completed_count: int = 0
    started_at: datetime = Field(default_factory=_utcnow)


class BatchResult(BaseModel):
    """Tally of a finished batch."""
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0
    waves: int = 0
    aborted: bool = False

    @property
    def summary(self) -> str:
        return f"{self.succeeded} of {self.total} processed"

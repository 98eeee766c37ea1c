"""
Error Taxonomy

Every error raised by the engine derives from CutoutBaseException and
carries a numeric code, the job it concerns and the stage it came from.
"""

from typing import Optional, Dict, Any

from cutout.core.logging import job_id_var


class CutoutBaseException(Exception):
    """Base exception for Cutout."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(CutoutBaseException):
    """Raised when an input is rejected at intake (wrong type, too large)."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, stage="intake", **kwargs)


class CompressionError(CutoutBaseException):
    """Raised when the intake compression step cannot produce a usable image."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=422, stage="intake", **kwargs)


class TransformError(CutoutBaseException):
    """Transient failure from the background-removal transform. Retried."""

    def __init__(
        self,
        message: str,
        service: str = "transform",
        http_status: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, code=502, stage="transform", **kwargs)
        self.details["service"] = service
        self.details["http_status"] = http_status


class TransformCancelled(CutoutBaseException):
    """Cooperative cancellation observed by a transform call or backoff delay."""

    def __init__(self, reason: str = "cancelled", **kwargs):
        super().__init__(f"Transform cancelled: {reason}", code=499, stage="transform", **kwargs)
        self.reason = reason


class RetriesExhausted(CutoutBaseException):
    """The transform kept failing until the retry budget ran out."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None, **kwargs):
        message = f"Max retries exceeded after {attempts} attempts"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message, code=500, stage="transform", **kwargs)
        self.details["attempts"] = attempts
        self.attempts = attempts


class JobNotFoundError(CutoutBaseException):
    """Raised when a job id is unknown to the orchestrator."""

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' not found", code=404, job_id=job_id)


class BatchAlreadyRunningError(CutoutBaseException):
    """Raised when a batch is requested while another one is still active."""

    def __init__(self, **kwargs):
        super().__init__("A batch run is already in progress", code=409, stage="batch", **kwargs)


class OrchestratorClosedError(CutoutBaseException):
    """Raised when the orchestrator is used after teardown."""

    def __init__(self):
        super().__init__("Orchestrator has been torn down", code=410)

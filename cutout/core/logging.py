"""
Structured Logging with structlog

JSON logs by default, colored console logs for development. Inside a job
episode every entry also carries the job_id, stage and episode number, so
one episode's attempts, retries and outcome can be followed across the
interleaved output of a batch.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict
from contextvars import ContextVar

# Episode-scoped context, set by LogContext
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)
episode_var: ContextVar[Optional[int]] = ContextVar("episode", default=None)

_EPISODE_FIELDS = (
    ("job_id", job_id_var),
    ("stage", stage_var),
    ("episode", episode_var),
)

APP_VERSION = "1.0.0"

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "PIL", "asyncio")


def add_episode_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add the app version and the current episode's fields. Explicit kwargs win."""
    event_dict["version"] = APP_VERSION
    for key, var in _EPISODE_FIELDS:
        value = var.get()
        if value is not None:
            event_dict.setdefault(key, value)
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True
):
    """
    Configure structlog on top of the stdlib logging module.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines if True, colored console output otherwise
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            add_episode_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """
    Scope log entries to one job episode.

    Usage:
        with LogContext(job_id=job.id, stage="transform", episode=job.episode):
            logger.info("episode_started")

    Fields left as None keep whatever the enclosing context set.
    """

    def __init__(
        self,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        episode: Optional[int] = None
    ):
        self._values = {"job_id": job_id, "stage": stage, "episode": episode}
        self._tokens = []

    def __enter__(self):
        for key, var in _EPISODE_FIELDS:
            value = self._values[key]
            if value is not None:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
        return False

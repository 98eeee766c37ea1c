"""
Prometheus Metrics for Observability

Tracks transform attempts and latency, job outcomes, batch runs,
intake results and the number of live image buffers.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Transform latency - per attempt
transform_latency_seconds = Histogram(
    "cutout_transform_latency_seconds",
    "Time spent in a single transform attempt",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Transform attempts
transform_attempts_total = Counter(
    "cutout_transform_attempts_total",
    "Total number of transform attempts",
    labelnames=["outcome"]
)

# Jobs Counter
jobs_total = Counter(
    "cutout_jobs_total",
    "Total number of finished job episodes",
    labelnames=["outcome"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "cutout_active_jobs",
    "Number of jobs currently in Processing"
)

# Live image buffers (source, preview, result)
live_handles_gauge = Gauge(
    "cutout_live_handles",
    "Number of image handles acquired and not yet released",
    labelnames=["kind"]
)

# Intake
intake_total = Counter(
    "cutout_intake_total",
    "Images offered at intake",
    labelnames=["outcome"]
)

# Batch runs
batch_runs_total = Counter(
    "cutout_batch_runs_total",
    "Total number of batch runs",
    labelnames=["outcome"]
)

# Application Info
app_info = Info(
    "cutout_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("transform"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        transform_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_transform_attempt(outcome: str):
    """Record one transform attempt (success, error, cancelled)."""
    transform_attempts_total.labels(outcome=outcome).inc()


def record_episode_start():
    active_jobs_gauge.inc()


def record_episode_end(outcome: str):
    """Record the end of a job episode."""
    jobs_total.labels(outcome=outcome).inc()
    active_jobs_gauge.dec()


def record_handle_acquired(kind: str):
    live_handles_gauge.labels(kind=kind).inc()


def record_handle_released(kind: str):
    live_handles_gauge.labels(kind=kind).dec()


def record_intake(outcome: str, count: int = 1):
    intake_total.labels(outcome=outcome).inc(count)


def record_batch_run(outcome: str):
    batch_runs_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST

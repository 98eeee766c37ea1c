"""
Cutout - Background Removal Job Orchestration

In-process engine that takes a worklist of images through an external
background-removal transform with retries, bounded batch concurrency,
per-job cancellation and exact-once release of every image buffer.
"""

from cutout.orchestrator import Orchestrator

__all__ = ["Orchestrator"]

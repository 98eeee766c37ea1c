"""
Worker Dispatch

Runs a synchronous transform function on a bounded thread pool and talks
to it through messages:

    request  -> WorkerRequest
    replies  -> ProgressMessage* then exactly one CompleteMessage | ErrorMessage

The event loop never blocks on a worker; it only awaits the next message,
and stops awaiting as soon as the episode's token is cancelled.
"""

import asyncio
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Annotated, Callable, Literal, Union

from pydantic import BaseModel, Field

from cutout.core.cancellation import CancellationToken
from cutout.core.exceptions import TransformError, TransformCancelled
from cutout.core.logging import get_logger
from cutout.modules.imagery.models import TransformOptions
from cutout.pipeline.stages import ProgressCallback, TransformClient

logger = get_logger(__name__)

TransformFn = Callable[[bytes, TransformOptions, ProgressCallback], bytes]


# =============================================================================
# Message Protocol
# =============================================================================

class WorkerRequest(BaseModel):
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    input: bytes
    options: TransformOptions


class ProgressMessage(BaseModel):
    type: Literal["progress"] = "progress"
    fraction: float = Field(ge=0.0, le=1.0)


class CompleteMessage(BaseModel):
    type: Literal["complete"] = "complete"
    output: bytes


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str


WorkerMessage = Annotated[
    Union[ProgressMessage, CompleteMessage, ErrorMessage],
    Field(discriminator="type")
]


def run_worker(
    transform_fn: TransformFn,
    request: WorkerRequest,
    post: Callable[[WorkerMessage], None],
    token: CancellationToken
):
    """Body of one worker slot. Always posts exactly one terminal message."""

    def progress(fraction: float):
        token.raise_if_cancelled()
        post(ProgressMessage(fraction=min(max(float(fraction), 0.0), 1.0)))

    try:
        output = transform_fn(request.input, request.options, progress)
    except TransformCancelled as e:
        post(ErrorMessage(message=e.message))
        return
    except Exception as e:
        post(ErrorMessage(message=f"{type(e).__name__}: {e}"))
        return

    post(CompleteMessage(output=output))


class WorkerTransformClient(TransformClient):
    """Transform client that offloads the work to a worker thread pool."""

    service = "worker"

    def __init__(self, transform_fn: TransformFn, max_workers: int = 2):
        self._transform_fn = transform_fn
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="cutout-worker"
        )

    async def invoke(
        self,
        input_bytes: bytes,
        options: TransformOptions,
        on_progress: ProgressCallback,
        token: CancellationToken
    ) -> bytes:
        token.raise_if_cancelled()

        loop = asyncio.get_running_loop()
        inbox: asyncio.Queue = asyncio.Queue()

        def post(message: WorkerMessage):
            if not loop.is_closed():
                loop.call_soon_threadsafe(inbox.put_nowait, message)

        request = WorkerRequest(input=input_bytes, options=options)
        loop.run_in_executor(self._executor, run_worker, self._transform_fn, request, post, token)
        logger.debug("worker_dispatched", request_id=request.request_id)

        while True:
            message = await token.run(inbox.get())
            if isinstance(message, ProgressMessage):
                on_progress(message.fraction)
            elif isinstance(message, CompleteMessage):
                return message.output
            else:
                raise TransformError(message.message, service=self.service)

    async def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

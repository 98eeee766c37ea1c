"""
Transform Client Implementations

Each client removes the background of one image. The contract is the same
for all of them:

    invoke(input_bytes, options, on_progress, token) -> output_bytes

- raises TransformCancelled if the token is cancelled before or during the call
- raises TransformError on any other failure (retried by the runner)
- on_progress gets non-decreasing fractions in [0, 1]
- never touches Job state
"""

import io
import base64
import binascii
import functools
from abc import ABC, abstractmethod
from typing import Callable, Optional

import httpx
from PIL import Image

from cutout.core.cancellation import CancellationToken
from cutout.core.exceptions import TransformError, TransformCancelled
from cutout.core.logging import get_logger
from cutout.modules.imagery.models import OutputFormat, TransformOptions

logger = get_logger(__name__)

ProgressCallback = Callable[[float], None]


class TransformClient(ABC):
    """Call contract of the external background-removal service."""

    service: str = "transform"

    @abstractmethod
    async def invoke(
        self,
        input_bytes: bytes,
        options: TransformOptions,
        on_progress: ProgressCallback,
        token: CancellationToken
    ) -> bytes:
        pass

    async def close(self):
        """Release clients, pools and sessions."""
        pass


# =============================================================================
# rembg (in-process model, run on a worker slot)
# =============================================================================

@functools.lru_cache(maxsize=4)
def _rembg_session(model: str):
    # Lazy import: model weights are loaded only when a job actually runs
    from rembg import new_session
    return new_session(model)


def encode_output(image_bytes: bytes, options: TransformOptions) -> bytes:
    """Re-encode a cut-out image in the requested output format."""
    image = Image.open(io.BytesIO(image_bytes))
    buffer = io.BytesIO()
    if options.output_format == OutputFormat.PNG:
        image.save(buffer, format="PNG", optimize=True)
    else:
        image.save(buffer, format="WEBP", quality=int(round(options.output_quality * 100)))
    return buffer.getvalue()


def rembg_transform(
    image_bytes: bytes,
    options: TransformOptions,
    progress: ProgressCallback
) -> bytes:
    """
    Remove background with rembg. Runs on a worker thread.

    Args:
        image_bytes: Compressed source image
        options: Model and output encoding
        progress: Raises TransformCancelled once the episode is cancelled

    Returns:
        Encoded image with transparent background
    """
    from rembg import remove

    logger.info("rembg_starting", input_size=len(image_bytes), model=options.model)
    progress(0.0)

    session = _rembg_session(options.model)
    progress(0.2)

    cutout = remove(image_bytes, session=session)
    progress(0.9)

    output_bytes = encode_output(cutout, options)
    logger.info("rembg_completed", input_size=len(image_bytes), output_size=len(output_bytes))
    return output_bytes


# =============================================================================
# Remote service over HTTP
# =============================================================================

class HttpTransformClient(TransformClient):
    """Posts the image as base64 JSON to a remote background-removal API."""

    service = "http"

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.url = url
        self.api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def invoke(
        self,
        input_bytes: bytes,
        options: TransformOptions,
        on_progress: ProgressCallback,
        token: CancellationToken
    ) -> bytes:
        token.raise_if_cancelled()

        payload = {
            "image": base64.b64encode(input_bytes).decode("utf-8"),
            "options": options.model_dump(mode="json"),
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        on_progress(0.0)
        try:
            response = await token.run(self._client.post(self.url, json=payload, headers=headers))
        except TransformCancelled:
            raise
        except httpx.TimeoutException:
            raise TransformError("Transform API timeout", service=self.service)
        except httpx.HTTPError as e:
            raise TransformError(f"Transform API call failed: {e}", service=self.service)

        if response.status_code != 200:
            raise TransformError(
                f"Transform API error {response.status_code}: {response.text[:200]}",
                service=self.service,
                http_status=response.status_code
            )

        try:
            output_bytes = base64.b64decode(response.json()["image"], validate=True)
        except (ValueError, KeyError, TypeError, binascii.Error) as e:
            raise TransformError(
                f"Malformed transform API response: {e}",
                service=self.service,
                http_status=response.status_code
            )

        on_progress(1.0)
        return output_bytes

    async def close(self):
        if self._owns_client:
            await self._client.aclose()


# =============================================================================
# Simulated backend for development
# =============================================================================

class SimulatedTransformClient(TransformClient):
    """Returns the input unchanged after a cancellable delay."""

    service = "simulated"

    def __init__(self, latency: float = 0.5, steps: int = 5):
        self.latency = latency
        self.steps = max(1, steps)

    async def invoke(
        self,
        input_bytes: bytes,
        options: TransformOptions,
        on_progress: ProgressCallback,
        token: CancellationToken
    ) -> bytes:
        token.raise_if_cancelled()
        logger.info("transform_simulated_starting", input_size=len(input_bytes))

        for step in range(self.steps):
            await token.sleep(self.latency / self.steps)
            on_progress((step + 1) / self.steps)

        return input_bytes


# =============================================================================
# Factory
# =============================================================================

def create_transform_client(settings) -> TransformClient:
    """Build the transform client selected by TRANSFORM_BACKEND."""
    backend = settings.TRANSFORM_BACKEND.lower()

    if backend == "rembg":
        from cutout.pipeline.worker import WorkerTransformClient
        return WorkerTransformClient(rembg_transform, max_workers=settings.BATCH_CONCURRENCY)
    if backend == "http":
        return HttpTransformClient(
            settings.TRANSFORM_API_URL,
            api_key=settings.TRANSFORM_API_KEY,
            timeout=settings.TRANSFORM_TIMEOUT_SECONDS
        )
    if backend == "simulated":
        return SimulatedTransformClient(latency=settings.SIMULATED_LATENCY_SECONDS)

    raise ValueError(f"Unknown TRANSFORM_BACKEND: {settings.TRANSFORM_BACKEND}")

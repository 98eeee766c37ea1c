import io
import asyncio
from typing import List, Optional

import pytest
from PIL import Image

from cutout.core.cancellation import CancellationToken
from cutout.core.config import Settings
from cutout.core.exceptions import TransformError
from cutout.core.handles import HandleKind, ResourceLifecycleManager
from cutout.modules.imagery.models import Job, TransformOptions
from cutout.pipeline.stages import TransformClient


def encode_image(fmt: str = "PNG", size=(64, 48), color=(200, 40, 40)) -> bytes:
    mode = "RGBA" if fmt == "PNG" else "RGB"
    fill = color + (255,) if mode == "RGBA" else color
    buffer = io.BytesIO()
    Image.new(mode, size, fill).save(buffer, format=fmt)
    return buffer.getvalue()


class ScriptedTransform(TransformClient):
    """
    Fake transform. Each call consumes one script step:
    - an Exception instance is raised
    - an asyncio.Event is awaited before succeeding
    - bytes are returned as output
    - None (or an exhausted script) returns b"cutout-<call number>"
    Inputs listed in failing_inputs always fail.
    """

    service = "scripted"

    def __init__(self, script: Optional[list] = None, honor_cancel: bool = True, failing_inputs=()):
        self.script = list(script or [])
        self.failing_inputs = set(failing_inputs)
        self.honor_cancel = honor_cancel
        self.calls = 0
        self.inputs: List[bytes] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def invoke(self, input_bytes, options, on_progress, token):
        token.raise_if_cancelled()
        self.calls += 1
        call = self.calls
        self.inputs.append(input_bytes)
        step = self.script.pop(0) if self.script else None

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            on_progress(0.5)
            await asyncio.sleep(0)
            if input_bytes in self.failing_inputs:
                raise TransformError("unprocessable")
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, asyncio.Event):
                if self.honor_cancel:
                    await token.run(step.wait())
                else:
                    await step.wait()
                step = None
            on_progress(1.0)
            return step if step is not None else b"cutout-%d" % call
        finally:
            self.active -= 1

    async def close(self):
        self.closed = True


@pytest.fixture
def settings(tmp_path):
    return Settings(
        MAX_RETRIES=3,
        RETRY_BASE_DELAY_MS=1,
        BATCH_CONCURRENCY=2,
        TRANSFORM_BACKEND="simulated",
        SIMULATED_LATENCY_SECONDS=0.01,
        UPLOAD_MAX_BYTES=200_000,
        EXPORT_PATH=str(tmp_path / "exports"),
    )


@pytest.fixture
def image_bytes():
    return encode_image


@pytest.fixture
def scripted():
    return ScriptedTransform


@pytest.fixture
def handles():
    return ResourceLifecycleManager()


@pytest.fixture
def options():
    return TransformOptions()


@pytest.fixture
def make_job(handles):
    def factory(name: str = "photo.png", data: bytes = b"source") -> Job:
        source = handles.acquire(data, HandleKind.SOURCE, "image/png")
        preview = handles.acquire(b"preview-" + data, HandleKind.PREVIEW, "image/png")
        return Job(name=name, source=source, preview=preview)
    return factory


@pytest.fixture
def token():
    return CancellationToken()

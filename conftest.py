import asyncio
from pathlib import Path

import httpx
import pytest

from scenecast.images import ImageCache
from scenecast.pipeline import TurnPipeline
from scenecast.storage import Storage

IMAGE_BYTES = b"\xff\xd8\xff\xe0fake-jpeg-body"


class StubLLM:
    """Streams queued responses back in small chunks, one per stream() call.

    A queued Exception is raised mid-stream instead. When `gate` is set the
    stream waits on it before its first chunk, so tests can hold a turn open.
    """

    def __init__(self, responses=None, *, ready: bool = True, chunk_size: int = 5) -> None:
        self.responses: list = list(responses or [])
        self.ready = ready
        self.chunk_size = chunk_size
        self.calls: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None

    async def is_ready(self) -> bool:
        return self.ready

    async def stream(self, stage, prompt):
        self.calls.append((stage, prompt))
        response = self.responses.pop(0)
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(response, Exception):
            raise response
        for i in range(0, len(response), self.chunk_size):
            await asyncio.sleep(0)
            yield response[i:i + self.chunk_size]


class RecordingDisplay:
    def __init__(self) -> None:
        self.renders: list[tuple[str, bool]] = []
        self.diagnoses: list[str] = []

    def render(self, markup: str, *, provisional: bool = False) -> None:
        self.renders.append((markup, provisional))

    def render_diagnosis(self, markup: str) -> None:
        self.diagnoses.append(markup)

    @property
    def last(self) -> str:
        return self.renders[-1][0]


class ImageServer:
    """MockTransport handler: serves IMAGE_BYTES unless told otherwise."""

    def __init__(self) -> None:
        self.requests: list[str] = []
        self.status = 200
        self.body = IMAGE_BYTES
        self.error: Exception | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status, content=self.body)


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
    return Storage(tmp_path / "data")


@pytest.fixture
def stub_llm() -> StubLLM:
    return StubLLM()


@pytest.fixture
def display() -> RecordingDisplay:
    return RecordingDisplay()


@pytest.fixture
def image_server() -> ImageServer:
    return ImageServer()


@pytest.fixture
def images(storage: Storage, image_server: ImageServer) -> ImageCache:
    return ImageCache(
        storage.images_dir, storage, transport=httpx.MockTransport(image_server),
    )


@pytest.fixture
def pipeline(storage, stub_llm, images, display) -> TurnPipeline:
    return TurnPipeline(storage=storage, llm=stub_llm, images=images, display=display)

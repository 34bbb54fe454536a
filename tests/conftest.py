"""
SnapNote — Test Configuration (conftest.py)
============================================

What:  Shared fixtures and in-process fakes for the whole suite.
How:   Environment overrides are applied before any snapnote import so the
       module-level Settings never sees a developer's .env values. The
       pipeline's external collaborators (Tesseract, Hugging Face, llama.cpp,
       Gemini) are replaced with fakes that are deterministic and instant.

Fakes:
    FakeRecognizer     scripted RecognitionOutput (or exception) per strategy
    FakeEngine         canned generate() responses, records close()
    ControlledLoader   writes chunks into the ContentCache with progress
                       reports; can pause mid-download or fail on demand

Fixtures (function-scoped):
    memory_cache, loader, manager, recognizer, sample_image, test_client
"""

import asyncio
import os
import tempfile
from typing import Dict, List, Optional, Union
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings for testing BEFORE any app imports
os.environ["GEMINI_API_KEY"] = ""
os.environ["MODEL_CACHE_DIR"] = tempfile.mkdtemp(prefix="snapnote_test_")
os.environ["AUTO_INITIALIZE_MODEL"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

from snapnote.schemas.capture import ImagePayload  # noqa: E402
from snapnote.services.content_cache import (  # noqa: E402
    InMemoryContentCache,
    manifest_key,
    model_namespace,
)
from snapnote.services.engine_loader import EngineLoader, InferenceEngine  # noqa: E402
from snapnote.services.model_manager import ModelLifecycleManager  # noqa: E402
from snapnote.services.recognizer import OCRStrategy, RecognitionOutput, Recognizer  # noqa: E402


# ══════════════════════════════════════════════════════════════════════════
# Fakes
# ══════════════════════════════════════════════════════════════════════════


def output(text: str, confidence: float) -> RecognitionOutput:
    lines = [line for line in text.split("\n") if line.strip()]
    return RecognitionOutput(
        text=text,
        confidence=confidence,
        word_count=len(text.split()),
        line_count=len(lines),
    )


class FakeRecognizer(Recognizer):
    """
    Returns a scripted result per strategy name; `default` covers the rest.
    Exceptions in the script are raised instead of returned.
    """

    def __init__(
        self,
        script: Optional[Dict[str, Union[RecognitionOutput, Exception]]] = None,
        default: Union[RecognitionOutput, Exception, None] = None,
    ):
        self.script = script or {}
        self.default = default if default is not None else output("", 0.0)
        self.calls: List[str] = []

    async def recognize(self, image: bytes, strategy: OCRStrategy) -> RecognitionOutput:
        self.calls.append(strategy.name)
        result = self.script.get(strategy.name, self.default)
        if isinstance(result, Exception):
            raise result
        return result


class FakeEngine(InferenceEngine):
    def __init__(self, model_id: str, response: str = "Hello there!", error: Optional[Exception] = None):
        self.model_id = model_id
        self.response = response
        self.error = error
        self.closed = False
        self.prompts: List[str] = []

    async def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self) -> None:
        self.closed = True


class ControlledLoader(EngineLoader):
    """
    Streams `chunks` chunks into the cache, reporting progress i/chunks.

    pause_at:        block after the chunk that reaches this fraction until
                     `release` is set (or the task is cancelled)
    fail_with:       raise after writing the weights, before the manifest
    final_reports:   how many progress == 1 reports to emit at the end
    """

    def __init__(self, chunks: int = 5, chunk_size: int = 1024):
        self.chunks = chunks
        self.chunk_size = chunk_size
        self.pause_at: Optional[float] = None
        self.fail_with: Optional[Exception] = None
        self.final_reports = 1
        self.engine_response = "Hello there!"
        self.paused = asyncio.Event()
        self.release = asyncio.Event()
        self.load_count = 0
        self.engines: List[FakeEngine] = []

    async def load(self, descriptor, cache, on_progress) -> InferenceEngine:
        self.load_count += 1
        pause_at = self.pause_at
        weights_key = f"{model_namespace(descriptor.id)}{descriptor.filename}"

        if not await cache.has(manifest_key(descriptor.id)):
            async with cache.open_writer(weights_key) as writer:
                for i in range(1, self.chunks + 1):
                    await writer.write(b"x" * self.chunk_size)
                    fraction = i / self.chunks
                    on_progress(fraction, f"Downloading chunk {i}/{self.chunks}")
                    if pause_at is not None and fraction >= pause_at:
                        self.paused.set()
                        await self.release.wait()
                        pause_at = None
                    await asyncio.sleep(0)

            if self.fail_with is not None:
                raise self.fail_with
            await cache.put(manifest_key(descriptor.id), b"{}")

        for _ in range(self.final_reports):
            on_progress(1.0, "Model ready")

        engine = FakeEngine(descriptor.id, response=self.engine_response)
        self.engines.append(engine)
        return engine


# ══════════════════════════════════════════════════════════════════════════
# Function-Scoped Fixtures
# ══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def memory_cache():
    return InMemoryContentCache(quota_bytes=1024 ** 3)


@pytest.fixture
def loader():
    return ControlledLoader()


@pytest.fixture
def manager(memory_cache, loader):
    return ModelLifecycleManager(
        memory_cache,
        loader,
        download_timeout=5.0,
        abort_grace_period=0.1,
        temperature=0.7,
        max_tokens=100,
    )


@pytest.fixture
def recognizer():
    return FakeRecognizer(default=output("Meeting Notes\nDiscuss the quarterly budget review.", 91.0))


@pytest.fixture
def sample_image():
    """Opaque bytes with an allowed declared type; fakes never decode them."""
    return ImagePayload(content=b"\x89PNG\r\n\x1a\n" + b"\x00" * 64, content_type="image/png", filename="note.png")


@pytest.fixture
def gemini_stub():
    """Unconfigured remote client stand-in."""
    client = MagicMock()
    client.is_configured = False
    client.generate = AsyncMock()
    client.health_check = AsyncMock(return_value=False)
    client.status.return_value = "unconfigured"
    return client


@pytest.fixture
def pipeline(memory_cache, loader, recognizer, gemini_stub):
    from snapnote.pipeline import build_pipeline

    return build_pipeline(
        cache=memory_cache,
        loader=loader,
        recognizer=recognizer,
        gemini=gemini_stub,
    )


@pytest_asyncio.fixture
async def test_client(pipeline):
    """
    HTTPX AsyncClient wired to an app serving the fake pipeline.

    ASGITransport does not run the lifespan, so the pipeline is handed to
    create_app() directly.
    """
    from snapnote.main import create_app

    app = create_app(pipeline=pipeline)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

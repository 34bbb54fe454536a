"""
SnapNote — Local Inference Engine & Loader
===========================================

What:  Fetches quantized GGUF weights into the ContentCache and loads them
       into a llama.cpp runtime.
How:   1. Stream the weights from the Hugging Face Hub with httpx, chunk by
          chunk, into `models/<id>/<filename>`, reporting progress
       2. Write `models/<id>/manifest.json` once the weights are complete
       3. Load the file with llama-cpp-python in a worker thread
Who:   Driven exclusively by ModelLifecycleManager, which owns cancellation,
       timeouts and cleanup. The loader itself never deletes anything.

Cancellation:
    Every network read is an await point, so cancelling the task running
    load() stops the download at the next chunk. The llama.cpp load runs
    in a thread and cannot be interrupted; the manager simply stops
    waiting for it and discards the result.

Progress scale:
    0.00 - 0.90   downloading weights (bytes received / total)
    0.90 - 1.00   loading weights into memory
"""

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import httpx
from huggingface_hub import hf_hub_url

from snapnote.config import settings
from snapnote.exceptions import PersistenceError
from snapnote.schemas.models import ModelDescriptor
from snapnote.services.content_cache import ContentCache, manifest_key, model_namespace

logger = logging.getLogger(__name__)

# (fraction 0..1, human-readable status)
ProgressFn = Callable[[float, str], None]

DOWNLOAD_SHARE = 0.9


class InferenceEngine(ABC):
    """A resident model that can answer prompts."""

    model_id: str

    @abstractmethod
    async def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the model's memory. Safe to call more than once."""
        ...


class EngineLoader(ABC):
    """Produces a ready InferenceEngine for a catalog entry."""

    @abstractmethod
    async def load(
        self,
        descriptor: ModelDescriptor,
        cache: ContentCache,
        on_progress: ProgressFn,
    ) -> InferenceEngine:
        ...


# ══════════════════════════════════════════════════════════════════════════
# llama.cpp Engine
# ══════════════════════════════════════════════════════════════════════════


class LlamaCppEngine(InferenceEngine):
    """InferenceEngine over a llama_cpp.Llama instance."""

    def __init__(self, llama, model_id: str):
        self._llama = llama
        self.model_id = model_id

    async def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        if self._llama is None:
            raise RuntimeError("engine has been closed")
        completion = await asyncio.to_thread(
            self._llama.create_chat_completion,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return completion["choices"][0]["message"]["content"] or ""

    async def close(self) -> None:
        llama, self._llama = self._llama, None
        if llama is not None:
            llama.close()


class HuggingFaceEngineLoader(EngineLoader):
    """
    Downloads GGUF weights from the Hugging Face Hub and loads them with
    llama-cpp-python.

    Requires a cache backend with a filesystem representation
    (FileSystemContentCache), because llama.cpp memory-maps the file.
    """

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        context_size: Optional[int] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.chunk_size = chunk_size or settings.download_chunk_size
        self.context_size = context_size or settings.llama_context_size
        self.token = token if token is not None else settings.hf_token
        self._transport = transport

    async def load(
        self,
        descriptor: ModelDescriptor,
        cache: ContentCache,
        on_progress: ProgressFn,
    ) -> InferenceEngine:
        weights_key = f"{model_namespace(descriptor.id)}{descriptor.filename}"

        if await cache.has(manifest_key(descriptor.id)):
            logger.info("Model %s found in cache, skipping download", descriptor.id)
            on_progress(DOWNLOAD_SHARE, "Loading model from cache...")
        else:
            await self._download(descriptor, cache, weights_key, on_progress)

        model_path = cache.local_path(weights_key)
        if model_path is None:
            raise PersistenceError(
                message="The configured model cache cannot provide files to the local runtime.",
                context={"model_id": descriptor.id},
            )

        on_progress(0.95, "Loading model into memory...")
        llama = await asyncio.to_thread(self._load_llama, str(model_path))
        on_progress(1.0, "Model ready")
        return LlamaCppEngine(llama, descriptor.id)

    async def _download(
        self,
        descriptor: ModelDescriptor,
        cache: ContentCache,
        weights_key: str,
        on_progress: ProgressFn,
    ) -> None:
        url = hf_hub_url(repo_id=descriptor.repo_id, filename=descriptor.filename)
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        start = time.perf_counter()

        logger.info("Downloading %s from %s", descriptor.id, descriptor.repo_id)
        on_progress(0.0, f"Downloading {descriptor.display_name}...")

        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(30.0, read=60.0),
            transport=self._transport,
        ) as client:
            async with client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length") or descriptor.approx_size_bytes)
                received = 0
                async with cache.open_writer(weights_key) as writer:
                    async for chunk in response.aiter_bytes(self.chunk_size):
                        await writer.write(chunk)
                        received += len(chunk)
                        fraction = min(received / total, 1.0) if total else 0.0
                        on_progress(
                            fraction * DOWNLOAD_SHARE,
                            f"Downloading {descriptor.display_name}: "
                            f"{received / (1024 * 1024):.0f}MB / {total / (1024 * 1024):.0f}MB",
                        )

        manifest = {
            "model_id": descriptor.id,
            "repo_id": descriptor.repo_id,
            "filename": descriptor.filename,
            "size_bytes": received,
            "downloaded_at": time.time(),
        }
        await cache.put(manifest_key(descriptor.id), json.dumps(manifest).encode("utf-8"))
        logger.info(
            "Downloaded %s (%d bytes) in %.1fs",
            descriptor.id,
            received,
            time.perf_counter() - start,
        )

    def _load_llama(self, model_path: str):
        # Imported lazily: llama-cpp-python is the optional "local" extra
        from llama_cpp import Llama

        logical_cores = os.cpu_count() or 4
        return Llama(
            model_path=model_path,
            n_ctx=self.context_size,
            n_threads=max(1, logical_cores // 2),
            n_threads_batch=logical_cores,
            verbose=False,
        )

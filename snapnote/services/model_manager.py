"""
SnapNote — Local Model Lifecycle Manager
=========================================

What:  Owns at most one resident local inference engine and everything
       around it: download, cancellation, timeout, caching, teardown and
       text generation.
How:   A small state machine over ModelStatus. Each download runs as an
       asyncio Task that is raced against a cancellation Event and a hard
       timeout. Every terminator (cancel, timeout, loader failure, caller
       cancellation) funnels into one shared cleanup routine that stops
       the task, purges the model's cache namespace and resets state.
Who:   Built once by build_pipeline() and shared by the HTTP routes and the
       local enhancement provider. Nothing else writes to the ContentCache.

State Machine:
    uninitialized → downloading → ready
    downloading → cancelled → uninitialized   (cancel_download, timeout)
    downloading → failed → uninitialized      (loader error)
    ready → downloading                       (model switch, engine torn down first)

Invariants:
    - One resident engine. A model switch releases the old engine before
      the new download starts.
    - One download at a time. initialize_model cancels an in-flight
      download and waits for its cleanup before starting its own.
    - A cancelled, timed-out or failed download leaves no cache entries
      for that model.
    - The progress == 1 notification fires exactly once per successful
      download, after the state is READY.
    - An engine is closed only once no inference is running on it.
    - Only the most recent initialize_model request starts a download;
      older requests still waiting for the lock give up.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from snapnote.config import settings
from snapnote.exceptions import (
    DownloadCancelled,
    DownloadTimeout,
    EngineInferenceError,
    ModelDownloadError,
    ModelNotInitialized,
    PersistenceError,
    SnapNoteError,
)
from snapnote.schemas.models import (
    AutoInitResult,
    DeleteModelResult,
    ModelState,
    ModelStatus,
    ModelTestResult,
    ProgressReport,
    StorageInfo,
)
from snapnote.services.content_cache import (
    MODEL_ROOT,
    ContentCache,
    manifest_key,
    model_namespace,
)
from snapnote.services.engine_loader import EngineLoader, InferenceEngine
from snapnote.services.model_registry import get_model

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressReport], None]
StateListener = Callable[[ModelState], None]

TEST_PROMPT = "Write a brief hello message."

# Loader reports are held just below completion
LOADER_PROGRESS_CAP = 0.99


class _DownloadHandle:
    """Bookkeeping for the single in-flight download."""

    def __init__(self, model_id: str):
        self.model_id = model_id
        self.started_at = time.monotonic()
        self.cancel_event = asyncio.Event()
        self.task: Optional[asyncio.Task] = None
        self.cleanup: Optional[asyncio.Task] = None

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class _InferenceGate:
    """Counts generate() calls running on one engine."""

    def __init__(self):
        self.running = 0
        self.idle = asyncio.Event()
        self.idle.set()

    def enter(self) -> None:
        self.running += 1
        self.idle.clear()

    def leave(self, task: asyncio.Future) -> None:
        if not task.cancelled():
            # Mark the outcome retrieved; an abandoned caller no longer will
            task.exception()
        self.running -= 1
        if self.running == 0:
            self.idle.set()


class ModelLifecycleManager:
    """
    Lifecycle owner for the local language model.

    Usage:
        manager = ModelLifecycleManager(cache, loader)
        await manager.initialize_model("Phi-3-mini-4k-instruct-q4")
        text = await manager.generate_text("Summarize: ...")
    """

    def __init__(
        self,
        cache: ContentCache,
        loader: EngineLoader,
        download_timeout: Optional[float] = None,
        abort_grace_period: Optional[float] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        self._cache = cache
        self._loader = loader
        self.download_timeout = download_timeout or settings.download_timeout
        self.abort_grace_period = (
            settings.abort_grace_period if abort_grace_period is None else abort_grace_period
        )
        self.temperature = settings.local_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.local_max_tokens

        self._state = ModelState()
        self._engine: Optional[InferenceEngine] = None
        self._download: Optional[_DownloadHandle] = None
        self._lifecycle_lock = asyncio.Lock()
        self._latest_request = 0
        self._gates: Dict[InferenceEngine, _InferenceGate] = {}
        self._progress_callback: Optional[ProgressCallback] = None
        self._listeners: List[StateListener] = []
        self._auto_init_attempted = False

    # ── Status ────────────────────────────────────────────────────────────

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def current_model_id(self) -> Optional[str]:
        return self._state.current_model_id

    def is_ready(self) -> bool:
        return self._state.status == ModelStatus.READY and self._engine is not None

    def is_model_ready(self, model_id: str) -> bool:
        return self.is_ready() and self._state.current_model_id == model_id

    def is_downloading(self) -> bool:
        return self._download is not None

    # ── Observers ─────────────────────────────────────────────────────────

    def set_progress_callback(self, callback: ProgressCallback) -> None:
        self._progress_callback = callback

    def clear_progress_callback(self) -> None:
        self._progress_callback = None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state-transition listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, status: ModelStatus, **fields) -> None:
        self._state = ModelState(status=status, **fields)
        logger.info(
            "Model state → %s (model=%s)", status.value, self._state.current_model_id
        )
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Model state listener failed")

    def _emit_progress(self, report: ProgressReport) -> None:
        callback = self._progress_callback
        if callback is None:
            return
        try:
            callback(report)
        except Exception:
            logger.exception("Progress callback failed")

    def _on_loader_progress(self, handle: _DownloadHandle, progress: float, status_text: str) -> None:
        # Reports from a superseded or aborted download are dropped
        if handle is not self._download or handle.cancel_event.is_set():
            return
        # progress == 1 is only reported once the engine is resident and READY
        progress = max(0.0, min(LOADER_PROGRESS_CAP, progress))

        # Progress updates the snapshot without notifying listeners
        self._state = ModelState(
            status=ModelStatus.DOWNLOADING,
            current_model_id=handle.model_id,
            progress=progress,
            elapsed_ms=handle.elapsed_ms(),
            status_text=status_text,
        )
        self._emit_progress(
            ProgressReport(
                progress=progress,
                status_text=status_text,
                elapsed_ms=handle.elapsed_ms(),
            )
        )

    # ── Initialization ────────────────────────────────────────────────────

    async def initialize_model(self, model_id: str) -> ModelState:
        """
        Download (if needed) and load a model, making it the resident engine.

        Returns immediately when the model is already ready. Raises
        UnknownModelError, DownloadCancelled, DownloadTimeout or
        ModelDownloadError; by then cleanup has finished and the manager
        is back to uninitialized.
        """
        descriptor = get_model(model_id)

        if self.is_model_ready(model_id):
            logger.debug("Model %s already ready, skipping initialization", model_id)
            return self._state

        self._latest_request += 1
        ticket = self._latest_request

        if self._download is not None:
            logger.info(
                "Cancelling in-flight download of %s before starting %s",
                self._download.model_id,
                model_id,
            )
            await self.cancel_download()

        async with self._lifecycle_lock:
            self._raise_if_superseded(ticket, model_id)
            if self.is_model_ready(model_id):
                return self._state

            if self._engine is not None:
                logger.info("Switching model: releasing %s", self._engine.model_id)
                await self._release_engine()
                self._raise_if_superseded(ticket, model_id)

            handle = _DownloadHandle(model_id)
            self._download = handle
            self._set_state(
                ModelStatus.DOWNLOADING,
                current_model_id=model_id,
                status_text=f"Preparing {descriptor.display_name}...",
            )
            handle.task = asyncio.create_task(
                self._loader.load(
                    descriptor,
                    self._cache,
                    lambda p, text: self._on_loader_progress(handle, p, text),
                )
            )
            cancel_waiter = asyncio.create_task(handle.cancel_event.wait())

            try:
                await asyncio.wait(
                    {handle.task, cancel_waiter},
                    timeout=self.download_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            except asyncio.CancelledError:
                logger.warning("initialize_model(%s) was cancelled by its caller", model_id)
                await asyncio.shield(self._abort(handle, ModelStatus.CANCELLED, "Download cancelled"))
                raise
            finally:
                cancel_waiter.cancel()

            if handle.cancel_event.is_set():
                await asyncio.shield(self._abort(handle, ModelStatus.CANCELLED, "Download cancelled"))
                raise DownloadCancelled(model_id)

            if not handle.task.done():
                logger.error(
                    "Download of %s timed out after %.0fs", model_id, self.download_timeout
                )
                await asyncio.shield(
                    self._abort(handle, ModelStatus.CANCELLED, "Download timed out")
                )
                raise DownloadTimeout(model_id, self.download_timeout)

            error = handle.task.exception()
            if error is not None:
                logger.error("Failed to initialize model %s: %s", model_id, str(error))
                await asyncio.shield(self._abort(handle, ModelStatus.FAILED, str(error)))
                if isinstance(error, SnapNoteError):
                    raise error
                raise ModelDownloadError(
                    model_id,
                    message=f"Failed to load the model: {error}",
                    context={"error_type": type(error).__name__},
                ) from error

            self._engine = handle.task.result()
            self._download = None
            elapsed_ms = handle.elapsed_ms()
            self._set_state(
                ModelStatus.READY,
                current_model_id=model_id,
                progress=1.0,
                elapsed_ms=elapsed_ms,
                status_text="Model ready",
            )
            self._emit_progress(
                ProgressReport(progress=1.0, status_text="Model ready", elapsed_ms=elapsed_ms)
            )
            logger.info("Model %s ready in %dms", model_id, elapsed_ms)
            return self._state

    def _raise_if_superseded(self, ticket: int, model_id: str) -> None:
        # No await between this check and the download handle being published
        if ticket != self._latest_request:
            logger.info("Initialization of %s superseded by a newer request", model_id)
            raise DownloadCancelled(model_id, context={"reason": "superseded"})

    def _abort(self, handle: _DownloadHandle, status: ModelStatus, reason: str) -> asyncio.Task:
        """Start (or join) the one cleanup routine for a download."""
        handle.cancel_event.set()
        if handle.cleanup is None:
            handle.cleanup = asyncio.ensure_future(self._cleanup_download(handle, status, reason))
        return handle.cleanup

    async def _cleanup_download(self, handle: _DownloadHandle, status: ModelStatus, reason: str) -> None:
        task = handle.task
        if task is not None and not task.done():
            task.cancel()
            # The loader may not honour cancellation promptly; purge regardless
            await asyncio.wait({task}, timeout=self.abort_grace_period)

        if task is not None and task.done() and not task.cancelled() and task.exception() is None:
            # Load finished while we were aborting: discard the engine
            await self._close_engine(task.result())

        self._set_state(
            status,
            current_model_id=handle.model_id,
            progress=self._state.progress,
            elapsed_ms=handle.elapsed_ms(),
            status_text=reason,
            error=reason if status == ModelStatus.FAILED else None,
        )
        deleted, _ = await self._purge(model_namespace(handle.model_id))
        logger.info(
            "Cleaned up download of %s (%s): removed %d cache entries",
            handle.model_id,
            reason,
            deleted,
        )

        if self._download is handle:
            self._download = None
        self._set_state(ModelStatus.UNINITIALIZED, status_text=reason)
        self._emit_progress(
            ProgressReport(
                progress=0.0,
                status_text=reason,
                elapsed_ms=handle.elapsed_ms(),
                cancelled=status == ModelStatus.CANCELLED,
                error=status == ModelStatus.FAILED,
            )
        )

    async def cancel_download(self) -> bool:
        """
        Cancel the in-flight download.

        Returns False when nothing is downloading. Otherwise waits for the
        shared cleanup (partial cache entries purged, state reset) and
        returns True.
        """
        handle = self._download
        if handle is None:
            return False
        logger.info("Cancelling download of %s", handle.model_id)
        await asyncio.shield(self._abort(handle, ModelStatus.CANCELLED, "Download cancelled"))
        return True

    async def is_model_cached(self, model_id: str) -> bool:
        try:
            return await self._cache.has(manifest_key(model_id))
        except Exception as e:
            logger.warning("Cache check failed for %s: %s", model_id, str(e))
            return False

    async def auto_initialize(self, model_id: Optional[str] = None) -> AutoInitResult:
        """
        Silently load a model on startup, but only if it is fully cached.

        Runs at most once per manager until reset_auto_init(). Never
        starts a download and never raises.
        """
        if self._auto_init_attempted or self.is_ready():
            return AutoInitResult(
                success=self.is_ready(),
                message="Already initialized or attempted",
                model_id=self.current_model_id,
            )
        self._auto_init_attempted = True

        model_id = model_id or settings.default_model_id
        if not model_id:
            return AutoInitResult(success=False, message="No local model selected")

        if not await self.is_model_cached(model_id):
            return AutoInitResult(
                success=False, message="Model not downloaded yet", model_id=model_id
            )

        logger.info("Auto-initializing cached model %s", model_id)
        try:
            await self.initialize_model(model_id)
        except SnapNoteError as e:
            logger.error("Auto-initialization of %s failed: %s", model_id, e.message)
            return AutoInitResult(success=False, message=e.message, model_id=model_id, error=True)
        return AutoInitResult(
            success=True, message="Model auto-initialized successfully", model_id=model_id
        )

    def reset_auto_init(self) -> None:
        self._auto_init_attempted = False

    # ── Inference ─────────────────────────────────────────────────────────

    async def generate_text(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Run the resident engine.

        Fails fast with ModelNotInitialized unless a model is ready; it
        never waits for a download. An engine failure unloads the model
        and raises EngineInferenceError.
        """
        engine = self._engine
        if self._state.status != ModelStatus.READY or engine is None:
            raise ModelNotInitialized(context={"status": self._state.status.value})

        try:
            return await self._run_inference(
                engine,
                prompt,
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.max_tokens,
            )
        except Exception as e:
            logger.error("Local inference failed on %s: %s", engine.model_id, str(e))
            if self._engine is engine:
                await self._release_engine()
                self._set_state(
                    ModelStatus.UNINITIALIZED,
                    status_text="Model unloaded after an inference error",
                    error=str(e),
                )
            raise EngineInferenceError(
                context={"model_id": engine.model_id, "error_type": type(e).__name__}
            ) from e

    async def _run_inference(
        self, engine: InferenceEngine, prompt: str, *, temperature: float, max_tokens: int
    ) -> str:
        gate = self._gates.setdefault(engine, _InferenceGate())
        gate.enter()
        task = asyncio.ensure_future(
            engine.generate(prompt, temperature=temperature, max_tokens=max_tokens)
        )
        # The gate opens when generate() really returns, even if our caller is cancelled
        task.add_done_callback(gate.leave)
        return await asyncio.shield(task)

    async def test_model(self) -> ModelTestResult:
        try:
            response = await self.generate_text(TEST_PROMPT, max_tokens=50)
        except SnapNoteError as e:
            return ModelTestResult(success=False, error=e.message)
        return ModelTestResult(success=True, response=response)

    # ── Teardown & Storage ────────────────────────────────────────────────

    async def _close_engine(self, engine: InferenceEngine) -> None:
        try:
            await engine.close()
        except Exception as e:
            logger.warning("Failed to close engine %s: %s", engine.model_id, str(e))

    async def _release_engine(self) -> None:
        """
        Detach the resident engine, then close it once every inference
        already running on it has returned. New generate_text calls fail
        fast as soon as the engine is detached.
        """
        engine, self._engine = self._engine, None
        if engine is None:
            return
        gate = self._gates.pop(engine, None)
        if gate is not None and gate.running:
            logger.info(
                "Waiting for %d in-flight inference(s) on %s before closing it",
                gate.running,
                engine.model_id,
            )
            await gate.idle.wait()
        await self._close_engine(engine)

    async def unload_model(self) -> None:
        """Cancel any download, release the engine and return to uninitialized."""
        await self.cancel_download()
        await self._release_engine()
        if self._state.status != ModelStatus.UNINITIALIZED or self._state.current_model_id:
            self._set_state(ModelStatus.UNINITIALIZED, status_text="Model unloaded")

    async def _purge(self, prefix: str):
        """Delete a cache namespace. Returns (deleted, error message or None)."""
        try:
            return await self._cache.delete_by_prefix(prefix), None
        except PersistenceError as e:
            logger.warning("Cache purge of '%s' incomplete: %s %s", prefix, e.message, e.context)
            return e.context.get("deleted", 0), e.message

    async def delete_model(self, model_id: Optional[str] = None) -> DeleteModelResult:
        """
        Remove one model's cached artifacts (default: the current model).

        In-memory state is always reset, even when some entries could not
        be deleted.
        """
        target = model_id or self.current_model_id
        if not target:
            return DeleteModelResult(success=False, error="No model specified for deletion")
        get_model(target)

        await self.unload_model()
        deleted, error = await self._purge(model_namespace(target))
        logger.info("Deleted model %s (%d cache entries)", target, deleted)
        return DeleteModelResult(
            success=error is None, model_id=target, deleted_entries=deleted, error=error
        )

    async def clear_model_cache(self) -> DeleteModelResult:
        """Remove every cached model artifact and reset state."""
        await self.unload_model()
        deleted, error = await self._purge(MODEL_ROOT)
        logger.info("Cleared model cache (%d entries)", deleted)
        return DeleteModelResult(success=error is None, deleted_entries=deleted, error=error)

    async def get_storage_info(self) -> Optional[StorageInfo]:
        try:
            return await self._cache.usage()
        except Exception as e:
            logger.warning("Storage estimate failed: %s", str(e))
            return None

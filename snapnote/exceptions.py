"""
SnapNote — Exception Hierarchy
===============================

What:  Application-specific exceptions for every failure the capture
       pipeline can surface.
How:   Each exception carries a client-safe `message` and a `context`
       dict that is logged but never returned. Global handlers in
       main.py map each family to an HTTP status code.

Exception Hierarchy:
    SnapNoteError (base)
    ├── InvalidInput                 → 400 Bad Request
    │   └── InvalidImageFormat       → 400 (MIME type / size policy)
    ├── RecognitionFailure           → 422 Unprocessable Entity
    │   ├── NoTextDetected           → every OCR strategy came back empty
    │   └── RecognitionEngineError   → one strategy failed (absorbed internally)
    ├── ModelLifecycleError          → 409 Conflict
    │   ├── UnknownModelError        → 404 Not Found
    │   ├── ModelNotInitialized      → 409 (inference before initialize_model)
    │   ├── DownloadCancelled        → 409
    │   ├── DownloadTimeout          → 504 Gateway Timeout
    │   ├── ModelDownloadError       → 502 Bad Gateway
    │   └── EngineInferenceError     → 503 Service Unavailable
    ├── PersistenceError             → 500 (content cache read/write)
    ├── LLMServiceError              → 503 (remote provider, retries exhausted)
    └── CircuitBreakerOpenError      → 503 (remote provider, circuit open)
"""

from typing import Any, Dict, Optional


class SnapNoteError(Exception):
    """
    Base exception for all SnapNote errors.

    Attributes:
        message:  User-facing description (safe to return in an API response)
        context:  Additional debug info (logged, NOT returned to the client)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


# ══════════════════════════════════════════════════════════════════════════
# Input Validation
# ══════════════════════════════════════════════════════════════════════════


class InvalidInput(SnapNoteError):
    """Raised when client input fails validation; the client can fix it."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class InvalidImageFormat(InvalidInput):
    """
    Raised when an image's declared type or size violates policy.

    Always raised before any recognition work begins.
    """

    def __init__(
        self,
        message: str = "Invalid image file format. Please use JPG, PNG, GIF, BMP, or WebP.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, field="file", context=context)


# ══════════════════════════════════════════════════════════════════════════
# Recognition
# ══════════════════════════════════════════════════════════════════════════


class RecognitionFailure(SnapNoteError):
    """Base for OCR failures."""


class NoTextDetected(RecognitionFailure):
    """
    Raised when every OCR strategy either failed or produced no usable text.

    Example response:
        {
            "error": "no_text_detected",
            "message": "No text was detected in the image. Please try with a clearer image.",
            "details": {"strategies_tried": 5, "strategies_failed": 1}
        }
    """

    def __init__(
        self,
        message: str = "No text was detected in the image. Please try with a clearer image.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RecognitionEngineError(RecognitionFailure):
    """
    Raised by a recognizer when a single strategy pass fails.

    The extraction engine logs it and moves on to the next strategy; it
    only reaches callers who use a Recognizer directly.
    """

    def __init__(
        self,
        strategy: str,
        message: str = "Recognition pass failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["strategy"] = strategy
        super().__init__(message=message, context=ctx)
        self.strategy = strategy


# ══════════════════════════════════════════════════════════════════════════
# Local Model Lifecycle
# ══════════════════════════════════════════════════════════════════════════


class ModelLifecycleError(SnapNoteError):
    """
    Base for local model lifecycle errors.

    By the time one of these reaches a caller, the manager has already
    reset its state, so the caller may retry immediately.
    """


class UnknownModelError(ModelLifecycleError):
    """Raised when a model id is not in the registry."""

    def __init__(self, model_id: str, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["model_id"] = model_id
        super().__init__(message=f"Model '{model_id}' is not available", context=ctx)
        self.model_id = model_id


class ModelNotInitialized(ModelLifecycleError):
    """
    Raised when inference is requested while no model is ready.

    Repeated occurrences point at a caller that skipped initialize_model,
    not at a transient condition.
    """

    def __init__(
        self,
        message: str = "Local AI model not initialized. Please load a model first.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DownloadCancelled(ModelLifecycleError):
    """Raised to the initialize_model caller when its download was cancelled."""

    def __init__(self, model_id: str, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["model_id"] = model_id
        super().__init__(
            message="Model download was cancelled and partial data was removed.",
            context=ctx,
        )
        self.model_id = model_id


class DownloadTimeout(ModelLifecycleError):
    """Raised when a download does not finish within the configured limit."""

    def __init__(
        self,
        model_id: str,
        timeout_seconds: float,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx.update({"model_id": model_id, "timeout_seconds": timeout_seconds})
        super().__init__(
            message=(
                f"Model download timed out after {timeout_seconds:.0f} seconds. "
                "Partial data was removed; please try again."
            ),
            context=ctx,
        )
        self.model_id = model_id
        self.timeout_seconds = timeout_seconds


class ModelDownloadError(ModelLifecycleError):
    """Raised when downloading or loading a model fails outright."""

    def __init__(
        self,
        model_id: str,
        message: str = "Failed to download the model. Please try again.",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["model_id"] = model_id
        super().__init__(message=message, context=ctx)
        self.model_id = model_id


class EngineInferenceError(ModelLifecycleError):
    """
    Raised when the resident engine fails during inference.

    The manager demotes itself to uninitialized before raising.
    """

    def __init__(
        self,
        message: str = "The local AI model failed to generate a response. Please reload the model.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


# ══════════════════════════════════════════════════════════════════════════
# Storage
# ══════════════════════════════════════════════════════════════════════════


class PersistenceError(SnapNoteError):
    """
    Raised when the content cache cannot be read or written.

    Cleanup paths catch and log these; download paths let them propagate.
    """

    def __init__(
        self,
        message: str = "Model storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


# ══════════════════════════════════════════════════════════════════════════
# Remote Provider
# ══════════════════════════════════════════════════════════════════════════


class LLMServiceError(SnapNoteError):
    """
    Raised when the remote AI provider fails after all retries, or returns
    something that is not a note.
    """

    def __init__(
        self,
        message: str = "AI enhancement service is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class CircuitBreakerOpenError(SnapNoteError):
    """
    Raised when the remote provider's circuit breaker is OPEN.

        CLOSED → failures reach threshold → OPEN (reject for recovery_time)
        OPEN → recovery_time elapsed → HALF_OPEN (one trial call)
        HALF_OPEN → success → CLOSED, failure → OPEN
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"AI service is temporarily unavailable due to repeated failures. "
            f"The service will automatically retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time

"""
SnapNote — Google Gemini Note Client
=====================================

What:  Remote AI collaborator: sends the note-enhancement prompt to Gemini
       and returns the structured note it answers with.
How:   Requests JSON output (response_mime_type="application/json"),
       wraps the API call in tenacity retries and guards it with a
       circuit breaker.
Who:   Created once by build_pipeline(); used by RemoteEnhancementProvider
       and the /health endpoint.

Resilience Strategy:
    1. Tenacity retry with exponential backoff + jitter for transient failures
    2. Circuit breaker so a Gemini outage fails fast instead of stacking
       retries on every capture
    3. Per-request timeout on the response phase

Contract:
    generate(prompt) → {"title", "summary", "content", "tags", ["confidence"]}
    Anything that is not a JSON object raises LLMServiceError.
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Dict, Optional

import google.generativeai as genai
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from snapnote.config import settings
from snapnote.exceptions import CircuitBreakerOpenError, LLMServiceError

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker
# ══════════════════════════════════════════════════════════════════════════


class CircuitBreaker:
    """
    Closed / open / half-open breaker around the Gemini API.

    State Machine:
        CLOSED     failure_count reaches threshold → OPEN
        OPEN       calls rejected until recovery_timeout elapses → HALF_OPEN
        HALF_OPEN  one trial call: success → CLOSED, failure → OPEN

    Not thread-safe; all callers share one event loop.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """
        Returns True when a call may proceed.

        Raises:
            CircuitBreakerOpenError: OPEN and still inside the recovery window
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = time.time() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info("Circuit breaker transitioning to HALF_OPEN after %.1fs", elapsed)
                self.state = self.HALF_OPEN
                return True
            remaining = int(self.recovery_timeout - elapsed)
            raise CircuitBreakerOpenError(recovery_time=remaining)

        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (trial request failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Gemini Client
# ══════════════════════════════════════════════════════════════════════════


class GeminiNoteClient:
    """
    Gemini text-generation client for note enhancement.

    Error Handling Chain:
        API call fails → tenacity retries with backoff
        → retries exhausted → circuit breaker failure recorded → LLMServiceError
        → threshold reached → later calls rejected instantly
    """

    GENERATION_CONFIG = {
        "response_mime_type": "application/json",
        "temperature": 0.4,
    }

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        self.api_key = settings.gemini_api_key if api_key is None else api_key
        self.model_name = model_name or settings.gemini_model

        if self.is_configured:
            genai.configure(api_key=self.api_key)

        self.model = genai.GenerativeModel(self.model_name)
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )

        logger.info(
            "GeminiNoteClient initialized with model=%s, configured=%s, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            self.model_name,
            self.is_configured,
            settings.cb_failure_threshold,
            settings.cb_recovery_timeout,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and self.api_key != "your_gemini_api_key_here"

    async def generate(self, prompt: str) -> Dict[str, Any]:
        """
        Send the enhancement prompt and return the parsed JSON note.

        Raises:
            CircuitBreakerOpenError: too many recent failures
            LLMServiceError:         unconfigured, retries exhausted, or the
                                     response is not a JSON object
        """
        if not self.is_configured:
            raise LLMServiceError(
                message="Remote AI enhancement is not configured.",
                context={"reason": "missing_api_key"},
            )

        request_id = str(uuid.uuid4())[:8]
        self.circuit_breaker.can_execute()
        logger.info("[%s] Starting Gemini enhancement (%d prompt chars)", request_id, len(prompt))

        try:
            raw = await self._call_gemini_with_retry(prompt, request_id)
            self.circuit_breaker.record_success()
        except CircuitBreakerOpenError:
            raise
        except Exception as e:
            self.circuit_breaker.record_failure()
            logger.error("[%s] Gemini enhancement failed: %s", request_id, str(e))
            raise LLMServiceError(
                message="AI enhancement failed after multiple attempts. Please try again later.",
                retry_after=self.circuit_breaker.recovery_timeout,
                context={"request_id": request_id, "error_type": type(e).__name__},
            ) from e

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("[%s] Gemini returned non-JSON output: %s", request_id, str(e))
            raise LLMServiceError(
                message="AI enhancement returned an unreadable response.",
                context={"request_id": request_id, "preview": raw[:120]},
            ) from e

        if not isinstance(payload, dict):
            raise LLMServiceError(
                message="AI enhancement returned an unexpected response shape.",
                context={"request_id": request_id, "type": type(payload).__name__},
            )
        return payload

    @retry(
        # The SDK raises generic exceptions for API errors
        retry=retry_if_exception_type(Exception),
        stop=stop_after_attempt(settings.retry_max_attempts),
        wait=wait_exponential_jitter(
            initial=settings.retry_min_wait,
            max=settings.retry_max_wait,
            jitter=1,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _call_gemini_with_retry(self, prompt: str, request_id: str) -> str:
        start_time = time.time()
        try:
            response = await self.model.generate_content_async(
                prompt,
                generation_config=self.GENERATION_CONFIG,
                request_options={"timeout": settings.gemini_timeout},
            )
        except Exception as e:
            logger.warning(
                "[%s] Gemini API call failed after %.0fms: %s",
                request_id,
                (time.time() - start_time) * 1000,
                str(e),
            )
            raise

        text = response.text.strip() if response.text else ""
        logger.info(
            "[%s] Gemini responded in %.0fms with %d chars",
            request_id,
            (time.time() - start_time) * 1000,
            len(text),
        )
        return text

    async def health_check(self) -> bool:
        """True when the API is reachable with the configured key."""
        if not self.is_configured:
            return False
        try:
            models = await asyncio.to_thread(lambda: list(genai.list_models()))
        except Exception as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False
        target = f"models/{self.model_name}"
        if target not in [m.name for m in models]:
            logger.warning("Configured model %s not found in available models", target)
        return True

    def status(self) -> str:
        """Cheap status label for /health, without a network call."""
        if not self.is_configured:
            return "unconfigured"
        if self.circuit_breaker.state == CircuitBreaker.OPEN:
            return "circuit_open"
        return "available"

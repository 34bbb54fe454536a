"""
SnapNote — OCR Extraction Engine
=================================

What:  Turns a captured image into the best available recognized text.
How:   1. Validate the declared MIME type and size (before any OCR work)
       2. Try strategies strictly in priority order, one pass at a time
       3. Keep the highest-confidence non-empty result
       4. Stop early once a result reaches the confidence threshold
       5. Clean the winning text (recognizer confusions, whitespace,
          punctuation spacing)
Who:   CaptureService and the /api/capture routes.

Failure Taxonomy:
    InvalidImageFormat       rejected before recognition
    RecognitionEngineError   one strategy failed; logged and skipped
    NoTextDetected           every strategy failed or came back blank
"""

import logging
import re
import time
from typing import Iterable, List, Optional, Sequence

from snapnote.config import settings
from snapnote.exceptions import InvalidImageFormat, NoTextDetected, RecognitionFailure
from snapnote.schemas.capture import (
    BatchCaptureItem,
    CaptureResult,
    ExtractionOptions,
    ImagePayload,
)
from snapnote.services.recognizer import (
    DEFAULT_STRATEGIES,
    OCRStrategy,
    RecognitionOutput,
    Recognizer,
)

logger = logging.getLogger(__name__)


# ── Text Cleaning ─────────────────────────────────────────────────────────

_ZERO_IN_WORD = re.compile(r"(?<=[A-Za-z])0|0(?=[A-Za-z])")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_HORIZONTAL_RUNS = re.compile(r"[ \t\f\v]+")
_SPACE_BEFORE_PUNCT = re.compile(r"[ \t]+([.,!?;:])")
_SPACES_AFTER_PUNCT = re.compile(r"([.,!?;:])[ \t]{2,}")


def clean_text(text: str) -> str:
    """
    Deterministic post-processing applied to the winning result.

    Digits are kept unless a zero sits against a letter, so "2024" and
    "10.5" survive while "B0OK" becomes "BOOK".
    """
    text = text.replace("|", "I")
    text = _ZERO_IN_WORD.sub("O", text)
    text = text.replace("rn", "m")
    text = text.replace("[]", "l")

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_RUNS.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _EXCESS_NEWLINES.sub("\n\n", text)

    text = _SPACE_BEFORE_PUNCT.sub(r"\1", text)
    text = _SPACES_AFTER_PUNCT.sub(r"\1 ", text)
    return text.strip()


class OCRExtractionEngine:
    """
    Multi-strategy OCR with best-result selection and early exit.

    The threshold and strategy count are constructor configuration with
    per-call overrides through ExtractionOptions.
    """

    def __init__(
        self,
        recognizer: Recognizer,
        strategies: Sequence[OCRStrategy] = DEFAULT_STRATEGIES,
        confidence_threshold: Optional[float] = None,
        max_strategies: Optional[int] = None,
        allowed_types: Optional[Iterable[str]] = None,
        max_size: Optional[int] = None,
    ):
        if not strategies:
            raise ValueError("At least one OCR strategy is required")
        self.recognizer = recognizer
        self.strategies = tuple(strategies)
        self.confidence_threshold = (
            settings.ocr_confidence_threshold if confidence_threshold is None else confidence_threshold
        )
        self.max_strategies = max_strategies or settings.ocr_max_strategies
        self.allowed_types = frozenset(
            t.lower() for t in (allowed_types or settings.allowed_image_types_list)
        )
        self.max_size = max_size or settings.max_image_size

    def validate_image(self, image: ImagePayload) -> None:
        """
        Check the declared type and size against policy.

        Raises:
            InvalidImageFormat: type not allowed, too large, or empty
        """
        content_type = (image.content_type or "").split(";")[0].strip().lower()
        if content_type not in self.allowed_types:
            raise InvalidImageFormat(
                message="Invalid file type. Please upload a valid image file (JPEG, PNG, GIF, BMP, WebP).",
                context={"content_type": image.content_type, "filename": image.filename},
            )

        size = image.byte_length
        if size > self.max_size:
            size_mb = size / (1024 * 1024)
            max_mb = self.max_size / (1024 * 1024)
            raise InvalidImageFormat(
                message=f"File size ({size_mb:.1f}MB) exceeds maximum allowed size ({max_mb:.0f}MB).",
                context={"size_bytes": size, "max_bytes": self.max_size},
            )

        if size == 0 or not image.content:
            raise InvalidImageFormat(
                message="The uploaded image is empty.",
                context={"filename": image.filename},
            )

    async def extract_text(
        self,
        image: ImagePayload,
        options: Optional[ExtractionOptions] = None,
    ) -> CaptureResult:
        """
        Run the strategy loop and return the best cleaned result.

        Raises:
            InvalidImageFormat: before any recognition pass
            NoTextDetected:     nothing usable from any strategy
        """
        self.validate_image(image)

        options = options or ExtractionOptions()
        threshold = (
            self.confidence_threshold
            if options.confidence_threshold is None
            else options.confidence_threshold
        )
        limit = options.max_strategies or self.max_strategies

        best: Optional[RecognitionOutput] = None
        best_strategy: Optional[str] = None
        attempted = 0
        failed = 0
        start = time.perf_counter()

        for strategy in self.strategies[:limit]:
            attempted += 1
            logger.debug("Trying OCR strategy '%s'", strategy.name)
            try:
                output = await self.recognizer.recognize(image.content, strategy)
            except Exception as e:
                # Any per-strategy failure is a skip, never fatal
                failed += 1
                logger.warning("OCR strategy '%s' failed: %s", strategy.name, str(e))
                continue

            text = output.text.strip()
            logger.debug(
                "OCR strategy '%s': %.1f%% confidence, %d chars",
                strategy.name,
                output.confidence,
                len(text),
            )
            if not text:
                continue

            if best is None or output.confidence > best.confidence:
                best = output
                best_strategy = strategy.name

            if output.confidence >= threshold:
                break

        if best is None:
            raise NoTextDetected(
                context={"strategies_tried": attempted, "strategies_failed": failed}
            )

        cleaned = clean_text(best.text)
        if not cleaned:
            raise NoTextDetected(
                context={"strategies_tried": attempted, "reason": "empty after cleaning"}
            )

        logger.info(
            "OCR complete: strategy='%s' confidence=%.1f attempts=%d elapsed=%.0fms",
            best_strategy,
            best.confidence,
            attempted,
            (time.perf_counter() - start) * 1000,
        )
        return CaptureResult(
            text=cleaned,
            confidence=best.confidence,
            strategy_used=best_strategy,
            word_count=best.word_count,
            line_count=best.line_count,
        )

    async def extract_from_many(
        self,
        images: List[ImagePayload],
        options: Optional[ExtractionOptions] = None,
    ) -> List[BatchCaptureItem]:
        """
        Extract each image in turn; a failing image yields an error entry
        instead of aborting the batch.
        """
        items: List[BatchCaptureItem] = []
        for index, image in enumerate(images):
            try:
                result = await self.extract_text(image, options)
            except (InvalidImageFormat, RecognitionFailure) as e:
                logger.warning("Batch image %d (%s) failed: %s", index, image.filename, e.message)
                items.append(BatchCaptureItem(index=index, filename=image.filename, error=e.message))
                continue
            items.append(
                BatchCaptureItem(
                    index=index,
                    filename=image.filename,
                    text=result.text,
                    confidence=result.confidence,
                    result=result,
                )
            )
        return items

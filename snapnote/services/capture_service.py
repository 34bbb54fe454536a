"""
SnapNote — Capture Service (Pipeline Orchestrator)
===================================================

What:  Runs the capture-and-enhancement pipeline for uploaded images.
How:   Composes OCRExtractionEngine and NoteSynthesizer; both are
       injected, so the service holds no state of its own.
Who:   Called by the /api/capture route handlers.

Orchestration Flow (POST /api/capture):
    ┌──────────┐    ┌─────────────┐    ┌──────────────┐
    │  Upload  │───▶│  OCR        │───▶│  Synthesize  │───▶ CaptureResponse
    │  (Route) │    │  (strategy  │    │  (remote /   │
    └──────────┘    │   loop)     │    │   local /    │
                    └─────────────┘    │   heuristic) │
                                       └──────────────┘

    OCR errors (InvalidImageFormat, NoTextDetected) propagate to the
    global handlers. Synthesis never raises.
"""

import logging
from typing import List, Optional

from snapnote.schemas.capture import BatchCaptureResponse, ExtractionOptions, ImagePayload
from snapnote.schemas.note import CaptureResponse, SynthesisOptions
from snapnote.services.note_synthesizer import NoteSynthesizer
from snapnote.services.ocr_service import OCRExtractionEngine

logger = logging.getLogger(__name__)


class CaptureService:
    def __init__(self, ocr_engine: OCRExtractionEngine, synthesizer: NoteSynthesizer):
        self.ocr_engine = ocr_engine
        self.synthesizer = synthesizer

    async def capture(
        self,
        image: ImagePayload,
        options: Optional[SynthesisOptions] = None,
        extraction: Optional[ExtractionOptions] = None,
    ) -> CaptureResponse:
        """
        Extract text from one image and build a note from it.

        Raises:
            InvalidImageFormat: image rejected by policy
            NoTextDetected:     no strategy produced usable text
        """
        options = options or SynthesisOptions()
        capture = await self.ocr_engine.extract_text(image, extraction)
        note = await self.synthesizer.synthesize(capture.text, options)

        logger.info(
            "Captured %s: %d words via '%s', note by %s (confidence %.0f)",
            image.filename or "image",
            capture.word_count,
            capture.strategy_used,
            note.provider_used.value,
            note.confidence,
        )
        message = (
            "Text extracted and enhanced successfully"
            if options.enhance
            else "Text extracted successfully"
        )
        return CaptureResponse(message=message, capture=capture, note=note)

    async def capture_many(
        self,
        images: List[ImagePayload],
        extraction: Optional[ExtractionOptions] = None,
    ) -> BatchCaptureResponse:
        """OCR-only batch; one failed image does not fail the others."""
        items = await self.ocr_engine.extract_from_many(images, extraction)
        succeeded = sum(1 for item in items if item.ok)
        logger.info("Batch capture: %d/%d images succeeded", succeeded, len(items))
        return BatchCaptureResponse(items=items, succeeded=succeeded, failed=len(items) - succeeded)

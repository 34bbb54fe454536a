"""
SnapNote — Capture Schemas
===========================

What:  Pydantic models for the OCR half of the pipeline: the image
       payload going in and the CaptureResult coming out.
Who:   OCRExtractionEngine produces them; routes serialize them.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class ImagePayload(BaseModel):
    """
    An opaque captured image with its declared type and length.

    `size` is the declared byte length (e.g. from the upload). The larger
    of the declared and the actual length is what policy checks see.
    """

    content: bytes = Field(repr=False)
    content_type: str = Field(description="Declared MIME type, e.g. image/png")
    filename: Optional[str] = Field(default=None)
    size: Optional[int] = Field(default=None, ge=0)

    @property
    def byte_length(self) -> int:
        if self.size is None:
            return len(self.content)
        return max(self.size, len(self.content))


class ExtractionOptions(BaseModel):
    """
    Per-call overrides for the strategy loop.

    Unset fields fall back to the engine's configured defaults.
    """

    confidence_threshold: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    max_strategies: Optional[int] = Field(default=None, ge=1)


class CaptureResult(BaseModel):
    """
    What:  The best recognition result for one image, after cleaning.
    Who:   Returned by OCRExtractionEngine.extract_text().

    Produced once per extraction call and never modified afterwards.
    """

    text: str = Field(description="Cleaned recognized text (never empty)")
    confidence: float = Field(ge=0.0, le=100.0, description="Recognizer confidence, 0-100")
    strategy_used: str = Field(description="Name of the strategy that produced the text")
    word_count: int = Field(ge=0)
    line_count: int = Field(ge=0)

    model_config = {"frozen": True}


class BatchCaptureItem(BaseModel):
    """
    One entry of a multi-image extraction.

    Failed images carry `error` and an empty `text` instead of aborting
    the whole batch.
    """

    index: int
    filename: Optional[str] = None
    text: str = ""
    confidence: float = 0.0
    result: Optional[CaptureResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


class BatchCaptureResponse(BaseModel):
    items: List[BatchCaptureItem]
    succeeded: int
    failed: int

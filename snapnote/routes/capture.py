"""
SnapNote — Capture Routes
==========================

What:  POST /api/capture and POST /api/capture/batch.
How:   Reads the multipart upload into an ImagePayload and hands it to
       CaptureService. Errors propagate to the global exception handlers.
Who:   The note editor's capture button and the browser extension.

Request Flow (single image):
    1. multipart/form-data with `file`, optional `enhance` and `provider`
    2. Declared MIME type and size are validated before any OCR work
    3. OCR strategy loop → cleaned text
    4. Note synthesis (remote / local / heuristic), which never fails
    5. 200 with CaptureResponse {capture, note}
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from snapnote.config import settings
from snapnote.exceptions import InvalidInput
from snapnote.pipeline import Pipeline, get_pipeline
from snapnote.schemas.capture import BatchCaptureResponse, ImagePayload
from snapnote.schemas.note import CaptureResponse, ErrorResponse, ProviderName, SynthesisOptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Capture"])

MAX_BATCH_SIZE = 10


async def _read_upload(file: UploadFile) -> ImagePayload:
    try:
        content = await file.read()
    finally:
        await file.close()
    return ImagePayload(
        content=content,
        content_type=file.content_type or "application/octet-stream",
        filename=file.filename,
        size=file.size if file.size is not None else len(content),
    )


def _synthesis_options(enhance: bool, provider: Optional[str]) -> SynthesisOptions:
    choice = (provider or settings.default_provider).strip().lower()
    if choice not in (ProviderName.REMOTE.value, ProviderName.LOCAL.value):
        raise InvalidInput(
            message="provider must be 'remote' or 'local'",
            field="provider",
            context={"provider": provider},
        )
    return SynthesisOptions(enhance=enhance, provider_preference=ProviderName(choice))


@router.post(
    "/capture",
    response_model=CaptureResponse,
    responses={
        400: {"description": "Invalid image type or size", "model": ErrorResponse},
        422: {"description": "No text detected", "model": ErrorResponse},
    },
    summary="Capture a note from an image",
    description=(
        "Upload an image (JPEG, PNG, GIF, BMP or WebP, max 10MB). Text is extracted "
        "with multi-strategy OCR and turned into a structured note, enhanced by the "
        "remote or local AI provider when `enhance` is true."
    ),
)
async def capture_note(
    file: UploadFile = File(..., description="Image to extract text from"),
    enhance: bool = Form(True),
    provider: Optional[str] = Form(None, description="'remote' or 'local'"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> CaptureResponse:
    options = _synthesis_options(enhance, provider)
    image = await _read_upload(file)
    logger.info(
        "Received capture request: filename=%s size=%d type=%s enhance=%s provider=%s",
        image.filename or "unknown",
        image.byte_length,
        image.content_type,
        options.enhance,
        options.provider_preference.value,
    )
    return await pipeline.capture_service.capture(image, options)


@router.post(
    "/capture/batch",
    response_model=BatchCaptureResponse,
    responses={400: {"description": "Too many files", "model": ErrorResponse}},
    summary="Extract text from several images",
    description="OCR only. Each image succeeds or fails on its own.",
)
async def capture_batch(
    files: List[UploadFile] = File(..., description="Images to extract text from"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> BatchCaptureResponse:
    if len(files) > MAX_BATCH_SIZE:
        raise InvalidInput(
            message=f"At most {MAX_BATCH_SIZE} images can be processed at once.",
            field="files",
            context={"count": len(files)},
        )
    images = [await _read_upload(f) for f in files]
    return await pipeline.capture_service.capture_many(images)

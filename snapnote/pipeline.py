"""
SnapNote — Pipeline Wiring
===========================

What:  Builds the object graph for one application instance.
How:   build_pipeline() constructs every component with its collaborators
       passed in explicitly; create_app() stores the result on app.state
       and routes reach it through the get_pipeline dependency.
Who:   main.py lifespan and the test suite.

    Settings ─▶ ContentCache ─┐
                EngineLoader ─┴▶ ModelLifecycleManager ─▶ LocalEnhancementProvider ─┐
                GeminiNoteClient ─────────────────────▶ RemoteEnhancementProvider ─┴▶ NoteSynthesizer ─┐
                TesseractRecognizer ─▶ OCRExtractionEngine ─────────────────────────────────────────┴▶ CaptureService
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from snapnote.config import Settings, settings as default_settings
from snapnote.services.capture_service import CaptureService
from snapnote.services.content_cache import ContentCache, FileSystemContentCache
from snapnote.services.engine_loader import EngineLoader, HuggingFaceEngineLoader
from snapnote.services.enhancement import LocalEnhancementProvider, RemoteEnhancementProvider
from snapnote.services.gemini_service import GeminiNoteClient
from snapnote.services.model_manager import ModelLifecycleManager
from snapnote.services.note_synthesizer import NoteSynthesizer
from snapnote.services.ocr_service import OCRExtractionEngine
from snapnote.services.recognizer import Recognizer, TesseractRecognizer

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    ocr_engine: OCRExtractionEngine
    model_manager: ModelLifecycleManager
    synthesizer: NoteSynthesizer
    capture_service: CaptureService
    gemini: GeminiNoteClient


def build_pipeline(
    settings: Optional[Settings] = None,
    cache: Optional[ContentCache] = None,
    loader: Optional[EngineLoader] = None,
    recognizer: Optional[Recognizer] = None,
    gemini: Optional[GeminiNoteClient] = None,
) -> Pipeline:
    """Construct the pipeline; any collaborator may be supplied (tests do)."""
    settings = settings or default_settings

    cache = cache or FileSystemContentCache(settings.model_cache_dir)
    loader = loader or HuggingFaceEngineLoader(
        chunk_size=settings.download_chunk_size,
        context_size=settings.llama_context_size,
        token=settings.hf_token,
    )
    manager = ModelLifecycleManager(
        cache,
        loader,
        download_timeout=settings.download_timeout,
        abort_grace_period=settings.abort_grace_period,
        temperature=settings.local_temperature,
        max_tokens=settings.local_max_tokens,
    )

    gemini = gemini or GeminiNoteClient(settings.gemini_api_key, settings.gemini_model)
    synthesizer = NoteSynthesizer(
        remote_provider=RemoteEnhancementProvider(gemini),
        local_provider=LocalEnhancementProvider(manager),
    )

    ocr_engine = OCRExtractionEngine(
        recognizer or TesseractRecognizer(settings.ocr_language, settings.tesseract_cmd),
        confidence_threshold=settings.ocr_confidence_threshold,
        max_strategies=settings.ocr_max_strategies,
        allowed_types=settings.allowed_image_types_list,
        max_size=settings.max_image_size,
    )

    logger.info("Pipeline built (cache=%s)", type(cache).__name__)
    return Pipeline(
        ocr_engine=ocr_engine,
        model_manager=manager,
        synthesizer=synthesizer,
        capture_service=CaptureService(ocr_engine, synthesizer),
        gemini=gemini,
    )


def get_pipeline(request: Request) -> Pipeline:
    """FastAPI dependency returning the app's pipeline."""
    return request.app.state.pipeline

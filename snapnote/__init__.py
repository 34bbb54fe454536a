"""
SnapNote — Capture Pipeline Package
====================================

What: Turns a captured image into a structured note.
How:  Three cooperating services behind a thin FastAPI surface:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │   CaptureService (orchestration)    │  ← extract → synthesize
    ├──────────────┬──────────────────────┤
    │ OCR engine   │  NoteSynthesizer     │  ← strategies / providers
    │ (Tesseract)  │  ├── Gemini client   │
    │              │  └── ModelLifecycle  │  ← local model runtime
    ├──────────────┴──────────────────────┤
    │        ContentCache (artifacts)     │  ← model weights on disk
    └─────────────────────────────────────┘

Every service is constructed once by `snapnote.pipeline.build_pipeline`
and injected where it is needed.
"""

__version__ = "1.0.0"

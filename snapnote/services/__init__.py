"""
SnapNote — Services Layer
==========================

Service Inventory:
    - ocr_service:       OCRExtractionEngine (strategy loop, text cleaning)
    - recognizer:        OCR strategy table, Tesseract recognizer
    - model_registry:    static catalog of downloadable models
    - content_cache:     ContentCache interface + filesystem / in-memory adapters
    - engine_loader:     Hugging Face download + llama.cpp engine
    - model_manager:     ModelLifecycleManager (download, cancel, cache, inference)
    - gemini_service:    GeminiNoteClient (retry + circuit breaker)
    - enhancement:       EnhancementProvider interface, shared payload parser
    - note_synthesizer:  NoteSynthesizer and the heuristic note builders
    - capture_service:   CaptureService (extract → synthesize)

Services never import routes; routes reach them through the pipeline.
"""

"""
SnapNote — API Routes Package
==============================

Route Inventory:
    - capture.py:  POST   /api/capture                   (image → text + note)
                   POST   /api/capture/batch             (images → text, per-image errors)
    - models.py:   GET    /api/models                    (catalog, ?category=)
                   GET    /api/models/recommended        (?available_gb=)
                   GET    /api/models/status
                   GET    /api/models/storage
                   GET    /api/models/{id}/cached
                   POST   /api/models/{id}/initialize    (202, background download)
                   POST   /api/models/cancel
                   POST   /api/models/test
                   DELETE /api/models/{id}
                   DELETE /api/models                    (clear the whole cache)
    - health.py:   GET    /health

Routes stay thin: read the request, call the pipeline, shape the response.
"""

"""
SnapNote — Local Model Routes
==============================

What:  Catalog, lifecycle and storage endpoints for the local model runtime.
How:   Thin wrappers over the registry functions and the pipeline's
       ModelLifecycleManager.
Who:   The settings screen (model picker, download progress bar,
       cancel / delete buttons).

Download Flow:
    POST /api/models/{id}/initialize  → 202, download starts in the background
    GET  /api/models/status           → poll progress (0..1) and status
    POST /api/models/cancel           → abort; partial files are purged

A failed background download is logged and shows up in the status
endpoint as uninitialized with the error text.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from snapnote.exceptions import SnapNoteError
from snapnote.pipeline import Pipeline, get_pipeline
from snapnote.schemas.models import (
    CancelResponse,
    DeleteModelResult,
    InitializeResponse,
    ModelCachedResponse,
    ModelCatalogResponse,
    ModelCategory,
    ModelDescriptor,
    ModelState,
    ModelTestResult,
    StorageInfo,
)
from snapnote.schemas.note import ErrorResponse
from snapnote.services.model_manager import ModelLifecycleManager
from snapnote.services.model_registry import (
    REGISTRY_VERSION,
    available_models,
    get_model,
    recommended_model,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/models", tags=["Models"])


@router.get("", response_model=ModelCatalogResponse, summary="List downloadable models")
async def list_models(
    category: Optional[ModelCategory] = Query(None, description="tiny, small or medium"),
) -> ModelCatalogResponse:
    models = available_models()
    if category is not None:
        models = [m for m in models if m.category == category]
    return ModelCatalogResponse(registry_version=REGISTRY_VERSION, models=models)


@router.get("/recommended", response_model=ModelDescriptor, summary="Suggest a model for the free space")
async def get_recommended_model(
    available_gb: float = Query(10.0, ge=0, description="Free storage in GB"),
) -> ModelDescriptor:
    return recommended_model(available_gb)


@router.get("/status", response_model=ModelState, summary="Current lifecycle state")
async def get_status(pipeline: Pipeline = Depends(get_pipeline)) -> ModelState:
    return pipeline.model_manager.state


@router.get(
    "/storage",
    response_model=Optional[StorageInfo],
    summary="Model storage usage",
    description="Returns null when the storage backend cannot estimate usage.",
)
async def get_storage(pipeline: Pipeline = Depends(get_pipeline)) -> Optional[StorageInfo]:
    return await pipeline.model_manager.get_storage_info()


@router.get(
    "/{model_id}/cached",
    response_model=ModelCachedResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_cached(model_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> ModelCachedResponse:
    get_model(model_id)
    cached = await pipeline.model_manager.is_model_cached(model_id)
    return ModelCachedResponse(model_id=model_id, cached=cached)


async def _initialize_in_background(manager: ModelLifecycleManager, model_id: str) -> None:
    try:
        await manager.initialize_model(model_id)
    except SnapNoteError as e:
        # State is already reset; the status endpoint reports it
        logger.warning("Background initialization of %s ended: %s", model_id, e.message)


@router.post(
    "/{model_id}/initialize",
    status_code=202,
    response_model=InitializeResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Download and load a model",
)
async def initialize_model(
    model_id: str,
    background_tasks: BackgroundTasks,
    pipeline: Pipeline = Depends(get_pipeline),
) -> InitializeResponse:
    descriptor = get_model(model_id)
    manager = pipeline.model_manager

    if manager.is_model_ready(model_id):
        return InitializeResponse(
            message=f"{descriptor.display_name} is already loaded",
            model_id=model_id,
            state=manager.state,
        )

    background_tasks.add_task(_initialize_in_background, manager, model_id)
    return InitializeResponse(
        message=f"Loading {descriptor.display_name} (about {descriptor.approx_size_gb}GB)",
        model_id=model_id,
        state=manager.state,
    )


@router.post("/cancel", response_model=CancelResponse, summary="Cancel the in-flight download")
async def cancel_download(pipeline: Pipeline = Depends(get_pipeline)) -> CancelResponse:
    cancelled = await pipeline.model_manager.cancel_download()
    return CancelResponse(cancelled=cancelled, state=pipeline.model_manager.state)


@router.post("/test", response_model=ModelTestResult, summary="Run a short prompt on the loaded model")
async def test_model(pipeline: Pipeline = Depends(get_pipeline)) -> ModelTestResult:
    return await pipeline.model_manager.test_model()


@router.delete(
    "/{model_id}",
    response_model=DeleteModelResult,
    responses={404: {"model": ErrorResponse}},
    summary="Delete a model's cached files",
)
async def delete_model(model_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> DeleteModelResult:
    return await pipeline.model_manager.delete_model(model_id)


@router.delete("", response_model=DeleteModelResult, summary="Delete every cached model")
async def clear_model_cache(pipeline: Pipeline = Depends(get_pipeline)) -> DeleteModelResult:
    return await pipeline.model_manager.clear_model_cache()

"""
SnapNote — Local Model Schemas
===============================

What:  Catalog entries, lifecycle state and progress reports for the
       local model runtime.
Who:   ModelLifecycleManager owns ModelState; the registry holds
       ModelDescriptors; routes serialize all of them.

Lifecycle:
    uninitialized ──initialize──▶ downloading ──▶ ready
                                   │    │          │
                          cancel / timeout  error  └─ switch model ─▶ downloading
                                   ▼    ▼
                           cancelled  failed
                                   └────┴──▶ uninitialized
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field


class ModelCategory(str, Enum):
    TINY = "tiny"
    SMALL = "small"
    MEDIUM = "medium"


class ModelDescriptor(BaseModel):
    """
    Static catalog metadata for one downloadable quantized model.

    `repo_id` and `filename` locate the GGUF weights on the Hugging Face
    Hub.
    """

    id: str
    display_name: str
    approx_size_bytes: int = Field(ge=0)
    category: ModelCategory
    recommended_use: str
    description: str = ""
    repo_id: str
    filename: str

    model_config = {"frozen": True}

    @computed_field
    @property
    def approx_size_gb(self) -> float:
        return round(self.approx_size_bytes / (1024 ** 3), 1)


class ModelStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    DOWNLOADING = "downloading"
    READY = "ready"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ModelState(BaseModel):
    """
    Snapshot of a manager's lifecycle state.

    Snapshots are immutable; every transition produces a new one.
    """

    status: ModelStatus = ModelStatus.UNINITIALIZED
    current_model_id: Optional[str] = None
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    elapsed_ms: int = Field(default=0, ge=0)
    status_text: str = ""
    error: Optional[str] = None

    model_config = {"frozen": True}


class ProgressReport(BaseModel):
    """Payload handed to the registered progress callback."""

    progress: float = Field(ge=0.0, le=1.0)
    status_text: str
    elapsed_ms: int = Field(default=0, ge=0)
    cancelled: bool = False
    error: bool = False


class StorageInfo(BaseModel):
    """Best-effort persistent storage estimate."""

    used_bytes: int
    quota_bytes: int
    used_gb: float
    available_gb: float

    @classmethod
    def from_bytes(cls, used: int, quota: int) -> "StorageInfo":
        gb = 1024 ** 3
        return cls(
            used_bytes=used,
            quota_bytes=quota,
            used_gb=round(used / gb, 2),
            available_gb=round(quota / gb, 2),
        )


class AutoInitResult(BaseModel):
    model_config = {"protected_namespaces": ()}

    success: bool
    message: str
    model_id: Optional[str] = None
    error: bool = False


class ModelTestResult(BaseModel):
    success: bool
    response: Optional[str] = None
    error: Optional[str] = None


class DeleteModelResult(BaseModel):
    model_config = {"protected_namespaces": ()}

    success: bool
    model_id: Optional[str] = None
    deleted_entries: int = 0
    error: Optional[str] = None


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class ModelCatalogResponse(BaseModel):
    registry_version: str
    models: List[ModelDescriptor]


class ModelCachedResponse(BaseModel):
    model_config = {"protected_namespaces": ()}

    model_id: str
    cached: bool


class InitializeResponse(BaseModel):
    """
    Result of POST /api/models/{id}/initialize.

    The download runs in the background; poll /api/models/status.
    """

    model_config = {"protected_namespaces": ()}

    message: str
    model_id: str
    state: ModelState


class CancelResponse(BaseModel):
    cancelled: bool
    state: ModelState

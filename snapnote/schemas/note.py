"""
SnapNote — Note Schemas
========================

What:  Pydantic models for the synthesis half of the pipeline and for the
       API contract (responses, errors, health).
How:   FastAPI serializes these for responses and uses them to generate
       the OpenAPI document.
"""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from snapnote.schemas.capture import CaptureResult
from snapnote.schemas.models import ModelState


class ProviderName(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    FALLBACK = "fallback"


# ══════════════════════════════════════════════════════════════════════════
# Synthesis Models
# ══════════════════════════════════════════════════════════════════════════


class SynthesisOptions(BaseModel):
    """
    What:  Controls how raw text becomes a note.

    enhance:             False builds the heuristic passthrough note directly
    provider_preference: "remote" (Gemini) or "local" (resident model)
    """

    enhance: bool = True
    provider_preference: ProviderName = ProviderName.REMOTE

    @field_validator("provider_preference")
    @classmethod
    def validate_preference(cls, v: ProviderName) -> ProviderName:
        if v == ProviderName.FALLBACK:
            raise ValueError("provider_preference must be 'local' or 'remote'")
        return v


class NoteDraft(BaseModel):
    """
    Loosely-validated note fields as returned by an AI provider.

    Any field may be missing; the synthesizer fills gaps from the
    heuristic note.
    """

    title: Optional[str] = None
    summary: Optional[str] = None
    content: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None

    @field_validator("title", "summary", "content", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("tags", mode="before")
    @classmethod
    def coerce_tags(cls, v: Any) -> List[str]:
        # Providers occasionally answer "a, b, c" instead of a list
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        tags: List[str] = []
        for tag in v:
            cleaned = str(tag).strip().lstrip("#").strip()
            if cleaned and cleaned not in tags:
                tags.append(cleaned)
        return tags

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> Optional[float]:
        if v is None or v == "":
            return None
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        return max(0.0, min(100.0, value))


class EnhancedNote(BaseModel):
    """
    What:  A fully populated structured note.
    Who:   Returned by NoteSynthesizer.synthesize(); never partially built.

    tags:  unique strings, most relevant first
    """

    title: str = Field(min_length=1)
    summary: str
    content: str = Field(description="Markdown body")
    tags: List[str]
    confidence: float = Field(ge=0.0, le=100.0)
    provider_used: ProviderName

    model_config = {"frozen": True}


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class CaptureResponse(BaseModel):
    """
    What:  Result of POST /api/capture.

    capture: what OCR found
    note:    the structured note built from it
    """

    message: str = Field(default="Text extracted successfully")
    capture: CaptureResult
    note: EnhancedNote


class ErrorResponse(BaseModel):
    """
    Standardized error body for every API error.

    Example:
        {
            "error": "invalid_image",
            "message": "Invalid file type. Please upload a valid image file (JPEG, PNG, GIF, BMP, WebP).",
            "details": {"field": "file", "content_type": "application/pdf"},
            "request_id": "550e8400"
        }
    """

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """
    Health check response.

    status: healthy, degraded (remote provider down) or unhealthy
    """

    status: str
    version: str
    gemini: str = Field(description="available, unavailable, unconfigured or circuit_open")
    local_model: ModelState
    uptime_seconds: float

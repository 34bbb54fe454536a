"""
SnapNote — Local Model Registry
================================

Static, versioned catalog of quantized models the local runtime can
download. Read-only: nothing mutates these records at runtime.
"""

from typing import Dict, List, Optional, Tuple

from snapnote.config import settings
from snapnote.exceptions import UnknownModelError
from snapnote.schemas.models import ModelCategory, ModelDescriptor

REGISTRY_VERSION = "2024.06"

_GB = 1024 ** 3

MODEL_REGISTRY: Tuple[ModelDescriptor, ...] = (
    # Tiny: low-end devices and quick responses
    ModelDescriptor(
        id="Qwen2-0.5B-Instruct-q4",
        display_name="Qwen2 0.5B",
        approx_size_bytes=int(0.4 * _GB),
        category=ModelCategory.TINY,
        recommended_use="Mobile devices, quick responses",
        description="Extremely fast, minimal resource usage",
        repo_id="Qwen/Qwen2-0.5B-Instruct-GGUF",
        filename="qwen2-0_5b-instruct-q4_k_m.gguf",
    ),
    ModelDescriptor(
        id="TinyLlama-1.1B-Chat-q4",
        display_name="TinyLlama 1.1B",
        approx_size_bytes=int(0.7 * _GB),
        category=ModelCategory.TINY,
        recommended_use="Low-end devices, testing",
        description="Ultra-lightweight model for basic tasks",
        repo_id="TheBloke/TinyLlama-1.1B-Chat-v1.0-GGUF",
        filename="tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf",
    ),
    # Small: general use
    ModelDescriptor(
        id="Phi-3-mini-4k-instruct-q4",
        display_name="Phi-3 Mini",
        approx_size_bytes=int(2.3 * _GB),
        category=ModelCategory.SMALL,
        recommended_use="Beginners, general use (Recommended)",
        description="Fast and efficient for basic tasks",
        repo_id="microsoft/Phi-3-mini-4k-instruct-gguf",
        filename="Phi-3-mini-4k-instruct-q4.gguf",
    ),
    # Medium: best quality, hidden by the default 4GB cap
    ModelDescriptor(
        id="Mistral-7B-Instruct-v0.3-q4",
        display_name="Mistral 7B",
        approx_size_bytes=int(4.4 * _GB),
        category=ModelCategory.MEDIUM,
        recommended_use="Desktops with ample memory, best quality",
        description="Highest quality summaries, slower on CPU",
        repo_id="bartowski/Mistral-7B-Instruct-v0.3-GGUF",
        filename="Mistral-7B-Instruct-v0.3-Q4_K_M.gguf",
    ),
)

_BY_ID: Dict[str, ModelDescriptor] = {m.id: m for m in MODEL_REGISTRY}


def get_model(model_id: str) -> ModelDescriptor:
    """Look up a descriptor; raises UnknownModelError for unknown ids."""
    try:
        return _BY_ID[model_id]
    except KeyError:
        raise UnknownModelError(model_id)


def available_models(max_size_bytes: Optional[int] = None) -> List[ModelDescriptor]:
    """Catalog entries no larger than the size cap (settings default)."""
    cap = settings.max_model_size_bytes if max_size_bytes is None else max_size_bytes
    return [m for m in MODEL_REGISTRY if m.approx_size_bytes <= cap]


def models_by_category(max_size_bytes: Optional[int] = None) -> Dict[str, List[ModelDescriptor]]:
    models = available_models(max_size_bytes)
    return {
        category.value: [m for m in models if m.category == category]
        for category in ModelCategory
    }


def recommended_model(available_gb: float = 10.0) -> ModelDescriptor:
    """
    Pick the largest model that comfortably fits the free storage.

    Falls back to the largest visible model when the preferred tier is
    hidden by the size cap.
    """
    if available_gb < 1:
        preferred = "Qwen2-0.5B-Instruct-q4"
    elif available_gb < 3:
        preferred = "TinyLlama-1.1B-Chat-q4"
    elif available_gb < 5:
        preferred = "Phi-3-mini-4k-instruct-q4"
    else:
        preferred = "Mistral-7B-Instruct-v0.3-q4"

    visible = available_models()
    for model in visible:
        if model.id == preferred:
            return model
    return max(visible, key=lambda m: m.approx_size_bytes) if visible else get_model(preferred)

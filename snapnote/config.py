"""
SnapNote — Application Configuration
=====================================

What:  Centralized configuration using Pydantic Settings.
How:   Values come from environment variables (or a .env file), are
       type-coerced and range-checked on import, and are exposed through
       the module-level `settings` object.
Who:   Imported by every module that needs a tunable value.
"""

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every setting has a development default. Production deployments
    should at least provide GEMINI_API_KEY and a persistent
    MODEL_CACHE_DIR.
    """

    # ── Google Gemini (remote enhancement provider) ───────────────────────
    gemini_api_key: str = Field(
        default="",
        description="Google Gemini API key used for remote note enhancement",
    )
    gemini_model: str = Field(default="gemini-1.5-flash")
    # Per-request response timeout in seconds
    gemini_timeout: int = Field(default=60, ge=5, le=300)

    # ── Image Policy ──────────────────────────────────────────────────────
    # 10MB = 10 * 1024 * 1024
    max_image_size: int = Field(default=10_485_760, ge=1_048_576, le=52_428_800)
    allowed_image_types: str = Field(
        default="image/jpeg,image/jpg,image/png,image/gif,image/bmp,image/webp"
    )

    @property
    def allowed_image_types_list(self) -> List[str]:
        """Splits the comma-separated MIME allow-list."""
        return [t.strip().lower() for t in self.allowed_image_types.split(",") if t.strip()]

    # ── OCR ───────────────────────────────────────────────────────────────
    ocr_language: str = Field(default="eng")
    # A result at or above this confidence stops the strategy loop
    ocr_confidence_threshold: float = Field(default=80.0, ge=0.0, le=100.0)
    ocr_max_strategies: int = Field(default=5, ge=1, le=20)
    tesseract_cmd: Optional[str] = Field(
        default=None,
        description="Path to the tesseract binary when it is not on PATH",
    )

    # ── Local Model Runtime ───────────────────────────────────────────────
    model_cache_dir: str = Field(default="./model-cache")
    default_model_id: str = Field(default="Phi-3-mini-4k-instruct-q4")
    # Catalog entries above this size are hidden (4GB)
    max_model_size_bytes: int = Field(default=4 * 1024 ** 3, ge=0)
    # Hard limit for one download + load cycle, in seconds
    download_timeout: float = Field(default=300.0, gt=0)
    download_chunk_size: int = Field(default=1_048_576, ge=4096)
    # How long cleanup waits for an aborted download task to unwind
    abort_grace_period: float = Field(default=0.5, ge=0)
    llama_context_size: int = Field(default=4096, ge=512, le=131072)
    local_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    local_max_tokens: int = Field(default=500, ge=1, le=8192)
    hf_token: Optional[str] = Field(default=None)
    # Silently load DEFAULT_MODEL_ID on startup, only if already cached
    auto_initialize_model: bool = Field(default=False)

    # ── Note Synthesis ────────────────────────────────────────────────────
    default_provider: str = Field(default="remote")
    remote_default_confidence: float = Field(default=90.0, ge=0.0, le=100.0)
    local_default_confidence: float = Field(default=85.0, ge=0.0, le=100.0)
    malformed_fallback_confidence: float = Field(default=75.0, ge=0.0, le=100.0)
    fallback_confidence: float = Field(default=60.0, ge=0.0, le=100.0)

    @field_validator("default_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Ensures the default provider is one the synthesizer knows."""
        lower = v.lower()
        if lower not in {"remote", "local"}:
            raise ValueError(f"Invalid default_provider '{v}'. Must be 'remote' or 'local'")
        return lower

    # ── CORS / Server ─────────────────────────────────────────────────────
    cors_origins: str = Field(default="http://localhost:3000")

    @property
    def cors_origins_list(self) -> List[str]:
        """Splits comma-separated CORS origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    backend_host: str = Field(default="0.0.0.0")
    backend_port: int = Field(default=8000, ge=1024, le=65535)

    # Valid: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensures log level is a valid Python logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    # ── Retry Configuration (tenacity, Gemini calls) ──────────────────────
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_min_wait: int = Field(default=2, ge=1, le=30)
    retry_max_wait: int = Field(default=10, ge=5, le=120)

    # ── Circuit Breaker ───────────────────────────────────────────────────
    # After N consecutive failures, stop calling Gemini for M seconds
    cb_failure_threshold: int = Field(default=5, ge=2, le=20)
    cb_recovery_timeout: int = Field(default=60, ge=10, le=300)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        # model_cache_dir collides with pydantic's protected "model_" prefix
        "protected_namespaces": ("settings_",),
    }

    def validate_required_for_production(self) -> None:
        """
        Validates that critical settings are configured.

        Called during app startup (lifespan). Raises ValueError listing
        every problem found.
        """
        errors = []
        if not self.gemini_api_key or self.gemini_api_key == "your_gemini_api_key_here":
            errors.append(
                "GEMINI_API_KEY is not set; remote enhancement will fall back to heuristics. "
                "Get a key at https://aistudio.google.com/app/apikey"
            )
        if errors:
            raise ValueError(
                "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            )


settings = Settings()

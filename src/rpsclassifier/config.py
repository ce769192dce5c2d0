"""Environment-based configuration for rpsclassifier."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from RPSCLASSIFIER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RPSCLASSIFIER_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080

    # Authentication for /api/v1 (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Classifier artifact. A Hub repo id takes precedence over the local path.
    model_path: str = "best-model.onnx"
    model_repo_id: str | None = None
    model_filename: str = "best-model.onnx"
    models_dir: str = "models"

    # Model management (cache_model=False loads a fresh session per request)
    cache_model: bool = False
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Preprocessing bounds
    max_width: int = Field(default=400, ge=1)
    max_height: int = Field(default=533, ge=1)

    # Sessions
    session_ttl: int = Field(default=1800, ge=0)
    housekeeping_interval: float = Field(default=60.0, gt=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()

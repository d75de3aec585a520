"""Environment-based configuration for RenameX."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from RENAMEX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RENAMEX_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    clip_model: str = "clip_vit_base_patch32"
    quantized: bool = False
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency (theme and style run side by side, hence 2)
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=30.0, ge=0)
    classify_timeout: float = Field(default=120.0, ge=0)

    # Classification
    threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    text_template: str = "uma foto de {}"

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # GPU
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()

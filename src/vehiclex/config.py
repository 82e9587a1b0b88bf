"""Environment-based configuration for VehicleX."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vehiclex.ml.decision import DEFAULT_THRESHOLD, THRESHOLD_MAX, THRESHOLD_MIN


class Settings(BaseSettings):
    """Application settings loaded from VEHICLEX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="VEHICLEX_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model artifact: a local file wins over the Hub download
    model_path: str | None = None
    model_repo_id: str = "vehiclex/heavy-light-classifier"
    model_filename: str = "model.onnx"
    model_revision: str | None = None
    models_dir: str = "models"

    # Preprocessing / decision
    img_size: int = Field(default=160, ge=1)
    default_threshold: float = Field(default=DEFAULT_THRESHOLD, ge=THRESHOLD_MIN, le=THRESHOLD_MAX)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency (1 = one prediction in flight)
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()

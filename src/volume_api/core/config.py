"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="VOLUME_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    debug: bool = False
    app_name: str = "Depth Volume API"
    api_version: str = "0.1.0"
    log_level: str = "INFO"

    # Mask predictor service
    predictor_service_url: str = "http://localhost:8001"
    predictor_timeout: float = 30.0
    mask_logit_threshold: float = 2.197  # sigmoid(2.197) ~= 0.9

    # Mask compositing
    mask_binarize_threshold: float = Field(default=0.5, gt=0.0, lt=1.0)
    background_row_margin: float = Field(default=0.05, ge=0.0, lt=0.5)
    primary_mask_expansion_px: int = Field(default=50, ge=0)  # 0 = no expansion

    # Voxel reconstruction
    target_point_density: float = Field(default=0.1, gt=0.0)
    fill_workers: int = Field(default=4, ge=1)

    # Floor plane filtering
    depth_outlier_threshold_m: float = 0.01
    max_gradient_m_per_px: float = 0.01

    # Sessions
    max_sessions: int = Field(default=8, ge=1)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

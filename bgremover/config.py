"""
Configuration loader for the local background-removal pipeline.

Environment variables are centralized here to keep the rest of the code
focused on image processing and to make model sources easy to swap.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

U2NET_RELEASE_URL = "https://github.com/danielgatis/rembg/releases/download/v0.0.0/u2net.onnx"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Portrait backend (MODNet TorchScript)
    portrait_model_source: str = Field("models/modnet_portrait.torchscript")
    portrait_model_fallback: Optional[str] = Field(None)
    portrait_max_long_edge: int = Field(512, gt=0)

    # General backend (U2-Net ONNX)
    general_model_source: str = Field("models/u2net.onnx")
    general_model_fallback: Optional[str] = Field(U2NET_RELEASE_URL)
    general_input_size: int = Field(320, gt=0)

    # Model download + cache
    model_cache_dir: Path = Field(Path.home() / ".cache" / "bgremover")
    min_model_bytes: int = Field(1_000_000, ge=0)
    download_timeout_seconds: int = Field(60, gt=0)
    download_chunk_size: int = Field(1 << 16, gt=0)

    # Runtime
    device: Optional[str] = Field(None)
    default_backend: str = Field("general")
    default_format: str = Field("png")
    default_quality: float = Field(1.0, ge=0.0, le=1.0)
    log_level: str = Field("INFO")

    @field_validator("default_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v.lower() not in {"portrait", "general"}:
            raise ValueError("DEFAULT_BACKEND must be one of portrait|general")
        return v.lower()

    @field_validator("default_format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v.lower() not in {"png", "webp"}:
            raise ValueError("DEFAULT_FORMAT must be one of png|webp")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()

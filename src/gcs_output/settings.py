from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OutputRuntimeSettings(BaseSettings):
    """Process-level knobs, read from GCS_OUTPUT_* environment variables or .env."""

    model_config = SettingsConfigDict(env_prefix="GCS_OUTPUT_", env_file=".env", extra="ignore")

    upload_workers: int = Field(4, ge=1)
    partition_workers: int = Field(4, ge=1)
    temp_dir: Optional[Path] = None
    log_level: str = "INFO"
    metrics_port: Optional[int] = None


@lru_cache()
def get_settings() -> OutputRuntimeSettings:
    return OutputRuntimeSettings()

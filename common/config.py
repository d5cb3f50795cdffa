from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    """Settings read from environment variables (and .env when present)."""

    # Storage mode: local / gcp / azure
    storage_backend: str = "local"
    data_dir: Path = BASE_DIR / "data"

    gcs_bucket: Optional[str] = None
    azure_storage_connection_string: Optional[str] = None
    azure_container: Optional[str] = None

    host: str = "0.0.0.0"
    port: int = 4000
    max_upload_bytes: int = 200 * 1024 * 1024

    # Worker knobs
    embedded_workers: int = 2    # threads started inside the API process
    worker_concurrency: int = 2  # threads of a standalone worker process
    poll_interval: float = 2.0  # seconds
    max_attempts: int = 3
    lease_seconds: float = 300.0
    preview_max_edge: int = 1024

    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"
    secret_key: str = "change-me"

    database_url: str = "sqlite:///./fatural.db"
    redis_url: str = "redis://localhost:6379/0"
    # run Celery tasks inline in the calling process; requests then block until extraction ends
    celery_eager: bool = False

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "receipts"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o"
    receipt_ai_enabled: bool = True
    receipt_ai_timeout_seconds: float = 90.0
    receipt_ai_max_tokens: int = 4000

    extraction_cache_enabled: bool = True
    extraction_cache_ttl_hours: int | None = None
    extraction_max_pages: int = 10
    max_upload_bytes: int = 20 * 1024 * 1024

    job_stale_after_minutes: int = 30

    init_admin_email: str | None = None
    init_admin_password: str | None = None

    access_token_exp_minutes: int = 60 * 24


settings = Settings()

"""
Configuration and settings for the lab backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Relational state store (Postgres/Supabase, SQLite for local runs)
    database_url: Optional[str] = Field(default=None)

    # Firestore state store; base64 encoded service account JSON
    firebase_service_account: Optional[str] = Field(default=None)

    # S3-compatible blob storage for reports and the CSV export
    storage_bucket: Optional[str] = Field(default=None)
    storage_region: Optional[str] = Field(default=None)
    storage_endpoint: Optional[str] = Field(default=None)
    storage_public_base_url: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # CSV export
    export_mode: Literal["blob", "table"] = Field(default="blob")
    csv_file_name: str = Field(default="labor_ergebnisse.csv")
    redis_url: Optional[str] = Field(default=None)
    export_lock_key: str = Field(default="labor:csv-export-lock")
    export_lock_timeout_seconds: float = Field(default=30.0, gt=0)

    # Reports
    report_prefix: str = Field(default="Laborberichte")
    max_upload_bytes: int = Field(default=50 * 1024 * 1024, gt=0)

    # Quiz
    quiz_size: int = Field(default=7, ge=1)
    question_catalog_path: Optional[str] = Field(default=None)

    # Deadline for every storage call made on behalf of a request
    storage_timeout_seconds: float = Field(default=5.0, gt=0)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()

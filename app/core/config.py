# app/core/config.py
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    aws_access_key_id: str
    aws_secret_access_key: str
    aws_region: str
    aws_s3_bucket_name: str
    # MinIO / R2 and other S3-compatible endpoints
    aws_s3_endpoint_url: str | None = None

    # "s3" or "local"
    storage_backend: str = "s3"
    local_storage_root: str = "storage"

    database_url: str = "sqlite:///./drive.db"

    max_file_size: int = 50 * 1024 * 1024
    upload_concurrency: int = 8
    download_concurrency: int = 4
    # seconds, applied to every blob store and metadata call
    remote_call_timeout: float = 30.0

    # parent directory for per-request staging areas (system temp dir if unset)
    staging_dir: str | None = None

    log_level: str = "INFO"

    # Tell pydantic-settings to load from .env at project root
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # ignore any extra stuff in .env
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()

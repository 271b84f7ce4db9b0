"""Application settings."""
from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

MIN_S3_PART_SIZE = 5 * 1024 * 1024


class StoreType(str, Enum):
    """Blob backend for upload bytes."""

    FILE = "file_store"
    S3 = "s3_store"


class ConfigStoreKind(str, Enum):
    """Key-value backend for upload-session metadata."""

    MEMORY = "memory"
    REDIS = "redis"
    FILE = "file"


class Settings(BaseSettings):
    """App config from env."""

    app_name: str = "Upload Gateway"
    debug: bool = False
    # Structured logging: set LOG_JSON=1 for one-JSON-object-per-line request logs
    log_json: bool = False
    log_level: str = "INFO"
    # If set, /metrics requires the X-Metrics-Secret header
    metrics_secret: str | None = None

    # Server
    server_host: str = "0.0.0.0"
    server_port: int = 8080
    # Public base URL used in Location headers; falls back to the request host
    server_url: str | None = None
    server_upload_path: str = "/files"
    max_size: int = 0  # bytes per upload; 0 = unlimited

    # Backend selection (read once at startup)
    store_type: StoreType = StoreType.FILE
    config_store: ConfigStoreKind = ConfigStoreKind.FILE
    session_store: ConfigStoreKind = ConfigStoreKind.MEMORY

    # Filesystem backend
    file_store_path: str = "./uploads"
    file_store_expiry_seconds: int = 0  # 0 = uploads never expire
    # Directory for the file-backed ConfigStore; must sit outside file_store_path
    file_kv_store_path: str = "./upload-meta"
    session_store_path: str = "./sessions"

    # Distributed cache (config_store / session_store = redis)
    redis_url: str = "redis://localhost:6379/0"

    # S3 backend (used when store_type=s3_store; object admin endpoints need s3_bucket)
    s3_bucket: str | None = None
    s3_endpoint: str | None = None
    s3_region: str = "us-east-1"
    s3_access_key: str | None = None
    s3_access_secret: str | None = None
    s3_force_path_style: bool = False
    s3_part_size: int = 8 * 1024 * 1024
    s3_use_tags: bool = True
    s3_expiry_seconds: int = 0

    # Folder uploads: name objects by relativePath instead of name
    enable_folder_upload: bool = False

    # Periodic removal of expired incomplete uploads; 0 = disabled
    expiry_sweep_interval_seconds: int = 0

    # CORS (space separated origin list, "*" for any)
    cors_origin: str = "*"

    # Sessions and token auth
    secret_key: str = "dev-secret-change-in-production"
    session_cookie_name: str = "up-session"
    session_expiry_seconds: int = 24 * 60 * 60
    jwt_algorithm: str = "HS256"
    # External token validation service; when unset, bearer tokens are verified as local JWTs
    auth_service_url: str | None = None
    auth_service_timeout_seconds: float = 5.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @field_validator("s3_part_size")
    @classmethod
    def _part_size_floor(cls, v: int) -> int:
        # S3 rejects non-final multipart parts below 5 MiB
        if v < MIN_S3_PART_SIZE:
            raise ValueError(f"s3_part_size must be at least {MIN_S3_PART_SIZE} bytes")
        return v

    @field_validator("server_upload_path")
    @classmethod
    def _normalize_upload_path(cls, v: str) -> str:
        v = "/" + v.strip("/")
        return v

    @property
    def cors_origins(self) -> list[str]:
        return (self.cors_origin or "*").split()

    @model_validator(mode="after")
    def _kv_outside_uploads(self) -> "Settings":
        # upload keys map onto file_store_path, so ConfigStore files there would collide with them
        uploads = Path(self.file_store_path).resolve()
        for name, kind in (("file_kv_store_path", self.config_store), ("session_store_path", self.session_store)):
            if kind == ConfigStoreKind.FILE and Path(getattr(self, name)).resolve().is_relative_to(uploads):
                raise ValueError(f"{name} must not be inside file_store_path")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()

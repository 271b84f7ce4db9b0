"""Blob store factories. Each adapter gets its own ConfigStore instance; S3 (boto3) is only built when configured."""
from datetime import timedelta

from upload_gateway.core.config import Settings, StoreType
from upload_gateway.services.kvstore import create_config_store
from upload_gateway.services.storage.base import DataStore, Upload, UploadNotFoundError
from upload_gateway.services.storage.local import FileStore


def _period(seconds: int) -> timedelta | None:
    return timedelta(seconds=seconds) if seconds > 0 else None


def _upload_config_store(settings: Settings, key_prefix: str):
    return create_config_store(
        settings.config_store,
        directory=settings.file_kv_store_path,
        redis_url=settings.redis_url,
        key_prefix=key_prefix,
    )


def create_file_store(settings: Settings) -> FileStore:
    return FileStore(
        directory=settings.file_store_path,
        configstore=_upload_config_store(settings, "upload:file:"),
        expiration_period=_period(settings.file_store_expiry_seconds),
    )


def create_s3_store(settings: Settings, client=None):
    """Return an S3Store, or None when no bucket is configured and S3 is not the selected backend."""
    if not settings.s3_bucket:
        if settings.store_type == StoreType.S3:
            raise ValueError("S3 storage requires s3_bucket to be set")
        return None
    from upload_gateway.services.storage.s3 import S3Store, _get_client

    return S3Store(
        bucket=settings.s3_bucket,
        configstore=_upload_config_store(settings, "upload:s3:"),
        client=client if client is not None else _get_client(settings),
        part_size=settings.s3_part_size,
        use_tags=settings.s3_use_tags,
        expiration_period=_period(settings.s3_expiry_seconds),
    )


__all__ = [
    "DataStore",
    "FileStore",
    "Upload",
    "UploadNotFoundError",
    "create_file_store",
    "create_s3_store",
]

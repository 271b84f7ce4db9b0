"""Admin: folder removal and info on the filesystem store, object count and clear on S3."""
import logging

from fastapi import APIRouter, Depends, Query

from upload_gateway.api.schemas import (
    FolderInfo,
    MessageResponse,
    ObjectClearResponse,
    ObjectCountResponse,
    PathRequest,
)
from upload_gateway.core.deps import authenticate_user, get_gateway
from upload_gateway.core.errors import NotFoundError, StorageError, UpstreamError, ValidationError
from upload_gateway.core.metrics import record_admin_operation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/1", tags=["admin"], dependencies=[Depends(authenticate_user)])

PATH_REQUIRED = "file id or path is required"
PATH_FAILED = "file or folder not found, or error occured"
PREFIX_REQUIRED = "prefix is required"


def _require_path(body: PathRequest | None) -> str:
    if body is None or not isinstance(body.id_or_path, str) or not body.id_or_path:
        raise ValidationError(PATH_REQUIRED)
    return body.id_or_path


def _require_prefix(prefix: str | None) -> str:
    # "" selects every object; only an absent query key is an error
    if prefix is None:
        raise ValidationError(PREFIX_REQUIRED, body_key="message")
    return prefix


def _require_s3(gateway):
    if gateway.s3_store is None:
        raise UpstreamError("object storage is not configured")
    return gateway.s3_store


@router.post("/file/remove", response_model=MessageResponse)
async def remove_file_or_folder(body: PathRequest | None = None, gateway=Depends(get_gateway)):
    """Recursively remove a file or folder under the filesystem store root."""
    path = _require_path(body)
    try:
        await gateway.file_store.remove_folder(path)
    except (NotFoundError, StorageError) as e:
        logger.info("Folder removal failed", extra={"path": path, "reason": str(e)})
        record_admin_operation("remove_folder", False)
        raise NotFoundError(PATH_FAILED)
    record_admin_operation("remove_folder", True)
    return MessageResponse(message="file or folder removed")


@router.post("/files", response_model=FolderInfo)
async def folder_info(body: PathRequest | None = None, gateway=Depends(get_gateway)):
    path = _require_path(body)
    try:
        info = await gateway.file_store.get_folder_info(path)
    except (NotFoundError, StorageError) as e:
        logger.info("Folder info failed", extra={"path": path, "reason": str(e)})
        raise NotFoundError(PATH_FAILED)
    return FolderInfo(**info)


@router.get("/object-count", response_model=ObjectCountResponse)
async def object_count(prefix: str | None = Query(None), gateway=Depends(get_gateway)):
    prefix = _require_prefix(prefix)
    count = await _require_s3(gateway).get_objects_count(prefix)
    return ObjectCountResponse(count=count)


@router.get("/object-clear", response_model=ObjectClearResponse)
async def object_clear(prefix: str | None = Query(None), gateway=Depends(get_gateway)):
    """Delete every object under prefix. Any per-key failure fails the whole request."""
    prefix = _require_prefix(prefix)
    store = _require_s3(gateway)
    try:
        deleted = await store.clear_objects(prefix)
    except StorageError:
        record_admin_operation("clear_objects", False)
        raise
    record_admin_operation("clear_objects", True)
    return ObjectClearResponse(message="objects cleared", deleted=deleted)

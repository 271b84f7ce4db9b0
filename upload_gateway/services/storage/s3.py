"""S3 blob store: one multipart upload per storage key, plus prefix count/clear. Every boto3 call runs in the threadpool."""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone

from botocore.exceptions import BotoCoreError, ClientError
from starlette.concurrency import run_in_threadpool

from upload_gateway.core.errors import GatewayError, StorageError, UpstreamError, ValidationError
from upload_gateway.services.kvstore import KvStore
from upload_gateway.services.storage.base import DataStore, Upload, UploadNotFoundError

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000
INCOMPLETE_PART_SUFFIX = ".part"
COMPLETED_TAG = "Tus-Completed"


def _get_client(settings):
    import boto3
    from botocore.config import Config

    addressing_style = "path" if settings.s3_force_path_style else "auto"
    return boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint,
        region_name=settings.s3_region,
        aws_access_key_id=settings.s3_access_key,
        aws_secret_access_key=settings.s3_access_secret,
        config=Config(s3={"addressing_style": addressing_style}),
    )


def _error_code(e: Exception) -> str | None:
    resp = getattr(e, "response", None)
    return resp.get("Error", {}).get("Code") if isinstance(resp, dict) else None


def _is_missing(e: Exception) -> bool:
    return _error_code(e) in ("404", "NoSuchKey", "NoSuchUpload", "NotFound")


class S3Store(DataStore):
    """Multipart uploads of part_size; sub-part remainders wait in <key>.part until the next write."""

    name = "s3_store"

    def __init__(
        self,
        bucket: str,
        configstore: KvStore,
        client,
        part_size: int,
        use_tags: bool = True,
        expiration_period: timedelta | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 storage requires s3_bucket to be set")
        self.bucket = bucket
        self.configstore = configstore
        self.client = client
        self.part_size = part_size
        self.use_tags = use_tags
        self.expiration_period = expiration_period or None

    async def _call(self, operation: str, **kwargs):
        return await run_in_threadpool(getattr(self.client, operation), **kwargs)

    def _tagging(self, completed: bool) -> str:
        return f"{COMPLETED_TAG}={'true' if completed else 'false'}"

    async def _load(self, key: str) -> dict:
        data = await self.configstore.get(key)
        if data is None:
            raise UploadNotFoundError(f"Upload not found: {key}")
        return data

    # ----- multipart helpers -----

    async def _list_parts(self, key: str, upload_id: str) -> list[dict]:
        parts: list[dict] = []
        marker = 0
        while True:
            try:
                resp = await self._call(
                    "list_parts", Bucket=self.bucket, Key=key, UploadId=upload_id, PartNumberMarker=marker
                )
            except ClientError as e:
                if _is_missing(e):
                    raise UploadNotFoundError(f"Multipart upload missing for {key}") from e
                raise StorageError(f"Cannot list parts for {key}: {e}") from e
            parts.extend(resp.get("Parts", []))
            if not resp.get("IsTruncated"):
                break
            marker = resp.get("NextPartNumberMarker", marker)
        return sorted(parts, key=lambda p: p["PartNumber"])

    async def _get_incomplete_part(self, key: str) -> bytes:
        try:
            resp = await self._call("get_object", Bucket=self.bucket, Key=key + INCOMPLETE_PART_SUFFIX)
        except ClientError as e:
            if _is_missing(e):
                return b""
            raise StorageError(f"Cannot read incomplete part for {key}: {e}") from e
        return await run_in_threadpool(resp["Body"].read)

    async def _incomplete_part_size(self, key: str) -> int:
        try:
            resp = await self._call("head_object", Bucket=self.bucket, Key=key + INCOMPLETE_PART_SUFFIX)
        except ClientError as e:
            if _is_missing(e):
                return 0
            raise StorageError(f"Cannot stat incomplete part for {key}: {e}") from e
        return resp.get("ContentLength") or 0

    async def _upload_part(self, key: str, upload_id: str, part_number: int, body: bytes) -> None:
        await self._call(
            "upload_part",
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=body,
        )
        logger.debug("Uploaded part", extra={"storage_key": key, "part_number": part_number, "size_bytes": len(body)})

    async def _finish(self, key: str, data: dict) -> None:
        storage = data["storage"]
        parts = await self._list_parts(key, storage["upload_id"])
        await self._call(
            "complete_multipart_upload",
            Bucket=self.bucket,
            Key=key,
            UploadId=storage["upload_id"],
            MultipartUpload={"Parts": [{"ETag": p["ETag"], "PartNumber": p["PartNumber"]} for p in parts]},
        )
        if self.use_tags:
            await self._call(
                "put_object_tagging",
                Bucket=self.bucket,
                Key=key,
                Tagging={"TagSet": [{"Key": COMPLETED_TAG, "Value": "true"}]},
            )
        storage["completed"] = True
        data["offset"] = data.get("size")
        await self.configstore.set(key, data)
        logger.info("Completed multipart upload", extra={"storage_key": key, "parts": len(parts)})

    # ----- upload lifecycle -----

    async def create(self, upload: Upload) -> Upload:
        previous = await self.configstore.get(upload.id)
        if previous and not previous.get("storage", {}).get("completed"):
            await self._abort(upload.id, previous["storage"].get("upload_id"))
        try:
            await self._call("delete_object", Bucket=self.bucket, Key=upload.id + INCOMPLETE_PART_SUFFIX)
            if upload.size == 0:
                # nothing to stream: write the empty object directly
                kwargs = {"Bucket": self.bucket, "Key": upload.id, "Body": b""}
                if self.use_tags:
                    kwargs["Tagging"] = self._tagging(True)
                await self._call("put_object", **kwargs)
                upload.storage = {"type": self.name, "bucket": self.bucket, "upload_id": None, "completed": True}
            else:
                request = {"Bucket": self.bucket, "Key": upload.id, "Metadata": {"tus-version": "1.0.0"}}
                content_type = upload.metadata.get("filetype") or upload.metadata.get("contentType")
                if content_type:
                    request["ContentType"] = content_type
                if self.use_tags:
                    request["Tagging"] = self._tagging(False)
                resp = await self._call("create_multipart_upload", **request)
                upload.storage = {
                    "type": self.name,
                    "bucket": self.bucket,
                    "upload_id": resp["UploadId"],
                    "completed": False,
                }
        except ClientError as e:
            raise StorageError(f"Cannot create upload {upload.id}: {e}") from e
        except BotoCoreError as e:
            raise UpstreamError(f"Object storage unreachable: {e}") from e
        upload.offset = 0
        await self.configstore.set(upload.id, upload.to_dict())
        logger.info("Created multipart upload", extra={"storage_key": upload.id})
        return upload

    async def get_upload(self, key: str) -> Upload:
        data = await self._load(key)
        upload = Upload.from_dict(data)
        storage = upload.storage or {}
        if storage.get("completed"):
            upload.offset = upload.size or 0
            return upload
        parts = await self._list_parts(key, storage["upload_id"])
        upload.offset = sum(p["Size"] for p in parts) + await self._incomplete_part_size(key)
        return upload

    async def write(self, stream: AsyncIterator[bytes], key: str, offset: int) -> int:
        data = await self._load(key)
        storage = data["storage"]
        if storage.get("completed"):
            return offset
        upload_id = storage["upload_id"]
        size = data.get("size")
        try:
            part_number = len(await self._list_parts(key, upload_id)) + 1
            had_incomplete = await self._incomplete_part_size(key) > 0
            buffer = bytearray(await self._get_incomplete_part(key))
            new_offset = offset
            try:
                async for chunk in stream:
                    buffer += chunk
                    new_offset += len(chunk)
                    while len(buffer) >= self.part_size:
                        await self._upload_part(key, upload_id, part_number, bytes(buffer[: self.part_size]))
                        part_number += 1
                        del buffer[: self.part_size]
            finally:
                is_final = size is not None and new_offset == size
                if buffer and not is_final:
                    # keep the remainder (also on client abort) so the reported offset stays true
                    await self._call(
                        "put_object",
                        Bucket=self.bucket,
                        Key=key + INCOMPLETE_PART_SUFFIX,
                        Body=bytes(buffer),
                        **({"Tagging": self._tagging(False)} if self.use_tags else {}),
                    )
                elif had_incomplete:
                    await self._call("delete_object", Bucket=self.bucket, Key=key + INCOMPLETE_PART_SUFFIX)
            if is_final:
                if buffer:
                    await self._upload_part(key, upload_id, part_number, bytes(buffer))
                await self._finish(key, data)
        except ClientError as e:
            if _is_missing(e):
                raise UploadNotFoundError(f"Upload not found: {key}") from e
            raise StorageError(f"Write failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise UpstreamError(f"Object storage unreachable: {e}") from e
        return new_offset

    async def _abort(self, key: str, upload_id: str | None) -> None:
        if not upload_id:
            return
        try:
            await self._call("abort_multipart_upload", Bucket=self.bucket, Key=key, UploadId=upload_id)
        except ClientError as e:
            if not _is_missing(e):
                raise StorageError(f"Cannot abort upload {key}: {e}") from e

    async def remove(self, key: str) -> None:
        data = await self._load(key)
        storage = data.get("storage") or {}
        try:
            if not storage.get("completed"):
                await self._abort(key, storage.get("upload_id"))
            await self._call(
                "delete_objects",
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key}, {"Key": key + INCOMPLETE_PART_SUFFIX}], "Quiet": True},
            )
        except ClientError as e:
            raise StorageError(f"Cannot delete upload {key}: {e}") from e
        await self.configstore.delete(key)

    async def declare_upload_length(self, key: str, size: int) -> None:
        data = await self._load(key)
        data["size"] = size
        await self.configstore.set(key, data)

    def get_expiration(self) -> timedelta | None:
        return self.expiration_period

    async def delete_expired(self) -> int:
        if not self.expiration_period:
            return 0
        now = datetime.now(timezone.utc)
        removed = 0
        for key in await self.configstore.list():
            try:
                data = await self.configstore.get(key)
                if data is None:
                    continue
                upload = Upload.from_dict(data)
                if (upload.storage or {}).get("completed"):
                    continue
                if upload.expires_at(self.expiration_period) < now:
                    await self.remove(key)
                    removed += 1
            except GatewayError as e:
                logger.warning("Skipping expired-upload candidate %s: %s", key, e.message)
        if removed:
            logger.info("Removed %d expired uploads", removed)
        return removed

    # ----- admin bulk operations -----

    async def _iter_pages(self, prefix: str) -> AsyncIterator[list[dict]]:
        token = None
        while True:
            kwargs = {"Bucket": self.bucket, "Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            resp = await self._call("list_objects_v2", **kwargs)
            yield resp.get("Contents", [])
            if not resp.get("IsTruncated"):
                return
            token = resp.get("NextContinuationToken")

    async def get_objects_count(self, prefix: str = "") -> int:
        """Number of stored objects whose key starts with prefix ("" counts everything)."""
        count = 0
        try:
            async for page in self._iter_pages(prefix):
                count += len(page)
        except ClientError as e:
            raise StorageError(f"Cannot list objects under '{prefix}': {e}") from e
        except BotoCoreError as e:
            raise UpstreamError(f"Object storage unreachable: {e}") from e
        return count

    async def clear_objects(self, prefix: str | None) -> int:
        """Delete every object under prefix. "" is the whole bucket; None is rejected."""
        if prefix is None:
            raise ValidationError("prefix is required", body_key="message")
        deleted = 0
        try:
            async for page in self._iter_pages(prefix):
                for i in range(0, len(page), DELETE_BATCH_SIZE):
                    batch = page[i : i + DELETE_BATCH_SIZE]
                    resp = await self._call(
                        "delete_objects",
                        Bucket=self.bucket,
                        Delete={"Objects": [{"Key": obj["Key"]} for obj in batch], "Quiet": True},
                    )
                    errors = resp.get("Errors") or []
                    if errors:
                        raise StorageError(f"Failed to delete {len(errors)} objects under '{prefix}'")
                    deleted += len(batch)
            await self._abort_uploads_under(prefix)
        except ClientError as e:
            raise StorageError(f"Cannot clear objects under '{prefix}': {e}") from e
        except BotoCoreError as e:
            raise UpstreamError(f"Object storage unreachable: {e}") from e
        for key in await self.configstore.list(prefix):
            await self.configstore.delete(key)
        logger.info("Cleared objects", extra={"prefix": prefix, "deleted": deleted})
        return deleted

    async def _abort_uploads_under(self, prefix: str) -> None:
        key_marker = None
        upload_id_marker = None
        while True:
            kwargs = {"Bucket": self.bucket, "Prefix": prefix}
            if key_marker:
                kwargs["KeyMarker"] = key_marker
                kwargs["UploadIdMarker"] = upload_id_marker
            resp = await self._call("list_multipart_uploads", **kwargs)
            for u in resp.get("Uploads", []):
                await self._abort(u["Key"], u["UploadId"])
            if not resp.get("IsTruncated"):
                return
            key_marker = resp.get("NextKeyMarker")
            upload_id_marker = resp.get("NextUploadIdMarker")

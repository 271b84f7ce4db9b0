"""Filesystem blob store: one file per upload under a root directory, plus folder admin operations."""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import anyio

from upload_gateway.core.errors import GatewayError, NotFoundError, StorageError, ValidationError
from upload_gateway.services.kvstore import KvStore
from upload_gateway.services.storage.base import DataStore, Upload, UploadNotFoundError

logger = logging.getLogger(__name__)


class FileStore(DataStore):
    """Bytes at <root>/<key>; offsets come from the file size, session metadata from the ConfigStore."""

    name = "file_store"

    def __init__(
        self,
        directory: str | Path,
        configstore: KvStore,
        expiration_period: timedelta | None = None,
    ) -> None:
        self.root = Path(directory).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.configstore = configstore
        self.expiration_period = expiration_period or None

    # ----- path confinement -----

    def resolve_path(self, path: str, *, allow_root: bool = False) -> Path:
        """Canonicalize path under the root. Raise NotFoundError if it resolves outside it."""
        candidate = (self.root / path.lstrip("/")).resolve()
        if not candidate.is_relative_to(self.root):
            raise NotFoundError(f"Path outside storage root: {path}")
        if candidate == self.root and not allow_root:
            raise NotFoundError("Refusing to operate on the storage root")
        return candidate

    def _path_for_key(self, key: str) -> Path:
        try:
            return self.resolve_path(key)
        except NotFoundError as e:
            raise ValidationError(f"Invalid storage key: {key}") from e

    def _relative(self, path: Path) -> str:
        return "/".join(path.relative_to(self.root).parts)

    # ----- upload lifecycle -----

    async def create(self, upload: Upload) -> Upload:
        path = self._path_for_key(upload.id)

        def _allocate() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Truncates any previous (completed or expired) upload under the same key
            with open(path, "wb"):
                pass

        try:
            await anyio.to_thread.run_sync(_allocate)
        except OSError as e:
            raise StorageError(f"Cannot create upload file for {upload.id}: {e}") from e
        upload.offset = 0
        upload.storage = {"type": self.name, "path": str(path)}
        await self.configstore.set(upload.id, upload.to_dict())
        logger.info("Created upload file", extra={"storage_key": upload.id})
        return upload

    async def write(self, stream: AsyncIterator[bytes], key: str, offset: int) -> int:
        path = self._path_for_key(key)
        if not await anyio.Path(path).is_file():
            raise UploadNotFoundError(f"Upload not found: {key}")
        try:
            async with await anyio.open_file(path, "r+b") as f:
                await f.seek(offset)
                async for chunk in stream:
                    await f.write(chunk)
                    offset += len(chunk)
        except OSError as e:
            raise StorageError(f"Write failed for {key}: {e}") from e
        return offset

    async def get_upload(self, key: str) -> Upload:
        data = await self.configstore.get(key)
        if data is None:
            raise UploadNotFoundError(f"Upload not found: {key}")
        upload = Upload.from_dict(data)
        try:
            st = await anyio.Path(self._path_for_key(key)).stat()
        except FileNotFoundError as e:
            raise UploadNotFoundError(f"Upload file missing: {key}") from e
        upload.offset = st.st_size
        return upload

    async def remove(self, key: str) -> None:
        path = anyio.Path(self._path_for_key(key))
        data = await self.configstore.get(key)
        if data is None and not await path.exists():
            raise UploadNotFoundError(f"Upload not found: {key}")
        try:
            await path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot delete upload {key}: {e}") from e
        await self.configstore.delete(key)

    async def declare_upload_length(self, key: str, size: int) -> None:
        data = await self.configstore.get(key)
        if data is None:
            raise UploadNotFoundError(f"Upload not found: {key}")
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
                upload = await self.get_upload(key)
                if upload.is_expired(self.expiration_period, now):
                    await self.remove(key)
                    removed += 1
            except GatewayError as e:
                logger.warning("Skipping expired-upload candidate %s: %s", key, e.message)
        if removed:
            logger.info("Removed %d expired uploads", removed)
        return removed

    # ----- admin bulk operations -----

    async def _walk(self, directory: anyio.Path, files: list[anyio.Path], dirs: list[anyio.Path]) -> None:
        async for child in directory.iterdir():
            if await child.is_dir() and not await child.is_symlink():
                dirs.append(child)
                await self._walk(child, files, dirs)
            else:
                files.append(child)

    async def remove_folder(self, path: str) -> None:
        """Recursively delete the subtree at path (confined to the root). Raise NotFoundError on any failure."""
        target = anyio.Path(self.resolve_path(path))
        if not await target.exists():
            raise NotFoundError(f"Path not found: {path}")
        try:
            if await target.is_dir():
                files: list[anyio.Path] = []
                dirs: list[anyio.Path] = [target]
                await self._walk(target, files, dirs)
                for f in files:
                    await f.unlink()
                # deepest first
                for d in sorted(dirs, key=lambda d: len(d.parts), reverse=True):
                    await d.rmdir()
            else:
                await target.unlink()
        except OSError as e:
            logger.error("Folder removal failed", extra={"path": path, "error": str(e)})
            raise NotFoundError(f"Removal failed for {path}: {e}") from e

        removed_prefix = self._relative(Path(str(target)))
        for key in await self.configstore.list():
            norm = key.lstrip("/")
            if norm == removed_prefix or norm.startswith(removed_prefix + "/"):
                await self.configstore.delete(key)
        logger.info("Removed folder", extra={"path": removed_prefix})

    async def _totals(self, directory: anyio.Path) -> tuple[int, int]:
        count = 0
        size = 0
        async for child in directory.iterdir():
            if await child.is_dir():
                sub_count, sub_size = await self._totals(child)
                count += sub_count
                size += sub_size
            else:
                count += 1
                size += (await child.stat()).st_size
        return count, size

    async def get_folder_info(self, path: str) -> dict:
        """Aggregate info (file count, total size, direct children) for a file or directory under the root."""
        target = anyio.Path(self.resolve_path(path, allow_root=True))
        if not await target.exists():
            raise NotFoundError(f"Path not found: {path}")
        rel = self._relative(Path(str(target)))
        try:
            if not await target.is_dir():
                st = await target.stat()
                return {
                    "path": rel,
                    "is_directory": False,
                    "file_count": 1,
                    "total_size": st.st_size,
                    "modified": datetime.fromtimestamp(st.st_mtime, timezone.utc).isoformat(),
                    "children": [],
                }
            children = []
            file_count = 0
            total_size = 0
            async for child in target.iterdir():
                st = await child.stat()
                if await child.is_dir():
                    sub_count, sub_size = await self._totals(child)
                    children.append({"name": child.name, "is_directory": True, "size": sub_size, "file_count": sub_count,
                                     "modified": datetime.fromtimestamp(st.st_mtime, timezone.utc).isoformat()})
                    file_count += sub_count
                    total_size += sub_size
                else:
                    children.append({"name": child.name, "is_directory": False, "size": st.st_size, "file_count": 1,
                                     "modified": datetime.fromtimestamp(st.st_mtime, timezone.utc).isoformat()})
                    file_count += 1
                    total_size += st.st_size
        except OSError as e:
            raise NotFoundError(f"Cannot read {path}: {e}") from e
        children.sort(key=lambda c: c["name"])
        st = await target.stat()
        return {
            "path": rel,
            "is_directory": True,
            "file_count": file_count,
            "total_size": total_size,
            "modified": datetime.fromtimestamp(st.st_mtime, timezone.utc).isoformat(),
            "children": children,
        }

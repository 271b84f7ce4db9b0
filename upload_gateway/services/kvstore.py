"""ConfigStore factory: in-memory, redis or file-backed key-value stores for upload-session metadata.

Every call to create_config_store builds a new, independent store. For redis that
means a new client (and connection pool) per call, so build one store per adapter.
"""
from __future__ import annotations

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path

import anyio
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from upload_gateway.core.config import ConfigStoreKind
from upload_gateway.core.errors import StorageError, UpstreamError

logger = logging.getLogger(__name__)


class KvStore(ABC):
    """Async get/set/delete/list-by-prefix over string keys and JSON-compatible dict values."""

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    @abstractmethod
    async def get(self, key: str) -> dict | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: dict) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def list(self, prefix: str = "") -> list[str]:
        """Return all keys starting with prefix."""
        ...


class MemoryKvStore(KvStore):
    """Process-local dict. Lost on restart."""

    def __init__(self) -> None:
        self._data: dict[str, dict] = {}

    async def get(self, key: str) -> dict | None:
        value = self._data.get(key)
        return dict(value) if value is not None else None

    async def set(self, key: str, value: dict) -> None:
        self._data[key] = dict(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(self, prefix: str = "") -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]


_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class RedisKvStore(KvStore):
    """Redis-backed store sharing one long-lived client for the whole process."""

    def __init__(self, client: aioredis.Redis, key_prefix: str = ""):
        self.client = client
        self.key_prefix = key_prefix

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def connect(self) -> None:
        """Open the connection eagerly. Failures are logged; the process keeps running."""
        try:
            await self.client.ping()
            logger.info("Connected to redis config store", extra={"key_prefix": self.key_prefix})
        except (RedisError, OSError) as e:
            logger.error("Redis connection error: %s", e)

    async def close(self) -> None:
        await self.client.aclose()

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as e:
            logger.error("Redis ping failed: %s", e)
            return False

    async def get(self, key: str) -> dict | None:
        try:
            data = await self.client.get(self._make_key(key))
        except (RedisError, OSError) as e:
            logger.error("Redis get failed for %s: %s", key, e)
            raise UpstreamError("config store unavailable") from e
        if data is None:
            return None
        return json.loads(data)

    async def set(self, key: str, value: dict) -> None:
        try:
            await self.client.set(self._make_key(key), json.dumps(value, default=str))
        except (RedisError, OSError) as e:
            logger.error("Redis set failed for %s: %s", key, e)
            raise UpstreamError("config store unavailable") from e

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._make_key(key))
        except (RedisError, OSError) as e:
            logger.error("Redis delete failed for %s: %s", key, e)
            raise UpstreamError("config store unavailable") from e

    async def list(self, prefix: str = "") -> list[str]:
        pattern = _GLOB_SPECIAL.sub(r"\\\1", self._make_key(prefix)) + "*"
        keys = []
        try:
            async for raw in self.client.scan_iter(match=pattern):
                keys.append(raw[len(self.key_prefix):])
        except (RedisError, OSError) as e:
            logger.error("Redis scan failed for prefix %s: %s", prefix, e)
            raise UpstreamError("config store unavailable") from e
        return keys


class FileKvStore(KvStore):
    """One <key>.json file per entry under a root directory.

    Each key_prefix gets its own subdirectory ('upload:s3:' -> upload-s3/); list() only scans that one.
    """

    SUFFIX = ".json"

    def __init__(self, directory: str | Path, key_prefix: str = ""):
        namespace = key_prefix.strip(":").replace(":", "-").replace("/", "-")
        self.key_prefix = key_prefix
        self.root = (Path(directory) / namespace).resolve() if namespace else Path(directory).resolve()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create config store directory {self.root}: {e}") from e
        if not os.access(self.root, os.W_OK):
            raise StorageError(f"Config store directory is not writable: {self.root}")

    def _path_for(self, key: str) -> Path:
        path = (self.root / (key.lstrip("/") + self.SUFFIX)).resolve()
        if not path.is_relative_to(self.root):
            raise StorageError(f"Config store key escapes root: {key}")
        return path

    async def get(self, key: str) -> dict | None:
        path = anyio.Path(self._path_for(key))
        try:
            raw = await path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Cannot read config entry {key}: {e}") from e
        return json.loads(raw)["value"]

    async def set(self, key: str, value: dict) -> None:
        path = self._path_for(key)
        body = json.dumps({"key": key, "value": value}, default=str)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(body, encoding="utf-8")
            os.replace(tmp, path)

        try:
            await anyio.to_thread.run_sync(_write)
        except OSError as e:
            raise StorageError(f"Cannot write config entry {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await anyio.Path(self._path_for(key)).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot delete config entry {key}: {e}") from e

    async def list(self, prefix: str = "") -> list[str]:
        def _scan() -> list[str]:
            keys = []
            for path in self.root.rglob("*" + self.SUFFIX):
                try:
                    key = json.loads(path.read_text(encoding="utf-8"))["key"]
                except (OSError, ValueError, KeyError):
                    continue
                if key.startswith(prefix):
                    keys.append(key)
            return keys

        return await anyio.to_thread.run_sync(_scan)


def create_config_store(
    kind: ConfigStoreKind | str,
    *,
    directory: str | Path | None = None,
    redis_url: str | None = None,
    key_prefix: str = "",
) -> KvStore:
    """Build a new store of the given kind. Redis: a new client per call, connected by KvStore.connect()."""
    kind = ConfigStoreKind(kind)
    if kind is ConfigStoreKind.MEMORY:
        return MemoryKvStore()
    if kind is ConfigStoreKind.REDIS:
        if not redis_url:
            raise ValueError("redis config store requires redis_url")
        client = aioredis.from_url(redis_url, decode_responses=True)
        return RedisKvStore(client, key_prefix=key_prefix)
    if directory is None:
        raise ValueError("file config store requires a directory")
    return FileKvStore(directory, key_prefix=key_prefix)

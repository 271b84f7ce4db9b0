"""Blob store interface: create/write/read-metadata/delete for resumable uploads. Implementations: filesystem or S3."""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from upload_gateway.core.errors import NotFoundError


class UploadNotFoundError(NotFoundError):
    """No upload session exists for the storage key."""


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Upload:
    """One upload session, keyed by its storage key."""

    id: str
    size: int | None = None
    offset: int = 0
    metadata: dict[str, str | None] = field(default_factory=dict)
    creation_date: str = field(default_factory=utcnow_iso)
    storage: dict | None = None

    @property
    def is_complete(self) -> bool:
        return self.size is not None and self.offset == self.size

    def expires_at(self, period: timedelta | None) -> datetime | None:
        if not period:
            return None
        return datetime.fromisoformat(self.creation_date) + period

    def is_expired(self, period: timedelta | None, now: datetime | None = None) -> bool:
        """Only incomplete uploads expire."""
        expires = self.expires_at(period)
        if expires is None or self.is_complete:
            return False
        return (now or datetime.now(timezone.utc)) > expires

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Upload:
        return cls(
            id=data["id"],
            size=data.get("size"),
            offset=data.get("offset", 0),
            metadata=data.get("metadata") or {},
            creation_date=data.get("creation_date") or utcnow_iso(),
            storage=data.get("storage"),
        )


class DataStore(ABC):
    """Abstract blob store. Session metadata lives in the store's own ConfigStore."""

    # tus extensions this store can serve
    extensions: tuple[str, ...] = (
        "creation",
        "creation-with-upload",
        "creation-defer-length",
        "termination",
        "expiration",
    )

    @abstractmethod
    async def create(self, upload: Upload) -> Upload:
        """Allocate storage for a new upload and persist its session."""
        ...

    @abstractmethod
    async def write(self, stream: AsyncIterator[bytes], key: str, offset: int) -> int:
        """Append stream at offset; return the new offset. Raise UploadNotFoundError if unknown."""
        ...

    @abstractmethod
    async def get_upload(self, key: str) -> Upload:
        """Return the session for key. Raise UploadNotFoundError if unknown."""
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete bytes and session. Raise UploadNotFoundError if unknown."""
        ...

    @abstractmethod
    async def declare_upload_length(self, key: str, size: int) -> None:
        ...

    @abstractmethod
    async def delete_expired(self) -> int:
        """Remove expired incomplete uploads; return how many were removed."""
        ...

    @abstractmethod
    def get_expiration(self) -> timedelta | None:
        ...

"""tus request handling over a DataStore. Key naming and URL building are supplied by the caller."""
from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from email.utils import format_datetime

from starlette.requests import ClientDisconnect, Request
from starlette.responses import Response

from upload_gateway.core.errors import GatewayError
from upload_gateway.services.keys import parse_metadata
from upload_gateway.services.lifecycle import UPLOAD_START, UploadEvents
from upload_gateway.services.storage.base import DataStore, Upload, UploadNotFoundError

logger = logging.getLogger(__name__)

TUS_RESUMABLE = "1.0.0"
TUS_VERSION = "1.0.0"
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"
EXPOSED_HEADERS = [
    "Location",
    "Upload-Offset",
    "Upload-Length",
    "Upload-Defer-Length",
    "Upload-Metadata",
    "Upload-Expires",
    "Tus-Resumable",
    "Tus-Version",
    "Tus-Extension",
    "Tus-Max-Size",
]

NamingFunction = Callable[[Request, dict], str]
FileIdFunction = Callable[[Request], str]
UrlFunction = Callable[[Request, str], str]
ErrorCallback = Callable[[Request, Exception], None]


class TusError(Exception):
    def __init__(self, status_code: int, body: str):
        super().__init__(body)
        self.status_code = status_code
        self.body = body


class KeyLocker:
    """One asyncio.Lock per storage key; released locks are dropped once nobody waits."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def _parse_non_negative(value: str | None, header: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise TusError(400, f"Invalid {header} header")
    if n < 0:
        raise TusError(400, f"Invalid {header} header")
    return n


def _encode_metadata(meta: dict) -> str:
    pairs = []
    for k, v in meta.items():
        if v is None:
            pairs.append(k)
        else:
            pairs.append(f"{k} {base64.b64encode(v.encode('utf-8')).decode('ascii')}")
    return ",".join(pairs)


class TusServer:
    """Dispatches tus requests under a mount path to a DataStore."""

    def __init__(
        self,
        *,
        path: str,
        datastore: DataStore,
        naming_function: NamingFunction,
        get_file_id_from_request: FileIdFunction,
        generate_url: UrlFunction,
        on_response_error: ErrorCallback | None = None,
        events: UploadEvents | None = None,
        max_size: int = 0,
    ) -> None:
        self.path = path
        self.datastore = datastore
        self.naming_function = naming_function
        self.get_file_id_from_request = get_file_id_from_request
        self.generate_url = generate_url
        self.on_response_error = on_response_error
        self.events = events or UploadEvents()
        self.max_size = max_size
        self.locker = KeyLocker()

    async def handle(self, request: Request) -> Response:
        method = request.headers.get("x-http-method-override", request.method).upper()
        if method == "OPTIONS":
            return self._options()
        if request.headers.get("tus-resumable") != TUS_RESUMABLE:
            return self._response(412, "Unsupported version", {"Tus-Version": TUS_VERSION})
        handlers: dict[str, Callable[[Request], Awaitable[Response]]] = {
            "POST": self._post,
            "HEAD": self._head,
            "PATCH": self._patch,
            "DELETE": self._delete,
        }
        handler = handlers.get(method)
        if handler is None:
            return self._response(405, "Method not allowed", {"Allow": "OPTIONS, POST, HEAD, PATCH, DELETE"})
        try:
            return await handler(request)
        except TusError as e:
            return self._response(e.status_code, e.body)
        except ClientDisconnect as e:
            self._report(request, e)
            return self._response(400, "Request aborted")
        except UploadNotFoundError:
            return self._response(404, "The file for this url was not found")
        except GatewayError as e:
            if e.status_code >= 500:
                self._report(request, e)
            return self._response(e.status_code, e.message)
        except Exception as e:
            self._report(request, e)
            return self._response(500, "Something went wrong with that request")

    def _report(self, request: Request, error: Exception) -> None:
        if self.on_response_error is not None:
            self.on_response_error(request, error)
        else:
            logger.error("Request failed: %s", error)

    def _response(self, status_code: int, body: str = "", headers: dict | None = None) -> Response:
        out = {"Tus-Resumable": TUS_RESUMABLE}
        out.update(headers or {})
        return Response(content=body, status_code=status_code, headers=out)

    def _expiry_header(self, upload: Upload) -> dict:
        expires = upload.expires_at(self.datastore.get_expiration())
        if expires is None or upload.is_complete:
            return {}
        return {"Upload-Expires": format_datetime(expires, usegmt=True)}

    def _options(self) -> Response:
        headers = {
            "Tus-Version": TUS_VERSION,
            "Tus-Extension": ",".join(self.datastore.extensions),
        }
        if self.max_size:
            headers["Tus-Max-Size"] = str(self.max_size)
        return self._response(204, headers=headers)

    async def _get_live_upload(self, key: str) -> Upload:
        upload = await self.datastore.get_upload(key)
        if upload.is_expired(self.datastore.get_expiration()):
            raise TusError(410, "The file for this url no longer exists")
        return upload

    async def _stream(self, request: Request, limit: int | None) -> AsyncIterator[bytes]:
        received = 0
        async for chunk in request.stream():
            if not chunk:
                continue
            received += len(chunk)
            if limit is not None and received > limit:
                raise TusError(413, "Maximum size exceeded")
            yield chunk

    async def _write(self, request: Request, upload: Upload, offset: int) -> int:
        if upload.size is not None:
            limit = upload.size - offset
        elif self.max_size:
            limit = self.max_size - offset
        else:
            limit = None
        try:
            return await self.datastore.write(self._stream(request, limit), upload.id, offset)
        except ClientDisconnect:
            raise
        except (TusError, GatewayError) as e:
            self.events.emit(upload.id, {"token": upload.id, "action": "error", "payload": {"error": str(e)}})
            raise

    def _finished(self, request: Request, upload: Upload, offset: int) -> None:
        if upload.size is not None and offset == upload.size:
            self.events.emit(
                upload.id,
                {
                    "token": upload.id,
                    "action": "success",
                    "payload": {"url": self.generate_url(request, upload.id), "size": upload.size},
                },
            )

    async def _post(self, request: Request) -> Response:
        if request.headers.get("upload-concat") is not None:
            raise TusError(400, "Concatenation is not supported")
        length = request.headers.get("upload-length")
        defer = request.headers.get("upload-defer-length")
        if length is None and defer is None:
            raise TusError(400, "Upload-Length or Upload-Defer-Length header required")
        if length is not None and defer is not None:
            raise TusError(400, "Upload-Length and Upload-Defer-Length are mutually exclusive")
        if defer is not None and defer != "1":
            raise TusError(400, "Invalid Upload-Defer-Length header")
        size = _parse_non_negative(length, "Upload-Length") if length is not None else None
        if self.max_size and size is not None and size > self.max_size:
            raise TusError(413, "Maximum size exceeded")
        try:
            meta = parse_metadata(request.headers.get("upload-metadata"))
            key = self.naming_function(request, meta)
        except ValueError as e:
            raise TusError(400, str(e))
        if not key.strip("/") or key.endswith("/"):
            raise TusError(400, "Upload-Metadata must name the file")

        async with self.locker.acquire(key):
            try:
                existing = await self.datastore.get_upload(key)
            except UploadNotFoundError:
                existing = None
            if existing is not None and not existing.is_complete and not existing.is_expired(self.datastore.get_expiration()):
                raise TusError(409, "An upload for this file is already in progress")

            upload = await self.datastore.create(Upload(id=key, size=size, metadata=meta))
            self.events.emit(UPLOAD_START, {"token": key})
            url = self.generate_url(request, key)
            headers = {"Location": url}
            headers.update(self._expiry_header(upload))

            if request.headers.get("content-type") == OFFSET_CONTENT_TYPE:
                offset = await self._write(request, upload, 0)
                headers["Upload-Offset"] = str(offset)
                self._finished(request, upload, offset)
            elif upload.size == 0:
                self._finished(request, upload, 0)

        logger.info("Upload created", extra={"storage_key": key, "size_bytes": size})
        return self._response(201, headers=headers)

    async def _head(self, request: Request) -> Response:
        key = self.get_file_id_from_request(request)
        async with self.locker.acquire(key):
            upload = await self._get_live_upload(key)
        headers = {"Upload-Offset": str(upload.offset), "Cache-Control": "no-store"}
        if upload.size is None:
            headers["Upload-Defer-Length"] = "1"
        else:
            headers["Upload-Length"] = str(upload.size)
        if upload.metadata:
            headers["Upload-Metadata"] = _encode_metadata(upload.metadata)
        headers.update(self._expiry_header(upload))
        return self._response(200, headers=headers)

    async def _patch(self, request: Request) -> Response:
        if request.headers.get("content-type") != OFFSET_CONTENT_TYPE:
            raise TusError(415, "Invalid Content-Type header")
        offset = _parse_non_negative(request.headers.get("upload-offset"), "Upload-Offset")
        length = request.headers.get("upload-length")
        key = self.get_file_id_from_request(request)

        async with self.locker.acquire(key):
            upload = await self._get_live_upload(key)
            if offset != upload.offset:
                logger.info("Offset mismatch", extra={"storage_key": key, "expected": upload.offset, "got": offset})
                raise TusError(409, "Upload-Offset conflict")
            if length is not None:
                size = _parse_non_negative(length, "Upload-Length")
                if upload.size is None:
                    if size < upload.offset or (self.max_size and size > self.max_size):
                        raise TusError(400, "Invalid Upload-Length header")
                    await self.datastore.declare_upload_length(key, size)
                    upload.size = size
                elif size != upload.size:
                    raise TusError(400, "Upload-Length cannot be changed")
            new_offset = await self._write(request, upload, offset)
            self._finished(request, upload, new_offset)

        headers = {"Upload-Offset": str(new_offset)}
        headers.update(self._expiry_header(upload))
        return self._response(204, headers=headers)

    async def _delete(self, request: Request) -> Response:
        key = self.get_file_id_from_request(request)
        async with self.locker.acquire(key):
            await self.datastore.remove(key)
        self.events.emit(key, {"token": key, "action": "error", "payload": {"error": "terminated"}})
        logger.info("Upload terminated", extra={"storage_key": key})
        return self._response(204)

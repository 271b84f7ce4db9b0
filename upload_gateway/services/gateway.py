"""Wire backends, auth and the tus engine into one Gateway built once per app."""
import asyncio
import logging
from dataclasses import dataclass, field

from starlette.requests import ClientDisconnect, Request

from upload_gateway.core.config import Settings, StoreType
from upload_gateway.core.metrics import record_upload_event
from upload_gateway.services import keys
from upload_gateway.services.auth import Authenticator
from upload_gateway.services.kvstore import KvStore, create_config_store
from upload_gateway.services.lifecycle import LifecycleBridge, UploadEvents
from upload_gateway.services.storage import DataStore, FileStore, create_file_store, create_s3_store
from upload_gateway.tus import TusServer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Gateway:
    settings: Settings
    file_store: FileStore
    s3_store: object | None
    datastore: DataStore
    session_store: KvStore
    authenticator: Authenticator
    events: UploadEvents
    bridge: LifecycleBridge
    tus: TusServer
    config_stores: tuple = field(default=())

    async def startup(self) -> None:
        for store in self.config_stores:
            await store.connect()

    async def shutdown(self) -> None:
        self.bridge.detach()
        await self.authenticator.close()
        for store in self.config_stores:
            await store.close()

    async def ready(self) -> bool:
        return await self.datastore.configstore.ping()

    async def sweep_expired(self, interval_seconds: int) -> None:
        """Remove expired incomplete uploads every interval until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = await self.datastore.delete_expired()
            except Exception:
                logger.exception("Expired upload sweep failed")
                continue
            if removed:
                logger.info("Removed expired uploads", extra={"count": removed})


def _raw_path(request: Request) -> str:
    # Starlette decodes request.url.path; the key resolver does its own single unquote
    raw = request.scope.get("raw_path")
    if raw:
        return raw.decode("latin-1").split("?", 1)[0]
    return request.url.path


def on_response_error(request: Request, error: Exception) -> None:
    if isinstance(error, ClientDisconnect):
        logger.info("Request aborted by the client", extra={"path": request.url.path})
        record_upload_event("aborted")
        return
    logger.error("Upload request failed: %s", error, extra={"path": request.url.path}, exc_info=error)


def build_gateway(settings: Settings, s3_client=None) -> Gateway:
    """Construct every backend once. Raises ValueError when S3 is selected without a bucket."""
    file_store = create_file_store(settings)
    s3_store = create_s3_store(settings, client=s3_client)
    datastore = s3_store if settings.store_type == StoreType.S3 else file_store

    session_store = create_config_store(
        settings.session_store,
        directory=settings.session_store_path,
        redis_url=settings.redis_url,
        key_prefix="session:",
    )
    config_stores = [file_store.configstore, session_store]
    if s3_store is not None:
        config_stores.insert(1, s3_store.configstore)

    upload_path = settings.server_upload_path

    def naming_function(request: Request, meta: dict) -> str:
        return keys.derive_key_from_metadata(meta, folder_upload_enabled=settings.enable_folder_upload)

    def get_file_id_from_request(request: Request) -> str:
        return keys.derive_key_from_request(_raw_path(request), upload_path)

    def generate_url(request: Request, upload_id: str) -> str:
        return keys.generate_url(
            upload_id,
            path=upload_path,
            server_url=settings.server_url,
            proto=request.headers.get("x-forwarded-proto", request.url.scheme),
            host=request.headers.get("x-forwarded-host", request.headers.get("host", "localhost")),
        )

    events = UploadEvents()
    bridge = LifecycleBridge(events)
    bridge.attach()
    tus = TusServer(
        path=upload_path,
        datastore=datastore,
        naming_function=naming_function,
        get_file_id_from_request=get_file_id_from_request,
        generate_url=generate_url,
        on_response_error=on_response_error,
        events=events,
        max_size=settings.max_size,
    )
    logger.info(
        "Gateway configured",
        extra={"store_type": settings.store_type.value, "config_store": settings.config_store.value, "upload_path": upload_path},
    )
    return Gateway(
        settings=settings,
        file_store=file_store,
        s3_store=s3_store,
        datastore=datastore,
        session_store=session_store,
        authenticator=Authenticator(settings),
        events=events,
        bridge=bridge,
        tus=tus,
        config_stores=tuple(config_stores),
    )

"""FastAPI app: CORS, security headers, sessions, routers, tus mount."""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from upload_gateway.api.admin import router as admin_router
from upload_gateway.api.auth import router as auth_router
from upload_gateway.api.uploads import create_upload_router
from upload_gateway.core.config import Settings, get_settings
from upload_gateway.core.deps import get_gateway, require_metrics_access
from upload_gateway.core.errors import GatewayError, gateway_error_handler
from upload_gateway.core.metrics import get_metrics
from upload_gateway.core.request_logging import RequestLoggingMiddleware
from upload_gateway.core.sessions import SessionMiddleware
from upload_gateway.services.gateway import build_gateway
from upload_gateway.tus.server import EXPOSED_HEADERS



def _configure_logging(settings: Settings) -> None:
    logging.getLogger("upload_gateway").setLevel(settings.log_level.upper())
    if settings.log_json:
        request_logger = logging.getLogger("upload_gateway.request")
        for h in request_logger.handlers[:]:
            request_logger.removeHandler(h)
        h = logging.StreamHandler()
        h.setFormatter(logging.Formatter("%(message)s"))
        request_logger.addHandler(h)
        request_logger.setLevel(logging.INFO)
        request_logger.propagate = False


def create_app(settings: Settings | None = None, *, s3_client=None) -> FastAPI:
    """Build the app. Backends are chosen here, once, from settings."""
    settings = settings or get_settings()
    _configure_logging(settings)
    gateway = build_gateway(settings, s3_client=s3_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await gateway.startup()
        sweeper = None
        if settings.expiry_sweep_interval_seconds > 0:
            sweeper = asyncio.create_task(gateway.sweep_expired(settings.expiry_sweep_interval_seconds))
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                try:
                    await sweeper
                except asyncio.CancelledError:
                    pass
            await gateway.shutdown()

    app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)
    app.state.gateway = gateway
    app.add_exception_handler(GatewayError, gateway_error_handler)

    # Outermost last: CORS wraps request logging, which wraps sessions
    app.add_middleware(
        SessionMiddleware,
        store=gateway.session_store,
        secret_key=settings.secret_key,
        cookie_name=settings.session_cookie_name,
        max_age=settings.session_expiry_seconds,
    )
    app.add_middleware(RequestLoggingMiddleware, upload_path=settings.server_upload_path, log_json=settings.log_json)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "HEAD", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS + ["X-Request-ID"],
    )

    @app.middleware("http")
    async def security_headers(request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    app.include_router(auth_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
    app.include_router(create_upload_router(settings.server_upload_path))

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/healthz")
    async def healthz():
        """Liveness: no auth, no backend calls."""
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz(gateway=Depends(get_gateway)):
        """Readiness: upload ConfigStore reachable."""
        if await gateway.ready():
            return {"status": "ok"}
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "detail": "config store unreachable"},
        )

    @app.get("/metrics", response_class=Response)
    async def metrics(_: None = Depends(require_metrics_access)):
        """Prometheus metrics. Guarded by X-Metrics-Secret when METRICS_SECRET is set."""
        body, content_type = get_metrics()
        return Response(content=body, media_type=content_type)

    return app

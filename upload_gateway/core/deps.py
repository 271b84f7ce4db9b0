"""FastAPI dependencies: gateway lookup, the auth gate, metrics guard."""
import logging

from fastapi import Header, HTTPException, Request, status

from upload_gateway.core.errors import UnauthorizedError
from upload_gateway.services.auth import UNAUTHORIZED

logger = logging.getLogger(__name__)


def get_gateway(request: Request):
    """The Gateway built once by create_app."""
    return request.app.state.gateway


async def authenticate_user(request: Request) -> str | None:
    """Allow if the session already has a user, or promote an authorized token into the session; else 401."""
    gateway = get_gateway(request)
    object_id = request.headers.get("x-object-id")
    try:
        result = await gateway.authenticator.authenticate(request, object_id)
    except Exception:
        logger.exception("Authenticator failed")
        result = UNAUTHORIZED

    session = getattr(request.state, "session", None)
    if session is not None and session.user_id:
        request.state.user_id = session.user_id
        return session.user_id
    if result.authorized:
        if session is not None:
            session.user_id = result.user_id
        request.state.user_id = result.user_id
        return result.user_id
    raise UnauthorizedError("Unauthorized user")


def require_metrics_access(
    request: Request,
    x_metrics_secret: str | None = Header(None, alias="X-Metrics-Secret"),
) -> None:
    """Allow /metrics if no secret is configured, or the X-Metrics-Secret header matches."""
    secret = get_gateway(request).settings.metrics_secret
    if secret and x_metrics_secret != secret:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing X-Metrics-Secret",
        )

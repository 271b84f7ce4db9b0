"""Gateway error taxonomy. Each error carries its HTTP status; one handler renders them."""
from fastapi import Request, status
from fastapi.responses import JSONResponse


class GatewayError(Exception):
    """Base exception for the upload gateway."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, body_key: str = "error"):
        super().__init__(message)
        self.message = message
        self.body_key = body_key


class ValidationError(GatewayError):
    """Missing or malformed request identifier."""

    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(GatewayError):
    """Auth gate rejection."""

    status_code = status.HTTP_401_UNAUTHORIZED


class NotFoundError(GatewayError):
    """Path or key absent, outside the storage root, or a bulk operation failed."""

    status_code = status.HTTP_404_NOT_FOUND


class StorageError(GatewayError):
    """Backend I/O failure."""


class UpstreamError(GatewayError):
    """Authenticator, cache or object storage unreachable or not configured."""


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={exc.body_key: exc.message})

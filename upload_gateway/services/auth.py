"""Bearer token authenticator: external validation service when configured, else local JWT."""
import logging
from dataclasses import dataclass

import httpx
from fastapi import Request

from upload_gateway.core.config import Settings
from upload_gateway.core.security import decode_access_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthResult:
    authorized: bool
    user_id: str | None = None


UNAUTHORIZED = AuthResult(authorized=False)


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class Authenticator:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.service_url = settings.auth_service_url
        self.timeout = settings.auth_service_timeout_seconds
        self.secret_key = settings.secret_key
        self.algorithm = settings.jwt_algorithm
        self._client = client

    async def authenticate(self, request: Request, object_id: str | None) -> AuthResult:
        token = _bearer_token(request)
        if token is None:
            return UNAUTHORIZED
        if self.service_url:
            return await self._remote(token, object_id)
        return self._local(token, object_id)

    def _local(self, token: str, object_id: str | None) -> AuthResult:
        payload = decode_access_token(token, self.secret_key, self.algorithm)
        if not payload or not payload.get("sub"):
            return UNAUTHORIZED
        claimed = payload.get("object_id")
        if claimed is not None and object_id is not None and claimed != object_id:
            logger.info("Token object_id mismatch", extra={"object_id": object_id})
            return UNAUTHORIZED
        return AuthResult(authorized=True, user_id=str(payload["sub"]))

    async def _remote(self, token: str, object_id: str | None) -> AuthResult:
        body = {"token": token, "object_id": object_id}
        try:
            if self._client is not None:
                resp = await self._client.post(self.service_url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.service_url, json=body)
        except httpx.HTTPError as e:
            logger.error("Auth service unreachable: %s", e)
            return UNAUTHORIZED
        if resp.status_code // 100 != 2:
            return UNAUTHORIZED
        try:
            data = resp.json()
        except ValueError:
            logger.error("Auth service returned invalid JSON")
            return UNAUTHORIZED
        if not data.get("authorized"):
            return UNAUTHORIZED
        user_id = data.get("user_id")
        return AuthResult(authorized=True, user_id=str(user_id) if user_id is not None else None)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

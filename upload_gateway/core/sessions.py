"""Server-side sessions: opaque signed id in a cookie, data in a KvStore, sliding expiry."""
import logging
import time
from dataclasses import dataclass, field

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from upload_gateway.core.security import create_session_id, sign_session_id, unsign_session_id
from upload_gateway.services.kvstore import KvStore

logger = logging.getLogger(__name__)


@dataclass
class Session:
    id: str
    data: dict = field(default_factory=dict)
    is_new: bool = True
    modified: bool = False
    cleared: bool = False

    @property
    def user_id(self) -> str | None:
        return self.data.get("user_id")

    @user_id.setter
    def user_id(self, value: str) -> None:
        self.data["user_id"] = value
        self.modified = True

    def clear(self) -> None:
        self.data.clear()
        self.cleared = True
        self.modified = True


class SessionMiddleware(BaseHTTPMiddleware):
    """Load request.state.session before the handler; persist and re-issue the cookie after it.

    Empty sessions are never written, so anonymous requests touch the store only to read.
    """

    def __init__(self, app, *, store: KvStore, secret_key: str, cookie_name: str, max_age: int):
        super().__init__(app)
        self.store = store
        self.secret_key = secret_key
        self.cookie_name = cookie_name
        self.max_age = max_age

    async def _load(self, request: Request) -> Session:
        session_id = unsign_session_id(request.cookies.get(self.cookie_name), self.secret_key)
        if session_id is None:
            return Session(id=create_session_id())
        record = await self.store.get(session_id)
        if not record or record.get("expires_at", 0) <= time.time():
            return Session(id=create_session_id())
        return Session(id=session_id, data=dict(record.get("data") or {}), is_new=False)

    async def dispatch(self, request: Request, call_next):
        session = await self._load(request)
        request.state.session = session
        response = await call_next(request)

        if session.cleared:
            await self.store.delete(session.id)
            response.delete_cookie(self.cookie_name, path="/")
            return response
        if not session.data:
            return response
        # Sliding window: every response with a live session extends it
        await self.store.set(session.id, {"data": session.data, "expires_at": time.time() + self.max_age})
        response.set_cookie(
            key=self.cookie_name,
            value=sign_session_id(session.id, self.secret_key),
            max_age=self.max_age,
            httponly=True,
            samesite="lax",
            secure=False,
            path="/",
        )
        if session.is_new:
            logger.info("Session created", extra={"user_id": session.user_id})
        return response

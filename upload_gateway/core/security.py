"""JWT bearer tokens and HMAC-signed session ids."""
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt


def create_access_token(
    subject: str,
    secret_key: str,
    algorithm: str = "HS256",
    expires_minutes: int = 60,
    object_id: str | None = None,
) -> str:
    """Mint a bearer token. Used by trusted callers and tests; the gateway itself only verifies."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "exp": now + timedelta(minutes=expires_minutes),
        "iat": now,
    }
    if object_id is not None:
        payload["object_id"] = object_id
    return jwt.encode(payload, secret_key, algorithm=algorithm)


def decode_access_token(token: str, secret_key: str, algorithm: str = "HS256") -> dict | None:
    try:
        return jwt.decode(token, secret_key, algorithms=[algorithm])
    except JWTError:
        return None


def create_session_id() -> str:
    return secrets.token_urlsafe(32)


def _sign(value: str, secret_key: str) -> str:
    return hmac.new(secret_key.encode(), value.encode(), hashlib.sha256).hexdigest()


def sign_session_id(session_id: str, secret_key: str) -> str:
    """Cookie value: <session_id>.<hmac>."""
    return f"{session_id}.{_sign(session_id, secret_key)}"


def unsign_session_id(cookie_value: str | None, secret_key: str) -> str | None:
    """Return the session id if the signature matches; else None."""
    if not cookie_value:
        return None
    parts = cookie_value.rsplit(".", 1)
    if len(parts) != 2:
        return None
    session_id, sig = parts
    if not session_id or not hmac.compare_digest(sig, _sign(session_id, secret_key)):
        return None
    return session_id

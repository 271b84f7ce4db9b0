"""Scrub gateway credentials from structured log extras.

Request and upload log lines carry headers and settings-derived fields. Bearer tokens, the signed
``up-session`` cookie, server-side session ids and the S3 access key pair must never reach a log sink.
Upload keys, paths and ``x-object-id`` values are not credentials and pass through untouched.
"""
import re
from typing import Any

REDACTED = "[REDACTED]"

# Substrings of dict keys (case-insensitive) whose values are always dropped
REDACT_KEYS = frozenset({
    "authorization", "token", "jwt", "cookie", "session", "secret",
    "password", "access_key", "credentials", "signature",
})

_JWT = re.compile(r"^[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{16,}$")
# <token_urlsafe session id>.<hmac-sha256 hex>, as written by sign_session_id
_SIGNED_SESSION = re.compile(r"^[A-Za-z0-9_-]{16,}\.[0-9a-f]{64}$")
_AWS_ACCESS_KEY_ID = re.compile(r"^(AKIA|ASIA)[A-Z0-9]{16}$")


def _redact_key(key: str) -> bool:
    k = key.lower().replace("-", "_")
    return any(r in k for r in REDACT_KEYS)


def redact_for_log(obj: Any) -> Any:
    """Copy of obj with credential-named keys and credential-shaped strings replaced by REDACTED."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return {
            k: REDACTED if isinstance(k, str) and _redact_key(k) else redact_for_log(v)
            for k, v in obj.items()
        }
    if isinstance(obj, (list, tuple)):
        return type(obj)(redact_for_log(x) for x in obj)
    if isinstance(obj, str) and _looks_like_credential(obj):
        return REDACTED
    return obj


def _looks_like_credential(s: str) -> bool:
    if s.lower().startswith("bearer "):
        return True
    if len(s) > 64 and _JWT.match(s):
        return True
    return bool(_SIGNED_SESSION.match(s) or _AWS_ACCESS_KEY_ID.match(s))

"""Storage key derivation.

A key is assigned once from the tus Upload-Metadata at creation and recomputed from
the request path on every later request. The two must agree: the URL built by
generate_url for a key maps back to that same key through derive_key_from_request.
"""
import base64
import binascii
from urllib.parse import unquote

NAMESPACE_FIELD = "datasetID"
# Clients send the string "null" (not an absent field) for files picked outside a folder
NULL_RELATIVE_PATH = "null"


def parse_metadata(header: str | None) -> dict[str, str | None]:
    """Parse an Upload-Metadata header: comma separated "key base64value" pairs, value optional."""
    meta: dict[str, str | None] = {}
    if not header:
        return meta
    for pair in header.split(","):
        pair = pair.strip()
        if not pair:
            continue
        parts = pair.split(" ")
        if len(parts) > 2 or not parts[0]:
            raise ValueError(f"Invalid Upload-Metadata pair: {pair!r}")
        key = parts[0]
        if len(parts) == 1:
            meta[key] = None
            continue
        try:
            meta[key] = base64.b64decode(parts[1], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValueError(f"Invalid base64 value for Upload-Metadata key {key!r}") from e
    return meta


def namespace(meta: dict) -> str:
    return meta.get(NAMESPACE_FIELD) or ""


def derive_key_from_metadata(meta: dict, *, folder_upload_enabled: bool) -> str:
    """namespace/relativePath for folder uploads, namespace/name otherwise; percent-decoded."""
    relative_path = meta.get("relativePath")
    if folder_upload_enabled and relative_path is not None and relative_path != NULL_RELATIVE_PATH:
        name = relative_path
    else:
        name = meta.get("name") or ""
    return unquote(namespace(meta) + "/" + name)


def derive_key_from_request(path: str, mount_prefix: str) -> str:
    """Strip the mount prefix from a request path and percent-decode the remainder."""
    return unquote(path.replace(mount_prefix.rstrip("/") + "/", "", 1))


def generate_url(
    upload_id: str,
    *,
    path: str,
    server_url: str | None = None,
    proto: str = "http",
    host: str = "localhost",
) -> str:
    """Absolute, fully-decoded Location for an upload. One trailing slash on the base is dropped."""
    base = server_url if server_url else f"{proto}://{host}"
    if base.endswith("/"):
        base = base[:-1]
    return unquote(f"{base}{path}/{upload_id}")

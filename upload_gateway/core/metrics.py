"""Prometheus metrics: request count by route/status, latency, upload lifecycle, admin bulk operations."""
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total requests",
    ["method", "path", "status_class"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "Request latency",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
UPLOADS_TOTAL = Counter(
    "uploads_total",
    "Upload lifecycle events",
    ["event"],  # started | finished | failed | aborted
)
ADMIN_OPERATIONS_TOTAL = Counter(
    "admin_operations_total",
    "Admin bulk operations",
    ["operation", "result"],  # result: success | failure
)


def _status_class(status: int) -> str:
    if status < 200:
        return "1xx"
    if status < 300:
        return "2xx"
    if status < 400:
        return "3xx"
    if status < 500:
        return "4xx"
    return "5xx"


def normalize_path(path: str, upload_path: str) -> str:
    """Collapse per-upload URLs so storage keys do not become label values."""
    path = path or "/"
    if path.startswith(upload_path + "/") and len(path) > len(upload_path) + 1:
        return upload_path + "/{key}"
    return path


def record_request(method: str, path: str, status_code: int, latency_seconds: float) -> None:
    sc = _status_class(status_code)
    REQUEST_COUNT.labels(method=method, path=path, status_class=sc).inc()
    REQUEST_LATENCY.labels(method=method, path=path).observe(latency_seconds)


def record_upload_event(event: str) -> None:
    UPLOADS_TOTAL.labels(event=event).inc()


def record_admin_operation(operation: str, success: bool) -> None:
    ADMIN_OPERATIONS_TOTAL.labels(operation=operation, result="success" if success else "failure").inc()


def get_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST

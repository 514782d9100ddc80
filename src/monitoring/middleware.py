"""
Flask middleware for request logging and metrics.

- Per-request id (from X-Request-ID or generated) echoed back in the response
- Request timing and the http_* metrics
- Logging context with method, path and calling principal
"""

import logging
import time
import uuid
from collections.abc import Callable
from functools import wraps

from flask import Flask, Response, g, request

from monitoring.logging import clear_request_context, set_request_context
from monitoring.metrics import metrics

logger = logging.getLogger("shieldroute.request")

PRINCIPAL_HEADER = "X-Principal"


def setup_request_logging(app: Flask) -> None:
    """
    Install before/after/teardown hooks on a Flask app.

    Args:
        app: Flask application instance
    """

    @app.before_request
    def before_request():
        g.http_request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        g.start_time = time.perf_counter()

        set_request_context(
            http_request_id=g.http_request_id,
            method=request.method,
            path=request.path,
            principal=request.headers.get(PRINCIPAL_HEADER, "anonymous"),
        )
        metrics.increment_gauge("http_requests_active")

    @app.after_request
    def after_request(response: Response) -> Response:
        _record_request_metrics(response.status_code)
        if hasattr(g, "http_request_id"):
            response.headers["X-Request-ID"] = g.http_request_id
        return response

    @app.teardown_request
    def teardown_request(exception=None):
        clear_request_context()
        metrics.decrement_gauge("http_requests_active")

        if exception:
            logger.error(
                "Request failed with exception",
                exc_info=exception,
                extra={
                    "http_request_id": getattr(g, "http_request_id", "unknown"),
                    "path": request.path,
                    "method": request.method,
                },
            )


def _record_request_metrics(status_code: int) -> None:
    duration_ms = 0.0
    if hasattr(g, "start_time"):
        duration_ms = (time.perf_counter() - g.start_time) * 1000
    path = _normalize_path(request.path)

    metrics.increment(
        "http_requests_total",
        labels={"method": request.method, "path": path, "status": str(status_code)},
    )
    metrics.timing(
        "http_request_duration_ms",
        duration_ms,
        labels={"method": request.method, "path": path},
    )

    if status_code >= 500:
        log = logger.error
    elif status_code >= 400:
        log = logger.warning
    else:
        log = logger.info
    log(
        f"{request.method} {request.path} -> {status_code}",
        extra={"status_code": status_code, "duration_ms": round(duration_ms, 2)},
    )


def _normalize_path(path: str) -> str:
    """
    Replace ids in a path with placeholders to keep label cardinality low.

    /requests/17/items/3 -> /requests/:id/items/:id
    """
    parts = [p for p in path.strip("/").split("/") if p]
    normalized = []

    for part in parts:
        if part.isdigit():
            normalized.append(":id")
        elif part.startswith("0x") and len(part) > 10:
            normalized.append(":principal")
        else:
            normalized.append(part)

    return "/" + "/".join(normalized)


def timed(metric_name: str | None = None):
    """
    Record the wrapped function's duration as a histogram.

    Usage:
        @timed("process_duration_ms")
        def process_request():
            ...
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with metrics.timer(metric_name or f"function_{func.__name__}"):
                return func(*args, **kwargs)

        return wrapper

    return decorator


def counted(metric_name: str | None = None, labels: dict[str, str] | None = None):
    """
    Count calls to the wrapped function.

    Usage:
        @counted("oracle_callbacks_total")
        def oracle_callback():
            ...
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            metrics.increment(metric_name or f"function_{func.__name__}_total", labels=labels)
            return func(*args, **kwargs)

        return wrapper

    return decorator

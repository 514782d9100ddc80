"""
Monitoring and metrics API endpoints.

- /metrics: Prometheus-compatible metrics
- /metrics/json: JSON metrics
- /health: service status with key statistics
- /health/live, /health/ready: liveness and readiness probes
"""

import time

from flask import Blueprint, Response, jsonify

from api.state import get_service
from monitoring import metrics

monitoring_bp = Blueprint("monitoring", __name__)

_startup_time = time.time()


def _update_dynamic_metrics() -> None:
    """Refresh gauges derived from service state before export."""
    stats = get_service().get_stats()
    metrics.set_gauge("requests_total", stats["request_count"])
    metrics.set_gauge("fee_accumulator", stats["fee_accumulator"])
    metrics.set_gauge("held_balance", stats["balance"])
    metrics.set_gauge("paused", 1 if stats["paused"] else 0)
    for status, count in stats["requests_by_status"].items():
        metrics.set_gauge("requests_by_status", count, labels={"status": status})


@monitoring_bp.route("/metrics", methods=["GET"])
def prometheus_metrics():
    _update_dynamic_metrics()
    return Response(metrics.to_prometheus(), mimetype="text/plain; charset=utf-8")


@monitoring_bp.route("/metrics/json", methods=["GET"])
def json_metrics():
    _update_dynamic_metrics()
    return jsonify(metrics.get_all())


def _check_storage() -> dict:
    storage = get_service().storage
    if storage is None:
        return {"status": "ok", "backend": None, "available": True}
    available = storage.is_available()
    return {
        "status": "ok" if available else "degraded",
        "available": available,
        "backend": storage.__class__.__name__,
    }


@monitoring_bp.route("/health", methods=["GET"])
def health():
    service = get_service()
    stats = service.get_stats()
    return jsonify({
        "status": "healthy",
        "service": "ShieldRoute API",
        "uptime_seconds": time.time() - _startup_time,
        "checks": {
            "lifecycle": {
                "status": "paused" if stats["paused"] else "ok",
                "requests": stats["request_count"],
                "by_status": stats["requests_by_status"],
            },
            "storage": _check_storage(),
            "sweeper": {"running": service.sweeper.running, "sweeps": service.sweeper.sweeps},
        },
    })


@monitoring_bp.route("/health/live", methods=["GET"])
def liveness():
    return jsonify({"status": "alive"})


@monitoring_bp.route("/health/ready", methods=["GET"])
def readiness():
    storage = _check_storage()
    if not storage["available"]:
        return jsonify({"status": "not_ready", "issues": ["storage: not available"]}), 503
    return jsonify({"status": "ready"})

"""
ShieldRoute API Package.

Flask blueprints over the route-optimization request lifecycle.

Blueprints:
- optimizer: request creation, items, processing, refunds, reads
- oracle: decryption callback delivery
- admin: roles, pause, ownership, fee withdrawal, emergency drain
- monitoring: health checks and metrics
"""

import logging
import os

from dotenv import load_dotenv
from flask import Flask

from api import state
from api.admin import admin_bp
from api.monitoring import monitoring_bp
from api.optimizer import optimizer_bp
from api.oracle import oracle_bp
from api.utils import register_error_handlers
from monitoring import setup_request_logging
from route_service import RouteOptimizerService

logger = logging.getLogger(__name__)

# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (optimizer_bp, None),
    (oracle_bp, None),      # blueprint has /oracle prefix
    (admin_bp, None),       # blueprint has /admin prefix
    (monitoring_bp, None),
]


def register_blueprints(app: Flask) -> None:
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def create_app(service: RouteOptimizerService | None = None) -> Flask:
    """
    Build the Flask application.

    Args:
        service: Service to serve; built from the environment when None
    """
    if service is not None:
        state.set_service(service)

    app = Flask(__name__)
    app.json.sort_keys = False
    setup_request_logging(app)
    register_error_handlers(app)
    register_blueprints(app)
    return app


def run_server() -> None:
    """Run the development server (HOST/PORT from the environment)."""
    load_dotenv()
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "5000"))

    service = RouteOptimizerService.from_env()
    app = create_app(service)
    if service.start_sweeper():
        logger.info("Timeout sweeper running every %ss", service.config.sweep_interval_seconds)

    logger.info(
        "ShieldRoute API listening on http://%s:%s (owner %s, %d requests loaded)",
        host,
        port,
        service.access.owner,
        service.ledger.request_count,
    )
    try:
        app.run(host=host, port=port, debug=os.getenv("FLASK_DEBUG", "false").lower() == "true")
    finally:
        service.stop_sweeper()

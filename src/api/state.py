"""
Shared state for the ShieldRoute API.

Holds the service instance every blueprint works against. ``create_app``
installs it; tests install their own through ``set_service``.
"""

from route_service import RouteOptimizerService

# ============================================================
# Shared State
# ============================================================

_service: RouteOptimizerService | None = None


def set_service(service: RouteOptimizerService) -> None:
    global _service
    _service = service


def get_service() -> RouteOptimizerService:
    """
    Get the shared service, building it from the environment on first use.
    """
    global _service
    if _service is None:
        _service = RouteOptimizerService.from_env()
    return _service

"""
Shared utilities for the ShieldRoute API.

Request validation, principal extraction, ciphertext handle parsing and
the mapping from domain errors to HTTP responses.
"""

from functools import wraps
from typing import Any

from flask import Flask, g, jsonify, request

from api.state import get_service
from compute_engine import CiphertextHandle, UnknownHandle
from monitoring.middleware import PRINCIPAL_HEADER
from route_exceptions import (
    ContractPaused,
    ErrorCategory,
    OracleUnavailable,
    RequestNotFound,
    RouteOptimizerError,
    TransferFailed,
)

# Bounded parameters
MAX_RESULTS = 100
MAX_PRINCIPAL_LENGTH = 256

# HTTP status per error category
CATEGORY_STATUS = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.STATE: 409,
    ErrorCategory.TIMING: 409,
    ErrorCategory.SETTLEMENT: 409,
    ErrorCategory.CONFIGURATION: 500,
}

# Specific errors that do not follow their category's status
ERROR_STATUS = {
    RequestNotFound: 404,
    ContractPaused: 503,
    TransferFailed: 502,
    OracleUnavailable: 502,
}


class BadRequest(Exception):
    """Malformed HTTP input (as opposed to a domain validation error)."""


# ============================================================
# Validation Utilities
# ============================================================

def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type],
    optional_fields: dict[str, type] | None = None,
) -> tuple:
    """
    Validate a JSON payload against a simple field/type schema.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    for field_name, expected_type in required_fields.items():
        if field_name not in data:
            return False, f"Missing required field: {field_name}"
        value = data[field_name]
        if not isinstance(value, expected_type) or (expected_type is int and isinstance(value, bool)):
            return False, f"Field '{field_name}' must be of type {expected_type.__name__}"

    for field_name, expected_type in (optional_fields or {}).items():
        if data.get(field_name) is not None and not isinstance(data[field_name], expected_type):
            return False, f"Field '{field_name}' must be of type {expected_type.__name__}"

    return True, None


def json_body(required_fields: dict[str, type], optional_fields: dict[str, type] | None = None) -> dict[str, Any]:
    """
    Parse and validate the JSON body.

    Raises:
        BadRequest: If the body is missing or fails the schema
    """
    data = request.get_json(silent=True)
    if data is None:
        raise BadRequest("No data provided")
    is_valid, error_msg = validate_json_schema(data, required_fields, optional_fields)
    if not is_valid:
        raise BadRequest(error_msg)
    return data


def bounded_limit(default: int = 50) -> int:
    try:
        limit = int(request.args.get("limit", default))
    except ValueError as e:
        raise BadRequest("limit must be an integer") from e
    return max(1, min(limit, MAX_RESULTS))


def parse_handle(value: Any, field_name: str) -> CiphertextHandle:
    """
    Resolve a ciphertext handle given by id.

    Raises:
        BadRequest: If the id is unknown to the compute engine
    """
    if not isinstance(value, str):
        raise BadRequest(f"Field '{field_name}' must be a ciphertext handle id")
    try:
        return get_service().engine.resolve(value)
    except UnknownHandle as e:
        raise BadRequest(f"Unknown ciphertext handle for '{field_name}'") from e


# ============================================================
# Caller Identity
# ============================================================

def require_principal(f):
    """
    Decorator requiring the X-Principal header.

    Authentication happens upstream; this layer only reads who is calling.
    The principal is available as ``g.principal``.
    """

    @wraps(f)
    def decorated(*args, **kwargs):
        principal = request.headers.get(PRINCIPAL_HEADER, "").strip()
        if not principal:
            return jsonify({"error": f"{PRINCIPAL_HEADER} header required"}), 401
        if len(principal) > MAX_PRINCIPAL_LENGTH:
            return jsonify({"error": "Principal too long"}), 400
        g.principal = principal
        return f(*args, **kwargs)

    return decorated


# ============================================================
# Error Handling
# ============================================================

def status_for(error: RouteOptimizerError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return CATEGORY_STATUS.get(error.category, 400)


def register_error_handlers(app: Flask) -> None:
    """Translate domain and input errors into JSON responses."""

    @app.errorhandler(RouteOptimizerError)
    def handle_domain_error(error: RouteOptimizerError):
        return jsonify(error.to_dict()), status_for(error)

    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest):
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Endpoint not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({"error": "Internal server error"}), 500

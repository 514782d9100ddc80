"""
Request lifecycle blueprint.

Client and operator operations on route-optimization requests:
- Ciphertext intake (simulated engine only)
- Request creation, item upload and reads
- Processing, failure declaration, refunds and delivery marking
"""

from flask import Blueprint, g, jsonify, request

from api.state import get_service
from api.utils import (
    BadRequest,
    bounded_limit,
    json_body,
    parse_handle,
    require_principal,
)
from compute_engine import DEFAULT_BITS, SUPPORTED_BITS, SimulatedComputeEngine
from lifecycle_events import EventKind
from monitoring import timed

optimizer_bp = Blueprint("optimizer", __name__)


@optimizer_bp.route("/ciphertexts", methods=["POST"])
def encrypt_value():
    """
    Encrypt a value with the development compute engine.

    Request body:
    {
        "value": 42,
        "bits": 32 (optional)
    }

    Returns:
        The new handle
    """
    service = get_service()
    if not isinstance(service.engine, SimulatedComputeEngine):
        return jsonify({"error": "Client-side encryption is required with this engine"}), 404

    data = json_body({"value": int}, {"bits": int})
    bits = data.get("bits") or DEFAULT_BITS
    if data["value"] < 0 or bits not in SUPPORTED_BITS:
        raise BadRequest(f"value must be unsigned and bits one of {list(SUPPORTED_BITS)}")
    handle = service.engine.encrypt(data["value"], bits=bits)
    return jsonify(handle.to_dict()), 201


@optimizer_bp.route("/requests", methods=["POST"])
@require_principal
def create_request():
    """
    Submit a route-optimization request.

    Request body:
    {
        "item_count": 5,
        "max_distance": "<handle id>",
        "capacity_limit": "<handle id>",
        "deposit": 10000000000000000
    }

    Returns:
        The new request id and public record
    """
    data = json_body({
        "item_count": int,
        "max_distance": str,
        "capacity_limit": str,
        "deposit": int,
    })
    service = get_service()
    request_id = service.create_request(
        g.principal,
        data["item_count"],
        parse_handle(data["max_distance"], "max_distance"),
        parse_handle(data["capacity_limit"], "capacity_limit"),
        data["deposit"],
    )
    return jsonify({"request_id": request_id, "request": service.get_request(request_id)}), 201


@optimizer_bp.route("/requests/<int:request_id>/items", methods=["POST"])
@require_principal
def add_item(request_id: int):
    """
    Upload (or overwrite) one item slot while the request is pending.

    Request body:
    {
        "index": 0,
        "x": "<handle id>", "y": "<handle id>",
        "weight": "<handle id>", "price": "<handle id>"
    }
    """
    data = json_body({"index": int, "x": str, "y": str, "weight": str, "price": str})
    record = get_service().add_item(
        g.principal,
        request_id,
        data["index"],
        *(parse_handle(data[name], name) for name in ("x", "y", "weight", "price")),
    )
    return jsonify({"request_id": request_id, "index": record.index, "active": record.active}), 201


@optimizer_bp.route("/requests/<int:request_id>", methods=["GET"])
def get_request(request_id: int):
    return jsonify(get_service().get_request(request_id))


@optimizer_bp.route("/owners/<owner>/requests", methods=["GET"])
def get_requests_of(owner: str):
    request_ids = get_service().get_requests_of(owner)
    return jsonify({"owner": owner, "count": len(request_ids), "request_ids": request_ids})


@optimizer_bp.route("/requests/<int:request_id>/result", methods=["GET"])
def get_result(request_id: int):
    """Result of a processed request; distance and cost are null until finalized."""
    result = get_service().get_result(request_id)
    if result is None:
        return jsonify({"error": "Request has not been processed", "request_id": request_id}), 404
    return jsonify(result)


@optimizer_bp.route("/requests/<int:request_id>/eligibility", methods=["GET"])
def check_eligibility(request_id: int):
    return jsonify({"request_id": request_id, **get_service().check_eligibility(request_id)})


@optimizer_bp.route("/requests/<int:request_id>/process", methods=["POST"])
@require_principal
@timed("process_duration_ms")
def process_request(request_id: int):
    """Operator-only: start processing and submit for decryption."""
    correlation_id = get_service().process(g.principal, request_id)
    return jsonify({"request_id": request_id, "correlation_id": correlation_id, "status": "processing"})


@optimizer_bp.route("/requests/<int:request_id>/fail", methods=["POST"])
@require_principal
def mark_failed(request_id: int):
    """
    Operator-only: declare that decryption will not complete.

    Request body:
    {
        "reason": "oracle unavailable"
    }
    """
    data = json_body({"reason": str})
    get_service().mark_failed(g.principal, request_id, data["reason"][:500])
    return jsonify({"request_id": request_id, "status": "failed"})


@optimizer_bp.route("/requests/<int:request_id>/refund", methods=["POST"])
@require_principal
def request_refund(request_id: int):
    service = get_service()
    amount = service.request_refund(g.principal, request_id)
    return jsonify({
        "request_id": request_id,
        "amount": amount,
        "status": service.get_request(request_id)["status"],
    })


@optimizer_bp.route("/requests/<int:request_id>/items/<int:index>/delivered", methods=["POST"])
@require_principal
def mark_item_delivered(request_id: int, index: int):
    get_service().mark_item_delivered(g.principal, request_id, index)
    return jsonify({"request_id": request_id, "index": index, "delivered": True})


@optimizer_bp.route("/events", methods=["GET"])
def list_events():
    """
    Recent lifecycle events.

    Query params:
        kind: Event kind name (e.g. RefundIssued)
        request_id: Only events for this request
        limit: Max results (default 50, max 100)
    """
    kind = request.args.get("kind")
    try:
        kind_filter = EventKind(kind) if kind else None
    except ValueError as e:
        raise BadRequest(f"Unknown event kind: {kind}") from e
    request_id = request.args.get("request_id", type=int)

    events = get_service().get_events(kind=kind_filter, request_id=request_id, limit=bounded_limit())
    return jsonify({"count": len(events), "events": [e.to_dict() for e in events]})

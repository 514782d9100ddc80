"""
Decryption oracle blueprint.

- POST /oracle/callback: delivery point for an out-of-process oracle
- GET /oracle/pending, POST /oracle/fulfill/<id>: drive the local
  development oracle by hand
"""

from flask import Blueprint, jsonify

from api.state import get_service
from api.utils import BadRequest, json_body
from decryption_oracle import LocalDecryptionOracle
from monitoring import counted

oracle_bp = Blueprint("oracle", __name__, url_prefix="/oracle")


@oracle_bp.route("/callback", methods=["POST"])
@counted("oracle_callbacks_total")
def oracle_callback():
    """
    Deliver decrypted values.

    Request body:
    {
        "correlation_id": 3,
        "cleartexts": [123000, 450],
        "proof": "<base64 signature>"
    }

    A proof that fails verification is accepted as a no-op (202,
    ``completed: false``): the request stays in processing.
    """
    data = json_body({"correlation_id": int, "cleartexts": list, "proof": str})
    cleartexts = data["cleartexts"]
    if not all(isinstance(v, int) and not isinstance(v, bool) and v >= 0 for v in cleartexts):
        raise BadRequest("cleartexts must be unsigned integers")

    completed = get_service().complete_callback(data["correlation_id"], cleartexts, data["proof"])
    return jsonify({"correlation_id": data["correlation_id"], "completed": completed}), (
        200 if completed else 202
    )


def _local_oracle() -> LocalDecryptionOracle | None:
    oracle = get_service().oracle
    return oracle if isinstance(oracle, LocalDecryptionOracle) else None


@oracle_bp.route("/pending", methods=["GET"])
def pending_decryptions():
    oracle = _local_oracle()
    if oracle is None:
        return jsonify({"error": "No local oracle configured"}), 404
    pending = oracle.pending_ids()
    return jsonify({"count": len(pending), "correlation_ids": pending})


@oracle_bp.route("/fulfill/<int:correlation_id>", methods=["POST"])
def fulfill_decryption(correlation_id: int):
    """Have the local oracle decrypt a pending batch and deliver its callback."""
    oracle = _local_oracle()
    if oracle is None:
        return jsonify({"error": "No local oracle configured"}), 404
    if correlation_id not in oracle.pending_ids():
        return jsonify({"error": "No pending decryption", "correlation_id": correlation_id}), 404

    completed = oracle.fulfill(correlation_id)
    return jsonify({"correlation_id": correlation_id, "completed": bool(completed)})


@oracle_bp.route("/public-key", methods=["GET"])
def public_key():
    oracle = _local_oracle()
    if oracle is None:
        return jsonify({"error": "No local oracle configured"}), 404
    return jsonify({"algorithm": "Ed25519", "public_key": oracle.public_key_b64})

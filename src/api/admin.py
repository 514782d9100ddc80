"""
Administrative blueprint.

Role grants, pause toggle, ownership transfer, fee withdrawal, emergency
drain, statistics and the claimable-refund report. Capability checks
happen in the service; this layer only parses input.
"""

from flask import Blueprint, g, jsonify

from access_control import Role
from api.state import get_service
from api.utils import json_body, require_principal

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

_ROLE_PATHS = {"operators": Role.OPERATOR, "pausers": Role.PAUSER}


@admin_bp.route("/<any(operators, pausers):group>", methods=["GET"])
def list_members(group: str):
    members = get_service().access.members(_ROLE_PATHS[group])
    return jsonify({"role": _ROLE_PATHS[group].value, "members": members})


@admin_bp.route("/<any(operators, pausers):group>", methods=["POST"])
@require_principal
def grant(group: str):
    """
    Request body:
    {
        "principal": "0x..."
    }
    """
    data = json_body({"principal": str})
    service = get_service()
    if group == "operators":
        changed = service.add_operator(g.principal, data["principal"])
    else:
        changed = service.add_pauser(g.principal, data["principal"])
    return jsonify({"principal": data["principal"], "role": _ROLE_PATHS[group].value, "changed": changed})


@admin_bp.route("/<any(operators, pausers):group>/<principal>", methods=["DELETE"])
@require_principal
def revoke(group: str, principal: str):
    service = get_service()
    if group == "operators":
        changed = service.remove_operator(g.principal, principal)
    else:
        changed = service.remove_pauser(g.principal, principal)
    return jsonify({"principal": principal, "role": _ROLE_PATHS[group].value, "changed": changed})


@admin_bp.route("/pause", methods=["POST"])
@require_principal
def toggle_pause():
    paused = get_service().toggle_pause(g.principal)
    return jsonify({"paused": paused})


@admin_bp.route("/ownership", methods=["POST"])
@require_principal
def transfer_ownership():
    """
    Request body:
    {
        "new_owner": "0x..."
    }
    """
    data = json_body({"new_owner": str})
    previous = get_service().transfer_ownership(g.principal, data["new_owner"])
    return jsonify({"previous_owner": previous, "owner": data["new_owner"]})


@admin_bp.route("/fees/withdraw", methods=["POST"])
@require_principal
def withdraw_fees():
    """
    Request body:
    {
        "to": "0x..."
    }
    """
    data = json_body({"to": str})
    amount = get_service().withdraw_fees(g.principal, data["to"])
    return jsonify({"to": data["to"], "amount": amount})


@admin_bp.route("/emergency-withdraw", methods=["POST"])
@require_principal
def emergency_withdraw():
    """
    Only while paused.

    Request body:
    {
        "to": "0x...",
        "amount": 1000
    }
    """
    data = json_body({"to": str, "amount": int})
    amount = get_service().emergency_withdraw(g.principal, data["to"], data["amount"])
    return jsonify({"to": data["to"], "amount": amount})


@admin_bp.route("/stats", methods=["GET"])
def stats():
    return jsonify(get_service().get_stats())


@admin_bp.route("/claimable", methods=["GET"])
def claimable_refunds():
    """Requests whose owners could claim a refund right now."""
    claimable = get_service().scan_claimable()
    return jsonify({"count": len(claimable), "claimable": claimable})

"""
Authority Delegation Blueprint.

Routes:
  GET    /authority-delegations          – caller's delegations (given and received)
  POST   /authority-delegations          – delegate caller's authority
  GET    /authority-delegations/<did>    – single delegation
  DELETE /authority-delegations/<did>    – revoke (delegator or admin)
"""

import logging

from flask import Blueprint, jsonify, request

from app.models import db
from app.models.delegation import AuthorityDelegation
from app.services import delegation_service
from app.services.permission_service import Capability, has_capability
from app.services.user_service import find_user
from app.utils.errors import E, api_error, register_error_handlers
from app.utils.helpers import current_user_id, get_or_404

logger = logging.getLogger(__name__)

delegation_bp = Blueprint("delegation_bp", __name__, url_prefix="/api/v1")
register_error_handlers(delegation_bp, logger)


@delegation_bp.route("/authority-delegations", methods=["GET"])
def list_delegations():
    uid = current_user_id()
    if uid is None:
        return api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
    active_only = request.args.get("active") == "true"
    return jsonify({
        "given": [d.to_dict() for d in delegation_service.list_delegations(
            delegator_id=uid, active_only=active_only)],
        "received": [d.to_dict() for d in delegation_service.list_delegations(
            delegate_id=uid, active_only=active_only)],
    })


@delegation_bp.route("/authority-delegations", methods=["POST"])
def create_delegation():
    """Body: { delegate_id, workflow_types[], valid_from, valid_until, max_amount?, reason? }"""
    uid = current_user_id()
    if uid is None:
        return api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "JSON object body is required")

    delegator_id = uid
    on_behalf = data.get("delegator_id")
    if on_behalf is not None and on_behalf != uid:
        if not has_capability(find_user(uid), Capability.MANAGE_DELEGATIONS):
            return api_error(E.FORBIDDEN, "Only admins may create delegations for other users")
        delegator_id = on_behalf

    delegation = delegation_service.create_delegation(data, delegator_id)
    db.session.commit()
    return jsonify(delegation.to_dict()), 201


@delegation_bp.route("/authority-delegations/<int:did>", methods=["GET"])
def get_delegation(did):
    delegation, err = get_or_404(AuthorityDelegation, did, "Delegation")
    if err:
        return err
    return jsonify(delegation.to_dict())


@delegation_bp.route("/authority-delegations/<int:did>", methods=["DELETE"])
def revoke_delegation(did):
    uid = current_user_id()
    if uid is None:
        return api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
    delegation = delegation_service.get_delegation(did)
    if delegation.delegator_id != uid and not has_capability(
            find_user(uid), Capability.MANAGE_DELEGATIONS):
        return api_error(E.FORBIDDEN, "Only the delegator or an admin may revoke")
    delegation = delegation_service.revoke_delegation(did)
    db.session.commit()
    return jsonify(delegation.to_dict())

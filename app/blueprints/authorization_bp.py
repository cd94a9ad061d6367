"""
Authorization Workflow Blueprint.

Routes:
  POST   /authorization-workflows                 – create multi-level workflow
  GET    /authorization-workflows                 – list (project_id, status, workflow_type)
  GET    /authorization-workflows/recent          – latest workflows
  GET    /authorization-workflows/<wid>           – workflow with steps
  GET    /authorization-workflows/<wid>/steps     – ordered steps + active step
  GET    /authorization-workflows/<wid>/history   – decision history
  POST   /authorization-workflows/<wid>/cancel    – requester withdraws
  POST   /workflow-steps/<sid>/action             – approve / reject / reverse
  GET    /pending-approvals                       – workflows the caller can act on
  GET    /authorization-metrics                   – dashboard counters
  GET    /authorization-matrix                    – list matrix rules
  POST   /authorization-matrix                    – create rule
  PUT    /authorization-matrix/<rid>              – update rule
  DELETE /authorization-matrix/<rid>              – deactivate rule

The acting user is read from the X-User-Id header.
"""

import logging

from flask import Blueprint, jsonify, request

from app.models import db
from app.services import authorization_matrix, workflow_engine
from app.services.permission_service import Capability, has_capability
from app.services.user_service import find_user
from app.utils.errors import E, api_error, register_error_handlers
from app.utils.helpers import current_user_id

logger = logging.getLogger(__name__)

authorization_bp = Blueprint("authorization_bp", __name__, url_prefix="/api/v1")
register_error_handlers(authorization_bp, logger)


def _require_actor():
    uid = current_user_id()
    if uid is None:
        return None, api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
    return uid, None


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOWS
# ═════════════════════════════════════════════════════════════════════════════

@authorization_bp.route("/authorization-workflows", methods=["POST"])
def create_workflow():
    """Create a workflow and its approval steps from the matrix.

    Body: { workflow_type, title, amount, description?, priority?, due_date?, project_id? }
    """
    uid, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "JSON object body is required")
    missing = [f for f in ("workflow_type", "title", "amount") if data.get(f) in (None, "")]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"Missing required fields: {', '.join(missing)}")

    wf, steps = workflow_engine.create_multi_level_workflow(data, uid)
    return jsonify({"workflow": wf.to_dict(), "steps": [s.to_dict() for s in steps]}), 201


@authorization_bp.route("/authorization-workflows", methods=["GET"])
def list_workflows():
    workflows = workflow_engine.list_workflows(
        project_id=request.args.get("project_id", type=int),
        status=request.args.get("status"),
        workflow_type=request.args.get("workflow_type"),
        limit=min(request.args.get("limit", 100, type=int), 500),
    )
    return jsonify([w.to_dict() for w in workflows])


@authorization_bp.route("/authorization-workflows/recent", methods=["GET"])
def recent_workflows():
    limit = min(request.args.get("limit", 10, type=int), 100)
    return jsonify([w.to_dict() for w in workflow_engine.recent_workflows(limit)])


@authorization_bp.route("/authorization-workflows/<int:wid>", methods=["GET"])
def get_workflow(wid):
    wf = workflow_engine.get_workflow(wid)
    return jsonify(wf.to_dict(include_steps=True))


@authorization_bp.route("/authorization-workflows/<int:wid>/steps", methods=["GET"])
def get_steps(wid):
    steps = workflow_engine.get_steps(wid)
    active = workflow_engine.active_step(steps)
    wf = workflow_engine.get_workflow(wid)
    return jsonify({
        "steps": [s.to_dict() for s in steps],
        "active_step_id": active.id if active and wf.is_open else None,
    })


@authorization_bp.route("/authorization-workflows/<int:wid>/history", methods=["GET"])
def get_history(wid):
    return jsonify([h.to_dict() for h in workflow_engine.get_history(wid)])


@authorization_bp.route("/authorization-workflows/<int:wid>/cancel", methods=["POST"])
def cancel_workflow(wid):
    uid, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    wf = workflow_engine.cancel_workflow(wid, uid, (data.get("reason") or "").strip() or None)
    return jsonify(wf.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# STEP DECISIONS
# ═════════════════════════════════════════════════════════════════════════════

@authorization_bp.route("/workflow-steps/<int:sid>/action", methods=["POST"])
def step_action(sid):
    """Approve, reject or reverse a step.

    Body: { action: "approve"|"reject"|"reverse", comments? }
    """
    uid, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    action = data.get("action") or data.get("decision")
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    comments = (data.get("comments") or "").strip() or None

    step = workflow_engine.process_approval_step(sid, action, comments, uid)
    return jsonify({
        "step": step.to_dict(),
        "workflow": step.workflow.to_dict(),
    })


@authorization_bp.route("/pending-approvals", methods=["GET"])
def pending_approvals():
    uid, err = _require_actor()
    if err:
        return err
    workflows = workflow_engine.get_actionable_workflows(uid)
    return jsonify([w.to_dict(include_steps=True) for w in workflows])


@authorization_bp.route("/authorization-metrics", methods=["GET"])
def metrics():
    return jsonify(workflow_engine.authorization_metrics())


# ═════════════════════════════════════════════════════════════════════════════
# MATRIX
# ═════════════════════════════════════════════════════════════════════════════

def _require_matrix_manager():
    uid, err = _require_actor()
    if err:
        return err
    if not has_capability(find_user(uid), Capability.MANAGE_MATRIX):
        return api_error(E.FORBIDDEN, "Managing the authorization matrix requires admin role")
    return None


@authorization_bp.route("/authorization-matrix", methods=["GET"])
def list_matrix():
    rules = authorization_matrix.list_rules(
        workflow_type=request.args.get("workflow_type"),
        active_only=request.args.get("active") == "true",
    )
    return jsonify([r.to_dict() for r in rules])


@authorization_bp.route("/authorization-matrix", methods=["POST"])
def create_matrix_rule():
    err = _require_matrix_manager()
    if err:
        return err
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "JSON object body is required")
    rule = authorization_matrix.create_rule(data)
    db.session.commit()
    return jsonify(rule.to_dict()), 201


@authorization_bp.route("/authorization-matrix/<int:rid>", methods=["PUT"])
def update_matrix_rule(rid):
    err = _require_matrix_manager()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    rule = authorization_matrix.update_rule(rid, data)
    db.session.commit()
    return jsonify(rule.to_dict())


@authorization_bp.route("/authorization-matrix/<int:rid>", methods=["DELETE"])
def deactivate_matrix_rule(rid):
    err = _require_matrix_manager()
    if err:
        return err
    rule = authorization_matrix.deactivate_rule(rid)
    db.session.commit()
    return jsonify(rule.to_dict())

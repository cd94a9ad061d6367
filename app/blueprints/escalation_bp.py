"""
Escalation Blueprint.

Routes:
  GET    /escalations/stats               – ledger counts by escalation type
  GET    /escalations/at-risk             – open workflows close to their next escalation
  POST   /escalations/trigger             – run one sweep now (admin)
  GET    /escalations/jobs                – scheduler job status
  POST   /escalations/jobs/<name>/toggle  – enable/disable a job (admin)
"""

import logging

from flask import Blueprint, jsonify, request

from app.services.escalation import EscalationService
from app.services.permission_service import Capability, has_capability
from app.services.scheduler_service import SchedulerService
from app.services.user_service import find_user
from app.utils.errors import E, api_error, register_error_handlers
from app.utils.helpers import current_user_id

logger = logging.getLogger(__name__)

escalation_bp = Blueprint("escalation_bp", __name__, url_prefix="/api/v1/escalations")
register_error_handlers(escalation_bp, logger)


def _require_trigger_capability():
    uid = current_user_id()
    if uid is None:
        return None, api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
    if not has_capability(find_user(uid), Capability.TRIGGER_ESCALATIONS):
        return None, api_error(E.FORBIDDEN, "Triggering escalations requires admin role")
    return uid, None


@escalation_bp.route("/stats", methods=["GET"])
def stats():
    return jsonify(EscalationService().escalation_stats())


@escalation_bp.route("/at-risk", methods=["GET"])
def at_risk():
    window = request.args.get("window_hours", 24, type=int)
    return jsonify(EscalationService().workflows_at_risk(window_hours=window))


@escalation_bp.route("/trigger", methods=["POST"])
def trigger():
    """Run one escalation sweep synchronously and return its summary."""
    uid, err = _require_trigger_capability()
    if err:
        return err
    logger.info("Manual escalation sweep requested", extra={"user_id": uid})
    summary = EscalationService().process_escalations()
    return jsonify({"message": "Escalation sweep completed", "summary": summary})


@escalation_bp.route("/jobs", methods=["GET"])
def list_jobs():
    return jsonify({
        "running": SchedulerService.is_running(),
        "jobs": SchedulerService.list_jobs(),
    })


@escalation_bp.route("/jobs/<job_name>/toggle", methods=["POST"])
def toggle_job(job_name):
    _uid, err = _require_trigger_capability()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get("enabled"), bool):
        return api_error(E.VALIDATION_REQUIRED, "enabled (bool) is required")
    job = SchedulerService.toggle_job(job_name, data["enabled"])
    if job is None:
        return api_error(E.NOT_FOUND, f"Job {job_name} not found")
    return jsonify(job)

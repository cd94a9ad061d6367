"""
Workflow Notification Blueprint.

Routes:
  GET  /workflow-notifications             – caller's notifications (?unread=true)
  GET  /workflow-notifications/unread-count
  PUT  /workflow-notifications/<nid>/read  – mark one read (recipient only)
  PUT  /workflow-notifications/read-all
"""

import logging

from flask import Blueprint, jsonify, request

from app.services.notification import NotificationService
from app.utils.errors import E, api_error, register_error_handlers
from app.utils.helpers import current_user_id

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1/workflow-notifications")
register_error_handlers(notification_bp, logger)


@notification_bp.before_request
def _require_user():
    if current_user_id() is None:
        return api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
    return None


@notification_bp.route("", methods=["GET"])
def list_notifications():
    items, total = NotificationService.list_for_recipient(
        current_user_id(),
        unread_only=request.args.get("unread") == "true",
        limit=min(request.args.get("limit", 50, type=int), 200),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(current_user_id())})


@notification_bp.route("/<int:nid>/read", methods=["PUT"])
def mark_read(nid):
    notif = NotificationService.mark_read(nid, current_user_id())
    return jsonify(notif.to_dict())


@notification_bp.route("/read-all", methods=["PUT"])
def mark_all_read():
    count = NotificationService.mark_all_read(current_user_id())
    return jsonify({"marked_read": count})

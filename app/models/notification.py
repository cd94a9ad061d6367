"""
Workflow notification model.

Models:
    - WorkflowNotification: per-recipient notification produced by the
      workflow engine and the escalation service, with read tracking
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {
    "approval_required", "approval_completed", "step_approved", "rejection",
    "reversal", "cancellation", "reminder", "escalation", "final_escalation",
}
NOTIFICATION_PRIORITIES = {"low", "medium", "high", "critical"}


class WorkflowNotification(db.Model):
    """
    In-app notification tied to an authorization workflow.

    One record per recipient per event. The only mutation after creation is
    setting ``read_at`` by the recipient.
    """

    __tablename__ = "workflow_notifications"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("authorization_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    notification_type = db.Column(db.String(30), nullable=False)
    message = db.Column(db.Text, default="")
    priority = db.Column(db.String(20), default="medium")
    meta = db.Column("metadata", db.JSON, default=dict)

    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    def mark_read(self):
        if self.read_at is None:
            self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "recipient_id": self.recipient_id,
            "notification_type": self.notification_type,
            "message": self.message,
            "priority": self.priority,
            "metadata": self.meta or {},
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<WorkflowNotification {self.id}: {self.notification_type} -> {self.recipient_id}>"

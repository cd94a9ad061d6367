"""
Escalation ledger model.

EscalationRecord is append-only. Its unique constraint on
(workflow_id, escalation_type, trigger_hours) is what makes each reminder
threshold, the escalation and the final escalation fire at most once per
workflow, even when two sweeps overlap.
"""

from datetime import datetime, timezone

from app.models import db


ESCALATION_TYPES = ("reminder", "escalation", "final_escalation")


class EscalationRecord(db.Model):
    __tablename__ = "escalation_records"
    __table_args__ = (
        db.UniqueConstraint(
            "workflow_id", "escalation_type", "trigger_hours",
            name="uq_escalation_workflow_type_hours",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("authorization_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    escalation_type = db.Column(db.String(30), nullable=False,
                                comment="reminder, escalation, final_escalation")
    trigger_hours = db.Column(db.Integer, nullable=False)
    target_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    previous_approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    message = db.Column(db.Text, default="")
    is_processed = db.Column(db.Boolean, default=True, nullable=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "escalation_type": self.escalation_type,
            "trigger_hours": self.trigger_hours,
            "target_user_id": self.target_user_id,
            "previous_approver_id": self.previous_approver_id,
            "message": self.message,
            "is_processed": self.is_processed,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EscalationRecord wf={self.workflow_id} {self.escalation_type}@{self.trigger_hours}h>"

"""
Authorization workflow domain models.

Models:
    - AuthorizationMatrixRule: (workflow type, amount range) -> required approval level
    - AuthorizationWorkflow: a single authorization request
    - WorkflowStep: one required approval level within a workflow
    - AuthorizationStep: append-only decision history for a workflow
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_TYPES = {
    "pago", "contratacion", "orden_cambio", "liberacion_credito",
    "capital_call", "presupuesto", "compra",
}

WORKFLOW_PRIORITIES = {"low", "medium", "high", "critical"}

WORKFLOW_STATUSES = {
    "pendiente", "en_revision", "aprobado", "rechazado",
    "cancelado", "escalado", "escalamiento_critico",
}
OPEN_WORKFLOW_STATUSES = ("pendiente", "en_revision", "escalado", "escalamiento_critico")
TERMINAL_WORKFLOW_STATUSES = ("aprobado", "rechazado", "cancelado")
ESCALATED_WORKFLOW_STATUSES = ("escalado", "escalamiento_critico")

STEP_PENDING = "pendiente"
STEP_APPROVED = "approved"
STEP_REJECTED = "rejected"
STEP_STATUSES = {STEP_PENDING, STEP_APPROVED, STEP_REJECTED}

HISTORY_ACTIONS = {"approve", "reject", "reverse", "cancel"}


def _decimal_out(value):
    return float(value) if value is not None else None


class AuthorizationMatrixRule(db.Model):
    """
    Maps a workflow type and amount range to a required approval level.

    Rules referenced by existing steps are never rewritten in place; edits
    only affect workflows created afterwards because steps copy the level.
    """

    __tablename__ = "authorization_matrix_rules"

    id = db.Column(db.Integer, primary_key=True)
    workflow_type = db.Column(db.String(50), nullable=False, index=True)
    min_amount = db.Column(db.Numeric(15, 2), nullable=True, comment="NULL = no lower bound")
    max_amount = db.Column(db.Numeric(15, 2), nullable=True, comment="NULL = unbounded")
    required_level = db.Column(db.String(30), nullable=False,
                               comment="operativo < supervisor < gerente < director < ejecutivo")
    escalation_hours = db.Column(db.Integer, default=24, nullable=False)
    requires_sequential = db.Column(db.Boolean, default=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_type": self.workflow_type,
            "min_amount": _decimal_out(self.min_amount),
            "max_amount": _decimal_out(self.max_amount),
            "required_level": self.required_level,
            "escalation_hours": self.escalation_hours,
            "requires_sequential": self.requires_sequential,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return (f"<AuthorizationMatrixRule {self.workflow_type} "
                f"{self.min_amount}-{self.max_amount} -> {self.required_level}>")


class AuthorizationWorkflow(db.Model):
    """
    Authorization request moving through ordered approval steps.

    Never deleted; terminal states are aprobado, rechazado and cancelado.
    """

    __tablename__ = "authorization_workflows"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=True, index=True,
                           comment="Owning project (external collaborator)")
    workflow_type = db.Column(db.String(50), nullable=False, index=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    amount = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    requested_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    current_approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    status = db.Column(db.String(30), nullable=False, default="pendiente", index=True)
    priority = db.Column(db.String(20), nullable=False, default="medium")
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)

    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    final_escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    steps = db.relationship(
        "WorkflowStep", back_populates="workflow",
        order_by="WorkflowStep.step_order", cascade="all, delete-orphan",
    )
    history = db.relationship(
        "AuthorizationStep", back_populates="workflow",
        order_by="AuthorizationStep.id", cascade="all, delete-orphan",
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_WORKFLOW_STATUSES

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "workflow_type": self.workflow_type,
            "title": self.title,
            "description": self.description,
            "amount": _decimal_out(self.amount),
            "requested_by_id": self.requested_by_id,
            "current_approver_id": self.current_approver_id,
            "status": self.status,
            "priority": self.priority,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "rejection_reason": self.rejection_reason,
            "escalated_at": self.escalated_at.isoformat() if self.escalated_at else None,
            "final_escalated_at": self.final_escalated_at.isoformat() if self.final_escalated_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<AuthorizationWorkflow {self.id}: {self.workflow_type} [{self.status}]>"


class WorkflowStep(db.Model):
    """
    One approval level of a workflow.

    Created in a batch with the workflow. The active step is computed as the
    lowest step_order still pendiente; it is not stored.
    """

    __tablename__ = "workflow_steps"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "step_order", name="uq_workflow_step_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("authorization_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_order = db.Column(db.Integer, nullable=False, comment="1-based")
    approver_level = db.Column(db.String(30), nullable=False)
    assigned_approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    matrix_rule_id = db.Column(db.Integer, db.ForeignKey("authorization_matrix_rules.id"), nullable=True)
    is_required = db.Column(db.Boolean, default=True, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=STEP_PENDING,
                       comment="pendiente, approved, rejected")
    decided_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comments = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    workflow = db.relationship("AuthorizationWorkflow", back_populates="steps")

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_order": self.step_order,
            "approver_level": self.approver_level,
            "assigned_approver_id": self.assigned_approver_id,
            "matrix_rule_id": self.matrix_rule_id,
            "is_required": self.is_required,
            "status": self.status,
            "decided_by_id": self.decided_by_id,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "comments": self.comments,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<WorkflowStep {self.workflow_id}#{self.step_order} {self.approver_level} [{self.status}]>"


class AuthorizationStep(db.Model):
    """Append-only decision history row. Never updated or deleted."""

    __tablename__ = "authorization_steps"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("authorization_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(db.Integer, db.ForeignKey("workflow_steps.id", ondelete="SET NULL"),
                        nullable=True)
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    action = db.Column(db.String(20), nullable=False, comment="approve, reject, reverse, cancel")
    comments = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    workflow = db.relationship("AuthorizationWorkflow", back_populates="history")

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "approver_id": self.approver_id,
            "action": self.action,
            "comments": self.comments,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuthorizationStep wf={self.workflow_id} {self.action} by {self.approver_id}>"

"""
Authority delegation model.

A delegation temporarily hands a delegator's approval authority to a
delegate, scoped by time window, workflow types and an optional amount
ceiling. Revoked delegations stay for audit.
"""

from datetime import datetime, timezone

from app.models import db


class AuthorityDelegation(db.Model):
    __tablename__ = "authority_delegations"

    id = db.Column(db.Integer, primary_key=True)
    delegator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    delegate_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    workflow_types = db.Column(db.JSON, nullable=False, default=list,
                               comment="List of workflow types covered")
    max_amount = db.Column(db.Numeric(15, 2), nullable=True, comment="NULL = no ceiling")
    valid_from = db.Column(db.DateTime(timezone=True), nullable=False)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=False)
    reason = db.Column(db.Text, default="")
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def covers(self, workflow_type: str) -> bool:
        return workflow_type in (self.workflow_types or [])

    def to_dict(self):
        return {
            "id": self.id,
            "delegator_id": self.delegator_id,
            "delegate_id": self.delegate_id,
            "workflow_types": list(self.workflow_types or []),
            "max_amount": float(self.max_amount) if self.max_amount is not None else None,
            "valid_from": self.valid_from.isoformat() if self.valid_from else None,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "reason": self.reason,
            "is_active": self.is_active,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuthorityDelegation {self.delegator_id}->{self.delegate_id} active={self.is_active}>"

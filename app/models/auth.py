"""
User directory models.

The user directory is an external collaborator of the workflow engine; it is
modeled locally so supervisor/executive lookups and step assignment can be
resolved against real rows.

Models:
    - User: directory entry carrying role, department and authorization limit
"""

import enum
from datetime import datetime, timezone

from app.models import db


class Role(str, enum.Enum):
    """Organizational roles. Approval levels are the ordered subset below admin."""

    OPERATIVO = "operativo"
    SUPERVISOR = "supervisor"
    GERENTE = "gerente"
    DIRECTOR = "director"
    EJECUTIVO = "ejecutivo"
    ADMIN = "admin"


class ApprovalLevel(str, enum.Enum):
    """Ordered approval levels used by matrix rules and workflow steps."""

    OPERATIVO = "operativo"
    SUPERVISOR = "supervisor"
    GERENTE = "gerente"
    DIRECTOR = "director"
    EJECUTIVO = "ejecutivo"

    @property
    def ordinal(self) -> int:
        return LEVEL_ORDER[self.value]

    @classmethod
    def parse(cls, value) -> "ApprovalLevel":
        """Return the level for ``value`` or raise ValueError."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


LEVEL_ORDER = {
    "operativo": 0,
    "supervisor": 1,
    "gerente": 2,
    "director": 3,
    "ejecutivo": 4,
}

ROLES = {r.value for r in Role}


def level_ordinal(level: str) -> int:
    """Sort key for approval level strings. Unknown levels sort last."""
    return LEVEL_ORDER.get(level, len(LEVEL_ORDER))


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    full_name = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(30), nullable=False, default=Role.OPERATIVO.value,
                     comment="operativo, supervisor, gerente, director, ejecutivo, admin")
    department = db.Column(db.String(100), nullable=True)
    authorization_limit = db.Column(db.Numeric(15, 2), nullable=True,
                                    comment="Informational spending ceiling")
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def role_enum(self) -> Role | None:
        try:
            return Role(self.role)
        except ValueError:
            return None

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "department": self.department,
            "authorization_limit": float(self.authorization_limit)
            if self.authorization_limit is not None else None,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} [{self.role}]>"

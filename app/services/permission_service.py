"""
Permission Service — role to capability mapping.

Authority checks go through ``has_capability`` against an enumerated
capability set; no caller compares role strings directly.

Evaluation is deny-by-default:
  - inactive users hold no capabilities
  - unknown roles hold no capabilities
"""

import enum
import logging

from sqlalchemy import select

from app.models import db
from app.models.auth import Role, User

logger = logging.getLogger(__name__)


class Capability(str, enum.Enum):
    APPROVE_WORKFLOWS = "approve_workflows"
    OVERRIDE_APPROVALS = "override_approvals"
    RECEIVE_ESCALATIONS = "receive_escalations"
    RECEIVE_FINAL_ESCALATIONS = "receive_final_escalations"
    MANAGE_MATRIX = "manage_matrix"
    MANAGE_DELEGATIONS = "manage_delegations"
    TRIGGER_ESCALATIONS = "trigger_escalations"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.OPERATIVO: frozenset({Capability.APPROVE_WORKFLOWS}),
    Role.SUPERVISOR: frozenset({
        Capability.APPROVE_WORKFLOWS,
        Capability.RECEIVE_ESCALATIONS,
    }),
    Role.GERENTE: frozenset({Capability.APPROVE_WORKFLOWS}),
    Role.DIRECTOR: frozenset({Capability.APPROVE_WORKFLOWS}),
    Role.EJECUTIVO: frozenset({
        Capability.APPROVE_WORKFLOWS,
        Capability.RECEIVE_FINAL_ESCALATIONS,
    }),
    Role.ADMIN: frozenset(Capability),
}


def capabilities_for(role) -> frozenset[Capability]:
    """Return the capability set granted to ``role`` (str or Role)."""
    try:
        role = Role(role)
    except ValueError:
        return frozenset()
    return ROLE_CAPABILITIES.get(role, frozenset())


def has_capability(user: User | None, capability: Capability) -> bool:
    if user is None or not user.is_active:
        return False
    return capability in capabilities_for(user.role)


def roles_with_capability(capability: Capability) -> list[str]:
    return sorted(r.value for r, caps in ROLE_CAPABILITIES.items() if capability in caps)


def users_with_capability(capability: Capability) -> list[User]:
    """Active users whose role grants ``capability``, ordered by id."""
    roles = roles_with_capability(capability)
    if not roles:
        return []
    stmt = (
        select(User)
        .where(User.role.in_(roles), User.is_active == True)  # noqa: E712
        .order_by(User.id)
    )
    return list(db.session.execute(stmt).scalars().all())

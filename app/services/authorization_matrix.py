"""
Authorization Matrix — (workflow type, amount) -> ordered approval levels.

``required_approvals`` is a pure lookup with no side effects. The CRUD
helpers flush but never commit; the calling blueprint owns the transaction.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import or_, select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.auth import LEVEL_ORDER, level_ordinal
from app.models.authorization import WORKFLOW_TYPES, AuthorizationMatrixRule
from app.utils.helpers import parse_amount

logger = logging.getLogger(__name__)


# (workflow_type, min, max, level, escalation_hours, requires_sequential)
DEFAULT_MATRIX = [
    ("pago", 0, 25000, "supervisor", 12, False),
    ("pago", 25001, 100000, "gerente", 24, False),
    ("pago", 100001, 500000, "director", 48, True),
    ("pago", 500001, None, "ejecutivo", 72, True),
    ("contratacion", 0, 100000, "gerente", 48, False),
    ("contratacion", 100001, 500000, "director", 72, False),
    ("contratacion", 500001, None, "ejecutivo", 168, False),
    ("orden_cambio", 0, 50000, "gerente", 24, False),
    ("orden_cambio", 50001, 250000, "director", 72, False),
    ("orden_cambio", 250001, None, "ejecutivo", 168, False),
    ("liberacion_credito", 0, 100000, "director", 24, False),
    ("liberacion_credito", 100001, None, "ejecutivo", 48, False),
    ("capital_call", 0, 500000, "director", 72, True),
    ("capital_call", 500001, None, "ejecutivo", 168, False),
]


def required_approvals(workflow_type: str, amount) -> list[AuthorizationMatrixRule]:
    """Active rules covering ``amount`` for ``workflow_type``, ascending by level.

    An empty list is a legal result; the workflow engine decides what a
    zero-approval workflow means.
    """
    amount = Decimal(str(amount))
    stmt = select(AuthorizationMatrixRule).where(
        AuthorizationMatrixRule.workflow_type == workflow_type,
        AuthorizationMatrixRule.is_active == True,  # noqa: E712
        or_(AuthorizationMatrixRule.min_amount.is_(None),
            AuthorizationMatrixRule.min_amount <= amount),
        or_(AuthorizationMatrixRule.max_amount.is_(None),
            AuthorizationMatrixRule.max_amount >= amount),
    )
    rules = db.session.execute(stmt).scalars().all()
    return sorted(rules, key=lambda r: (level_ordinal(r.required_level), r.id))


# ═════════════════════════════════════════════════════════════════════════════
# Rule management
# ═════════════════════════════════════════════════════════════════════════════

def _validate_rule_fields(data: dict, *, partial: bool = False) -> dict:
    errors: dict[str, str] = {}
    clean: dict = {}

    if not partial or "workflow_type" in data:
        wt = data.get("workflow_type")
        if wt not in WORKFLOW_TYPES:
            errors["workflow_type"] = f"must be one of {sorted(WORKFLOW_TYPES)}"
        else:
            clean["workflow_type"] = wt

    if not partial or "required_level" in data:
        level = data.get("required_level")
        if level not in LEVEL_ORDER:
            errors["required_level"] = f"must be one of {list(LEVEL_ORDER)}"
        else:
            clean["required_level"] = level

    for field in ("min_amount", "max_amount"):
        if field in data:
            try:
                value = parse_amount(data.get(field), field)
            except ValueError as exc:
                errors[field] = str(exc)
                continue
            if value is not None and value < 0:
                errors[field] = f"{field} must be >= 0"
                continue
            clean[field] = value

    if "escalation_hours" in data:
        hours = data.get("escalation_hours")
        if not isinstance(hours, int) or isinstance(hours, bool) or hours <= 0:
            errors["escalation_hours"] = "escalation_hours must be a positive integer"
        else:
            clean["escalation_hours"] = hours

    for flag in ("requires_sequential", "is_active"):
        if flag in data:
            clean[flag] = bool(data[flag])

    if errors:
        raise ValidationError("Invalid matrix rule", details=errors)
    return clean


def _check_range(rule: AuthorizationMatrixRule) -> None:
    if (rule.min_amount is not None and rule.max_amount is not None
            and Decimal(str(rule.min_amount)) > Decimal(str(rule.max_amount))):
        raise ValidationError(
            "min_amount must not exceed max_amount",
            details={"min_amount": str(rule.min_amount), "max_amount": str(rule.max_amount)},
        )


def create_rule(data: dict) -> AuthorizationMatrixRule:
    clean = _validate_rule_fields(data)
    rule = AuthorizationMatrixRule(**clean)
    _check_range(rule)
    db.session.add(rule)
    db.session.flush()
    logger.info("Matrix rule created: %s", rule)
    return rule


def get_rule(rule_id: int) -> AuthorizationMatrixRule:
    rule = db.session.get(AuthorizationMatrixRule, rule_id)
    if not rule:
        raise NotFoundError(resource="AuthorizationMatrixRule", resource_id=rule_id)
    return rule


def update_rule(rule_id: int, data: dict) -> AuthorizationMatrixRule:
    """Update a rule. Existing steps keep the level they copied at creation."""
    rule = get_rule(rule_id)
    clean = _validate_rule_fields(data, partial=True)
    for key, value in clean.items():
        setattr(rule, key, value)
    _check_range(rule)
    db.session.flush()
    return rule


def deactivate_rule(rule_id: int) -> AuthorizationMatrixRule:
    rule = get_rule(rule_id)
    rule.is_active = False
    db.session.flush()
    return rule


def list_rules(workflow_type: str | None = None, active_only: bool = False) -> list[AuthorizationMatrixRule]:
    stmt = select(AuthorizationMatrixRule)
    if workflow_type:
        stmt = stmt.where(AuthorizationMatrixRule.workflow_type == workflow_type)
    if active_only:
        stmt = stmt.where(AuthorizationMatrixRule.is_active == True)  # noqa: E712
    rules = db.session.execute(stmt).scalars().all()
    return sorted(
        rules,
        key=lambda r: (r.workflow_type, level_ordinal(r.required_level), r.id),
    )


def seed_default_matrix() -> int:
    """Insert the default matrix rows that are not present yet. Returns count added."""
    existing = {
        (r.workflow_type, r.required_level)
        for r in db.session.execute(select(AuthorizationMatrixRule)).scalars()
    }
    added = 0
    for wt, lo, hi, level, hours, sequential in DEFAULT_MATRIX:
        if (wt, level) in existing:
            continue
        db.session.add(AuthorizationMatrixRule(
            workflow_type=wt,
            min_amount=lo,
            max_amount=hi,
            required_level=level,
            escalation_hours=hours,
            requires_sequential=sequential,
            is_active=True,
        ))
        added += 1
    db.session.flush()
    if added:
        logger.info("Seeded %d authorization matrix rules", added)
    return added

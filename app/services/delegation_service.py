"""
Delegation Resolver — temporary hand-over of approval authority.

A delegation matches when it is active, ``valid_from <= at <= valid_until``,
covers the workflow type and the amount fits its ceiling. Overlapping
delegations from one delegator for a shared workflow type are refused at
creation time, so ``resolve_actor`` never has to guess a precedence; if an
ambiguity still shows up (legacy rows) it raises ConflictError.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.authorization import WORKFLOW_TYPES
from app.models.delegation import AuthorityDelegation
from app.services.user_service import get_user
from app.utils.helpers import as_utc, parse_amount, parse_datetime

logger = logging.getLogger(__name__)


def _in_window(d: AuthorityDelegation, at: datetime) -> bool:
    return as_utc(d.valid_from) <= at <= as_utc(d.valid_until)


def _amount_fits(d: AuthorityDelegation, amount) -> bool:
    if d.max_amount is None or amount is None:
        return True
    return Decimal(str(amount)) <= Decimal(str(d.max_amount))


def _active_delegations(*, delegator_id: int | None = None,
                        delegate_id: int | None = None) -> list[AuthorityDelegation]:
    stmt = select(AuthorityDelegation).where(AuthorityDelegation.is_active == True)  # noqa: E712
    if delegator_id is not None:
        stmt = stmt.where(AuthorityDelegation.delegator_id == delegator_id)
    if delegate_id is not None:
        stmt = stmt.where(AuthorityDelegation.delegate_id == delegate_id)
    return list(db.session.execute(stmt.order_by(AuthorityDelegation.id)).scalars().all())


def matching_delegations(delegator_id: int, workflow_type: str, amount,
                         at: datetime | None = None) -> list[AuthorityDelegation]:
    at = as_utc(at) if at else datetime.now(timezone.utc)
    return [
        d for d in _active_delegations(delegator_id=delegator_id)
        if _in_window(d, at) and d.covers(workflow_type) and _amount_fits(d, amount)
    ]


def resolve_actor(nominal_approver_id: int | None, workflow_type: str, amount,
                  at: datetime | None = None) -> int | None:
    """Return the effective approver for ``nominal_approver_id`` at ``at``.

    Returns the nominal approver unchanged when no delegation matches.
    """
    if nominal_approver_id is None:
        return None
    matches = matching_delegations(nominal_approver_id, workflow_type, amount, at)
    if not matches:
        return nominal_approver_id
    if len(matches) > 1:
        raise ConflictError(
            f"Ambiguous delegation for user {nominal_approver_id}: "
            f"{len(matches)} active delegations match",
            resource="AuthorityDelegation",
            details={"delegation_ids": [d.id for d in matches]},
        )
    return matches[0].delegate_id


def delegators_for(delegate_id: int, workflow_type: str, amount,
                   at: datetime | None = None) -> set[int]:
    """Users whose authority for this workflow type/amount is delegated to ``delegate_id``."""
    at = as_utc(at) if at else datetime.now(timezone.utc)
    return {
        d.delegator_id for d in _active_delegations(delegate_id=delegate_id)
        if _in_window(d, at) and d.covers(workflow_type) and _amount_fits(d, amount)
    }


def active_delegations_for_delegate(delegate_id: int,
                                    at: datetime | None = None) -> list[AuthorityDelegation]:
    at = as_utc(at) if at else datetime.now(timezone.utc)
    return [d for d in _active_delegations(delegate_id=delegate_id) if _in_window(d, at)]


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════

def _windows_overlap(a_from, a_until, b_from, b_until) -> bool:
    return as_utc(a_from) <= as_utc(b_until) and as_utc(b_from) <= as_utc(a_until)


def create_delegation(data: dict, delegator_id: int) -> AuthorityDelegation:
    """Create a delegation from ``delegator_id``. Caller commits.

    Raises:
        ValidationError: malformed window, types or amount; self-delegation.
        NotFoundError: delegator or delegate does not exist.
        ConflictError: overlaps an active delegation of the same delegator
            for a shared workflow type.
    """
    errors: dict[str, str] = {}

    delegate_id = data.get("delegate_id")
    if not isinstance(delegate_id, int) or isinstance(delegate_id, bool):
        errors["delegate_id"] = "delegate_id is required"
    elif delegate_id == delegator_id:
        errors["delegate_id"] = "a user cannot delegate to themselves"

    types = data.get("workflow_types")
    if not isinstance(types, list) or not types:
        errors["workflow_types"] = "workflow_types must be a non-empty list"
    else:
        unknown = sorted({t for t in types if t not in WORKFLOW_TYPES}, key=str)
        if unknown:
            errors["workflow_types"] = f"unknown workflow types: {unknown}"

    valid_from = valid_until = None
    try:
        valid_from = parse_datetime(data.get("valid_from"))
        valid_until = parse_datetime(data.get("valid_until"))
    except ValueError as exc:
        errors["valid_from"] = str(exc)
    if not errors.get("valid_from"):
        if valid_from is None or valid_until is None:
            errors["valid_from"] = "valid_from and valid_until are required"
        elif valid_from >= valid_until:
            errors["valid_until"] = "valid_until must be after valid_from"

    max_amount = None
    try:
        max_amount = parse_amount(data.get("max_amount"), "max_amount")
        if max_amount is not None and max_amount < 0:
            errors["max_amount"] = "max_amount must be >= 0"
    except ValueError as exc:
        errors["max_amount"] = str(exc)

    if errors:
        raise ValidationError("Invalid delegation", details=errors)

    get_user(delegator_id)
    get_user(delegate_id)

    wanted = set(types)
    for existing in _active_delegations(delegator_id=delegator_id):
        shared = wanted & set(existing.workflow_types or [])
        if shared and _windows_overlap(valid_from, valid_until,
                                       existing.valid_from, existing.valid_until):
            raise ConflictError(
                f"Delegation overlaps active delegation {existing.id} "
                f"for {sorted(shared)}",
                resource="AuthorityDelegation",
                details={"conflicting_id": existing.id, "workflow_types": sorted(shared)},
            )

    delegation = AuthorityDelegation(
        delegator_id=delegator_id,
        delegate_id=delegate_id,
        workflow_types=sorted(wanted),
        max_amount=max_amount,
        valid_from=valid_from,
        valid_until=valid_until,
        reason=(data.get("reason") or "").strip(),
        is_active=True,
    )
    db.session.add(delegation)
    db.session.flush()
    logger.info(
        "Delegation created %d -> %d for %s",
        delegator_id, delegate_id, delegation.workflow_types,
        extra={"user_id": delegator_id},
    )
    return delegation


def get_delegation(delegation_id: int) -> AuthorityDelegation:
    d = db.session.get(AuthorityDelegation, delegation_id)
    if not d:
        raise NotFoundError(resource="AuthorityDelegation", resource_id=delegation_id)
    return d


def revoke_delegation(delegation_id: int) -> AuthorityDelegation:
    """Deactivate a delegation. Decisions already taken through it stand."""
    d = get_delegation(delegation_id)
    if not d.is_active:
        raise ConflictError(f"Delegation {delegation_id} is already revoked",
                            resource="AuthorityDelegation")
    d.is_active = False
    d.revoked_at = datetime.now(timezone.utc)
    db.session.flush()
    logger.info("Delegation %d revoked", delegation_id, extra={"user_id": d.delegator_id})
    return d


def list_delegations(*, delegator_id: int | None = None, delegate_id: int | None = None,
                     active_only: bool = False) -> list[AuthorityDelegation]:
    stmt = select(AuthorityDelegation)
    if delegator_id is not None:
        stmt = stmt.where(AuthorityDelegation.delegator_id == delegator_id)
    if delegate_id is not None:
        stmt = stmt.where(AuthorityDelegation.delegate_id == delegate_id)
    if active_only:
        stmt = stmt.where(AuthorityDelegation.is_active == True)  # noqa: E712
    return list(db.session.execute(stmt.order_by(AuthorityDelegation.id.desc())).scalars().all())

"""
Workflow Engine — multi-level authorization workflows.

Lifecycle:
    create_multi_level_workflow  → one WorkflowStep per matching matrix rule
    process_step_decision        → approve advances, reject terminates
    reverse_approval             → undo the latest approval of a workflow
    cancel_workflow              → requester withdraws an open request

The active step is never stored: it is the lowest step_order still
pendiente (see ``active_step``). Step decisions are guarded by a
conditional UPDATE on ``status='pendiente'``, so two concurrent decisions
on the same step cannot both succeed.

Transaction policy: public mutating functions commit on success. Multi-level
creation rolls back entirely on any failure, so no workflow is ever left
with fewer steps than the matrix dictated. Decisions and reversals roll back
the same way once their guarded UPDATE has landed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.orm import selectinload

from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.models import db
from app.models.auth import User
from app.models.authorization import (
    ESCALATED_WORKFLOW_STATUSES,
    OPEN_WORKFLOW_STATUSES,
    STEP_APPROVED,
    STEP_PENDING,
    STEP_REJECTED,
    WORKFLOW_PRIORITIES,
    WORKFLOW_STATUSES,
    WORKFLOW_TYPES,
    AuthorizationStep,
    AuthorizationWorkflow,
    WorkflowStep,
)
from app.models.escalation import EscalationRecord
from app.services import authorization_matrix, delegation_service
from app.services.notification import NotificationService
from app.services.permission_service import Capability, has_capability
from app.services.user_service import find_user, first_user_at_level
from app.utils.helpers import as_utc, parse_amount, parse_datetime

logger = logging.getLogger(__name__)

ZERO_RULE_REJECT = "reject"
ZERO_RULE_AUTO_APPROVE = "auto_approve"

DECISION_ALIASES = {
    "approve": "approved",
    "approved": "approved",
    "reject": "rejected",
    "rejected": "rejected",
    "reverse": "reversed",
    "reversed": "reversed",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Pure helpers
# ═════════════════════════════════════════════════════════════════════════════

def active_step(steps: Iterable[WorkflowStep]) -> WorkflowStep | None:
    """Return the pendiente step with the smallest step_order, or None."""
    pending = [s for s in steps if s.status == STEP_PENDING]
    if not pending:
        return None
    return min(pending, key=lambda s: s.step_order)


def _validate_workflow_input(data: dict) -> dict:
    errors: dict[str, str] = {}
    clean: dict = {}

    wt = data.get("workflow_type")
    if wt not in WORKFLOW_TYPES:
        errors["workflow_type"] = f"must be one of {sorted(WORKFLOW_TYPES)}"
    clean["workflow_type"] = wt

    title = (data.get("title") or "").strip()
    if not title:
        errors["title"] = "title is required"
    clean["title"] = title[:300]
    clean["description"] = (data.get("description") or "").strip()

    try:
        amount = parse_amount(data.get("amount"))
        if amount is None:
            errors["amount"] = "amount is required"
        elif amount < 0:
            errors["amount"] = "amount must be >= 0"
        clean["amount"] = amount
    except ValueError as exc:
        errors["amount"] = str(exc)

    priority = data.get("priority") or "medium"
    if priority not in WORKFLOW_PRIORITIES:
        errors["priority"] = f"must be one of {sorted(WORKFLOW_PRIORITIES)}"
    clean["priority"] = priority

    try:
        clean["due_date"] = parse_datetime(data.get("due_date"))
    except ValueError as exc:
        errors["due_date"] = str(exc)

    project_id = data.get("project_id")
    if project_id is not None and (not isinstance(project_id, int) or isinstance(project_id, bool)):
        errors["project_id"] = "project_id must be an integer"
    clean["project_id"] = project_id

    if errors:
        raise ValidationError("Invalid workflow request", details=errors)
    return clean


def _require_user(user_id: int | None) -> User:
    user = find_user(user_id)
    if user is None or not user.is_active:
        raise PermissionDeniedError(f"Unknown or inactive user {user_id}", user_id=user_id)
    return user


def _record_history(workflow_id: int, step_id: int | None, approver_id: int,
                    action: str, comments: str | None) -> AuthorizationStep:
    row = AuthorizationStep(
        workflow_id=workflow_id,
        step_id=step_id,
        approver_id=approver_id,
        action=action,
        comments=comments,
    )
    db.session.add(row)
    return row


def _resolve_step_actor(wf: AuthorizationWorkflow, step: WorkflowStep | None,
                        at: datetime | None = None) -> int | None:
    if step is None:
        return None
    return delegation_service.resolve_actor(
        step.assigned_approver_id, wf.workflow_type, wf.amount, at or _now(),
    )


def _notify(wf: AuthorizationWorkflow, recipient_id: int | None, notification_type: str,
            message: str, priority: str = "medium", **metadata) -> None:
    if recipient_id is None:
        return
    NotificationService.create(
        workflow_id=wf.id,
        recipient_id=recipient_id,
        notification_type=notification_type,
        message=message,
        priority=priority,
        metadata={"workflow_type": wf.workflow_type, **metadata},
    )


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════

def create_workflow(data: dict, requested_by_id: int) -> AuthorizationWorkflow:
    """Persist a workflow with status=pendiente and no steps. Caller commits."""
    _require_user(requested_by_id)
    clean = _validate_workflow_input(data)
    wf = AuthorizationWorkflow(
        requested_by_id=requested_by_id,
        status="pendiente",
        **clean,
    )
    db.session.add(wf)
    db.session.flush()
    return wf


def create_multi_level_workflow(data: dict, requested_by_id: int, *,
                                zero_rule_policy: str | None = None):
    """Create a workflow and one step per matching matrix rule in one transaction.

    Steps are ordered by required level ascending; each is assigned to the
    lowest-id active user holding that level (unassigned when none). The
    workflow's current approver is the delegation-resolved actor of step 1.

    Zero matching rules is governed by ``zero_rule_policy`` (defaults to the
    ZERO_RULE_POLICY config): "reject" raises ValidationError,
    "auto_approve" stores the workflow as aprobado with no steps.

    Returns:
        (workflow, steps)
    """
    policy = zero_rule_policy or current_app.config.get("ZERO_RULE_POLICY", ZERO_RULE_REJECT)
    try:
        wf = create_workflow(data, requested_by_id)
        rules = authorization_matrix.required_approvals(wf.workflow_type, wf.amount)

        if not rules:
            if policy != ZERO_RULE_AUTO_APPROVE:
                raise ValidationError(
                    f"No active authorization rule covers {wf.workflow_type} "
                    f"amount {wf.amount}",
                    details={"workflow_type": wf.workflow_type, "amount": str(wf.amount)},
                )
            wf.status = "aprobado"
            wf.approved_at = _now()
            _notify(wf, wf.requested_by_id, "approval_completed",
                    f"'{wf.title}' required no approvals and was approved automatically",
                    auto_approved=True)
            db.session.commit()
            logger.info("Workflow auto-approved (no matrix rules)",
                        extra={"workflow_id": wf.id, "user_id": requested_by_id})
            return wf, []

        steps = []
        for order, rule in enumerate(rules, start=1):
            assignee = first_user_at_level(rule.required_level)
            step = WorkflowStep(
                workflow_id=wf.id,
                step_order=order,
                approver_level=rule.required_level,
                assigned_approver_id=assignee.id if assignee else None,
                matrix_rule_id=rule.id,
                is_required=True,
                status=STEP_PENDING,
            )
            db.session.add(step)
            steps.append(step)
        db.session.flush()

        first = steps[0]
        wf.current_approver_id = _resolve_step_actor(wf, first)
        _notify(wf, wf.current_approver_id, "approval_required",
                f"Approval required for '{wf.title}' ({wf.workflow_type}, {wf.amount})",
                priority=wf.priority, step_id=first.id, step_order=first.step_order)
        if wf.current_approver_id is None:
            logger.warning("No user holds level %s; step 1 is unassigned", first.approver_level,
                           extra={"workflow_id": wf.id, "step_id": first.id})

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Workflow created with %d step(s)", len(steps),
                extra={"workflow_id": wf.id, "user_id": requested_by_id})
    return wf, steps


# ═════════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════════

def _step_owners(wf: AuthorizationWorkflow, step: WorkflowStep) -> set[int]:
    """Users who hold ``step`` in their own right.

    ``current_approver_id`` may be a delegate resolved at assignment time, so
    it only counts while it is the supervisor an escalation handed the step
    to. Delegates are resolved against these owners at decision time.
    """
    owners = {step.assigned_approver_id}
    if wf.status in ESCALATED_WORKFLOW_STATUSES and wf.current_approver_id is not None:
        target = db.session.execute(
            select(EscalationRecord.target_user_id).where(
                EscalationRecord.workflow_id == wf.id,
                EscalationRecord.escalation_type == "escalation",
            ).order_by(EscalationRecord.id.desc())
        ).scalars().first()
        if target == wf.current_approver_id:
            owners.add(target)
    return owners - {None}


def can_act_on_step(user: User, wf: AuthorizationWorkflow, step: WorkflowStep,
                    at: datetime | None = None) -> bool:
    """Whether ``user`` may decide ``step`` of ``wf`` at ``at``."""
    if has_capability(user, Capability.OVERRIDE_APPROVALS):
        return True
    owners = _step_owners(wf, step)
    if user.id in owners:
        return True
    if delegation_service.delegators_for(user.id, wf.workflow_type, wf.amount, at) & owners:
        return True
    return step.assigned_approver_id is None and user.role == step.approver_level


def get_step(step_id: int) -> WorkflowStep:
    step = db.session.get(WorkflowStep, step_id)
    if not step:
        raise NotFoundError(resource="WorkflowStep", resource_id=step_id)
    return step


def _guarded_step_update(step: WorkflowStep, expected_status: str, **values) -> None:
    """UPDATE the step only if it still has ``expected_status``; ConflictError otherwise."""
    result = db.session.execute(
        update(WorkflowStep)
        .where(WorkflowStep.id == step.id, WorkflowStep.status == expected_status)
        .values(updated_at=_now(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.expire(step)
        raise ConflictError(
            f"Step {step.id} is no longer {expected_status}",
            resource="WorkflowStep",
            details={"step_id": step.id},
        )
    db.session.refresh(step)


def process_step_decision(step_id: int, decision: str, comments: str | None,
                          acting_user_id: int, *, at: datetime | None = None) -> WorkflowStep:
    """Approve or reject the active step of a workflow.

    Raises:
        NotFoundError: unknown step.
        ConflictError: workflow closed, step already decided or not active.
        PermissionDeniedError: the acting user may not decide this step.
        ValidationError: unknown decision.
    """
    if decision not in ("approved", "rejected"):
        raise ValidationError(f"Unknown decision {decision!r}",
                              details={"decision": "approved or rejected"})

    step = get_step(step_id)
    wf = step.workflow
    at = as_utc(at) if at else _now()

    if not wf.is_open:
        raise ConflictError(f"Workflow {wf.id} is {wf.status}", resource="AuthorizationWorkflow")
    if step.status != STEP_PENDING:
        raise ConflictError(f"Step {step.id} was already {step.status}", resource="WorkflowStep")
    current = active_step(wf.steps)
    if current is None or current.id != step.id:
        raise ConflictError(
            f"Step {step.step_order} is not active; step "
            f"{current.step_order if current else '?'} must be decided first",
            resource="WorkflowStep",
        )

    user = _require_user(acting_user_id)
    if not can_act_on_step(user, wf, step, at):
        raise PermissionDeniedError(
            f"User {user.id} may not decide step {step.id}", user_id=user.id,
        )

    now = _now()
    if decision == "approved":
        _guarded_step_update(step, STEP_PENDING, status=STEP_APPROVED,
                             decided_by_id=user.id, approved_at=now, comments=comments)
    else:
        _guarded_step_update(step, STEP_PENDING, status=STEP_REJECTED,
                             decided_by_id=user.id, rejected_at=now, comments=comments)

    # A failed guard writes nothing; past it, any error undoes the whole decision.
    try:
        _record_history(wf.id, step.id, user.id,
                        "approve" if decision == "approved" else "reject", comments)

        if decision == "rejected":
            wf.status = "rechazado"
            wf.rejected_at = now
            wf.rejection_reason = comments or f"Rejected at step {step.step_order}"
            wf.current_approver_id = None
            _notify(wf, wf.requested_by_id, "rejection",
                    f"'{wf.title}' was rejected at level {step.approver_level}: {wf.rejection_reason}",
                    priority="high", step_id=step.id, decided_by=user.id)
        else:
            remaining = [s for s in wf.steps if s.id != step.id and s.status == STEP_PENDING]
            nxt = active_step(remaining)
            if nxt is None:
                wf.status = "aprobado"
                wf.approved_at = now
                wf.current_approver_id = None
                _notify(wf, wf.requested_by_id, "approval_completed",
                        f"'{wf.title}' was fully approved",
                        step_id=step.id, decided_by=user.id)
            else:
                wf.status = "en_revision"
                wf.current_approver_id = _resolve_step_actor(wf, nxt, at)
                _notify(wf, wf.requested_by_id, "step_approved",
                        f"Level {step.approver_level} approved '{wf.title}'",
                        step_id=step.id, decided_by=user.id)
                _notify(wf, wf.current_approver_id, "approval_required",
                        f"Approval required for '{wf.title}' ({wf.workflow_type}, {wf.amount})",
                        priority=wf.priority, step_id=nxt.id, step_order=nxt.step_order)

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Step %s by user %s", decision, user.id,
                extra={"workflow_id": wf.id, "step_id": step.id, "user_id": user.id})
    return step


def reverse_approval(step_id: int, acting_user_id: int, comments: str | None = None) -> WorkflowStep:
    """Undo an approval. Only the user who approved may reverse, and only
    while no higher-order step has been approved.
    """
    step = get_step(step_id)
    wf = step.workflow

    if wf.status in ("rechazado", "cancelado"):
        raise ConflictError(f"Workflow {wf.id} is {wf.status}", resource="AuthorizationWorkflow")
    if step.status != STEP_APPROVED:
        raise ConflictError(f"Step {step.id} is {step.status}, not approved",
                            resource="WorkflowStep")

    user = _require_user(acting_user_id)
    if step.decided_by_id != user.id:
        raise PermissionDeniedError(
            f"Only the approver of step {step.id} may reverse it", user_id=user.id,
        )

    later = [s for s in wf.steps if s.step_order > step.step_order and s.status == STEP_APPROVED]
    if later:
        raise ConflictError(
            f"Step {later[0].step_order} was approved after step {step.step_order}",
            resource="WorkflowStep",
            details={"later_step_ids": [s.id for s in later]},
        )

    _guarded_step_update(step, STEP_APPROVED, status=STEP_PENDING,
                         decided_by_id=None, approved_at=None, comments=comments)
    try:
        _record_history(wf.id, step.id, user.id, "reverse", comments)

        still_approved = any(s.status == STEP_APPROVED for s in wf.steps if s.id != step.id)
        wf.status = "en_revision" if still_approved else "pendiente"
        wf.approved_at = None
        wf.current_approver_id = _resolve_step_actor(wf, step)
        _notify(wf, wf.requested_by_id, "reversal",
                f"Approval at level {step.approver_level} for '{wf.title}' was reversed",
                step_id=step.id, decided_by=user.id)
        if wf.current_approver_id != user.id:
            _notify(wf, wf.current_approver_id, "approval_required",
                    f"Approval required again for '{wf.title}'",
                    priority=wf.priority, step_id=step.id, step_order=step.step_order)

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Approval reversed", extra={"workflow_id": wf.id, "step_id": step.id,
                                            "user_id": user.id})
    return step


def process_approval_step(step_id: int, decision: str, comments: str | None,
                          acting_user_id: int) -> WorkflowStep:
    """Boundary entry point for approve / reject / reverse actions."""
    normalized = DECISION_ALIASES.get((decision or "").strip().lower())
    if normalized is None:
        raise ValidationError(
            f"Unknown action {decision!r}",
            details={"decision": "approve, reject or reverse"},
        )
    if normalized == "reversed":
        return reverse_approval(step_id, acting_user_id, comments)
    return process_step_decision(step_id, normalized, comments, acting_user_id)


def cancel_workflow(workflow_id: int, acting_user_id: int, reason: str | None = None) -> AuthorizationWorkflow:
    """Withdraw an open workflow. Requester or override holders only."""
    wf = get_workflow(workflow_id)
    user = _require_user(acting_user_id)
    if user.id != wf.requested_by_id and not has_capability(user, Capability.OVERRIDE_APPROVALS):
        raise PermissionDeniedError(f"User {user.id} may not cancel workflow {wf.id}",
                                    user_id=user.id)
    if not wf.is_open:
        raise ConflictError(f"Workflow {wf.id} is {wf.status}", resource="AuthorizationWorkflow")

    previous_approver = wf.current_approver_id
    wf.status = "cancelado"
    wf.current_approver_id = None
    _record_history(wf.id, None, user.id, "cancel", reason)
    _notify(wf, previous_approver, "cancellation",
            f"'{wf.title}' was cancelled" + (f": {reason}" if reason else ""))
    db.session.commit()
    logger.info("Workflow cancelled", extra={"workflow_id": wf.id, "user_id": user.id})
    return wf


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def get_workflow(workflow_id: int) -> AuthorizationWorkflow:
    wf = db.session.get(AuthorizationWorkflow, workflow_id)
    if not wf:
        raise NotFoundError(resource="AuthorizationWorkflow", resource_id=workflow_id)
    return wf


def get_steps(workflow_id: int) -> list[WorkflowStep]:
    return list(get_workflow(workflow_id).steps)


def get_history(workflow_id: int) -> list[AuthorizationStep]:
    return list(get_workflow(workflow_id).history)


def list_workflows(*, project_id: int | None = None, status: str | None = None,
                   workflow_type: str | None = None, limit: int = 100) -> list[AuthorizationWorkflow]:
    stmt = select(AuthorizationWorkflow)
    if project_id is not None:
        stmt = stmt.where(AuthorizationWorkflow.project_id == project_id)
    if status:
        if status not in WORKFLOW_STATUSES:
            raise ValidationError(f"Unknown status {status!r}")
        stmt = stmt.where(AuthorizationWorkflow.status == status)
    if workflow_type:
        stmt = stmt.where(AuthorizationWorkflow.workflow_type == workflow_type)
    stmt = stmt.order_by(AuthorizationWorkflow.created_at.desc(), AuthorizationWorkflow.id.desc())
    return list(db.session.execute(stmt.limit(limit)).scalars().all())


def recent_workflows(limit: int = 10) -> list[AuthorizationWorkflow]:
    return list_workflows(limit=limit)


def get_actionable_workflows(user_id: int, at: datetime | None = None) -> list[AuthorizationWorkflow]:
    """Open workflows the user can act on now.

    Matches when the active step is assigned to the user, the user is the
    supervisor an escalation handed it to, one of those people delegated
    to the user through an in-window delegation covering the workflow type
    and amount, or the step is unassigned and the user holds its level.
    """
    user = find_user(user_id)
    if user is None or not user.is_active:
        return []
    at = as_utc(at) if at else _now()
    delegations = delegation_service.active_delegations_for_delegate(user_id, at)

    stmt = (
        select(AuthorizationWorkflow)
        .where(AuthorizationWorkflow.status.in_(OPEN_WORKFLOW_STATUSES))
        .options(selectinload(AuthorizationWorkflow.steps))
        .order_by(AuthorizationWorkflow.created_at, AuthorizationWorkflow.id)
    )
    result = []
    for wf in db.session.execute(stmt).scalars().all():
        step = active_step(wf.steps)
        if step is None:
            continue
        if step.assigned_approver_id is None and user.role == step.approver_level:
            result.append(wf)
            continue
        owners = _step_owners(wf, step)
        if user_id in owners:
            result.append(wf)
            continue
        amount = Decimal(str(wf.amount))
        for d in delegations:
            if (d.delegator_id in owners and d.covers(wf.workflow_type)
                    and (d.max_amount is None or amount <= Decimal(str(d.max_amount)))):
                result.append(wf)
                break
    return result


def authorization_metrics(now: datetime | None = None) -> dict:
    """Dashboard counters: totals, pending, approved today, rejected, avg hours to approve."""
    now = as_utc(now) if now else _now()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

    by_status = dict(db.session.execute(
        select(AuthorizationWorkflow.status, func.count(AuthorizationWorkflow.id))
        .group_by(AuthorizationWorkflow.status)
    ).all())
    by_type = dict(db.session.execute(
        select(AuthorizationWorkflow.workflow_type, func.count(AuthorizationWorkflow.id))
        .group_by(AuthorizationWorkflow.workflow_type)
    ).all())

    approved = db.session.execute(
        select(AuthorizationWorkflow.created_at, AuthorizationWorkflow.approved_at)
        .where(AuthorizationWorkflow.approved_at.is_not(None))
    ).all()
    approved_today = sum(1 for _c, a in approved if as_utc(a) >= start_of_day)
    durations = [
        (as_utc(a) - as_utc(c)) / timedelta(hours=1)
        for c, a in approved if c is not None
    ]
    avg_hours = round(sum(durations) / len(durations), 2) if durations else 0.0

    return {
        "total": sum(by_status.values()),
        "pending": sum(by_status.get(s, 0) for s in OPEN_WORKFLOW_STATUSES),
        "approved": by_status.get("aprobado", 0),
        "approved_today": approved_today,
        "rejected": by_status.get("rechazado", 0),
        "cancelled": by_status.get("cancelado", 0),
        "escalated": by_status.get("escalado", 0) + by_status.get("escalamiento_critico", 0),
        "avg_processing_hours": avg_hours,
        "by_status": by_status,
        "by_type": by_type,
    }

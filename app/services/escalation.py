"""
Escalation Service — time-driven reminders and escalations.

Every sweep walks the open workflows one at a time and compares
``hours_elapsed = floor((now - created_at) / 1h)`` with the workflow type's
rule:

    reminder_hours[i] <= elapsed   → reminder to the current approver (once per threshold)
    escalation_hours <= elapsed    → reassign to a supervisor, status escalado (once)
    final_escalation_hours <= elapsed → notify executives, status escalamiento_critico (once)

The EscalationRecord ledger is the idempotency mechanism. Records are
inserted under a SAVEPOINT and the table's unique constraint turns a
concurrent duplicate into a skip rather than a second notification.

Errors are isolated per workflow: a failing workflow is rolled back, logged
and counted, and the sweep moves on. Escalation never decides a workflow.

Usage:
    from app.services.escalation import EscalationService
    summary = EscalationService().process_escalations()
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.models import db
from app.models.authorization import (
    ESCALATED_WORKFLOW_STATUSES,
    OPEN_WORKFLOW_STATUSES,
    AuthorizationWorkflow,
)
from app.models.escalation import EscalationRecord
from app.services.notification import NotificationService
from app.services.permission_service import Capability, users_with_capability
from app.utils.helpers import as_utc

logger = logging.getLogger(__name__)

AT_RISK_WINDOW_HOURS = 24


@dataclass(frozen=True)
class EscalationRule:
    """Timing policy for one workflow type."""
    reminder_hours: tuple[int, ...]
    escalation_hours: int
    final_escalation_hours: int
    max_attempts: int

    @property
    def active_reminders(self) -> tuple[int, ...]:
        """Reminder thresholds honoured, capped at ``max_attempts``."""
        return tuple(sorted(self.reminder_hours))[: self.max_attempts]


ESCALATION_RULES: dict[str, EscalationRule] = {
    "pago": EscalationRule((24, 48, 72), 96, 168, 3),
    "contratacion": EscalationRule((48, 96), 120, 240, 2),
    "orden_cambio": EscalationRule((12, 24, 48), 72, 120, 3),
    "liberacion_credito": EscalationRule((6, 12, 24), 48, 96, 4),
    "capital_call": EscalationRule((24, 48), 72, 144, 2),
}


def load_rules(overrides: dict | None = None) -> dict[str, EscalationRule]:
    """Built-in rules with per-type ``overrides`` merged on top."""
    rules = dict(ESCALATION_RULES)
    for wtype, cfg in (overrides or {}).items():
        base = rules.get(wtype)
        values = {
            "reminder_hours": tuple(cfg.get("reminder_hours", base.reminder_hours if base else ())),
            "escalation_hours": cfg.get("escalation_hours", base.escalation_hours if base else None),
            "final_escalation_hours": cfg.get(
                "final_escalation_hours", base.final_escalation_hours if base else None),
            "max_attempts": cfg.get("max_attempts", base.max_attempts if base else 3),
        }
        if values["escalation_hours"] is None or values["final_escalation_hours"] is None:
            raise ValueError(f"Escalation rule for {wtype!r} needs escalation and final hours")
        rules[wtype] = replace(base, **values) if base else EscalationRule(**values)
    return rules


def hours_elapsed(created_at: datetime, now: datetime) -> int:
    return math.floor((as_utc(now) - as_utc(created_at)) / timedelta(hours=1))


def reminder_priority(hours: int) -> str:
    return "high" if hours > 48 else "medium"


def reminder_message(wf: AuthorizationWorkflow, hours: int) -> str:
    urgency = "URGENT" if hours > 72 else "IMPORTANT" if hours > 48 else "REMINDER"
    return (
        f"{urgency}: workflow \"{wf.title}\" has been awaiting approval for {hours} hours. "
        f"Type: {wf.workflow_type.replace('_', ' ').upper()}, amount: ${wf.amount}. "
        f"Please review and decide as soon as possible."
    )


class EscalationService:
    """Sweeps open workflows and applies the escalation ladder."""

    def __init__(self, rules: dict[str, EscalationRule] | None = None):
        if rules is None:
            rules = load_rules(current_app.config.get("ESCALATION_RULE_OVERRIDES"))
        self.rules = rules

    # ── Sweep ─────────────────────────────────────────────────────────────

    def process_escalations(self, now: datetime | None = None) -> dict:
        """Run one sweep. Never raises for a single workflow's failure.

        Returns:
            Summary counters: processed, reminders, escalations,
            final_escalations, skipped, errors.
        """
        now = as_utc(now) if now else datetime.now(timezone.utc)
        summary = {
            "processed": 0,
            "reminders": 0,
            "escalations": 0,
            "final_escalations": 0,
            "skipped": 0,
            "errors": 0,
        }

        workflow_ids = db.session.execute(
            select(AuthorizationWorkflow.id).where(
                AuthorizationWorkflow.status.in_(OPEN_WORKFLOW_STATUSES),
                AuthorizationWorkflow.approved_at.is_(None),
                AuthorizationWorkflow.rejected_at.is_(None),
            ).order_by(AuthorizationWorkflow.id)
        ).scalars().all()
        logger.info("Escalation sweep started: %d open workflow(s)", len(workflow_ids))

        for wf_id in workflow_ids:
            try:
                wf = db.session.get(AuthorizationWorkflow, wf_id)
                if wf is None or not wf.is_open:
                    continue
                result = self._process_workflow(wf, now)
                db.session.commit()
            except Exception:
                db.session.rollback()
                summary["errors"] += 1
                logger.exception("Escalation failed for workflow %s", wf_id,
                                 extra={"workflow_id": wf_id})
                continue
            summary["processed"] += 1
            for key, value in result.items():
                summary[key] += value

        logger.info(
            "Escalation sweep finished: %d reminders, %d escalations, %d final, %d errors",
            summary["reminders"], summary["escalations"],
            summary["final_escalations"], summary["errors"],
        )
        return summary

    def _process_workflow(self, wf: AuthorizationWorkflow, now: datetime) -> dict:
        result = {"reminders": 0, "escalations": 0, "final_escalations": 0, "skipped": 0}
        rule = self.rules.get(wf.workflow_type)
        if rule is None:
            logger.warning("No escalation rule for workflow type %s", wf.workflow_type,
                           extra={"workflow_id": wf.id})
            result["skipped"] += 1
            return result

        elapsed = hours_elapsed(wf.created_at, now)
        existing = {
            (etype, hours) for etype, hours in db.session.execute(
                select(EscalationRecord.escalation_type, EscalationRecord.trigger_hours)
                .where(EscalationRecord.workflow_id == wf.id)
            )
        }
        fired_types = {etype for etype, _ in existing}

        for threshold in rule.active_reminders:
            if elapsed >= threshold and ("reminder", threshold) not in existing:
                if self._send_reminder(wf, threshold, now):
                    result["reminders"] += 1
                else:
                    result["skipped"] += 1

        if elapsed >= rule.escalation_hours and "escalation" not in fired_types:
            if self._escalate_to_supervisor(wf, rule.escalation_hours, now):
                result["escalations"] += 1
            else:
                result["skipped"] += 1

        if elapsed >= rule.final_escalation_hours and "final_escalation" not in fired_types:
            if self._escalate_to_executives(wf, rule.final_escalation_hours, now):
                result["final_escalations"] += 1
            else:
                result["skipped"] += 1

        return result

    # ── Ladder steps ──────────────────────────────────────────────────────

    def _claim(self, wf: AuthorizationWorkflow, escalation_type: str, hours: int, now: datetime,
               **fields) -> EscalationRecord | None:
        """Insert the ledger row under a savepoint. None if another sweep got there first."""
        record = EscalationRecord(
            workflow_id=wf.id,
            escalation_type=escalation_type,
            trigger_hours=hours,
            is_processed=True,
            processed_at=now,
            **fields,
        )
        try:
            with db.session.begin_nested():
                db.session.add(record)
        except IntegrityError:
            logger.info("%s@%dh already recorded", escalation_type, hours,
                        extra={"workflow_id": wf.id, "escalation_type": escalation_type})
            return None
        return record

    def _send_reminder(self, wf: AuthorizationWorkflow, hours: int, now: datetime) -> bool:
        recipient = wf.current_approver_id or wf.requested_by_id
        message = reminder_message(wf, hours)
        if not self._claim(wf, "reminder", hours, now, target_user_id=recipient,
                           previous_approver_id=wf.current_approver_id,
                           message=f"Reminder: \"{wf.title}\" pending for {hours} hours"):
            return False
        NotificationService.create(
            workflow_id=wf.id,
            recipient_id=recipient,
            notification_type="reminder",
            message=message,
            priority=reminder_priority(hours),
            metadata={"hours": hours, "type": "reminder"},
        )
        logger.info("Reminder sent (%dh)", hours,
                    extra={"workflow_id": wf.id, "user_id": recipient,
                           "escalation_type": "reminder"})
        return True

    def find_supervisor(self, exclude_user_id: int | None):
        """A user able to receive escalations other than ``exclude_user_id``, else the first one."""
        candidates = users_with_capability(Capability.RECEIVE_ESCALATIONS)
        for user in candidates:
            if user.id != exclude_user_id:
                return user
        return candidates[0] if candidates else None

    def find_executives(self):
        return users_with_capability(Capability.RECEIVE_FINAL_ESCALATIONS)

    def _escalate_to_supervisor(self, wf: AuthorizationWorkflow, hours: int, now: datetime) -> bool:
        previous = wf.current_approver_id
        supervisor = self.find_supervisor(previous or wf.requested_by_id)
        if supervisor is None:
            logger.warning("No supervisor available; escalation deferred",
                           extra={"workflow_id": wf.id, "escalation_type": "escalation"})
            return False

        if not self._claim(wf, "escalation", hours, now, target_user_id=supervisor.id,
                           previous_approver_id=previous,
                           message=f"Escalated to supervisor after {hours} hours without response"):
            return False

        wf.current_approver_id = supervisor.id
        if wf.final_escalated_at is None:
            wf.status = "escalado"
        wf.escalated_at = now
        NotificationService.create(
            workflow_id=wf.id,
            recipient_id=supervisor.id,
            notification_type="escalation",
            message=(f"Escalated workflow: \"{wf.title}\" needs your urgent approval "
                     f"({hours}h without response)"),
            priority="high",
            metadata={"hours": hours, "type": "escalation", "original_approver": previous},
        )
        logger.warning("Escalation triggered", extra={
            "workflow_id": wf.id, "user_id": supervisor.id, "escalation_type": "escalation",
        })
        return True

    def _escalate_to_executives(self, wf: AuthorizationWorkflow, hours: int, now: datetime) -> bool:
        executives = self.find_executives()
        if not executives:
            logger.warning("No executives available; final escalation deferred",
                           extra={"workflow_id": wf.id, "escalation_type": "final_escalation"})
            return False

        if not self._claim(wf, "final_escalation", hours, now, target_user_id=executives[0].id,
                           previous_approver_id=wf.current_approver_id,
                           message=f"Final escalation after {hours} hours without response"):
            return False

        NotificationService.broadcast(
            workflow_id=wf.id,
            recipient_ids=[u.id for u in executives],
            notification_type="final_escalation",
            message=f"CRITICAL ESCALATION: workflow \"{wf.title}\" unapproved for {hours} hours",
            priority="critical",
            metadata={"hours": hours, "type": "final_escalation"},
        )
        wf.status = "escalamiento_critico"
        wf.final_escalated_at = now
        logger.warning("Final escalation triggered", extra={
            "workflow_id": wf.id, "escalation_type": "final_escalation",
        })
        return True

    # ── Reporting ─────────────────────────────────────────────────────────

    def escalation_stats(self) -> dict:
        rows = db.session.execute(
            select(EscalationRecord.escalation_type, func.count(EscalationRecord.id))
            .group_by(EscalationRecord.escalation_type)
            .order_by(EscalationRecord.escalation_type)
        ).all()
        by_type = [{"type": etype, "count": count} for etype, count in rows]
        escalated = db.session.execute(
            select(func.count(AuthorizationWorkflow.id)).where(
                AuthorizationWorkflow.status.in_(ESCALATED_WORKFLOW_STATUSES)
            )
        ).scalar_one()
        return {
            "total": sum(r["count"] for r in by_type),
            "by_type": by_type,
            "workflows_escalated": escalated,
        }

    def workflows_at_risk(self, now: datetime | None = None,
                          window_hours: int = AT_RISK_WINDOW_HOURS) -> list[dict]:
        """Open workflows whose next escalation or final escalation is due within ``window_hours``."""
        now = as_utc(now) if now else datetime.now(timezone.utc)
        workflows = db.session.execute(
            select(AuthorizationWorkflow)
            .where(AuthorizationWorkflow.status.in_(OPEN_WORKFLOW_STATUSES))
            .order_by(AuthorizationWorkflow.created_at)
        ).scalars().all()

        at_risk = []
        for wf in workflows:
            rule = self.rules.get(wf.workflow_type)
            if rule is None:
                continue
            elapsed = hours_elapsed(wf.created_at, now)
            fired = set(db.session.execute(
                select(EscalationRecord.escalation_type)
                .where(EscalationRecord.workflow_id == wf.id)
            ).scalars())
            if "escalation" not in fired:
                next_type, due = "escalation", rule.escalation_hours
            elif "final_escalation" not in fired:
                next_type, due = "final_escalation", rule.final_escalation_hours
            else:
                continue
            remaining = due - elapsed
            if remaining <= window_hours:
                at_risk.append({
                    "workflow": wf.to_dict(),
                    "hours_elapsed": elapsed,
                    "next_escalation": next_type,
                    "hours_remaining": max(remaining, 0),
                })
        return at_risk

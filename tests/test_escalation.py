"""
Tests — Escalation service.

Covers:
    1. Rule helpers (elapsed hours, reminder urgency, overrides)
    2. The escalation ladder (reminders, supervisor, executives)
    3. Idempotence and per-workflow error isolation
    4. Reporting (stats, at-risk) and the escalation API
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from app.models import db
from app.models.escalation import EscalationRecord
from app.models.notification import WorkflowNotification
from app.services import workflow_engine as engine
from app.services.escalation import (
    ESCALATION_RULES,
    EscalationRule,
    EscalationService,
    hours_elapsed,
    load_rules,
    reminder_message,
    reminder_priority,
)
from app.utils.helpers import as_utc


def _records(workflow_id, escalation_type=None):
    stmt = select(EscalationRecord).where(EscalationRecord.workflow_id == workflow_id)
    if escalation_type:
        stmt = stmt.where(EscalationRecord.escalation_type == escalation_type)
    return db.session.execute(stmt.order_by(EscalationRecord.trigger_hours)).scalars().all()


@pytest.fixture()
def credit_workflow(directory, make_rule):
    """liberacion_credito pending on the director (reminders 6/12/24h, escalate 48h, final 96h)."""
    make_rule("liberacion_credito", "director", 0, None)
    db.session.commit()
    wf, _ = engine.create_multi_level_workflow(
        {"workflow_type": "liberacion_credito", "title": "Liberación crédito puente", "amount": 50000},
        directory["operativo"].id,
    )
    return wf


def _at(wf, hours):
    return as_utc(engine.get_workflow(wf.id).created_at) + timedelta(hours=hours, minutes=1)


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: Rule helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestRuleHelpers:

    def test_hours_elapsed_floors(self, credit_workflow):
        created = as_utc(credit_workflow.created_at)
        assert hours_elapsed(created, created + timedelta(hours=6, minutes=59)) == 6
        assert hours_elapsed(created, created) == 0

    def test_reminder_urgency(self, credit_workflow):
        assert reminder_priority(48) == "medium"
        assert reminder_priority(49) == "high"
        assert reminder_message(credit_workflow, 24).startswith("REMINDER")
        assert reminder_message(credit_workflow, 60).startswith("IMPORTANT")
        assert reminder_message(credit_workflow, 80).startswith("URGENT")
        assert "LIBERACION CREDITO" in reminder_message(credit_workflow, 6)

    def test_max_attempts_caps_reminders(self):
        rule = EscalationRule((24, 12, 48), 72, 120, 2)
        assert rule.active_reminders == (12, 24)

    def test_overrides(self):
        rules = load_rules({"pago": {"reminder_hours": [1]},
                            "compra": {"escalation_hours": 10, "final_escalation_hours": 20}})
        assert rules["pago"].reminder_hours == (1,)
        assert rules["pago"].escalation_hours == ESCALATION_RULES["pago"].escalation_hours
        assert rules["compra"].escalation_hours == 10
        with pytest.raises(ValueError):
            load_rules({"presupuesto": {"reminder_hours": [1]}})


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: Ladder
# ═══════════════════════════════════════════════════════════════════════════

class TestEscalationLadder:

    def test_single_reminder_at_seven_hours(self, credit_workflow, directory):
        summary = EscalationService().process_escalations(now=_at(credit_workflow, 7))
        assert summary["reminders"] == 1
        assert summary["escalations"] == 0
        assert [r.trigger_hours for r in _records(credit_workflow.id)] == [6]

        notes = db.session.execute(
            select(WorkflowNotification).where(WorkflowNotification.notification_type == "reminder")
        ).scalars().all()
        assert [n.recipient_id for n in notes] == [directory["director"].id]

    def test_escalation_at_fifty_hours(self, credit_workflow, directory):
        service = EscalationService()
        service.process_escalations(now=_at(credit_workflow, 7))
        summary = service.process_escalations(now=_at(credit_workflow, 50))

        assert summary["reminders"] == 2
        assert summary["escalations"] == 1
        assert [r.trigger_hours for r in _records(credit_workflow.id, "reminder")] == [6, 12, 24]
        escalations = _records(credit_workflow.id, "escalation")
        assert len(escalations) == 1
        assert escalations[0].previous_approver_id == directory["director"].id

        wf = engine.get_workflow(credit_workflow.id)
        assert wf.status == "escalado"
        assert wf.current_approver_id == directory["supervisor"].id
        assert wf.escalated_at is not None

    def test_final_escalation_notifies_executives(self, credit_workflow, directory, make_user):
        second_exec = make_user("ejecutivo", email="cfo@example.com")
        db.session.commit()

        summary = EscalationService().process_escalations(now=_at(credit_workflow, 100))
        assert summary["final_escalations"] == 1

        wf = engine.get_workflow(credit_workflow.id)
        assert wf.status == "escalamiento_critico"
        assert wf.final_escalated_at is not None
        notes = db.session.execute(
            select(WorkflowNotification)
            .where(WorkflowNotification.notification_type == "final_escalation")
        ).scalars().all()
        assert {n.recipient_id for n in notes} >= {directory["ejecutivo"].id, second_exec.id}
        assert all(n.priority == "critical" for n in notes)

    def test_escalated_workflow_still_decidable(self, credit_workflow, directory):
        EscalationService().process_escalations(now=_at(credit_workflow, 50))
        step = engine.get_steps(credit_workflow.id)[0]
        engine.process_step_decision(step.id, "approved", None, directory["supervisor"].id)
        assert engine.get_workflow(credit_workflow.id).status == "aprobado"

    def test_closed_workflows_ignored(self, credit_workflow, directory):
        engine.cancel_workflow(credit_workflow.id, directory["operativo"].id)
        summary = EscalationService().process_escalations(now=_at(credit_workflow, 200))
        assert summary["processed"] == 0
        assert _records(credit_workflow.id) == []

    def test_no_supervisor_skips(self, make_user, make_rule):
        requester = make_user("operativo")
        make_user("director")
        make_rule("liberacion_credito", "director", 0, None)
        db.session.commit()
        wf, _ = engine.create_multi_level_workflow(
            {"workflow_type": "liberacion_credito", "title": "Sin supervisor", "amount": 1},
            requester.id,
        )

        summary = EscalationService().process_escalations(now=_at(wf, 50))
        assert summary["escalations"] == 0
        assert summary["skipped"] >= 1
        assert engine.get_workflow(wf.id).status == "pendiente"
        assert _records(wf.id, "escalation") == []

    def test_late_supervisor_keeps_critical_status(self, make_user, make_rule):
        requester = make_user("operativo")
        make_user("director")
        make_user("ejecutivo")
        make_rule("liberacion_credito", "director", 0, None)
        db.session.commit()
        wf, _ = engine.create_multi_level_workflow(
            {"workflow_type": "liberacion_credito", "title": "Supervisor tardío", "amount": 1},
            requester.id,
        )

        summary = EscalationService().process_escalations(now=_at(wf, 100))
        assert summary["final_escalations"] == 1
        assert summary["escalations"] == 0
        assert engine.get_workflow(wf.id).status == "escalamiento_critico"

        supervisor = make_user("supervisor", email="late@example.com")
        db.session.commit()
        summary = EscalationService().process_escalations(now=_at(wf, 101))
        assert summary["escalations"] == 1

        wf = engine.get_workflow(wf.id)
        assert wf.status == "escalamiento_critico"
        assert wf.current_approver_id == supervisor.id


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Idempotence and isolation
# ═══════════════════════════════════════════════════════════════════════════

class TestSweepGuarantees:

    def test_records_stamped_with_sweep_time(self, credit_workflow):
        now = _at(credit_workflow, 7)
        EscalationService().process_escalations(now=now)
        [record] = _records(credit_workflow.id)
        assert as_utc(record.processed_at) == now

    def test_repeated_sweep_is_idempotent(self, credit_workflow):
        service = EscalationService()
        now = _at(credit_workflow, 50)
        service.process_escalations(now=now)
        before = len(_records(credit_workflow.id))

        summary = service.process_escalations(now=now)
        assert summary["reminders"] == summary["escalations"] == 0
        assert len(_records(credit_workflow.id)) == before

    def test_duplicate_claim_is_skipped(self, credit_workflow):
        service = EscalationService()
        wf = engine.get_workflow(credit_workflow.id)
        now = _at(wf, 7)
        assert service._claim(wf, "reminder", 6, now) is not None
        db.session.commit()
        assert service._claim(wf, "reminder", 6, now) is None
        assert len(_records(wf.id, "reminder")) == 1

    def test_failure_isolated_per_workflow(self, credit_workflow, directory):
        other, _ = engine.create_multi_level_workflow(
            {"workflow_type": "liberacion_credito", "title": "Segunda", "amount": 10},
            directory["operativo"].id,
        )
        bad_id = credit_workflow.id
        original = EscalationService._process_workflow

        def flaky(self, wf, now):
            if wf.id == bad_id:
                raise RuntimeError("boom")
            return original(self, wf, now)

        with patch.object(EscalationService, "_process_workflow", flaky):
            summary = EscalationService().process_escalations(now=_at(other, 7))

        assert summary["errors"] == 1
        assert summary["processed"] == 1
        assert _records(bad_id) == []
        assert len(_records(other.id, "reminder")) == 1

    def test_unknown_type_skipped(self, directory, make_rule):
        make_rule("presupuesto", "gerente", 0, None)
        db.session.commit()
        wf, _ = engine.create_multi_level_workflow(
            {"workflow_type": "presupuesto", "title": "Presupuesto 2025", "amount": 1},
            directory["operativo"].id,
        )
        summary = EscalationService().process_escalations(now=_at(wf, 500))
        assert summary["skipped"] == 1
        assert _records(wf.id) == []


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 4: Reporting and API
# ═══════════════════════════════════════════════════════════════════════════

class TestReporting:

    def test_stats(self, credit_workflow):
        EscalationService().process_escalations(now=_at(credit_workflow, 50))
        stats = EscalationService().escalation_stats()
        assert stats["total"] == 4
        assert {"type": "reminder", "count": 3} in stats["by_type"]
        assert stats["workflows_escalated"] == 1

    def test_at_risk_window(self, credit_workflow):
        service = EscalationService()
        risky = service.workflows_at_risk(now=_at(credit_workflow, 30), window_hours=24)
        assert len(risky) == 1
        assert risky[0]["next_escalation"] == "escalation"
        assert risky[0]["hours_remaining"] == 18
        assert service.workflows_at_risk(now=_at(credit_workflow, 10), window_hours=24) == []

    def test_trigger_requires_admin(self, client, credit_workflow, directory, headers):
        res = client.post("/api/v1/escalations/trigger", headers=headers(directory["gerente"]))
        assert res.status_code == 403

        res = client.post("/api/v1/escalations/trigger", headers=headers(directory["admin"]))
        assert res.status_code == 200
        assert res.get_json()["summary"]["errors"] == 0

    def test_stats_api(self, client, credit_workflow):
        res = client.get("/api/v1/escalations/stats")
        assert res.status_code == 200
        assert res.get_json()["total"] == 0

"""
Tests — Authority delegation.

Covers:
    1. resolve_actor (window, workflow type, amount ceiling)
    2. Actionable workflows through a delegation
    3. Delegation creation rules (validation, overlap) and revocation
    4. Delegation API
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.models import db
from app.models.delegation import AuthorityDelegation
from app.services import delegation_service as delegations
from app.services import workflow_engine as engine


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _delegation_body(delegate_id, **overrides):
    body = {
        "delegate_id": delegate_id,
        "workflow_types": ["pago"],
        "valid_from": "2024-01-01T00:00:00Z",
        "valid_until": "2024-01-10T23:59:59Z",
        "max_amount": 20000,
        "reason": "Vacaciones",
    }
    body.update(overrides)
    return body


@pytest.fixture()
def a_to_b(directory):
    """Gerente (A) delegates pago up to 20 000 to director (B) for 1-10 Jan 2024."""
    a, b = directory["gerente"], directory["director"]
    d = delegations.create_delegation(_delegation_body(b.id), a.id)
    db.session.commit()
    return a, b, d


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: resolve_actor
# ═══════════════════════════════════════════════════════════════════════════

class TestResolveActor:

    def test_inside_window(self, a_to_b):
        a, b, _ = a_to_b
        assert delegations.resolve_actor(a.id, "pago", 15000, _utc(2024, 1, 5)) == b.id

    def test_window_bounds_inclusive(self, a_to_b):
        a, b, _ = a_to_b
        assert delegations.resolve_actor(a.id, "pago", 1, _utc(2024, 1, 1)) == b.id
        assert delegations.resolve_actor(a.id, "pago", 1, _utc(2024, 1, 10, 23, 59, 59)) == b.id

    def test_outside_window(self, a_to_b):
        a, _, _ = a_to_b
        assert delegations.resolve_actor(a.id, "pago", 15000, _utc(2024, 1, 11)) == a.id
        assert delegations.resolve_actor(a.id, "pago", 15000, _utc(2023, 12, 31)) == a.id

    def test_amount_above_ceiling(self, a_to_b):
        a, _, _ = a_to_b
        assert delegations.resolve_actor(a.id, "pago", 20000, _utc(2024, 1, 5)) != a.id
        assert delegations.resolve_actor(a.id, "pago", 20000.01, _utc(2024, 1, 5)) == a.id

    def test_type_not_covered(self, a_to_b):
        a, _, _ = a_to_b
        assert delegations.resolve_actor(a.id, "contratacion", 100, _utc(2024, 1, 5)) == a.id

    def test_revoked_delegation_ignored(self, a_to_b):
        a, _, d = a_to_b
        delegations.revoke_delegation(d.id)
        assert delegations.resolve_actor(a.id, "pago", 100, _utc(2024, 1, 5)) == a.id

    def test_none_nominal(self):
        assert delegations.resolve_actor(None, "pago", 100) is None


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: Acting through a delegation
# ═══════════════════════════════════════════════════════════════════════════

class TestDelegatedApproval:

    @pytest.fixture()
    def pending_on_a(self, a_to_b, directory, make_rule):
        make_rule("pago", "gerente", 0, 100000)
        db.session.commit()
        wf, steps = engine.create_multi_level_workflow(
            {"workflow_type": "pago", "title": "Anticipo obra", "amount": 15000},
            directory["operativo"].id,
        )
        return wf, steps

    def test_actionable_only_inside_window(self, a_to_b, pending_on_a):
        a, b, _ = a_to_b
        wf, _ = pending_on_a
        assert wf.current_approver_id == a.id

        inside = engine.get_actionable_workflows(b.id, at=_utc(2024, 1, 5))
        assert [w.id for w in inside] == [wf.id]
        assert engine.get_actionable_workflows(b.id, at=_utc(2024, 1, 11)) == []

    def test_delegate_may_decide_inside_window(self, a_to_b, pending_on_a):
        a, b, _ = a_to_b
        wf, steps = pending_on_a
        step = engine.process_step_decision(steps[0].id, "approved", "por delegación", b.id,
                                            at=_utc(2024, 1, 5))
        assert step.decided_by_id == b.id
        assert engine.get_workflow(wf.id).status == "aprobado"

    def test_delegate_denied_outside_window(self, a_to_b, pending_on_a):
        _, b, _ = a_to_b
        _, steps = pending_on_a
        with pytest.raises(PermissionDeniedError):
            engine.process_step_decision(steps[0].id, "approved", None, b.id,
                                         at=_utc(2024, 1, 11))


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2b: Delegate stored as current approver
# ═══════════════════════════════════════════════════════════════════════════

class TestDelegateResolvedAtDecisionTime:
    """The delegate is written to current_approver_id when the window is open at assignment."""

    @pytest.fixture()
    def live_delegation(self, directory, make_rule):
        a, b = directory["gerente"], directory["director"]
        now = datetime.now(timezone.utc)
        d = delegations.create_delegation(_delegation_body(
            b.id,
            valid_from=(now - timedelta(days=1)).isoformat(),
            valid_until=(now + timedelta(days=1)).isoformat(),
        ), a.id)
        make_rule("pago", "gerente", 0, 100000)
        db.session.commit()
        wf, steps = engine.create_multi_level_workflow(
            {"workflow_type": "pago", "title": "Anticipo cimentación", "amount": 15000},
            directory["operativo"].id,
        )
        assert wf.current_approver_id == b.id
        return a, b, d, wf, steps, now

    def test_authority_ends_with_window(self, live_delegation):
        a, b, _, wf, steps, now = live_delegation
        later = now + timedelta(days=5)

        assert engine.get_actionable_workflows(b.id, at=later) == []
        assert [w.id for w in engine.get_actionable_workflows(a.id, at=later)] == [wf.id]
        with pytest.raises(PermissionDeniedError):
            engine.process_step_decision(steps[0].id, "approved", None, b.id, at=later)

    def test_authority_ends_with_revocation(self, live_delegation):
        a, b, d, wf, steps, _ = live_delegation
        delegations.revoke_delegation(d.id)
        db.session.commit()

        assert engine.get_actionable_workflows(b.id) == []
        with pytest.raises(PermissionDeniedError):
            engine.process_step_decision(steps[0].id, "approved", None, b.id)

        step = engine.process_step_decision(steps[0].id, "approved", None, a.id)
        assert step.decided_by_id == a.id

    def test_ambiguous_next_actor_leaves_no_partial_decision(self, directory, pago_matrix):
        supervisor, gerente = directory["supervisor"], directory["gerente"]
        wf, steps = engine.create_multi_level_workflow(
            {"workflow_type": "pago", "title": "Pago ambiguo", "amount": 1000},
            directory["operativo"].id,
        )
        # Overlapping delegations can only predate the overlap check.
        now = datetime.now(timezone.utc)
        for delegate in (directory["director"], directory["ejecutivo"]):
            db.session.add(AuthorityDelegation(
                delegator_id=gerente.id, delegate_id=delegate.id, workflow_types=["pago"],
                valid_from=now - timedelta(days=1), valid_until=now + timedelta(days=1),
            ))
        db.session.commit()

        with pytest.raises(ConflictError):
            engine.process_step_decision(steps[0].id, "approved", None, supervisor.id)
        db.session.commit()
        db.session.expire_all()

        assert engine.get_step(steps[0].id).status == "pendiente"
        assert engine.get_workflow(wf.id).status == "pendiente"
        assert engine.get_history(wf.id) == []


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Creation rules and revocation
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateDelegation:

    def test_validation(self, directory):
        a = directory["gerente"]
        with pytest.raises(ValidationError) as exc:
            delegations.create_delegation(_delegation_body(
                a.id, workflow_types=["viaje"],
                valid_from="2024-02-01", valid_until="2024-01-01", max_amount=-1,
            ), a.id)
        assert {"delegate_id", "workflow_types", "valid_until", "max_amount"} <= set(exc.value.details)

    def test_unknown_delegate(self, directory):
        with pytest.raises(NotFoundError):
            delegations.create_delegation(_delegation_body(999), directory["gerente"].id)

    def test_overlap_rejected(self, a_to_b, directory):
        a, _, _ = a_to_b
        with pytest.raises(ConflictError):
            delegations.create_delegation(
                _delegation_body(directory["ejecutivo"].id,
                                 valid_from="2024-01-08", valid_until="2024-01-20"),
                a.id,
            )

    def test_disjoint_types_allowed(self, a_to_b, directory):
        a, _, _ = a_to_b
        d = delegations.create_delegation(
            _delegation_body(directory["ejecutivo"].id, workflow_types=["contratacion"]), a.id,
        )
        assert d.workflow_types == ["contratacion"]

    def test_revoke_twice(self, a_to_b):
        _, _, d = a_to_b
        revoked = delegations.revoke_delegation(d.id)
        assert revoked.is_active is False
        assert revoked.revoked_at is not None
        with pytest.raises(ConflictError):
            delegations.revoke_delegation(d.id)


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 4: API
# ═══════════════════════════════════════════════════════════════════════════

class TestDelegationApi:

    def test_create_and_list(self, client, directory, headers):
        a, b = directory["gerente"], directory["director"]
        res = client.post("/api/v1/authority-delegations",
                          json=_delegation_body(b.id), headers=headers(a))
        assert res.status_code == 201
        did = res.get_json()["id"]

        given = client.get("/api/v1/authority-delegations", headers=headers(a)).get_json()
        received = client.get("/api/v1/authority-delegations", headers=headers(b)).get_json()
        assert [d["id"] for d in given["given"]] == [did]
        assert [d["id"] for d in received["received"]] == [did]

        res = client.get(f"/api/v1/authority-delegations/{did}")
        assert res.status_code == 200
        assert res.get_json()["max_amount"] == 20000.0

    def test_overlap_is_409(self, client, a_to_b, directory, headers):
        a, _, _ = a_to_b
        res = client.post("/api/v1/authority-delegations",
                          json=_delegation_body(directory["ejecutivo"].id), headers=headers(a))
        assert res.status_code == 409

    def test_on_behalf_requires_admin(self, client, directory, headers):
        body = _delegation_body(directory["director"].id, delegator_id=directory["gerente"].id)
        res = client.post("/api/v1/authority-delegations", json=body,
                          headers=headers(directory["supervisor"]))
        assert res.status_code == 403

        res = client.post("/api/v1/authority-delegations", json=body,
                          headers=headers(directory["admin"]))
        assert res.status_code == 201
        assert res.get_json()["delegator_id"] == directory["gerente"].id

    def test_revoke_permissions(self, client, a_to_b, directory, headers):
        _, b, d = a_to_b
        did = d.id
        res = client.delete(f"/api/v1/authority-delegations/{did}", headers=headers(b))
        assert res.status_code == 403

        res = client.delete(f"/api/v1/authority-delegations/{did}",
                            headers=headers(directory["gerente"]))
        assert res.status_code == 200
        assert res.get_json()["is_active"] is False

    def test_missing_user_header(self, client):
        assert client.get("/api/v1/authority-delegations").status_code == 401

    def test_unknown_delegation(self, client):
        assert client.get("/api/v1/authority-delegations/404").status_code == 404

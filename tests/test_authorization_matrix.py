"""
Tests — Authorization matrix.

Covers:
    1. required_approvals lookup (range bounds, ordering, inactive rules)
    2. Rule CRUD validation
    3. Default matrix seeding
    4. Matrix API (listing, admin-only writes)
"""

from decimal import Decimal

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.auth import ApprovalLevel, level_ordinal
from app.services import authorization_matrix as matrix


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: required_approvals
# ═══════════════════════════════════════════════════════════════════════════

class TestRequiredApprovals:

    def test_single_matching_rule(self, make_rule):
        make_rule("pago", "supervisor", 0, 50000)
        make_rule("pago", "gerente", 50001, 200000)

        rules = matrix.required_approvals("pago", 10000)
        assert [r.required_level for r in rules] == ["supervisor"]

    def test_overlapping_rules_sorted_by_level(self, make_rule):
        make_rule("pago", "director", 0, None)
        make_rule("pago", "supervisor", 0, 50000)
        make_rule("pago", "gerente", 0, 200000)

        rules = matrix.required_approvals("pago", Decimal("10000"))
        assert [r.required_level for r in rules] == ["supervisor", "gerente", "director"]

    def test_bounds_are_inclusive(self, make_rule):
        make_rule("compra", "gerente", 1000, 5000)
        assert len(matrix.required_approvals("compra", 1000)) == 1
        assert len(matrix.required_approvals("compra", 5000)) == 1
        assert matrix.required_approvals("compra", "5000.01") == []
        assert matrix.required_approvals("compra", 999) == []

    def test_null_bounds_are_open(self, make_rule):
        make_rule("presupuesto", "ejecutivo", None, None)
        assert len(matrix.required_approvals("presupuesto", 0)) == 1
        assert len(matrix.required_approvals("presupuesto", 10**9)) == 1

    def test_inactive_rules_ignored(self, make_rule):
        make_rule("pago", "gerente", 0, None, is_active=False)
        assert matrix.required_approvals("pago", 100) == []

    def test_other_type_ignored(self, make_rule):
        make_rule("contratacion", "gerente", 0, None)
        assert matrix.required_approvals("pago", 100) == []


class TestApprovalLevels:

    def test_level_order(self):
        levels = ["ejecutivo", "operativo", "director", "supervisor", "gerente"]
        assert sorted(levels, key=level_ordinal) == [
            "operativo", "supervisor", "gerente", "director", "ejecutivo",
        ]

    def test_parse(self):
        assert ApprovalLevel.parse(" Gerente ") is ApprovalLevel.GERENTE
        assert ApprovalLevel.DIRECTOR.ordinal == 3
        with pytest.raises(ValueError):
            ApprovalLevel.parse("admin")


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: Rule CRUD
# ═══════════════════════════════════════════════════════════════════════════

class TestRuleCrud:

    def test_create_rule(self):
        rule = matrix.create_rule({
            "workflow_type": "pago", "required_level": "gerente",
            "min_amount": "25001", "max_amount": 100000, "escalation_hours": 24,
        })
        assert rule.id is not None
        assert Decimal(str(rule.min_amount)) == Decimal("25001")

    def test_create_rule_invalid_fields(self):
        with pytest.raises(ValidationError) as exc:
            matrix.create_rule({"workflow_type": "viaje", "required_level": "jefe",
                                "escalation_hours": 0})
        assert set(exc.value.details) == {"workflow_type", "required_level", "escalation_hours"}

    def test_create_rule_inverted_range(self):
        with pytest.raises(ValidationError):
            matrix.create_rule({"workflow_type": "pago", "required_level": "gerente",
                                "min_amount": 500, "max_amount": 100})

    def test_update_and_deactivate(self, make_rule):
        rule = make_rule("pago", "gerente", 0, 1000)
        matrix.update_rule(rule.id, {"max_amount": 2000, "escalation_hours": 48})
        assert float(rule.max_amount) == 2000
        assert rule.escalation_hours == 48

        matrix.deactivate_rule(rule.id)
        assert rule.is_active is False
        assert matrix.list_rules("pago", active_only=True) == []

    def test_get_unknown_rule(self):
        with pytest.raises(NotFoundError):
            matrix.get_rule(999)


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Seeding
# ═══════════════════════════════════════════════════════════════════════════

class TestSeedDefaultMatrix:

    def test_seed_is_idempotent(self):
        added = matrix.seed_default_matrix()
        assert added == len(matrix.DEFAULT_MATRIX)
        assert matrix.seed_default_matrix() == 0

    def test_seeded_pago_ranges(self):
        matrix.seed_default_matrix()
        assert [r.required_level for r in matrix.required_approvals("pago", 20000)] == ["supervisor"]
        assert [r.required_level for r in matrix.required_approvals("pago", 750000)] == ["ejecutivo"]


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 4: Matrix API
# ═══════════════════════════════════════════════════════════════════════════

class TestMatrixApi:

    def test_list(self, client, pago_matrix):
        res = client.get("/api/v1/authorization-matrix?workflow_type=pago")
        assert res.status_code == 200
        assert [r["required_level"] for r in res.get_json()] == ["supervisor", "gerente"]

    def test_create_requires_admin(self, client, directory, headers):
        body = {"workflow_type": "pago", "required_level": "gerente", "min_amount": 0}
        res = client.post("/api/v1/authorization-matrix", json=body,
                          headers=headers(directory["gerente"]))
        assert res.status_code == 403

        res = client.post("/api/v1/authorization-matrix", json=body,
                          headers=headers(directory["admin"]))
        assert res.status_code == 201
        assert res.get_json()["required_level"] == "gerente"

    def test_create_invalid_is_422(self, client, directory, headers):
        res = client.post("/api/v1/authorization-matrix",
                          json={"workflow_type": "pago", "required_level": "nobody"},
                          headers=headers(directory["admin"]))
        assert res.status_code == 422
        assert "required_level" in res.get_json()["details"]

    def test_delete_deactivates(self, client, directory, headers, pago_matrix):
        rid = pago_matrix[0].id
        res = client.delete(f"/api/v1/authorization-matrix/{rid}",
                            headers=headers(directory["admin"]))
        assert res.status_code == 200
        assert res.get_json()["is_active"] is False
        db.session.expire_all()
        assert len(matrix.list_rules("pago", active_only=True)) == 1

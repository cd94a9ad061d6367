"""
Tests — Workflow notifications.

Covers:
    1. NotificationService (create, broadcast, listing, read tracking)
    2. Notification blueprint (recipient scoping)
"""

import pytest

from app.core.exceptions import NotFoundError
from app.models import db
from app.services import workflow_engine as engine
from app.services.notification import NotificationService


@pytest.fixture()
def workflow(directory, pago_matrix):
    wf, _ = engine.create_multi_level_workflow(
        {"workflow_type": "pago", "title": "Pago notificaciones", "amount": 100},
        directory["operativo"].id,
    )
    return wf


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: Service
# ═══════════════════════════════════════════════════════════════════════════

class TestNotificationService:

    def test_workflow_creation_notifies_first_approver(self, workflow, directory):
        items, total = NotificationService.list_for_recipient(directory["supervisor"].id)
        assert total == 1
        assert items[0].notification_type == "approval_required"
        assert items[0].meta["workflow_type"] == "pago"
        assert items[0].to_dict()["metadata"]["step_order"] == 1

    def test_broadcast_dedupes(self, workflow, directory):
        eid = directory["ejecutivo"].id
        sent = NotificationService.broadcast(
            workflow_id=workflow.id, recipient_ids=[eid, eid, directory["admin"].id],
            notification_type="final_escalation", message="critical", priority="critical",
        )
        assert len(sent) == 2

    def test_mark_read_only_by_recipient(self, workflow, directory):
        items, _ = NotificationService.list_for_recipient(directory["supervisor"].id)
        nid = items[0].id
        with pytest.raises(NotFoundError):
            NotificationService.mark_read(nid, directory["gerente"].id)

        notif = NotificationService.mark_read(nid, directory["supervisor"].id)
        assert notif.is_read
        assert NotificationService.unread_count(directory["supervisor"].id) == 0

    def test_mark_all_read(self, workflow, directory):
        sid = directory["supervisor"].id
        NotificationService.create(workflow_id=workflow.id, recipient_id=sid,
                                   notification_type="reminder", message="ping", commit=True)
        assert NotificationService.unread_count(sid) == 2
        assert NotificationService.mark_all_read(sid) == 2
        assert NotificationService.list_for_recipient(sid, unread_only=True) == ([], 0)

    def test_list_for_workflow(self, workflow):
        assert [n.notification_type for n in NotificationService.list_for_workflow(workflow.id)] == [
            "approval_required",
        ]


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: API
# ═══════════════════════════════════════════════════════════════════════════

class TestNotificationApi:

    def test_requires_user(self, client):
        assert client.get("/api/v1/workflow-notifications").status_code == 401

    def test_list_and_read(self, client, headers, directory, workflow):
        res = client.get("/api/v1/workflow-notifications", headers=headers(directory["supervisor"]))
        body = res.get_json()
        assert body["total"] == 1
        nid = body["items"][0]["id"]

        res = client.put(f"/api/v1/workflow-notifications/{nid}/read",
                         headers=headers(directory["gerente"]))
        assert res.status_code == 404

        res = client.put(f"/api/v1/workflow-notifications/{nid}/read",
                         headers=headers(directory["supervisor"]))
        assert res.status_code == 200
        assert res.get_json()["is_read"] is True

        res = client.get("/api/v1/workflow-notifications/unread-count",
                         headers=headers(directory["supervisor"]))
        assert res.get_json() == {"unread_count": 0}

    def test_read_all(self, client, headers, directory, workflow):
        res = client.put("/api/v1/workflow-notifications/read-all",
                         headers=headers(directory["supervisor"]))
        assert res.get_json() == {"marked_read": 1}
        db.session.expire_all()
        assert NotificationService.unread_count(directory["supervisor"].id) == 0

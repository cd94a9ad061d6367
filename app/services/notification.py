"""
Notification Service — the workflow notification sink.

Consumed by the workflow engine and the escalation service. External
delivery (email/push) polls WorkflowNotification rows and is not part of
this service.
"""

from datetime import datetime, timezone

from sqlalchemy import func, select

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.notification import WorkflowNotification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, workflow_id, recipient_id, notification_type, message="",
               priority="medium", metadata=None, commit=False):
        """
        Create a single notification record.

        Joins the caller's transaction unless ``commit`` is True.

        Returns:
            The created WorkflowNotification instance.
        """
        notif = WorkflowNotification(
            workflow_id=workflow_id,
            recipient_id=recipient_id,
            notification_type=notification_type,
            message=message,
            priority=priority,
            meta=metadata or {},
        )
        db.session.add(notif)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return notif

    @staticmethod
    def broadcast(*, workflow_id, recipient_ids, notification_type, message="",
                  priority="medium", metadata=None):
        """Send the same notification to several recipients. Caller commits."""
        notifications = []
        for rid in dict.fromkeys(recipient_ids):
            notifications.append(NotificationService.create(
                workflow_id=workflow_id,
                recipient_id=rid,
                notification_type=notification_type,
                message=message,
                priority=priority,
                metadata=metadata,
            ))
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.

        Returns:
            (items, total)
        """
        stmt = select(WorkflowNotification).where(WorkflowNotification.recipient_id == recipient_id)
        if unread_only:
            stmt = stmt.where(WorkflowNotification.read_at.is_(None))
        total = db.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        items = db.session.execute(
            stmt.order_by(WorkflowNotification.created_at.desc(), WorkflowNotification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return list(items), total

    @staticmethod
    def unread_count(recipient_id):
        """Return count of unread notifications."""
        return db.session.execute(
            select(func.count(WorkflowNotification.id)).where(
                WorkflowNotification.recipient_id == recipient_id,
                WorkflowNotification.read_at.is_(None),
            )
        ).scalar_one()

    @staticmethod
    def list_for_workflow(workflow_id):
        return list(db.session.execute(
            select(WorkflowNotification)
            .where(WorkflowNotification.workflow_id == workflow_id)
            .order_by(WorkflowNotification.id)
        ).scalars().all())

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient_id):
        """Mark a notification as read. Only its recipient may do this.

        Raises:
            NotFoundError: unknown id, or the notification belongs to someone else.
        """
        notif = db.session.get(WorkflowNotification, notification_id)
        if not notif or notif.recipient_id != recipient_id:
            raise NotFoundError(resource="WorkflowNotification", resource_id=notification_id)
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient_id):
        """Mark all unread notifications of a recipient as read."""
        items, _ = NotificationService.list_for_recipient(recipient_id, unread_only=True, limit=10_000)
        now = datetime.now(timezone.utc)
        for notif in items:
            notif.read_at = now
        db.session.commit()
        return len(items)

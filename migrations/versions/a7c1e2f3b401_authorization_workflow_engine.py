"""Authorization workflow engine: users, matrix, workflows, steps, delegations,
escalation ledger, notifications and scheduled jobs

Revision ID: a7c1e2f3b401
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "a7c1e2f3b401"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(200), nullable=False),
        sa.Column("role", sa.String(30), nullable=False, server_default="operativo"),
        sa.Column("department", sa.String(100)),
        sa.Column("authorization_limit", sa.Numeric(15, 2)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "authorization_matrix_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workflow_type", sa.String(50), nullable=False, index=True),
        sa.Column("min_amount", sa.Numeric(15, 2)),
        sa.Column("max_amount", sa.Numeric(15, 2)),
        sa.Column("required_level", sa.String(30), nullable=False),
        sa.Column("escalation_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("requires_sequential", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "authorization_workflows",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), index=True),
        sa.Column("workflow_type", sa.String(50), nullable=False, index=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False, server_default="0"),
        sa.Column("requested_by_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("current_approver_id", sa.Integer(), sa.ForeignKey("users.id"), index=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="pendiente", index=True),
        sa.Column("priority", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("due_date", sa.DateTime(timezone=True)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        sa.Column("rejection_reason", sa.Text()),
        sa.Column("escalated_at", sa.DateTime(timezone=True)),
        sa.Column("final_escalated_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "workflow_steps",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workflow_id", sa.Integer(),
                  sa.ForeignKey("authorization_workflows.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("approver_level", sa.String(30), nullable=False),
        sa.Column("assigned_approver_id", sa.Integer(), sa.ForeignKey("users.id"), index=True),
        sa.Column("matrix_rule_id", sa.Integer(), sa.ForeignKey("authorization_matrix_rules.id")),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("status", sa.String(20), nullable=False, server_default="pendiente"),
        sa.Column("decided_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        sa.Column("comments", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("workflow_id", "step_order", name="uq_workflow_step_order"),
    )

    op.create_table(
        "authorization_steps",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workflow_id", sa.Integer(),
                  sa.ForeignKey("authorization_workflows.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("step_id", sa.Integer(), sa.ForeignKey("workflow_steps.id", ondelete="SET NULL")),
        sa.Column("approver_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("comments", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "authority_delegations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("delegator_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("delegate_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("workflow_types", sa.JSON(), nullable=False),
        sa.Column("max_amount", sa.Numeric(15, 2)),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("revoked_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "escalation_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workflow_id", sa.Integer(),
                  sa.ForeignKey("authorization_workflows.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("escalation_type", sa.String(30), nullable=False),
        sa.Column("trigger_hours", sa.Integer(), nullable=False),
        sa.Column("target_user_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("previous_approver_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("message", sa.Text(), server_default=""),
        sa.Column("is_processed", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("workflow_id", "escalation_type", "trigger_hours",
                            name="uq_escalation_workflow_type_hours"),
    )

    op.create_table(
        "workflow_notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workflow_id", sa.Integer(),
                  sa.ForeignKey("authorization_workflows.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("recipient_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("notification_type", sa.String(30), nullable=False),
        sa.Column("message", sa.Text(), server_default=""),
        sa.Column("priority", sa.String(20), server_default="medium"),
        sa.Column("metadata", sa.JSON()),
        sa.Column("read_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.String(500), server_default=""),
        sa.Column("schedule_type", sa.String(30), server_default="interval"),
        sa.Column("schedule_config", sa.JSON()),
        sa.Column("status", sa.String(20), server_default="active"),
        sa.Column("is_enabled", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("last_run_at", sa.DateTime(timezone=True)),
        sa.Column("last_run_status", sa.String(20)),
        sa.Column("last_run_duration_ms", sa.Integer()),
        sa.Column("last_run_result", sa.JSON()),
        sa.Column("run_count", sa.Integer(), server_default="0"),
        sa.Column("error_count", sa.Integer(), server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table("scheduled_jobs")
    op.drop_table("workflow_notifications")
    op.drop_table("escalation_records")
    op.drop_table("authority_delegations")
    op.drop_table("authorization_steps")
    op.drop_table("workflow_steps")
    op.drop_table("authorization_workflows")
    op.drop_table("authorization_matrix_rules")
    op.drop_table("users")

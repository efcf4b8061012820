"""initial portal schema

Revision ID: a3f1c9e2b7d4
Revises:
Create Date: 2026-10-18 09:12:41.208113

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a3f1c9e2b7d4'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(), nullable=True)
    return sa.Column(name, sa.DateTime(), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    """Create tenant, request board, notification, workflow and audit tables."""
    op.create_table(
        "companies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("plan_tier", sa.String(16), nullable=False, server_default="standard"),
        sa.Column("max_active_limit", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("woo_customer_id", sa.String(64), nullable=True, unique=True),
        sa.Column("industry", sa.String(32), nullable=True),
        sa.Column("business_type", sa.String(8), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("state", sa.String(100), nullable=True),
        sa.Column("country", sa.String(100), nullable=True, server_default="US"),
        sa.Column("website_url", sa.String(500), nullable=True),
        sa.Column("google_business_url", sa.String(500), nullable=True),
        sa.Column("facebook_url", sa.String(500), nullable=True),
        sa.Column("instagram_handle", sa.String(100), nullable=True),
        sa.Column("linkedin_url", sa.String(500), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("employee_count", sa.Integer(), nullable=True),
        sa.Column("annual_revenue_range", sa.String(16), nullable=True),
        sa.Column("logo_url", sa.String(1000), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _ts("onboarding_completed_at", nullable=True),
        sa.Column("primary_contact_id", sa.Integer(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_companies_status", "companies", ["status"])

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(16), nullable=False, server_default="client"),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True),
        sa.Column("avatar_url", sa.String(1000), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_users_company_id", "users", ["company_id"])
    op.create_index("idx_users_role", "users", ["role"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        _ts("created_at"),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("user_email", sa.String(320), nullable=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=True),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("change_summary", sa.String(512), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
    )
    op.create_index("idx_audit_logs_company_id", "audit_logs", ["company_id"])
    op.create_index("idx_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("idx_audit_logs_created_at", "audit_logs", ["created_at"])
    op.create_index("idx_audit_logs_action", "audit_logs", ["action"])

    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("role", sa.String(100), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_billing_contact", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notes", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_contacts_company_id", "contacts", ["company_id"])
    op.create_index("idx_contacts_email", "contacts", ["email"])

    op.create_table(
        "client_services",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("service_name", sa.String(255), nullable=False),
        sa.Column("service_type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("billing_cycle", sa.String(16), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("renewal_date", sa.Date(), nullable=True),
        sa.Column("woo_product_id", sa.String(100), nullable=True),
        sa.Column("woo_subscription_id", sa.String(100), nullable=True),
        sa.Column("woo_order_id", sa.String(100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_client_services_company_id", "client_services", ["company_id"])
    op.create_index("idx_client_services_status", "client_services", ["status"])
    op.create_index("idx_client_services_woo_subscription_id", "client_services", ["woo_subscription_id"])

    op.create_table(
        "requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="queue"),
        sa.Column("priority", sa.String(16), nullable=False, server_default="normal"),
        sa.Column("assets_link", sa.String(2000), nullable=True),
        sa.Column("video_brief", sa.String(2000), nullable=True),
        _ts("due_date", nullable=True),
        sa.Column("sla_hours", sa.Integer(), nullable=True),
        sa.Column("sla_status", sa.String(16), nullable=True, server_default="on_track"),
        _ts("completed_at", nullable=True),
        sa.Column("assigned_to", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_requests_company_id", "requests", ["company_id"])
    op.create_index("idx_requests_status", "requests", ["status"])
    op.create_index("idx_requests_company_status", "requests", ["company_id", "status"])
    op.create_index("idx_requests_assigned_to", "requests", ["assigned_to"])
    op.create_index("idx_requests_due_date", "requests", ["due_date"])

    op.create_table(
        "comments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("request_id", sa.Integer(), sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_internal", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
    )
    op.create_index("idx_comments_request_id", "comments", ["request_id"])

    op.create_table(
        "activities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("request_id", sa.Integer(), sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("activity_type", sa.String(32), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _ts("created_at"),
    )
    op.create_index("idx_activities_request_id", "activities", ["request_id"])
    op.create_index("idx_activities_created_at", "activities", ["created_at"])

    op.create_table(
        "request_assignments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("request_id", sa.Integer(), sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
        sa.Column("assigned_to", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("assigned_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="assigned"),
        sa.Column("notes", sa.Text(), nullable=True),
        _ts("assigned_at"),
        _ts("started_at", nullable=True),
        _ts("completed_at", nullable=True),
        sa.UniqueConstraint("request_id", "assigned_to", name="uq_request_assignments_request_user"),
    )
    op.create_index("idx_request_assignments_request_id", "request_assignments", ["request_id"])
    op.create_index("idx_request_assignments_assigned_to", "request_assignments", ["assigned_to"])

    op.create_table(
        "request_files",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("request_id", sa.Integer(), sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
        sa.Column("uploaded_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("file_name", sa.String(500), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("file_type", sa.String(16), nullable=False, server_default="other"),
        sa.Column("mime_type", sa.String(255), nullable=False),
        sa.Column("storage_key", sa.String(1000), nullable=False),
        sa.Column("is_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
    )
    op.create_index("idx_request_files_request_id", "request_files", ["request_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("link", sa.String(1000), nullable=True),
        sa.Column("related_request_id", sa.Integer(), sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=True),
        sa.Column("related_company_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("read_at", nullable=True),
        _ts("created_at"),
    )
    op.create_index("idx_notifications_user_id", "notifications", ["user_id"])
    op.create_index("idx_notifications_user_unread", "notifications", ["user_id", "is_read"])
    op.create_index("idx_notifications_created_at", "notifications", ["created_at"])

    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("email_on_comment", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_on_status_change", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_on_assignment", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_on_mention", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_on_due_date", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_digest_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_digest_frequency", sa.String(16), nullable=False, server_default="daily"),
        sa.Column("push_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "request_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("title_template", sa.String(500), nullable=False),
        sa.Column("description_template", sa.Text(), nullable=True),
        sa.Column("default_priority", sa.String(16), nullable=False, server_default="normal"),
        sa.Column("default_sla_hours", sa.Integer(), nullable=True),
        sa.Column("category", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_global", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_request_templates_company_id", "request_templates", ["company_id"])
    op.create_index("idx_request_templates_category", "request_templates", ["category"])

    op.create_table(
        "workflow_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_type", sa.String(64), nullable=False),
        sa.Column("trigger_conditions", sa.JSON(), nullable=False),
        sa.Column("action_type", sa.String(64), nullable=False),
        sa.Column("action_config", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("execution_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("last_executed_at", nullable=True),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_workflow_rules_trigger", "workflow_rules", ["trigger_type", "is_active"])
    op.create_index("idx_workflow_rules_company_id", "workflow_rules", ["company_id"])

    op.create_table(
        "workflow_executions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workflow_rule_id", sa.Integer(), sa.ForeignKey("workflow_rules.id", ondelete="CASCADE"), nullable=False),
        sa.Column("request_id", sa.Integer(), sa.ForeignKey("requests.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("execution_data", sa.JSON(), nullable=True),
        _ts("executed_at"),
    )
    op.create_index("idx_workflow_executions_rule_id", "workflow_executions", ["workflow_rule_id"])
    op.create_index("idx_workflow_executions_request_id", "workflow_executions", ["request_id"])
    op.create_index("idx_workflow_executions_executed_at", "workflow_executions", ["executed_at"])

    op.create_table(
        "invitations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True),
        sa.Column("token", sa.String(64), nullable=False, unique=True),
        sa.Column("invited_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        _ts("accepted_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_invitations_email", "invitations", ["email"])
    op.create_index("idx_invitations_status", "invitations", ["status"])


def downgrade() -> None:
    """Drop every portal table."""
    for table in (
        "invitations",
        "workflow_executions",
        "workflow_rules",
        "request_templates",
        "notification_preferences",
        "notifications",
        "request_files",
        "request_assignments",
        "activities",
        "comments",
        "requests",
        "client_services",
        "contacts",
        "audit_logs",
        "users",
        "companies",
    ):
        op.drop_table(table)

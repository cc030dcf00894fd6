"""initial schema

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _scope_columns() -> list[sa.Column]:
    return [
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenant.id"), nullable=False),
        sa.Column("organization_id", sa.Uuid(), sa.ForeignKey("organization.id"), nullable=False),
    ]


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "app_user",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False, unique=True),
        sa.Column("password_hash", sa.Text(), nullable=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "tenant",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False, unique=True),
        sa.Column("plan", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("owner_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        "organization",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenant.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("owner_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_organization_tenant_id", "organization", ["tenant_id"], unique=False)
    op.create_table(
        "organization_member",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.Uuid(), sa.ForeignKey("organization.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("app_user.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="member"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_organization_member_pair"),
    )
    op.create_table(
        "api_key",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenant.id", ondelete="CASCADE"), nullable=False),
        sa.Column("organization_id", sa.Uuid(), sa.ForeignKey("organization.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("key_hash", sa.String(length=64), nullable=False, unique=True),
        sa.Column("key_prefix", sa.String(length=16), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("rate_limit", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_api_key_tenant_id", "api_key", ["tenant_id"], unique=False)

    op.create_table(
        "product",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_scope_columns(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(14, 2), nullable=True),
        sa.Column("sku", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_product_scope", "product", ["tenant_id", "organization_id"], unique=False)
    op.create_table(
        "campaign",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_scope_columns(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("budget", sa.Numeric(14, 2), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_campaign_scope", "campaign", ["tenant_id", "organization_id"], unique=False)
    op.create_table(
        "campaign_product",
        sa.Column("campaign_id", sa.Uuid(), sa.ForeignKey("campaign.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("product_id", sa.Uuid(), sa.ForeignKey("product.id", ondelete="CASCADE"), primary_key=True),
    )

    op.create_table(
        "client",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_scope_columns(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("national_id", sa.String(length=64), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("country", sa.String(length=64), nullable=False),
        sa.Column("debt", sa.Numeric(14, 2), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="current"),
        sa.Column("loan_letter", sa.String(length=64), nullable=True),
        sa.Column("employer", sa.Text(), nullable=True),
        sa.Column("position", sa.Text(), nullable=True),
        sa.Column("credit_score", sa.Integer(), nullable=True),
        sa.Column("risk_category", sa.String(length=32), nullable=True),
        sa.Column("credit_limit", sa.Numeric(14, 2), nullable=True),
        sa.Column("available_credit", sa.Numeric(14, 2), nullable=True),
        sa.Column("recovery_probability", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_client_scope", "client", ["tenant_id", "organization_id"], unique=False)
    op.create_table(
        "client_payment",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("client_id", sa.Uuid(), sa.ForeignKey("client.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("method", sa.String(length=32), nullable=True),
        sa.Column("reference", sa.Text(), nullable=True),
    )

    op.create_table(
        "lead",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_scope_columns(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("position", sa.Text(), nullable=True),
        sa.Column("national_id", sa.String(length=64), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("country", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("qualification_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_qualified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("interest_level", sa.Integer(), nullable=True),
        sa.Column("contact_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_contact_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_follow_up_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_to_client", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("conversion_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("conversion_value", sa.Numeric(14, 2), nullable=True),
        sa.Column("client_id", sa.Uuid(), sa.ForeignKey("client.id", ondelete="SET NULL"), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("qualification_notes", sa.Text(), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("campaign_id", sa.Uuid(), sa.ForeignKey("campaign.id", ondelete="SET NULL"), nullable=True),
        sa.Column("assigned_agent_id", sa.String(length=128), nullable=True),
        sa.Column("assigned_agent_name", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_lead_scope_filter",
        "lead",
        ["tenant_id", "organization_id", "status", "created_at"],
        unique=False,
    )
    op.create_index("ix_lead_phone", "lead", ["phone"], unique=False)

    op.create_table(
        "lead_call_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_scope_columns(),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("lead.id", ondelete="CASCADE"), nullable=False),
        sa.Column("batch_id", sa.String(length=128), nullable=True),
        sa.Column("conversation_id", sa.String(length=128), nullable=True),
        sa.Column("agent_id", sa.String(length=128), nullable=True),
        sa.Column("call_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_lead_call_log_lead_id", "lead_call_log", ["lead_id"], unique=False)
    op.create_table(
        "conversation_analysis",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_scope_columns(),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("lead.id", ondelete="CASCADE"), nullable=False),
        sa.Column("conversation_id", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("model", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_conversation_analysis_lookup",
        "conversation_analysis",
        ["lead_id", "conversation_id", "kind", "created_at"],
        unique=False,
    )

    op.create_table(
        "document",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("path", sa.String(length=512), nullable=False, unique=True),
        sa.Column("parent", sa.String(length=512), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_document_parent", "document", ["parent"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_document_parent", table_name="document")
    op.drop_table("document")
    op.drop_index("ix_conversation_analysis_lookup", table_name="conversation_analysis")
    op.drop_table("conversation_analysis")
    op.drop_index("ix_lead_call_log_lead_id", table_name="lead_call_log")
    op.drop_table("lead_call_log")
    op.drop_index("ix_lead_phone", table_name="lead")
    op.drop_index("ix_lead_scope_filter", table_name="lead")
    op.drop_table("lead")
    op.drop_table("client_payment")
    op.drop_index("ix_client_scope", table_name="client")
    op.drop_table("client")
    op.drop_table("campaign_product")
    op.drop_index("ix_campaign_scope", table_name="campaign")
    op.drop_table("campaign")
    op.drop_index("ix_product_scope", table_name="product")
    op.drop_table("product")
    op.drop_index("ix_api_key_tenant_id", table_name="api_key")
    op.drop_table("api_key")
    op.drop_table("organization_member")
    op.drop_index("ix_organization_tenant_id", table_name="organization")
    op.drop_table("organization")
    op.drop_table("tenant")
    op.drop_table("app_user")

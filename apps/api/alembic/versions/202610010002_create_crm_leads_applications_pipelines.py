"""create crm leads, applications, pipelines and activities

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _tenant_fk() -> sa.Column:
    return sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("crm_tenant.id", ondelete="CASCADE"), nullable=False)


def _sub_account_fk() -> sa.Column:
    return sa.Column(
        "sub_account_id",
        sa.Uuid(),
        sa.ForeignKey("crm_sub_account.id", ondelete="SET NULL"),
        nullable=True,
    )


def upgrade() -> None:
    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        _tenant_fk(),
        _sub_account_fk(),
        sa.Column("assigned_agent_id", sa.Uuid(), nullable=True),
        sa.Column("first_name", sa.String(length=255), nullable=False),
        sa.Column("last_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("source", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=64), nullable=False, server_default="new"),
        sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("program_interest", sa.Text(), nullable=True),
        sa.Column("target_country", sa.String(length=128), nullable=True),
        sa.Column("budget", sa.Numeric(18, 2), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        sa.Column("engagement_history", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_lead_scope_filter",
        "crm_lead",
        ["tenant_id", "sub_account_id", "status", "created_at"],
        unique=False,
    )
    op.create_index("ix_crm_lead_email", "crm_lead", ["tenant_id", "email"], unique=False)
    op.create_index("ix_crm_lead_phone", "crm_lead", ["tenant_id", "phone"], unique=False)

    op.create_table(
        "crm_application",
        sa.Column("id", sa.Uuid(), nullable=False),
        _tenant_fk(),
        _sub_account_fk(),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("crm_lead.id", ondelete="CASCADE"), nullable=False),
        sa.Column("program_id", sa.String(length=255), nullable=False),
        sa.Column("assigned_agent_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=64), nullable=False, server_default="draft"),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decision_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decision_type", sa.String(length=64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("timeline", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_application_scope_filter",
        "crm_application",
        ["tenant_id", "sub_account_id", "status"],
        unique=False,
    )
    op.create_index("ix_crm_application_lead_id", "crm_application", ["lead_id"], unique=False)

    op.create_table(
        "crm_pipeline",
        sa.Column("id", sa.Uuid(), nullable=False),
        _tenant_fk(),
        _sub_account_fk(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("stages", sa.JSON(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_pipeline_scope_filter",
        "crm_pipeline",
        ["tenant_id", "sub_account_id", "type"],
        unique=False,
    )
    op.create_index(
        "uq_crm_pipeline_default_per_scope",
        "crm_pipeline",
        ["tenant_id", sa.text("coalesce(sub_account_id, '00000000-0000-0000-0000-000000000000'::uuid)"), "type"],
        unique=True,
        postgresql_where=sa.text("is_default AND deleted_at IS NULL"),
    )

    op.create_table(
        "crm_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        _tenant_fk(),
        sa.Column("sub_account_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("application_id", sa.Uuid(), nullable=True),
        sa.Column("activity_type", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_activity_tenant_created", "crm_activity", ["tenant_id", "created_at"], unique=False)
    op.create_index("ix_crm_activity_lead_id", "crm_activity", ["lead_id"], unique=False)
    op.create_index("ix_crm_activity_application_id", "crm_activity", ["application_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_activity_application_id", table_name="crm_activity")
    op.drop_index("ix_crm_activity_lead_id", table_name="crm_activity")
    op.drop_index("ix_crm_activity_tenant_created", table_name="crm_activity")
    op.drop_table("crm_activity")
    op.drop_index("uq_crm_pipeline_default_per_scope", table_name="crm_pipeline")
    op.drop_index("ix_crm_pipeline_scope_filter", table_name="crm_pipeline")
    op.drop_table("crm_pipeline")
    op.drop_index("ix_crm_application_lead_id", table_name="crm_application")
    op.drop_index("ix_crm_application_scope_filter", table_name="crm_application")
    op.drop_table("crm_application")
    op.drop_index("ix_crm_lead_phone", table_name="crm_lead")
    op.drop_index("ix_crm_lead_email", table_name="crm_lead")
    op.drop_index("ix_crm_lead_scope_filter", table_name="crm_lead")
    op.drop_table("crm_lead")

"""billing core schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)
JSONB = postgresql.JSONB()
MONEY = sa.Numeric(14, 2)


def _id():
    return sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "vendors",
        _id(),
        sa.Column("owner_id", UUID),
        sa.Column("vendor_name", sa.String(255), nullable=False),
        sa.Column("bank_account", sa.String(64)),
        sa.Column("tax_id", sa.String(64)),
        _created_at(),
    )
    op.create_index("idx_vendors_bank_account", "vendors", ["bank_account"])
    op.create_index("idx_vendors_tax_id", "vendors", ["tax_id"])

    op.create_table(
        "afes",
        _id(),
        sa.Column("owner_id", UUID, nullable=False),
        sa.Column("afe_number", sa.String(64), nullable=False),
        sa.Column("well_name", sa.String(255)),
        sa.Column("budget_amount", MONEY, nullable=False),
        sa.Column("spent_amount", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'active'")),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("owner_id", "afe_number", name="uq_afes_owner_number"),
        sa.CheckConstraint("status IN ('active','closed','cancelled')", name="chk_afes_status"),
        sa.CheckConstraint("budget_amount >= 0", name="chk_afes_budget_non_negative"),
    )

    op.create_table(
        "uwis",
        _id(),
        sa.Column("owner_id", UUID, nullable=False),
        sa.Column("uwi", sa.String(64), nullable=False),
        sa.Column("well_name", sa.String(255)),
        _created_at(),
        sa.UniqueConstraint("owner_id", "uwi", name="uq_uwis_owner_uwi"),
    )

    op.create_table(
        "policies",
        _id(),
        sa.Column("policy_name", sa.String(255), nullable=False),
        sa.Column("policy_type", sa.String(32), nullable=False),
        sa.Column("conditions", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("actions", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )
    op.create_index("idx_policies_active_type_priority", "policies", ["is_active", "policy_type", "priority"])

    op.create_table(
        "invoices",
        _id(),
        sa.Column("owner_id", UUID, nullable=False),
        sa.Column("invoice_number", sa.String(128)),
        sa.Column("vendor_id", UUID, sa.ForeignKey("vendors.id", ondelete="SET NULL")),
        sa.Column("vendor_name", sa.String(255)),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'CAD'")),
        sa.Column("invoice_date", sa.Date()),
        sa.Column("due_date", sa.Date()),
        sa.Column("po_number", sa.String(128)),
        sa.Column("status", sa.String(32), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("confidence_score", sa.Numeric(4, 3)),
        sa.Column("extracted_data", JSONB),
        sa.Column("duplicate_hash", sa.String(64)),
        sa.Column("approval_policy_id", UUID, sa.ForeignKey("policies.id", ondelete="SET NULL")),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending','processing','validated','needs_review','validation_failed',"
            "'pending_approval','approved','rejected','duplicate')",
            name="chk_invoices_status",
        ),
    )
    op.create_index("idx_invoices_owner_status", "invoices", ["owner_id", "status"])
    op.create_index("idx_invoices_duplicate_hash", "invoices", ["duplicate_hash"])
    op.create_index("idx_invoices_vendor_date", "invoices", ["vendor_id", "invoice_date"])

    op.create_table(
        "invoice_extractions",
        _id(),
        sa.Column("invoice_id", UUID, sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("owner_id", UUID, nullable=False),
        sa.Column("extraction_status", sa.String(16), nullable=False, server_default=sa.text("'processing'")),
        sa.Column("modality", sa.String(16)),
        sa.Column("afe_number", sa.String(64)),
        sa.Column("afe_id", UUID, sa.ForeignKey("afes.id", ondelete="SET NULL")),
        sa.Column("uwi", sa.String(64)),
        sa.Column("uwi_id", UUID, sa.ForeignKey("uwis.id", ondelete="SET NULL")),
        sa.Column("field_ticket_refs", JSONB),
        sa.Column("po_number", sa.String(128)),
        sa.Column("service_period_start", sa.Date()),
        sa.Column("service_period_end", sa.Date()),
        sa.Column("line_items", JSONB),
        sa.Column("extracted_data", JSONB),
        sa.Column("raw_text", sa.Text()),
        sa.Column("confidence_scores", JSONB),
        sa.Column("budget_status", sa.String(16)),
        sa.Column("budget_remaining", MONEY),
        sa.Column("validation_errors", JSONB),
        sa.Column("validation_warnings", JSONB),
        sa.Column("error_message", sa.Text()),
        sa.Column("model_version", sa.String(128)),
        sa.Column("extracted_at", sa.DateTime(timezone=True)),
        sa.Column("validated_at", sa.DateTime(timezone=True)),
        _created_at(),
        sa.CheckConstraint(
            "extraction_status IN ('processing','completed','failed')",
            name="chk_extractions_status",
        ),
        sa.CheckConstraint(
            "budget_status IS NULL OR budget_status IN ('no_afe','within_budget','over_budget','afe_not_found')",
            name="chk_extractions_budget_status",
        ),
    )
    op.create_index("idx_extractions_invoice", "invoice_extractions", ["invoice_id", "created_at"])

    op.create_table(
        "approvals",
        _id(),
        sa.Column("invoice_id", UUID, sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("approval_level", sa.SmallInteger(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("approver_id", UUID),
        sa.Column("amount_approved", MONEY),
        sa.Column("approval_date", sa.DateTime(timezone=True)),
        sa.Column("comments", sa.Text()),
        sa.Column("auto_approved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
        sa.UniqueConstraint("invoice_id", "approval_level", name="uq_approvals_invoice_level"),
        sa.CheckConstraint("status IN ('pending','approved','rejected')", name="chk_approvals_status"),
        sa.CheckConstraint("approval_level >= 1", name="chk_approvals_level_positive"),
    )
    op.create_index("idx_approvals_status", "approvals", ["status"])

    op.create_table(
        "review_queue",
        _id(),
        sa.Column("invoice_id", UUID, sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("confidence_score", sa.Numeric(4, 3)),
        sa.Column("flagged_fields", JSONB),
        sa.Column("assigned_to", UUID),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("resolved_by", UUID),
        sa.Column("resolution_notes", sa.Text()),
        _created_at(),
    )
    op.create_index(
        "idx_review_queue_open",
        "review_queue",
        ["priority", "created_at"],
        postgresql_where=sa.text("resolved_at IS NULL"),
    )

    op.create_table(
        "fraud_flags",
        _id(),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", UUID, nullable=False),
        sa.Column("flag_type", sa.String(64), nullable=False),
        sa.Column("risk_score", sa.SmallInteger(), nullable=False),
        sa.Column("details", JSONB),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'open'")),
        sa.Column("resolved_by", UUID),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("resolution_notes", sa.Text()),
        _created_at(),
        sa.CheckConstraint("risk_score BETWEEN 0 AND 100", name="chk_fraud_flags_risk_score"),
        sa.CheckConstraint("status IN ('open','resolved','dismissed')", name="chk_fraud_flags_status"),
    )
    op.create_index("idx_fraud_flags_entity", "fraud_flags", ["entity_type", "entity_id"])

    op.create_table(
        "audit_logs",
        _id(),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", UUID, nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("old_value", JSONB),
        sa.Column("new_value", JSONB),
        sa.Column("actor_type", sa.String(50), nullable=False),
        sa.Column("actor_id", UUID),
        sa.Column("ip_address", postgresql.INET()),
        sa.Column("user_agent", sa.Text()),
        sa.Column("metadata", JSONB),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id", "timestamp"])
    op.create_index("idx_audit_logs_action", "audit_logs", ["action", "timestamp"])

    # Audit rows are write-once.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION audit_logs_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'audit_logs is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_audit_logs_immutable
        BEFORE UPDATE OR DELETE ON audit_logs
        FOR EACH ROW EXECUTE FUNCTION audit_logs_immutable();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_audit_logs_immutable ON audit_logs")
    op.execute("DROP FUNCTION IF EXISTS audit_logs_immutable()")
    op.drop_table("audit_logs")
    op.drop_table("fraud_flags")
    op.drop_table("review_queue")
    op.drop_table("approvals")
    op.drop_table("invoice_extractions")
    op.drop_table("invoices")
    op.drop_table("policies")
    op.drop_table("uwis")
    op.drop_table("afes")
    op.drop_table("vendors")

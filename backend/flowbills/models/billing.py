import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
INET_TYPE = String(45).with_variant(INET, "postgresql")
MONEY = Numeric(14, 2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pk():
    return Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )


class Vendor(Base):
    __tablename__ = "vendors"

    id = _pk()
    owner_id = Column(UUID_TYPE)
    vendor_name = Column(String(255), nullable=False)
    bank_account = Column(String(64))
    tax_id = Column(String(64))
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_vendors_bank_account", "bank_account"),
        Index("idx_vendors_tax_id", "tax_id"),
    )


class AFE(Base):
    __tablename__ = "afes"

    id = _pk()
    owner_id = Column(UUID_TYPE, nullable=False)
    afe_number = Column(String(64), nullable=False)
    well_name = Column(String(255))
    budget_amount = Column(MONEY, nullable=False)
    spent_amount = Column(MONEY, nullable=False, default=0, server_default=text("0"))
    status = Column(String(16), nullable=False, default="active", server_default=text("'active'"))
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "afe_number", name="uq_afes_owner_number"),
        CheckConstraint("status IN ('active','closed','cancelled')", name="chk_afes_status"),
        CheckConstraint("budget_amount >= 0", name="chk_afes_budget_non_negative"),
    )


class WellIdentifier(Base):
    __tablename__ = "uwis"

    id = _pk()
    owner_id = Column(UUID_TYPE, nullable=False)
    uwi = Column(String(64), nullable=False)
    well_name = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (UniqueConstraint("owner_id", "uwi", name="uq_uwis_owner_uwi"),)


class Invoice(Base):
    __tablename__ = "invoices"

    id = _pk()
    owner_id = Column(UUID_TYPE, nullable=False)
    invoice_number = Column(String(128))
    vendor_id = Column(UUID_TYPE, ForeignKey("vendors.id", ondelete="SET NULL"))
    vendor_name = Column(String(255))
    amount = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="CAD", server_default=text("'CAD'"))
    invoice_date = Column(Date)
    due_date = Column(Date)
    po_number = Column(String(128))
    status = Column(String(32), nullable=False, default="pending", server_default=text("'pending'"))
    confidence_score = Column(Numeric(4, 3))
    extracted_data = Column(JSON_TYPE)
    duplicate_hash = Column(String(64))
    approval_policy_id = Column(UUID_TYPE, ForeignKey("policies.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    approvals = relationship("Approval", order_by="Approval.approval_level", lazy="selectin")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','processing','validated','needs_review','validation_failed',"
            "'pending_approval','approved','rejected','duplicate')",
            name="chk_invoices_status",
        ),
        Index("idx_invoices_owner_status", "owner_id", "status"),
        Index("idx_invoices_duplicate_hash", "duplicate_hash"),
        Index("idx_invoices_vendor_date", "vendor_id", "invoice_date"),
    )


class InvoiceExtraction(Base):
    __tablename__ = "invoice_extractions"

    id = _pk()
    invoice_id = Column(UUID_TYPE, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    owner_id = Column(UUID_TYPE, nullable=False)
    extraction_status = Column(String(16), nullable=False, default="processing", server_default=text("'processing'"))
    modality = Column(String(16))
    afe_number = Column(String(64))
    afe_id = Column(UUID_TYPE, ForeignKey("afes.id", ondelete="SET NULL"))
    uwi = Column(String(64))
    uwi_id = Column(UUID_TYPE, ForeignKey("uwis.id", ondelete="SET NULL"))
    field_ticket_refs = Column(JSON_TYPE)
    po_number = Column(String(128))
    service_period_start = Column(Date)
    service_period_end = Column(Date)
    line_items = Column(JSON_TYPE)
    extracted_data = Column(JSON_TYPE)
    raw_text = Column(Text)
    confidence_scores = Column(JSON_TYPE)
    budget_status = Column(String(16))
    budget_remaining = Column(MONEY)
    validation_errors = Column(JSON_TYPE)
    validation_warnings = Column(JSON_TYPE)
    error_message = Column(Text)
    model_version = Column(String(128))
    extracted_at = Column(DateTime(timezone=True))
    validated_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "extraction_status IN ('processing','completed','failed')",
            name="chk_extractions_status",
        ),
        CheckConstraint(
            "budget_status IS NULL OR budget_status IN ('no_afe','within_budget','over_budget','afe_not_found')",
            name="chk_extractions_budget_status",
        ),
        Index("idx_extractions_invoice", "invoice_id", "created_at"),
    )


class Policy(Base):
    __tablename__ = "policies"

    id = _pk()
    policy_name = Column(String(255), nullable=False)
    policy_type = Column(String(32), nullable=False)
    conditions = Column(JSON_TYPE, nullable=False, default=dict)
    actions = Column(JSON_TYPE, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=100, server_default=text("100"))
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (Index("idx_policies_active_type_priority", "is_active", "policy_type", "priority"),)


class Approval(Base):
    __tablename__ = "approvals"

    id = _pk()
    invoice_id = Column(UUID_TYPE, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    approval_level = Column(SmallInteger, nullable=False)
    status = Column(String(16), nullable=False, default="pending", server_default=text("'pending'"))
    approver_id = Column(UUID_TYPE)
    amount_approved = Column(MONEY)
    approval_date = Column(DateTime(timezone=True))
    comments = Column(Text)
    auto_approved = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("invoice_id", "approval_level", name="uq_approvals_invoice_level"),
        CheckConstraint("status IN ('pending','approved','rejected')", name="chk_approvals_status"),
        CheckConstraint("approval_level >= 1", name="chk_approvals_level_positive"),
    )


class ReviewQueueItem(Base):
    __tablename__ = "review_queue"

    id = _pk()
    invoice_id = Column(UUID_TYPE, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    reason = Column(Text, nullable=False)
    priority = Column(Integer, nullable=False, default=3)
    confidence_score = Column(Numeric(4, 3))
    flagged_fields = Column(JSON_TYPE)
    assigned_to = Column(UUID_TYPE)
    resolved_at = Column(DateTime(timezone=True))
    resolved_by = Column(UUID_TYPE)
    resolution_notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)


class FraudFlag(Base):
    __tablename__ = "fraud_flags"

    id = _pk()
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    flag_type = Column(String(64), nullable=False)
    risk_score = Column(SmallInteger, nullable=False)
    details = Column(JSON_TYPE)
    status = Column(String(16), nullable=False, default="open", server_default=text("'open'"))
    resolved_by = Column(UUID_TYPE)
    resolved_at = Column(DateTime(timezone=True))
    resolution_notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("risk_score BETWEEN 0 AND 100", name="chk_fraud_flags_risk_score"),
        CheckConstraint("status IN ('open','resolved','dismissed')", name="chk_fraud_flags_status"),
        Index("idx_fraud_flags_entity", "entity_type", "entity_id"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = _pk()
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(UUID_TYPE)
    ip_address = Column(INET_TYPE)
    user_agent = Column(Text)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

"""SQLAlchemy database models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# Candidate lifecycle
CANDIDATE_PENDING = "pending"
CANDIDATE_MERGED = "merged"
CANDIDATE_DISMISSED = "dismissed"

# Scan run lifecycle
SCAN_RUNNING = "running"
SCAN_COMPLETED = "completed"
SCAN_FAILED = "failed"

# Merge journal lifecycle
MERGE_IN_PROGRESS = "in_progress"
MERGE_COMPLETED = "completed"
MERGE_FAILED = "failed"

MERGE_TYPES = ("manual", "ai_bulk")
ALIAS_SOURCES = ("manual", "ai_confirmed")


class Organization(Base):
    """Tenant owning a product catalog."""

    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duplicate_scan_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    scan_frequency_hours: Mapped[int] = mapped_column(Integer, default=24, nullable=False)
    last_duplicate_scan: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    auto_merge_threshold: Mapped[float] = mapped_column(Float, default=0.90, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "scan_frequency_hours >= 1 AND scan_frequency_hours <= 168",
            name="ck_organization_scan_frequency",
        ),
        CheckConstraint(
            "auto_merge_threshold >= 0.80 AND auto_merge_threshold <= 0.95",
            name="ck_organization_auto_merge_threshold",
        ),
    )


class Product(Base):
    """Tenant-scoped catalog entry aggregated from sales records."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    total_revenue: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0.00"), nullable=False
    )
    total_units: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0.00"), nullable=False
    )
    total_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    first_sale_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    last_sale_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    # Set once the product has been merged into another one; the row stays for audit
    merged_into_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "product_name", name="uq_product_tenant_name"),
        Index("ix_products_tenant_revenue", "tenant_id", "total_revenue"),
    )


class SalesRecord(Base):
    """Historical sales line written by ingest; product_name is rewritten by merges."""

    __tablename__ = "sales_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    account_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    quantity: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("1"), nullable=False
    )
    revenue: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0.00"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_sales_records_tenant_product", "tenant_id", "product_name"),
    )


class InventoryImporter(Base):
    """Importer-level stock for a product."""

    __tablename__ = "inventory_importer"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quantity: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "product_id", name="uq_inventory_importer_product"),
    )


class InventoryDistributor(Base):
    """Per-distributor stock for a product."""

    __tablename__ = "inventory_distributor"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    distributor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    initial_quantity: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    current_quantity: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "product_id", "distributor_id", name="uq_inventory_distributor_product"
        ),
    )


class InventoryTransaction(Base):
    """Inventory ledger movement."""

    __tablename__ = "inventory_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    distributor_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity_change: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    previous_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    new_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class DuplicateCandidate(Base):
    """Suggested duplicate pair awaiting review."""

    __tablename__ = "duplicate_candidates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    product_a_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    product_b_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    product_a_name: Mapped[str] = mapped_column(Text, nullable=False)
    product_b_name: Mapped[str] = mapped_column(Text, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    similarity_details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=CANDIDATE_PENDING, nullable=False)
    scan_run_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("scan_runs.id", ondelete="SET NULL"), nullable=True
    )
    detected_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    user_decision: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    # Held while a merge decision is executing
    claimed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    product_a: Mapped["Product"] = relationship("Product", foreign_keys=[product_a_id])
    product_b: Mapped["Product"] = relationship("Product", foreign_keys=[product_b_id])

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "product_a_id", "product_b_id", name="uq_duplicate_candidate_pair"
        ),
        CheckConstraint("product_a_id < product_b_id", name="ck_duplicate_candidate_ordering"),
        CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="ck_duplicate_candidate_confidence",
        ),
        CheckConstraint(
            "status IN ('pending', 'merged', 'dismissed')",
            name="ck_duplicate_candidate_status",
        ),
        Index("ix_duplicate_candidates_tenant_status", "tenant_id", "status"),
    )

    @classmethod
    def create_normalized(
        cls,
        product_id_a: int,
        name_a: str,
        product_id_b: int,
        name_b: str,
        **kwargs,
    ):
        """
        Create a candidate with normalized ordering (product_a_id < product_b_id).

        Names follow their ids so product_a_name always describes product_a_id.
        """
        if product_id_a > product_id_b:
            product_id_a, product_id_b = product_id_b, product_id_a
            name_a, name_b = name_b, name_a
        return cls(
            product_a_id=product_id_a,
            product_b_id=product_id_b,
            product_a_name=name_a,
            product_b_name=name_b,
            **kwargs,
        )

    @property
    def pair_key(self) -> tuple[int, int]:
        return (self.product_a_id, self.product_b_id)

    @property
    def is_pending(self) -> bool:
        return self.status == CANDIDATE_PENDING


class ProductAliasMapping(Base):
    """Variant product name resolved to its canonical name."""

    __tablename__ = "product_alias_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    variant_name: Mapped[str] = mapped_column(Text, nullable=False)
    canonical_name: Mapped[str] = mapped_column(Text, nullable=False)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    source: Mapped[str] = mapped_column(String(20), default="manual", nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "variant_name", name="uq_alias_tenant_variant"),
        CheckConstraint("source IN ('manual', 'ai_confirmed')", name="ck_alias_source"),
        Index("ix_alias_tenant_canonical", "tenant_id", "canonical_name"),
    )


class MergeAuditEntry(Base):
    """Append-only record of an executed merge."""

    __tablename__ = "merge_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    merge_type: Mapped[str] = mapped_column(String(20), nullable=False)
    source_product_names: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    canonical_name: Mapped[str] = mapped_column(Text, nullable=False)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    records_affected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    performed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    can_undo: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    merge_key: Mapped[str] = mapped_column(String(128), nullable=False)
    performed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "merge_key", name="uq_merge_audit_key"),
        CheckConstraint("merge_type IN ('manual', 'ai_bulk')", name="ck_merge_audit_type"),
        Index("ix_merge_audit_tenant_performed", "tenant_id", "performed_at"),
    )


class MergeJournal(Base):
    """Progress of one merge saga, so a retry resumes instead of recounting."""

    __tablename__ = "merge_journal"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    merge_key: Mapped[str] = mapped_column(String(128), nullable=False)
    keep_product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    merge_product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    variant_name: Mapped[str] = mapped_column(Text, nullable=False)
    canonical_name: Mapped[str] = mapped_column(Text, nullable=False)
    records_affected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_completed_step: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=MERGE_IN_PROGRESS, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_entry_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("merge_audit_log.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "merge_key", name="uq_merge_journal_key"),
    )


class ScanRun(Base):
    """Tracks one duplicate scan over a tenant catalog."""

    __tablename__ = "scan_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)  # UUID hex for lock tracking
    trigger: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # 'scheduled' | 'manual'
    status: Mapped[str] = mapped_column(String(20), default=SCAN_RUNNING, nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    products_scanned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    candidates_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    high_confidence_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    scan_parameters: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'completed', 'failed')", name="ck_scan_run_status"
        ),
        Index("ix_scan_runs_tenant_started", "tenant_id", "started_at"),
    )

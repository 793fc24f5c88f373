"""SQLAlchemy ORM models for the billing reconciliation engine.

All tables use the `recon_` prefix. Tables extending ReconModel carry an id
(UUID), created_at and updated_at; Company is keyed by the console's own
string identifier.

Domain model:
  Company                     an MSP client, as known to the console
  CompanyIntegrationMapping   which vendor org/site/customer belongs to a company
  VendorProduct               catalog of vendor products (seeded + auto-discovered)
  CompanyProductAssignment    company uses vendor product (one row per pair)
  ProductMapping              vendor product key -> PSA product name
  BillingLine                 local cache of PSA agreement lines
  ReconciliationSnapshot      one reconciliation run for one company
  ReconciliationItem          one vendor-count-vs-PSA comparison within a snapshot
  BillingActivityEntry        append-only audit trail of item transitions
  ReconciliationLease         keyed lease serialising runs per company
"""
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from msp_billing_recon.database import Base, ReconModel, utcnow

_JSON = JSON().with_variant(JSONB(), "postgresql")

WILDCARD_PRODUCT_KEYS: frozenset[str] = frozenset({"*", "all_devices", "all_agents"})


class SnapshotStatus:
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemStatus:
    PENDING = "pending"
    APPROVED = "approved"
    DISMISSED = "dismissed"
    ADJUSTED = "adjusted"


class ActivityAction:
    DETECTED = "detected"
    AUTO_APPROVED = "auto_approved"
    APPROVED = "approved"
    DISMISSED = "dismissed"
    SYNCED_TO_PSA = "synced_to_psa"


class ActivityResult:
    PENDING = "pending"
    NO_ACTION = "no_action"
    SUCCESS = "success"
    FAILED = "failed"


class Company(Base):
    """An MSP client company.

    Table: recon_companies
    """

    __tablename__ = "recon_companies"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    psa_external_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Company identifier inside the PSA",
    )
    sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CompanyIntegrationMapping(ReconModel):
    """Links a company to its organisation/site/customer id inside one vendor.

    Table: recon_integration_mappings
    """

    __tablename__ = "recon_integration_mappings"

    company_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("recon_companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    vendor_id: Mapped[str] = mapped_column(String(50), nullable=False, comment="ninjaone | sentinelone | cove | pax8 | ...")
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, comment="Company id inside the vendor")

    __table_args__ = (UniqueConstraint("company_id", "vendor_id", name="uq_recon_integration_company_vendor"),)


class VendorProduct(ReconModel):
    """A product a vendor can report usage for.

    Table: recon_vendor_products
    """

    __tablename__ = "recon_vendor_products"

    vendor_id: Mapped[str] = mapped_column(String(50), nullable=False)
    product_key: Mapped[str] = mapped_column(String(255), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(50), nullable=False, default="devices")
    is_auto_discovered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (UniqueConstraint("vendor_id", "product_key", name="uq_recon_vendor_products_key"),)


class CompanyProductAssignment(ReconModel):
    """A company uses a vendor product. At most one row per pair.

    Table: recon_company_assignments
    """

    __tablename__ = "recon_company_assignments"

    company_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("recon_companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    vendor_product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("recon_vendor_products.id", ondelete="CASCADE"), nullable=False
    )
    is_auto_discovered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("company_id", "vendor_product_id", name="uq_recon_assignments_company_product"),
    )


class ProductMapping(ReconModel):
    """Maps a vendor product key (or wildcard) to a PSA product name.

    Table: recon_product_mappings
    """

    __tablename__ = "recon_product_mappings"

    vendor_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    vendor_product_key: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Exact product key, or a wildcard: * | all_devices | all_agents",
    )
    vendor_product_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    psa_product_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Product name matched against PSA billing lines; null = unusable",
    )
    count_method: Mapped[str] = mapped_column(String(50), nullable=False, default="per_device")
    unit_label: Mapped[str] = mapped_column(String(50), nullable=False, default="devices")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (UniqueConstraint("vendor_id", "vendor_product_key", name="uq_recon_mappings_vendor_key"),)

    @property
    def is_wildcard(self) -> bool:
        return self.vendor_product_key in WILDCARD_PRODUCT_KEYS


class BillingLine(ReconModel):
    """Local cache of one PSA agreement line (an "agreement addition").

    Table: recon_billing_lines
    """

    __tablename__ = "recon_billing_lines"

    company_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("recon_companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    agreement_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agreement_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_agreement_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_line_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    unit_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    unit_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ReconciliationSnapshot(ReconModel):
    """One reconciliation run for one company.

    summary is written when the run completes (or fails):
    {total_items, discrepancies, total_revenue_impact, matched_count,
     vendor_failures, psa_lines_source} plus {error, items_before_failure}
    for failed runs.

    Table: recon_snapshots
    """

    __tablename__ = "recon_snapshots"

    company_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("recon_companies.id", ondelete="CASCADE"), nullable=False
    )
    triggered_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SnapshotStatus.IN_PROGRESS,
        comment="in_progress | completed | failed",
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    summary: Mapped[dict | None] = mapped_column(_JSON, nullable=True)

    __table_args__ = (Index("ix_recon_snapshots_company_created", "company_id", "created_at"),)


class ReconciliationItem(ReconModel):
    """One vendor count compared against the PSA lines of one mapping.

    Invariant: discrepancy == vendor_qty - psa_qty. revenue_impact is None
    when no PSA line matched.

    Table: recon_items
    """

    __tablename__ = "recon_items"

    snapshot_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("recon_snapshots.id", ondelete="CASCADE"), nullable=False, index=True
    )
    company_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    vendor_id: Mapped[str] = mapped_column(String(50), nullable=False)
    vendor_product_key: Mapped[str] = mapped_column(String(255), nullable=False)
    vendor_product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False, comment="PSA product name")
    psa_qty: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    vendor_qty: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    discrepancy: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    unit_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    revenue_impact: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ItemStatus.PENDING,
        comment="pending | approved | dismissed | adjusted",
    )
    linked_agreement_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="PSA agreement id used for write-back"
    )
    linked_line_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="PSA agreement line id used for write-back"
    )
    linked_agreement_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_note: Mapped[str | None] = mapped_column(Text, nullable=True)


class BillingActivityEntry(ReconModel):
    """Append-only audit record of one item transition.

    Carries enough context to rebuild a billing-change history without
    joining any other table. Rows are removed only by cascade when their
    item is purged under retention policy.

    Table: recon_activity_entries
    """

    __tablename__ = "recon_activity_entries"

    company_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    agreement_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(50), nullable=False)
    vendor_product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    psa_qty: Mapped[float] = mapped_column(Float, nullable=False)
    vendor_qty: Mapped[float] = mapped_column(Float, nullable=False)
    change: Mapped[float] = mapped_column(Float, nullable=False)
    action: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="detected | auto_approved | approved | dismissed | synced_to_psa",
    )
    result: Mapped[str] = mapped_column(String(20), nullable=False, comment="pending | no_action | success | failed")
    result_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    snapshot_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("recon_items.id", ondelete="CASCADE"), nullable=False, index=True
    )

    __table_args__ = (Index("ix_recon_activity_company_created", "company_id", "created_at"),)


class ReconciliationLease(ReconModel):
    """A time-limited exclusive lease keyed by e.g. ``company:<id>``.

    Table: recon_leases
    """

    __tablename__ = "recon_leases"

    lease_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ttl_seconds: Mapped[int] = mapped_column(Integer, nullable=False)

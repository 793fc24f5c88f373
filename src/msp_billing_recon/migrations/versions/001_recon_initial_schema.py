"""Create initial recon_ schema tables.

Revision ID: 001_recon_initial
Revises: None
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "001_recon_initial"
down_revision = None
branch_labels = None
depends_on = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    """Create all recon_ tables."""

    # recon_companies
    op.create_table(
        "recon_companies",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("psa_external_id", sa.String(64), nullable=True),
        sa.Column("sync_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    # recon_integration_mappings
    op.create_table(
        "recon_integration_mappings",
        *_base_columns(),
        sa.Column(
            "company_id",
            sa.String(64),
            sa.ForeignKey("recon_companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("vendor_id", sa.String(50), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.UniqueConstraint("company_id", "vendor_id", name="uq_recon_integration_company_vendor"),
    )
    op.create_index("ix_recon_integration_mappings_company_id", "recon_integration_mappings", ["company_id"])

    # recon_vendor_products
    op.create_table(
        "recon_vendor_products",
        *_base_columns(),
        sa.Column("vendor_id", sa.String(50), nullable=False),
        sa.Column("product_key", sa.String(255), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(50), nullable=False, server_default="devices"),
        sa.Column("is_auto_discovered", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("vendor_id", "product_key", name="uq_recon_vendor_products_key"),
    )

    # recon_company_assignments
    op.create_table(
        "recon_company_assignments",
        *_base_columns(),
        sa.Column(
            "company_id",
            sa.String(64),
            sa.ForeignKey("recon_companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "vendor_product_id",
            UUID(as_uuid=True),
            sa.ForeignKey("recon_vendor_products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("is_auto_discovered", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("company_id", "vendor_product_id", name="uq_recon_assignments_company_product"),
    )
    op.create_index("ix_recon_company_assignments_company_id", "recon_company_assignments", ["company_id"])

    # recon_product_mappings
    op.create_table(
        "recon_product_mappings",
        *_base_columns(),
        sa.Column("vendor_id", sa.String(50), nullable=False),
        sa.Column("vendor_product_key", sa.String(255), nullable=False),
        sa.Column("vendor_product_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("psa_product_name", sa.String(255), nullable=True),
        sa.Column("count_method", sa.String(50), nullable=False, server_default="per_device"),
        sa.Column("unit_label", sa.String(50), nullable=False, server_default="devices"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("notes", sa.Text, nullable=True),
        sa.UniqueConstraint("vendor_id", "vendor_product_key", name="uq_recon_mappings_vendor_key"),
    )
    op.create_index("ix_recon_product_mappings_vendor_id", "recon_product_mappings", ["vendor_id"])

    # recon_billing_lines
    op.create_table(
        "recon_billing_lines",
        *_base_columns(),
        sa.Column(
            "company_id",
            sa.String(64),
            sa.ForeignKey("recon_companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("agreement_id", sa.String(64), nullable=False),
        sa.Column("agreement_name", sa.String(255), nullable=True),
        sa.Column("external_agreement_id", sa.String(64), nullable=False),
        sa.Column("external_line_id", sa.String(64), nullable=False, unique=True),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Float, nullable=False, server_default="0"),
        sa.Column("unit_price", sa.Float, nullable=True),
        sa.Column("unit_cost", sa.Float, nullable=True),
        sa.Column("billable", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("cancelled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_recon_billing_lines_company_id", "recon_billing_lines", ["company_id"])

    # recon_snapshots
    op.create_table(
        "recon_snapshots",
        *_base_columns(),
        sa.Column(
            "company_id",
            sa.String(64),
            sa.ForeignKey("recon_companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("triggered_by", sa.String(255), nullable=False, server_default="system"),
        sa.Column("status", sa.String(20), nullable=False, server_default="in_progress"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("summary", JSONB, nullable=True),
    )
    op.create_index("ix_recon_snapshots_company_created", "recon_snapshots", ["company_id", "created_at"])

    # recon_items
    op.create_table(
        "recon_items",
        *_base_columns(),
        sa.Column(
            "snapshot_id",
            UUID(as_uuid=True),
            sa.ForeignKey("recon_snapshots.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("company_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(50), nullable=False),
        sa.Column("vendor_product_key", sa.String(255), nullable=False),
        sa.Column("vendor_product_name", sa.String(255), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("psa_qty", sa.Float, nullable=False, server_default="0"),
        sa.Column("vendor_qty", sa.Float, nullable=False, server_default="0"),
        sa.Column("discrepancy", sa.Float, nullable=False, server_default="0"),
        sa.Column("unit_price", sa.Float, nullable=True),
        sa.Column("revenue_impact", sa.Float, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("linked_agreement_id", sa.String(64), nullable=True),
        sa.Column("linked_line_id", sa.String(64), nullable=True),
        sa.Column("linked_agreement_name", sa.String(255), nullable=True),
        sa.Column("resolved_by", sa.String(255), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_note", sa.Text, nullable=True),
    )
    op.create_index("ix_recon_items_snapshot_id", "recon_items", ["snapshot_id"])
    op.create_index("ix_recon_items_company_id", "recon_items", ["company_id"])

    # recon_activity_entries: append-only; rows leave only by cascade from their item
    op.create_table(
        "recon_activity_entries",
        *_base_columns(),
        sa.Column("company_id", sa.String(64), nullable=False),
        sa.Column("company_name", sa.String(255), nullable=True),
        sa.Column("agreement_name", sa.String(255), nullable=True),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("vendor_id", sa.String(50), nullable=False),
        sa.Column("vendor_product_name", sa.String(255), nullable=True),
        sa.Column("psa_qty", sa.Float, nullable=False),
        sa.Column("vendor_qty", sa.Float, nullable=False),
        sa.Column("change", sa.Float, nullable=False),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("result", sa.String(20), nullable=False),
        sa.Column("result_note", sa.Text, nullable=True),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("snapshot_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "item_id",
            UUID(as_uuid=True),
            sa.ForeignKey("recon_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    op.create_index("ix_recon_activity_entries_company_id", "recon_activity_entries", ["company_id"])
    op.create_index("ix_recon_activity_entries_item_id", "recon_activity_entries", ["item_id"])
    op.create_index("ix_recon_activity_company_created", "recon_activity_entries", ["company_id", "created_at"])

    # recon_leases
    op.create_table(
        "recon_leases",
        *_base_columns(),
        sa.Column("lease_key", sa.String(255), nullable=False, unique=True),
        sa.Column("token", sa.String(64), nullable=False),
        sa.Column("holder", sa.String(255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ttl_seconds", sa.Integer, nullable=False),
    )


def downgrade() -> None:
    """Drop all recon_ tables."""
    for table in [
        "recon_leases",
        "recon_activity_entries",
        "recon_items",
        "recon_snapshots",
        "recon_billing_lines",
        "recon_product_mappings",
        "recon_company_assignments",
        "recon_vendor_products",
        "recon_integration_mappings",
        "recon_companies",
    ]:
        op.drop_table(table)

"""Value objects passed between the aggregator, engine and API.

None of these are persisted directly; the engine derives ORM rows from them.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class VendorCount:
    """Usage of one vendor product for one company, as observed right now.

    Attributes:
        vendor_id: Registry key of the vendor (e.g. "ninjaone").
        product_key: Vendor-scoped product key (e.g. "servers").
        product_name: Human-readable product name.
        count: Observed quantity (devices, agents, licenses, tenants).
        unit: Unit label for count.
        company_external_id: The company's identifier inside the vendor.
        observed_at: When the count was taken.
    """

    vendor_id: str
    product_key: str
    product_name: str
    count: int
    unit: str
    company_external_id: str
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class PsaBillingLine:
    """A billing line (agreement addition) as returned by the PSA collaborator."""

    agreement_id: str
    external_agreement_id: str
    external_line_id: str
    product_name: str
    quantity: float
    unit_price: float | None = None
    unit_cost: float | None = None
    billable: bool = True
    cancelled: bool = False
    agreement_name: str | None = None


@dataclass(frozen=True)
class SourceFailure:
    """A vendor source that could not be read during aggregation."""

    vendor_id: str
    error: str
    company_external_id: str | None = None

    def as_dict(self) -> dict[str, str | None]:
        return {
            "vendor_id": self.vendor_id,
            "error": self.error,
            "company_external_id": self.company_external_id,
        }


@dataclass
class AggregationReport:
    """Counts for one company plus the vendors that failed to report."""

    counts: list[VendorCount] = field(default_factory=list)
    failures: list[SourceFailure] = field(default_factory=list)


@dataclass
class BulkAggregationReport:
    """Counts for every company (keyed by company id) from one pass per vendor."""

    counts_by_company: dict[str, list[VendorCount]] = field(default_factory=dict)
    failures_by_company: dict[str, list[SourceFailure]] = field(default_factory=dict)

    def for_company(self, company_id: str) -> AggregationReport:
        """Slice the bulk result down to one company's report."""
        return AggregationReport(
            counts=list(self.counts_by_company.get(company_id, [])),
            failures=list(self.failures_by_company.get(company_id, [])),
        )


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of one reconcile() call."""

    snapshot_id: uuid.UUID
    company_id: str
    company_name: str
    total_items: int
    discrepancies: int
    total_revenue_impact: float
    vendor_failures: list[SourceFailure] = field(default_factory=list)


@dataclass(frozen=True)
class BatchEntry:
    """One company's line in a reconcile_all() report."""

    company_id: str
    company_name: str
    discrepancies: int
    error: str | None = None
    snapshot_id: uuid.UUID | None = None
    vendor_failures: list[SourceFailure] = field(default_factory=list)


@dataclass(frozen=True)
class WriteBackResult:
    """Outcome of pushing one item's live count to the PSA."""

    item_id: uuid.UUID
    old_qty: float
    new_qty: float
    product_name: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ActivityDraft:
    """Fields of a billing activity entry before it is appended."""

    company_id: str
    product_name: str
    vendor_id: str
    psa_qty: float
    vendor_qty: float
    change: float
    action: str
    result: str
    snapshot_id: uuid.UUID
    item_id: uuid.UUID
    company_name: str | None = None
    agreement_name: str | None = None
    vendor_product_name: str | None = None
    result_note: str | None = None
    actor_id: str | None = None


@dataclass(frozen=True)
class ResolutionOutcome:
    """Outcome of approving or dismissing one item in a bulk request."""

    item_id: uuid.UUID
    status: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ReconciliationSummary:
    """Totals over the latest completed snapshot of every company.

    discrepancies and total_revenue_impact count only items still pending;
    matched_count counts items that agree with the PSA or were already
    handled by an operator.
    """

    total_items: int = 0
    discrepancies: int = 0
    total_revenue_impact: float = 0.0
    matched_count: int = 0
    companies_with_issues: int = 0
    last_sync_at: datetime | None = None


@dataclass(frozen=True)
class AssignedProduct:
    """A company product assignment joined with its catalog row."""

    assignment_id: uuid.UUID
    company_id: str
    vendor_product_id: uuid.UUID
    vendor_id: str
    product_key: str
    product_name: str
    unit: str
    is_auto_discovered: bool
    is_active: bool
    assigned_at: datetime

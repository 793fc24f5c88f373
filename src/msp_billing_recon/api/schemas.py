"""Pydantic request and response schemas for the billing reconciliation API.

All API inputs and outputs are typed Pydantic models, never raw dicts.
"""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class SourceFailureResponse(BaseModel):
    """A vendor that could not be read during aggregation."""

    vendor_id: str
    error: str
    company_external_id: str | None = None

    model_config = {"from_attributes": True}


class ReconciliationResultResponse(BaseModel):
    """Outcome of reconciling one company."""

    snapshot_id: uuid.UUID
    company_id: str
    company_name: str
    total_items: int
    discrepancies: int
    total_revenue_impact: float
    vendor_failures: list[SourceFailureResponse]

    model_config = {"from_attributes": True}


class BatchEntryResponse(BaseModel):
    """One company's line in a batch reconciliation report."""

    company_id: str
    company_name: str
    discrepancies: int
    error: str | None
    snapshot_id: uuid.UUID | None
    vendor_failures: list[SourceFailureResponse]

    model_config = {"from_attributes": True}


class ReconciliationItemResponse(BaseModel):
    """A single vendor-count-vs-PSA comparison."""

    id: uuid.UUID
    snapshot_id: uuid.UUID
    company_id: str
    vendor_id: str
    vendor_product_key: str
    vendor_product_name: str
    product_name: str
    psa_qty: float
    vendor_qty: float
    discrepancy: float
    unit_price: float | None
    revenue_impact: float | None
    status: str
    linked_agreement_id: str | None
    linked_line_id: str | None
    linked_agreement_name: str | None
    resolved_by: str | None
    resolved_at: datetime | None
    resolved_note: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class SnapshotResponse(BaseModel):
    """One reconciliation run of one company."""

    id: uuid.UUID
    company_id: str
    triggered_by: str
    status: str
    summary: dict[str, Any] | None
    completed_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class CompanyReconciliationResponse(BaseModel):
    """A company's newest completed snapshot with its items."""

    company_id: str
    snapshot: SnapshotResponse | None
    last_snapshot_at: datetime | None
    items: list[ReconciliationItemResponse]


class ReconciliationSummaryResponse(BaseModel):
    """Totals over the newest completed snapshot of every company."""

    total_items: int
    discrepancies: int
    total_revenue_impact: float
    matched_count: int
    companies_with_issues: int
    last_sync_at: datetime | None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Item resolution and write-back
# ---------------------------------------------------------------------------


class ResolveItemRequest(BaseModel):
    """Request body to approve or dismiss one item."""

    action: Literal["approve", "dismiss"]
    note: str | None = Field(default=None, max_length=2000)


class BulkResolveRequest(BaseModel):
    """Request body to approve or dismiss several items."""

    item_ids: list[uuid.UUID] = Field(..., min_length=1)
    action: Literal["approve", "dismiss"]
    note: str | None = Field(default=None, max_length=2000)


class ResolutionOutcomeResponse(BaseModel):
    """Per-item outcome of a bulk resolve."""

    item_id: uuid.UUID
    status: str | None
    error: str | None

    model_config = {"from_attributes": True}


class BulkWriteBackRequest(BaseModel):
    """Request body to push several items' live counts to the PSA."""

    item_ids: list[uuid.UUID] = Field(..., min_length=1)


class WriteBackResultResponse(BaseModel):
    """Outcome of writing one item back to the PSA."""

    item_id: uuid.UUID
    old_qty: float
    new_qty: float
    product_name: str | None
    error: str | None
    succeeded: bool

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------


class ActivityEntryResponse(BaseModel):
    """One entry of a company's billing-change history."""

    id: uuid.UUID
    company_id: str
    company_name: str | None
    agreement_name: str | None
    product_name: str
    vendor_id: str
    vendor_product_name: str | None
    psa_qty: float
    vendor_qty: float
    change: float
    action: str
    result: str
    result_note: str | None
    actor_id: str | None
    snapshot_id: uuid.UUID
    item_id: uuid.UUID
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Product mappings
# ---------------------------------------------------------------------------


class ProductMappingResponse(BaseModel):
    """A vendor product key mapped to a PSA product name."""

    id: uuid.UUID
    vendor_id: str
    vendor_product_key: str
    vendor_product_name: str
    psa_product_name: str | None
    count_method: str
    unit_label: str
    is_active: bool
    notes: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CreateMappingRequest(BaseModel):
    """Request body to map a vendor product (or wildcard) to a PSA product."""

    vendor_id: str = Field(..., min_length=1, max_length=50)
    vendor_product_key: str = Field(..., min_length=1, max_length=255, description="Product key or * | all_devices | all_agents")
    psa_product_name: str | None = Field(default=None, max_length=255)
    vendor_product_name: str = Field(default="", max_length=255)
    count_method: str = Field(default="per_device", max_length=50)
    unit_label: str = Field(default="devices", max_length=50)
    notes: str | None = None


class UpdateMappingRequest(BaseModel):
    """Partial update of a mapping; omitted fields are left unchanged."""

    vendor_product_name: str | None = Field(default=None, max_length=255)
    psa_product_name: str | None = Field(default=None, max_length=255)
    count_method: str | None = Field(default=None, max_length=50)
    unit_label: str | None = Field(default=None, max_length=50)
    is_active: bool | None = None
    notes: str | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# ---------------------------------------------------------------------------
# Vendor catalog and company assignments
# ---------------------------------------------------------------------------


class VendorProductResponse(BaseModel):
    """A catalog product a vendor can report usage for."""

    id: uuid.UUID
    vendor_id: str
    product_key: str
    product_name: str
    unit: str
    is_auto_discovered: bool
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class ToggleVendorProductRequest(BaseModel):
    """Request body to activate or deactivate a catalog product."""

    is_active: bool


class AssignProductRequest(BaseModel):
    """Request body to assign a catalog product to a company."""

    vendor_product_id: uuid.UUID


class AssignedProductResponse(BaseModel):
    """A product assigned to a company."""

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

    model_config = {"from_attributes": True}

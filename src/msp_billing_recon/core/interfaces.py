"""Abstract interfaces (Protocol classes) for the billing reconciliation engine.

All services depend on these interfaces, not concrete implementations.
This keeps the engine free of SQLAlchemy and HTTP concerns and lets tests
substitute doubles for the record store, vendor sources and the PSA.
"""

import uuid
from typing import Protocol, runtime_checkable

from msp_billing_recon.core.models import (
    BillingActivityEntry,
    BillingLine,
    Company,
    CompanyIntegrationMapping,
    CompanyProductAssignment,
    ProductMapping,
    ReconciliationItem,
    ReconciliationSnapshot,
    VendorProduct,
)
from msp_billing_recon.core.types import PsaBillingLine, VendorCount


@runtime_checkable
class IVendorCountSource(Protocol):
    """Per-vendor adapter returning normalized usage counts."""

    vendor_id: str

    async def fetch_for_company(self, external_id: str) -> list[VendorCount]:
        """Counts for one company, identified by its id inside the vendor."""
        ...

    async def fetch_all(self) -> dict[str, list[VendorCount]]:
        """Counts for every company the vendor knows, keyed by external id."""
        ...


@runtime_checkable
class IPsaClient(Protocol):
    """The PSA system of record for agreements and billing lines."""

    async def list_billing_lines(self, company_external_id: str) -> list[PsaBillingLine]:
        """All agreement lines of a company's agreements."""
        ...

    async def update_line_quantity(
        self,
        external_agreement_id: str,
        external_line_id: str,
        new_quantity: float,
    ) -> None:
        """Set the billed quantity of one agreement line."""
        ...


@runtime_checkable
class IUnitOfWork(Protocol):
    """Transaction boundary over the record store."""

    async def commit(self) -> None:
        """Make all pending writes durable."""
        ...

    async def rollback(self) -> None:
        """Discard all pending writes."""
        ...


@runtime_checkable
class ICompanyRepository(Protocol):
    """Repository interface for companies."""

    async def get_by_id(self, company_id: str) -> Company | None:
        """Retrieve a company by id."""
        ...

    async def list_sync_enabled(self) -> list[Company]:
        """Companies included in batch reconciliation, ordered by name."""
        ...


@runtime_checkable
class IIntegrationMappingRepository(Protocol):
    """Repository interface for company-to-vendor identifiers."""

    async def list_for_company(self, company_id: str) -> list[CompanyIntegrationMapping]:
        """All vendor identifiers of one company."""
        ...

    async def list_for_vendors(self, vendor_ids: list[str]) -> list[CompanyIntegrationMapping]:
        """All company mappings for the given vendors."""
        ...

    async def get_for_company_vendor(self, company_id: str, vendor_id: str) -> CompanyIntegrationMapping | None:
        """The mapping of one company for one vendor."""
        ...


@runtime_checkable
class IProductMappingRepository(Protocol):
    """Repository interface for vendor-to-PSA product mappings."""

    async def create(self, mapping: ProductMapping) -> ProductMapping:
        """Persist a new mapping."""
        ...

    async def get_by_id(self, mapping_id: uuid.UUID) -> ProductMapping | None:
        """Retrieve a mapping by primary key."""
        ...

    async def get_by_key(self, vendor_id: str, vendor_product_key: str) -> ProductMapping | None:
        """Retrieve a mapping by its natural key."""
        ...

    async def list_active(self) -> list[ProductMapping]:
        """All active mappings."""
        ...

    async def list_by_vendor(self, vendor_id: str | None = None) -> list[ProductMapping]:
        """All mappings, optionally for one vendor."""
        ...

    async def save(self, mapping: ProductMapping) -> ProductMapping:
        """Flush changes made to a mapping."""
        ...

    async def delete(self, mapping: ProductMapping) -> None:
        """Remove a mapping."""
        ...


@runtime_checkable
class IVendorProductRepository(Protocol):
    """Repository interface for the vendor product catalog."""

    async def seed(self, products: list[dict[str, str]]) -> int:
        """Insert the known products that are missing. Returns rows inserted."""
        ...

    async def ensure(self, vendor_id: str, product_key: str, product_name: str, unit: str) -> VendorProduct:
        """Return the catalog row for a product, creating it as auto-discovered."""
        ...

    async def get_by_id(self, product_id: uuid.UUID) -> VendorProduct | None:
        """Retrieve a catalog row by primary key."""
        ...

    async def list_products(self, vendor_id: str | None = None, include_inactive: bool = False) -> list[VendorProduct]:
        """Catalog rows, optionally for one vendor."""
        ...

    async def save(self, product: VendorProduct) -> VendorProduct:
        """Flush changes made to a catalog row."""
        ...


@runtime_checkable
class IAssignmentRepository(Protocol):
    """Repository interface for company product assignments."""

    async def ensure(self, company_id: str, vendor_product_id: uuid.UUID, auto_discovered: bool = True) -> bool:
        """Create the assignment when absent. Returns True if a row was inserted."""
        ...

    async def get_by_id(self, assignment_id: uuid.UUID) -> CompanyProductAssignment | None:
        """Retrieve an assignment by primary key."""
        ...

    async def list_for_company(self, company_id: str) -> list[tuple[CompanyProductAssignment, VendorProduct]]:
        """A company's assignments with their catalog rows."""
        ...

    async def delete(self, assignment: CompanyProductAssignment) -> None:
        """Remove an assignment."""
        ...


@runtime_checkable
class IBillingLineRepository(Protocol):
    """Repository interface for the local PSA billing-line cache."""

    async def refresh(self, company_id: str, lines: list[PsaBillingLine]) -> int:
        """Replace a company's cached lines with the PSA's current view."""
        ...

    async def list_active_for_company(self, company_id: str) -> list[BillingLine]:
        """Billable, non-cancelled cached lines of a company."""
        ...

    async def update_quantity(self, external_line_id: str, quantity: float) -> int:
        """Set the cached quantity of one line. Returns rows updated."""
        ...


@runtime_checkable
class ISnapshotRepository(Protocol):
    """Repository interface for reconciliation snapshots."""

    async def create(self, snapshot: ReconciliationSnapshot) -> ReconciliationSnapshot:
        """Persist a new snapshot."""
        ...

    async def get_by_id(self, snapshot_id: uuid.UUID) -> ReconciliationSnapshot | None:
        """Retrieve a snapshot by primary key."""
        ...

    async def finish(self, snapshot_id: uuid.UUID, status: str, summary: dict) -> None:
        """Move a snapshot to completed or failed and store its summary."""
        ...

    async def list_for_company(self, company_id: str, limit: int = 20) -> list[ReconciliationSnapshot]:
        """A company's snapshots of any status, newest first."""
        ...

    async def latest_completed(self, company_id: str) -> ReconciliationSnapshot | None:
        """A company's newest completed snapshot."""
        ...

    async def latest_completed_per_company(self) -> list[ReconciliationSnapshot]:
        """The newest completed snapshot of every company."""
        ...


@runtime_checkable
class IItemRepository(Protocol):
    """Repository interface for reconciliation items."""

    async def create(self, item: ReconciliationItem) -> ReconciliationItem:
        """Persist a new item."""
        ...

    async def get_by_id(self, item_id: uuid.UUID) -> ReconciliationItem | None:
        """Retrieve an item by primary key."""
        ...

    async def list_by_snapshot(self, snapshot_id: uuid.UUID) -> list[ReconciliationItem]:
        """All items of a snapshot."""
        ...

    async def list_by_snapshots(self, snapshot_ids: list[uuid.UUID]) -> list[ReconciliationItem]:
        """All items of several snapshots."""
        ...

    async def save(self, item: ReconciliationItem) -> ReconciliationItem:
        """Flush changes made to an item."""
        ...


@runtime_checkable
class IActivityRepository(Protocol):
    """Append-only repository interface for billing activity entries."""

    async def create(self, entry: BillingActivityEntry) -> BillingActivityEntry:
        """Append one entry."""
        ...

    async def list_for_company(self, company_id: str, limit: int = 50, offset: int = 0) -> list[BillingActivityEntry]:
        """A company's entries, newest first."""
        ...


@runtime_checkable
class ILeaseRepository(Protocol):
    """Repository interface for keyed, expiring leases."""

    async def acquire(self, lease_key: str, holder: str, ttl_seconds: int) -> str | None:
        """Take the lease. Returns a release token, or None when it is held."""
        ...

    async def release(self, lease_key: str, token: str) -> bool:
        """Release the lease if the token still owns it."""
        ...

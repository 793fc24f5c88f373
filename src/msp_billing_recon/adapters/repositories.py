"""SQLAlchemy repositories for the MSP billing reconciliation engine.

All repositories extend BaseRepository and implement the interfaces defined
in core/interfaces.py. They flush but never commit; the SqlUnitOfWork
wrapping the same session owns the transaction boundary.
"""

import uuid
from datetime import timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from msp_billing_recon.core.models import (
    BillingActivityEntry,
    BillingLine,
    Company,
    CompanyIntegrationMapping,
    CompanyProductAssignment,
    ProductMapping,
    ReconciliationItem,
    ReconciliationLease,
    ReconciliationSnapshot,
    SnapshotStatus,
    VendorProduct,
)
from msp_billing_recon.core.types import PsaBillingLine
from msp_billing_recon.database import BaseRepository, insert_or_ignore, utcnow
from msp_billing_recon.observability import get_logger

logger = get_logger(__name__)


class SqlUnitOfWork:
    """Commit/rollback over the request's AsyncSession."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


class CompanyRepository:
    """Repository for recon_companies. Keyed by string id, so no BaseRepository."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, company_id: str) -> Company | None:
        return await self._session.get(Company, company_id)

    async def list_sync_enabled(self) -> list[Company]:
        query = select(Company).where(Company.sync_enabled.is_(True)).order_by(Company.name, Company.id)
        result = await self._session.execute(query)
        return list(result.scalars().all())


class IntegrationMappingRepository(BaseRepository[CompanyIntegrationMapping]):
    """Repository for recon_integration_mappings: company ids inside each vendor."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, CompanyIntegrationMapping)

    async def list_for_company(self, company_id: str) -> list[CompanyIntegrationMapping]:
        query = (
            select(CompanyIntegrationMapping)
            .where(CompanyIntegrationMapping.company_id == company_id)
            .order_by(CompanyIntegrationMapping.vendor_id)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def list_for_vendors(self, vendor_ids: list[str]) -> list[CompanyIntegrationMapping]:
        if not vendor_ids:
            return []
        query = (
            select(CompanyIntegrationMapping)
            .where(CompanyIntegrationMapping.vendor_id.in_(vendor_ids))
            .order_by(CompanyIntegrationMapping.vendor_id, CompanyIntegrationMapping.company_id)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def get_for_company_vendor(self, company_id: str, vendor_id: str) -> CompanyIntegrationMapping | None:
        query = select(CompanyIntegrationMapping).where(
            CompanyIntegrationMapping.company_id == company_id,
            CompanyIntegrationMapping.vendor_id == vendor_id,
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()


class ProductMappingRepository(BaseRepository[ProductMapping]):
    """Repository for recon_product_mappings: vendor product key to PSA product name."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, ProductMapping)

    async def get_by_key(self, vendor_id: str, vendor_product_key: str) -> ProductMapping | None:
        query = select(ProductMapping).where(
            ProductMapping.vendor_id == vendor_id,
            ProductMapping.vendor_product_key == vendor_product_key,
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def list_active(self) -> list[ProductMapping]:
        """Active mappings in a stable order, so repeated runs create items identically."""
        query = (
            select(ProductMapping)
            .where(ProductMapping.is_active.is_(True))
            .order_by(ProductMapping.vendor_id, ProductMapping.vendor_product_key)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def list_by_vendor(self, vendor_id: str | None = None) -> list[ProductMapping]:
        query = select(ProductMapping).order_by(ProductMapping.vendor_id, ProductMapping.vendor_product_key)
        if vendor_id is not None:
            query = query.where(ProductMapping.vendor_id == vendor_id)
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def save(self, mapping: ProductMapping) -> ProductMapping:
        await self._session.flush()
        return mapping

    async def delete(self, mapping: ProductMapping) -> None:
        await self._session.delete(mapping)
        await self._session.flush()


class VendorProductRepository(BaseRepository[VendorProduct]):
    """Repository for recon_vendor_products: the vendor product catalog."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, VendorProduct)

    async def seed(self, products: list[dict[str, str]]) -> int:
        """Insert known products that are missing; existing rows are left untouched.

        Args:
            products: Dicts with vendor_id, product_key, product_name and unit.

        Returns:
            Number of rows inserted.
        """
        inserted = 0
        for product in products:
            result = await insert_or_ignore(
                self._session,
                VendorProduct,
                values={
                    "id": uuid.uuid4(),
                    "vendor_id": product["vendor_id"],
                    "product_key": product["product_key"],
                    "product_name": product["product_name"],
                    "unit": product["unit"],
                    "is_auto_discovered": False,
                    "is_active": True,
                },
                index_elements=["vendor_id", "product_key"],
            )
            inserted += result.rowcount or 0
        return inserted

    async def ensure(self, vendor_id: str, product_key: str, product_name: str, unit: str) -> VendorProduct:
        """Return the catalog row for a product, auto-discovering it when absent."""
        result = await insert_or_ignore(
            self._session,
            VendorProduct,
            values={
                "id": uuid.uuid4(),
                "vendor_id": vendor_id,
                "product_key": product_key,
                "product_name": product_name,
                "unit": unit,
                "is_auto_discovered": True,
                "is_active": True,
            },
            index_elements=["vendor_id", "product_key"],
        )
        if result.rowcount:
            logger.info("vendor_product_discovered", vendor_id=vendor_id, product_key=product_key)

        query = select(VendorProduct).where(
            VendorProduct.vendor_id == vendor_id,
            VendorProduct.product_key == product_key,
        )
        return (await self._session.execute(query)).scalar_one()

    async def list_products(self, vendor_id: str | None = None, include_inactive: bool = False) -> list[VendorProduct]:
        query = select(VendorProduct).order_by(VendorProduct.vendor_id, VendorProduct.product_name)
        if vendor_id is not None:
            query = query.where(VendorProduct.vendor_id == vendor_id)
        if not include_inactive:
            query = query.where(VendorProduct.is_active.is_(True))
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def save(self, product: VendorProduct) -> VendorProduct:
        await self._session.flush()
        return product


class AssignmentRepository(BaseRepository[CompanyProductAssignment]):
    """Repository for recon_company_assignments: which company uses which product."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, CompanyProductAssignment)

    async def ensure(self, company_id: str, vendor_product_id: uuid.UUID, auto_discovered: bool = True) -> bool:
        result = await insert_or_ignore(
            self._session,
            CompanyProductAssignment,
            values={
                "id": uuid.uuid4(),
                "company_id": company_id,
                "vendor_product_id": vendor_product_id,
                "is_auto_discovered": auto_discovered,
            },
            index_elements=["company_id", "vendor_product_id"],
        )
        return bool(result.rowcount)

    async def list_for_company(self, company_id: str) -> list[tuple[CompanyProductAssignment, VendorProduct]]:
        """A company's assignments with their catalog rows, oldest first."""
        query = (
            select(CompanyProductAssignment, VendorProduct)
            .join(VendorProduct, CompanyProductAssignment.vendor_product_id == VendorProduct.id)
            .where(CompanyProductAssignment.company_id == company_id)
            .order_by(CompanyProductAssignment.created_at, VendorProduct.product_name)
        )
        result = await self._session.execute(query)
        return [(assignment, product) for assignment, product in result.all()]

    async def delete(self, assignment: CompanyProductAssignment) -> None:
        await self._session.delete(assignment)
        await self._session.flush()


class BillingLineRepository(BaseRepository[BillingLine]):
    """Repository for recon_billing_lines: the local cache of PSA agreement lines."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, BillingLine)

    async def refresh(self, company_id: str, lines: list[PsaBillingLine]) -> int:
        """Make the company's cached lines equal to the PSA's current view.

        Lines are matched on external_line_id: known lines are updated in
        place, new ones inserted, and lines the PSA no longer reports deleted.

        Returns:
            Number of lines now cached for the company.
        """
        query = select(BillingLine).where(BillingLine.company_id == company_id)
        cached = {line.external_line_id: line for line in (await self._session.execute(query)).scalars().all()}
        now = utcnow()

        seen: set[str] = set()
        for psa_line in lines:
            seen.add(psa_line.external_line_id)
            row = cached.get(psa_line.external_line_id)
            if row is None:
                row = BillingLine(company_id=company_id, external_line_id=psa_line.external_line_id)
                self._session.add(row)
            row.agreement_id = psa_line.agreement_id
            row.agreement_name = psa_line.agreement_name
            row.external_agreement_id = psa_line.external_agreement_id
            row.product_name = psa_line.product_name
            row.quantity = psa_line.quantity
            row.unit_price = psa_line.unit_price
            row.unit_cost = psa_line.unit_cost
            row.billable = psa_line.billable
            row.cancelled = psa_line.cancelled
            row.last_synced_at = now

        for external_line_id, row in cached.items():
            if external_line_id not in seen:
                await self._session.delete(row)

        await self._session.flush()
        return len(seen)

    async def list_active_for_company(self, company_id: str) -> list[BillingLine]:
        query = (
            select(BillingLine)
            .where(
                BillingLine.company_id == company_id,
                BillingLine.billable.is_(True),
                BillingLine.cancelled.is_(False),
            )
            .order_by(BillingLine.agreement_id, BillingLine.external_line_id)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def update_quantity(self, external_line_id: str, quantity: float) -> int:
        stmt = (
            update(BillingLine)
            .where(BillingLine.external_line_id == external_line_id)
            .values(quantity=quantity, last_synced_at=utcnow())
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0


class SnapshotRepository(BaseRepository[ReconciliationSnapshot]):
    """Repository for recon_snapshots: one row per reconciliation run."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, ReconciliationSnapshot)

    async def finish(self, snapshot_id: uuid.UUID, status: str, summary: dict) -> None:
        """Close a snapshot with a statement, not attribute access.

        The failure path calls this right after a rollback, when any loaded
        snapshot instance is expired.
        """
        stmt = (
            update(ReconciliationSnapshot)
            .where(ReconciliationSnapshot.id == snapshot_id)
            .values(status=status, summary=summary, completed_at=utcnow())
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def list_for_company(self, company_id: str, limit: int = 20) -> list[ReconciliationSnapshot]:
        query = (
            select(ReconciliationSnapshot)
            .where(ReconciliationSnapshot.company_id == company_id)
            .order_by(ReconciliationSnapshot.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def latest_completed(self, company_id: str) -> ReconciliationSnapshot | None:
        query = (
            select(ReconciliationSnapshot)
            .where(
                ReconciliationSnapshot.company_id == company_id,
                ReconciliationSnapshot.status == SnapshotStatus.COMPLETED,
            )
            .order_by(ReconciliationSnapshot.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def latest_completed_per_company(self) -> list[ReconciliationSnapshot]:
        """The newest completed snapshot of each company, newest first."""
        query = (
            select(ReconciliationSnapshot)
            .where(ReconciliationSnapshot.status == SnapshotStatus.COMPLETED)
            .order_by(ReconciliationSnapshot.created_at.desc())
        )
        result = await self._session.execute(query)
        latest: dict[str, ReconciliationSnapshot] = {}
        for snapshot in result.scalars().all():
            latest.setdefault(snapshot.company_id, snapshot)
        return list(latest.values())


class ItemRepository(BaseRepository[ReconciliationItem]):
    """Repository for recon_items."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, ReconciliationItem)

    async def list_by_snapshot(self, snapshot_id: uuid.UUID) -> list[ReconciliationItem]:
        query = (
            select(ReconciliationItem)
            .where(ReconciliationItem.snapshot_id == snapshot_id)
            .order_by(ReconciliationItem.vendor_id, ReconciliationItem.vendor_product_key, ReconciliationItem.product_name)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def list_by_snapshots(self, snapshot_ids: list[uuid.UUID]) -> list[ReconciliationItem]:
        if not snapshot_ids:
            return []
        query = (
            select(ReconciliationItem)
            .where(ReconciliationItem.snapshot_id.in_(snapshot_ids))
            .order_by(ReconciliationItem.company_id, ReconciliationItem.vendor_id, ReconciliationItem.vendor_product_key)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def save(self, item: ReconciliationItem) -> ReconciliationItem:
        await self._session.flush()
        return item


class ActivityRepository(BaseRepository[BillingActivityEntry]):
    """Append-only repository for recon_activity_entries.

    Exposes create and reads only; entries are removed solely by the
    cascade from their item.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, BillingActivityEntry)

    async def list_for_company(self, company_id: str, limit: int = 50, offset: int = 0) -> list[BillingActivityEntry]:
        query = (
            select(BillingActivityEntry)
            .where(BillingActivityEntry.company_id == company_id)
            .order_by(BillingActivityEntry.created_at.desc(), BillingActivityEntry.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def list_for_item(self, item_id: uuid.UUID) -> list[BillingActivityEntry]:
        query = (
            select(BillingActivityEntry)
            .where(BillingActivityEntry.item_id == item_id)
            .order_by(BillingActivityEntry.created_at)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())


class LeaseRepository:
    """Row-based leases with a TTL.

    ``acquire`` deletes an expired lease for the key and then inserts with
    ON CONFLICT DO NOTHING, so two concurrent acquirers cannot both win.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def acquire(self, lease_key: str, holder: str, ttl_seconds: int) -> str | None:
        now = utcnow()

        reap = delete(ReconciliationLease).where(
            ReconciliationLease.lease_key == lease_key,
            ReconciliationLease.expires_at < now,
        )
        await self._session.execute(reap)

        token = uuid.uuid4().hex
        result = await insert_or_ignore(
            self._session,
            ReconciliationLease,
            values={
                "id": uuid.uuid4(),
                "lease_key": lease_key,
                "token": token,
                "holder": holder,
                "acquired_at": now,
                "expires_at": now + timedelta(seconds=ttl_seconds),
                "ttl_seconds": ttl_seconds,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["lease_key"],
        )
        await self._session.flush()
        if not result.rowcount:
            return None
        return token

    async def release(self, lease_key: str, token: str) -> bool:
        stmt = delete(ReconciliationLease).where(
            ReconciliationLease.lease_key == lease_key,
            ReconciliationLease.token == token,
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return bool(result.rowcount)

    async def is_held(self, lease_key: str) -> bool:
        query = select(ReconciliationLease.id).where(
            ReconciliationLease.lease_key == lease_key,
            ReconciliationLease.expires_at >= utcnow(),
        )
        result = await self._session.execute(query)
        return result.first() is not None

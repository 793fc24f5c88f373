"""Shared test fixtures for msp-billing-recon tests."""

import sys
from pathlib import Path

# Ensure the src/ layout is importable without installing the package.
_SRC_PATH = Path(__file__).parent.parent / "src"
if str(_SRC_PATH) not in sys.path:
    sys.path.insert(0, str(_SRC_PATH))

import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field, replace
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from msp_billing_recon.adapters.repositories import (
    ActivityRepository,
    AssignmentRepository,
    BillingLineRepository,
    CompanyRepository,
    IntegrationMappingRepository,
    ItemRepository,
    LeaseRepository,
    ProductMappingRepository,
    SnapshotRepository,
    SqlUnitOfWork,
    VendorProductRepository,
)
from msp_billing_recon.core import models  # noqa: F401  registers all ORM models
from msp_billing_recon.core.aggregator import VendorCountAggregator
from msp_billing_recon.core.models import Company, CompanyIntegrationMapping, ProductMapping
from msp_billing_recon.core.services import (
    ActivityRecorder,
    BatchReconciliationService,
    CompanyLeaseGuard,
    ItemResolutionService,
    ProductMappingService,
    PsaWriteBackCoordinator,
    ReconciliationEngine,
    SnapshotQueryService,
    VendorCatalogService,
)
from msp_billing_recon.core.types import PsaBillingLine, VendorCount
from msp_billing_recon.database import Base
from msp_billing_recon.errors import PsaClientError
from msp_billing_recon.settings import Settings
from msp_billing_recon.sources import VendorSourceRegistry


@pytest.fixture
def settings() -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        lease_ttl_seconds=60,
        psa_match_mode="substring",
        bulk_vendor_fetch=False,
        connectwise_base_url="https://cw.test/v4_6_release/apis/3.0",
        connectwise_company_id="acmemsp",
        connectwise_public_key="pub",
        connectwise_private_key="priv",
        connectwise_client_id="client-123",
        psa_page_size=2,
        psa_min_request_interval_seconds=0.0,
    )


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide an async session backed by an in-memory SQLite database."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


class FakePsaClient:
    """In-memory PSA: serves billing lines per company and records quantity updates."""

    def __init__(self) -> None:
        self.lines: dict[str, list[PsaBillingLine]] = {}
        self.updates: list[tuple[str, str, float]] = []
        self.fail_reads = False
        self.fail_updates = False

    async def list_billing_lines(self, company_external_id: str) -> list[PsaBillingLine]:
        if self.fail_reads:
            raise PsaClientError("PSA unavailable", status=503)
        return list(self.lines.get(company_external_id, []))

    async def update_line_quantity(self, external_agreement_id: str, external_line_id: str, new_quantity: float) -> None:
        if self.fail_updates:
            raise PsaClientError("PSA rejected the update", status=400)
        self.updates.append((external_agreement_id, external_line_id, new_quantity))
        for company_lines in self.lines.values():
            for index, line in enumerate(company_lines):
                if line.external_line_id == external_line_id:
                    company_lines[index] = replace(line, quantity=new_quantity)


class StaticCountSource:
    """Count source returning fixed counts per external id; selected ids can fail."""

    def __init__(self, vendor_id: str, counts: dict[str, dict[str, int]] | None = None) -> None:
        self.vendor_id = vendor_id
        self.counts: dict[str, dict[str, int]] = counts or {}
        self.failing_ids: set[str] = set()
        self.fail_all = False
        self.fetch_all_calls = 0
        self.fetch_for_company_calls = 0

    def _records(self, external_id: str) -> list[VendorCount]:
        return [
            VendorCount(
                vendor_id=self.vendor_id,
                product_key=key,
                product_name=f"{self.vendor_id.title()} {key}",
                count=count,
                unit="devices",
                company_external_id=external_id,
            )
            for key, count in self.counts.get(external_id, {}).items()
        ]

    async def fetch_for_company(self, external_id: str) -> list[VendorCount]:
        self.fetch_for_company_calls += 1
        if self.fail_all or external_id in self.failing_ids:
            raise RuntimeError(f"{self.vendor_id} API timed out")
        return self._records(external_id)

    async def fetch_all(self) -> dict[str, list[VendorCount]]:
        self.fetch_all_calls += 1
        if self.fail_all:
            raise RuntimeError(f"{self.vendor_id} API timed out")
        return {external_id: self._records(external_id) for external_id in self.counts}


@dataclass
class ReconHarness:
    """Real repositories and services over one SQLite session."""

    session: AsyncSession
    settings: Settings
    psa: FakePsaClient
    registry: VendorSourceRegistry = field(default_factory=VendorSourceRegistry)

    def __post_init__(self) -> None:
        session = self.session
        self.uow = SqlUnitOfWork(session)
        self.companies = CompanyRepository(session)
        self.integrations = IntegrationMappingRepository(session)
        self.mappings = ProductMappingRepository(session)
        self.vendor_products = VendorProductRepository(session)
        self.assignments = AssignmentRepository(session)
        self.billing_lines = BillingLineRepository(session)
        self.snapshots = SnapshotRepository(session)
        self.items = ItemRepository(session)
        self.activity_repo = ActivityRepository(session)
        self.leases = LeaseRepository(session)
        self.activity = ActivityRecorder(self.activity_repo)
        self.aggregator = VendorCountAggregator(self.registry, self.integrations)
        self.lease_guard = CompanyLeaseGuard(self.leases, self.uow, self.settings.lease_ttl_seconds)

    def engine(self, item_repo: Any = None) -> ReconciliationEngine:
        return ReconciliationEngine(
            company_repo=self.companies,
            billing_line_repo=self.billing_lines,
            mapping_repo=self.mappings,
            vendor_product_repo=self.vendor_products,
            assignment_repo=self.assignments,
            snapshot_repo=self.snapshots,
            item_repo=item_repo or self.items,
            activity=self.activity,
            aggregator=self.aggregator,
            psa_client=self.psa,
            lease_guard=self.lease_guard,
            uow=self.uow,
            settings=self.settings,
        )

    def write_back(self) -> PsaWriteBackCoordinator:
        return PsaWriteBackCoordinator(
            item_repo=self.items,
            integration_repo=self.integrations,
            billing_line_repo=self.billing_lines,
            company_repo=self.companies,
            activity=self.activity,
            aggregator=self.aggregator,
            psa_client=self.psa,
            lease_guard=self.lease_guard,
            uow=self.uow,
        )

    def resolution(self) -> ItemResolutionService:
        return ItemResolutionService(
            item_repo=self.items,
            company_repo=self.companies,
            activity=self.activity,
            uow=self.uow,
        )

    def batch(self) -> BatchReconciliationService:
        return BatchReconciliationService(
            engine=self.engine(),
            company_repo=self.companies,
            aggregator=self.aggregator,
            settings=self.settings,
        )

    def queries(self) -> SnapshotQueryService:
        return SnapshotQueryService(snapshot_repo=self.snapshots, item_repo=self.items, company_repo=self.companies)

    def mapping_service(self) -> ProductMappingService:
        return ProductMappingService(
            mapping_repo=self.mappings,
            vendor_product_repo=self.vendor_products,
            uow=self.uow,
        )

    def catalog(self) -> VendorCatalogService:
        return VendorCatalogService(
            vendor_product_repo=self.vendor_products,
            assignment_repo=self.assignments,
            company_repo=self.companies,
            uow=self.uow,
        )

    async def add_company(
        self,
        company_id: str,
        name: str,
        psa_external_id: str | None = None,
        sync_enabled: bool = True,
        vendors: dict[str, str] | None = None,
    ) -> Company:
        """Insert a company and its vendor identifiers (vendor_id -> external id)."""
        company = Company(id=company_id, name=name, psa_external_id=psa_external_id, sync_enabled=sync_enabled)
        self.session.add(company)
        for vendor_id, external_id in (vendors or {}).items():
            self.session.add(
                CompanyIntegrationMapping(company_id=company_id, vendor_id=vendor_id, external_id=external_id)
            )
        await self.session.commit()
        return company

    async def add_mapping(
        self,
        vendor_id: str,
        vendor_product_key: str,
        psa_product_name: str | None,
        is_active: bool = True,
    ) -> ProductMapping:
        mapping = ProductMapping(
            id=uuid.uuid4(),
            vendor_id=vendor_id,
            vendor_product_key=vendor_product_key,
            vendor_product_name=vendor_product_key,
            psa_product_name=psa_product_name,
            is_active=is_active,
        )
        self.session.add(mapping)
        await self.session.commit()
        return mapping


@pytest.fixture
def psa_client() -> FakePsaClient:
    return FakePsaClient()


@pytest.fixture
def harness(db_session: AsyncSession, settings: Settings, psa_client: FakePsaClient) -> ReconHarness:
    """Services wired to real repositories over the in-memory database."""
    return ReconHarness(session=db_session, settings=settings, psa=psa_client)


@pytest.fixture
def make_source():
    """Factory for StaticCountSource instances."""

    def _make(vendor_id: str, counts: dict[str, dict[str, int]] | None = None) -> StaticCountSource:
        return StaticCountSource(vendor_id, counts)

    return _make


def psa_line(
    external_line_id: str,
    product_name: str,
    quantity: float,
    unit_price: float | None = None,
    agreement_id: str = "AGR-1",
    agreement_name: str = "Managed Services",
    billable: bool = True,
    cancelled: bool = False,
) -> PsaBillingLine:
    """Build a PsaBillingLine with agreement defaults."""
    return PsaBillingLine(
        agreement_id=agreement_id,
        agreement_name=agreement_name,
        external_agreement_id=agreement_id,
        external_line_id=external_line_id,
        product_name=product_name,
        quantity=quantity,
        unit_price=unit_price,
        billable=billable,
        cancelled=cancelled,
    )


@pytest.fixture
def make_line():
    """Factory for PsaBillingLine instances."""
    return psa_line


@pytest_asyncio.fixture
async def acme(harness: ReconHarness, make_source) -> StaticCountSource:
    """Acme: 12 NinjaOne servers, billed 10 at 5.00 on one agreement line."""
    source = make_source("ninjaone", {"org-1": {"servers": 12}})
    harness.registry.register(source)
    await harness.add_company("acme", "Acme Corp", psa_external_id="cw-100", vendors={"ninjaone": "org-1"})
    await harness.add_mapping("ninjaone", "servers", "Managed Server")
    harness.psa.lines["cw-100"] = [psa_line("L-1", "Managed Server", 10, unit_price=5.0)]
    return source

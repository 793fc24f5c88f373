"""FastAPI router for the billing reconciliation API.

All routes are thin: they validate inputs, call services, and return
Pydantic response models. No business logic belongs here. The acting
operator is taken from the X-Actor-Id header; authentication happens
upstream of this service.

Endpoints:
  POST   /api/v1/billing/reconcile/{company_id}        Reconcile one company
  POST   /api/v1/billing/reconcile                     Reconcile every sync-enabled company
  POST   /api/v1/billing/items/{item_id}/resolve       Approve or dismiss one item
  POST   /api/v1/billing/items/resolve                 Approve or dismiss several items
  POST   /api/v1/billing/items/{item_id}/write-back    Push the live count of one item to the PSA
  POST   /api/v1/billing/items/write-back              Push live counts of several items to the PSA
  GET    /api/v1/billing/snapshots/{snapshot_id}/items Items of a reconciliation snapshot
  GET    /api/v1/billing/companies/{company_id}/activity  Billing-change history of a company
  GET    /api/v1/billing/mappings                      List product mappings
  POST   /api/v1/billing/mappings                      Create a product mapping
  PATCH  /api/v1/billing/mappings/{mapping_id}         Update a product mapping
  DELETE /api/v1/billing/mappings/{mapping_id}         Delete a product mapping
  GET    /api/v1/billing/summary                       Totals across every company's latest snapshot
  GET    /api/v1/billing/companies/{company_id}/reconciliation  Latest completed snapshot with items
  GET    /api/v1/billing/companies/{company_id}/snapshots       Snapshot history of a company
  GET    /api/v1/billing/vendor-products               List the vendor product catalog
  PATCH  /api/v1/billing/vendor-products/{product_id}  Activate or deactivate a catalog product
  GET    /api/v1/billing/companies/{company_id}/assignments     Products assigned to a company
  POST   /api/v1/billing/companies/{company_id}/assignments     Assign a product to a company
  DELETE /api/v1/billing/assignments/{assignment_id}   Remove a product assignment
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from msp_billing_recon.adapters.connectwise_client import ConnectWiseClient
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
from msp_billing_recon.api.schemas import (
    ActivityEntryResponse,
    AssignedProductResponse,
    AssignProductRequest,
    BatchEntryResponse,
    BulkResolveRequest,
    BulkWriteBackRequest,
    CompanyReconciliationResponse,
    CreateMappingRequest,
    ProductMappingResponse,
    ReconciliationItemResponse,
    ReconciliationResultResponse,
    ReconciliationSummaryResponse,
    ResolutionOutcomeResponse,
    ResolveItemRequest,
    SnapshotResponse,
    ToggleVendorProductRequest,
    UpdateMappingRequest,
    VendorProductResponse,
    WriteBackResultResponse,
)
from msp_billing_recon.core.aggregator import VendorCountAggregator
from msp_billing_recon.core.interfaces import IPsaClient
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
from msp_billing_recon.database import get_db_session
from msp_billing_recon.settings import Settings
from msp_billing_recon.sources import VendorSourceRegistry

router = APIRouter(prefix="/billing", tags=["billing"])
settings = Settings()


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_actor_id(x_actor_id: Annotated[str | None, Header()] = None) -> str | None:
    """Operator id from the X-Actor-Id header, if present."""
    return x_actor_id or None


def get_source_registry(request: Request) -> VendorSourceRegistry:
    """The vendor source registry built at startup."""
    return request.app.state.source_registry


def get_psa_client() -> IPsaClient:
    """The PSA collaborator used for line reads and write-back."""
    return ConnectWiseClient(settings)


def _build_engine(session: AsyncSession, registry: VendorSourceRegistry, psa_client: IPsaClient) -> ReconciliationEngine:
    uow = SqlUnitOfWork(session)
    return ReconciliationEngine(
        company_repo=CompanyRepository(session),
        billing_line_repo=BillingLineRepository(session),
        mapping_repo=ProductMappingRepository(session),
        vendor_product_repo=VendorProductRepository(session),
        assignment_repo=AssignmentRepository(session),
        snapshot_repo=SnapshotRepository(session),
        item_repo=ItemRepository(session),
        activity=ActivityRecorder(ActivityRepository(session)),
        aggregator=VendorCountAggregator(registry, IntegrationMappingRepository(session)),
        psa_client=psa_client,
        lease_guard=CompanyLeaseGuard(LeaseRepository(session), uow, settings.lease_ttl_seconds),
        uow=uow,
        settings=settings,
    )


def _get_engine(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    registry: Annotated[VendorSourceRegistry, Depends(get_source_registry)],
    psa_client: Annotated[IPsaClient, Depends(get_psa_client)],
) -> ReconciliationEngine:
    """Build ReconciliationEngine with all required dependencies."""
    return _build_engine(session, registry, psa_client)


def _get_batch_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    registry: Annotated[VendorSourceRegistry, Depends(get_source_registry)],
    psa_client: Annotated[IPsaClient, Depends(get_psa_client)],
) -> BatchReconciliationService:
    """Build BatchReconciliationService with all required dependencies."""
    return BatchReconciliationService(
        engine=_build_engine(session, registry, psa_client),
        company_repo=CompanyRepository(session),
        aggregator=VendorCountAggregator(registry, IntegrationMappingRepository(session)),
        settings=settings,
    )


def _get_write_back_coordinator(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    registry: Annotated[VendorSourceRegistry, Depends(get_source_registry)],
    psa_client: Annotated[IPsaClient, Depends(get_psa_client)],
) -> PsaWriteBackCoordinator:
    """Build PsaWriteBackCoordinator with all required dependencies."""
    uow = SqlUnitOfWork(session)
    integration_repo = IntegrationMappingRepository(session)
    return PsaWriteBackCoordinator(
        item_repo=ItemRepository(session),
        integration_repo=integration_repo,
        billing_line_repo=BillingLineRepository(session),
        company_repo=CompanyRepository(session),
        activity=ActivityRecorder(ActivityRepository(session)),
        aggregator=VendorCountAggregator(registry, integration_repo),
        psa_client=psa_client,
        lease_guard=CompanyLeaseGuard(LeaseRepository(session), uow, settings.lease_ttl_seconds),
        uow=uow,
    )


def _get_resolution_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> ItemResolutionService:
    """Build ItemResolutionService with all required dependencies."""
    return ItemResolutionService(
        item_repo=ItemRepository(session),
        company_repo=CompanyRepository(session),
        activity=ActivityRecorder(ActivityRepository(session)),
        uow=SqlUnitOfWork(session),
    )


def _get_snapshot_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> SnapshotQueryService:
    return SnapshotQueryService(
        snapshot_repo=SnapshotRepository(session),
        item_repo=ItemRepository(session),
        company_repo=CompanyRepository(session),
    )


def _get_activity_recorder(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> ActivityRecorder:
    return ActivityRecorder(ActivityRepository(session))


def _get_mapping_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> ProductMappingService:
    return ProductMappingService(
        mapping_repo=ProductMappingRepository(session),
        vendor_product_repo=VendorProductRepository(session),
        uow=SqlUnitOfWork(session),
    )


def _get_catalog_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> VendorCatalogService:
    return VendorCatalogService(
        vendor_product_repo=VendorProductRepository(session),
        assignment_repo=AssignmentRepository(session),
        company_repo=CompanyRepository(session),
        uow=SqlUnitOfWork(session),
    )


# ---------------------------------------------------------------------------
# Reconciliation endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/reconcile/{company_id}",
    response_model=ReconciliationResultResponse,
    summary="Reconcile one company",
)
async def reconcile_company(
    company_id: str,
    actor_id: Annotated[str | None, Depends(get_actor_id)] = None,
    engine: Annotated[ReconciliationEngine, Depends(_get_engine)] = ...,
) -> ReconciliationResultResponse:
    """Compare live vendor usage against PSA billing and persist a snapshot.

    Returns 409 when a reconciliation or write-back for the company is
    already running.
    """
    result = await engine.reconcile(company_id, actor_id=actor_id)
    return ReconciliationResultResponse.model_validate(result)


@router.post(
    "/reconcile",
    response_model=list[BatchEntryResponse],
    summary="Reconcile every sync-enabled company",
)
async def reconcile_all(
    actor_id: Annotated[str | None, Depends(get_actor_id)] = None,
    service: Annotated[BatchReconciliationService, Depends(_get_batch_service)] = ...,
) -> list[BatchEntryResponse]:
    """Reconcile companies sequentially; per-company failures are reported, not raised."""
    entries = await service.reconcile_all(actor_id=actor_id)
    return [BatchEntryResponse.model_validate(entry) for entry in entries]


@router.get(
    "/snapshots/{snapshot_id}/items",
    response_model=list[ReconciliationItemResponse],
    summary="List the items of a snapshot",
)
async def list_snapshot_items(
    snapshot_id: uuid.UUID,
    status: Annotated[str | None, Query(description="pending | approved | dismissed | adjusted")] = None,
    service: Annotated[SnapshotQueryService, Depends(_get_snapshot_service)] = ...,
) -> list[ReconciliationItemResponse]:
    items = await service.list_items(snapshot_id, status=status)
    return [ReconciliationItemResponse.model_validate(item) for item in items]


@router.get(
    "/summary",
    response_model=ReconciliationSummaryResponse,
    summary="Totals across every company's latest snapshot",
)
async def get_summary(
    service: Annotated[SnapshotQueryService, Depends(_get_snapshot_service)] = ...,
) -> ReconciliationSummaryResponse:
    """Pending discrepancies and revenue impact from each company's newest completed run."""
    summary = await service.summary()
    return ReconciliationSummaryResponse.model_validate(summary)


@router.get(
    "/companies/{company_id}/reconciliation",
    response_model=CompanyReconciliationResponse,
    summary="Latest completed snapshot of a company, with items",
)
async def get_company_reconciliation(
    company_id: str,
    service: Annotated[SnapshotQueryService, Depends(_get_snapshot_service)] = ...,
) -> CompanyReconciliationResponse:
    snapshot, items = await service.latest_for_company(company_id)
    return CompanyReconciliationResponse(
        company_id=company_id,
        snapshot=SnapshotResponse.model_validate(snapshot) if snapshot is not None else None,
        last_snapshot_at=snapshot.created_at if snapshot is not None else None,
        items=[ReconciliationItemResponse.model_validate(item) for item in items],
    )


@router.get(
    "/companies/{company_id}/snapshots",
    response_model=list[SnapshotResponse],
    summary="Snapshot history of a company",
)
async def list_company_snapshots(
    company_id: str,
    limit: Annotated[int, Query(ge=1, le=200)] = 20,
    service: Annotated[SnapshotQueryService, Depends(_get_snapshot_service)] = ...,
) -> list[SnapshotResponse]:
    """Runs of any status, newest first; failed runs carry the error in their summary."""
    snapshots = await service.company_history(company_id, limit=limit)
    return [SnapshotResponse.model_validate(snapshot) for snapshot in snapshots]


# ---------------------------------------------------------------------------
# Item endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/items/resolve",
    response_model=list[ResolutionOutcomeResponse],
    summary="Approve or dismiss several items",
)
async def resolve_items(
    request: BulkResolveRequest,
    actor_id: Annotated[str | None, Depends(get_actor_id)] = None,
    service: Annotated[ItemResolutionService, Depends(_get_resolution_service)] = ...,
) -> list[ResolutionOutcomeResponse]:
    outcomes = await service.resolve_many(request.item_ids, request.action, actor_id=actor_id, note=request.note)
    return [ResolutionOutcomeResponse.model_validate(outcome) for outcome in outcomes]


@router.post(
    "/items/{item_id}/resolve",
    response_model=ReconciliationItemResponse,
    summary="Approve or dismiss one item",
)
async def resolve_item(
    item_id: uuid.UUID,
    request: ResolveItemRequest,
    actor_id: Annotated[str | None, Depends(get_actor_id)] = None,
    service: Annotated[ItemResolutionService, Depends(_get_resolution_service)] = ...,
) -> ReconciliationItemResponse:
    """Only pending items can be resolved; anything else returns 409."""
    item = await service.resolve(item_id, request.action, actor_id=actor_id, note=request.note)
    return ReconciliationItemResponse.model_validate(item)


@router.post(
    "/items/write-back",
    response_model=list[WriteBackResultResponse],
    summary="Push live counts of several items to the PSA",
)
async def write_back_items(
    request: BulkWriteBackRequest,
    actor_id: Annotated[str | None, Depends(get_actor_id)] = None,
    coordinator: Annotated[PsaWriteBackCoordinator, Depends(_get_write_back_coordinator)] = ...,
) -> list[WriteBackResultResponse]:
    """Items are written back one at a time; each failure is reported in its result."""
    results = await coordinator.write_back_many(request.item_ids, actor_id=actor_id)
    return [WriteBackResultResponse.model_validate(result) for result in results]


@router.post(
    "/items/{item_id}/write-back",
    response_model=WriteBackResultResponse,
    summary="Push the live vendor count of one item to the PSA",
)
async def write_back_item(
    item_id: uuid.UUID,
    actor_id: Annotated[str | None, Depends(get_actor_id)] = None,
    coordinator: Annotated[PsaWriteBackCoordinator, Depends(_get_write_back_coordinator)] = ...,
) -> WriteBackResultResponse:
    """Re-read the vendor count, update the linked PSA line and mark the item adjusted."""
    result = await coordinator.write_back(item_id, actor_id=actor_id)
    return WriteBackResultResponse.model_validate(result)


# ---------------------------------------------------------------------------
# Activity endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/companies/{company_id}/activity",
    response_model=list[ActivityEntryResponse],
    summary="Billing-change history of a company",
)
async def get_company_activity(
    company_id: str,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    recorder: Annotated[ActivityRecorder, Depends(_get_activity_recorder)] = ...,
) -> list[ActivityEntryResponse]:
    entries = await recorder.history(company_id, limit=limit, offset=offset)
    return [ActivityEntryResponse.model_validate(entry) for entry in entries]


# ---------------------------------------------------------------------------
# Mapping endpoints
# ---------------------------------------------------------------------------


@router.get("/mappings", response_model=list[ProductMappingResponse], summary="List product mappings")
async def list_mappings(
    vendor_id: Annotated[str | None, Query()] = None,
    service: Annotated[ProductMappingService, Depends(_get_mapping_service)] = ...,
) -> list[ProductMappingResponse]:
    mappings = await service.list_mappings(vendor_id)
    return [ProductMappingResponse.model_validate(mapping) for mapping in mappings]


@router.post(
    "/mappings",
    response_model=ProductMappingResponse,
    status_code=201,
    summary="Create a product mapping",
)
async def create_mapping(
    request: CreateMappingRequest,
    service: Annotated[ProductMappingService, Depends(_get_mapping_service)] = ...,
) -> ProductMappingResponse:
    """Returns 409 when the vendor product key is already mapped."""
    mapping = await service.create_mapping(
        vendor_id=request.vendor_id,
        vendor_product_key=request.vendor_product_key,
        psa_product_name=request.psa_product_name,
        vendor_product_name=request.vendor_product_name,
        count_method=request.count_method,
        unit_label=request.unit_label,
        notes=request.notes,
    )
    return ProductMappingResponse.model_validate(mapping)


@router.patch("/mappings/{mapping_id}", response_model=ProductMappingResponse, summary="Update a product mapping")
async def update_mapping(
    mapping_id: uuid.UUID,
    request: UpdateMappingRequest,
    service: Annotated[ProductMappingService, Depends(_get_mapping_service)] = ...,
) -> ProductMappingResponse:
    mapping = await service.update_mapping(mapping_id, request.changes())
    return ProductMappingResponse.model_validate(mapping)


@router.delete("/mappings/{mapping_id}", status_code=204, summary="Delete a product mapping")
async def delete_mapping(
    mapping_id: uuid.UUID,
    service: Annotated[ProductMappingService, Depends(_get_mapping_service)] = ...,
) -> Response:
    await service.delete_mapping(mapping_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Vendor catalog and assignment endpoints
# ---------------------------------------------------------------------------


@router.get("/vendor-products", response_model=list[VendorProductResponse], summary="List the vendor product catalog")
async def list_vendor_products(
    vendor_id: Annotated[str | None, Query()] = None,
    include_inactive: Annotated[bool, Query()] = False,
    service: Annotated[VendorCatalogService, Depends(_get_catalog_service)] = ...,
) -> list[VendorProductResponse]:
    products = await service.list_products(vendor_id, include_inactive=include_inactive)
    return [VendorProductResponse.model_validate(product) for product in products]


@router.patch(
    "/vendor-products/{product_id}",
    response_model=VendorProductResponse,
    summary="Activate or deactivate a catalog product",
)
async def toggle_vendor_product(
    product_id: uuid.UUID,
    request: ToggleVendorProductRequest,
    service: Annotated[VendorCatalogService, Depends(_get_catalog_service)] = ...,
) -> VendorProductResponse:
    product = await service.set_product_active(product_id, request.is_active)
    return VendorProductResponse.model_validate(product)


@router.get(
    "/companies/{company_id}/assignments",
    response_model=list[AssignedProductResponse],
    summary="Products assigned to a company",
)
async def list_company_assignments(
    company_id: str,
    service: Annotated[VendorCatalogService, Depends(_get_catalog_service)] = ...,
) -> list[AssignedProductResponse]:
    assignments = await service.list_assignments(company_id)
    return [AssignedProductResponse.model_validate(assignment) for assignment in assignments]


@router.post(
    "/companies/{company_id}/assignments",
    response_model=AssignedProductResponse,
    status_code=201,
    summary="Assign a catalog product to a company",
)
async def assign_product(
    company_id: str,
    request: AssignProductRequest,
    service: Annotated[VendorCatalogService, Depends(_get_catalog_service)] = ...,
) -> AssignedProductResponse:
    """Returns 409 when the company already has the product."""
    assignment = await service.assign_product(company_id, request.vendor_product_id)
    return AssignedProductResponse.model_validate(assignment)


@router.delete("/assignments/{assignment_id}", status_code=204, summary="Remove a product assignment")
async def remove_assignment(
    assignment_id: uuid.UUID,
    service: Annotated[VendorCatalogService, Depends(_get_catalog_service)] = ...,
) -> Response:
    await service.remove_assignment(assignment_id)
    return Response(status_code=204)

"""Business logic services for the MSP billing reconciliation engine.

All services depend on repository and adapter interfaces (not concrete
implementations) and receive dependencies via constructor injection.
No framework code (FastAPI, SQLAlchemy) belongs here.

Key invariants:
- ReconciliationEngine: every item satisfies discrepancy == vendor_qty - psa_qty,
  a matched item is approved at creation iff its discrepancy is zero, and an
  item with no matching PSA line always starts pending.
- ActivityRecorder: activity entries are only ever appended.
- PsaWriteBackCoordinator: pushes a live vendor count, never a snapshot value.
- CompanyLeaseGuard: reconcile and write-back never overlap for one company,
  and the lease is released on every exit path.
"""

import re
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from msp_billing_recon.core.aggregator import VendorCountAggregator
from msp_billing_recon.core.interfaces import (
    IActivityRepository,
    IAssignmentRepository,
    IBillingLineRepository,
    ICompanyRepository,
    IIntegrationMappingRepository,
    IItemRepository,
    ILeaseRepository,
    IProductMappingRepository,
    IPsaClient,
    ISnapshotRepository,
    IUnitOfWork,
    IVendorProductRepository,
)
from msp_billing_recon.core.models import (
    ActivityAction,
    ActivityResult,
    BillingActivityEntry,
    CompanyProductAssignment,
    ItemStatus,
    ProductMapping,
    ReconciliationItem,
    ReconciliationSnapshot,
    SnapshotStatus,
    VendorProduct,
)
from msp_billing_recon.core.types import (
    ActivityDraft,
    AggregationReport,
    AssignedProduct,
    BatchEntry,
    ReconciliationResult,
    ReconciliationSummary,
    ResolutionOutcome,
    SourceFailure,
    VendorCount,
    WriteBackResult,
)
from msp_billing_recon.database import utcnow
from msp_billing_recon.errors import ConflictError, LeaseBusyError, NotFoundError, PreconditionError, PsaClientError
from msp_billing_recon.observability import get_logger
from msp_billing_recon.settings import Settings
from msp_billing_recon.sources import KNOWN_VENDOR_PRODUCTS

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"

_WORD = re.compile(r"[a-z0-9]+")


def _words(text: str) -> set[str]:
    return set(_WORD.findall(text.lower()))


def _fmt_qty(value: float) -> str:
    return f"{value:g}"


def match_billing_lines(psa_product_name: str, lines: Sequence[Any], mode: str = "substring") -> list[Any]:
    """Select the PSA lines billed under a mapped product name.

    Args:
        psa_product_name: Product name from the ProductMapping.
        lines: Candidate billing lines (anything with a product_name), in a
            stable order; the returned list preserves it.
        mode: substring (case-insensitive containment), exact
            (case-insensitive equality) or tokens (every word of the mapped
            name appears as a whole word of the line's name).

    Returns:
        The matching lines.
    """
    needle = psa_product_name.lower().strip()
    if not needle:
        return []

    if mode == "exact":
        return [line for line in lines if line.product_name.lower().strip() == needle]
    if mode == "tokens":
        wanted = _words(needle)
        return [line for line in lines if wanted and wanted <= _words(line.product_name)]
    return [line for line in lines if needle in line.product_name.lower()]


class ProductMappingResolver:
    """Resolve a vendor product key to the mappings that apply to it.

    An exact (vendor_id, product_key) mapping wins. Without one, every active
    wildcard mapping of the vendor applies. Inactive mappings and mappings
    without a PSA product name are never returned.
    """

    def __init__(self, mappings: Iterable[ProductMapping]) -> None:
        self._exact: dict[tuple[str, str], list[ProductMapping]] = {}
        self._wildcards: dict[str, list[ProductMapping]] = {}
        for mapping in mappings:
            if not mapping.is_active or not mapping.psa_product_name:
                continue
            if mapping.is_wildcard:
                self._wildcards.setdefault(mapping.vendor_id, []).append(mapping)
            else:
                self._exact.setdefault((mapping.vendor_id, mapping.vendor_product_key), []).append(mapping)

    def resolve(self, vendor_id: str, product_key: str) -> list[ProductMapping]:
        exact = self._exact.get((vendor_id, product_key))
        if exact:
            return list(exact)
        return list(self._wildcards.get(vendor_id, []))


class ActivityRecorder:
    """Append-only writer and reader of the billing activity trail."""

    def __init__(self, activity_repo: IActivityRepository) -> None:
        self._activity = activity_repo

    async def record(self, draft: ActivityDraft) -> BillingActivityEntry:
        """Append one entry. Entries are never updated or deleted."""
        return await self._activity.create(BillingActivityEntry(**asdict(draft)))

    async def history(self, company_id: str, limit: int = 50, offset: int = 0) -> list[BillingActivityEntry]:
        """A company's billing-change history, newest first."""
        return await self._activity.list_for_company(company_id, limit=limit, offset=offset)


class CompanyLeaseGuard:
    """Serialise reconcile and write-back per company with an expiring lease.

    Usage:
        async with guard.hold(company_id, holder="reconcile:alice"):
            ...

    The acquire and the release are each committed immediately so other
    workers see them. A lease left behind by a crashed worker expires after
    ttl_seconds and is reaped by the next acquire.
    """

    def __init__(self, lease_repo: ILeaseRepository, uow: IUnitOfWork, ttl_seconds: int = 900) -> None:
        self._leases = lease_repo
        self._uow = uow
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def lease_key(company_id: str) -> str:
        return f"company:{company_id}"

    @asynccontextmanager
    async def hold(self, company_id: str, holder: str) -> AsyncIterator[str]:
        """Hold the company lease for the duration of the block.

        Raises:
            LeaseBusyError: If another holder owns an unexpired lease.
        """
        lease_key = self.lease_key(company_id)
        token = await self._leases.acquire(lease_key, holder, self._ttl_seconds)
        await self._uow.commit()
        if token is None:
            logger.info("lease_busy", lease_key=lease_key, holder=holder)
            raise LeaseBusyError(lease_key)

        try:
            yield token
        finally:
            released = await self._leases.release(lease_key, token)
            await self._uow.commit()
            if not released:
                logger.warning("lease_expired_before_release", lease_key=lease_key, holder=holder)


@dataclass
class _RunTally:
    """Running totals of one reconciliation run."""

    total_items: int = 0
    discrepancies: int = 0
    total_revenue_impact: float = 0.0
    vendor_failures: list[SourceFailure] = field(default_factory=list)

    def add(self, discrepancy: float, revenue_impact: float | None) -> None:
        self.total_items += 1
        if discrepancy != 0:
            self.discrepancies += 1
        if revenue_impact is not None:
            self.total_revenue_impact += revenue_impact

    def summary(self) -> dict[str, Any]:
        return {
            "total_items": self.total_items,
            "discrepancies": self.discrepancies,
            "total_revenue_impact": self.total_revenue_impact,
            "matched_count": self.total_items - self.discrepancies,
            "vendor_failures": [failure.as_dict() for failure in self.vendor_failures],
        }


class ReconciliationEngine:
    """Compare vendor usage against PSA billing for one company.

    One call produces one ReconciliationSnapshot holding one item per
    (vendor count, applicable mapping) pair, plus one activity entry per
    item. Items and catalog writes of a run commit together at the end; if
    the run fails they are rolled back and the snapshot is marked failed
    with a partial summary before the error is re-raised.
    """

    def __init__(
        self,
        company_repo: ICompanyRepository,
        billing_line_repo: IBillingLineRepository,
        mapping_repo: IProductMappingRepository,
        vendor_product_repo: IVendorProductRepository,
        assignment_repo: IAssignmentRepository,
        snapshot_repo: ISnapshotRepository,
        item_repo: IItemRepository,
        activity: ActivityRecorder,
        aggregator: VendorCountAggregator,
        psa_client: IPsaClient | None,
        lease_guard: CompanyLeaseGuard,
        uow: IUnitOfWork,
        settings: Settings,
    ) -> None:
        self._companies = company_repo
        self._billing_lines = billing_line_repo
        self._mappings = mapping_repo
        self._vendor_products = vendor_product_repo
        self._assignments = assignment_repo
        self._snapshots = snapshot_repo
        self._items = item_repo
        self._activity = activity
        self._aggregator = aggregator
        self._psa = psa_client
        self._lease_guard = lease_guard
        self._uow = uow
        self._settings = settings

    async def reconcile(
        self,
        company_id: str,
        actor_id: str | None = None,
        report: AggregationReport | None = None,
    ) -> ReconciliationResult:
        """Run one reconciliation for a company.

        Args:
            company_id: The console company id.
            actor_id: Operator who triggered the run; None for scheduled runs.
            report: Pre-aggregated vendor counts (batch path). When None the
                company's vendors are queried now.

        Returns:
            ReconciliationResult summarising the persisted snapshot.

        Raises:
            LeaseBusyError: If a run or write-back is already in progress.
            NotFoundError: If the company does not exist.
        """
        triggered_by = actor_id or SYSTEM_ACTOR
        async with self._lease_guard.hold(company_id, holder=f"reconcile:{triggered_by}"):
            return await self._reconcile_locked(company_id, triggered_by, report)

    async def _reconcile_locked(
        self,
        company_id: str,
        triggered_by: str,
        report: AggregationReport | None,
    ) -> ReconciliationResult:
        company = await self._companies.get_by_id(company_id)
        if company is None:
            raise NotFoundError("Company", company_id)
        company_name = company.name
        psa_company_id = company.psa_external_id or company_id

        snapshot = await self._snapshots.create(
            ReconciliationSnapshot(company_id=company_id, triggered_by=triggered_by, status=SnapshotStatus.IN_PROGRESS)
        )
        snapshot_id = snapshot.id
        await self._uow.commit()
        logger.info("reconciliation_started", company_id=company_id, snapshot_id=str(snapshot_id))

        tally = _RunTally()
        psa_lines_source = "cache"
        try:
            psa_lines_source = await self._refresh_billing_lines(company_id, psa_company_id)
            lines = await self._billing_lines.list_active_for_company(company_id)

            if report is None:
                report = await self._aggregator.aggregate(company_id)
            tally.vendor_failures = list(report.failures)

            await self._record_assignments(company_id, report.counts)

            resolver = ProductMappingResolver(await self._mappings.list_active())
            for count in report.counts:
                for mapping in resolver.resolve(count.vendor_id, count.product_key):
                    item = await self._compare(snapshot_id, company_id, company_name, triggered_by, count, mapping, lines)
                    tally.add(item.discrepancy, item.revenue_impact)

            summary = {**tally.summary(), "psa_lines_source": psa_lines_source}
            await self._snapshots.finish(snapshot_id, SnapshotStatus.COMPLETED, summary)
            await self._uow.commit()
        except Exception as exc:
            await self._uow.rollback()
            failed_summary = {
                **tally.summary(),
                "psa_lines_source": psa_lines_source,
                "error": str(exc),
                "items_before_failure": tally.total_items,
            }
            await self._snapshots.finish(snapshot_id, SnapshotStatus.FAILED, failed_summary)
            await self._uow.commit()
            logger.error(
                "reconciliation_failed",
                company_id=company_id,
                snapshot_id=str(snapshot_id),
                items_before_failure=tally.total_items,
                error=str(exc),
            )
            raise

        logger.info(
            "reconciliation_completed",
            company_id=company_id,
            snapshot_id=str(snapshot_id),
            total_items=tally.total_items,
            discrepancies=tally.discrepancies,
            total_revenue_impact=tally.total_revenue_impact,
            vendor_failures=len(tally.vendor_failures),
        )
        return ReconciliationResult(
            snapshot_id=snapshot_id,
            company_id=company_id,
            company_name=company_name,
            total_items=tally.total_items,
            discrepancies=tally.discrepancies,
            total_revenue_impact=tally.total_revenue_impact,
            vendor_failures=tally.vendor_failures,
        )

    async def _refresh_billing_lines(self, company_id: str, psa_company_id: str) -> str:
        """Pull current lines from the PSA into the cache; returns the source used."""
        if self._psa is None:
            return "cache"
        try:
            psa_lines = await self._psa.list_billing_lines(psa_company_id)
        except PsaClientError as exc:
            logger.warning("psa_lines_unavailable_using_cache", company_id=company_id, error=str(exc))
            return "cache"
        refreshed = await self._billing_lines.refresh(company_id, psa_lines)
        logger.debug("billing_lines_refreshed", company_id=company_id, lines=refreshed)
        return "psa"

    async def _record_assignments(self, company_id: str, counts: list[VendorCount]) -> None:
        for count in counts:
            if count.count <= 0:
                continue
            product = await self._vendor_products.ensure(
                count.vendor_id, count.product_key, count.product_name, count.unit
            )
            await self._assignments.ensure(company_id, product.id)

    async def _compare(
        self,
        snapshot_id: uuid.UUID,
        company_id: str,
        company_name: str,
        triggered_by: str,
        count: VendorCount,
        mapping: ProductMapping,
        lines: Sequence[Any],
    ) -> ReconciliationItem:
        psa_product_name = mapping.psa_product_name or ""
        vendor_qty = float(count.count)
        matched = match_billing_lines(psa_product_name, lines, self._settings.psa_match_mode)

        if not matched:
            discrepancy = vendor_qty
            item = ReconciliationItem(
                snapshot_id=snapshot_id,
                company_id=company_id,
                vendor_id=count.vendor_id,
                vendor_product_key=count.product_key,
                vendor_product_name=count.product_name,
                product_name=psa_product_name,
                psa_qty=0.0,
                vendor_qty=vendor_qty,
                discrepancy=discrepancy,
                unit_price=None,
                revenue_impact=None,
                status=ItemStatus.PENDING,
            )
            agreement_name = None
            note = "No matching PSA line found"
        else:
            psa_qty = sum(line.quantity for line in matched)
            avg_price = sum(line.unit_price or 0.0 for line in matched) / len(matched)
            discrepancy = vendor_qty - psa_qty
            first = matched[0]
            item = ReconciliationItem(
                snapshot_id=snapshot_id,
                company_id=company_id,
                vendor_id=count.vendor_id,
                vendor_product_key=count.product_key,
                vendor_product_name=count.product_name,
                product_name=first.product_name,
                psa_qty=psa_qty,
                vendor_qty=vendor_qty,
                discrepancy=discrepancy,
                unit_price=avg_price,
                revenue_impact=discrepancy * avg_price,
                status=ItemStatus.APPROVED if discrepancy == 0 else ItemStatus.PENDING,
                linked_agreement_id=first.external_agreement_id,
                linked_line_id=first.external_line_id,
                linked_agreement_name=first.agreement_name,
            )
            agreement_name = first.agreement_name
            if discrepancy > 0:
                note = f"Underbilled by {_fmt_qty(discrepancy)}"
            elif discrepancy < 0:
                note = f"Overbilled by {_fmt_qty(abs(discrepancy))}"
            else:
                note = "Counts match"

        item = await self._items.create(item)

        if item.status == ItemStatus.APPROVED:
            action, result = ActivityAction.AUTO_APPROVED, ActivityResult.NO_ACTION
        else:
            action, result = ActivityAction.DETECTED, ActivityResult.PENDING

        await self._activity.record(
            ActivityDraft(
                company_id=company_id,
                company_name=company_name,
                agreement_name=agreement_name,
                product_name=item.product_name,
                vendor_id=count.vendor_id,
                vendor_product_name=count.product_name,
                psa_qty=item.psa_qty,
                vendor_qty=vendor_qty,
                change=discrepancy,
                action=action,
                result=result,
                result_note=note,
                actor_id=None if triggered_by == SYSTEM_ACTOR else triggered_by,
                snapshot_id=snapshot_id,
                item_id=item.id,
            )
        )
        return item


class PsaWriteBackCoordinator:
    """Push a freshly observed vendor count to the PSA for one item.

    The live count is re-read from the vendor at write time; the quantity
    stored on the snapshot item may be stale by then.
    """

    def __init__(
        self,
        item_repo: IItemRepository,
        integration_repo: IIntegrationMappingRepository,
        billing_line_repo: IBillingLineRepository,
        company_repo: ICompanyRepository,
        activity: ActivityRecorder,
        aggregator: VendorCountAggregator,
        psa_client: IPsaClient,
        lease_guard: CompanyLeaseGuard,
        uow: IUnitOfWork,
    ) -> None:
        self._items = item_repo
        self._integrations = integration_repo
        self._billing_lines = billing_line_repo
        self._companies = company_repo
        self._activity = activity
        self._aggregator = aggregator
        self._psa = psa_client
        self._lease_guard = lease_guard
        self._uow = uow

    async def write_back(self, item_id: uuid.UUID, actor_id: str | None = None) -> WriteBackResult:
        """Set the linked PSA line to the vendor's live count.

        Raises:
            NotFoundError: If the item does not exist.
            PreconditionError: If the item has no linked PSA line, or its
                company has no identifier for the item's vendor.
            LeaseBusyError: If a run or write-back holds the company lease.
        """
        item = await self._items.get_by_id(item_id)
        if item is None:
            raise NotFoundError("ReconciliationItem", item_id)
        if not item.linked_agreement_id or not item.linked_line_id:
            raise PreconditionError(f"Item {item_id} has no linked PSA agreement line to write back to")

        integration = await self._integrations.get_for_company_vendor(item.company_id, item.vendor_id)
        if integration is None:
            raise PreconditionError(
                f"Company {item.company_id} has no integration mapping for vendor '{item.vendor_id}'"
            )
        external_id = integration.external_id

        holder = f"write_back:{actor_id or SYSTEM_ACTOR}"
        async with self._lease_guard.hold(item.company_id, holder=holder):
            try:
                return await self._push(item, external_id, actor_id)
            except Exception:
                await self._uow.rollback()
                raise

    async def write_back_many(self, item_ids: list[uuid.UUID], actor_id: str | None = None) -> list[WriteBackResult]:
        """Write back each item in turn; a failure is reported, not raised."""
        results: list[WriteBackResult] = []
        for item_id in item_ids:
            try:
                results.append(await self.write_back(item_id, actor_id))
            except Exception as exc:
                logger.warning("write_back_failed", item_id=str(item_id), error=str(exc))
                results.append(WriteBackResult(item_id=item_id, old_qty=0.0, new_qty=0.0, error=str(exc)))
        return results

    async def _push(self, item: ReconciliationItem, external_id: str, actor_id: str | None) -> WriteBackResult:
        item_id = item.id
        company_id = item.company_id
        old_qty = item.psa_qty
        new_qty = float(await self._aggregator.live_count(item.vendor_id, external_id, item.vendor_product_key))
        line_id = item.linked_line_id or ""
        product_name = item.product_name

        company = await self._companies.get_by_id(company_id)
        synced = ActivityDraft(
            company_id=company_id,
            company_name=company.name if company is not None else None,
            agreement_name=item.linked_agreement_name,
            product_name=product_name,
            vendor_id=item.vendor_id,
            vendor_product_name=item.vendor_product_name,
            psa_qty=old_qty,
            vendor_qty=new_qty,
            change=new_qty - old_qty,
            action=ActivityAction.SYNCED_TO_PSA,
            result=ActivityResult.SUCCESS,
            result_note=f"PSA quantity updated from {_fmt_qty(old_qty)} to {_fmt_qty(new_qty)}",
            actor_id=actor_id,
            snapshot_id=item.snapshot_id,
            item_id=item_id,
        )

        await self._psa.update_line_quantity(item.linked_agreement_id or "", line_id, new_qty)

        # The PSA line has changed; every path below appends a synced_to_psa entry.
        try:
            await self._billing_lines.update_quantity(line_id, new_qty)

            item.psa_qty = new_qty
            item.vendor_qty = new_qty
            item.discrepancy = 0.0
            item.revenue_impact = 0.0
            item.status = ItemStatus.ADJUSTED
            item.resolved_by = actor_id or SYSTEM_ACTOR
            item.resolved_at = utcnow()
            item.resolved_note = f"Synced to PSA: {_fmt_qty(old_qty)} -> {_fmt_qty(new_qty)}"
            await self._items.save(item)

            await self._activity.record(synced)
            await self._uow.commit()
        except Exception as exc:
            await self._uow.rollback()
            logger.error(
                "write_back_local_update_failed",
                item_id=str(item_id),
                company_id=company_id,
                old_qty=old_qty,
                new_qty=new_qty,
                error=str(exc),
            )
            await self._activity.record(
                replace(
                    synced,
                    result=ActivityResult.FAILED,
                    result_note=(
                        f"PSA quantity updated from {_fmt_qty(old_qty)} to {_fmt_qty(new_qty)}, "
                        f"but the local update failed: {exc}"
                    ),
                )
            )
            await self._uow.commit()
            raise

        logger.info(
            "write_back_completed",
            item_id=str(item_id),
            company_id=company_id,
            old_qty=old_qty,
            new_qty=new_qty,
        )
        return WriteBackResult(item_id=item_id, old_qty=old_qty, new_qty=new_qty, product_name=product_name)


class ItemResolutionService:
    """Operator approval or dismissal of pending reconciliation items."""

    _TRANSITIONS: dict[str, tuple[str, str]] = {
        "approve": (ItemStatus.APPROVED, ActivityAction.APPROVED),
        "dismiss": (ItemStatus.DISMISSED, ActivityAction.DISMISSED),
    }

    def __init__(
        self,
        item_repo: IItemRepository,
        company_repo: ICompanyRepository,
        activity: ActivityRecorder,
        uow: IUnitOfWork,
    ) -> None:
        self._items = item_repo
        self._companies = company_repo
        self._activity = activity
        self._uow = uow

    async def resolve(
        self,
        item_id: uuid.UUID,
        action: str,
        actor_id: str | None = None,
        note: str | None = None,
    ) -> ReconciliationItem:
        """Approve or dismiss one pending item.

        Args:
            item_id: The item to resolve.
            action: approve | dismiss
            actor_id: Operator performing the action.
            note: Optional free-text reason stored on the item and entry.

        Returns:
            The updated item.

        Raises:
            PreconditionError: If the action is unknown or the item is not pending.
            NotFoundError: If the item does not exist.
        """
        transition = self._TRANSITIONS.get(action)
        if transition is None:
            raise PreconditionError(f"Unsupported action '{action}'; expected approve or dismiss")
        new_status, activity_action = transition

        item = await self._items.get_by_id(item_id)
        if item is None:
            raise NotFoundError("ReconciliationItem", item_id)
        if item.status != ItemStatus.PENDING:
            raise PreconditionError(f"Item {item_id} is {item.status}; only pending items can be {new_status}")

        item.status = new_status
        item.resolved_by = actor_id or SYSTEM_ACTOR
        item.resolved_at = utcnow()
        item.resolved_note = note
        await self._items.save(item)

        company = await self._companies.get_by_id(item.company_id)
        await self._activity.record(
            ActivityDraft(
                company_id=item.company_id,
                company_name=company.name if company is not None else None,
                agreement_name=item.linked_agreement_name,
                product_name=item.product_name,
                vendor_id=item.vendor_id,
                vendor_product_name=item.vendor_product_name,
                psa_qty=item.psa_qty,
                vendor_qty=item.vendor_qty,
                change=item.discrepancy,
                action=activity_action,
                result=ActivityResult.SUCCESS,
                result_note=note or ("Approved by user" if action == "approve" else "Dismissed by user"),
                actor_id=actor_id,
                snapshot_id=item.snapshot_id,
                item_id=item.id,
            )
        )
        await self._uow.commit()

        logger.info("item_resolved", item_id=str(item_id), status=new_status, actor_id=actor_id)
        return item

    async def resolve_many(
        self,
        item_ids: list[uuid.UUID],
        action: str,
        actor_id: str | None = None,
        note: str | None = None,
    ) -> list[ResolutionOutcome]:
        """Resolve items one by one; each failure is rolled back and reported."""
        outcomes: list[ResolutionOutcome] = []
        for item_id in item_ids:
            try:
                item = await self.resolve(item_id, action, actor_id=actor_id, note=note or f"Bulk {action}")
            except Exception as exc:
                await self._uow.rollback()
                logger.warning("item_resolve_failed", item_id=str(item_id), error=str(exc))
                outcomes.append(ResolutionOutcome(item_id=item_id, error=str(exc)))
                continue
            outcomes.append(ResolutionOutcome(item_id=item_id, status=item.status))
        return outcomes


class BatchReconciliationService:
    """Reconcile every sync-enabled company, one after another."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        company_repo: ICompanyRepository,
        aggregator: VendorCountAggregator,
        settings: Settings,
    ) -> None:
        self._engine = engine
        self._companies = company_repo
        self._aggregator = aggregator
        self._settings = settings

    async def reconcile_all(self, actor_id: str | None = None) -> list[BatchEntry]:
        """Run reconcile() for each sync-enabled company.

        With bulk_vendor_fetch enabled the vendors are read once for all
        companies. A company whose run raises, or whose vendors failed to
        report, gets an entry with a non-null error; the batch continues.

        Returns:
            One BatchEntry per company, in processing order.
        """
        targets = [(company.id, company.name) for company in await self._companies.list_sync_enabled()]
        bulk = None
        if self._settings.bulk_vendor_fetch and targets:
            bulk = await self._aggregator.aggregate_all()

        entries: list[BatchEntry] = []
        for company_id, company_name in targets:
            report = bulk.for_company(company_id) if bulk is not None else None
            try:
                result = await self._engine.reconcile(company_id, actor_id=actor_id, report=report)
            except Exception as exc:
                logger.error("batch_company_failed", company_id=company_id, error=str(exc))
                entries.append(
                    BatchEntry(company_id=company_id, company_name=company_name, discrepancies=0, error=str(exc))
                )
                continue

            error = None
            if result.vendor_failures:
                error = "; ".join(f"{failure.vendor_id}: {failure.error}" for failure in result.vendor_failures)
            entries.append(
                BatchEntry(
                    company_id=company_id,
                    company_name=company_name,
                    discrepancies=result.discrepancies,
                    error=error,
                    snapshot_id=result.snapshot_id,
                    vendor_failures=result.vendor_failures,
                )
            )

        logger.info(
            "batch_reconciliation_completed",
            companies=len(entries),
            failed=sum(1 for entry in entries if entry.error is not None),
            discrepancies=sum(entry.discrepancies for entry in entries),
        )
        return entries


class SnapshotQueryService:
    """Read access to snapshots, their items and cross-company totals."""

    def __init__(
        self,
        snapshot_repo: ISnapshotRepository,
        item_repo: IItemRepository,
        company_repo: ICompanyRepository,
    ) -> None:
        self._snapshots = snapshot_repo
        self._items = item_repo
        self._companies = company_repo

    async def _require_company(self, company_id: str) -> None:
        if await self._companies.get_by_id(company_id) is None:
            raise NotFoundError("Company", company_id)

    async def company_history(self, company_id: str, limit: int = 20) -> list[ReconciliationSnapshot]:
        """A company's runs of any status, newest first."""
        await self._require_company(company_id)
        return await self._snapshots.list_for_company(company_id, limit=limit)

    async def latest_for_company(
        self, company_id: str
    ) -> tuple[ReconciliationSnapshot | None, list[ReconciliationItem]]:
        """The company's newest completed snapshot and its items, largest discrepancy first.

        Raises:
            NotFoundError: If the company does not exist.
        """
        await self._require_company(company_id)
        snapshot = await self._snapshots.latest_completed(company_id)
        if snapshot is None:
            return None, []
        items = await self._items.list_by_snapshot(snapshot.id)
        items.sort(key=lambda item: item.discrepancy, reverse=True)
        return snapshot, items

    async def summary(self) -> ReconciliationSummary:
        """Totals over the newest completed snapshot of every company."""
        snapshots = await self._snapshots.latest_completed_per_company()
        if not snapshots:
            return ReconciliationSummary()

        items = await self._items.list_by_snapshots([snapshot.id for snapshot in snapshots])
        pending = [item for item in items if item.status == ItemStatus.PENDING]
        open_items = [item for item in pending if item.discrepancy != 0]
        return ReconciliationSummary(
            total_items=len(items),
            discrepancies=len(open_items),
            total_revenue_impact=sum(item.revenue_impact or 0.0 for item in pending),
            matched_count=sum(1 for item in items if item.discrepancy == 0 or item.status != ItemStatus.PENDING),
            companies_with_issues=len({item.company_id for item in open_items}),
            last_sync_at=max(snapshot.created_at for snapshot in snapshots),
        )

    async def get_snapshot(self, snapshot_id: uuid.UUID) -> ReconciliationSnapshot:
        snapshot = await self._snapshots.get_by_id(snapshot_id)
        if snapshot is None:
            raise NotFoundError("ReconciliationSnapshot", snapshot_id)
        return snapshot

    async def list_items(self, snapshot_id: uuid.UUID, status: str | None = None) -> list[ReconciliationItem]:
        await self.get_snapshot(snapshot_id)
        items = await self._items.list_by_snapshot(snapshot_id)
        if status is not None:
            items = [item for item in items if item.status == status]
        return items


class ProductMappingService:
    """Operator management of vendor-to-PSA product mappings and the catalog."""

    _UPDATABLE_FIELDS = frozenset(
        {"vendor_product_name", "psa_product_name", "count_method", "unit_label", "is_active", "notes"}
    )

    def __init__(
        self,
        mapping_repo: IProductMappingRepository,
        vendor_product_repo: IVendorProductRepository,
        uow: IUnitOfWork,
    ) -> None:
        self._mappings = mapping_repo
        self._vendor_products = vendor_product_repo
        self._uow = uow

    async def list_mappings(self, vendor_id: str | None = None) -> list[ProductMapping]:
        return await self._mappings.list_by_vendor(vendor_id)

    async def create_mapping(
        self,
        vendor_id: str,
        vendor_product_key: str,
        psa_product_name: str | None,
        vendor_product_name: str = "",
        count_method: str = "per_device",
        unit_label: str = "devices",
        notes: str | None = None,
    ) -> ProductMapping:
        """Create a mapping.

        Raises:
            ConflictError: If (vendor_id, vendor_product_key) is already mapped.
        """
        existing = await self._mappings.get_by_key(vendor_id, vendor_product_key)
        if existing is not None:
            raise ConflictError(f"Mapping for {vendor_id}/{vendor_product_key} already exists")

        mapping = await self._mappings.create(
            ProductMapping(
                vendor_id=vendor_id,
                vendor_product_key=vendor_product_key,
                vendor_product_name=vendor_product_name,
                psa_product_name=psa_product_name,
                count_method=count_method,
                unit_label=unit_label,
                is_active=True,
                notes=notes,
            )
        )
        await self._uow.commit()
        logger.info("product_mapping_created", vendor_id=vendor_id, vendor_product_key=vendor_product_key)
        return mapping

    async def update_mapping(self, mapping_id: uuid.UUID, changes: dict[str, Any]) -> ProductMapping:
        """Apply a partial update; unknown fields are rejected.

        Raises:
            NotFoundError: If the mapping does not exist.
            PreconditionError: If changes names a field that cannot be updated.
        """
        unknown = set(changes) - self._UPDATABLE_FIELDS
        if unknown:
            raise PreconditionError(f"Cannot update mapping fields: {', '.join(sorted(unknown))}")

        mapping = await self._mappings.get_by_id(mapping_id)
        if mapping is None:
            raise NotFoundError("ProductMapping", mapping_id)

        for name, value in changes.items():
            setattr(mapping, name, value)
        mapping = await self._mappings.save(mapping)
        await self._uow.commit()
        logger.info("product_mapping_updated", mapping_id=str(mapping_id), fields=sorted(changes))
        return mapping

    async def delete_mapping(self, mapping_id: uuid.UUID) -> None:
        """Remove a mapping. Items already created from it are kept.

        Raises:
            NotFoundError: If the mapping does not exist.
        """
        mapping = await self._mappings.get_by_id(mapping_id)
        if mapping is None:
            raise NotFoundError("ProductMapping", mapping_id)

        vendor_id, vendor_product_key = mapping.vendor_id, mapping.vendor_product_key
        await self._mappings.delete(mapping)
        await self._uow.commit()
        logger.info(
            "product_mapping_deleted",
            mapping_id=str(mapping_id),
            vendor_id=vendor_id,
            vendor_product_key=vendor_product_key,
        )

    async def seed_known_products(self) -> int:
        """Insert the built-in vendor products missing from the catalog."""
        inserted = await self._vendor_products.seed(KNOWN_VENDOR_PRODUCTS)
        await self._uow.commit()
        logger.info("vendor_catalog_seeded", inserted=inserted, known=len(KNOWN_VENDOR_PRODUCTS))
        return inserted


class VendorCatalogService:
    """Operator view of the vendor product catalog and company assignments.

    Reconciliation adds catalog rows and assignments on its own as usage is
    observed; this service lets an operator deactivate products and pin or
    remove assignments by hand.
    """

    def __init__(
        self,
        vendor_product_repo: IVendorProductRepository,
        assignment_repo: IAssignmentRepository,
        company_repo: ICompanyRepository,
        uow: IUnitOfWork,
    ) -> None:
        self._vendor_products = vendor_product_repo
        self._assignments = assignment_repo
        self._companies = company_repo
        self._uow = uow

    async def list_products(self, vendor_id: str | None = None, include_inactive: bool = False) -> list[VendorProduct]:
        return await self._vendor_products.list_products(vendor_id, include_inactive=include_inactive)

    async def set_product_active(self, product_id: uuid.UUID, is_active: bool) -> VendorProduct:
        """Activate or deactivate a catalog product.

        Raises:
            NotFoundError: If the product does not exist.
        """
        product = await self._vendor_products.get_by_id(product_id)
        if product is None:
            raise NotFoundError("VendorProduct", product_id)

        product.is_active = is_active
        product = await self._vendor_products.save(product)
        await self._uow.commit()
        logger.info("vendor_product_toggled", product_id=str(product_id), is_active=is_active)
        return product

    async def list_assignments(self, company_id: str) -> list[AssignedProduct]:
        """Products assigned to a company.

        Raises:
            NotFoundError: If the company does not exist.
        """
        if await self._companies.get_by_id(company_id) is None:
            raise NotFoundError("Company", company_id)
        rows = await self._assignments.list_for_company(company_id)
        return [_assigned_product(assignment, product) for assignment, product in rows]

    async def assign_product(self, company_id: str, vendor_product_id: uuid.UUID) -> AssignedProduct:
        """Assign a catalog product to a company by hand.

        Raises:
            NotFoundError: If the company or the product does not exist.
            ConflictError: If the company already has the product.
        """
        if await self._companies.get_by_id(company_id) is None:
            raise NotFoundError("Company", company_id)
        if await self._vendor_products.get_by_id(vendor_product_id) is None:
            raise NotFoundError("VendorProduct", vendor_product_id)

        inserted = await self._assignments.ensure(company_id, vendor_product_id, auto_discovered=False)
        if not inserted:
            raise ConflictError(f"Company {company_id} is already assigned product {vendor_product_id}")
        await self._uow.commit()
        logger.info("product_assigned", company_id=company_id, vendor_product_id=str(vendor_product_id))

        rows = await self._assignments.list_for_company(company_id)
        return next(
            _assigned_product(assignment, product)
            for assignment, product in rows
            if assignment.vendor_product_id == vendor_product_id
        )

    async def remove_assignment(self, assignment_id: uuid.UUID) -> None:
        """Remove an assignment. The next run re-creates it if usage is still observed.

        Raises:
            NotFoundError: If the assignment does not exist.
        """
        assignment = await self._assignments.get_by_id(assignment_id)
        if assignment is None:
            raise NotFoundError("CompanyProductAssignment", assignment_id)

        company_id = assignment.company_id
        await self._assignments.delete(assignment)
        await self._uow.commit()
        logger.info("product_assignment_removed", assignment_id=str(assignment_id), company_id=company_id)


def _assigned_product(assignment: CompanyProductAssignment, product: VendorProduct) -> AssignedProduct:
    return AssignedProduct(
        assignment_id=assignment.id,
        company_id=assignment.company_id,
        vendor_product_id=product.id,
        vendor_id=product.vendor_id,
        product_key=product.product_key,
        product_name=product.product_name,
        unit=product.unit,
        is_auto_discovered=assignment.is_auto_discovered,
        is_active=product.is_active,
        assigned_at=assignment.created_at,
    )

"""Vendor count aggregation across every registered source.

The aggregator is the only place vendor sources are called. A source that
raises never aborts aggregation: the exception is captured as a
SourceFailure so callers can tell "vendor unavailable" apart from
"genuinely zero usage".
"""

from msp_billing_recon.core.interfaces import IIntegrationMappingRepository
from msp_billing_recon.core.types import AggregationReport, BulkAggregationReport, SourceFailure, VendorCount
from msp_billing_recon.observability import get_logger
from msp_billing_recon.sources import VendorSourceRegistry

logger = get_logger(__name__)


class VendorCountAggregator:
    """Collect normalized usage counts from vendor sources.

    Vendors are queried one at a time; there is no fan-out. Reading is side
    effect free; persisting counts is the engine's job.
    """

    def __init__(self, registry: VendorSourceRegistry, integration_repo: IIntegrationMappingRepository) -> None:
        self._registry = registry
        self._integrations = integration_repo

    async def aggregate(self, company_id: str) -> AggregationReport:
        """Counts for one company from every vendor it is mapped to.

        Args:
            company_id: The console company id.

        Returns:
            AggregationReport with the counts of every vendor that answered
            and one SourceFailure per vendor that raised.
        """
        report = AggregationReport()
        mappings = await self._integrations.list_for_company(company_id)

        for mapping in mappings:
            if mapping.vendor_id not in self._registry:
                logger.debug("vendor_source_not_registered", company_id=company_id, vendor_id=mapping.vendor_id)
                continue

            source = self._registry.get(mapping.vendor_id)
            try:
                counts = await source.fetch_for_company(mapping.external_id)
            except Exception as exc:
                logger.warning(
                    "vendor_source_failed",
                    company_id=company_id,
                    vendor_id=mapping.vendor_id,
                    external_id=mapping.external_id,
                    error=str(exc),
                )
                report.failures.append(
                    SourceFailure(vendor_id=mapping.vendor_id, error=str(exc), company_external_id=mapping.external_id)
                )
                continue

            report.counts.extend(counts)

        logger.info(
            "vendor_counts_aggregated",
            company_id=company_id,
            count_records=len(report.counts),
            failed_vendors=len(report.failures),
        )
        return report

    async def aggregate_all(self) -> BulkAggregationReport:
        """Counts for every mapped company from a single fetch_all() per vendor.

        Each vendor's result is partitioned by external id onto the console
        companies mapped to it. When a vendor fails, every company mapped to
        that vendor receives a SourceFailure.
        """
        report = BulkAggregationReport()
        vendor_ids = self._registry.vendor_ids()
        mappings = await self._integrations.list_for_vendors(vendor_ids)

        companies_by_vendor: dict[str, list[tuple[str, str]]] = {}
        for mapping in mappings:
            companies_by_vendor.setdefault(mapping.vendor_id, []).append((mapping.company_id, mapping.external_id))

        for vendor_id in vendor_ids:
            targets = companies_by_vendor.get(vendor_id)
            if not targets:
                continue

            source = self._registry.get(vendor_id)
            try:
                counts_by_external_id = await source.fetch_all()
            except Exception as exc:
                logger.warning("vendor_bulk_fetch_failed", vendor_id=vendor_id, companies=len(targets), error=str(exc))
                for company_id, external_id in targets:
                    report.failures_by_company.setdefault(company_id, []).append(
                        SourceFailure(vendor_id=vendor_id, error=str(exc), company_external_id=external_id)
                    )
                continue

            for company_id, external_id in targets:
                report.counts_by_company.setdefault(company_id, []).extend(
                    counts_by_external_id.get(external_id, [])
                )

        logger.info(
            "vendor_counts_bulk_aggregated",
            vendors=len(vendor_ids),
            companies=len(report.counts_by_company),
            companies_with_failures=len(report.failures_by_company),
        )
        return report

    async def live_count(self, vendor_id: str, external_id: str, product_key: str) -> int:
        """A fresh count for one product of one company.

        Errors from the source propagate; write-back must not push a
        quantity it could not observe.

        Raises:
            UnknownVendorError: If no source is registered for vendor_id.
        """
        source = self._registry.get(vendor_id)
        counts: list[VendorCount] = await source.fetch_for_company(external_id)
        return next((c.count for c in counts if c.product_key == product_key), 0)

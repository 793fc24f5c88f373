"""Tests for VendorCountAggregator."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from msp_billing_recon.core.aggregator import VendorCountAggregator
from msp_billing_recon.errors import UnknownVendorError
from msp_billing_recon.sources import VendorSourceRegistry


def _mapping(company_id: str, vendor_id: str, external_id: str) -> SimpleNamespace:
    return SimpleNamespace(company_id=company_id, vendor_id=vendor_id, external_id=external_id)


@pytest.fixture
def integration_repo() -> AsyncMock:
    repo = AsyncMock()
    repo.list_for_company = AsyncMock(return_value=[])
    repo.list_for_vendors = AsyncMock(return_value=[])
    return repo


class TestAggregate:
    @pytest.mark.asyncio
    async def test_collects_counts_from_every_mapped_vendor(self, integration_repo: AsyncMock, make_source) -> None:
        ninja = make_source("ninjaone", {"org-1": {"workstations": 10, "servers": 2}})
        pax8 = make_source("pax8", {"p-1": {"microsoft_365_e3": 4}})
        registry = VendorSourceRegistry([ninja, pax8])
        integration_repo.list_for_company.return_value = [
            _mapping("acme", "ninjaone", "org-1"),
            _mapping("acme", "pax8", "p-1"),
        ]
        aggregator = VendorCountAggregator(registry, integration_repo)

        report = await aggregator.aggregate("acme")

        assert {(c.vendor_id, c.product_key, c.count) for c in report.counts} == {
            ("ninjaone", "workstations", 10),
            ("ninjaone", "servers", 2),
            ("pax8", "microsoft_365_e3", 4),
        }
        assert report.failures == []
        integration_repo.list_for_company.assert_awaited_once_with("acme")

    @pytest.mark.asyncio
    async def test_failing_vendor_becomes_source_failure(self, integration_repo: AsyncMock, make_source) -> None:
        """One vendor raising does not hide the others' counts."""
        ninja = make_source("ninjaone", {"org-1": {"workstations": 10}})
        cove = make_source("cove", {"c-1": {"server_backup": 1}})
        cove.fail_all = True
        registry = VendorSourceRegistry([ninja, cove])
        integration_repo.list_for_company.return_value = [
            _mapping("acme", "cove", "c-1"),
            _mapping("acme", "ninjaone", "org-1"),
        ]
        aggregator = VendorCountAggregator(registry, integration_repo)

        report = await aggregator.aggregate("acme")

        assert [c.product_key for c in report.counts] == ["workstations"]
        assert len(report.failures) == 1
        failure = report.failures[0]
        assert failure.vendor_id == "cove"
        assert failure.company_external_id == "c-1"
        assert "timed out" in failure.error

    @pytest.mark.asyncio
    async def test_unregistered_vendor_is_skipped(self, integration_repo: AsyncMock, make_source) -> None:
        registry = VendorSourceRegistry([make_source("ninjaone", {"org-1": {"servers": 1}})])
        integration_repo.list_for_company.return_value = [
            _mapping("acme", "datto", "d-1"),
            _mapping("acme", "ninjaone", "org-1"),
        ]
        aggregator = VendorCountAggregator(registry, integration_repo)

        report = await aggregator.aggregate("acme")

        assert [c.vendor_id for c in report.counts] == ["ninjaone"]
        assert report.failures == []


class TestAggregateAll:
    @pytest.mark.asyncio
    async def test_one_fetch_per_vendor_partitioned_by_company(self, integration_repo: AsyncMock, make_source) -> None:
        ninja = make_source("ninjaone", {"org-1": {"servers": 3}, "org-2": {"servers": 5}})
        registry = VendorSourceRegistry([ninja])
        integration_repo.list_for_vendors.return_value = [
            _mapping("acme", "ninjaone", "org-1"),
            _mapping("globex", "ninjaone", "org-2"),
            _mapping("initech", "ninjaone", "org-3"),
        ]
        aggregator = VendorCountAggregator(registry, integration_repo)

        bulk = await aggregator.aggregate_all()

        assert ninja.fetch_all_calls == 1
        assert ninja.fetch_for_company_calls == 0
        assert [c.count for c in bulk.for_company("acme").counts] == [3]
        assert [c.count for c in bulk.for_company("globex").counts] == [5]
        assert bulk.for_company("initech").counts == []
        integration_repo.list_for_vendors.assert_awaited_once_with(["ninjaone"])

    @pytest.mark.asyncio
    async def test_bulk_failure_marks_every_mapped_company(self, integration_repo: AsyncMock, make_source) -> None:
        ninja = make_source("ninjaone")
        ninja.fail_all = True
        registry = VendorSourceRegistry([ninja])
        integration_repo.list_for_vendors.return_value = [
            _mapping("acme", "ninjaone", "org-1"),
            _mapping("globex", "ninjaone", "org-2"),
        ]
        aggregator = VendorCountAggregator(registry, integration_repo)

        bulk = await aggregator.aggregate_all()

        for company_id, external_id in (("acme", "org-1"), ("globex", "org-2")):
            report = bulk.for_company(company_id)
            assert report.counts == []
            assert [(f.vendor_id, f.company_external_id) for f in report.failures] == [("ninjaone", external_id)]

    @pytest.mark.asyncio
    async def test_vendor_without_mapped_companies_is_not_called(
        self, integration_repo: AsyncMock, make_source
    ) -> None:
        pax8 = make_source("pax8", {"p-1": {"microsoft_365_e3": 1}})
        aggregator = VendorCountAggregator(VendorSourceRegistry([pax8]), integration_repo)

        bulk = await aggregator.aggregate_all()

        assert pax8.fetch_all_calls == 0
        assert bulk.counts_by_company == {}


class TestLiveCount:
    @pytest.mark.asyncio
    async def test_returns_count_for_product(self, integration_repo: AsyncMock, make_source) -> None:
        ninja = make_source("ninjaone", {"org-1": {"servers": 12}})
        aggregator = VendorCountAggregator(VendorSourceRegistry([ninja]), integration_repo)

        assert await aggregator.live_count("ninjaone", "org-1", "servers") == 12
        assert await aggregator.live_count("ninjaone", "org-1", "workstations") == 0

    @pytest.mark.asyncio
    async def test_source_errors_propagate(self, integration_repo: AsyncMock, make_source) -> None:
        ninja = make_source("ninjaone")
        ninja.failing_ids.add("org-1")
        aggregator = VendorCountAggregator(VendorSourceRegistry([ninja]), integration_repo)

        with pytest.raises(RuntimeError):
            await aggregator.live_count("ninjaone", "org-1", "servers")

    @pytest.mark.asyncio
    async def test_unknown_vendor(self, integration_repo: AsyncMock) -> None:
        aggregator = VendorCountAggregator(VendorSourceRegistry(), integration_repo)

        with pytest.raises(UnknownVendorError):
            await aggregator.live_count("datto", "d-1", "servers")

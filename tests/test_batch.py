"""BatchReconciliationService tests against real repositories on in-memory SQLite."""

import pytest
import pytest_asyncio

from msp_billing_recon.core.models import SnapshotStatus


@pytest_asyncio.fixture
async def fleet(harness, make_source, make_line):
    """Three sync-enabled companies on NinjaOne plus one with sync disabled."""
    source = make_source(
        "ninjaone",
        {
            "org-a": {"servers": 4},
            "org-b": {"servers": 6},
            "org-c": {"servers": 2},
            "org-d": {"servers": 9},
        },
    )
    harness.registry.register(source)
    await harness.add_company("a", "Alpha Dental", vendors={"ninjaone": "org-a"})
    await harness.add_company("b", "Bravo Logistics", vendors={"ninjaone": "org-b"})
    await harness.add_company("c", "Charlie Law", vendors={"ninjaone": "org-c"})
    await harness.add_company("d", "Delta Retired", sync_enabled=False, vendors={"ninjaone": "org-d"})
    await harness.add_mapping("ninjaone", "servers", "Managed Server")
    harness.psa.lines["a"] = [make_line("A-1", "Managed Server", 3, unit_price=10.0)]
    harness.psa.lines["b"] = [make_line("B-1", "Managed Server", 6, unit_price=10.0)]
    harness.psa.lines["c"] = [make_line("C-1", "Managed Server", 2, unit_price=10.0)]
    return source


class TestReconcileAll:
    @pytest.mark.asyncio
    async def test_vendor_failure_is_isolated_to_its_company(self, harness, fleet) -> None:
        fleet.failing_ids.add("org-b")

        entries = await harness.batch().reconcile_all(actor_id="scheduler")

        assert [e.company_id for e in entries] == ["a", "b", "c"]
        alpha, bravo, charlie = entries

        assert alpha.error is None
        assert alpha.discrepancies == 1
        assert charlie.error is None
        assert charlie.discrepancies == 0

        assert bravo.error is not None
        assert bravo.error.startswith("ninjaone: ")
        assert bravo.discrepancies == 0
        assert [f.vendor_id for f in bravo.vendor_failures] == ["ninjaone"]
        bravo_snapshot = await harness.queries().get_snapshot(bravo.snapshot_id)
        assert bravo_snapshot.status == SnapshotStatus.COMPLETED
        assert bravo_snapshot.summary["total_items"] == 0

        assert fleet.fetch_all_calls == 0
        assert await harness.snapshots.list_for_company("d") == []

    @pytest.mark.asyncio
    async def test_company_error_does_not_stop_the_batch(self, harness, fleet) -> None:
        await harness.leases.acquire("company:b", "write_back:alice", 60)
        await harness.uow.commit()

        entries = await harness.batch().reconcile_all()

        bravo = entries[1]
        assert bravo.company_id == "b"
        assert bravo.snapshot_id is None
        assert "in progress" in bravo.error
        assert entries[0].error is None
        assert entries[2].error is None
        assert entries[2].snapshot_id is not None

    @pytest.mark.asyncio
    async def test_bulk_fetch_reads_each_vendor_once(self, harness, fleet) -> None:
        harness.settings.bulk_vendor_fetch = True

        entries = await harness.batch().reconcile_all()

        assert fleet.fetch_all_calls == 1
        assert fleet.fetch_for_company_calls == 0
        assert [(e.company_id, e.discrepancies, e.error) for e in entries] == [
            ("a", 1, None),
            ("b", 0, None),
            ("c", 0, None),
        ]

    @pytest.mark.asyncio
    async def test_bulk_fetch_failure_reaches_every_company(self, harness, fleet) -> None:
        harness.settings.bulk_vendor_fetch = True
        fleet.fail_all = True

        entries = await harness.batch().reconcile_all()

        assert len(entries) == 3
        assert all(e.error and e.error.startswith("ninjaone: ") for e in entries)
        assert all(e.snapshot_id is not None for e in entries)

    @pytest.mark.asyncio
    async def test_no_companies(self, harness) -> None:
        assert await harness.batch().reconcile_all() == []

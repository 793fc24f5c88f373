"""Unit tests for the billing reconciliation services, with repository doubles."""

import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from msp_billing_recon.core.models import ActivityAction, BillingActivityEntry, ItemStatus, ProductMapping, ReconciliationItem
from msp_billing_recon.core.services import (
    ActivityRecorder,
    CompanyLeaseGuard,
    ItemResolutionService,
    ProductMappingResolver,
    ProductMappingService,
    match_billing_lines,
)
from msp_billing_recon.core.types import ActivityDraft
from msp_billing_recon.errors import ConflictError, LeaseBusyError, NotFoundError, PreconditionError


def _line(product_name: str) -> SimpleNamespace:
    return SimpleNamespace(product_name=product_name)


def _mapping(vendor_id: str, key: str, psa_name: str | None, active: bool = True) -> ProductMapping:
    return ProductMapping(
        vendor_id=vendor_id,
        vendor_product_key=key,
        vendor_product_name=key,
        psa_product_name=psa_name,
        is_active=active,
    )


@pytest.fixture
def uow() -> AsyncMock:
    uow = AsyncMock()
    uow.commit = AsyncMock()
    uow.rollback = AsyncMock()
    return uow


# ---------------------------------------------------------------------------
# match_billing_lines
# ---------------------------------------------------------------------------


class TestMatchBillingLines:
    @pytest.fixture
    def lines(self) -> list[SimpleNamespace]:
        return [
            _line("Managed Server"),
            _line("Managed Server - Premium"),
            _line("Managed Workstation"),
            _line("Microsoft 365 Business Premium"),
        ]

    def test_substring_is_case_insensitive(self, lines: list[SimpleNamespace]) -> None:
        matched = match_billing_lines("managed SERVER", lines)
        assert [line.product_name for line in matched] == ["Managed Server", "Managed Server - Premium"]

    def test_exact_mode(self, lines: list[SimpleNamespace]) -> None:
        matched = match_billing_lines("managed server", lines, mode="exact")
        assert [line.product_name for line in matched] == ["Managed Server"]

    def test_tokens_mode_requires_whole_words(self, lines: list[SimpleNamespace]) -> None:
        assert [line.product_name for line in match_billing_lines("premium server", lines, mode="tokens")] == [
            "Managed Server - Premium"
        ]
        # "Work" is a substring of "Workstation" but not one of its words
        assert match_billing_lines("Managed Work", lines, mode="tokens") == []
        assert len(match_billing_lines("Managed Work", lines)) == 1

    def test_blank_name_matches_nothing(self, lines: list[SimpleNamespace]) -> None:
        assert match_billing_lines("   ", lines) == []


# ---------------------------------------------------------------------------
# ProductMappingResolver
# ---------------------------------------------------------------------------


class TestProductMappingResolver:
    def test_exact_mapping_wins_over_wildcard(self) -> None:
        exact = _mapping("ninjaone", "servers", "Managed Server")
        wildcard = _mapping("ninjaone", "all_devices", "RMM Agent")
        resolver = ProductMappingResolver([wildcard, exact])

        assert resolver.resolve("ninjaone", "servers") == [exact]
        assert resolver.resolve("ninjaone", "workstations") == [wildcard]

    def test_wildcards_are_scoped_to_their_vendor(self) -> None:
        resolver = ProductMappingResolver([_mapping("sentinelone", "*", "EDR")])

        assert resolver.resolve("ninjaone", "servers") == []
        assert len(resolver.resolve("sentinelone", "complete")) == 1

    def test_inactive_and_unnamed_mappings_are_ignored(self) -> None:
        resolver = ProductMappingResolver(
            [
                _mapping("ninjaone", "servers", "Managed Server", active=False),
                _mapping("ninjaone", "workstations", None),
                _mapping("ninjaone", "all_agents", ""),
            ]
        )

        assert resolver.resolve("ninjaone", "servers") == []
        assert resolver.resolve("ninjaone", "workstations") == []

    def test_every_applicable_wildcard_is_returned(self) -> None:
        first = _mapping("ninjaone", "*", "RMM Agent")
        second = _mapping("ninjaone", "all_devices", "Patch Management")
        resolver = ProductMappingResolver([first, second])

        assert resolver.resolve("ninjaone", "servers") == [first, second]


# ---------------------------------------------------------------------------
# ActivityRecorder
# ---------------------------------------------------------------------------


class TestActivityRecorder:
    @pytest.mark.asyncio
    async def test_record_appends_entry_built_from_draft(self) -> None:
        repo = AsyncMock()
        repo.create = AsyncMock(side_effect=lambda entry: entry)
        recorder = ActivityRecorder(repo)
        draft = ActivityDraft(
            company_id="acme",
            product_name="Managed Server",
            vendor_id="ninjaone",
            psa_qty=10,
            vendor_qty=12,
            change=2,
            action=ActivityAction.DETECTED,
            result="pending",
            snapshot_id=uuid.uuid4(),
            item_id=uuid.uuid4(),
            result_note="Underbilled by 2",
        )

        entry = await recorder.record(draft)

        assert isinstance(entry, BillingActivityEntry)
        assert entry.change == 2
        assert entry.result_note == "Underbilled by 2"
        assert entry.actor_id is None
        repo.create.assert_awaited_once()


# ---------------------------------------------------------------------------
# CompanyLeaseGuard
# ---------------------------------------------------------------------------


class TestCompanyLeaseGuard:
    @pytest.fixture
    def lease_repo(self) -> AsyncMock:
        repo = AsyncMock()
        repo.acquire = AsyncMock(return_value="tok-1")
        repo.release = AsyncMock(return_value=True)
        return repo

    @pytest.mark.asyncio
    async def test_releases_after_block(self, lease_repo: AsyncMock, uow: AsyncMock) -> None:
        guard = CompanyLeaseGuard(lease_repo, uow, ttl_seconds=30)

        async with guard.hold("acme", holder="reconcile:alice") as token:
            assert token == "tok-1"

        lease_repo.acquire.assert_awaited_once_with("company:acme", "reconcile:alice", 30)
        lease_repo.release.assert_awaited_once_with("company:acme", "tok-1")
        assert uow.commit.await_count == 2

    @pytest.mark.asyncio
    async def test_releases_when_block_raises(self, lease_repo: AsyncMock, uow: AsyncMock) -> None:
        guard = CompanyLeaseGuard(lease_repo, uow)

        with pytest.raises(ValueError):
            async with guard.hold("acme", holder="reconcile:system"):
                raise ValueError("boom")

        lease_repo.release.assert_awaited_once_with("company:acme", "tok-1")

    @pytest.mark.asyncio
    async def test_busy_lease_raises_without_release(self, lease_repo: AsyncMock, uow: AsyncMock) -> None:
        lease_repo.acquire.return_value = None
        guard = CompanyLeaseGuard(lease_repo, uow)

        with pytest.raises(LeaseBusyError) as exc_info:
            async with guard.hold("acme", holder="write_back:bob"):
                pytest.fail("block must not run while the lease is held elsewhere")

        assert exc_info.value.lease_key == "company:acme"
        lease_repo.release.assert_not_awaited()


# ---------------------------------------------------------------------------
# ItemResolutionService
# ---------------------------------------------------------------------------


class TestItemResolutionService:
    @pytest.fixture
    def pending_item(self) -> ReconciliationItem:
        return ReconciliationItem(
            id=uuid.uuid4(),
            snapshot_id=uuid.uuid4(),
            company_id="acme",
            vendor_id="ninjaone",
            vendor_product_key="servers",
            vendor_product_name="NinjaOne Servers",
            product_name="Managed Server",
            psa_qty=10.0,
            vendor_qty=12.0,
            discrepancy=2.0,
            status=ItemStatus.PENDING,
        )

    @pytest.fixture
    def item_repo(self, pending_item: ReconciliationItem) -> AsyncMock:
        repo = AsyncMock()
        repo.get_by_id = AsyncMock(return_value=pending_item)
        repo.save = AsyncMock(side_effect=lambda item: item)
        return repo

    @pytest.fixture
    def company_repo(self) -> AsyncMock:
        repo = AsyncMock()
        repo.get_by_id = AsyncMock(return_value=SimpleNamespace(id="acme", name="Acme Corp"))
        return repo

    @pytest.fixture
    def activity(self) -> MagicMock:
        recorder = MagicMock(spec=ActivityRecorder)
        recorder.record = AsyncMock()
        return recorder

    @pytest.fixture
    def service(
        self, item_repo: AsyncMock, company_repo: AsyncMock, activity: MagicMock, uow: AsyncMock
    ) -> ItemResolutionService:
        return ItemResolutionService(item_repo=item_repo, company_repo=company_repo, activity=activity, uow=uow)

    @pytest.mark.asyncio
    async def test_approve_records_activity(
        self,
        service: ItemResolutionService,
        pending_item: ReconciliationItem,
        activity: MagicMock,
        uow: AsyncMock,
    ) -> None:
        item = await service.resolve(pending_item.id, "approve", actor_id="alice")

        assert item.status == ItemStatus.APPROVED
        assert item.resolved_by == "alice"
        assert item.resolved_at is not None
        draft: ActivityDraft = activity.record.await_args.args[0]
        assert draft.action == ActivityAction.APPROVED
        assert draft.result == "success"
        assert draft.change == 2.0
        assert draft.result_note == "Approved by user"
        assert draft.company_name == "Acme Corp"
        uow.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_dismiss_keeps_note(
        self, service: ItemResolutionService, pending_item: ReconciliationItem, activity: MagicMock
    ) -> None:
        item = await service.resolve(pending_item.id, "dismiss", actor_id="alice", note="Lab devices, not billed")

        assert item.status == ItemStatus.DISMISSED
        assert item.resolved_note == "Lab devices, not billed"
        assert activity.record.await_args.args[0].action == ActivityAction.DISMISSED

    @pytest.mark.asyncio
    async def test_only_pending_items_can_be_resolved(
        self, service: ItemResolutionService, pending_item: ReconciliationItem, activity: MagicMock
    ) -> None:
        pending_item.status = ItemStatus.ADJUSTED

        with pytest.raises(PreconditionError):
            await service.resolve(pending_item.id, "approve", actor_id="alice")

        activity.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, service: ItemResolutionService, item_repo: AsyncMock) -> None:
        with pytest.raises(PreconditionError, match="Unsupported action"):
            await service.resolve(uuid.uuid4(), "escalate")

        item_repo.get_by_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_item(self, service: ItemResolutionService, item_repo: AsyncMock) -> None:
        item_repo.get_by_id.return_value = None

        with pytest.raises(NotFoundError):
            await service.resolve(uuid.uuid4(), "approve")

    @pytest.mark.asyncio
    async def test_resolve_many_reports_each_failure(
        self,
        service: ItemResolutionService,
        item_repo: AsyncMock,
        pending_item: ReconciliationItem,
        activity: MagicMock,
        uow: AsyncMock,
    ) -> None:
        missing_id = uuid.uuid4()

        async def _get(item_id: uuid.UUID) -> ReconciliationItem | None:
            return pending_item if item_id == pending_item.id else None

        item_repo.get_by_id.side_effect = _get

        outcomes = await service.resolve_many([pending_item.id, missing_id], "approve", actor_id="alice")

        assert outcomes[0].item_id == pending_item.id
        assert outcomes[0].status == ItemStatus.APPROVED
        assert outcomes[0].error is None
        assert outcomes[1].item_id == missing_id
        assert outcomes[1].status is None
        assert "not found" in outcomes[1].error
        assert activity.record.await_args.args[0].result_note == "Bulk approve"
        uow.rollback.assert_awaited_once()


# ---------------------------------------------------------------------------
# ProductMappingService
# ---------------------------------------------------------------------------


class TestProductMappingService:
    @pytest.fixture
    def mapping_repo(self) -> AsyncMock:
        repo = AsyncMock()
        repo.get_by_key = AsyncMock(return_value=None)
        repo.create = AsyncMock(side_effect=lambda mapping: mapping)
        repo.get_by_id = AsyncMock(return_value=None)
        repo.save = AsyncMock(side_effect=lambda mapping: mapping)
        return repo

    @pytest.fixture
    def vendor_product_repo(self) -> AsyncMock:
        repo = AsyncMock()
        repo.seed = AsyncMock(return_value=15)
        return repo

    @pytest.fixture
    def service(self, mapping_repo: AsyncMock, vendor_product_repo: AsyncMock, uow: AsyncMock) -> ProductMappingService:
        return ProductMappingService(mapping_repo=mapping_repo, vendor_product_repo=vendor_product_repo, uow=uow)

    @pytest.mark.asyncio
    async def test_create_mapping(self, service: ProductMappingService, uow: AsyncMock) -> None:
        mapping = await service.create_mapping("ninjaone", "servers", "Managed Server")

        assert mapping.vendor_product_key == "servers"
        assert mapping.is_active is True
        uow.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_key_conflicts(
        self, service: ProductMappingService, mapping_repo: AsyncMock, uow: AsyncMock
    ) -> None:
        mapping_repo.get_by_key.return_value = _mapping("ninjaone", "servers", "Managed Server")

        with pytest.raises(ConflictError):
            await service.create_mapping("ninjaone", "servers", "Server Monitoring")

        mapping_repo.create.assert_not_awaited()
        uow.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_applies_allowed_fields(self, service: ProductMappingService, mapping_repo: AsyncMock) -> None:
        existing = _mapping("ninjaone", "servers", "Managed Server")
        mapping_repo.get_by_id.return_value = existing

        updated = await service.update_mapping(uuid.uuid4(), {"psa_product_name": "Server Care", "is_active": False})

        assert updated.psa_product_name == "Server Care"
        assert updated.is_active is False

    @pytest.mark.asyncio
    async def test_update_rejects_key_change(self, service: ProductMappingService, mapping_repo: AsyncMock) -> None:
        with pytest.raises(PreconditionError, match="vendor_product_key"):
            await service.update_mapping(uuid.uuid4(), {"vendor_product_key": "workstations"})

        mapping_repo.get_by_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_missing_mapping(self, service: ProductMappingService) -> None:
        with pytest.raises(NotFoundError):
            await service.update_mapping(uuid.uuid4(), {"notes": "x"})

    @pytest.mark.asyncio
    async def test_seed_known_products(
        self, service: ProductMappingService, vendor_product_repo: AsyncMock, uow: AsyncMock
    ) -> None:
        assert await service.seed_known_products() == 15
        vendor_product_repo.seed.assert_awaited_once()
        uow.commit.assert_awaited_once()

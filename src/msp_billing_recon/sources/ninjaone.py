"""NinjaOne RMM count source.

Counting heuristic:
  - A device is a server when its node class, upper-cased, contains "SERVER"
    or equals "LINUX" (NinjaOne reports Linux servers as plain LINUX);
    every other device is a workstation.
  - A device additionally counts toward backup_servers / backup_workstations
    when its device id appears in the separately fetched backup-job list.
  - Devices without an organisation are ignored.
  - Buckets with a zero count are omitted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from msp_billing_recon.core.types import VendorCount
from msp_billing_recon.observability import get_logger

logger = get_logger(__name__)

_SERVER_ONLY_NODE_CLASSES: frozenset[str] = frozenset({"LINUX"})

_BUCKETS: tuple[tuple[str, str], ...] = (
    ("workstations", "NinjaOne Workstations"),
    ("servers", "NinjaOne Servers"),
    ("backup_workstations", "NinjaOne Backup Workstations"),
    ("backup_servers", "NinjaOne Backup Servers"),
)


@dataclass(frozen=True)
class RmmDevice:
    """A monitored device as normalized by the RMM client."""

    device_id: int
    organization_id: int | None
    node_class: str | None


@dataclass(frozen=True)
class RmmBackupJob:
    """A backup job reported by the RMM, attached to one device."""

    device_id: int
    organization_id: int | None = None


class INinjaOneClient(Protocol):
    """Normalized NinjaOne client consumed by the count source."""

    async def list_devices(self) -> list[RmmDevice]:
        """Every managed device across all organisations."""
        ...

    async def list_backup_jobs(self) -> list[RmmBackupJob]:
        """Every backup job across all organisations."""
        ...


def is_server(node_class: str | None) -> bool:
    """Whether a NinjaOne node class denotes a server."""
    normalized = (node_class or "").upper()
    return "SERVER" in normalized or normalized in _SERVER_ONLY_NODE_CLASSES


class NinjaOneCountSource:
    """Counts NinjaOne devices per organisation."""

    vendor_id = "ninjaone"

    def __init__(self, client: INinjaOneClient) -> None:
        self._client = client

    async def fetch_all(self) -> dict[str, list[VendorCount]]:
        """Classify every device once and emit counts per organisation id."""
        devices = await self._client.list_devices()
        backup_device_ids = await self._backup_device_ids()

        by_org: dict[str, dict[str, int]] = {}
        for device in devices:
            if device.organization_id is None:
                continue
            buckets = by_org.setdefault(str(device.organization_id), {key: 0 for key, _ in _BUCKETS})
            has_backup = device.device_id in backup_device_ids
            if is_server(device.node_class):
                buckets["servers"] += 1
                if has_backup:
                    buckets["backup_servers"] += 1
            else:
                buckets["workstations"] += 1
                if has_backup:
                    buckets["backup_workstations"] += 1

        return {org_id: self._to_counts(org_id, buckets) for org_id, buckets in by_org.items()}

    async def fetch_for_company(self, external_id: str) -> list[VendorCount]:
        """Counts for one organisation.

        The RMM only exposes a fleet-wide device query, so this filters the
        full classification down to the requested organisation.
        """
        all_counts = await self.fetch_all()
        return all_counts.get(external_id, [])

    async def _backup_device_ids(self) -> set[int]:
        try:
            jobs = await self._client.list_backup_jobs()
        except Exception as exc:
            # Backup is an add-on; device counts remain valid without it.
            logger.warning("ninjaone_backup_jobs_unavailable", error=str(exc))
            return set()
        return {job.device_id for job in jobs}

    def _to_counts(self, org_id: str, buckets: dict[str, int]) -> list[VendorCount]:
        return [
            VendorCount(
                vendor_id=self.vendor_id,
                product_key=key,
                product_name=name,
                count=buckets[key],
                unit="devices",
                company_external_id=org_id,
            )
            for key, name in _BUCKETS
            if buckets[key] > 0
        ]

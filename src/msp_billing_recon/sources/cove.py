"""Cove Data Protection count source.

Counting heuristic, per backup device:
  - an M365 tenant (has an m365_exchange or m365_onedrive data source and no
    OS type) counts toward m365_backup, in tenants;
  - otherwise a device whose OS type is "server" counts toward server_backup;
  - everything else counts toward workstation_backup.
Buckets with a zero count are omitted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from msp_billing_recon.core.types import VendorCount

M365_DATA_SOURCES: frozenset[str] = frozenset({"m365_exchange", "m365_onedrive"})

_BUCKETS: tuple[tuple[str, str, str], ...] = (
    ("server_backup", "Cove Server Backup", "devices"),
    ("workstation_backup", "Cove Workstation Backup", "devices"),
    ("m365_backup", "Cove M365 Backup", "tenants"),
)


@dataclass(frozen=True)
class BackupDevice:
    """A protected device or tenant as normalized by the backup client."""

    device_id: str
    customer_id: str
    os_type: str | None = None
    data_sources: tuple[str, ...] = field(default_factory=tuple)


class ICoveClient(Protocol):
    """Normalized Cove client consumed by the count source."""

    async def list_devices(self, customer_id: str | None = None) -> list[BackupDevice]:
        """Backup devices, optionally restricted to one customer."""
        ...


def is_m365_tenant(device: BackupDevice) -> bool:
    """A tenant carries M365 data sources and no physical OS."""
    return any(source in M365_DATA_SOURCES for source in device.data_sources) and not device.os_type


def classify(device: BackupDevice) -> str:
    """Bucket key for one backup device."""
    if is_m365_tenant(device):
        return "m365_backup"
    if device.os_type == "server":
        return "server_backup"
    return "workstation_backup"


class CoveCountSource:
    """Counts Cove backup devices per customer."""

    vendor_id = "cove"

    def __init__(self, client: ICoveClient) -> None:
        self._client = client

    async def fetch_for_company(self, external_id: str) -> list[VendorCount]:
        devices = await self._client.list_devices(customer_id=external_id)
        return self._to_counts(external_id, devices)

    async def fetch_all(self) -> dict[str, list[VendorCount]]:
        devices = await self._client.list_devices()
        by_customer: dict[str, list[BackupDevice]] = {}
        for device in devices:
            by_customer.setdefault(device.customer_id, []).append(device)
        return {customer_id: self._to_counts(customer_id, group) for customer_id, group in by_customer.items()}

    def _to_counts(self, customer_id: str, devices: list[BackupDevice]) -> list[VendorCount]:
        tally = {key: 0 for key, _, _ in _BUCKETS}
        for device in devices:
            tally[classify(device)] += 1
        return [
            VendorCount(
                vendor_id=self.vendor_id,
                product_key=key,
                product_name=name,
                count=tally[key],
                unit=unit,
                company_external_id=customer_id,
            )
            for key, name, unit in _BUCKETS
            if tally[key] > 0
        ]

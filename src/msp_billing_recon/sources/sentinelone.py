"""SentinelOne EDR count source.

Each SentinelOne site is licensed at one SKU (Complete, Control, ...). A
site yields exactly one count: its agent total, keyed by the slugified SKU
("unknown" when the site carries none). A site with zero agents still emits
its record so an overbilled PSA line is detected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from msp_billing_recon.core.types import VendorCount
from msp_billing_recon.sources import slugify_sku


@dataclass(frozen=True)
class EdrSite:
    """A SentinelOne site as normalized by the EDR client."""

    site_id: str
    name: str
    sku: str | None = None


class ISentinelOneClient(Protocol):
    """Normalized SentinelOne client consumed by the count source."""

    async def list_sites(self) -> list[EdrSite]:
        """All sites visible to the MSP account."""
        ...

    async def count_agents(self, site_id: str) -> int:
        """Total agents registered to one site."""
        ...

    async def count_agents_by_site(self) -> dict[str, int]:
        """Agent totals for every site in a single query."""
        ...


class SentinelOneCountSource:
    """Counts SentinelOne agents per site."""

    vendor_id = "sentinelone"

    def __init__(self, client: ISentinelOneClient) -> None:
        self._client = client

    async def fetch_for_company(self, external_id: str) -> list[VendorCount]:
        sites = await self._client.list_sites()
        sku = next((site.sku for site in sites if site.site_id == external_id), None)
        count = await self._client.count_agents(external_id)
        return [self._to_count(external_id, sku, count)]

    async def fetch_all(self) -> dict[str, list[VendorCount]]:
        sites = await self._client.list_sites()
        agents_by_site = await self._client.count_agents_by_site()
        return {
            site.site_id: [self._to_count(site.site_id, site.sku, agents_by_site.get(site.site_id, 0))]
            for site in sites
        }

    def _to_count(self, site_id: str, sku: str | None, count: int) -> VendorCount:
        label = sku or "unknown"
        return VendorCount(
            vendor_id=self.vendor_id,
            product_key=slugify_sku(label),
            product_name=f"SentinelOne {label}",
            count=count,
            unit="agents",
            company_external_id=site_id,
        )

"""Pax8 licensing count source.

Active subscriptions are grouped by product name (keyed by the slugified
name) and their quantities summed, so two subscriptions to the same SKU
report as one count. Products not yet in the catalog are picked up by the
engine's auto-discovery.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from msp_billing_recon.core.types import VendorCount
from msp_billing_recon.sources import slugify_product_name


@dataclass(frozen=True)
class Subscription:
    """An active Pax8 subscription as normalized by the licensing client."""

    company_id: str
    product_name: str
    quantity: int


class IPax8Client(Protocol):
    """Normalized Pax8 client consumed by the count source."""

    async def list_active_subscriptions(self, company_id: str | None = None) -> list[Subscription]:
        """Active subscriptions, optionally restricted to one company."""
        ...


class Pax8CountSource:
    """Sums Pax8 subscription quantities per company and product."""

    vendor_id = "pax8"

    def __init__(self, client: IPax8Client) -> None:
        self._client = client

    async def fetch_for_company(self, external_id: str) -> list[VendorCount]:
        subscriptions = await self._client.list_active_subscriptions(company_id=external_id)
        return self._to_counts(external_id, subscriptions)

    async def fetch_all(self) -> dict[str, list[VendorCount]]:
        subscriptions = await self._client.list_active_subscriptions()
        by_company: dict[str, list[Subscription]] = {}
        for sub in subscriptions:
            by_company.setdefault(sub.company_id, []).append(sub)
        return {company_id: self._to_counts(company_id, subs) for company_id, subs in by_company.items()}

    def _to_counts(self, company_id: str, subscriptions: list[Subscription]) -> list[VendorCount]:
        by_product: dict[str, tuple[str, int]] = {}
        for sub in subscriptions:
            key = slugify_product_name(sub.product_name)
            name, qty = by_product.get(key, (sub.product_name, 0))
            by_product[key] = (name, qty + sub.quantity)

        return [
            VendorCount(
                vendor_id=self.vendor_id,
                product_key=key,
                product_name=name,
                count=qty,
                unit="licenses",
                company_external_id=company_id,
            )
            for key, (name, qty) in by_product.items()
        ]

"""Vendor count sources: one adapter per vendor platform, looked up by registry.

A source turns the normalized output of a vendor client (device lists,
site agent totals, subscriptions) into VendorCount records using a fixed,
documented counting heuristic. The HTTP clients themselves (pagination,
auth, rate limiting) are injected and live outside this package.

Available sources:
    NinjaOneCountSource     RMM devices in workstation, server and backup buckets
    SentinelOneCountSource  EDR agents per site, keyed by license SKU
    CoveCountSource         backup devices split server / workstation / M365 tenant
    Pax8CountSource         licensing subscriptions summed per product

Adding a vendor means registering another IVendorCountSource; the aggregator
and engine are unchanged.
"""

from __future__ import annotations

import re

from msp_billing_recon.core.interfaces import IVendorCountSource
from msp_billing_recon.errors import UnknownVendorError

KNOWN_VENDOR_PRODUCTS: list[dict[str, str]] = [
    {"vendor_id": "ninjaone", "product_key": "workstations", "product_name": "NinjaOne Workstations", "unit": "devices"},
    {"vendor_id": "ninjaone", "product_key": "servers", "product_name": "NinjaOne Servers", "unit": "devices"},
    {"vendor_id": "ninjaone", "product_key": "backup_workstations", "product_name": "NinjaOne Backup Workstations", "unit": "devices"},
    {"vendor_id": "ninjaone", "product_key": "backup_servers", "product_name": "NinjaOne Backup Servers", "unit": "devices"},
    {"vendor_id": "sentinelone", "product_key": "complete", "product_name": "SentinelOne Complete", "unit": "agents"},
    {"vendor_id": "sentinelone", "product_key": "control", "product_name": "SentinelOne Control", "unit": "agents"},
    {"vendor_id": "cove", "product_key": "server_backup", "product_name": "Cove Server Backup", "unit": "devices"},
    {"vendor_id": "cove", "product_key": "workstation_backup", "product_name": "Cove Workstation Backup", "unit": "devices"},
    {"vendor_id": "cove", "product_key": "m365_backup", "product_name": "Cove M365 Backup", "unit": "tenants"},
    {"vendor_id": "pax8", "product_key": "microsoft_365_business_basic", "product_name": "Microsoft 365 Business Basic", "unit": "licenses"},
    {"vendor_id": "pax8", "product_key": "microsoft_365_business_standard", "product_name": "Microsoft 365 Business Standard", "unit": "licenses"},
    {"vendor_id": "pax8", "product_key": "microsoft_365_business_premium", "product_name": "Microsoft 365 Business Premium", "unit": "licenses"},
    {"vendor_id": "pax8", "product_key": "microsoft_defender_for_business", "product_name": "Microsoft Defender for Business", "unit": "licenses"},
    {"vendor_id": "pax8", "product_key": "microsoft_365_e3", "product_name": "Microsoft 365 E3", "unit": "licenses"},
    {"vendor_id": "pax8", "product_key": "microsoft_365_e5", "product_name": "Microsoft 365 E5", "unit": "licenses"},
]

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_WHITESPACE = re.compile(r"\s+")


def slugify_product_name(name: str) -> str:
    """Product key for a free-text product name: lower-case, non-alphanumeric runs -> '_'."""
    return _NON_ALNUM.sub("_", name.lower())


def slugify_sku(sku: str) -> str:
    """Product key for a license SKU: lower-case, whitespace runs -> '_'."""
    return _WHITESPACE.sub("_", sku.lower())


class VendorSourceRegistry:
    """Maps vendor id to its count source, resolved at call time."""

    def __init__(self, sources: list[IVendorCountSource] | None = None) -> None:
        self._sources: dict[str, IVendorCountSource] = {}
        for source in sources or []:
            self.register(source)

    def register(self, source: IVendorCountSource) -> None:
        """Add or replace the source for source.vendor_id."""
        self._sources[source.vendor_id] = source

    def get(self, vendor_id: str) -> IVendorCountSource:
        """Return the source for a vendor.

        Raises:
            UnknownVendorError: If no source is registered for vendor_id.
        """
        try:
            return self._sources[vendor_id]
        except KeyError:
            raise UnknownVendorError(vendor_id) from None

    def __contains__(self, vendor_id: object) -> bool:
        return vendor_id in self._sources

    def vendor_ids(self) -> list[str]:
        """Registered vendor ids, in registration order."""
        return list(self._sources)


__all__ = [
    "KNOWN_VENDOR_PRODUCTS",
    "VendorSourceRegistry",
    "slugify_product_name",
    "slugify_sku",
]

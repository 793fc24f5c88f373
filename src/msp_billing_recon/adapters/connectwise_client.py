"""HTTP client for the ConnectWise Manage (PSA) REST API.

Implements IPsaClient from core/interfaces.py: reads a company's agreement
lines ("agreement additions") and sets the quantity of one line.

Auth: Basic auth with base64(companyId+publicKey:privateKey) plus a clientId
header. The API allows 60 requests per minute, so requests are spaced by
psa_min_request_interval_seconds and pages are fetched sequentially.

API docs: https://developer.connectwise.com/
"""

import asyncio
import base64
import time
from typing import Any

import httpx

from msp_billing_recon.core.types import PsaBillingLine
from msp_billing_recon.errors import PsaClientError
from msp_billing_recon.observability import get_logger
from msp_billing_recon.settings import Settings

logger = get_logger(__name__)

_DO_NOT_BILL = "DoNotBill"


def build_auth_header(company_id: str, public_key: str, private_key: str) -> str:
    """Basic auth value for a ConnectWise API member."""
    raw = f"{company_id}+{public_key}:{private_key}".encode()
    return f"Basic {base64.b64encode(raw).decode()}"


def addition_to_line(agreement: dict[str, Any], addition: dict[str, Any]) -> PsaBillingLine:
    """Normalize one agreement addition into a PsaBillingLine."""
    product = addition.get("product") or {}
    product_name = product.get("description") or addition.get("description") or "Unknown Product"
    agreement_id = str(agreement["id"])
    return PsaBillingLine(
        agreement_id=agreement_id,
        agreement_name=agreement.get("name"),
        external_agreement_id=agreement_id,
        external_line_id=str(addition["id"]),
        product_name=product_name,
        quantity=float(addition.get("quantity") or 0),
        unit_price=addition.get("unitPrice"),
        unit_cost=addition.get("unitCost"),
        billable=addition.get("billCustomer") != _DO_NOT_BILL,
        cancelled=bool(addition.get("cancelledDate")),
    )


class ConnectWiseClient:
    """Async ConnectWise Manage client.

    Implements IPsaClient from core/interfaces.py. HTTP failures are logged
    and re-raised as PsaClientError so callers handle a single error type.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize ConnectWiseClient with service settings.

        Args:
            settings: Settings carrying the connectwise_* credentials and PSA limits.
            transport: Optional httpx transport, used by tests to stub the API.
        """
        self._base_url = settings.connectwise_base_url.rstrip("/")
        self._timeout = settings.psa_timeout_seconds
        self._page_size = settings.psa_page_size
        self._min_interval = settings.psa_min_request_interval_seconds
        self._transport = transport
        self._headers = {
            "Authorization": build_auth_header(
                settings.connectwise_company_id,
                settings.connectwise_public_key,
                settings.connectwise_private_key,
            ),
            "clientId": settings.connectwise_client_id,
            "Accept": "application/json",
        }
        self._last_request_at: float | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _throttle(self) -> None:
        if self._last_request_at is not None and self._min_interval > 0:
            wait = self._min_interval - (time.monotonic() - self._last_request_at)
            if wait > 0:
                await asyncio.sleep(wait)
        self._last_request_at = time.monotonic()

    async def _request(self, client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> Any:
        await self._throttle()
        try:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "connectwise_http_error",
                method=method,
                path=path,
                status_code=exc.response.status_code,
                response_text=exc.response.text[:500],
            )
            raise PsaClientError(
                f"ConnectWise {method} {path} failed with {exc.response.status_code}",
                status=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            logger.error("connectwise_connection_error", method=method, path=path, error=str(exc))
            raise PsaClientError(f"ConnectWise {method} {path} unreachable: {exc}") from exc

        if not response.content:
            return None
        return response.json()

    async def _get_all(self, client: httpx.AsyncClient, path: str, params: dict[str, Any] | None = None) -> list[Any]:
        """Follow page numbers until a short page is returned."""
        rows: list[Any] = []
        page = 1
        while True:
            batch = await self._request(
                client,
                "GET",
                path,
                params={**(params or {}), "page": page, "pageSize": self._page_size},
            )
            batch = batch or []
            rows.extend(batch)
            if len(batch) < self._page_size:
                return rows
            page += 1

    async def list_billing_lines(self, company_external_id: str) -> list[PsaBillingLine]:
        """All lines of the company's non-cancelled agreements.

        Args:
            company_external_id: The company's id inside ConnectWise.

        Returns:
            One PsaBillingLine per agreement addition, in agreement order.

        Raises:
            PsaClientError: On HTTP or connection errors.
        """
        async with self._client() as client:
            agreements = await self._get_all(
                client,
                "/finance/agreements",
                params={"conditions": f"company/id={company_external_id} AND cancelledFlag=false"},
            )
            lines: list[PsaBillingLine] = []
            for agreement in agreements:
                additions = await self._get_all(client, f"/finance/agreements/{agreement['id']}/additions")
                lines.extend(addition_to_line(agreement, addition) for addition in additions)

        logger.info(
            "connectwise_billing_lines_fetched",
            company_external_id=company_external_id,
            agreements=len(agreements),
            lines=len(lines),
        )
        return lines

    async def update_line_quantity(
        self,
        external_agreement_id: str,
        external_line_id: str,
        new_quantity: float,
    ) -> None:
        """Set the quantity of one agreement addition via JSON Patch.

        Raises:
            PsaClientError: On HTTP or connection errors.
        """
        quantity: float | int = int(new_quantity) if float(new_quantity).is_integer() else new_quantity
        async with self._client() as client:
            await self._request(
                client,
                "PATCH",
                f"/finance/agreements/{external_agreement_id}/additions/{external_line_id}",
                json=[{"op": "replace", "path": "quantity", "value": quantity}],
            )
        logger.info(
            "connectwise_line_quantity_updated",
            external_agreement_id=external_agreement_id,
            external_line_id=external_line_id,
            quantity=quantity,
        )

    async def health_check(self) -> bool:
        """Verify the ConnectWise API is reachable with the configured member."""
        try:
            async with self._client() as client:
                await self._request(client, "GET", "/system/info")
        except PsaClientError as exc:
            logger.warning("connectwise_health_check_failed", error=str(exc))
            return False
        return True

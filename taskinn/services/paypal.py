import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from taskinn.core.config import Settings
from taskinn.core.currencies import Rail
from taskinn.core.exceptions import UpstreamRailError

logger = logging.getLogger(__name__)

PAYPAL_LIVE_URL = "https://api-m.paypal.com"
PAYPAL_SANDBOX_URL = "https://api-m.sandbox.paypal.com"


class PayPalClient:
    """PayPal REST checkout client (orders v2)"""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        mode: str = "sandbox",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = PAYPAL_LIVE_URL if mode == "live" else PAYPAL_SANDBOX_URL
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "PayPalClient":
        return cls(
            settings.PAYPAL_CLIENT_ID,
            settings.PAYPAL_CLIENT_SECRET,
            mode=settings.PAYPAL_MODE,
            timeout=settings.RAIL_TIMEOUT,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def _request(self, client: httpx.AsyncClient, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"PayPal request to {path} failed: {e}")
            raise UpstreamRailError(Rail.PAYPAL.value, "PayPal is unreachable") from e

        if response.status_code >= 400:
            logger.error(f"PayPal error {response.status_code} on {path}: {response.text}")
            raise UpstreamRailError(
                Rail.PAYPAL.value,
                f"PayPal error {response.status_code}",
                details={"response": response.text[:500]},
            )

        try:
            data = response.json()
        except ValueError:
            logger.error(f"PayPal returned a non-JSON body on {path}: {response.text[:200]}")
            raise UpstreamRailError(Rail.PAYPAL.value, "PayPal returned an unreadable response")
        if not isinstance(data, dict):
            raise UpstreamRailError(Rail.PAYPAL.value, "PayPal returned an unexpected response")
        return data

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        data = await self._request(
            client,
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        token = data.get("access_token")
        if not token:
            raise UpstreamRailError(Rail.PAYPAL.value, "PayPal returned no access token")
        return token

    async def create_order(
        self, amount: Decimal, user_id: str, return_url: str, cancel_url: str
    ) -> Dict[str, Any]:
        """
        Create a CAPTURE order the buyer has to approve

        The order carries the user id as custom_id so a capture can be
        matched to the user who started it.

        Returns:
            Dict with id, status and approval_url
        """
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": "USD", "value": f"{amount:.2f}"},
                "description": "TaskInn Wallet Deposit",
                "custom_id": user_id,
            }],
            "application_context": {
                "return_url": return_url,
                "cancel_url": cancel_url,
                "brand_name": "TaskInn",
                "user_action": "PAY_NOW",
            },
        }

        async with self._client() as client:
            token = await self._access_token(client)
            order = await self._request(
                client,
                "POST",
                "/v2/checkout/orders",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )

        approval_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        logger.info(f"PayPal order {order.get('id')} created for {amount} USD")
        return {"id": order.get("id"), "status": order.get("status"), "approval_url": approval_url}

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        """
        Look up an order without capturing it

        Returns:
            Dict with id, status and custom_id
        """
        async with self._client() as client:
            token = await self._access_token(client)
            data = await self._request(
                client,
                "GET",
                f"/v2/checkout/orders/{order_id}",
                headers={"Authorization": f"Bearer {token}"},
            )

        unit = (data.get("purchase_units") or [{}])[0]
        return {"id": data.get("id"), "status": data.get("status"), "custom_id": unit.get("custom_id")}

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        """
        Capture an approved order

        Returns:
            Dict with id, status, amount (Decimal), capture_id and custom_id
        """
        async with self._client() as client:
            token = await self._access_token(client)
            data = await self._request(
                client,
                "POST",
                f"/v2/checkout/orders/{order_id}/capture",
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )

        unit = (data.get("purchase_units") or [{}])[0]
        captures = unit.get("payments", {}).get("captures") or [{}]
        capture = captures[0]
        try:
            amount = Decimal(str(capture.get("amount", {}).get("value", "0")))
        except InvalidOperation:
            raise UpstreamRailError(Rail.PAYPAL.value, "PayPal returned an unreadable capture amount")

        logger.info(f"PayPal order {order_id} captured: {data.get('status')} {amount} USD")
        return {
            "id": data.get("id"),
            "status": data.get("status"),
            "amount": amount,
            "capture_id": capture.get("id"),
            "custom_id": capture.get("custom_id") or unit.get("custom_id"),
        }

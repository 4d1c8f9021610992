"""PayPal REST client for confirming captured orders"""
import logging
from typing import Any, Dict, Optional

import httpx

from errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class PayPalClient:
    def __init__(self, http: httpx.AsyncClient, client_id: Optional[str], client_secret: Optional[str], base_url: str):
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")

    async def get_access_token(self) -> str:
        if not self.client_id or not self.client_secret:
            raise UpstreamUnavailable("Missing PayPal credentials")

        try:
            response = await self.http.post(
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
        except httpx.HTTPError as e:
            logger.error(f"PayPal token request failed: {str(e)}")
            raise UpstreamUnavailable(f"PayPal unreachable: {str(e)}")

        if response.status_code != 200:
            logger.error(f"PayPal token request returned {response.status_code}: {response.text}")
            raise UpstreamUnavailable(response.text or "Failed to get PayPal access token")
        return response.json()["access_token"]

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        access_token = await self.get_access_token()
        try:
            response = await self.http.get(
                f"{self.base_url}/v2/checkout/orders/{order_id}",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"PayPal order lookup failed: {str(e)}")
            raise UpstreamUnavailable(f"PayPal unreachable: {str(e)}")

        if response.status_code != 200:
            logger.error(f"PayPal order {order_id} lookup returned {response.status_code}: {response.text}")
            raise UpstreamUnavailable(response.text or "Failed to fetch PayPal order")
        return response.json()


def captured_amount(order: Dict[str, Any]) -> Optional[str]:
    """Amount actually captured for the first purchase unit."""
    units = order.get("purchase_units") or []
    if not units:
        return None
    unit = units[0]
    captures = (unit.get("payments") or {}).get("captures") or []
    if captures and (captures[0].get("amount") or {}).get("value"):
        return captures[0]["amount"]["value"]
    return (unit.get("amount") or {}).get("value")

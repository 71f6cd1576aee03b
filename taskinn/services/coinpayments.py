import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode

import httpx

from taskinn.core.config import Settings
from taskinn.core.currencies import Rail
from taskinn.core.exceptions import InvalidSignature, UpstreamRailError

logger = logging.getLogger(__name__)

COINPAYMENTS_API_URL = "https://www.coinpayments.net/api.php"

# Deposits are tagged with this prefix so the IPN can find the user again
CUSTOM_USER_PREFIX = "TaskInn-"

# IPN status codes: >= 100 or 2 means funds are final, < 0 means failed
STATUS_COMPLETE = 100
STATUS_QUEUED = 2


def ipn_is_complete(status: int) -> bool:
    return status >= STATUS_COMPLETE or status == STATUS_QUEUED


class CoinPaymentsClient:
    """CoinPayments v1 API client (signed form posts)"""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        merchant_id: str = "",
        ipn_secret: str = "",
        ipn_url: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.merchant_id = merchant_id
        self.ipn_secret = ipn_secret
        self.ipn_url = ipn_url
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "CoinPaymentsClient":
        return cls(
            settings.COINPAYMENTS_API_KEY,
            settings.COINPAYMENTS_API_SECRET,
            merchant_id=settings.COINPAYMENTS_MERCHANT_ID,
            ipn_secret=settings.COINPAYMENTS_IPN_SECRET,
            ipn_url=settings.coinpayments_ipn_url,
            timeout=settings.RAIL_TIMEOUT,
        )

    @staticmethod
    def sign(secret: str, payload: bytes) -> str:
        return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()

    async def _request(self, cmd: str, **params) -> Dict[str, Any]:
        body = urlencode({
            "version": 1,
            "cmd": cmd,
            "key": self.api_key,
            "format": "json",
            **params,
        })
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "HMAC": self.sign(self.api_secret, body.encode()),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(COINPAYMENTS_API_URL, content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"CoinPayments {cmd} failed: {e}")
            raise UpstreamRailError(Rail.COINPAYMENTS.value, "CoinPayments is unreachable") from e

        if response.status_code != 200:
            logger.error(f"CoinPayments {cmd} error {response.status_code}: {response.text}")
            raise UpstreamRailError(
                Rail.COINPAYMENTS.value, f"CoinPayments error {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError:
            logger.error(f"CoinPayments {cmd} returned a non-JSON body: {response.text[:200]}")
            raise UpstreamRailError(Rail.COINPAYMENTS.value, "CoinPayments returned an unreadable response")

        if not isinstance(data, dict) or data.get("error") != "ok":
            error = data.get("error") if isinstance(data, dict) else None
            logger.error(f"CoinPayments {cmd} rejected: {error}")
            raise UpstreamRailError(
                Rail.COINPAYMENTS.value,
                error or "CoinPayments API error",
                details={"cmd": cmd},
            )
        return data.get("result") or {}

    async def create_transaction(
        self, amount: Decimal, user_id: str, currency: str = "USDT.TRC20", buyer_email: str = ""
    ) -> Dict[str, Any]:
        """Create a receiving address for a USD-priced crypto deposit"""
        result = await self._request(
            "create_transaction",
            amount=str(amount),
            currency1="USD",
            currency2=currency,
            buyer_email=buyer_email,
            item_name="Wallet Deposit",
            ipn_url=self.ipn_url,
            custom=f"{CUSTOM_USER_PREFIX}{user_id}",
        )
        logger.info(f"CoinPayments deposit {result.get('txn_id')} created for user {user_id}")
        return result

    async def create_withdrawal(
        self, amount: Decimal, address: str, currency: str = "USDT.TRC20", note: str = "Withdrawal"
    ) -> Dict[str, Any]:
        """Queue a payout; auto_confirm is off so it waits for manual confirmation"""
        result = await self._request(
            "create_withdrawal",
            amount=str(amount),
            currency=currency,
            address=address,
            auto_confirm=0,
            note=note,
        )
        logger.info(f"CoinPayments withdrawal {result.get('id')} queued for {amount} {currency}")
        return result

    def verify_ipn(self, body: bytes, signature: Optional[str]) -> Dict[str, str]:
        """
        Authenticate an IPN callback and return its fields

        Raises:
            InvalidSignature: if the HMAC header, merchant or IPN mode do not match
        """
        if not self.ipn_secret or not signature:
            raise InvalidSignature("Missing IPN signature")

        expected = self.sign(self.ipn_secret, body)
        if not hmac.compare_digest(expected, signature):
            logger.warning("CoinPayments IPN rejected: bad HMAC")
            raise InvalidSignature("Invalid IPN signature")

        fields = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        if fields.get("ipn_mode") != "hmac":
            raise InvalidSignature("Unsupported IPN mode")
        if self.merchant_id and fields.get("merchant") != self.merchant_id:
            logger.warning(f"CoinPayments IPN rejected: unknown merchant {fields.get('merchant')}")
            raise InvalidSignature("IPN merchant does not match")
        return fields

    @staticmethod
    def user_from_custom(custom: Optional[str]) -> Optional[str]:
        if custom and custom.startswith(CUSTOM_USER_PREFIX):
            return custom[len(CUSTOM_USER_PREFIX):] or None
        return None

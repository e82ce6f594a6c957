import logging
import time

import httpx

from chatcommerce.errors import PaymentGatewayError

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_MARGIN = 300  # seconds


class BkashClient:
    """Tokenized-checkout client for the bKash payment gateway."""

    def __init__(
        self,
        base_url: str,
        app_key: str,
        app_secret: str,
        username: str,
        password: str,
        callback_url: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.app_key = app_key
        self.app_secret = app_secret
        self.username = username
        self.password = password
        self.callback_url = callback_url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

        self._token: str | None = None
        self._token_expiry = 0.0

    # -- Low-level helpers --

    async def _get_token(self) -> str:
        """Grant a token, reusing the cached one until 5 minutes before it expires."""
        if self._token and time.monotonic() < self._token_expiry:
            return self._token

        try:
            response = await self._client.post(
                f"{self.base_url}/tokenized/checkout/token/grant",
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "username": self.username,
                    "password": self.password,
                },
                json={"app_key": self.app_key, "app_secret": self.app_secret},
            )
            response.raise_for_status()
            data = response.json()
            token = data["id_token"]
            expires_in = int(data.get("expires_in", 3600))
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("bKash token grant failed: %s", e)
            raise PaymentGatewayError("Failed to authenticate with bKash") from e

        self._token = token
        self._token_expiry = time.monotonic() + expires_in - TOKEN_EXPIRY_MARGIN
        return token

    async def _post(self, path: str, payload: dict, action: str) -> dict:
        token = await self._get_token()
        try:
            response = await self._client.post(
                f"{self.base_url}{path}",
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "authorization": token,
                    "x-app-key": self.app_key,
                },
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.error("bKash %s request failed: %s", action, e)
            raise PaymentGatewayError(f"Failed to {action} bKash payment") from e

        if response.is_error:
            logger.error("bKash %s error %s: %s", action, response.status_code, response.text)
            raise PaymentGatewayError(
                f"Failed to {action} bKash payment: {response.reason_phrase}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise PaymentGatewayError(f"Invalid bKash {action} response") from e

    # -- Payment methods --

    async def create_payment(self, amount: float, order_number: str, customer_phone: str) -> dict:
        """Start a checkout. The answer carries ``paymentID`` and the ``bkashURL`` to redirect to."""
        data = await self._post(
            "/tokenized/checkout/create",
            {
                "mode": "0011",
                "payerReference": customer_phone,
                "callbackURL": self.callback_url,
                "amount": f"{amount:.2f}",
                "currency": "BDT",
                "intent": "sale",
                "merchantInvoiceNumber": order_number,
            },
            "create",
        )
        if not data.get("paymentID") or not data.get("bkashURL"):
            raise PaymentGatewayError(
                data.get("statusMessage") or "bKash did not return a payment URL"
            )
        return data

    async def execute_payment(self, payment_id: str) -> dict:
        """Finalize a payment after the shopper approved it. ``transactionStatus`` tells the outcome."""
        return await self._post(
            "/tokenized/checkout/execute", {"paymentID": payment_id}, "execute"
        )

    async def query_payment(self, payment_id: str) -> dict:
        return await self._post(
            "/tokenized/checkout/payment/status", {"paymentID": payment_id}, "query"
        )

    async def refund_payment(self, payment_id: str, amount: float, trx_id: str, reason: str) -> dict:
        return await self._post(
            "/tokenized/checkout/payment/refund",
            {
                "paymentID": payment_id,
                "amount": f"{amount:.2f}",
                "trxID": trx_id,
                "sku": "product",
                "reason": reason,
            },
            "refund",
        )

    async def close(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()

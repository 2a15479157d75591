"""M-Pesa Daraja client for STK push payment requests."""

import base64
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx
import structlog

from app.config import Settings, settings
from app.core.exceptions import GatewayException
from app.core.redis_client import CacheManager, get_redis_client
from app.schemas.mpesa import GatewayResponse

logger = structlog.get_logger()

# Daraja timestamps are East Africa Time, which has no DST
NAIROBI_TZ = timezone(timedelta(hours=3), name="EAT")


def mpesa_timestamp(now: datetime | None = None) -> str:
    """Format ``now`` as the ``YYYYMMDDHHMMSS`` Daraja timestamp."""
    moment = now or datetime.now(NAIROBI_TZ)
    if moment.tzinfo is not None:
        moment = moment.astimezone(NAIROBI_TZ)
    return moment.strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Base64 of shortcode + passkey + timestamp."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class MpesaClient:
    """
    Client for the Daraja OAuth and STK push endpoints.

    Only the synchronous acknowledgement is returned; the payment result
    arrives later through the callback URL.
    """

    TOKEN_CACHE_KEY = "mpesa:access_token"
    # Refresh tokens this long before Daraja expires them
    TOKEN_EXPIRY_MARGIN = 60

    def __init__(
        self,
        config: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        cache_manager: CacheManager | None = None,
    ):
        """
        Initialize client.

        Args:
            config: Settings carrying credentials and endpoints
            http_client: Shared HTTP client; one is created when omitted
            cache_manager: Optional cache for the access token
        """
        self.config = config or settings
        self._client = http_client
        self._owns_client = http_client is None
        self.cache = cache_manager

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.mpesa_timeout_seconds)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def get_access_token(self) -> str:
        """
        Get an OAuth access token, from cache when possible.

        Returns:
            Bearer token

        Raises:
            GatewayException: If the token cannot be obtained
        """
        if self.cache:
            cached = self.cache.get_json(self.TOKEN_CACHE_KEY)
            if cached:
                return str(cached)

        client = await self._ensure_client()
        try:
            response = await client.get(
                self.config.mpesa_token_url,
                auth=(self.config.mpesa_consumer_key, self.config.mpesa_consumer_secret),
                timeout=self.config.mpesa_timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
            token = data["access_token"]
        except httpx.HTTPStatusError as e:
            logger.error("mpesa_token_rejected", status_code=e.response.status_code)
            raise GatewayException("Failed to get M-Pesa access token") from e
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.error("mpesa_token_request_failed", error=str(e))
            raise GatewayException("Failed to get M-Pesa access token") from e

        if self.cache:
            try:
                expires_in = int(data.get("expires_in", 0))
            except (TypeError, ValueError):
                expires_in = 0
            ttl = expires_in - self.TOKEN_EXPIRY_MARGIN
            if ttl > 0:
                self.cache.set_json(self.TOKEN_CACHE_KEY, token, ttl=ttl)

        return str(token)

    def build_payload(
        self,
        account_reference: str,
        amount: Decimal,
        phone_number: str,
        timestamp: str,
    ) -> dict[str, Any]:
        """Build the signed STK push request body."""
        shortcode = self.config.mpesa_shortcode
        # Daraja only accepts whole shillings
        whole_amount = int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return {
            "BusinessShortCode": shortcode,
            "Password": stk_password(shortcode, self.config.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.config.mpesa_transaction_type,
            "Amount": whole_amount,
            "PartyA": phone_number,
            "PartyB": shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.config.mpesa_callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": self.config.mpesa_transaction_desc,
        }

    async def initiate(
        self,
        account_reference: str,
        amount: Decimal,
        phone_number: str,
    ) -> GatewayResponse:
        """
        Send an STK push charge request.

        Args:
            account_reference: Reconciliation key echoed back in the callback
            amount: Amount to charge
            phone_number: Normalized payer number (2547XXXXXXXX)

        Returns:
            Gateway acknowledgement; check ``accepted`` before trusting it

        Raises:
            GatewayException: On network errors or non-2xx responses
        """
        token = await self.get_access_token()
        payload = self.build_payload(account_reference, amount, phone_number, mpesa_timestamp())

        logger.info(
            "mpesa_stk_push_requested",
            account_reference=account_reference,
            amount=payload["Amount"],
        )

        client = await self._ensure_client()
        try:
            response = await client.post(
                self.config.mpesa_process_request_url,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.config.mpesa_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.error("mpesa_stk_push_unreachable", error=str(e))
            raise GatewayException("M-Pesa gateway unreachable") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            if response.status_code == 401 and self.cache:
                self.cache.delete(self.TOKEN_CACHE_KEY)
            logger.error(
                "mpesa_stk_push_rejected",
                status_code=response.status_code,
                error_code=data.get("errorCode") if isinstance(data, dict) else None,
                error_message=data.get("errorMessage") if isinstance(data, dict) else None,
            )
            raise GatewayException(
                "M-Pesa gateway rejected the payment request",
                details=data if isinstance(data, dict) else {},
            )

        if not isinstance(data, dict) or not data:
            raise GatewayException("M-Pesa gateway returned an unreadable response")

        acknowledgement = GatewayResponse.model_validate(data)
        logger.info(
            "mpesa_stk_push_acknowledged",
            account_reference=account_reference,
            accepted=acknowledgement.accepted,
            checkout_request_id=acknowledgement.checkout_request_id,
        )
        return acknowledgement


# Global client instance
_mpesa_client: MpesaClient | None = None


def get_mpesa_client() -> MpesaClient:
    """
    Get or create the shared M-Pesa client.

    Returns:
        MpesaClient instance
    """
    global _mpesa_client

    if _mpesa_client is None:
        _mpesa_client = MpesaClient(cache_manager=CacheManager(get_redis_client()))

    return _mpesa_client


async def close_mpesa_client() -> None:
    """Close the shared M-Pesa client."""
    global _mpesa_client

    if _mpesa_client is not None:
        await _mpesa_client.close()
        _mpesa_client = None

"""
BulkClix mobile-money aggregator client.

Collections are asynchronous: `initiate_collection` only asks BulkClix to prompt
the payer, the final outcome arrives later on the webhook. Transport failures
are retried with exponential backoff and then surfaced as UpstreamServiceError;
HTTP-level rejections are returned as unsuccessful results so the caller can
classify them.
"""

import os
import re
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from votepay.core.config import AggregatorConfig
from votepay.core.exceptions import ConfigurationError, UpstreamServiceError

logger = logging.getLogger(__name__)

COLLECTION_PATH = "/api/v1/payment-api/send/mobilemoney"
STATUS_PATH = "/api/v1/payment-api/checkstatus"
NAME_QUERY_PATH = "/api/v1/kyc-api/msisdNameQuery"

# accepted channel spellings -> BulkClix channel name
CHANNEL_ALIASES = {
    "MTN": "MTN",
    "VODAFONE": "Vodafone",
    "TELECEL": "Vodafone",
    "AIRTEL": "Airtel",
    "AIRTELTIGO": "Airtel",
}

NETWORK_PREFIXES = {
    "MTN": ("024", "054", "055", "059"),
    "VODAFONE": ("020", "050"),
    "AIRTELTIGO": ("027", "057", "026", "056"),
}


def format_phone_number(phone: str) -> str:
    """Normalize a Ghanaian MSISDN to the local `0XXXXXXXXX` form BulkClix expects."""
    formatted = re.sub(r"[^\d+]", "", phone or "")

    if formatted.startswith("+233"):
        formatted = "0" + formatted[4:]
    elif formatted.startswith("233") and len(formatted) == 12:
        formatted = "0" + formatted[3:]

    formatted = formatted.lstrip("+")
    if not formatted.startswith("0"):
        formatted = "0" + formatted

    return formatted


def detect_network(phone: str) -> str:
    """Guess the mobile network from the number prefix, defaulting to MTN."""
    local = format_phone_number(phone)
    for network, prefixes in NETWORK_PREFIXES.items():
        if local.startswith(prefixes):
            return network
    return "MTN"


def normalize_channel(channel: Optional[str]) -> Optional[str]:
    """Return the BulkClix channel name, or None for an unsupported network."""
    if not channel:
        return None
    return CHANNEL_ALIASES.get(channel.strip().upper().replace(" ", "").replace("-", ""))


class CollectionResult(BaseModel):
    """Outcome of a collection request as reported by BulkClix"""

    success: bool
    message: str
    transaction_id: Optional[str] = None
    client_reference: Optional[str] = None
    http_status: Optional[int] = None
    data: Optional[Dict[str, Any]] = None


class AggregatorStatus(BaseModel):
    """Transaction state as reported by the BulkClix status endpoint"""

    transaction_id: str
    status: str
    amount: Optional[Decimal] = None
    phone: Optional[str] = None
    network: Optional[str] = None
    reference: Optional[str] = None
    message: Optional[str] = None


def _error_message(data: Dict[str, Any], fallback: str) -> str:
    return data.get("message") or data.get("error") or data.get("msg") or fallback


def _parse_amount(value: Any) -> Optional[Decimal]:
    """Decimal amount from a provider field, or None when it is not a plain finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        logger.warning(f"Ignoring unparsable BulkClix amount {value!r}")
        return None
    return amount if amount.is_finite() else None


def _optional_str(value: Any) -> Optional[str]:
    return None if value in (None, "") else str(value)


def _looks_successful(data: Dict[str, Any]) -> bool:
    # BulkClix answers with several shapes depending on the API version
    message = data.get("message")
    nested = data.get("data") if isinstance(data.get("data"), dict) else {}
    return bool(
        (isinstance(message, str) and "success" in message.lower())
        or data.get("success") is True
        or data.get("status") in ("success", "successful")
        or nested.get("transaction_id")
        or data.get("transaction_id")
    )


class BulkClixClient:
    """Async HTTP client for the BulkClix collection API"""

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.bulkclix.com",
        timeout_seconds: float = 30.0,
        callback_base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ConfigurationError("BulkClix API key is not configured", config_key="BULKCLIX_API_KEY")

        self.api_url = api_url.rstrip("/")
        self.callback_base_url = callback_base_url.rstrip("/") if callback_base_url else None
        self._http = httpx.AsyncClient(
            base_url=self.api_url,
            timeout=timeout_seconds,
            headers={"x-api-key": api_key, "Accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: AggregatorConfig) -> "BulkClixClient":
        return cls(
            api_key=config.api_key,
            api_url=config.api_url,
            timeout_seconds=config.timeout_seconds,
            callback_base_url=_callback_base(config.site_url, config.platform_hostname),
        )

    @classmethod
    def from_env(cls) -> "BulkClixClient":
        return cls(
            api_key=os.getenv("BULKCLIX_API_KEY"),
            api_url=os.getenv("BULKCLIX_API_URL", "https://api.bulkclix.com"),
            callback_base_url=_callback_base(os.getenv("SITE_URL"), os.getenv("VERCEL_URL")),
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self._http.request(method, path, **kwargs)

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        try:
            return await self._send(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error(f"BulkClix {operation} failed after retries: {type(e).__name__}")
            raise UpstreamServiceError(
                "Payment provider unreachable",
                service=f"bulkclix.{operation}",
                upstream_error=type(e).__name__,
            ) from e

    async def initiate_collection(
        self,
        amount: Decimal,
        account_number: str,
        channel: str,
        account_name: str,
        client_reference: str,
        callback_url: Optional[str] = None,
    ) -> CollectionResult:
        """
        Ask BulkClix to prompt the payer for `amount`.

        Raises:
            UpstreamServiceError: If BulkClix cannot be reached
        """
        payload = {
            "amount": str(amount),
            "account_number": format_phone_number(account_number),
            "channel": normalize_channel(channel) or channel,
            "account_name": account_name,
            "client_reference": client_reference,
        }
        if callback_url:
            payload["callback_url"] = callback_url

        logger.info(
            f"BulkClix collection request: ref={client_reference} channel={payload['channel']}"
        )
        response = await self._request("POST", COLLECTION_PATH, "initiate_collection", json=payload)

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"BulkClix returned non-JSON response ({response.status_code})")
            return CollectionResult(
                success=False,
                message=f"Invalid response from payment provider ({response.status_code})",
                http_status=response.status_code,
            )

        if not isinstance(data, dict):
            data = {"data": data}

        if response.is_error:
            message = _error_message(data, f"Payment initiation failed: {response.reason_phrase}")
            logger.warning(f"BulkClix rejected collection {client_reference}: {response.status_code}")
            return CollectionResult(success=False, message=message, http_status=response.status_code, data=data)

        if not _looks_successful(data):
            return CollectionResult(
                success=False,
                message=_error_message(data, "Payment initiation failed"),
                http_status=response.status_code,
                data=data,
            )

        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        return CollectionResult(
            success=True,
            transaction_id=nested.get("transaction_id") or data.get("transaction_id"),
            client_reference=nested.get("client_reference") or data.get("client_reference") or client_reference,
            message=data.get("message") or data.get("msg") or "Payment initiated successfully",
            http_status=response.status_code,
            data=nested or data,
        )

    async def query_transaction_status(self, transaction_id: str) -> Optional[AggregatorStatus]:
        """
        Ask BulkClix for the current state of a collection.

        Returns None when BulkClix has nothing usable for this id.

        Raises:
            UpstreamServiceError: If BulkClix cannot be reached
        """
        response = await self._request(
            "GET", f"{STATUS_PATH}/{transaction_id}", "query_transaction_status"
        )
        if response.is_error:
            logger.info(f"BulkClix has no status for {transaction_id} ({response.status_code})")
            return None

        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None

        data = body.get("data") if isinstance(body.get("data"), dict) else body
        status = data.get("status")
        if not status:
            return None

        return AggregatorStatus(
            transaction_id=str(data.get("transaction_id") or transaction_id),
            status=str(status),
            amount=_parse_amount(data.get("amount")),
            phone=_optional_str(data.get("phone_number") or data.get("phone")),
            network=_optional_str(data.get("network") or data.get("channel")),
            reference=_optional_str(data.get("ext_transaction_id") or data.get("client_reference")),
            message=body.get("message") if isinstance(body.get("message"), str) else None,
        )

    async def query_account_name(self, phone_number: str) -> Optional[str]:
        """
        Look up the registered mobile-money name for a number.

        Raises:
            UpstreamServiceError: If BulkClix cannot be reached
        """
        response = await self._request(
            "GET",
            NAME_QUERY_PATH,
            "query_account_name",
            params={"phone_number": format_phone_number(phone_number)},
        )
        if response.is_error:
            return None

        try:
            body = response.json()
        except ValueError:
            return None

        data = body.get("data") if isinstance(body, dict) else None
        if isinstance(data, dict) and data.get("name"):
            return data["name"]
        return None


def _callback_base(site_url: Optional[str], platform_hostname: Optional[str]) -> Optional[str]:
    if site_url:
        return site_url.rstrip("/")
    if platform_hostname:
        return f"https://{platform_hostname.rstrip('/')}"
    return None


_client: Optional[BulkClixClient] = None


def init_bulkclix_client(config: AggregatorConfig) -> BulkClixClient:
    global _client
    _client = BulkClixClient.from_config(config)
    return _client


def get_bulkclix_client() -> BulkClixClient:
    """Return the shared client, building it from the environment on first use."""
    global _client
    if _client is None:
        _client = BulkClixClient.from_env()
    return _client


async def close_bulkclix_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None

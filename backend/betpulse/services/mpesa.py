"""Async client for the Safaricom M-Pesa (Daraja) API."""

import asyncio
import base64
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

import httpx

from betpulse.config import MpesaSettings
from betpulse.errors import InvalidArgument, ProviderError
from betpulse.services.credentials import CredentialSource, credential_from_settings

logger = logging.getLogger(__name__)

# Configuration constants
TOKEN_EXPIRY_MARGIN_SECONDS: int = 60
MIN_TOKEN_LIFETIME_SECONDS: int = 30
DEFAULT_TOKEN_LIFETIME_SECONDS: int = 3600

OAUTH_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
B2C_PAYMENT_PATH = "/mpesa/b2c/v1/paymentrequest"
C2B_REGISTER_PATH = "/mpesa/c2b/v1/registerurl"
C2B_SIMULATE_PATH = "/mpesa/c2b/v1/simulate"


def normalize_msisdn(phone_number: str, country_code: str) -> str:
    """Reduce a phone number to the digits-only international form Daraja expects."""
    digits = re.sub(r"[^0-9]", "", phone_number or "")
    if not digits:
        return ""
    if digits.startswith(country_code):
        return digits
    if digits.startswith("00"):
        return digits[2:]
    if digits.startswith("0"):
        return f"{country_code}{digits[1:]}"
    if len(digits) == 9:
        return f"{country_code}{digits}"
    return digits


def format_international_msisdn(phone_number: str, country_code: str) -> str:
    normalized = normalize_msisdn(phone_number, country_code)
    if not normalized:
        return ""
    return f"+{normalized}"


def build_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


def _wire_amount(amount: Union[Decimal, int, float]) -> Union[int, float]:
    value = Decimal(str(amount))
    return int(value) if value == value.to_integral_value() else float(value)


@dataclass
class CollectionRequest:
    """Correlation ids returned when an STK push is accepted."""
    merchant_request_id: str
    checkout_request_id: str
    customer_message: Optional[str] = None


@dataclass
class DisbursementRequest:
    """Correlation ids returned when a B2C payment request is accepted."""
    conversation_id: str
    originator_conversation_id: str
    response_code: Optional[str] = None
    response_description: Optional[str] = None


class MpesaClient:
    """Client for the Daraja collection (STK push) and disbursement (B2C) APIs.

    Every call is bounded by ``config.timeout_seconds``. Transport failures,
    timeouts and error responses are all raised as ``ProviderError`` so the
    caller can record a definite state for the transaction involved. Use it
    as an async context manager, or call ``close()`` on shutdown:

        async with MpesaClient(settings.mpesa) as client:
            await client.request_collection(...)
    """

    def __init__(
        self,
        config: MpesaSettings,
        credential: Optional[CredentialSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        Args:
            config: Credentials, shortcode and webhook URLs.
            credential: B2C security credential source; resolved from
                ``config`` on first disbursement when omitted.
            transport: Optional httpx transport (tests use ``MockTransport``).
            clock: Monotonic time source for access-token expiry.
        """
        self._config = config
        self._credential = credential
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    async def __aenter__(self) -> "MpesaClient":
        self._get_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @property
    def config(self) -> MpesaSettings:
        return self._config

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating if needed."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                timeout=self._config.timeout_seconds,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    def _msisdn(self, phone_number: str) -> str:
        msisdn = normalize_msisdn(phone_number, self._config.country_code)
        if not msisdn:
            raise InvalidArgument("Invalid M-Pesa number.")
        return msisdn

    def _resolve_credential(self) -> str:
        try:
            if self._credential is None:
                self._credential = credential_from_settings(self._config)
            return self._credential.resolve_credential()
        except ValueError as e:
            logger.error(f"M-Pesa security credential unavailable: {e}")
            raise ProviderError(detail=str(e)) from e

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and self._token_expires_at > self._clock():
                return self._access_token

            client = self._get_client()
            try:
                response = await client.get(
                    OAUTH_PATH,
                    params={"grant_type": "client_credentials"},
                    auth=(self._config.consumer_key, self._config.consumer_secret),
                )
                response.raise_for_status()
                data = response.json()
                token = data["access_token"]
            except httpx.HTTPStatusError as e:
                raise self._provider_error("OAuth", e) from e
            except httpx.RequestError as e:
                raise self._provider_error("OAuth", e) from e
            except (KeyError, TypeError, ValueError) as e:
                raise ProviderError(detail=f"Malformed OAuth response: {e}") from e

            expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
            lifetime = max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, MIN_TOKEN_LIFETIME_SECONDS)
            self._access_token = token
            self._token_expires_at = self._clock() + lifetime
            return token

    def _provider_error(self, operation: str, error: Exception) -> ProviderError:
        if isinstance(error, httpx.HTTPStatusError):
            details = error.response.reason_phrase
            try:
                details = error.response.json().get("errorMessage") or details
            except (ValueError, AttributeError):
                pass
            message = f"M-Pesa {operation} failed with status {error.response.status_code}: {details}"
        else:
            message = f"M-Pesa {operation} request error: {error!r}"
        logger.warning(message)
        return ProviderError(detail=message)

    async def _post(self, operation: str, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        token = await self._get_access_token()
        client = self._get_client()
        try:
            response = await client.post(path, json=body, headers={"Authorization": f"Bearer {token}"})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise self._provider_error(operation, e) from e
        except httpx.RequestError as e:
            raise self._provider_error(operation, e) from e
        except ValueError as e:
            raise ProviderError(detail=f"Malformed {operation} response: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError(detail=f"Malformed {operation} response: expected an object")
        return data

    async def request_collection(
        self,
        amount: Decimal,
        phone_number: str,
        reference: str,
        callback_url: Optional[str] = None,
        description: str = "BetPulse top-up",
    ) -> CollectionRequest:
        """Send an STK push prompting the customer to pay ``amount``."""
        msisdn = self._msisdn(phone_number)
        timestamp = build_timestamp()
        body = {
            "BusinessShortCode": self._config.shortcode,
            "Password": build_password(self._config.shortcode, self._config.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": _wire_amount(amount),
            "PartyA": msisdn,
            "PartyB": self._config.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": callback_url or self._config.stk_callback,
            "AccountReference": reference,
            "TransactionDesc": description,
        }
        data = await self._post("STK push", STK_PUSH_PATH, body)
        try:
            return CollectionRequest(
                merchant_request_id=data["MerchantRequestID"],
                checkout_request_id=data["CheckoutRequestID"],
                customer_message=data.get("CustomerMessage"),
            )
        except KeyError as e:
            raise ProviderError(detail=f"STK push response missing {e}") from e

    async def request_disbursement(
        self,
        amount: Decimal,
        phone_number: str,
        reference: str,
        remarks: Optional[str] = None,
    ) -> DisbursementRequest:
        """Ask the provider to pay ``amount`` out to ``phone_number`` (B2C)."""
        msisdn = self._msisdn(phone_number)
        body = {
            "InitiatorName": self._config.initiator_name,
            "SecurityCredential": self._resolve_credential(),
            "CommandID": "BusinessPayment",
            "Amount": _wire_amount(amount),
            "PartyA": self._config.shortcode,
            "PartyB": msisdn,
            "Remarks": remarks or "BetPulse withdrawal",
            "QueueTimeOutURL": self._config.b2c_queue_timeout,
            "ResultURL": self._config.b2c_result,
            "Occasion": reference,
        }
        data = await self._post("B2C payment", B2C_PAYMENT_PATH, body)
        try:
            return DisbursementRequest(
                conversation_id=data["ConversationID"],
                originator_conversation_id=data["OriginatorConversationID"],
                response_code=data.get("ResponseCode"),
                response_description=data.get("ResponseDescription"),
            )
        except KeyError as e:
            raise ProviderError(detail=f"B2C response missing {e}") from e

    async def register_c2b_urls(self) -> bool:
        """Register the C2B confirmation/validation URLs. Returns False on failure."""
        body = {
            "ShortCode": self._config.shortcode,
            "ResponseType": "Completed",
            "ConfirmationURL": self._config.c2b_confirmation,
            "ValidationURL": self._config.c2b_validation,
        }
        try:
            await self._post("C2B URL registration", C2B_REGISTER_PATH, body)
        except ProviderError as e:
            logger.warning(f"C2B URL registration skipped: {e.detail}")
            return False
        return True

    async def simulate_c2b_payment(self, amount: Decimal, phone_number: str, reference: str) -> Dict[str, Any]:
        """Sandbox-only: simulate a customer paybill payment."""
        body = {
            "ShortCode": self._config.shortcode,
            "CommandID": "CustomerPayBillOnline",
            "Amount": _wire_amount(amount),
            "Msisdn": self._msisdn(phone_number),
            "BillRefNumber": reference,
        }
        return await self._post("C2B simulation", C2B_SIMULATE_PATH, body)

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

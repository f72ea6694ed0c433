"""
M-Pesa Daraja client - Lipa na M-Pesa Online (STK Push).

Covers the three Daraja calls the checkout needs:

1. OAuth token (``/oauth/v1/generate``), cached until shortly before expiry.
2. STK Push (``/mpesa/stkpush/v1/processrequest``) - prompts the buyer's phone.
3. STK Push query (``/mpesa/stkpushquery/v1/query``) - polls the outcome when
   the asynchronous callback is late or lost.

Also parses the callback payload Daraja POSTs to ``MPESA_CALLBACK_URL``.

When Daraja credentials are missing in development the client runs in
simulation mode: STK Push returns ``sim_<epoch_ms>_<random>`` request ids and
queries report success once ``simulation_delay_seconds`` have elapsed.
"""
import asyncio
import base64
import hashlib
import hmac
import re
import secrets
import string
import time
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

import httpx
from pydantic import BaseModel

from backend.app.core.logging import get_logger
from backend.app.core.metrics import mpesa_request_duration_seconds
from backend.app.core.settings import Settings, get_settings

logger = get_logger(__name__)

AUTH_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

NAIROBI_TZ = ZoneInfo("Africa/Nairobi")
TOKEN_EXPIRY_BUFFER_SECONDS = 5 * 60
# Daraja answers a query for an unfinished transaction with this error code
STILL_PROCESSING_ERROR_CODE = "500.001.1001"
SIMULATED_ID_PATTERN = re.compile(r"^sim_(\d+)_")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MpesaError(Exception):
    """Base exception for Daraja failures."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        self.error_code = error_code
        super().__init__(self.message)


class MpesaAuthError(MpesaError):
    """OAuth token could not be obtained."""


class MpesaRequestError(MpesaError):
    """STK Push or query was rejected or could not be sent."""


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------

class MpesaConfig(BaseModel):
    base_url: str = "https://sandbox.safaricom.co.ke"
    consumer_key: str = ""
    consumer_secret: str = ""
    passkey: str = ""
    short_code: str = "174379"
    callback_url: str = ""
    simulate: bool = False
    simulation_delay_seconds: int = 10
    timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "MpesaConfig":
        return cls(
            base_url=settings.MPESA_BASE_URL.rstrip("/"),
            consumer_key=settings.MPESA_CONSUMER_KEY or "",
            consumer_secret=settings.MPESA_CONSUMER_SECRET or "",
            passkey=settings.MPESA_PASSKEY or "",
            short_code=settings.MPESA_BUSINESS_SHORT_CODE,
            callback_url=settings.MPESA_CALLBACK_URL or "",
            simulate=settings.mpesa_simulation_enabled,
            simulation_delay_seconds=settings.MPESA_SIMULATION_DELAY_SECONDS,
            timeout=settings.MPESA_TIMEOUT,
        )


class STKPushResult(BaseModel):
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str = ""
    customer_message: str = ""
    simulated: bool = False


class STKQueryResult(BaseModel):
    response_code: Optional[str] = None
    response_description: str = ""
    merchant_request_id: Optional[str] = None
    checkout_request_id: str
    # None while Daraja is still processing the transaction
    result_code: Optional[str] = None
    result_desc: str = ""

    @property
    def is_pending(self) -> bool:
        return self.result_code is None


class CallbackDetails(BaseModel):
    merchant_request_id: str
    checkout_request_id: str
    result_code: int
    result_desc: str = ""
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    phone_number: Optional[str] = None
    transaction_date: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def format_phone_number(phone: str) -> str:
    """
    Normalize a Kenyan mobile number to Daraja's ``2547XXXXXXXX`` form.

    ``0712345678``, ``+254712345678`` and ``712345678`` all become ``254712345678``.
    """
    cleaned = re.sub(r"\D", "", phone or "")
    if cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]
    if cleaned.startswith("254"):
        return cleaned
    if len(cleaned) == 9:
        return "254" + cleaned
    raise ValueError("Invalid phone number format")


def validate_phone_number(phone: str) -> bool:
    """Accept 2547XXXXXXXX, 07XXXXXXXX or the bare 9-digit subscriber number."""
    cleaned = re.sub(r"\D", "", phone or "")
    if cleaned.startswith("254") and len(cleaned) == 12:
        return True
    if cleaned.startswith("0") and len(cleaned) == 10:
        return True
    return len(cleaned) == 9


def format_amount(amount) -> str:
    """Display form used in notifications: ``KSh 1,234``."""
    return f"KSh {whole_shillings(amount):,}"


def whole_shillings(amount) -> int:
    """Daraja accepts whole shillings only; round half up."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """``YYYYMMDDHHMMSS`` in Nairobi time, as Daraja expects."""
    now = now or datetime.now(tz=NAIROBI_TZ)
    return now.strftime("%Y%m%d%H%M%S")


def generate_password(short_code: str, passkey: str, timestamp: str) -> str:
    """STK password: base64(short_code + passkey + timestamp)."""
    raw = f"{short_code}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def verify_callback_signature(body: bytes, signature: str, secret: str) -> bool:
    """Check ``X-Mpesa-Signature`` (hex HMAC-SHA256 of the raw body)."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def extract_callback_details(payload: Dict[str, Any]) -> CallbackDetails:
    """
    Parse a Daraja STK callback::

        {"Body": {"stkCallback": {
            "MerchantRequestID": "...", "CheckoutRequestID": "...",
            "ResultCode": 0, "ResultDesc": "...",
            "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 1}, ...]}
        }}}

    Raises:
        ValueError: payload does not have the STK callback shape
    """
    try:
        callback = payload["Body"]["stkCallback"]
        merchant_request_id = str(callback["MerchantRequestID"])
        checkout_request_id = str(callback["CheckoutRequestID"])
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError("Malformed STK callback payload") from exc

    transaction_id = None
    amount = None
    phone_number = None
    transaction_date = None

    metadata = callback.get("CallbackMetadata") or {}
    for item in metadata.get("Item") or []:
        name = item.get("Name")
        value = item.get("Value")
        if value is None:
            continue
        if name in ("MpesaReceiptNumber", "TransactionID"):
            transaction_id = str(value)
        elif name == "Amount":
            amount = Decimal(str(value))
        elif name == "PhoneNumber":
            phone_number = str(value)
        elif name == "TransactionDate":
            transaction_date = str(value)

    return CallbackDetails(
        merchant_request_id=merchant_request_id,
        checkout_request_id=checkout_request_id,
        result_code=result_code,
        result_desc=str(callback.get("ResultDesc") or ""),
        transaction_id=transaction_id,
        amount=amount,
        phone_number=phone_number,
        transaction_date=transaction_date,
    )


def _random_suffix(length: int = 9) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class MpesaClient:
    """Async Daraja client with OAuth token caching."""

    def __init__(
        self,
        config: MpesaConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._transport = transport
        self._clock = clock
        self._http: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = None
        self._token_expiry: float = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def simulated(self) -> bool:
        return self.config.simulate

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # -- OAuth ---------------------------------------------------------------

    def _token_valid(self) -> bool:
        return bool(self._access_token) and self._clock() < self._token_expiry

    def invalidate_token(self) -> None:
        self._access_token = None
        self._token_expiry = 0.0

    async def get_access_token(self) -> str:
        """Return a cached token, fetching a new one when it is missing or about to expire."""
        if self._token_valid():
            return self._access_token

        async with self._token_lock:
            # Another coroutine may have refreshed while we waited
            if self._token_valid():
                return self._access_token

            started = time.perf_counter()
            try:
                response = await self._client().get(
                    AUTH_PATH,
                    params={"grant_type": "client_credentials"},
                    auth=(self.config.consumer_key, self.config.consumer_secret),
                )
            except httpx.HTTPError as exc:
                logger.error("M-Pesa auth request failed", error=str(exc))
                raise MpesaAuthError("Failed to authenticate with M-Pesa") from exc
            finally:
                mpesa_request_duration_seconds.labels(operation="auth").observe(time.perf_counter() - started)

            if not response.is_success:
                logger.error("M-Pesa auth rejected", status_code=response.status_code)
                raise MpesaAuthError(f"M-Pesa auth failed: {response.reason_phrase}")

            try:
                data = response.json()
            except ValueError as exc:
                raise MpesaAuthError("M-Pesa auth returned invalid JSON") from exc

            token = data.get("access_token")
            if not token:
                raise MpesaAuthError("No access token received from M-Pesa")

            try:
                expires_in = int(data.get("expires_in", 3599))
            except (TypeError, ValueError):
                expires_in = 3599

            self._access_token = token
            self._token_expiry = self._clock() + expires_in - TOKEN_EXPIRY_BUFFER_SECONDS
            logger.info("M-Pesa access token refreshed", expires_in=expires_in)
            return token

    # -- HTTP ----------------------------------------------------------------

    async def _post(self, path: str, payload: Dict[str, Any], operation: str) -> httpx.Response:
        """POST with a bearer token; on 401 refresh the token and retry once."""
        for attempt in range(2):
            token = await self.get_access_token()
            started = time.perf_counter()
            try:
                response = await self._client().post(
                    path,
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as exc:
                logger.error("M-Pesa request failed", operation=operation, error=str(exc))
                raise MpesaRequestError(f"M-Pesa {operation} request failed") from exc
            finally:
                mpesa_request_duration_seconds.labels(operation=operation).observe(time.perf_counter() - started)

            if response.status_code == 401 and attempt == 0:
                logger.warning("M-Pesa token rejected, refreshing", operation=operation)
                self.invalidate_token()
                continue
            return response
        return response

    @staticmethod
    def _error_info(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {"errorMessage": response.text or response.reason_phrase}
        return data if isinstance(data, dict) else {}

    # -- STK Push ------------------------------------------------------------

    async def initiate_stk_push(
        self,
        phone_number: str,
        amount,
        order_reference: str,
        customer_name: str,
    ) -> STKPushResult:
        """
        Send an STK Push prompt to the buyer's phone.

        Raises:
            MpesaRequestError: invalid phone, transport failure or non-zero ResponseCode
            MpesaAuthError: OAuth failure
        """
        if self.config.simulate:
            return self._simulate_stk_push(order_reference, phone_number)

        try:
            formatted_phone = format_phone_number(phone_number)
        except ValueError as exc:
            raise MpesaRequestError(str(exc)) from exc

        timestamp = generate_timestamp()
        payload = {
            "BusinessShortCode": self.config.short_code,
            "Password": generate_password(self.config.short_code, self.config.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_shillings(amount),
            "PartyA": formatted_phone,
            "PartyB": self.config.short_code,
            "PhoneNumber": formatted_phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": order_reference,
            "TransactionDesc": f"Cake Order - {customer_name}",
        }

        logger.info(
            "STK Push request",
            order_reference=order_reference,
            amount=payload["Amount"],
            phone=formatted_phone,
        )

        response = await self._post(STK_PUSH_PATH, payload, operation="stk_push")
        if not response.is_success:
            error = self._error_info(response)
            logger.error(
                "STK Push rejected",
                order_reference=order_reference,
                status_code=response.status_code,
                error_code=error.get("errorCode"),
                error_message=error.get("errorMessage"),
            )
            raise MpesaRequestError(
                f"M-Pesa STK Push failed: {error.get('errorMessage') or response.reason_phrase}",
                error_code=error.get("errorCode"),
            )

        data = response.json()
        response_code = str(data.get("ResponseCode", ""))
        if response_code != "0":
            raise MpesaRequestError(
                f"M-Pesa error: {data.get('ResponseDescription') or 'unknown error'}",
                error_code=response_code or None,
            )

        result = STKPushResult(
            merchant_request_id=data["MerchantRequestID"],
            checkout_request_id=data["CheckoutRequestID"],
            response_code=response_code,
            response_description=data.get("ResponseDescription", ""),
            customer_message=data.get("CustomerMessage", ""),
        )
        logger.info(
            "STK Push accepted",
            order_reference=order_reference,
            merchant_request_id=result.merchant_request_id,
            checkout_request_id=result.checkout_request_id,
        )
        return result

    def _simulate_stk_push(self, order_reference: str, phone_number: str) -> STKPushResult:
        now_ms = int(time.time() * 1000)
        result = STKPushResult(
            merchant_request_id=f"sim_{now_ms}_{_random_suffix()}",
            checkout_request_id=f"sim_{now_ms}_{_random_suffix()}",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
            simulated=True,
        )
        logger.info(
            "Simulated STK Push",
            order_reference=order_reference,
            phone=phone_number,
            checkout_request_id=result.checkout_request_id,
        )
        return result

    # -- STK query -----------------------------------------------------------

    async def query_stk_push(self, checkout_request_id: str) -> STKQueryResult:
        """
        Ask Daraja for the outcome of an STK Push.

        ``result_code`` is ``"0"`` on success, another code on failure and
        ``None`` while the buyer has not yet answered the prompt.
        """
        if self.config.simulate:
            return self._simulate_query(checkout_request_id)

        timestamp = generate_timestamp()
        payload = {
            "BusinessShortCode": self.config.short_code,
            "Password": generate_password(self.config.short_code, self.config.passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        response = await self._post(STK_QUERY_PATH, payload, operation="stk_query")
        if not response.is_success:
            error = self._error_info(response)
            if error.get("errorCode") == STILL_PROCESSING_ERROR_CODE:
                return STKQueryResult(
                    checkout_request_id=checkout_request_id,
                    response_description=error.get("errorMessage", "The transaction is being processed"),
                )
            logger.error(
                "STK query rejected",
                checkout_request_id=checkout_request_id,
                status_code=response.status_code,
                error_code=error.get("errorCode"),
            )
            raise MpesaRequestError(
                f"M-Pesa query failed: {error.get('errorMessage') or response.reason_phrase}",
                error_code=error.get("errorCode"),
            )

        data = response.json()
        result_code = data.get("ResultCode")
        result = STKQueryResult(
            response_code=str(data["ResponseCode"]) if data.get("ResponseCode") is not None else None,
            response_description=data.get("ResponseDescription", ""),
            merchant_request_id=data.get("MerchantRequestID"),
            checkout_request_id=data.get("CheckoutRequestID", checkout_request_id),
            result_code=str(result_code) if result_code is not None else None,
            result_desc=data.get("ResultDesc", ""),
        )
        logger.info(
            "STK query result",
            checkout_request_id=checkout_request_id,
            result_code=result.result_code,
        )
        return result

    def _simulate_query(self, checkout_request_id: str) -> STKQueryResult:
        match = SIMULATED_ID_PATTERN.match(checkout_request_id or "")
        now_ms = int(time.time() * 1000)
        succeeded = bool(match) and now_ms - int(match.group(1)) >= self.config.simulation_delay_seconds * 1000

        if succeeded:
            return STKQueryResult(
                response_code="0",
                response_description="Success. Request accepted for processing",
                merchant_request_id=checkout_request_id,
                checkout_request_id=checkout_request_id,
                result_code="0",
                result_desc="The service request is processed successfully.",
            )
        return STKQueryResult(
            response_code="0",
            response_description="The transaction is being processed",
            merchant_request_id=checkout_request_id,
            checkout_request_id=checkout_request_id,
        )


# Global client instance
_client: Optional[MpesaClient] = None


def get_mpesa_client() -> MpesaClient:
    """Get the process-wide Daraja client (singleton, shares the token cache)."""
    global _client
    if _client is None:
        _client = MpesaClient(MpesaConfig.from_settings(get_settings()))
    return _client


async def close_mpesa_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None

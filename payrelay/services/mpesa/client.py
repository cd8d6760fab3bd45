"""M-Pesa Daraja client.

All provider calls go through `OutboundDispatcher.send_with_retry`: a
transport error or non-2xx response enqueues a retry job carrying the exact
request and raises `TransientDeliveryError` to the caller. A 2xx response
whose `ResponseCode` is non-zero is a business rejection and is never queued.
"""

import asyncio
import base64
import math
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import uuid4

import httpx

from payrelay.common.config import CommonSettings, settings
from payrelay.common.error_events import record_error_event
from payrelay.common.errors import PermanentRejectionError, ProviderConfigurationError, TransientDeliveryError
from payrelay.common.events import LiveEvent
from payrelay.common.logging import correlation_id_ctx, logger
from payrelay.common.metrics import provider_requests_total
from payrelay.services.retry_queue.models import RetryJob
from payrelay.services.retry_queue.service import exception_message, response_error_message
from payrelay.services.retry_queue.store import JobStore
from payrelay.services.transactions.service import TransactionService


SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

OAUTH_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
C2B_REGISTER_PATH = "/mpesa/c2b/v1/registerurl"
C2B_SIMULATE_PATH = "/mpesa/c2b/v1/simulate"
B2C_PATH = "/mpesa/b2c/v1/paymentrequest"

STK_TRANSACTION_TYPE = "CustomerPayBillOnline"
# Refresh the cached token this long before the provider expires it.
TOKEN_REFRESH_MARGIN_SECONDS = 300
SECRET_FIELDS = ("SecurityCredential", "Password")


def format_phone_number(phone: str) -> str:
    """Normalize to the 2547XXXXXXXX form the provider expects."""

    digits = "".join(ch for ch in phone if ch.isdigit())
    if digits.startswith("0"):
        return "254" + digits[1:]
    if not digits.startswith("254"):
        return "254" + digits
    return digits


def generate_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def whole_amount(amount: float) -> int:
    return int(math.floor(amount + 0.5))


def redact(body: dict[str, Any]) -> dict[str, Any]:
    return {k: ("[REDACTED]" if k in SECRET_FIELDS else v) for k, v in body.items()}


def _is_rejection(data: Any) -> bool:
    if not isinstance(data, dict) or "ResponseCode" not in data:
        return False
    return str(data["ResponseCode"]).strip().strip("0") != ""


class OutboundDispatcher:
    """Performs one outbound call and hands failures to the retry queue."""

    def __init__(
        self,
        store: JobStore,
        http_client: httpx.AsyncClient,
        broadcaster=None,
        default_max_retries: int = 5,
        service_name: str = "payrelay",
    ) -> None:
        self.store = store
        self.http_client = http_client
        self.broadcaster = broadcaster
        self.default_max_retries = default_max_retries
        self.service_name = service_name

    async def send_with_retry(
        self,
        job_type: str,
        endpoint: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        payload: Any = None,
        max_retries: int | None = None,
        correlation_id: str | None = None,
    ) -> Any:
        """Return the decoded response body, or enqueue and raise `TransientDeliveryError`."""

        kwargs: dict[str, Any] = {"headers": headers or {}}
        if payload is not None:
            kwargs["json"] = payload
        try:
            response = await self.http_client.request(method, endpoint, **kwargs)
        except httpx.HTTPError as exc:
            error, upstream_status = exception_message(exc), None
        else:
            if 200 <= response.status_code < 300:
                provider_requests_total.labels(service=self.service_name, operation=job_type, outcome="success").inc()
                try:
                    return response.json()
                except ValueError:
                    return {}
            error, upstream_status = response_error_message(response), response.status_code

        job = self.store.enqueue(
            job_type=job_type,
            endpoint=endpoint,
            method=method,
            headers=headers,
            payload=payload,
            max_retries=max_retries if max_retries is not None else self.default_max_retries,
            correlation_id=correlation_id,
        )
        provider_requests_total.labels(service=self.service_name, operation=job_type, outcome="queued").inc()
        logger.warning(
            "outbound_call_queued job_type=%s job_id=%s status_code=%s error=%s",
            job_type,
            job.id,
            upstream_status,
            error,
        )
        if self.broadcaster is not None:
            self.broadcaster.publish(LiveEvent(type="retry:queued", payload=job.to_dict()))
        raise TransientDeliveryError(error, job_id=job.id, status_code=upstream_status)


class MpesaClient:
    """Daraja operations with a cached OAuth token."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        dispatcher: OutboundDispatcher,
        transactions: TransactionService,
        config: CommonSettings = settings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.http_client = http_client
        self.dispatcher = dispatcher
        self.transactions = transactions
        self.config = config
        self.clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        return PRODUCTION_BASE_URL if self.config.mpesa_environment == "production" else SANDBOX_BASE_URL

    def callback_url(self, path: str) -> str:
        return f"{self.config.mpesa_callback_base_url}/api/mpesa/callback{path}"

    async def get_access_token(self) -> str:
        async with self._token_lock:
            if self._token and self.clock() < self._token_expires_at:
                return self._token
            key, secret = self.config.mpesa_consumer_key, self.config.mpesa_consumer_secret
            if not key or not secret:
                raise ProviderConfigurationError("M-Pesa consumer key and secret are required")
            basic = base64.b64encode(f"{key}:{secret}".encode()).decode()
            logger.info("mpesa_token_requested environment=%s", self.config.mpesa_environment)
            try:
                response = await self.http_client.get(
                    f"{self.base_url}{OAUTH_PATH}", headers={"Authorization": f"Basic {basic}"}
                )
                response.raise_for_status()
                data = response.json()
                token = data["access_token"]
                expires_in = int(data.get("expires_in", 3599))
            except (httpx.HTTPError, ValueError, KeyError) as exc:
                logger.error("mpesa_token_failed error=%s", exc)
                raise TransientDeliveryError(f"Failed to get M-Pesa access token: {exception_message(exc)}") from exc
            self._token = token
            self._token_expires_at = self.clock() + max(0, expires_in - TOKEN_REFRESH_MARGIN_SECONDS)
            logger.info("mpesa_token_obtained expires_in=%s", expires_in)
            return token

    def clear_token_cache(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def _post(self, job_type: str, path: str, body: dict[str, Any]) -> dict[str, Any]:
        correlation_id = f"{job_type}-{uuid4().hex[:16]}"
        correlation_id_ctx.set(correlation_id)
        token = await self.get_access_token()
        try:
            data = await self.dispatcher.send_with_retry(
                job_type=job_type,
                endpoint=f"{self.base_url}{path}",
                method="POST",
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                payload=body,
                correlation_id=correlation_id,
            )
        except TransientDeliveryError as exc:
            record_error_event(
                self.transactions.session_factory,
                f"{job_type.upper()}_ERROR",
                exc.message,
                request_data={"request": redact(body), "retry_job_id": exc.job_id},
                broadcaster=self.transactions.broadcaster,
            )
            raise
        if _is_rejection(data):
            message = data.get("ResponseDescription") or data.get("errorMessage") or "Rejected by provider"
            record_error_event(
                self.transactions.session_factory,
                f"{job_type.upper()}_REJECTED",
                message,
                request_data={"request": redact(body), "response": data},
                broadcaster=self.transactions.broadcaster,
            )
            raise PermanentRejectionError(message)
        return data

    async def stk_push(
        self, phone_number: str, amount: float, account_reference: str, transaction_desc: str | None = None
    ) -> dict[str, Any]:
        shortcode = self.config.mpesa_shortcode
        timestamp = generate_timestamp()
        phone = format_phone_number(phone_number)
        body = {
            "BusinessShortCode": shortcode,
            "Password": generate_password(shortcode, self.config.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": STK_TRANSACTION_TYPE,
            "Amount": whole_amount(amount),
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url("/stk"),
            "AccountReference": account_reference[:12],
            "TransactionDesc": (transaction_desc or "Payment")[:13],
        }
        logger.info("stk_push_initiated phone=%s amount=%s account_reference=%s", phone, amount, account_reference)
        data = await self._post("stk_push", STK_PUSH_PATH, body)
        self.transactions.record_stk_push(body, data)
        return data

    async def stk_query(self, checkout_request_id: str) -> dict[str, Any]:
        shortcode = self.config.mpesa_shortcode
        timestamp = generate_timestamp()
        body = {
            "BusinessShortCode": shortcode,
            "Password": generate_password(shortcode, self.config.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        return await self._post("stk_query", STK_QUERY_PATH, body)

    async def c2b_register(self, response_type: str = "Completed") -> dict[str, Any]:
        body = {
            "ShortCode": self.config.mpesa_shortcode,
            "ResponseType": response_type,
            "ConfirmationURL": self.callback_url("/c2b/confirmation"),
            "ValidationURL": self.callback_url("/c2b/validation"),
        }
        logger.info("c2b_register_initiated shortcode=%s", body["ShortCode"])
        return await self._post("c2b_register", C2B_REGISTER_PATH, body)

    async def c2b_simulate(
        self,
        amount: float,
        msisdn: str,
        bill_ref_number: str | None = None,
        command_id: str = "CustomerPayBillOnline",
    ) -> dict[str, Any]:
        body = {
            "ShortCode": self.config.mpesa_shortcode,
            "CommandID": command_id,
            "Amount": whole_amount(amount),
            "Msisdn": format_phone_number(msisdn),
            "BillRefNumber": bill_ref_number or "Test",
        }
        return await self._post("c2b_simulate", C2B_SIMULATE_PATH, body)

    async def b2c_payment(
        self,
        amount: float,
        phone_number: str,
        remarks: str,
        occasion: str = "",
        command_id: str = "BusinessPayment",
    ) -> dict[str, Any]:
        phone = format_phone_number(phone_number)
        body = {
            "InitiatorName": self.config.mpesa_initiator_name,
            "SecurityCredential": self.config.mpesa_security_credential,
            "CommandID": command_id,
            "Amount": whole_amount(amount),
            "PartyA": self.config.mpesa_business_shortcode or self.config.mpesa_shortcode,
            "PartyB": phone,
            "Remarks": remarks[:100],
            "QueueTimeOutURL": self.callback_url("/b2c/timeout"),
            "ResultURL": self.callback_url("/b2c/result"),
            "Occasion": occasion[:100],
        }
        logger.info("b2c_payment_initiated phone=%s amount=%s command_id=%s", phone, amount, command_id)
        data = await self._post("b2c_payment", B2C_PATH, body)
        self.transactions.record_b2c(body, data)
        return data


def provider_completion_hooks(transactions: TransactionService) -> dict[str, Callable[[RetryJob, Any], None]]:
    """Record the pending transaction when a queued STK push or B2C call finally succeeds."""

    def record_stk_push(job: RetryJob, body: Any) -> None:
        if isinstance(body, dict) and not _is_rejection(body):
            transactions.record_stk_push(job.parsed_payload() or {}, body)

    def record_b2c(job: RetryJob, body: Any) -> None:
        if isinstance(body, dict) and not _is_rejection(body):
            transactions.record_b2c(job.parsed_payload() or {}, body)

    return {"stk_push": record_stk_push, "b2c_payment": record_b2c}

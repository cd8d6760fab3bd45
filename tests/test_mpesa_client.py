"""Provider client helpers, token cache and outbound dispatch."""

from datetime import datetime

import httpx
import pytest

from payrelay.common.config import CommonSettings
from payrelay.common.errors import ProviderConfigurationError, TransientDeliveryError
from payrelay.services.mpesa.client import (
    MpesaClient,
    OutboundDispatcher,
    format_phone_number,
    generate_password,
    generate_timestamp,
    provider_completion_hooks,
    redact,
    whole_amount,
)
from payrelay.services.transactions.service import TransactionService


def make_config(**overrides):
    values = {
        "database_url": "sqlite://",
        "mpesa_consumer_key": "key",
        "mpesa_consumer_secret": "secret",
        "mpesa_passkey": "passkey",
        "mpesa_callback_base_url": "https://payrelay.test",
    }
    values.update(overrides)
    return CommonSettings(**values)


class Ticker:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def make_client(store, session_factory, provider, config=None, clock=None):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    dispatcher = OutboundDispatcher(store, http_client)
    transactions = TransactionService(session_factory)
    return MpesaClient(http_client, dispatcher, transactions, config=config or make_config(), clock=clock or Ticker())


def test_format_phone_number():
    assert format_phone_number("0712345678") == "254712345678"
    assert format_phone_number("+254 712 345 678") == "254712345678"
    assert format_phone_number("712345678") == "254712345678"


def test_password_and_timestamp():
    timestamp = generate_timestamp(datetime(2024, 3, 5, 9, 7, 1))

    assert timestamp == "20240305090701"
    assert generate_password("174379", "pk", timestamp) == "MTc0Mzc5cGsyMDI0MDMwNTA5MDcwMQ=="


def test_whole_amount_rounds_half_up():
    assert whole_amount(10.5) == 11
    assert whole_amount(10.49) == 10


def test_redact_hides_credentials():
    assert redact({"Password": "x", "Amount": 1}) == {"Password": "[REDACTED]", "Amount": 1}


@pytest.mark.asyncio
async def test_token_is_cached_until_refresh_margin(store, session_factory, provider):
    """One OAuth call serves requests until 300s before expiry."""

    ticker = Ticker()
    client = make_client(store, session_factory, provider, clock=ticker)

    assert await client.get_access_token() == "token-1"
    ticker.now = 3000
    assert await client.get_access_token() == "token-1"
    assert len(provider.calls("/oauth/v1/generate")) == 1

    ticker.now = 3300
    await client.get_access_token()
    assert len(provider.calls("/oauth/v1/generate")) == 2

    client.clear_token_cache()
    await client.get_access_token()
    assert len(provider.calls("/oauth/v1/generate")) == 3


@pytest.mark.asyncio
async def test_token_requires_credentials(store, session_factory, provider):
    client = make_client(store, session_factory, provider, config=make_config(mpesa_consumer_key=""))

    with pytest.raises(ProviderConfigurationError):
        await client.get_access_token()


@pytest.mark.asyncio
async def test_token_failure_is_transient(store, session_factory, provider):
    provider.reply("/oauth/v1/generate", (401, {"errorMessage": "Invalid credentials"}))
    client = make_client(store, session_factory, provider)

    with pytest.raises(TransientDeliveryError):
        await client.get_access_token()


@pytest.mark.asyncio
async def test_production_environment_uses_live_host(store, session_factory, provider):
    client = make_client(store, session_factory, provider, config=make_config(mpesa_environment="production"))

    await client.get_access_token()

    assert provider.requests[0].url.host == "api.safaricom.co.ke"
    assert client.callback_url("/stk") == "https://payrelay.test/api/mpesa/callback/stk"


@pytest.mark.asyncio
async def test_dispatcher_enqueues_transport_errors(store, broadcaster, sink):
    """A connection failure stores the exact request as a retry job."""

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as http_client:
        dispatcher = OutboundDispatcher(store, http_client, broadcaster=broadcaster, default_max_retries=4)
        with pytest.raises(TransientDeliveryError) as excinfo:
            await dispatcher.send_with_retry(
                "c2b_register",
                "https://provider.test/register",
                headers={"Authorization": "Bearer t"},
                payload={"ShortCode": "174379"},
                correlation_id="c2b_register-1",
            )

    job = store.get(excinfo.value.job_id)
    assert excinfo.value.message == "connection refused"
    assert excinfo.value.upstream_status is None
    assert (job.job_type, job.max_retries, job.correlation_id) == ("c2b_register", 4, "c2b_register-1")
    assert job.parsed_payload() == {"ShortCode": "174379"}
    assert sink.types() == ["retry:queued"]


@pytest.mark.asyncio
async def test_dispatcher_returns_body_on_success(store):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"ok": 1}))) as c:
        data = await OutboundDispatcher(store, c).send_with_retry("stk_query", "https://provider.test/q", payload={})

    assert data == {"ok": 1}
    assert store.stats()["pending"] == 0


@pytest.mark.asyncio
async def test_b2c_payment_records_pending_transaction(store, session_factory, provider):
    provider.reply(
        "/mpesa/b2c/v1/paymentrequest",
        (200, {"ConversationID": "AG_1", "OriginatorConversationID": "orig-1", "ResponseCode": "0"}),
    )
    client = make_client(store, session_factory, provider, config=make_config(mpesa_security_credential="secret"))

    await client.b2c_payment(250, "0712345678", "Refund")

    [call] = provider.calls("/mpesa/b2c/v1/paymentrequest")
    assert b'"ResultURL":"https://payrelay.test/api/mpesa/callback/b2c/result"' in call.content.replace(b" ", b"")
    rows, total = client.transactions.list_transactions(transaction_type="B2C")
    assert total == 1
    assert (rows[0].conversation_id, rows[0].status, rows[0].phone_number) == ("AG_1", "pending", "254712345678")
    assert "secret" not in rows[0].raw_request


def test_completion_hooks_skip_rejections(store, session_factory):
    """Queued calls only become transactions when the provider accepted them."""

    transactions = TransactionService(session_factory)
    hooks = provider_completion_hooks(transactions)
    job = store.enqueue("stk_push", "https://provider.test/pay", "POST", {}, {"Amount": 5, "PhoneNumber": "2547"}, 3)

    hooks["stk_push"](job, {"ResponseCode": "1"})
    hooks["stk_push"](job, {"ResponseCode": "0", "CheckoutRequestID": "ws_CO_9"})

    rows, total = transactions.list_transactions()
    assert total == 1
    assert rows[0].checkout_request_id == "ws_CO_9"

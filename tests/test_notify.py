import httpx
import orjson
import pytest

from lifegate.config import Settings
from lifegate.errors import DeliveryFailed
from lifegate.model.donation import DonationRecord
from lifegate.notify import RECEIPT_SUBJECT, BrevoMailer, ReceiptDispatcher

from .conftest import FakeMailer

BREVO = Settings(
    brevo_api_key="xkeysib-test",
    brevo_sender_email="receipts@lifegate.example",
    public_base_url="https://give.example.org",
)


def _record(**kw):
    base = dict(
        reference="cs_test_1", provider="stripe", amount_minor=500000,
        currency="NGN", donor_name="Jane Doe", donor_email="jane@example.com",
        status="success", receipt_token="cd" * 24, created_at=1_700_000_000.0,
    )
    base.update(kw)
    return DonationRecord(**base)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_brevo_send_posts_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers["api-key"]
        seen["body"] = orjson.loads(request.content)
        return httpx.Response(201, json={"messageId": "<abc@brevo>"})

    async with _client(handler) as http:
        mid = await BrevoMailer(http, BREVO).send(
            "jane@example.com", "Jane Doe", RECEIPT_SUBJECT, "<p>hi</p>"
        )

    assert mid == "<abc@brevo>"
    assert seen["url"] == "https://api.brevo.com/v3/smtp/email"
    assert seen["key"] == "xkeysib-test"
    assert seen["body"]["to"] == [{"email": "jane@example.com",
                                   "name": "Jane Doe"}]
    assert seen["body"]["sender"]["email"] == "receipts@lifegate.example"
    assert seen["body"]["htmlContent"] == "<p>hi</p>"


async def test_brevo_error_response_raises():
    def handler(request):
        return httpx.Response(400, json={"message": "invalid sender"})

    async with _client(handler) as http:
        with pytest.raises(DeliveryFailed, match="invalid sender"):
            await BrevoMailer(http, BREVO).send("a@b.co", None, "s", "h")


async def test_brevo_network_error_raises():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    async with _client(handler) as http:
        with pytest.raises(DeliveryFailed, match="unreachable"):
            await BrevoMailer(http, BREVO).send("a@b.co", None, "s", "h")


async def test_brevo_missing_config_raises():
    async with _client(lambda r: httpx.Response(201)) as http:
        with pytest.raises(DeliveryFailed, match="BREVO_API_KEY"):
            await BrevoMailer(http, Settings()).send("a@b.co", None, "s", "h")


async def test_dispatcher_sends_receipt_with_download_link():
    mailer = FakeMailer()
    mid = await ReceiptDispatcher(mailer, BREVO).send_receipt(_record())

    assert mid == "msg-1"
    sent = mailer.sent[0]
    assert sent["to"] == "jane@example.com"
    assert sent["subject"] == RECEIPT_SUBJECT
    assert "https://give.example.org/api/receipt?ref=cs_test_1&amp;t=" \
        + "cd" * 24 in sent["html"]


async def test_dispatcher_skips_without_email():
    mailer = FakeMailer()
    assert await ReceiptDispatcher(mailer, BREVO).send_receipt(
        _record(donor_email=None)
    ) is None
    assert mailer.sent == []


async def test_dispatcher_swallows_delivery_failure(caplog):
    mailer = FakeMailer(fail=True)
    assert await ReceiptDispatcher(mailer, BREVO).send_receipt(
        _record()
    ) is None
    assert "receipt email failed for cs_test_1" in caplog.text


async def test_dispatcher_without_base_url_logs_and_sends_nothing(caplog):
    mailer = FakeMailer()
    assert await ReceiptDispatcher(mailer, Settings()).send_receipt(
        _record()
    ) is None
    assert mailer.sent == []
    assert "receipt email failed for cs_test_1" in caplog.text
    assert "Missing PUBLIC_BASE_URL" in caplog.text

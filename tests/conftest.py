import hashlib
import hmac
import time
from dataclasses import replace
from typing import List, Optional

import fakeredis
import orjson
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from lifegate.config import Settings
from lifegate.errors import DeliveryFailed
from lifegate.infra.sql import make_async_engine
from lifegate.model.ledger import create_schema, new_ledger
from lifegate.server import create_app

STRIPE_SECRET = "whsec_test_secret"
PAYSTACK_SECRET = "sk_test_paystack"
BASE_URL = "https://give.example.org"


# ----------------------------
# Signing helpers
# ----------------------------
def stripe_signature(payload: bytes, secret: str = STRIPE_SECRET,
                     timestamp: Optional[int] = None) -> str:
    t = int(time.time()) if timestamp is None else timestamp
    signed = f"{t}.".encode() + payload
    v1 = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={t},v1={v1}"


def paystack_signature(payload: bytes, secret: str = PAYSTACK_SECRET) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()


def checkout_completed(session_id: str = "cs_test_1",
                       amount_total: int = 500000, currency: str = "ngn",
                       email: Optional[str] = "jane@example.com",
                       name: Optional[str] = "Jane Doe",
                       metadata: Optional[dict] = None) -> bytes:
    return orjson.dumps({
        "id": "evt_1",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": session_id,
            "object": "checkout.session",
            "amount_total": amount_total,
            "currency": currency,
            "customer_email": email,
            "customer_details": {"name": name, "email": email},
            "metadata": metadata or {},
        }},
    })


def charge_success(reference: str = "ps_ref_1", amount: int = 250000,
                   email: Optional[str] = "ade@example.com",
                   donor_name: Optional[str] = "Ade",
                   event: str = "charge.success") -> bytes:
    return orjson.dumps({
        "event": event,
        "data": {
            "reference": reference,
            "amount": amount,
            "currency": "NGN",
            "customer": {"email": email},
            "metadata": {"donor_name": donor_name} if donor_name else "",
        },
    })


# ----------------------------
# Doubles
# ----------------------------
class FakeMailer:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[dict] = []

    async def send(self, to_email, to_name, subject, html) -> str:
        if self.fail:
            raise DeliveryFailed("smtp down")
        self.sent.append({"to": to_email, "name": to_name,
                          "subject": subject, "html": html})
        return f"msg-{len(self.sent)}"


# ----------------------------
# Fixtures
# ----------------------------
@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        ledger_backend="pg",
        database_url=f"sqlite:///{tmp_path / 'lifegate.db'}",
        stripe_webhook_secret=STRIPE_SECRET,
        paystack_secret_key=PAYSTACK_SECRET,
        public_base_url=BASE_URL,
        campaign_goal_minor=100_000_000,
        session_secret="test-session-secret",
        admin_username="admin",
        admin_password="pw",
        log_level="DEBUG",
    )


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def client(settings, mailer):
    app = create_app(settings, mailer=mailer)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_client(client):
    r = client.post("/admin/login", data={"username": "admin",
                                          "password": "pw"},
                    follow_redirects=False)
    assert r.status_code == 303
    return client


@pytest_asyncio.fixture(params=["pg", "redis"])
async def make_ledger(request, settings):
    """Factory for ledger stores over one shared backing store.

    SQL stores each get their own session, so concurrent callers get
    concurrent transactions.
    """
    if request.param == "pg":
        sql = make_async_engine(settings.database_url)
        async with sql.engine.begin() as conn:
            await create_schema(conn)
        sessions = []

        def factory(**overrides):
            s = replace(settings, **overrides)
            session = sql.SessionAsync()
            sessions.append(session)
            return new_ledger(s, db=session, gated=sql.gated)

        yield factory
        for session in sessions:
            await session.close()
        await sql.dispose()
    else:
        r = fakeredis.FakeAsyncRedis(decode_responses=True)

        def factory(**overrides):
            s = replace(settings, **overrides, ledger_backend="redis")
            return new_ledger(s, r=r)

        yield factory
        await r.aclose()

from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import (
    APIRouter, BackgroundTasks, Depends, FastAPI, Form, HTTPException, Request,
)
from fastapi.responses import (
    ORJSONResponse, PlainTextResponse, RedirectResponse, Response,
)
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import __version__
from .config import Settings
from .errors import (
    CampaignMissing, ConfigError, Forbidden, NotFound, SignatureInvalid,
    TransactionConflict,
)
from .gateways import PaymentAdapter, PaystackGateway, StripeGateway
from .helpers import ct_equal, is_valid_email, major_to_minor, \
    safe_filename_part
from .infra.sql import make_async_engine
from .model.ledger import LedgerStore, create_schema, new_ledger
from .notify import BrevoMailer, ReceiptDispatcher
from .receipts import Branding, render

log = logging.getLogger(__name__)

router = APIRouter()

ADMIN_HOME = "/api/admin/donations"


# ----------------------------
# startup / shutdown
# ----------------------------
def _say_hello(s: Settings) -> None:
    backend = "PostgreSQL/SQLite" if s.ledger_backend == "pg" else "Redis"
    print("\n" + "=" * 50)
    print("Life Gate donations API is starting up...")
    print(f"   - Ledger Backend: {backend}")
    print(f"   - Campaign:       {s.campaign_id}")
    print("=" * 50 + "\n")


async def _startup(app: FastAPI) -> None:
    # process-wide init runs exactly once per app
    if app.state.started:
        return
    s: Settings = app.state.settings

    logging.basicConfig(
        level=s.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("lifegate").setLevel(s.log_level)
    _say_hello(s)

    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
    )

    if s.ledger_backend == "pg":
        sql = make_async_engine(s.require("database_url"))
        async with sql.engine.begin() as conn:
            await create_schema(conn)
        app.state.sql = sql
    elif s.ledger_backend == "redis":
        app.state.redis = redis.from_url(
            s.redis_url,
            decode_responses=True,
            max_connections=s.redis_max_conn,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    else:
        raise ConfigError(f"Unknown LEDGER_BACKEND {s.ledger_backend!r}")

    gateways: dict[str, PaymentAdapter] = {}
    if s.stripe_webhook_secret:
        gateways["stripe"] = StripeGateway(
            s.stripe_webhook_secret, tolerance=s.stripe_webhook_tolerance
        )
    if s.paystack_secret_key:
        gateways["paystack"] = PaystackGateway(s.paystack_secret_key)
    app.state.gateways = gateways

    mailer = app.state.mailer or BrevoMailer(app.state.http, s)
    app.state.dispatcher = ReceiptDispatcher(mailer, s)
    app.state.branding = Branding(s.ministry_name, s.campaign_title)
    app.state.started = True


async def _shutdown(app: FastAPI) -> None:
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None

    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None

    sql = getattr(app.state, "sql", None)
    if sql is not None:
        await sql.dispose()
        app.state.sql = None
    app.state.started = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _startup(app)
    try:
        yield
    finally:
        await _shutdown(app)


# ----------------------------
# Dependencies
# ----------------------------
def _started(request: Request) -> FastAPI:
    app = request.app
    if not getattr(app.state, "started", False):
        raise RuntimeError("lifegate not initialized (startup has not run)")
    return app


async def ledger_store(request: Request) -> LedgerStore:
    app = _started(request)
    s: Settings = app.state.settings
    if s.ledger_backend == "pg":
        async with app.state.sql.SessionAsync() as session:
            yield new_ledger(s, db=session, gated=app.state.sql.gated)
    else:
        yield new_ledger(s, r=app.state.redis)


def dispatcher(request: Request) -> ReceiptDispatcher:
    return _started(request).state.dispatcher


def _gateway(name: str, env_var: str):
    def dep(request: Request) -> PaymentAdapter:
        gw = _started(request).state.gateways.get(name)
        if gw is None:
            raise ConfigError(f"Missing {env_var}")
        return gw
    return dep


stripe_gateway = _gateway("stripe", "STRIPE_WEBHOOK_SECRET")
paystack_gateway = _gateway("paystack", "PAYSTACK_SECRET_KEY")


# ----------------------------
# Helpers
# ----------------------------
def require_admin(request: Request) -> str:
    user = request.session.get("admin_user")
    if not user:
        raise HTTPException(status_code=401, detail="admin login required")
    return user


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(SignatureInvalid)
    async def _signature_invalid(request: Request, exc: SignatureInvalid):
        return PlainTextResponse(f"Webhook Error: {exc}", status_code=400)

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound):
        return PlainTextResponse(str(exc) or "Not found", status_code=404)

    @app.exception_handler(Forbidden)
    async def _forbidden(request: Request, exc: Forbidden):
        return PlainTextResponse(str(exc) or "Forbidden", status_code=403)

    async def _server_error(request: Request, exc: Exception):
        log.error("%s %s failed: %s", request.method, request.url.path, exc)
        return ORJSONResponse({"error": str(exc)}, status_code=500)

    for exc_cls in (CampaignMissing, TransactionConflict, ConfigError):
        app.add_exception_handler(exc_cls, _server_error)


# ----------------------------
# Service info
# ----------------------------
@router.get("/api")
async def api_index():
    return {
        "status": "ok",
        "message": "Life Gate Ministries Donation API",
        "version": __version__,
        "endpoints": {
            "stats": "/api/stats",
            "donations": "/api/donations",
            "receipt": "/api/receipt?ref=<reference>&t=<token>",
            "webhooks": {
                "stripe": "/api/stripe/webhook",
                "paystack": "/api/paystack/webhook",
            },
        },
    }


@router.get("/api/health")
async def api_health(request: Request):
    app = _started(request)
    return {"ok": True, "backend": app.state.settings.ledger_backend}


# ----------------------------
# Webhooks
# ----------------------------
async def _ingest(request: Request, gateway: PaymentAdapter,
                  ledger: LedgerStore, tasks: BackgroundTasks,
                  receipts: ReceiptDispatcher) -> dict:
    # exact bytes as transmitted; signatures are over these, not over JSON
    payload = await request.body()
    try:
        event = gateway.verify_webhook(payload, request.headers)
    except SignatureInvalid as e:
        log.warning("%s webhook rejected: %s", gateway.name, e)
        raise
    log.info("%s webhook received: %s", gateway.name,
             gateway.event_kind(event))

    try:
        donation = gateway.donation_event(event)
    except SignatureInvalid as e:
        log.warning("%s webhook payload rejected: %s", gateway.name, e)
        raise
    if donation is None:
        return {"received": True}
    if donation.amount_minor == 0:
        # recorded anyway; zero-amount events are a product decision
        log.warning("zero-amount donation %s from %s", donation.reference,
                    gateway.name)

    result = await ledger.apply(donation)

    # after commit; a lost email is recoverable by resend, a lost update
    # is not
    if result.applied and result.record.donor_email:
        tasks.add_task(receipts.send_receipt, result.record)
    return {"received": True}


@router.post("/api/stripe/webhook")
async def stripe_webhook(
    request: Request,
    tasks: BackgroundTasks,
    gateway: PaymentAdapter = Depends(stripe_gateway),
    ledger: LedgerStore = Depends(ledger_store),
    receipts: ReceiptDispatcher = Depends(dispatcher),
):
    return await _ingest(request, gateway, ledger, tasks, receipts)


@router.post("/api/paystack/webhook")
async def paystack_webhook(
    request: Request,
    tasks: BackgroundTasks,
    gateway: PaymentAdapter = Depends(paystack_gateway),
    ledger: LedgerStore = Depends(ledger_store),
    receipts: ReceiptDispatcher = Depends(dispatcher),
):
    return await _ingest(request, gateway, ledger, tasks, receipts)


# ----------------------------
# Public reads
# ----------------------------
@router.get("/api/stats")
async def get_stats(ledger: LedgerStore = Depends(ledger_store)):
    stats = await ledger.get_stats()
    return stats.to_json()


@router.get("/api/donations")
async def get_donations(limit: int = 10,
                        ledger: LedgerStore = Depends(ledger_store)):
    items = await ledger.recent_donations(limit=limit)
    return {"donations": [d.to_json() for d in items]}


@router.get("/api/receipt")
async def get_receipt(
    request: Request,
    ref: str = "",
    t: str = "",
    ledger: LedgerStore = Depends(ledger_store),
):
    ref = ref.strip()
    t = t.strip()
    if not ref or not t:
        return PlainTextResponse("Missing ref or token", status_code=400)

    record = await ledger.get_donation(ref)
    if record is None:
        raise NotFound("Receipt not found")
    if not record.receipt_token or not ct_equal(record.receipt_token, t):
        raise Forbidden("Invalid token")

    pdf = render(record, "pdf", request.app.state.branding)
    filename = f"LifeGate_Receipt_{safe_filename_part(ref)}.pdf"
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-store",
        },
    )


# ----------------------------
# Admin
# ----------------------------
@router.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form(ADMIN_HOME),
):
    s: Settings = _started(request).state.settings
    ok_user = ct_equal(username.strip(), s.admin_username)
    ok_pass = ct_equal(password, s.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        # only local paths
        dest = next if next.startswith("/") and not next.startswith("//") \
            else ADMIN_HOME
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    return ORJSONResponse({"error": "Invalid credentials."}, status_code=401)


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/api", status_code=HTTP_303_SEE_OTHER)


def _edit_updates(payload: dict) -> dict:
    # wire names -> record fields
    mapping = {
        "name": "donor_name",
        "email": "donor_email",
        "currency": "currency",
        "amountMinor": "amount_minor",
    }
    return {field: payload[key] for key, field in mapping.items()
            if key in payload}


@router.get("/api/admin/donations")
async def admin_list_donations(
    limit: int = 100,
    admin: str = Depends(require_admin),
    ledger: LedgerStore = Depends(ledger_store),
):
    items = await ledger.list_donations(limit=limit)
    return {"donations": [d.to_json() for d in items], "limit": limit}


@router.post("/api/admin/donations")
async def admin_add_donation(
    payload: dict,
    admin: str = Depends(require_admin),
    ledger: LedgerStore = Depends(ledger_store),
):
    amount = payload.get("amountMinor")
    if amount is None and payload.get("amountMajor") is not None:
        try:
            amount = major_to_minor(payload["amountMajor"])
        except (ArithmeticError, ValueError):
            amount = None
    if isinstance(amount, bool) or not isinstance(amount, int) \
            or amount <= 0:
        raise HTTPException(400, detail="Invalid amountMinor")

    email = (payload.get("email") or "").strip() or None
    if email is not None and not is_valid_email(email):
        raise HTTPException(400, detail="Invalid email")

    result = await ledger.add_manual_donation(
        donor_name=(payload.get("name") or "").strip() or None,
        donor_email=email,
        amount_minor=amount,
        currency=str(payload.get("currency") or "NGN"),
        actor=admin,
    )
    return {"ok": True, "donation": result.record.to_json()}


@router.patch("/api/admin/donations/{reference}")
async def admin_edit_donation(
    reference: str,
    payload: dict,
    admin: str = Depends(require_admin),
    ledger: LedgerStore = Depends(ledger_store),
):
    record = await ledger.edit_donation(reference, _edit_updates(payload),
                                        actor=admin)
    return {"ok": True, "donation": record.to_json()}


@router.delete("/api/admin/donations/{reference}")
async def admin_delete_donation(
    reference: str,
    admin: str = Depends(require_admin),
    ledger: LedgerStore = Depends(ledger_store),
):
    await ledger.delete_donation(reference, actor=admin)
    return {"ok": True}


@router.post("/api/admin/donations/{reference}/resend")
async def admin_resend_receipt(
    reference: str,
    admin: str = Depends(require_admin),
    ledger: LedgerStore = Depends(ledger_store),
    receipts: ReceiptDispatcher = Depends(dispatcher),
):
    record = await ledger.get_donation(reference)
    if record is None:
        raise NotFound("Donation not found")
    if not record.donor_email:
        raise HTTPException(400, detail="Donation has no email address")
    message_id = await receipts.send_receipt(record)
    return {"ok": message_id is not None, "messageId": message_id}


@router.get("/api/admin/audit")
async def admin_audit(
    limit: int = 50,
    admin: str = Depends(require_admin),
    ledger: LedgerStore = Depends(ledger_store),
):
    entries = await ledger.list_audit(limit=limit)
    return {"items": [e.to_json() for e in entries], "limit": limit}


# ----------------------------
# App factory
# ----------------------------
def create_app(settings: Optional[Settings] = None, *,
               mailer=None) -> FastAPI:
    """Build the ASGI app. Clients are created in the lifespan, not here.

    uvicorn --factory lifegate.server:create_app
    """
    settings = settings or Settings.from_env()
    app = FastAPI(
        title="Life Gate Donations",
        version=__version__,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.state.settings = settings
    app.state.mailer = mailer
    app.state.started = False
    _install_error_handlers(app)
    app.include_router(router)
    return app

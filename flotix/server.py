from __future__ import annotations
import logging
from typing import Optional

import httpx
from fastapi import (
    APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request,
)
from fastapi.responses import ORJSONResponse

from .artifacts import PdfTicketRenderer
from .config import Settings
from .errors import FlotixError, NotFoundError, ValidationError
from .gateway import MollieGateway, MockPay, PaymentAdapter
from .helpers import (
    cents_to_str, ct_equal, from_iso, price_to_cents, to_iso,
)
from .infra.sql import GatedAsyncSession, open_database
from .infra.timings import snapshot, timeit
from .mailer import OutboxMailer, SmtpMailer
from .model import catalog, ledger, redemption
from .model.db import create_schema
from .model.orders import OrderManager, Outcome

log = logging.getLogger(__name__)

app = FastAPI(
    title="Flotix",
    default_response_class=ORJSONResponse,
)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    settings = Settings.from_env()
    app.state.settings = settings
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("Flotix is starting up: gateway=%s mail=%s currency=%s "
             "tax=%s", settings.payment_gateway, settings.mail_backend,
             settings.currency, settings.tax_rate)


@app.on_event("startup")
async def _db_init():
    database = open_database(app.state.settings.database_url)
    async with database.engine.begin() as conn:
        await create_schema(conn)
    app.state.database = database


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=128, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _services_start():
    settings: Settings = app.state.settings
    if settings.payment_gateway == "mock":
        gateway: PaymentAdapter = MockPay(
            checkout_base=f"{settings.public_url.rstrip('/')}/mockpay"
        )
    else:
        gateway = MollieGateway(
            settings.mollie_api_key, settings.mollie_api_url,
            http=app.state.http,
        )
    if settings.mail_backend == "memory":
        mailer = OutboxMailer()
    else:
        mailer = SmtpMailer(
            settings.smtp_host, settings.smtp_port, settings.smtp_user,
            settings.smtp_pass, settings.mail_from,
        )
    app.state.gateway = gateway
    app.state.mailer = mailer
    app.state.orders = OrderManager(
        db=app.state.database,
        gateway=gateway,
        renderer=PdfTicketRenderer(qr_target=settings.validate_url),
        mailer=mailer,
        settings=settings,
    )


@app.on_event("shutdown")
async def _gateway_stop():
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None:
        await gateway.aclose()
        app.state.gateway = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _db_stop():
    database = getattr(app.state, "database", None)
    if database is not None:
        await database.dispose()
        app.state.database = None


# ----------------------------
# Dependencies
# ----------------------------
async def get_db() -> GatedAsyncSession:
    async with app.state.database.session() as s:
        yield s


def get_orders() -> OrderManager:
    return app.state.orders


def require_admin(request: Request) -> None:
    # raising is what stops the handler; there is no advisory mode
    expected = app.state.settings.admin_pass
    supplied = (request.headers.get("x-admin-pass")
                or request.query_params.get("pass") or "")
    if not expected or not supplied or not ct_equal(supplied, expected):
        raise HTTPException(status_code=403, detail="Unauthorized")


@app.exception_handler(FlotixError)
async def _flotix_error(request: Request, exc: FlotixError):
    if exc.status_code >= 500:
        log.error("%s %s -> %s: %s", request.method, request.url.path,
                  exc.reason, exc.detail)
    return ORJSONResponse(
        {"error": exc.reason, "detail": exc.detail},
        status_code=exc.status_code,
    )


# ----------------------------
# Public pages / catalog
# ----------------------------
@app.get("/")
async def home():
    return {"ok": True, "service": "flotix"}


@app.get("/events/{event_id}/tickets")
async def event_tickets(event_id: str, db=Depends(get_db)):
    return await catalog.list_tiers(db, event_id)


# ----------------------------
# Checkout
# ----------------------------
@app.post("/create-payment")
async def create_payment(
    payload: dict,
    orders: OrderManager = Depends(get_orders),
):
    selected = payload.get("tickets")
    email = payload.get("email")
    event_id = payload.get("eventId")
    if not selected or not email or not event_id:
        raise ValidationError("Missing data")
    if not isinstance(selected, list):
        raise ValidationError("tickets must be a list")

    async with timeit("api.create_payment"):
        session = await orders.create_order(email, selected, event_id)
    return {
        "paymentId": session.payment_id,
        "checkoutUrl": session.checkout_url,
        "amount": cents_to_str(session.amount),
        "currency": session.currency,
    }


@app.get("/api/orders/{payment_id}")
async def get_order(
    payment_id: str, orders: OrderManager = Depends(get_orders)
):
    return await orders.get_order(payment_id)


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    background: BackgroundTasks,
    orders: OrderManager = Depends(get_orders),
):
    # Mollie posts `id=tr_...` form-encoded; only the id is used
    if request.headers.get("content-type", "").startswith(
        "application/json"
    ):
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Invalid JSON")
        payment_id = body.get("id") if isinstance(body, dict) else None
    else:
        form = await request.form()
        payment_id = form.get("id")
    if not payment_id or not isinstance(payment_id, str):
        raise ValidationError("missing payment id")

    # gate + transaction complete before we acknowledge
    async with timeit("api.webhook"):
        result = await orders.fulfill_order(payment_id, deliver=False)
    if result.outcome == Outcome.FULFILLED:
        background.add_task(orders.deliver_tickets, payment_id)
    return {
        "ok": True,
        "outcome": result.outcome.value,
        "reason": result.reason,
        "tickets": len(result.tickets),
    }


# ----------------------------
# Redemption
# ----------------------------
@app.get("/validate/{code}")
async def validate_ticket(code: str, db=Depends(get_db)):
    res = await redemption.validate(db, code)
    if res.outcome == redemption.Redemption.NOT_FOUND:
        return ORJSONResponse(
            {"status": res.outcome.value, "detail": "Ticket not found"},
            status_code=404,
        )
    if res.outcome == redemption.Redemption.ALREADY_USED:
        return ORJSONResponse(
            {"status": res.outcome.value, "detail": "Ticket already used",
             "usedAt": to_iso(res.ticket.used_at)},
            status_code=410,
        )
    return {
        "status": res.outcome.value,
        "detail": "Ticket validated successfully",
        "ticket": res.ticket.as_dict(),
    }


# ----------------------------
# MockPay (PAYMENT_GATEWAY=mock only)
# ----------------------------
def _mockpay() -> MockPay:
    gateway = app.state.gateway
    if not isinstance(gateway, MockPay):
        raise NotFoundError("mock gateway disabled")
    return gateway


@app.get("/mockpay/{payment_id}")
async def mockpay_screen(payment_id: str):
    p = _mockpay().payments.get(payment_id)
    if p is None:
        raise NotFoundError("payment not found", reason="payment-not-found")
    return {
        "paymentId": payment_id,
        "status": p["status"],
        "amount": cents_to_str(p["amount"]),
        "currency": p["currency"],
        "description": p["description"],
    }


@app.post("/mockpay/{payment_id}/emit")
async def mockpay_emit(payment_id: str, request: Request):
    mock = _mockpay()
    form = await request.form()
    kind = form.get("t")  # paid|failed|canceled|expired
    if kind not in {"paid", "failed", "canceled", "expired"}:
        raise ValidationError("invalid kind")
    mock.set_status(payment_id, kind)

    webhook_url = app.state.settings.mock_webhook_url
    delivered = False
    if webhook_url:
        try:
            r = await app.state.http.post(webhook_url,
                                          data={"id": payment_id})
            delivered = r.status_code < 300
        except httpx.HTTPError as e:
            # the gateway would retry; here the user can click again
            log.warning("mock webhook delivery failed: %s", e)
    return {"ok": True, "status": kind, "webhookDelivered": delivered}


# ----------------------------
# Admin
# ----------------------------
admin = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@admin.get("/events")
async def admin_events(db=Depends(get_db)):
    return await catalog.list_events(db)


@admin.post("/events")
async def admin_create_event(payload: dict, db=Depends(get_db)):
    name = payload.get("name")
    date = payload.get("date")
    tiers = payload.get("tickets") or []
    if not name or not date or not isinstance(tiers, list):
        raise ValidationError("Missing data")
    try:
        date_ts = from_iso(date) if isinstance(date, str) else float(date)
    except (TypeError, ValueError):
        raise ValidationError("date must be ISO-8601 or epoch seconds")
    return await catalog.create_event(
        db,
        name=name,
        date=date_ts,
        tiers=tiers,
        description=payload.get("description") or "",
        logo_url=payload.get("logoURL"),
        background_url=payload.get("backgroundURL"),
    )


@admin.get("/tiers")
async def admin_tiers(eventId: Optional[str] = None, db=Depends(get_db)):
    if not eventId:
        raise ValidationError("Missing eventId")
    return await catalog.list_tiers(db, eventId)


@admin.post("/update-tier")
async def admin_update_tier(payload: dict, db=Depends(get_db)):
    tier_id = payload.get("tierId") or payload.get("ticketId")
    if not tier_id:
        raise ValidationError("Missing tierId")
    price = payload.get("price")
    capacity = payload.get("max")
    if isinstance(capacity, bool) or isinstance(price, bool):
        raise ValidationError("malformed price/max")
    try:
        unit_price = None
        if price is not None:
            unit_price = price_to_cents(price)
        capacity = None if capacity is None else int(capacity)
    except (TypeError, ValueError, ArithmeticError):
        raise ValidationError("malformed price/max")
    row = await ledger.update_tier(
        db, tier_id,
        unit_price=unit_price,
        capacity=capacity,
        status=payload.get("status"),
    )
    return ledger.tier_view(row)


@admin.post("/tiers/{tier_id}/release")
async def admin_release(tier_id: str, payload: dict, db=Depends(get_db)):
    qty = payload.get("quantity")
    if isinstance(qty, bool) or not isinstance(qty, int):
        raise ValidationError("quantity must be an integer")
    await ledger.release(db, tier_id, qty)
    return ledger.tier_view(await ledger.get_tier(db, tier_id))


@admin.get("/orders")
async def admin_orders(
    limit: int = 200, orders: OrderManager = Depends(get_orders)
):
    return {"items": await orders.list_orders(limit), "limit": limit}


@admin.post("/orders/expire")
async def admin_expire(orders: OrderManager = Depends(get_orders)):
    expired = await orders.expire_stale()
    return {"expired": expired}


@admin.post("/orders/{payment_id}/resend")
async def admin_resend(
    payment_id: str, orders: OrderManager = Depends(get_orders)
):
    return {"sent": await orders.deliver_tickets(payment_id)}


@admin.get("/reconciliation")
async def admin_reconciliation(
    resolved: bool = False, orders: OrderManager = Depends(get_orders)
):
    items = await orders.list_reconciliation(include_resolved=resolved)
    return {"items": items}


@admin.post("/reconciliation/{record_id}/resolve")
async def admin_resolve(
    record_id: int, orders: OrderManager = Depends(get_orders)
):
    await orders.resolve_reconciliation(record_id)
    return {"ok": True}


@admin.get("/timings")
async def admin_timings():
    return snapshot()


app.include_router(admin)

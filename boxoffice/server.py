from __future__ import annotations
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import httpx
import redis.asyncio as redis
import structlog
from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import (
    HTMLResponse, ORJSONResponse, PlainTextResponse, RedirectResponse,
    Response,
)
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .catalog import check_addable, get_ticket_type
from .checkout import CheckoutOrchestrator, INVALID
from .config import Settings
from .errors import CartError, GatewayError, NotificationError, UnknownProvider
from .fulfillment import OrderFulfillment
from .gateway import BillingInfo, STATUSES, UNKNOWN, build_registry
from .gateway.mockpay import MockPay
from .helpers import format_amount, is_htmx, now_ts, to_iso
from .infra.sql import open_database
from .infra.timings import TIMINGS, timeit
from .logs import configure_logging
from .model.cart import Cart, CartStore
from .model.db import Order, create_tables
from .model.pendingpayment import new_store
from .reconcile import Reconciler, Reconciliation

logger = structlog.get_logger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
templates.env.filters["money"] = format_amount

router = APIRouter()


# ----------------------------
# App factory
# ----------------------------
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.env)

    database = open_database(settings)

    app = FastAPI(
        title="BoxOffice",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)

    app.state.settings = settings
    app.state.database = database
    app.state.sessions = database.sessions
    app.state.gated = database.gated
    app.state.carts = CartStore(ttl_seconds=settings.cart_ttl_seconds)
    app.state.fulfillment = OrderFulfillment(database.sessions,
                                             database.gated)
    app.state.redis = None

    @app.on_event("startup")
    async def _db_init():
        steps = [create_tables]
        if settings.pending_backend == "sql":
            from .model.pendingpayment._sql import create_schema
            steps.append(create_schema)
        await database.run_ddl(*steps)

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=settings.http_timeout,
            limits=httpx.Limits(
                max_connections=100, max_keepalive_connections=20
            ),
        )
        app.state.registry = build_registry(settings, app.state.http)

    @app.on_event("startup")
    async def _redis_start():
        if settings.pending_backend == "redis":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("startup")
    async def _say_hello():
        logger.info("boxoffice.startup", providers=list(settings.providers),
                    pending_backend=settings.pending_backend, env=settings.env)

    @app.on_event("shutdown")
    async def _http_client_stop():
        registry = getattr(app.state, "registry", None)
        if registry is not None:
            await registry.aclose()
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = app.state.redis
        if r is not None:
            await r.close()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        await database.dispose()

    @app.exception_handler(UnknownProvider)
    async def _unknown_provider(request: Request, exc: UnknownProvider):
        return ORJSONResponse({"detail": str(exc)}, status_code=404)

    app.include_router(router)
    return app


# ----------------------------
# Dependencies
# ----------------------------
def current_user(request: Request) -> Optional[int]:
    # authentication lives elsewhere; it leaves the user id in the session
    user_id = request.session.get("user_id")
    return int(user_id) if user_id else None


def require_user(user_id: Optional[int] = Depends(current_user)) -> int:
    if user_id is None:
        raise HTTPException(401, detail="Authentication required")
    return user_id


def require_admin(request: Request,
                  user_id: int = Depends(require_user)) -> int:
    if user_id not in request.app.state.settings.admin_user_ids:
        raise HTTPException(403, detail="Admin access required")
    return user_id


def carts(request: Request) -> CartStore:
    return request.app.state.carts


async def pendingpayments(request: Request):
    st = request.app.state
    ttl = st.settings.pending_ttl_seconds
    if st.settings.pending_backend == "sql":
        async with st.sessions() as session:
            yield new_store(backend="sql", db=session, ttl_seconds=ttl,
                            gated=st.gated)
    else:
        yield new_store(backend="redis", r=st.redis, ttl_seconds=ttl)


def orchestrator(request: Request,
                 pending=Depends(pendingpayments)) -> CheckoutOrchestrator:
    st = request.app.state
    return CheckoutOrchestrator(st.registry, pending, st.fulfillment,
                                st.carts)


def reconciler(request: Request,
               pending=Depends(pendingpayments)) -> Reconciler:
    st = request.app.state
    return Reconciler(st.registry, pending, st.fulfillment, st.carts,
                      status_timeout=st.settings.status_query_timeout)


# ----------------------------
# Helpers
# ----------------------------
def redirect(request: Request, url: str) -> Response:
    if is_htmx(request.headers):
        # HTMX follows HX-Redirect client side; a 303 would be swapped in
        return Response(status_code=200, headers={"HX-Redirect": url})
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)


def cart_dict(cart: Cart) -> dict:
    out = asdict(cart)
    out["ticket_count"] = cart.ticket_count()
    out["expires_at_iso"] = to_iso(cart.expires_at) if cart.expires_at else None
    return out


def render_cart(request: Request, cart: Cart, error: str = "",
                status_code: int = 200) -> HTMLResponse:
    name = "cart_items.html" if is_htmx(request.headers) else "cart.html"
    return templates.TemplateResponse(request, name, {
        "cart": cart,
        "error": error,
        "currency": request.app.state.settings.currency,
    }, status_code=status_code)


def render_cart_error(request: Request, cart: Cart,
                      exc: CartError) -> HTMLResponse:
    # htmx only swaps 2xx responses into the page
    status_code = 200 if is_htmx(request.headers) else 400
    return render_cart(request, cart, error=str(exc), status_code=status_code)


async def order_payload(request: Request, order: Order) -> dict:
    fulfillment: OrderFulfillment = request.app.state.fulfillment
    tickets = await fulfillment.tickets(order.id)
    out = order.as_dict()
    out["created_at"] = to_iso(order.created_at)
    out["updated_at"] = to_iso(order.updated_at)
    out["tickets"] = [t.as_dict() for t in tickets]
    return out


# ----------------------------
# Cart
# ----------------------------
@router.get("/cart", response_class=HTMLResponse)
async def view_cart(request: Request, store: CartStore = Depends(carts)):
    return render_cart(request, store.get(request.session))


@router.get("/api/cart")
async def api_cart(request: Request, store: CartStore = Depends(carts)):
    return cart_dict(store.get(request.session))


@router.post("/cart/add")
async def cart_add(
    request: Request,
    ticket_type_id: int = Form(...),
    quantity: int = Form(1),
    event_id: Optional[int] = Form(None),
    store: CartStore = Depends(carts),
):
    st = request.app.state
    cart = store.get(request.session)
    try:
        async with timeit("db.get_ticket_type"):
            tt = await get_ticket_type(st.sessions, st.gated, ticket_type_id)
        if quantity <= 0:
            raise CartError("quantity must be positive")
        check_addable(tt, event_id, quantity, cart)
        cart = store.add(
            request.session, tt.id, quantity, tt.price, tt.event_id,
            ticket_name=tt.name, event_title=tt.event_title,
        )
    except CartError as e:
        logger.info("cart.rejected", ticket_type_id=ticket_type_id,
                    quantity=quantity, error=str(e))
        return render_cart_error(request, cart, e)
    logger.debug("cart.added", ticket_type_id=ticket_type_id,
                 quantity=quantity, total_amount=cart.total_amount)
    if is_htmx(request.headers):
        return render_cart(request, cart)
    return RedirectResponse(url="/cart", status_code=HTTP_303_SEE_OTHER)


@router.post("/cart/update")
async def cart_update(
    request: Request,
    ticket_type_id: int = Form(...),
    quantity: int = Form(...),
    store: CartStore = Depends(carts),
):
    st = request.app.state
    cart = store.get(request.session)
    try:
        item = cart.item(ticket_type_id)
        if item is not None and quantity > item.quantity:
            tt = await get_ticket_type(st.sessions, st.gated, ticket_type_id)
            check_addable(tt, cart.event_id, quantity - item.quantity, cart)
        cart = store.set_quantity(request.session, ticket_type_id, quantity)
    except CartError as e:
        logger.info("cart.rejected", ticket_type_id=ticket_type_id,
                    quantity=quantity, error=str(e))
        return render_cart_error(request, cart, e)
    if is_htmx(request.headers):
        return render_cart(request, cart)
    return RedirectResponse(url="/cart", status_code=HTTP_303_SEE_OTHER)


@router.post("/cart/clear")
async def cart_clear(request: Request, store: CartStore = Depends(carts)):
    cart = store.clear(request.session)
    if is_htmx(request.headers):
        return render_cart(request, cart)
    return RedirectResponse(url="/cart", status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# Checkout
# ----------------------------
def render_checkout(request: Request, cart: Cart, errors: dict,
                    form: dict, status_code: int = 200) -> HTMLResponse:
    st = request.app.state
    return templates.TemplateResponse(request, "checkout.html", {
        "cart": cart,
        "errors": errors,
        "form": form,
        "providers": st.registry.names(),
        "currency": st.settings.currency,
    }, status_code=status_code)


@router.get("/checkout", response_class=HTMLResponse)
async def checkout_page(request: Request,
                        user_id: int = Depends(require_user),
                        store: CartStore = Depends(carts)):
    cart = store.get(request.session)
    if cart.is_empty():
        return redirect(request, "/cart")
    return render_checkout(request, cart, {}, {})


@router.post("/checkout")
async def checkout_submit(
    request: Request,
    billing_email: str = Form(""),
    billing_name: str = Form(""),
    payment_method: str = Form(""),
    user_id: int = Depends(require_user),
    store: CartStore = Depends(carts),
    orch: CheckoutOrchestrator = Depends(orchestrator),
):
    cart = store.get(request.session)
    if cart.is_empty():
        return redirect(request, "/cart")

    billing = BillingInfo(email=billing_email.strip(),
                          name=billing_name.strip(),
                          payment_type=payment_method)
    result = await orch.checkout(request.session, cart, billing,
                                 payment_method.strip().lower(), user_id)
    if result.kind == INVALID:
        form = {
            "billing_email": billing_email,
            "billing_name": billing_name,
            "payment_method": payment_method,
        }
        return render_checkout(request, cart, result.errors, form,
                               status_code=422)
    return redirect(request, result.redirect_url)


@router.get("/payment/redirect")
async def payment_redirect(
    request: Request,
    payment_id: str = "",
    retry: bool = False,
    user_id: int = Depends(require_user),
    orch: CheckoutOrchestrator = Depends(orchestrator),
):
    result = await orch.resume(request.session, payment_id,
                               reinitialize=retry)
    if result.kind == INVALID:
        msg = result.errors.get("general", ["Payment redirect failed"])[0]
        return PlainTextResponse(msg, status_code=400)
    return RedirectResponse(url=result.redirect_url,
                            status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# Reconciliation entry points
# ----------------------------
@router.get("/payment/callback/{provider}")
async def payment_callback(
    request: Request,
    provider: str,
    rec: Reconciler = Depends(reconciler),
):
    result = await rec.from_callback(provider, request.query_params,
                                     request.session)
    return RedirectResponse(url=result.redirect_url,
                            status_code=HTTP_303_SEE_OTHER)


def notification_response(result: Reconciliation) -> PlainTextResponse:
    # non-2xx makes the provider retry
    if result.fulfillment_failed:
        return PlainTextResponse("Failed to process notification",
                                 status_code=500)
    if result.outcome == UNKNOWN:
        return PlainTextResponse("Payment status unavailable",
                                 status_code=503)
    return PlainTextResponse(f"Notification processed: {result.outcome}")


@router.post("/payment/notify/{provider}")
async def payment_notify(
    request: Request,
    provider: str,
    rec: Reconciler = Depends(reconciler),
):
    payload = await request.body()
    try:
        result = await rec.from_notification(provider, payload,
                                             request.headers)
    except NotificationError as e:
        logger.warning("reconcile.notification_rejected", provider=provider,
                       error=str(e))
        return PlainTextResponse(str(e), status_code=400)
    return notification_response(result)


@router.get("/payment/{status}", response_class=HTMLResponse)
async def payment_status_page(request: Request, status: str,
                              payment_id: str = "",
                              user_id: Optional[int] = Depends(current_user)):
    if status not in STATUSES:
        raise HTTPException(404, detail="unknown payment status")
    order = None
    if payment_id and user_id is not None:
        order = await request.app.state.fulfillment.find_by_payment_id(
            payment_id
        )
        if order is not None and order.user_id != user_id:
            order = None
    return templates.TemplateResponse(request, "payment_status.html", {
        "status": status,
        "payment_id": payment_id,
        "order": order,
        "currency": request.app.state.settings.currency,
    })


# ----------------------------
# Orders
# ----------------------------
async def owned_order(request: Request, order_id: int,
                      user_id: int) -> Order:
    async with timeit("db.get_order"):
        order = await request.app.state.fulfillment.get_order(order_id)
    if order is None or order.user_id != user_id:
        raise HTTPException(404, detail="order not found")
    return order


@router.get("/orders/{order_id}/confirmation", response_class=HTMLResponse)
async def order_confirmation(request: Request, order_id: int,
                             user_id: int = Depends(require_user)):
    order = await owned_order(request, order_id, user_id)
    tickets = await request.app.state.fulfillment.tickets(order.id)
    return templates.TemplateResponse(request, "confirmation.html", {
        "order": order,
        "tickets": tickets,
        "currency": request.app.state.settings.currency,
    })


@router.get("/api/orders/{order_id}")
async def api_order(request: Request, order_id: int,
                    user_id: int = Depends(require_user)):
    order = await owned_order(request, order_id, user_id)
    return await order_payload(request, order)


@router.get("/api/payments/{payment_id}/order")
async def api_payment_order(request: Request, payment_id: str,
                            user_id: int = Depends(require_user)):
    order = await request.app.state.fulfillment.find_by_payment_id(
        payment_id
    )
    if order is None or order.user_id != user_id:
        # not created yet (notification still processing): keep polling
        raise HTTPException(404, detail="order not found")
    return await order_payload(request, order)


# ----------------------------
# Admin / recovery feeds
# ----------------------------
@router.get("/api/pending")
async def api_pending(limit: int = 100,
                      admin_id: int = Depends(require_admin),
                      pending=Depends(pendingpayments)):
    limit = max(1, min(limit, 500))
    total, items = await pending.recent(limit=limit)
    now = now_ts()
    return {
        "items": [p.summary(now) for p in items],
        "enabled": True,
        "limit": limit,
        "total": total,
    }


@router.get("/api/admin/timings")
async def api_admin_timings(admin_id: int = Depends(require_admin)):
    return {"window": TIMINGS.window, "items": TIMINGS.snapshot()}


# ----------------------------
# MockPay hosted page
# ----------------------------
def mockpay_gateway(request: Request) -> MockPay:
    registry = request.app.state.registry
    if "mockpay" not in registry:
        raise HTTPException(404, detail="mockpay is not enabled")
    return registry.get("mockpay").gateway


@router.get("/mockpay/{payment_id}", response_class=HTMLResponse)
async def mockpay_screen(request: Request, payment_id: str,
                         gw: MockPay = Depends(mockpay_gateway)):
    p = gw.lookup(payment_id)
    if p is None:
        raise HTTPException(404, detail="payment not found")
    return templates.TemplateResponse(request, "mockpay.html", {
        "payment_id": payment_id,
        "reference": p["reference"],
        "amount": p["amount"],
        "status": p["status"],
        "email": p["email"],
        "currency": request.app.state.settings.currency,
    })


@router.post("/mockpay/{payment_id}/settle")
async def mockpay_settle(request: Request, payment_id: str,
                         outcome: str = Form(...),
                         gw: MockPay = Depends(mockpay_gateway)):
    try:
        payload = gw.settle(payment_id, outcome)
    except GatewayError as e:
        raise HTTPException(400, detail=str(e))
    p = gw.lookup(payment_id)
    async with timeit("mockpay.deliver"):
        await gw.deliver(payload)
    # back to the merchant, like a real hosted page would
    return RedirectResponse(
        url=(f"/payment/callback/mockpay?payment_id={payment_id}"
             f"&reference={p['reference']}"),
        status_code=HTTP_303_SEE_OTHER,
    )

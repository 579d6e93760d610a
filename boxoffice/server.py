from __future__ import annotations
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode, urlsplit

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import catalog
from .cache import k_event, k_tickets, new_cache
from .checkin import (
    TicketRef, check_in, decode_ticket_payload, with_qr_payload,
)
from .config import Settings
from .errors import (
    AuthenticationRequiredError, BoxOfficeError, NotFoundError,
    PermissionDeniedError, ValidationError,
)
from .gateway import PaymentAdapter, new_adapter
from .helpers import ct_equal
from .infra import timings
from .infra.sql import make_async_engine
from .infra.timings import timeit
from .logs import configure_logging
from .mockpay import SIGNATURE_HEADER, build_event, sign_payload
from .model import attendees
from .model.orders import PendingOrderStore
from .model.orm import Base
from .model.schemas import CheckInRequest, CheckoutRequest, CheckoutResponse
from .reconciliation import ReconciliationEngine

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

MOCK_KINDS = ("succeeded", "failed", "canceled")

# capabilities
SCAN_UPDATE = "Scan QR:Update"
DASHBOARD_READ = "Dashboard:Read"

ADMIN_HOME = "/api/admin/orders"


# ----------------------------
# Dependencies
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_reconciler(request: Request) -> ReconciliationEngine:
    return request.app.state.reconciler


async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.sessions() as session:
        yield session


# ----------------------------
# Helpers
# ----------------------------
def current_user_id(request: Request) -> Optional[str]:
    # written by the sign-in layer that shares SESSION_SECRET
    return request.session.get("user_id") or None


def require_user(request: Request) -> str:
    user_id = current_user_id(request)
    if not user_id:
        raise AuthenticationRequiredError("Sign in to see your tickets.")
    return user_id


def is_staff(request: Request) -> bool:
    return bool(request.session.get("staff_user"))


def require_permission(request: Request, permission: str) -> None:
    if not is_staff(request):
        raise PermissionDeniedError("Staff login required.")
    if permission not in request.app.state.settings.staff_permissions:
        raise PermissionDeniedError(f"Missing permission {permission!r}.")


def _safe_next(dest: Optional[str]) -> str:
    # local paths only; browsers read a backslash as a slash
    if not dest or not dest.startswith("/"):
        return ADMIN_HOME
    parts = urlsplit(dest.replace("\\", "/"))
    if parts.scheme or parts.netloc:
        return ADMIN_HOME
    return dest


# ----------------------------
# Error handlers
# ----------------------------
async def _boxoffice_error(request: Request, exc: BoxOfficeError):
    if exc.status_code >= 500:
        logger.warning("{} {} -> {}: {}", request.method, request.url.path,
                       exc.code, exc.message)
    return ORJSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _request_validation_error(request: Request,
                                    exc: RequestValidationError):
    fields = [
        {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")}
        for e in exc.errors()
    ]
    return ORJSONResponse(status_code=400, content={
        "error": "ValidationError",
        "detail": "Malformed request.",
        "fields": fields,
    })


async def _unexpected_error(request: Request, exc: Exception):
    logger.opt(exception=exc).error("unhandled error on {} {}",
                                    request.method, request.url.path)
    return ORJSONResponse(status_code=500, content={
        "error": "InternalError",
        "detail": "Internal server error.",
    })


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BoxOfficeError, _boxoffice_error)
    app.add_exception_handler(RequestValidationError,
                              _request_validation_error)
    app.add_exception_handler(Exception, _unexpected_error)


# ----------------------------
# App factory
# ----------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    adapter: Optional[PaymentAdapter] = None,
) -> FastAPI:
    """
    Nothing connects at import or construction time; the database engine,
    HTTP client, Redis pool and gateway adapter are built by the lifespan.
    A preset `app.state.http` (or an explicit `adapter`) is used as given.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine, SessionAsync, gated = make_async_engine(settings)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        owns_http = getattr(app.state, "http", None) is None
        if owns_http:
            app.state.http = httpx.AsyncClient(
                timeout=10.0,
                limits=httpx.Limits(
                    max_connections=256, max_keepalive_connections=256
                ),
            )

        app.state.redis = None
        if settings.cache_backend == "redis":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

        app.state.engine = engine
        app.state.sessions = SessionAsync
        app.state.gated = gated
        app.state.cache = new_cache(settings, r=app.state.redis)
        app.state.adapter = adapter or new_adapter(settings, app.state.http)
        app.state.reconciler = ReconciliationEngine(
            sessions=SessionAsync,
            gated=gated,
            adapter=app.state.adapter,
            cache=app.state.cache,
            settings=settings,
        )

        logger.info("BoxOffice is starting up...")
        logger.info("   - Database:        {}", engine.url.render_as_string())
        logger.info("   - Payment Backend: {}", settings.payment_backend)
        logger.info("   - Page Cache:      {}", settings.cache_backend)
        try:
            yield
        finally:
            timings.log_summary()
            if owns_http:
                await app.state.http.aclose()
                app.state.http = None
            if app.state.redis is not None:
                await app.state.redis.aclose()
                app.state.redis = None
            await engine.dispose()

    app = FastAPI(
        title="BoxOffice",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    register_exception_handlers(app)
    _add_routes(app)
    return app


def _add_routes(app: FastAPI) -> None:
    # ----------------------------
    # Checkout
    # ----------------------------
    @app.post("/api/checkout", response_model=CheckoutResponse)
    async def create_checkout(
        req: CheckoutRequest, request: Request,
        reconciler: ReconciliationEngine = Depends(get_reconciler),
    ):
        # tickets belong to the signed-in buyer, never to a posted id
        req.buyer.user_id = current_user_id(request)
        return await reconciler.initiate(req)

    # ----------------------------
    # API: Order status (polled by success page)
    # ----------------------------
    @app.get("/api/orders/")
    async def get_order_without_id():
        raise ValidationError("Transaction ID is required.")

    @app.get("/api/orders/{transaction_id}")
    async def get_order(
        transaction_id: str,
        reconciler: ReconciliationEngine = Depends(get_reconciler),
    ):
        status = await reconciler.poll_status(transaction_id)
        return status.model_dump(exclude_none=True)

    # ----------------------------
    # Webhook endpoint (shared by all gateways)
    # ----------------------------
    @app.post("/payments/webhook")
    async def payments_webhook(
        request: Request,
        reconciler: ReconciliationEngine = Depends(get_reconciler),
    ):
        payload = await request.body()
        headers = dict(request.headers)

        # bad signature / malformed body -> 400 from the error handler
        event = request.app.state.adapter.parse_webhook(payload, headers)
        try:
            result = await reconciler.reconcile(event)
        except SQLAlchemyError:
            # nothing committed; the gateway should redeliver
            logger.exception("reconciliation of session {} failed",
                             event.session_id)
            return ORJSONResponse(status_code=500, content={
                "error": "RetryLater",
                "detail": "Temporary failure, please retry.",
            })
        return {
            "ok": True,
            "idempotent": result.idempotent,
            "order_status": result.status,
        }

    # ----------------------------
    # Public read side (cached)
    # ----------------------------
    @app.get("/api/events/{event_id}")
    async def get_event_page(
        event_id: str, request: Request, db: AsyncSession = Depends(get_db),
    ):
        cache = request.app.state.cache
        key = k_event(event_id)
        page = await cache.get_json(key)
        if page is not None:
            return page
        async with timeit("db.event_page"):
            async with request.app.state.gated():
                page = await catalog.event_page(db, event_id)
        if page is None:
            raise NotFoundError("Event not found.")
        await cache.set_json(key, page)
        return page

    @app.get("/api/tickets")
    async def list_tickets(
        request: Request, db: AsyncSession = Depends(get_db),
    ):
        user_id = require_user(request)
        cache = request.app.state.cache
        key = k_tickets(user_id)
        items = await cache.get_json(key)
        if items is None:
            async with timeit("db.list_tickets"):
                async with request.app.state.gated():
                    async with db.begin():
                        rows = await attendees.list_for_user(db, user_id)
            items = [with_qr_payload(t) for t in rows]
            await cache.set_json(key, items)
        return {"items": items}

    @app.get("/api/tickets/{attendee_id}")
    async def get_ticket(
        attendee_id: str, request: Request,
        db: AsyncSession = Depends(get_db),
    ):
        async with request.app.state.gated():
            async with db.begin():
                ticket = await attendees.get_ticket(db, attendee_id)
        if ticket is None:
            raise NotFoundError("Ticket not found.")
        return with_qr_payload(ticket)

    # ----------------------------
    # Check-in (door staff)
    # ----------------------------
    @app.post("/api/checkin")
    async def checkin(
        body: CheckInRequest, request: Request,
        db: AsyncSession = Depends(get_db),
    ):
        require_permission(request, SCAN_UPDATE)
        if body.payload:
            ref = decode_ticket_payload(body.payload)
        elif body.ticket_id:
            ref = TicketRef(ticket_id=body.ticket_id, event_id=body.event_id)
        else:
            raise ValidationError("Either payload or ticket_id is required.")
        ticket = await check_in(db, request.app.state.gated, ref)
        return {"ok": True, **ticket}

    # ----------------------------
    # MockPay UI (simple page with 3 buttons)
    # ----------------------------
    async def _mock_order(request: Request, db: AsyncSession, psid: str):
        if request.app.state.settings.payment_backend != "mock":
            raise NotFoundError("Payment session not found.")
        store = PendingOrderStore(db=db, gated=request.app.state.gated)
        async with timeit("orders.get_by_session"):
            order = await store.get_by_session(psid)
        if order is None:
            raise NotFoundError("Payment session not found.")
        return order

    @app.get("/mockpay/{psid}", response_class=HTMLResponse)
    async def mockpay_screen(
        request: Request, psid: str, db: AsyncSession = Depends(get_db),
    ):
        order = await _mock_order(request, db, psid)
        return templates.TemplateResponse(request, "mockpay.html", {
            "psid": psid,
            "transaction_id": order.transaction_id,
            "quantity": order.buyer_payload.get("quantity", 1),
            "amount": f"{order.amount / 100:.2f}",
            "currency": order.currency,
            "webhook_url": request.app.state.settings.mock_webhook_url,
        })

    @app.post("/mockpay/{psid}/emit")
    async def mockpay_emit(
        psid: str, request: Request,
        t: str = Form(...),
        db: AsyncSession = Depends(get_db),
        settings: Settings = Depends(get_settings),
    ):
        if t not in MOCK_KINDS:
            raise ValidationError("invalid kind")
        order = await _mock_order(request, db, psid)

        payload = build_event(psid, t, order.amount, order.currency)
        client_http: httpx.AsyncClient = request.app.state.http
        try:
            await client_http.post(
                settings.mock_webhook_url,
                content=payload,
                headers={
                    SIGNATURE_HEADER: sign_payload(settings.mock_secret,
                                                   payload),
                    "content-type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            # the buyer lands on the polling page either way and can retry
            logger.warning("mock webhook delivery for {} failed: {}", psid, e)

        qs = urlencode({"transaction_id": order.transaction_id,
                        "event_id": order.event_id})
        if t == "succeeded":
            return RedirectResponse(url=f"/payment/success?{qs}",
                                    status_code=HTTP_303_SEE_OTHER)
        return RedirectResponse(url=f"/payment/failure?{qs}&status={t}",
                                status_code=HTTP_303_SEE_OTHER)

    # ----------------------------
    # Return pages
    # ----------------------------
    @app.get("/payment/success", response_class=HTMLResponse)
    async def payment_success_page(
        request: Request, transaction_id: str,
        event_id: Optional[str] = None,
    ):
        return templates.TemplateResponse(request, "success.html", {
            "transaction_id": transaction_id,
            "event_id": event_id,
        })

    @app.get("/payment/failure", response_class=HTMLResponse)
    async def payment_failure_page(
        request: Request, transaction_id: str,
        event_id: Optional[str] = None, status: Optional[str] = None,
    ):
        return templates.TemplateResponse(request, "failure.html", {
            "transaction_id": transaction_id,
            "event_id": event_id,
            "status": status or "failed",
        })

    # ----------------------------
    # Staff login
    # ----------------------------
    @app.get("/admin/login", response_class=HTMLResponse)
    async def admin_login_get(request: Request, next: Optional[str] = None):
        return templates.TemplateResponse(request, "login.html", {
            "next": _safe_next(next), "error": None,
        })

    @app.post("/admin/login", response_class=HTMLResponse)
    async def admin_login_post(
        request: Request,
        username: str = Form(...),
        password: str = Form(...),
        next: str = Form(""),
        settings: Settings = Depends(get_settings),
    ):
        ok_user = ct_equal(username.strip(), settings.admin_username)
        ok_pass = ct_equal(password, settings.admin_password)
        if ok_user and ok_pass:
            request.session["staff_user"] = username.strip()
            logger.info("staff login: {}", username.strip())
            return RedirectResponse(url=_safe_next(next),
                                    status_code=HTTP_303_SEE_OTHER)
        logger.warning("failed staff login for {!r}", username.strip())
        return templates.TemplateResponse(
            request, "login.html",
            {"next": _safe_next(next), "error": "Invalid credentials."},
            status_code=401,
        )

    @app.get("/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return RedirectResponse(url="/admin/login",
                                status_code=HTTP_303_SEE_OTHER)

    # ----------------------------
    # Admin JSON feeds
    # ----------------------------
    @app.get("/api/admin/orders")
    async def api_admin_orders(
        request: Request, limit: int = 200,
        db: AsyncSession = Depends(get_db),
    ):
        require_permission(request, DASHBOARD_READ)
        store = PendingOrderStore(db=db, gated=request.app.state.gated)
        items = await store.get_recent(limit=limit)
        return {"items": items, "limit": limit}

    @app.get("/api/admin/orders/{transaction_id}/gateway")
    async def api_admin_gateway_status(
        transaction_id: str, request: Request,
        reconciler: ReconciliationEngine = Depends(get_reconciler),
    ):
        require_permission(request, DASHBOARD_READ)
        return await reconciler.gateway_status(transaction_id)

    @app.get("/api/admin/timings")
    async def api_admin_timings(request: Request):
        require_permission(request, DASHBOARD_READ)
        return {"items": timings.summary()}

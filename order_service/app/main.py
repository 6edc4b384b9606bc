import math
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .config import Settings, get_settings
from .database import Base, UnitOfWork, engine, get_db
from .dependencies import CurrentUser, get_current_user, get_gateway, get_producer, require_admin
from .errors import (
    OrderNotFoundError,
    OrderServiceError,
    PaymentConfigUnavailableError,
    ProductNotFoundError,
    ValidationError,
)
from .gateway import PaymentGatewayClient
from .inventory import SqlInventoryLedger
from .logging_config import configure_logging
from .orders import OrderCreationTransaction, OrderFulfillment
from .payments import PaymentInitiator
from .repository import OrderRepository
from .schemas import CreateOrderRequest, PayOrderRequest, RestockRequest, serialize_order
from .webhooks import WebhookReconciler, WebhookSignatureVerifier, parse_notification

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    # Create database tables on startup if they don't exist.
    Base.metadata.create_all(bind=engine)
    logger.info("service_started", gateway_configured=settings.gateway_configured)
    yield


app = FastAPI(title="Order Service", lifespan=lifespan)


# --- Error responses ---


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message, error_type=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content={"status": exc.status, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return JSONResponse(
        status_code=400,
        content={"status": "fail", "message": "Invalid input: " + "; ".join(problems)},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Something went very wrong on the server."},
    )


@app.get("/")
def root():
    """Health check endpoint."""
    return {"message": "Order service is running"}


# --- Orders ---


@app.post("/api/v1/orders", status_code=201)
def create_order(
    req: CreateOrderRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    producer=Depends(get_producer),
):
    order = OrderCreationTransaction(db, settings, producer).create(
        user.user_id, req.shipping_address_id, req.payment_method
    )
    return {"status": "success", "data": {"order": serialize_order(order)}}


# Declared before /orders/{order_id} so "mine" is not taken for an id.
@app.get("/api/v1/orders/mine")
def list_my_orders(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    orders = OrderRepository(db).list_for_user(user.user_id)
    return {
        "status": "success",
        "results": len(orders),
        "data": {"orders": [serialize_order(o) for o in orders]},
    }


@app.get("/api/v1/orders")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort: str = Query("-created_at"),
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Paginated list of every order (admin only)."""
    orders, total = OrderRepository(db).list_all(page=page, limit=limit, sort=sort)
    return {
        "status": "success",
        "results": len(orders),
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit) if total else 0,
        "data": {"orders": [serialize_order(o) for o in orders]},
    }


@app.get("/api/v1/orders/{order_id}")
def get_order(order_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    repository = OrderRepository(db)
    # Admins see any order; everyone else only their own, with the same 404 either way.
    if user.is_admin:
        order = repository.get(order_id)
    else:
        order = repository.get_for_user(order_id, user.user_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    return {"status": "success", "data": {"order": serialize_order(order)}}


@app.post("/api/v1/orders/{order_id}/pay")
def pay_order(
    order_id: str,
    req: PayOrderRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
    producer=Depends(get_producer),
):
    order, _ = PaymentInitiator(db, gateway, settings, producer).pay(order_id, user.user_id, req)
    payment_status = (order.payment_result or {}).get("status")
    return {
        "status": "success",
        "message": f"Payment processed with status: {payment_status}",
        "data": {"order": serialize_order(order)},
    }


@app.put("/api/v1/orders/{order_id}/ship")
def ship_order(
    order_id: str,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
    producer=Depends(get_producer),
):
    order = OrderFulfillment(db, producer).ship(order_id)
    return {"status": "success", "data": {"order": serialize_order(order)}}


@app.put("/api/v1/orders/{order_id}/deliver")
def deliver_order(
    order_id: str,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
    producer=Depends(get_producer),
):
    order = OrderFulfillment(db, producer).deliver(order_id)
    return {"status": "success", "data": {"order": serialize_order(order)}}


# --- Gateway notifications ---


@app.post("/api/v1/webhooks/payments")
async def handle_payment_webhook(
    request: Request,
    x_signature: Optional[str] = Header(default=None),
    x_request_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
    producer=Depends(get_producer),
):
    """
    Receives payment notifications from the gateway.
    - 400 only when the signature is missing or wrong.
    - 200 for everything else, so the gateway does not retry forever;
      processing problems are reported in the body.
    """
    body = await request.body()
    verifier = WebhookSignatureVerifier(settings.mp_webhook_secret, settings.webhook_tolerance_seconds)
    try:
        verifier.verify(x_signature, request.query_params.get("data.id"), x_request_id)
    except ValidationError as exc:
        logger.warning("webhook_rejected", reason=exc.message)
        return JSONResponse(status_code=400, content={"status": "fail", "message": f"Webhook Error: {exc.message}"})

    notification = parse_notification(body, request.query_params)
    reconciler = WebhookReconciler(db, gateway, producer)
    try:
        result = await run_in_threadpool(reconciler.reconcile, notification)
    except Exception:
        logger.exception("webhook_processing_failed", payment_id=notification["data"]["id"])
        return {"received": True, "processed": False, "error": "Internal processing error occurred."}
    return result.to_response()


# --- Client configuration ---


@app.get("/api/v1/config/mp-public-key")
def get_public_key(settings: Settings = Depends(get_settings)):
    """Public key the storefront needs to tokenize cards before calling /pay."""
    if not settings.mp_public_key:
        logger.error("public_key_missing")
        raise PaymentConfigUnavailableError()
    return {"public_key": settings.mp_public_key}


# --- Inventory ---


@app.get("/api/v1/stock/{product_id}")
def get_stock(product_id: int, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    stock = SqlInventoryLedger(db).available(product_id)
    if stock is None:
        raise ProductNotFoundError(product_id)
    return {"product_id": product_id, "stock": stock}


@app.post("/api/v1/stock/items")
def restock_item(req: RestockRequest, admin: CurrentUser = Depends(require_admin), db: Session = Depends(get_db)):
    """Adds units to an existing product's stock (admin only)."""
    with UnitOfWork(db) as uow:
        stock = SqlInventoryLedger(db).restock(req.product_id, req.quantity)
        uow.commit()
    return {"status": "success", "product_id": req.product_id, "stock": stock}

"""
FastAPI application for the card shop.

This application provides:
1. The storefront and order creation (/api/cards, /api/orders, /api/telegram)
2. The payment-check endpoints polled by the buyer's page (.../check)
3. Admin endpoints for products, notification settings and the expiry sweep

Run with:
    uv run uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)

from reconciliation.engine import OrderService
from shared.errors import AdminAuthError, ShopError, ValidationError
from shared.models import CheckResult, NotificationSettings, Order, OrderKind, TextReplace

logger = logging.getLogger("api")

DEFAULT_CARD_PRICE = Decimal("199")


# =============================================================================
# Request / response models (camelCase on the wire)
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CardOut(CamelModel):
    id: int
    title: str
    price: float
    available_count: int
    created_at: datetime


class CreateCardRequest(CamelModel):
    title: str = ""
    content: Union[list[str], str] = Field(default_factory=list)
    price: Optional[Decimal] = None


class CreateOrderRequest(CamelModel):
    card_id: Optional[Union[int, str]] = None
    session_id: str = ""


class OrderCreated(CamelModel):
    order_id: str
    amount: float
    wallet_address: str
    payment_url: str


class SessionOrder(CamelModel):
    order_id: str
    card_id: Optional[int] = None
    amount: float
    wallet_address: str
    payment_url: str
    status: str
    created_at: datetime


class CreateSubscriptionRequest(CamelModel):
    source_channel: str = ""
    target_channel: str = ""
    text_replaces: list[TextReplace] = Field(default_factory=list)
    keywords: str = ""
    telegram_id: str = ""
    email: str = ""


class SubscriptionOrderOut(CamelModel):
    id: str
    amount: float
    wallet_address: str
    payment_url: str
    status: str
    created_at: datetime
    expires_at: Optional[datetime] = None


class SettingsBody(CamelModel):
    server_chan_key: str = ""
    email_host: str = ""
    email_port: int = Field(default=465, gt=0, lt=65536)
    email_user: str = ""
    email_pass: str = ""
    email_to: str = ""
    notify_on_create: bool = False
    notify_on_paid: bool = False


class SweepResult(BaseModel):
    expired: int


def order_created(order: Order) -> OrderCreated:
    return OrderCreated(
        order_id=order.id,
        amount=float(order.amount),
        wallet_address=order.wallet_address,
        payment_url=order.payment_url,
    )


# =============================================================================
# Dependencies
# =============================================================================

_service: Optional[OrderService] = None


def get_service() -> OrderService:
    """Get the order service instance."""
    global _service
    if _service is None:
        _service = OrderService()
    return _service


def reset_api_state(service: Optional[OrderService] = None) -> None:
    """Reset API state (for testing)."""
    global _service
    _service = service


def require_admin(
    x_admin_token: Optional[str] = Header(default=None),
    service: OrderService = Depends(get_service),
) -> None:
    expected = service.config.admin_token
    if expected is None or not expected.get_secret_value():
        raise AdminAuthError("Admin surface is disabled")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected.get_secret_value()):
        raise AdminAuthError("Invalid admin token")


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logging.info("Starting card shop API")
    yield
    if _service is not None:
        _service.shutdown()
    logging.info("Shutting down")


app = FastAPI(
    title="Card Shop",
    description="""
    Digital code shop paid in USDT (TRC20), reconciled by polling a public
    transaction feed.

    ## Flow

    1. `POST /api/orders` (or `/api/telegram`) returns the exact amount to pay
    2. The page polls `GET /api/orders/{orderId}/check` every 15 seconds
    3. Once a matching transfer is seen the check returns the delivered code
    """,
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc}")
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid input", "details": jsonable_encoder(exc.errors())})


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "card-shop"}


# =============================================================================
# Storefront
# =============================================================================

@app.get("/api/cards", response_model=list[CardOut], response_model_by_alias=True, tags=["Storefront"])
def list_cards(service: OrderService = Depends(get_service)):
    """Products that still have codes to sell."""
    return [
        CardOut(
            id=p.id,
            title=p.title,
            price=float(p.price),
            available_count=p.available_count,
            created_at=p.created_at,
        )
        for p in service.list_cards()
    ]


@app.post(
    "/api/cards",
    response_model=CardOut,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
def create_card(request: CreateCardRequest, service: OrderService = Depends(get_service)):
    """
    Stock a new product.

    `content` is a list of codes, or one code per line.
    """
    codes = request.content.splitlines() if isinstance(request.content, str) else request.content
    codes = [c.strip() for c in codes if c and c.strip()]
    if not request.title.strip() or not codes:
        raise ValidationError("Invalid input: title and at least one code are required")
    price = request.price if request.price is not None else DEFAULT_CARD_PRICE
    if price <= 0:
        raise ValidationError("Invalid input: price must be positive")

    product = service.inventory.add_product(request.title.strip(), price, codes)
    return CardOut(
        id=product.id,
        title=product.title,
        price=float(product.price),
        available_count=product.available_count,
        created_at=product.created_at,
    )


# =============================================================================
# Card orders
# =============================================================================

@app.post("/api/orders", response_model=OrderCreated, tags=["Orders"])
def create_order(request: CreateOrderRequest, service: OrderService = Depends(get_service)):
    """
    Create a card order and its payment intent.

    A session with a live pending order for the same card gets that order back.
    """
    order = service.create_card_order(request.card_id, request.session_id)
    return order_created(order)


@app.get("/api/orders", response_model=Optional[SessionOrder], tags=["Orders"])
def get_session_order(
    session_id: str = Query(default="", alias="sessionId"),
    service: OrderService = Depends(get_service),
):
    """The session's live pending order, or null."""
    order = service.find_session_order(session_id)
    if order is None:
        return None
    return SessionOrder(
        order_id=order.id,
        card_id=order.product_id,
        amount=float(order.amount),
        wallet_address=order.wallet_address,
        payment_url=order.payment_url,
        status=order.status,
        created_at=order.created_at,
    )


@app.get(
    "/api/orders/{order_id}/check",
    response_model=CheckResult,
    response_model_exclude_none=True,
    tags=["Orders"],
)
def check_order(order_id: str, service: OrderService = Depends(get_service)):
    """
    One payment check: {"status": "pending"} or {"status": "delivered", "code": ...}.

    Polled by the buyer's page every 15 seconds for the 10-minute window.
    """
    return service.check_order(order_id, kind=OrderKind.CARD)


@app.post(
    "/api/orders/{order_id}/test-pay",
    response_model=CheckResult,
    response_model_exclude_none=True,
    tags=["Orders"],
)
def test_pay(order_id: str, service: OrderService = Depends(get_service)):
    """Simulate a matching transfer (test mode only)."""
    return service.simulate_payment(order_id, kind=OrderKind.CARD)


# =============================================================================
# Forwarding subscription orders
# =============================================================================

@app.post("/api/telegram", response_model=OrderCreated, tags=["Subscriptions"])
def create_subscription(request: CreateSubscriptionRequest, service: OrderService = Depends(get_service)):
    """Create a forwarding subscription order and its payment intent."""
    order = service.create_subscription_order(
        source_channel=request.source_channel,
        target_channel=request.target_channel,
        text_replaces=request.text_replaces,
        keywords=request.keywords,
        telegram_id=request.telegram_id,
        email=request.email,
    )
    return order_created(order)


@app.get("/api/telegram/{order_id}", tags=["Subscriptions"])
def get_subscription(order_id: str, service: OrderService = Depends(get_service)):
    order = service.get_order(order_id, kind=OrderKind.SUBSCRIPTION)
    out = SubscriptionOrderOut(
        id=order.id,
        amount=float(order.amount),
        wallet_address=order.wallet_address,
        payment_url=order.payment_url,
        status=order.status,
        created_at=order.created_at,
        expires_at=order.expires_at,
    )
    return {"order": out.model_dump(mode="json", by_alias=True)}


@app.get(
    "/api/telegram/{order_id}/check",
    response_model=CheckResult,
    response_model_exclude_none=True,
    tags=["Subscriptions"],
)
def check_subscription(order_id: str, service: OrderService = Depends(get_service)):
    """One payment check: {"status": "pending"} or {"status": "paid"}."""
    return service.check_order(order_id, kind=OrderKind.SUBSCRIPTION)


@app.post(
    "/api/telegram/{order_id}/test-pay",
    response_model=CheckResult,
    response_model_exclude_none=True,
    tags=["Subscriptions"],
)
def test_pay_subscription(order_id: str, service: OrderService = Depends(get_service)):
    """Simulate a matching transfer for a subscription order (test mode only)."""
    return service.simulate_payment(order_id, kind=OrderKind.SUBSCRIPTION)


# =============================================================================
# Admin
# =============================================================================

@app.get(
    "/api/settings",
    response_model=SettingsBody,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
def get_settings(service: OrderService = Depends(get_service)):
    return SettingsBody(**service.settings_store.get().model_dump())


@app.api_route(
    "/api/settings",
    methods=["PUT", "POST"],
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
def save_settings(body: SettingsBody, service: OrderService = Depends(get_service)):
    """Replace the notification settings. Applies to the next notification."""
    saved = service.settings_store.save(NotificationSettings(**body.model_dump()))
    return {"success": True, "settings": SettingsBody(**saved.model_dump()).model_dump(by_alias=True)}


@app.post(
    "/api/admin/sweep-expired",
    response_model=SweepResult,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
def sweep_expired(service: OrderService = Depends(get_service)):
    """Mark pending orders past their matching window as expired."""
    return SweepResult(expired=service.sweep_expired())

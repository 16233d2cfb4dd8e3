"""FastAPI REST API for the storefront backend."""

import hmac
import math
from decimal import Decimal
from typing import Optional
from urllib.parse import urlencode

from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool

from .cart import OwnerKey
from .config import load_settings
from .errors import (
    AuthorizationError,
    CartItemNotFoundError,
    ConflictError,
    EmptyCartError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    OrderNotFoundError,
    PaymentAlreadySettledError,
    PaymentGatewayError,
    ProductNotFoundError,
    SignatureVerificationError,
    StorefrontError,
    ValidationError,
)
from .models import Order
from .orders import ShippingAddressInput
from .services import Services, build_services


# --- Pydantic Schemas ---


class ProductSchema(BaseModel):
    id: str
    name: str
    slug: str
    sku: Optional[str] = None
    price: Decimal
    stock_quantity: int
    is_active: bool = True


class ProductListResponse(BaseModel):
    products: list[ProductSchema]
    count: int


class ProductCreateRequest(BaseModel):
    """Request body for adding a catalog product."""

    name: str = Field(..., min_length=1)
    price: Decimal
    stock_quantity: int = 0
    sku: Optional[str] = None
    slug: Optional[str] = Field(default=None, description="Derived from name when omitted")
    is_active: bool = True


class CartProductSchema(BaseModel):
    id: str
    name: str
    slug: str
    price: Decimal  # current catalog price
    stock_quantity: int


class CartItemSchema(BaseModel):
    id: str
    product_id: str
    product: CartProductSchema
    quantity: int
    price: Decimal  # captured when added
    line_total: Decimal


class CartSchema(BaseModel):
    id: str
    items: list[CartItemSchema]
    subtotal: Decimal
    item_count: int


class CartItemAddRequest(BaseModel):
    product_id: str
    quantity: int = 1


class CartItemUpdateRequest(BaseModel):
    quantity: int


class CartMergeRequest(BaseModel):
    """Guest session whose cart should move into the signed-in user's cart."""

    session_id: Optional[str] = None


class ShippingAddressSchema(BaseModel):
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str


class OrderItemSchema(BaseModel):
    id: str
    product_id: str
    product_name: str
    product_sku: Optional[str] = None
    quantity: int
    price: Decimal
    subtotal: Decimal


class OrderSchema(BaseModel):
    id: str
    user_id: str
    order_number: str
    status: str
    payment_status: str
    payment_method: str
    subtotal: Decimal
    shipping_fee: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    items: list[OrderItemSchema] = []
    shipping_address: Optional[ShippingAddressSchema] = None


class OrderListResponse(BaseModel):
    orders: list[OrderSchema]
    total: int
    page: int
    limit: int
    total_pages: int


class OrderCreateRequest(BaseModel):
    """Request body for checking out the current cart."""

    shipping_address: ShippingAddressSchema
    payment_method: str = Field(default="cod", description="cod | stripe | vnpay")
    notes: Optional[str] = None


class OrderStatusUpdateRequest(BaseModel):
    """Admin override; either field may be omitted."""

    status: Optional[str] = None
    payment_status: Optional[str] = None


class OrderStatsResponse(BaseModel):
    total: int
    pending: int
    processing: int
    shipped: int
    delivered: int
    cancelled: int
    total_revenue: Decimal


class PaymentOrderRequest(BaseModel):
    order_id: str


class StripeConfigResponse(BaseModel):
    publishable_key: str


class PaymentIntentResponse(BaseModel):
    client_secret: Optional[str] = None
    payment_intent_id: str
    order_id: str
    amount: Decimal
    currency: str


class VNPayCreateResponse(BaseModel):
    payment_url: str
    order_id: str


class PaymentStatusResponse(BaseModel):
    order_id: str
    order_number: str
    payment_status: str
    payment_method: str
    total: Decimal
    currency: str


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, description="Full refund when omitted")


class RefundResponse(BaseModel):
    success: bool
    order_id: str
    refund_id: Optional[str] = None
    refunded_amount: Decimal
    payment_status: str


class OverviewStatsResponse(BaseModel):
    total_revenue: Decimal
    total_orders: int
    total_customers: int
    average_order_value: Decimal
    pending_orders: int
    low_stock_products: int


class RevenuePointSchema(BaseModel):
    date: str
    revenue: Decimal
    orders: int


class TopProductSchema(BaseModel):
    product_id: str
    product_name: str
    total_sold: int
    total_revenue: Decimal


class ErrorResponse(BaseModel):
    detail: str
    error_type: str


# --- Helper Functions ---


_services: Optional[Services] = None


def get_services() -> Services:
    """Get the process-wide services, building them from the environment once."""
    global _services
    if _services is None:
        settings = load_settings()
        settings.warn_missing_credentials()
        _services = build_services(settings)
    return _services


def set_services(services: Optional[Services]) -> None:
    """Replace the process-wide services (None rebuilds from the environment)."""
    global _services
    _services = services


def require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise AuthorizationError("Sign-in required (missing X-User-Id header)")
    return user_id


def require_admin(admin_key: Optional[str]) -> None:
    """Check X-Admin-Key when an admin key is configured."""
    expected = get_services().settings.admin_api_key
    if not expected:
        return
    if not admin_key or not hmac.compare_digest(admin_key, expected):
        raise AuthorizationError("Admin access required")


def cart_owner(user_id: Optional[str], session_id: Optional[str]) -> OwnerKey:
    return OwnerKey(user_id=user_id or None, session_id=session_id or None)


def order_to_schema(order: Order) -> OrderSchema:
    return OrderSchema.model_validate(order.to_dict())


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


# --- FastAPI App ---


app = FastAPI(
    title="storefront API",
    description="Cart, checkout, payments and order management",
    version="0.1.0",
)

# CORS for the storefront frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        load_settings().frontend_url,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    EmptyCartError: 400,
    NotFoundError: 404,
    ProductNotFoundError: 404,
    OrderNotFoundError: 404,
    CartItemNotFoundError: 404,
    ConflictError: 409,
    PaymentAlreadySettledError: 409,
    InsufficientStockError: 409,
    InvalidStateError: 409,
    SignatureVerificationError: 400,
    PaymentGatewayError: 502,
    AuthorizationError: 403,
}


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """Map StorefrontError subclasses to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if isinstance(exc, PaymentGatewayError) and not exc.configured:
        status_code = 503
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


# --- Endpoints ---


@app.get("/api/health")
def health_check():
    """
    Health check endpoint.

    Reports database reachability and which payment gateways are configured.
    """
    services = get_services()
    try:
        with services.db.unit_of_work() as uow:
            uow.session.execute(text("SELECT 1"))
        return {
            "status": "ok",
            "stripe_configured": services.settings.stripe_configured,
            "vnpay_configured": services.settings.vnpay_configured,
        }
    except Exception as e:
        return {
            "status": "error",
            "detail": str(e),
        }


# --- Product Endpoints ---


@app.get("/api/products", response_model=ProductListResponse)
def list_products(include_inactive: bool = Query(default=False)):
    services = get_services()
    with services.db.unit_of_work() as uow:
        products = services.catalog.list_products(uow.session, active_only=not include_inactive)
        schemas = [ProductSchema.model_validate(p.to_dict()) for p in products]
    return ProductListResponse(products=schemas, count=len(schemas))


@app.get("/api/products/{product_id}", response_model=ProductSchema)
def get_product(product_id: str):
    services = get_services()
    with services.db.unit_of_work() as uow:
        product = services.catalog.get_product(uow.session, product_id, active_only=True)
        return ProductSchema.model_validate(product.to_dict())


@app.post("/api/admin/products", response_model=ProductSchema, status_code=201)
def create_product(
    request: ProductCreateRequest,
    x_admin_key: Optional[str] = Header(default=None),
):
    require_admin(x_admin_key)
    services = get_services()
    with services.db.unit_of_work() as uow:
        product = services.catalog.create_product(
            uow.session,
            name=request.name,
            price=request.price,
            stock_quantity=request.stock_quantity,
            sku=request.sku,
            slug=request.slug,
            is_active=request.is_active,
        )
        return ProductSchema.model_validate(product.to_dict())


# --- Cart Endpoints ---


@app.get("/api/cart", response_model=CartSchema)
def get_cart(
    x_user_id: Optional[str] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
):
    view = get_services().carts.get_cart(cart_owner(x_user_id, x_session_id))
    return CartSchema.model_validate(view.to_dict())


@app.post("/api/cart/items", response_model=CartSchema, status_code=201)
def add_cart_item(
    request: CartItemAddRequest,
    x_user_id: Optional[str] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
):
    view = get_services().carts.add_item(
        cart_owner(x_user_id, x_session_id), request.product_id, request.quantity
    )
    return CartSchema.model_validate(view.to_dict())


@app.put("/api/cart/items/{item_id}", response_model=CartSchema)
def update_cart_item(
    item_id: str,
    request: CartItemUpdateRequest,
    x_user_id: Optional[str] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
):
    view = get_services().carts.update_item(
        cart_owner(x_user_id, x_session_id), item_id, request.quantity
    )
    return CartSchema.model_validate(view.to_dict())


@app.delete("/api/cart/items/{item_id}", response_model=CartSchema)
def remove_cart_item(
    item_id: str,
    x_user_id: Optional[str] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
):
    view = get_services().carts.remove_item(cart_owner(x_user_id, x_session_id), item_id)
    return CartSchema.model_validate(view.to_dict())


@app.delete("/api/cart", response_model=CartSchema)
def clear_cart(
    x_user_id: Optional[str] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
):
    view = get_services().carts.clear_cart(cart_owner(x_user_id, x_session_id))
    return CartSchema.model_validate(view.to_dict())


@app.post("/api/cart/merge", response_model=CartSchema)
def merge_cart(
    request: CartMergeRequest,
    x_user_id: Optional[str] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
):
    """Merge a guest cart (body or X-Session-Id) into the signed-in user's cart."""
    user_id = require_user(x_user_id)
    view = get_services().carts.merge_cart(user_id, request.session_id or x_session_id)
    return CartSchema.model_validate(view.to_dict())


# --- Order Endpoints ---


@app.post("/api/orders", response_model=OrderSchema, status_code=201)
def create_order(
    request: OrderCreateRequest,
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
):
    user_id = require_user(x_user_id)
    order = get_services().orders.create_order(
        user_id,
        ShippingAddressInput(**request.shipping_address.model_dump()),
        payment_method=request.payment_method,
        notes=request.notes,
        customer_email=x_user_email,
        customer_name=x_user_name,
    )
    return order_to_schema(order)


def _order_list_response(orders: list[Order], total: int, page: int, limit: int):
    return OrderListResponse(
        orders=[order_to_schema(o) for o in orders],
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


@app.get("/api/orders", response_model=OrderListResponse)
def list_my_orders(
    x_user_id: Optional[str] = Header(default=None),
    status: Optional[str] = Query(default=None),
    page: int = Query(default=1),
    limit: int = Query(default=10),
):
    user_id = require_user(x_user_id)
    orders, total = get_services().orders.list_orders(
        user_id=user_id, status=status, page=page, limit=limit
    )
    return _order_list_response(orders, total, page, limit)


@app.get("/api/orders/{order_id}", response_model=OrderSchema)
def get_my_order(order_id: str, x_user_id: Optional[str] = Header(default=None)):
    user_id = require_user(x_user_id)
    return order_to_schema(get_services().orders.get_order(order_id, user_id))


@app.put("/api/orders/{order_id}/cancel", response_model=OrderSchema)
def cancel_order(order_id: str, x_user_id: Optional[str] = Header(default=None)):
    user_id = require_user(x_user_id)
    return order_to_schema(get_services().orders.cancel_order(order_id, user_id))


# --- Admin Order Endpoints ---


@app.get("/api/admin/orders", response_model=OrderListResponse)
def admin_list_orders(
    x_admin_key: Optional[str] = Header(default=None),
    status: Optional[str] = Query(default=None),
    payment_status: Optional[str] = Query(default=None),
    sort: str = Query(default="created_at"),
    order: str = Query(default="desc"),
    page: int = Query(default=1),
    limit: int = Query(default=10),
):
    require_admin(x_admin_key)
    orders, total = get_services().orders.list_orders(
        status=status,
        payment_status=payment_status,
        sort=sort,
        direction=order,
        page=page,
        limit=limit,
    )
    return _order_list_response(orders, total, page, limit)


@app.get("/api/admin/orders/stats", response_model=OrderStatsResponse)
def admin_order_stats(x_admin_key: Optional[str] = Header(default=None)):
    require_admin(x_admin_key)
    return OrderStatsResponse.model_validate(get_services().dashboard.order_stats())


@app.get("/api/admin/orders/{order_id}", response_model=OrderSchema)
def admin_get_order(order_id: str, x_admin_key: Optional[str] = Header(default=None)):
    require_admin(x_admin_key)
    return order_to_schema(get_services().orders.get_order(order_id))


@app.put("/api/admin/orders/{order_id}/status", response_model=OrderSchema)
def admin_update_order_status(
    order_id: str,
    request: OrderStatusUpdateRequest,
    x_admin_key: Optional[str] = Header(default=None),
):
    require_admin(x_admin_key)
    order = get_services().orders.update_status(
        order_id, status=request.status, payment_status=request.payment_status
    )
    return order_to_schema(order)


# --- Payment Endpoints ---


@app.get("/api/payments/stripe/config", response_model=StripeConfigResponse)
def stripe_config():
    return StripeConfigResponse(**get_services().payments.stripe_config())


@app.post("/api/payments/stripe/create-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    request: PaymentOrderRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    user_id = require_user(x_user_id)
    result = get_services().payments.create_payment_intent(request.order_id, user_id)
    return PaymentIntentResponse(**result)


@app.post("/api/payments/stripe/webhook")
async def stripe_webhook(request: Request):
    """
    Stripe webhook receiver.

    The raw body is needed for signature verification, so this endpoint
    reads it directly and runs the (blocking) settlement in a thread.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    return await run_in_threadpool(
        get_services().payments.handle_stripe_webhook, payload, signature
    )


@app.post("/api/payments/vnpay/create", response_model=VNPayCreateResponse)
def create_vnpay_payment(
    request: PaymentOrderRequest,
    http_request: Request,
    x_user_id: Optional[str] = Header(default=None),
):
    user_id = require_user(x_user_id)
    result = get_services().payments.create_vnpay_url(
        request.order_id, user_id, client_ip(http_request)
    )
    return VNPayCreateResponse(**result)


@app.get("/api/payments/vnpay/return")
def vnpay_return(request: Request):
    """Browser return from VNPay; redirects to the frontend result page."""
    services = get_services()
    frontend_url = services.settings.frontend_url.rstrip("/")
    try:
        outcome = services.payments.handle_vnpay_return(dict(request.query_params))
    except StorefrontError as e:
        query = urlencode({"message": str(e)})
        return RedirectResponse(f"{frontend_url}/checkout/payment/failed?{query}", status_code=302)

    if outcome.success:
        query = urlencode({"orderId": outcome.order_id})
        return RedirectResponse(f"{frontend_url}/checkout/payment/success?{query}", status_code=302)
    query = urlencode({"orderId": outcome.order_id, "message": outcome.message})
    return RedirectResponse(f"{frontend_url}/checkout/payment/failed?{query}", status_code=302)


@app.api_route("/api/payments/vnpay/ipn", methods=["GET", "POST"])
def vnpay_ipn(request: Request):
    """Server-to-server VNPay notification; always answers with an RspCode."""
    return get_services().payments.handle_vnpay_ipn(dict(request.query_params))


@app.get("/api/payments/{order_id}/status", response_model=PaymentStatusResponse)
def get_payment_status(order_id: str, x_user_id: Optional[str] = Header(default=None)):
    user_id = require_user(x_user_id)
    return PaymentStatusResponse(**get_services().payments.get_payment_status(order_id, user_id))


@app.post("/api/payments/{order_id}/refund", response_model=RefundResponse)
def refund_payment(
    order_id: str,
    request: RefundRequest,
    x_admin_key: Optional[str] = Header(default=None),
):
    require_admin(x_admin_key)
    return RefundResponse(**get_services().payments.refund(order_id, request.amount))


# --- Dashboard Endpoints ---


@app.get("/api/admin/dashboard/overview", response_model=OverviewStatsResponse)
def dashboard_overview(x_admin_key: Optional[str] = Header(default=None)):
    require_admin(x_admin_key)
    return OverviewStatsResponse.model_validate(get_services().dashboard.overview_stats())


@app.get("/api/admin/dashboard/revenue", response_model=list[RevenuePointSchema])
def dashboard_revenue(
    x_admin_key: Optional[str] = Header(default=None),
    days: int = Query(default=7, ge=1, le=366),
):
    require_admin(x_admin_key)
    return [RevenuePointSchema(**p) for p in get_services().dashboard.revenue_chart(days)]


@app.get("/api/admin/dashboard/recent-orders", response_model=list[OrderSchema])
def dashboard_recent_orders(
    x_admin_key: Optional[str] = Header(default=None),
    limit: int = Query(default=10, ge=1, le=100),
):
    require_admin(x_admin_key)
    return [order_to_schema(o) for o in get_services().dashboard.recent_orders(limit)]


@app.get("/api/admin/dashboard/low-stock", response_model=list[ProductSchema])
def dashboard_low_stock(
    x_admin_key: Optional[str] = Header(default=None),
    threshold: Optional[int] = Query(default=None, ge=0),
):
    require_admin(x_admin_key)
    products = get_services().dashboard.low_stock_products(threshold)
    return [ProductSchema.model_validate(p.to_dict()) for p in products]


@app.get("/api/admin/dashboard/top-products", response_model=list[TopProductSchema])
def dashboard_top_products(
    x_admin_key: Optional[str] = Header(default=None),
    limit: int = Query(default=5, ge=1, le=50),
):
    require_admin(x_admin_key)
    return [TopProductSchema(**p) for p in get_services().dashboard.top_products(limit)]

"""Pytest fixtures for storefront tests."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from urllib.parse import urlencode

import pytest

from storefront.cart import OwnerKey
from storefront.config import Settings
from storefront.orders import ShippingAddressInput
from storefront.services import build_services

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
VNPAY_TMN_CODE = "TESTTMN1"
VNPAY_HASH_SECRET = "TESTVNPAYHASHSECRET"


class FixedClock:
    """Clock returning a settable instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingNotifier:
    """Notifier that records confirmations instead of sending them."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send_order_confirmation(self, email, name, order, items):
        if self.fail:
            raise RuntimeError("mail server unavailable")
        self.sent.append(
            {"email": email, "name": name, "order_number": order.order_number, "items": len(items)}
        )


class FakeStripeClient:
    """Stands in for the stripe module's PaymentIntent and Refund resources."""

    def __init__(self):
        self.intents = []
        self.refunds = []
        self.PaymentIntent = SimpleNamespace(create=self._create_intent)
        self.Refund = SimpleNamespace(create=self._create_refund)

    def _create_intent(self, **kwargs):
        self.intents.append(kwargs)
        n = len(self.intents)
        return SimpleNamespace(id=f"pi_test_{n}", client_secret=f"pi_test_{n}_secret_abc")

    def _create_refund(self, **kwargs):
        self.refunds.append(kwargs)
        return SimpleNamespace(id=f"re_test_{len(self.refunds)}")


@pytest.fixture
def settings(tmp_path):
    """Settings for a throwaway SQLite database with test gateway credentials."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'storefront.db'}",
        currency="USD",
        frontend_url="http://shop.test",
        stripe_secret_key="sk_test_123",
        stripe_publishable_key="pk_test_123",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        vnpay_tmn_code=VNPAY_TMN_CODE,
        vnpay_hash_secret=VNPAY_HASH_SECRET,
        vnpay_return_url="http://shop.test/checkout/payment/vnpay-return",
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 1, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def stripe_client():
    return FakeStripeClient()


@pytest.fixture
def services(settings, notifier, stripe_client, clock):
    """All services over a fresh database."""
    services = build_services(
        settings, notifier=notifier, stripe_client=stripe_client, clock=clock
    )
    yield services
    services.close()


@pytest.fixture
def db(services):
    return services.db


@pytest.fixture
def products(services):
    """Seed the catalog. Returns product IDs keyed by short name."""
    catalog = services.catalog
    with services.db.unit_of_work() as uow:
        widget = catalog.create_product(
            uow.session, "Widget", Decimal("10.00"), stock_quantity=5, sku="WID-1"
        )
        gadget = catalog.create_product(
            uow.session, "Gadget", Decimal("25.50"), stock_quantity=3, sku="GAD-1"
        )
        gizmo = catalog.create_product(
            uow.session, "Gizmo", Decimal("4.99"), stock_quantity=100, sku="GIZ-1"
        )
        return {"widget": widget.id, "gadget": gadget.id, "gizmo": gizmo.id}


def make_address(**overrides) -> ShippingAddressInput:
    fields = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "address_line1": "12 Analytical St",
        "city": "London",
        "country": "GB",
    }
    fields.update(overrides)
    return ShippingAddressInput(**fields)


def place_order(services, user_id: str, lines, payment_method: str = "cod"):
    """Fill the user's cart with (product_id, quantity) lines and check out."""
    owner = OwnerKey(user_id=user_id)
    for product_id, quantity in lines:
        services.carts.add_item(owner, product_id, quantity)
    return services.orders.create_order(
        user_id, make_address(), payment_method=payment_method
    )


def stock_of(services, product_id: str) -> int:
    with services.db.unit_of_work() as uow:
        return services.catalog.get_product(uow.session, product_id).stock_quantity


def stripe_event(event_type: str, order_id: str | None, intent_id: str = "pi_test_1", amount=None):
    """JSON body of a Stripe PaymentIntent webhook event."""
    obj = {"id": intent_id, "object": "payment_intent", "metadata": {}}
    if order_id is not None:
        obj["metadata"]["order_id"] = order_id
    if amount is not None:
        obj["amount"] = amount
    return json.dumps({"id": "evt_test_1", "type": event_type, "data": {"object": obj}})


def stripe_signature(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp=None) -> str:
    """Stripe-Signature header value for ``payload``."""
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={digest}"


def vnpay_callback(
    order_number: str,
    amount_minor: int,
    response_code: str = "00",
    secret: str = VNPAY_HASH_SECRET,
    **extra,
) -> dict[str, str]:
    """Query parameters of a VNPay return/IPN, signed the way VNPay signs them."""
    params = {
        "vnp_Amount": str(amount_minor),
        "vnp_BankCode": "NCB",
        "vnp_OrderInfo": f"Payment for order {order_number}",
        "vnp_PayDate": "20250101163500",
        "vnp_ResponseCode": response_code,
        "vnp_TmnCode": VNPAY_TMN_CODE,
        "vnp_TransactionNo": "14000001",
        "vnp_TransactionStatus": response_code,
        "vnp_TxnRef": order_number,
    }
    params.update(extra)
    query = urlencode(sorted((k, v) for k, v in params.items() if v))
    params["vnp_SecureHash"] = hmac.new(
        secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha512
    ).hexdigest()
    return params

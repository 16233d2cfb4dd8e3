"""Redirect-based settlement through VNPay.

Outgoing payment URLs and incoming return/IPN callbacks are signed the same
way: the ``vnp_`` parameters are sorted by key, non-empty values are
URL-encoded into a query string, and the string is signed with HMAC-SHA512
using the merchant hash secret. The hex digest travels as ``vnp_SecureHash``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Mapping
from urllib.parse import urlencode

from ..errors import PaymentGatewayError, SignatureVerificationError
from ..models import PaymentMethod
from ..utils import format_compact_timestamp, to_minor_units
from .gateway import (
    GatewayCallback,
    PaymentStart,
    SettlementEvent,
    SettlementFlow,
    SettlementOutcome,
)

if TYPE_CHECKING:
    from ..models import Order

logger = logging.getLogger(__name__)

VNPAY_VERSION = "2.1.0"
VNPAY_COMMAND = "pay"
VNPAY_CURRENCY = "VND"
ORDER_TYPE = "other"
SUCCESS_CODE = "00"

SECURE_HASH_FIELD = "vnp_SecureHash"
EXCLUDED_FROM_SIGNATURE = frozenset({SECURE_HASH_FIELD, "vnp_SecureHashType"})

RESPONSE_MESSAGES = {
    "00": "Transaction successful",
    "07": "Money deducted successfully. Transaction suspected of fraud",
    "09": "Card/Account not registered for InternetBanking",
    "10": "Card/Account authentication failed more than 3 times",
    "11": "Payment timeout. Please try again",
    "12": "Card/Account is locked",
    "13": "Incorrect OTP. Please try again",
    "24": "Transaction cancelled by customer",
    "51": "Insufficient account balance",
    "65": "Account exceeded daily transaction limit",
    "75": "Payment bank is under maintenance",
    "79": "Incorrect payment password too many times",
    "99": "Other errors",
}


def response_message(code: str | None) -> str:
    return RESPONSE_MESSAGES.get(code or "", "Unknown error")


def is_success(code: str | None) -> bool:
    return code == SUCCESS_CODE


def canonical_query(params: Mapping[str, str]) -> str:
    """
    Build the string that gets signed.

    Only ``vnp_`` keys take part; the hash fields themselves and empty
    values are dropped, and keys are sorted.
    """
    items = sorted(
        (key, str(value))
        for key, value in params.items()
        if key.startswith("vnp_")
        and key not in EXCLUDED_FROM_SIGNATURE
        and value is not None
        and str(value) != ""
    )
    return urlencode(items)


def sign(query: str, secret: str) -> str:
    """HMAC-SHA512 hex digest of ``query`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha512).hexdigest()


@dataclass
class VNPayReturn:
    """Parsed and verified fields of a return or IPN callback."""

    is_valid: bool
    response_code: str | None
    order_number: str | None
    transaction_no: str | None
    amount_minor: int | None

    @property
    def success(self) -> bool:
        return self.is_valid and is_success(self.response_code)


def _parse_amount(raw: str | None) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class VNPayGateway:
    """Builds signed VNPay payment URLs and verifies VNPay callbacks."""

    method = PaymentMethod.VNPAY
    flow = SettlementFlow.REDIRECT

    def __init__(
        self,
        tmn_code: str,
        hash_secret: str,
        payment_url: str,
        return_url: str,
        utc_offset_hours: int = 7,
        expire_minutes: int = 15,
        locale: str = "vn",
    ):
        self.tmn_code = tmn_code
        self.hash_secret = hash_secret
        self.payment_url = payment_url
        self.return_url = return_url
        self.tz = timezone(timedelta(hours=utc_offset_hours))
        self.expire_minutes = expire_minutes
        self.locale = locale

    @property
    def configured(self) -> bool:
        return bool(self.tmn_code and self.hash_secret)

    def build_params(
        self, order: Order, ip_addr: str, now: datetime | None = None
    ) -> dict[str, str]:
        """Unsigned request parameters for an order."""
        now = (now or datetime.now(timezone.utc)).astimezone(self.tz)
        expires = now + timedelta(minutes=self.expire_minutes)
        return {
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": VNPAY_COMMAND,
            "vnp_TmnCode": self.tmn_code,
            "vnp_Locale": self.locale,
            "vnp_CurrCode": VNPAY_CURRENCY,
            "vnp_TxnRef": order.order_number,
            "vnp_OrderInfo": f"Payment for order {order.order_number}",
            "vnp_OrderType": ORDER_TYPE,
            "vnp_Amount": str(to_minor_units(order.total)),
            "vnp_ReturnUrl": self.return_url,
            "vnp_IpAddr": ip_addr or "127.0.0.1",
            "vnp_CreateDate": format_compact_timestamp(now),
            "vnp_ExpireDate": format_compact_timestamp(expires),
        }

    def create_payment_url(
        self, order: Order, ip_addr: str, now: datetime | None = None
    ) -> str:
        """
        Build the signed URL the customer is redirected to.

        Raises:
            PaymentGatewayError: If merchant credentials are missing.
        """
        if not self.configured:
            raise PaymentGatewayError("vnpay", "VNPay is not configured", configured=False)
        query = canonical_query(self.build_params(order, ip_addr, now))
        signature = sign(query, self.hash_secret)
        return f"{self.payment_url}?{query}&{SECURE_HASH_FIELD}={signature}"

    def start(self, order: Order, ip_addr: str | None = None) -> PaymentStart:
        url = self.create_payment_url(order, ip_addr or "127.0.0.1")
        return PaymentStart(method=self.method, reference=url)

    def verify_return(self, params: Mapping[str, str]) -> VNPayReturn:
        """Check the signature on callback parameters. Never raises."""
        received = params.get(SECURE_HASH_FIELD) or ""
        is_valid = False
        if self.hash_secret and received:
            expected = sign(canonical_query(params), self.hash_secret)
            # Compared as bytes: the received hash is untrusted and may be non-ASCII
            is_valid = hmac.compare_digest(
                expected.encode("ascii"), received.encode("utf-8", "surrogatepass")
            )

        return VNPayReturn(
            is_valid=is_valid,
            response_code=params.get("vnp_ResponseCode"),
            order_number=params.get("vnp_TxnRef"),
            transaction_no=params.get("vnp_TransactionNo"),
            amount_minor=_parse_amount(params.get("vnp_Amount")),
        )

    def verify(self, callback: GatewayCallback) -> SettlementEvent:
        """
        Verify a return or IPN callback.

        Raises:
            SignatureVerificationError: If the signature is missing or wrong.
        """
        result = self.verify_return(callback.params)
        if not result.is_valid:
            logger.warning("Rejected VNPay callback for %s: bad signature", result.order_number)
            raise SignatureVerificationError("vnpay")

        outcome = SettlementOutcome.SUCCEEDED if result.success else SettlementOutcome.FAILED
        return SettlementEvent(
            method=self.method,
            outcome=outcome,
            order_number=result.order_number,
            transaction_id=result.transaction_no,
            amount_minor=result.amount_minor,
            response_code=result.response_code,
            message=response_message(result.response_code),
        )

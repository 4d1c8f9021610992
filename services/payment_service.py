"""Payment webhooks and PayPal capture confirmation, credited exactly once"""
import hmac
import math
import time
import json
import base64
import hashlib
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from errors import AuthLookupError, BadRequest, InvalidSignature, PaymentMismatch
from services.clerk_service import ClerkClient
from services.credit_service import CreditLedger, CreditResult
from services.paypal_service import PayPalClient, captured_amount

logger = logging.getLogger(__name__)

PAYHIP = "payhip"
FASTSPRING = "fastspring"
PADDLE = "paddle"
PAYPAL = "paypal"
WEBHOOK_PROVIDERS = (PAYHIP, FASTSPRING, PADDLE)

# Providers that sell one fixed credit pack
PACKAGE_CREDITS = {PAYHIP: 10, PADDLE: 50}
# Known price points that map to a pack instead of the per-unit rate
FIXED_PRICE_CREDITS = {13.0: 10}

SIGNATURE_HEADERS = {
    PAYHIP: ("payhip-signature", "x-payhip-signature", "x-webhook-signature", "x-signature"),
    FASTSPRING: ("x-fs-signature",),
    PADDLE: ("paddle-signature",),
}

# Allowed age of a Paddle-Signature timestamp, in seconds
PADDLE_TOLERANCE_SECONDS = 5

PAYHIP_COMPLETED_EVENTS = {"payment_success", "payment_succeeded", "payment_successful"}
FASTSPRING_COMPLETED_EVENT = "order.completed"
PADDLE_COMPLETED_EVENT = "transaction.completed"


@dataclass
class PaymentEvent:
    provider: str
    transaction_id: str
    amount: Optional[float] = None
    currency: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.provider}:{self.transaction_id}"


@dataclass
class WebhookResult:
    credits_added: float = 0
    already_processed: bool = False
    ignored: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "received": True,
            "creditsAdded": self.credits_added,
            "alreadyProcessed": self.already_processed,
        }
        if self.ignored:
            body["ignored"] = self.ignored
        return body


def credits_for_amount(amount: Any, credits_per_unit: float) -> int:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(value) or value <= 0 or credits_per_unit <= 0:
        return 0
    for price, credits in FIXED_PRICE_CREDITS.items():
        if abs(value - price) < 0.01:
            return credits
    return int(round(value * credits_per_unit))


def credits_for_event(event: PaymentEvent, credits_per_unit: float) -> int:
    if event.provider in PACKAGE_CREDITS:
        return PACKAGE_CREDITS[event.provider]
    return credits_for_amount(event.amount, credits_per_unit)


# Signatures

def _signature_bytes(signature: str) -> Optional[bytes]:
    normalized = signature.strip()
    for prefix in ("sha256=", "v1="):
        if normalized.lower().startswith(prefix):
            normalized = normalized[len(prefix):]
    if len(normalized) == 64:
        try:
            return bytes.fromhex(normalized)
        except ValueError:
            pass
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError):
        return None


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """HMAC-SHA256 over the raw body, signature given as hex or base64."""
    if not signature or not secret:
        return False
    provided = _signature_bytes(signature)
    if not provided:
        return False
    computed = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return hmac.compare_digest(computed, provided)


def verify_paddle_signature(
    body: bytes,
    header: Optional[str],
    secret: Optional[str],
    tolerance: float = PADDLE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """Paddle signs "<ts>:<body>"; the header reads ``ts=...;h1=...``.

    Deliveries whose ``ts`` is more than ``tolerance`` seconds away from
    ``now`` are rejected even when the digest matches.
    """
    if not header or not secret:
        return False
    parts: Dict[str, List[str]] = {}
    for item in header.split(";"):
        if "=" in item:
            key, value = item.split("=", 1)
            parts.setdefault(key.strip(), []).append(value.strip())
    timestamps = parts.get("ts")
    digests = parts.get("h1")
    if not timestamps or not digests:
        return False
    try:
        signed_at = int(timestamps[0])
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - signed_at) > tolerance:
        logger.warning(f"Paddle signature timestamp {signed_at} outside the {tolerance}s window")
        return False

    signed = timestamps[0].encode("utf-8") + b":" + body
    computed = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(computed, digest.lower()) for digest in digests)


def _header(headers: Mapping[str, str], names: Iterable[str]) -> Optional[str]:
    for name in names:
        value = headers.get(name)
        if value:
            return value
    return None


# Payload parsing

def _dig(payload: Any, path: str) -> Any:
    value = payload
    for key in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _first(payload: Any, paths: Iterable[str]) -> Any:
    for path in paths:
        value = _dig(payload, path)
        if value not in (None, ""):
            return value
    return None


def _email(value: Any) -> Optional[str]:
    return value.strip().lower() if isinstance(value, str) and value.strip() else None


def _amount(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise BadRequest("Invalid JSON")


def normalize_event_type(event_type: Any) -> Optional[str]:
    if not event_type:
        return None
    normalized = str(event_type).lower()
    for char in (" ", ".", "-"):
        normalized = normalized.replace(char, "_")
    while "__" in normalized:
        normalized = normalized.replace("__", "_")
    return normalized


def parse_payhip(payload: Dict[str, Any], body: bytes) -> Optional[PaymentEvent]:
    event_type = normalize_event_type(_first(payload, ("event", "event_type", "eventName", "event_name", "type")))
    if event_type not in PAYHIP_COMPLETED_EVENTS:
        return None

    transaction_id = _first(payload, (
        "transaction_id", "transactionId", "order_id", "orderId", "purchase_id", "purchaseId",
        "data.transaction_id", "data.id", "data.order_id", "data.purchase_id",
    ))
    if not transaction_id:
        # Redeliveries carry the same bytes, so the body digest still dedupes them
        transaction_id = "body-" + hashlib.sha256(body).hexdigest()[:32]

    return PaymentEvent(
        provider=PAYHIP,
        transaction_id=str(transaction_id),
        amount=_amount(_first(payload, ("price", "amount", "data.price", "data.amount"))),
        currency=_first(payload, ("currency", "data.currency")),
        user_id=_first(payload, ("metadata.userId", "custom_data.userId", "data.metadata.userId")),
        email=_email(_first(payload, (
            "email", "buyer_email", "buyer.email", "customer.email", "order.email",
            "data.email", "data.buyer_email", "data.buyer.email", "data.customer.email", "data.order.email",
        ))),
    )


def parse_fastspring(payload: Dict[str, Any]) -> List[PaymentEvent]:
    events = []
    for item in payload.get("events") or []:
        if not isinstance(item, dict) or item.get("type") != FASTSPRING_COMPLETED_EVENT:
            continue
        data = item.get("data") or {}
        transaction_id = _first(data, ("id", "order", "reference")) or item.get("id")
        if not transaction_id:
            logger.warning("FastSpring order.completed event without an order id; skipping")
            continue
        events.append(PaymentEvent(
            provider=FASTSPRING,
            transaction_id=str(transaction_id),
            amount=_amount(_first(data, ("total", "subtotal"))),
            currency=data.get("currency"),
            user_id=_first(data, ("tags.userId", "tags.user_id")),
            email=_email(_first(data, ("customer.email", "account.contact.email"))),
        ))
    return events


def parse_paddle(payload: Dict[str, Any]) -> Optional[PaymentEvent]:
    if payload.get("event_type") != PADDLE_COMPLETED_EVENT:
        return None
    data = payload.get("data") or {}
    transaction_id = data.get("id")
    if not transaction_id:
        raise BadRequest("Paddle transaction has no id")

    total = _amount(_dig(data, "details.totals.total"))
    return PaymentEvent(
        provider=PADDLE,
        transaction_id=str(transaction_id),
        # Paddle reports totals in minor units
        amount=total / 100 if total is not None else None,
        currency=data.get("currency_code"),
        user_id=_first(data, ("custom_data.userId", "custom_data.user_id")),
        email=_email(_first(data, ("customer.email",))),
    )


class PaymentReconciler:
    """Turns verified payment notifications into ledger credits."""

    def __init__(
        self,
        ledger: CreditLedger,
        clerk: ClerkClient,
        secrets: Dict[str, Optional[str]],
        credits_per_unit: float = 2.0,
        paypal: Optional[PayPalClient] = None,
    ):
        self.ledger = ledger
        self.clerk = clerk
        self.secrets = secrets
        self.credits_per_unit = credits_per_unit
        self.paypal = paypal

    def verify(self, provider: str, body: bytes, headers: Mapping[str, str]) -> None:
        secret = self.secrets.get(provider)
        signature = _header(headers, SIGNATURE_HEADERS[provider])
        if not secret or not signature:
            logger.error(f"Missing {provider} signature or secret key")
            raise InvalidSignature("Webhook Error")

        if provider == PADDLE:
            valid = verify_paddle_signature(body, signature, secret)
        else:
            valid = verify_hmac_signature(body, signature, secret)
        if not valid:
            logger.warning(f"Rejected {provider} webhook with invalid signature")
            raise InvalidSignature("Webhook Error")

    def parse(self, provider: str, body: bytes) -> List[PaymentEvent]:
        payload = parse_json(body)
        if not isinstance(payload, dict):
            raise BadRequest("Invalid JSON")
        if provider == FASTSPRING:
            return parse_fastspring(payload)
        event = parse_payhip(payload, body) if provider == PAYHIP else parse_paddle(payload)
        return [event] if event else []

    async def _resolve_user(self, event: PaymentEvent) -> Optional[str]:
        """Custom-data user id first, if Clerk knows it; then the payer's email."""
        if event.user_id:
            try:
                await self.clerk.get_user(event.user_id)
                return event.user_id
            except AuthLookupError:
                logger.warning(f"User {event.user_id} from {event.idempotency_key} not found; trying email")
        if event.email:
            user = await self.clerk.find_user_by_email(event.email)
            if user:
                return user["id"]
        return None

    async def reconcile(self, event: PaymentEvent) -> Optional[CreditResult]:
        user_id = await self._resolve_user(event)
        if not user_id:
            logger.warning(f"No user found for {event.idempotency_key}; ignoring")
            return None

        credits = credits_for_event(event, self.credits_per_unit)
        if credits <= 0:
            logger.warning(f"Payment {event.idempotency_key} maps to no credits (amount {event.amount})")
            return None

        logger.info(f"Payment {event.idempotency_key} received for user {user_id}")
        try:
            return await self.ledger.credit(user_id, credits, event.idempotency_key)
        except AuthLookupError:
            logger.warning(f"User {user_id} disappeared before {event.idempotency_key} was credited; ignoring")
            return None

    async def handle_webhook(self, provider: str, body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        self.verify(provider, body, headers)
        events = self.parse(provider, body)
        if not events:
            return WebhookResult(ignored="event type not handled")

        result = WebhookResult()
        for event in events:
            outcome = await self.reconcile(event)
            if outcome is None:
                result.ignored = "payer or amount not recognised"
                continue
            result.credits_added += outcome.added
            result.already_processed = result.already_processed or outcome.already_processed
        return result

    async def confirm_paypal_order(self, user_id: str, order_id: str, claimed_amount: Any = None) -> CreditResult:
        """Credit a PayPal order the browser reports as captured, after checking it with PayPal."""
        if self.paypal is None:
            raise BadRequest("PayPal is not configured")

        order = await self.paypal.get_order(order_id)
        amount = captured_amount(order)
        if order.get("status") != "COMPLETED" or not amount:
            raise BadRequest("Payment not completed")

        if claimed_amount not in (None, "") and _amount(claimed_amount) != _amount(amount):
            logger.warning(f"PayPal order {order_id} amount mismatch: claimed {claimed_amount}, captured {amount}")
            raise PaymentMismatch("Amount mismatch")

        credits = credits_for_amount(amount, self.credits_per_unit)
        if not credits:
            raise BadRequest("Invalid amount for credits")

        event = PaymentEvent(provider=PAYPAL, transaction_id=order_id, amount=_amount(amount), user_id=user_id)
        return await self.ledger.credit(user_id, credits, event.idempotency_key)

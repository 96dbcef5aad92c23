"""
Event Classifier — maps heterogeneous webhook payloads to one canonical event.

Two producer shapes are accepted:

  checkout platform   {"order_id", "order_ref", "order_status", "payment_method",
                       "webhook_event_type", "Customer": {...}, "Product": {...},
                       "Commissions": {...}, "Subscription": {...}, ...}
  generic             {"event", "customer": {...}, "order": {"id", "status",
                       "payment_method", ...}, "checkout_url"}

Both are first flattened into the same normalized order dict, then an ORDERED
predicate list is evaluated first-match-wins. Specific signals (an explicit
refusal, an approval) come before generic ones (a bare event label), and a
payload that matches nothing gets the caller's default event.
"""
from __future__ import annotations

from typing import Any, Callable, Optional, Union

import structlog

from models.schemas import CanonicalEvent, CustomerProfile, EventType, OrderStatus

logger = structlog.get_logger()

# Raw status spellings → normalized OrderStatus values
_STATUS_ALIASES = {
    "paid": OrderStatus.PAID.value,
    "approved": OrderStatus.PAID.value,
    "aprovado": OrderStatus.PAID.value,
    "waiting_payment": OrderStatus.WAITING_PAYMENT.value,
    "order_created": OrderStatus.WAITING_PAYMENT.value,
    "pending": OrderStatus.WAITING_PAYMENT.value,
    "refused": OrderStatus.REFUSED.value,
    "recusado": OrderStatus.REFUSED.value,
    "rejected": OrderStatus.REFUSED.value,
    "refunded": OrderStatus.REFUNDED.value,
    "chargedback": OrderStatus.CHARGEDBACK.value,
}


def _spellings(status: OrderStatus) -> frozenset[str]:
    return frozenset(raw for raw, value in _STATUS_ALIASES.items() if value == status.value)


_REFUSED_RAW = _spellings(OrderStatus.REFUSED)
_APPROVED_RAW = _spellings(OrderStatus.PAID)
_WAITING_RAW = _spellings(OrderStatus.WAITING_PAYMENT)
_BILLET_METHODS = {"boleto", "billet"}

# Status implied by an event when the payload carried none
_IMPLIED_STATUS = {
    EventType.PAYMENT_APPROVED: OrderStatus.PAID.value,
    EventType.PAYMENT_REFUSED: OrderStatus.REFUSED.value,
    EventType.PAYMENT_INITIATED: OrderStatus.WAITING_PAYMENT.value,
    EventType.BILLET_CREATED: OrderStatus.WAITING_PAYMENT.value,
}

_SUBSCRIPTION_STATUS = {
    "renewed": EventType.SUBSCRIPTION_RENEWED,
    "canceled": EventType.SUBSCRIPTION_CANCELED,
    "cancelled": EventType.SUBSCRIPTION_CANCELED,
    "late": EventType.SUBSCRIPTION_LATE,
    "overdue": EventType.SUBSCRIPTION_LATE,
}


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _lower(value: Any) -> str:
    return _text(value).lower()


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_name(full_name: str) -> str:
    return full_name.split(" ")[0] if full_name else ""


# ──────────────────────────────────────────────────────────────
#  Extraction
# ──────────────────────────────────────────────────────────────

def _is_platform_shape(raw: dict[str, Any]) -> bool:
    return isinstance(raw.get("Customer"), dict) or "order_id" in raw or "order_status" in raw


def _extract_platform(raw: dict[str, Any]) -> tuple[CustomerProfile, dict[str, Any]]:
    c = _dict(raw.get("Customer"))
    product = _dict(raw.get("Product"))
    full_name = _text(c.get("full_name"))
    profile = CustomerProfile(
        email=_lower(c.get("email")),
        full_name=full_name,
        first_name=_text(c.get("first_name")) or _first_name(full_name),
        mobile=_text(c.get("mobile")),
        national_id=_text(c.get("CPF") or c.get("cpf")),
        country=_text(c.get("country")),
    )
    order = {
        "order_id": _text(raw.get("order_id") or raw.get("order_ref")),
        "order_ref": _text(raw.get("order_ref")),
        "raw_status": _lower(raw.get("order_status") or raw.get("payment_status")),
        "payment_method": _lower(raw.get("payment_method")),
        "product_id": _text(product.get("product_id")),
        "product_name": _text(product.get("product_name")),
        "access_url": _text(raw.get("access_url")),
        "checkout_url": _text(raw.get("checkout_link") or raw.get("checkout_url")),
        "pix_code": _text(raw.get("pix_code")),
        "pix_expiration": _text(raw.get("pix_expiration")),
        "boleto_url": _text(raw.get("boleto_URL") or raw.get("boleto_url")),
        "boleto_barcode": _text(raw.get("boleto_barcode")),
        "boleto_expiry_date": _text(raw.get("boleto_expiry_date")),
        "card_rejection_reason": _text(raw.get("card_rejection_reason")),
        "charge_amount": _dict(raw.get("Commissions")).get("charge_amount", ""),
        "next_payment": _text(_dict(raw.get("Subscription")).get("next_payment")),
        "subscription_status": _lower(_dict(raw.get("Subscription")).get("status")),
        "event_type": _lower(raw.get("webhook_event_type")),
    }
    return profile, order


def _extract_generic(raw: dict[str, Any]) -> tuple[CustomerProfile, dict[str, Any]]:
    c = _dict(raw.get("customer"))
    o = _dict(raw.get("order"))
    product = _dict(o.get("product"))
    full_name = _text(c.get("full_name") or c.get("name"))
    profile = CustomerProfile(
        email=_lower(c.get("email")),
        full_name=full_name,
        first_name=_text(c.get("first_name")) or _first_name(full_name),
        mobile=_text(c.get("mobile") or c.get("phone")),
        national_id=_text(c.get("national_id") or c.get("cpf")),
        country=_text(c.get("country")),
    )
    order = {
        "order_id": _text(o.get("id") or o.get("order_id")),
        "order_ref": _text(o.get("ref") or o.get("order_ref")),
        "raw_status": _lower(o.get("status") or o.get("payment_status")),
        "payment_method": _lower(o.get("payment_method")),
        "product_id": _text(o.get("product_id") or product.get("id")),
        "product_name": _text(o.get("product_name") or product.get("name")),
        "access_url": _text(o.get("access_url")),
        "checkout_url": _text(raw.get("checkout_url") or o.get("checkout_url")),
        "pix_code": _text(o.get("pix_code")),
        "pix_expiration": _text(o.get("pix_expiration")),
        "boleto_url": _text(o.get("boleto_url")),
        "boleto_barcode": _text(o.get("boleto_barcode")),
        "boleto_expiry_date": _text(o.get("boleto_expiry_date")),
        "card_rejection_reason": _text(o.get("card_rejection_reason")),
        "charge_amount": o.get("charge_amount", o.get("amount", "")),
        "next_payment": _text(o.get("next_payment")),
        "subscription_status": _lower(_dict(raw.get("subscription")).get("status")),
        "event_type": _lower(raw.get("event") or raw.get("webhook_event_type")),
    }
    return profile, order


# ──────────────────────────────────────────────────────────────
#  Predicates — each returns the event it recognises, or None
# ──────────────────────────────────────────────────────────────

Predicate = Callable[[dict[str, Any], dict[str, Any]], Optional[EventType]]


def _refused(order: dict, raw: dict) -> Optional[EventType]:
    if order["raw_status"] in _REFUSED_RAW or order["event_type"] == EventType.PAYMENT_REFUSED.value:
        return EventType.PAYMENT_REFUSED
    return None


def _approved(order: dict, raw: dict) -> Optional[EventType]:
    if order["raw_status"] in _APPROVED_RAW:
        return EventType.PAYMENT_APPROVED
    return None


def _abandoned_cart(order: dict, raw: dict) -> Optional[EventType]:
    marked = (
        bool(raw.get("cart_abandoned"))
        or bool(raw.get("abandoned"))
        or _lower(raw.get("status")) == "abandoned"
        or order["event_type"] == EventType.ABANDONED_CART.value
    )
    if marked and order["checkout_url"]:
        return EventType.ABANDONED_CART
    return None


def _pix_created(order: dict, raw: dict) -> Optional[EventType]:
    if order["payment_method"] == "pix" and order["raw_status"] in _WAITING_RAW:
        return EventType.PAYMENT_INITIATED
    return None


def _billet_created(order: dict, raw: dict) -> Optional[EventType]:
    if order["payment_method"] in _BILLET_METHODS and order["raw_status"] in _WAITING_RAW:
        return EventType.BILLET_CREATED
    return None


def _subscription(order: dict, raw: dict) -> Optional[EventType]:
    for event in (EventType.SUBSCRIPTION_RENEWED, EventType.SUBSCRIPTION_CANCELED, EventType.SUBSCRIPTION_LATE):
        if order["event_type"] == event.value:
            return event
    return _SUBSCRIPTION_STATUS.get(order["subscription_status"])


def _explicit_label(order: dict, raw: dict) -> Optional[EventType]:
    try:
        return EventType(order["event_type"])
    except ValueError:
        return None


DEFAULT_RULES: list[tuple[str, Predicate]] = [
    ("refused", _refused),
    ("approved", _approved),
    ("abandoned_cart", _abandoned_cart),
    ("pix_created", _pix_created),
    ("billet_created", _billet_created),
    ("subscription", _subscription),
    ("explicit_label", _explicit_label),
]


class EventClassifier:
    """
    Classifies webhook payloads into CanonicalEvents.

    The rule list is ordered; the first predicate that recognises the payload
    decides. Classification never raises: anything unrecognised, including a
    non-object JSON body, falls through to the default event.
    """

    def __init__(
        self,
        default_event: Union[EventType, str] = EventType.ABANDONED_CART,
        rules: Optional[list[tuple[str, Predicate]]] = None,
    ):
        self.default_event = self._coerce(default_event, EventType.ABANDONED_CART)
        self._rules = list(rules or DEFAULT_RULES)

    @staticmethod
    def _coerce(value: Union[EventType, str, None], fallback: EventType) -> EventType:
        if isinstance(value, EventType):
            return value
        try:
            return EventType(value)
        except ValueError:
            logger.warning("unknown_default_event", value=value, using=fallback.value)
            return fallback

    @staticmethod
    def extract(payload: Any) -> tuple[CustomerProfile, dict[str, Any]]:
        raw = _dict(payload)
        if _is_platform_shape(raw):
            return _extract_platform(raw)
        return _extract_generic(raw)

    def classify(
        self,
        payload: Any,
        default: Union[EventType, str, None] = None,
    ) -> CanonicalEvent:
        raw = _dict(payload)
        profile, order = self.extract(raw)

        event_type = None
        matched = "default"
        for name, predicate in self._rules:
            event_type = predicate(order, raw)
            if event_type is not None:
                matched = name
                break

        if event_type is None:
            event_type = self._coerce(default, self.default_event) if default else self.default_event

        raw_status = order.pop("raw_status")
        order.pop("subscription_status")
        order["status"] = _STATUS_ALIASES.get(raw_status, raw_status) or _IMPLIED_STATUS.get(event_type, "")
        order["event_type"] = event_type.value

        logger.debug(
            "event_classified",
            event_type=event_type.value,
            rule=matched,
            order_id=order["order_id"],
        )
        return CanonicalEvent(
            event_type=event_type,
            order_id=order["order_id"],
            customer=profile,
            order=order,
            raw=raw,
            matched_rule=matched,
        )

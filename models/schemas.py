"""
Core data models for the CheckoutConcierge system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class EventType(str, Enum):
    ABANDONED_CART = "abandoned_cart"
    PAYMENT_INITIATED = "pix_created"
    BILLET_CREATED = "billet_created"
    PAYMENT_APPROVED = "order_approved"
    PAYMENT_REFUSED = "order_rejected"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_LATE = "subscription_late"


class OrderStatus(str, Enum):
    WAITING_PAYMENT = "waiting_payment"
    PAID = "paid"
    REFUSED = "refused"
    REFUNDED = "refunded"
    CHARGEDBACK = "chargedback"
    UNKNOWN = "unknown"


class Intent(str, Enum):
    MENU = "menu"
    STATUS = "status"
    PRODUCTS = "products"
    SUPPORT = "support"
    ACCESS = "access"
    PAYMENT = "payment"
    SELECTION = "selection"


class MessageOrigin(str, Enum):
    CUSTOMER = "customer"
    SYSTEM = "system"


class FollowUpState(str, Enum):
    NONE = "none"
    SCHEDULED = "scheduled"
    FIRED = "fired"
    CANCELLED = "cancelled"


class ResponseSource(str, Enum):
    CANNED = "canned"
    AI = "ai"
    FALLBACK = "fallback"
    THROTTLED = "throttled"


# ──────────────────────────────────────────────────────────────
#  Customer — the buyer behind one or more orders
# ──────────────────────────────────────────────────────────────

class CustomerProfile(BaseModel):
    """Customer fields as extracted from a webhook payload, before storage."""
    email: str = ""
    full_name: str = ""
    first_name: str = ""
    mobile: str = ""
    national_id: str = ""                     # CPF for Brazilian buyers
    country: str = ""


class Customer(BaseModel):
    email: str
    full_name: str = ""
    first_name: str = ""
    mobile: str = ""
    national_id: str = ""
    country: str = ""
    last_order: str = ""
    orders: list[str] = []                    # append-only, see DESIGN.md
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return self.first_name or (self.full_name.split(" ")[0] if self.full_name else "")


# ──────────────────────────────────────────────────────────────
#  Order — latest known state of a checkout order
# ──────────────────────────────────────────────────────────────

class Order(BaseModel):
    order_id: str
    event_type: str = ""
    status: str = OrderStatus.UNKNOWN.value
    payment_method: str = ""
    product_id: str = ""
    product_name: str = ""
    payload: dict[str, Any] = {}              # raw producer fields, stored as-is
    saved_at: datetime = Field(default_factory=utcnow)
    reminded_at: Optional[datetime] = None    # set once; survives later upserts


# ──────────────────────────────────────────────────────────────
#  Conversation — message log per channel address
# ──────────────────────────────────────────────────────────────

class ConversationMessage(BaseModel):
    origin: MessageOrigin
    text: str
    event_type: str = ""                      # set for webhook-driven system messages
    timestamp: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    address: str
    customer_email: str = ""
    messages: list[ConversationMessage] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Follow-ups
# ──────────────────────────────────────────────────────────────

class PendingFollowUp(BaseModel):
    """A reminder armed for an order that is waiting for payment."""
    order_id: str
    customer: Customer
    order: Order
    created_at: datetime = Field(default_factory=utcnow)
    due_at: datetime = Field(default_factory=utcnow)
    scheduled: bool = True


# ──────────────────────────────────────────────────────────────
#  Canonical events
# ──────────────────────────────────────────────────────────────

class CanonicalEvent(BaseModel):
    """A business occurrence normalized from one of several payload shapes."""
    event_type: EventType
    order_id: str = ""
    customer: CustomerProfile = Field(default_factory=CustomerProfile)
    order: dict[str, Any] = {}
    raw: dict[str, Any] = {}
    matched_rule: str = "default"


# ──────────────────────────────────────────────────────────────
#  Routing / delivery results
# ──────────────────────────────────────────────────────────────

class IntentMatch(BaseModel):
    intent: Intent
    keyword: str = ""
    selection: Optional[str] = None


class RoutedResponse(BaseModel):
    text: str
    source: ResponseSource
    intent: Optional[Intent] = None


class DeliveryResult(BaseModel):
    address: str
    status: str                               # sent | failed | skipped
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "sent"


class DispatchReport(BaseModel):
    raw_contact: str = ""
    results: list[DeliveryResult] = []

    @property
    def delivered(self) -> bool:
        return any(r.ok for r in self.results)

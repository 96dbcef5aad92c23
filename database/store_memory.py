"""
InMemoryRecordStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Every map access serialized by a single asyncio.Lock
  - snapshot() is a consistent copy taken under that lock
  - All data lost on process restart (see FileRecordStore for durability)

Unbounded growth: Customer.orders and Conversation.messages are append-only
and never pruned. Memory grows with traffic; archive externally if needed.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from channels.addressing import DEFAULT_COUNTRY_CODE, variants
from database.store_base import BaseRecordStore
from models.schemas import (
    Conversation, ConversationMessage, Customer, CustomerProfile,
    Order, OrderStatus, PendingFollowUp, utcnow,
)

logger = structlog.get_logger()

_PROFILE_FIELDS = ("full_name", "first_name", "mobile", "national_id", "country")


class InMemoryRecordStore(BaseRecordStore):
    """
    Owns the Customer, Order, Conversation and PendingFollowUp maps.
    Returns pydantic copies; callers never see the live objects.
    """

    def __init__(self, country_code: str = DEFAULT_COUNTRY_CODE):
        self._country_code = country_code
        self._lock = asyncio.Lock()
        self._customers: dict[str, Customer] = {}             # email → customer
        self._orders: dict[str, Order] = {}                   # order_id → order
        self._conversations: dict[str, Conversation] = {}     # address → conversation
        self._pending: dict[str, PendingFollowUp] = {}        # order_id → follow-up

        # Indexes
        self._address_index: dict[str, str] = {}              # address variant → email
        logger.info("inmemory_store_initialized")

    # ── Customers ─────────────────────────────────────────

    async def upsert_customer(self, profile: CustomerProfile, order_ref: str = "") -> Customer:
        async with self._lock:
            now = utcnow()
            existing = self._customers.get(profile.email)
            if existing is None:
                customer = Customer(
                    email=profile.email,
                    created_at=now,
                    **{f: getattr(profile, f) for f in _PROFILE_FIELDS},
                )
            else:
                customer = existing.model_copy(deep=True)
                # Latest non-empty value wins; a sparse payload must not
                # erase a phone number learned from an earlier one.
                for f in _PROFILE_FIELDS:
                    value = getattr(profile, f)
                    if value:
                        setattr(customer, f, value)

            if order_ref:
                customer.last_order = order_ref
                if order_ref not in customer.orders:
                    customer.orders.append(order_ref)
            customer.updated_at = now

            self._customers[customer.email] = customer
            self._index_customer(customer)
            return customer.model_copy(deep=True)

    async def get_customer(self, email: str) -> Optional[Customer]:
        async with self._lock:
            customer = self._customers.get(email)
            return customer.model_copy(deep=True) if customer else None

    async def find_customer_by_address(self, address: str) -> Optional[Customer]:
        async with self._lock:
            for candidate in variants(address, self._country_code):
                email = self._address_index.get(candidate)
                if email and email in self._customers:
                    return self._customers[email].model_copy(deep=True)
            return None

    async def list_customers(self) -> list[Customer]:
        async with self._lock:
            return [c.model_copy(deep=True) for c in self._customers.values()]

    def _index_customer(self, customer: Customer) -> None:
        if not customer.mobile:
            return
        for address in variants(customer.mobile, self._country_code):
            self._address_index[address] = customer.email

    # ── Orders ────────────────────────────────────────────

    async def upsert_order(self, order_payload: dict[str, Any]) -> Order:
        order = Order(
            order_id=str(order_payload.get("order_id", "")),
            event_type=str(order_payload.get("event_type", "")),
            status=str(order_payload.get("status") or OrderStatus.UNKNOWN.value),
            payment_method=str(order_payload.get("payment_method", "")),
            product_id=str(order_payload.get("product_id", "")),
            product_name=str(order_payload.get("product_name", "")),
            payload=dict(order_payload),
            saved_at=utcnow(),
        )
        async with self._lock:
            previous = self._orders.get(order.order_id)
            if previous is not None:
                order.reminded_at = previous.reminded_at
            self._orders[order.order_id] = order
        return order.model_copy(deep=True)

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    async def get_order_status(self, order_id: str) -> Optional[str]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.status if order else None

    async def mark_order_reminded(self, order_id: str) -> bool:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.reminded_at is not None:
                return False
            order.reminded_at = utcnow()
            return True

    # ── Conversations ─────────────────────────────────────

    async def append_conversation_message(
        self, address: str, message: ConversationMessage, customer_email: str = "",
    ) -> Conversation:
        async with self._lock:
            conv = self._conversations.get(address)
            if conv is None:
                conv = Conversation(address=address, customer_email=customer_email)
                self._conversations[address] = conv
            elif customer_email and not conv.customer_email:
                conv.customer_email = customer_email
            conv.messages.append(message.model_copy())
            conv.updated_at = utcnow()
            return conv.model_copy(deep=True)

    async def get_conversation(self, address: str) -> Optional[Conversation]:
        async with self._lock:
            conv = self._conversations.get(address)
            return conv.model_copy(deep=True) if conv else None

    async def list_conversations(self) -> list[Conversation]:
        async with self._lock:
            return [c.model_copy(deep=True) for c in self._conversations.values()]

    # ── Pending follow-ups ────────────────────────────────

    async def add_pending_followup(self, pending: PendingFollowUp) -> bool:
        async with self._lock:
            if pending.order_id in self._pending:
                return False
            order = self._orders.get(pending.order_id)
            if order is not None and (order.reminded_at is not None or order.status == OrderStatus.PAID.value):
                return False
            self._pending[pending.order_id] = pending.model_copy(deep=True)
            return True

    async def get_pending_followup(self, order_id: str) -> Optional[PendingFollowUp]:
        async with self._lock:
            pending = self._pending.get(order_id)
            return pending.model_copy(deep=True) if pending else None

    async def pop_pending_followup(self, order_id: str) -> Optional[PendingFollowUp]:
        async with self._lock:
            return self._pending.pop(order_id, None)

    async def list_pending_followups(self) -> list[PendingFollowUp]:
        async with self._lock:
            return [p.model_copy(deep=True) for p in self._pending.values()]

    # ── Durability ────────────────────────────────────────

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            return {
                "customers": {k: v.model_dump(mode="json") for k, v in self._customers.items()},
                "orders": {k: v.model_dump(mode="json") for k, v in self._orders.items()},
                "conversations": {k: v.model_dump(mode="json") for k, v in self._conversations.items()},
                "pending_followups": {k: v.model_dump(mode="json") for k, v in self._pending.items()},
                "saved_at": utcnow().isoformat(),
            }

    async def restore(self, blob: dict[str, Any]) -> None:
        customers = _load_map(blob, "customers", Customer)
        orders = _load_map(blob, "orders", Order)
        conversations = _load_map(blob, "conversations", Conversation)
        pending = _load_map(blob, "pending_followups", PendingFollowUp)

        async with self._lock:
            self._customers = customers
            self._orders = orders
            self._conversations = conversations
            self._pending = pending
            self._address_index.clear()
            for customer in self._customers.values():
                self._index_customer(customer)

        logger.info("store_restored", **self._counts())

    # ── Stats (for debugging) ─────────────────────────────

    def _counts(self) -> dict[str, int]:
        return {
            "customers": len(self._customers),
            "orders": len(self._orders),
            "conversations": len(self._conversations),
            "messages": sum(len(c.messages) for c in self._conversations.values()),
            "pending_followups": len(self._pending),
        }

    def stats(self) -> dict[str, int]:
        return self._counts()


def _load_map(blob: dict[str, Any], key: str, model) -> dict[str, Any]:
    """Validate one collection of a snapshot, dropping entries that do not parse."""
    raw = blob.get(key) if isinstance(blob, dict) else None
    if not isinstance(raw, dict):
        return {}
    loaded = {}
    for entry_key, data in raw.items():
        try:
            loaded[entry_key] = model.model_validate(data)
        except Exception as e:
            logger.warning("store_restore_entry_skipped",
                           collection=key, key=entry_key, error=str(e))
    return loaded

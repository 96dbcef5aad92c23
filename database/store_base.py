"""
Abstract Record Store — Interface for all storage backends.

Implementations:
  - InMemoryRecordStore (dict-based, single-process, no persistence)
  - FileRecordStore     (single JSON snapshot on disk, durable)

The store is the only owner of the Customer, Order, Conversation and
PendingFollowUp maps. Callers pass data in and get copies back; nothing
outside the store mutates the maps directly.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import (
    Conversation, ConversationMessage, Customer, CustomerProfile,
    Order, PendingFollowUp,
)


class BaseRecordStore(ABC):
    """Interface that all record store backends must implement."""

    # ── Customers ─────────────────────────────────────────────

    @abstractmethod
    async def upsert_customer(self, profile: CustomerProfile, order_ref: str = "") -> Customer:
        ...

    @abstractmethod
    async def get_customer(self, email: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def find_customer_by_address(self, address: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def list_customers(self) -> list[Customer]:
        ...

    # ── Orders ────────────────────────────────────────────────

    @abstractmethod
    async def upsert_order(self, order_payload: dict[str, Any]) -> Order:
        ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def get_order_status(self, order_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def mark_order_reminded(self, order_id: str) -> bool:
        """Stamp the order as reminded. False if it already was, or is unknown."""
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def append_conversation_message(
        self, address: str, message: ConversationMessage, customer_email: str = "",
    ) -> Conversation:
        ...

    @abstractmethod
    async def get_conversation(self, address: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def list_conversations(self) -> list[Conversation]:
        ...

    # ── Pending follow-ups ────────────────────────────────────

    @abstractmethod
    async def add_pending_followup(self, pending: PendingFollowUp) -> bool:
        """Arm one entry per order. Refused for a live entry, an already reminded order or a paid one."""
        ...

    @abstractmethod
    async def get_pending_followup(self, order_id: str) -> Optional[PendingFollowUp]:
        ...

    @abstractmethod
    async def pop_pending_followup(self, order_id: str) -> Optional[PendingFollowUp]:
        ...

    @abstractmethod
    async def list_pending_followups(self) -> list[PendingFollowUp]:
        ...

    # ── Durability ────────────────────────────────────────────

    @abstractmethod
    async def snapshot(self) -> dict[str, Any]:
        ...

    @abstractmethod
    async def restore(self, blob: dict[str, Any]) -> None:
        ...

    async def start(self) -> None:
        """Load persisted state and start background work, if any."""

    async def close(self) -> None:
        """Flush and stop background work, if any."""

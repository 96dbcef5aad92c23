"""
Orchestrator — wires the components into the two conversation flows.

  Webhook:  payload → EventClassifier → Record Store (customer + order)
            → FollowUpScheduler (arm on PIX created / cancel on approval)
            → event message to every address variant → conversation log

  Inbound:  sender + text → RateLimiter → Record Store lookup
            → ResponseRouter (canned or AI) → reply to the sender
            → conversation log (both messages)

Nothing here is fatal: each step that talks to a collaborator logs its own
failure and the flow carries on with what it has.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.addressing import DEFAULT_COUNTRY_CODE, canonical, digits_only
from channels.dispatcher import DeliveryDispatcher
from core.events import EventClassifier
from core.rate_limiter import SlidingWindowRateLimiter
from core.router import ResponseRouter
from core.scheduler import FollowUpScheduler
from core.templates import THROTTLE_NOTICE, render_event_message
from database.store_base import BaseRecordStore
from models.schemas import (
    CanonicalEvent, ConversationMessage, Customer, EventType,
    MessageOrigin, Order, ResponseSource,
)

logger = structlog.get_logger()


class Orchestrator:

    def __init__(
        self,
        store: BaseRecordStore,
        dispatcher: DeliveryDispatcher,
        router: ResponseRouter,
        scheduler: FollowUpScheduler,
        rate_limiter: SlidingWindowRateLimiter,
        events: Optional[EventClassifier] = None,
        country_code: str = DEFAULT_COUNTRY_CODE,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.router = router
        self.scheduler = scheduler
        self.rate_limiter = rate_limiter
        self.events = events or EventClassifier()
        self.country_code = country_code

    # ══════════════════════════════════════════════════════════
    #  WEBHOOK — a checkout event starts or advances a conversation
    # ══════════════════════════════════════════════════════════

    async def handle_webhook_event(self, payload: Any) -> dict[str, Any]:
        event = self.events.classify(payload)
        logger.info("webhook_received",
                    event_type=event.event_type.value,
                    rule=event.matched_rule,
                    order_id=event.order_id,
                    customer=event.customer.email)

        order: Optional[Order] = None
        if event.order_id:
            order = await self.store.upsert_order(event.order)

        customer: Optional[Customer] = None
        if event.customer.email:
            customer = await self.store.upsert_customer(event.customer, order_ref=event.order_id)
        else:
            logger.warning("webhook_missing_customer_email", order_id=event.order_id)

        followup = await self._apply_followup(event, customer, order)
        delivered = await self._start_conversation(event, customer)

        return {
            "event": event.event_type.value,
            "rule": event.matched_rule,
            "order_id": event.order_id,
            "followup": followup,
            "delivered": delivered,
        }

    async def _apply_followup(
        self, event: CanonicalEvent, customer: Optional[Customer], order: Optional[Order],
    ) -> Optional[str]:
        try:
            if event.event_type == EventType.PAYMENT_INITIATED and customer and order:
                armed = await self.scheduler.schedule(customer, order)
                return "scheduled" if armed else "not_scheduled"
            if event.event_type == EventType.PAYMENT_APPROVED and event.order_id:
                removed = await self.scheduler.cancel(event.order_id)
                return "cancelled" if removed else None
        except Exception as e:
            logger.error("followup_step_failed", order_id=event.order_id, error=str(e))
        return None

    async def _start_conversation(
        self, event: CanonicalEvent, customer: Optional[Customer],
    ) -> Optional[bool]:
        """Send the event's opening message. None when nothing was attempted."""
        if customer is None:
            return None
        if not customer.mobile:
            logger.warning("conversation_skipped_no_mobile", customer=customer.email)
            return None
        if not self.dispatcher.is_connected:
            logger.warning("conversation_skipped_disconnected", customer=customer.email)
            return None

        text = render_event_message(event.event_type, customer.display_name, event.order)
        try:
            report = await self.dispatcher.send_all(customer.mobile, text)
            await self.store.append_conversation_message(
                canonical(customer.mobile, self.country_code),
                ConversationMessage(origin=MessageOrigin.SYSTEM, text=text,
                                    event_type=event.event_type.value),
                customer_email=customer.email,
            )
        except Exception as e:
            logger.error("conversation_start_failed", customer=customer.email, error=str(e))
            return False
        return report.delivered

    # ══════════════════════════════════════════════════════════
    #  INBOUND — a customer wrote to us
    # ══════════════════════════════════════════════════════════

    async def handle_inbound_message(self, sender: str, text: str) -> dict[str, Any]:
        text = (text or "").strip()
        reply_to = digits_only(sender)
        if not text or not reply_to:
            return {"status": "ignored"}

        # Identity is the canonical variant; replies go to the address we heard from
        identity = canonical(sender, self.country_code)
        logger.info("inbound_message", sender=identity, content=text[:100])

        if not self.rate_limiter.allow(identity):
            await self.dispatcher.send_one(reply_to, THROTTLE_NOTICE)
            return {"status": "throttled", "source": ResponseSource.THROTTLED.value}

        customer = await self.store.find_customer_by_address(identity)
        last_order = None
        if customer and customer.last_order:
            last_order = await self.store.get_order(customer.last_order)
        email = customer.email if customer else ""

        await self.store.append_conversation_message(
            identity, ConversationMessage(origin=MessageOrigin.CUSTOMER, text=text),
            customer_email=email,
        )

        routed = await self.router.respond(identity, text, customer, last_order)
        result = await self.dispatcher.send_one(reply_to, routed.text)

        await self.store.append_conversation_message(
            identity, ConversationMessage(origin=MessageOrigin.SYSTEM, text=routed.text),
            customer_email=email,
        )

        logger.info("inbound_replied",
                    sender=identity,
                    source=routed.source.value,
                    intent=routed.intent.value if routed.intent else None,
                    delivery=result.status)
        return {
            "status": "replied",
            "source": routed.source.value,
            "intent": routed.intent.value if routed.intent else None,
            "delivered": result.ok,
        }

"""
End-to-end flows through the orchestrator with in-memory collaborators.

Covers:
  - PIX created → follow-up armed → reminder on every variant after the delay
  - PIX created → approval before the delay → no reminder
  - webhook idempotence, skipped conversation starts
  - inbound chat: canned reply, AI fallback, throttling
"""
import pytest

from core.engine import AICompletionError
from core.templates import AI_APOLOGY, THROTTLE_NOTICE
from models.schemas import EventType, MessageOrigin

VARIANTS = ["5511987654321", "551187654321"]


def pix_payload(make_payload, **kw):
    return make_payload(order_id="O1", email="c@x.com", status="waiting_payment", method="pix", **kw)


def approved_payload(make_payload):
    return make_payload(order_id="O1", email="c@x.com", status="paid", method="pix")


# ══════════════════════════════════════════════════════════════
#  WEBHOOK FLOW
# ══════════════════════════════════════════════════════════════

class TestWebhookFlow:
    @pytest.mark.asyncio
    async def test_pix_without_approval_sends_one_reminder_per_variant(
        self, orchestrator, store, transport, clock, scheduler, make_payload,
    ):
        result = await orchestrator.handle_webhook_event(pix_payload(make_payload))
        assert result["event"] == EventType.PAYMENT_INITIATED.value
        assert result["followup"] == "scheduled"
        assert result["delivered"] is True

        assert await store.get_order("O1") is not None
        assert await store.get_pending_followup("O1") is not None
        opening_sends = len(transport.sent)
        assert [a for a, _ in transport.sent] == VARIANTS

        clock.advance(300)
        await scheduler.run_due()

        reminder_sends = transport.attempts[opening_sends:]
        assert reminder_sends == VARIANTS
        assert await store.get_pending_followup("O1") is None

    @pytest.mark.asyncio
    async def test_approval_before_delay_cancels_reminder(
        self, orchestrator, store, transport, clock, scheduler, make_payload,
    ):
        await orchestrator.handle_webhook_event(pix_payload(make_payload))
        result = await orchestrator.handle_webhook_event(approved_payload(make_payload))
        assert result["event"] == EventType.PAYMENT_APPROVED.value
        assert result["followup"] == "cancelled"
        assert await store.get_pending_followup("O1") is None
        sends_before = len(transport.attempts)

        clock.advance(300)
        assert await scheduler.run_due() == 0
        assert len(transport.attempts) == sends_before
        assert await store.get_order_status("O1") == "paid"

    @pytest.mark.asyncio
    async def test_same_payload_twice_is_idempotent(self, orchestrator, store, make_payload):
        first = await orchestrator.handle_webhook_event(pix_payload(make_payload))
        second = await orchestrator.handle_webhook_event(pix_payload(make_payload))

        assert first["event"] == second["event"]
        assert second["followup"] == "not_scheduled"
        assert len(await store.list_pending_followups()) == 1
        customer = await store.get_customer("c@x.com")
        assert customer.orders == ["O1"]
        assert (await store.get_order("O1")).status == "waiting_payment"

    @pytest.mark.asyncio
    async def test_redelivered_pix_after_reminder_sends_nothing_more(
        self, orchestrator, store, transport, clock, scheduler, make_payload,
    ):
        await orchestrator.handle_webhook_event(pix_payload(make_payload))
        clock.advance(300)
        assert await scheduler.run_due() == 1

        replay = await orchestrator.handle_webhook_event(pix_payload(make_payload))
        assert replay["followup"] == "not_scheduled"
        assert await store.get_pending_followup("O1") is None
        sends_before = len(transport.attempts)

        clock.advance(300)
        assert await scheduler.run_due() == 0
        assert len(transport.attempts) == sends_before

    @pytest.mark.asyncio
    async def test_opening_message_is_logged_on_canonical_address(self, orchestrator, store, make_payload):
        await orchestrator.handle_webhook_event(pix_payload(make_payload))
        conv = await store.get_conversation("5511987654321")
        assert conv.customer_email == "c@x.com"
        assert conv.messages[0].origin == MessageOrigin.SYSTEM
        assert conv.messages[0].event_type == EventType.PAYMENT_INITIATED.value
        assert "00020126PIXCODE" in conv.messages[0].text

    @pytest.mark.asyncio
    async def test_customer_without_mobile_is_stored_but_not_contacted(
        self, orchestrator, store, transport, make_payload,
    ):
        result = await orchestrator.handle_webhook_event(pix_payload(make_payload, mobile=""))
        assert result["delivered"] is None
        assert transport.sent == []
        assert await store.get_customer("c@x.com") is not None

    @pytest.mark.asyncio
    async def test_disconnected_transport_skips_conversation(
        self, orchestrator, store, transport, make_payload,
    ):
        transport.connected = False
        result = await orchestrator.handle_webhook_event(pix_payload(make_payload))
        assert result["delivered"] is None
        assert transport.attempts == []
        # State is still recorded and the reminder still armed
        assert await store.get_pending_followup("O1") is not None
        assert await store.get_conversation("5511987654321") is None

    @pytest.mark.asyncio
    async def test_unrecognised_payload_uses_default_event(self, orchestrator):
        result = await orchestrator.handle_webhook_event({"something": "else"})
        assert result["event"] == EventType.ABANDONED_CART.value
        assert result["delivered"] is None


# ══════════════════════════════════════════════════════════════
#  INBOUND FLOW
# ══════════════════════════════════════════════════════════════

class TestInboundFlow:
    @pytest.mark.asyncio
    async def test_canned_reply_goes_to_sender_and_is_logged(
        self, orchestrator, store, transport, ai_engine, make_payload,
    ):
        await orchestrator.handle_webhook_event(pix_payload(make_payload))

        result = await orchestrator.handle_inbound_message("5511987654321", "status")
        assert result["status"] == "replied"
        assert result["source"] == "canned"
        assert result["delivered"] is True
        ai_engine.complete.assert_not_called()

        reply = transport.texts_to("5511987654321")[-1]
        assert "aguardando pagamento" in reply

        conv = await store.get_conversation("5511987654321")
        assert [m.origin for m in conv.messages[-2:]] == [MessageOrigin.CUSTOMER, MessageOrigin.SYSTEM]
        assert conv.customer_email == "c@x.com"

    @pytest.mark.asyncio
    async def test_reply_goes_to_the_address_that_wrote(self, orchestrator, store, transport):
        # A legacy eight-digit account writes in; identity is the canonical form
        await orchestrator.handle_inbound_message("551187654321", "menu")
        assert transport.sent[-1][0] == "551187654321"
        assert await store.get_conversation("5511987654321") is not None

    @pytest.mark.asyncio
    async def test_ai_failure_sends_apology(self, orchestrator, transport, ai_engine):
        ai_engine.complete.side_effect = AICompletionError("boom")
        result = await orchestrator.handle_inbound_message("5511987654321", "bom dia, tudo bem?")
        assert result["source"] == "fallback"
        assert transport.sent[-1] == ("5511987654321", AI_APOLOGY)

    @pytest.mark.asyncio
    async def test_eleventh_message_in_a_minute_is_throttled(self, orchestrator, transport, clock, ai_engine):
        for _ in range(10):
            result = await orchestrator.handle_inbound_message("5511987654321", "menu")
            assert result["status"] == "replied"
            clock.advance(1)

        result = await orchestrator.handle_inbound_message("5511987654321", "menu")
        assert result["status"] == "throttled"
        assert transport.sent[-1] == ("5511987654321", THROTTLE_NOTICE)

    @pytest.mark.asyncio
    async def test_empty_message_is_ignored(self, orchestrator, transport):
        assert (await orchestrator.handle_inbound_message("5511987654321", "   "))["status"] == "ignored"
        assert transport.sent == []

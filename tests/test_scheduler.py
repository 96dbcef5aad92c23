"""
Tests for the follow-up scheduler.

Covers:
  - idempotent scheduling
  - firing after the delay (reminder to every variant + conversation log)
  - both orderings of the approval / timer race
  - stale timers after cancel + re-schedule
  - rearm after restore, background loop
"""
import asyncio
import time
import pytest

from core.rate_limiter import SlidingWindowRateLimiter
from core.scheduler import REMINDER_EVENT, FollowUpScheduler
from models.schemas import Customer, FollowUpState, MessageOrigin, Order

VARIANTS = ["5511987654321", "551187654321"]


@pytest.fixture
def customer():
    return Customer(email="ana@example.com", first_name="Ana", mobile="11987654321")


@pytest.fixture
def order():
    return Order(
        order_id="ORD-1",
        status="waiting_payment",
        product_name="Curso Completo",
        payload={"pix_code": "00020126PIXCODE"},
    )


async def store_order(store, status="waiting_payment"):
    await store.upsert_order({"order_id": "ORD-1", "status": status, "product_name": "Curso Completo"})


class TestSchedule:
    @pytest.mark.asyncio
    async def test_schedule_is_idempotent_per_order(self, scheduler, store, customer, order):
        assert await scheduler.schedule(customer, order) is True
        assert await scheduler.schedule(customer, order) is False
        pending = await store.list_pending_followups()
        assert [p.order_id for p in pending] == ["ORD-1"]
        assert scheduler.armed_count == 1

    @pytest.mark.asyncio
    async def test_due_at_reflects_delay(self, scheduler, store, customer, order):
        await scheduler.schedule(customer, order)
        pending = await store.get_pending_followup("ORD-1")
        assert (pending.due_at - pending.created_at).total_seconds() == pytest.approx(300)


class TestFire:
    @pytest.mark.asyncio
    async def test_nothing_fires_before_delay(self, scheduler, store, transport, clock, customer, order):
        await store_order(store)
        await scheduler.schedule(customer, order)
        clock.advance(299)
        assert await scheduler.run_due() == 0
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_unpaid_order_gets_one_reminder_on_every_variant(
        self, scheduler, store, transport, clock, sleeper, customer, order,
    ):
        await store_order(store)
        await scheduler.schedule(customer, order)
        clock.advance(300)

        assert await scheduler.run_due() == 1
        assert [a for a, _ in transport.sent] == VARIANTS
        assert "00020126PIXCODE" in transport.sent[0][1]
        assert sleeper.pauses == [2.0]
        assert await store.get_pending_followup("ORD-1") is None

        conv = await store.get_conversation("5511987654321")
        assert conv.messages[-1].origin == MessageOrigin.SYSTEM
        assert conv.messages[-1].event_type == REMINDER_EVENT

        clock.advance(1000)
        assert await scheduler.run_due() == 0
        assert len(transport.sent) == 2

    @pytest.mark.asyncio
    async def test_approval_before_timer_cancels(self, scheduler, store, transport, clock, customer, order):
        await store_order(store)
        await scheduler.schedule(customer, order)

        await store_order(store, status="paid")
        assert await scheduler.cancel("ORD-1") is True

        clock.advance(300)
        assert await scheduler.run_due() == 0
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_paid_order_is_dropped_even_without_cancel(self, scheduler, store, transport, clock, customer, order):
        await store_order(store)
        await scheduler.schedule(customer, order)
        await store_order(store, status="paid")

        clock.advance(300)
        assert await scheduler.run_due() == 0
        assert transport.sent == []
        assert await store.get_pending_followup("ORD-1") is None

    @pytest.mark.asyncio
    async def test_timer_before_approval_sends_exactly_once(self, scheduler, store, transport, clock, customer, order):
        await store_order(store)
        await scheduler.schedule(customer, order)
        clock.advance(300)
        assert await scheduler.run_due() == 1

        await store_order(store, status="paid")
        assert await scheduler.cancel("ORD-1") is False
        assert len(transport.sent) == len(VARIANTS)

    @pytest.mark.asyncio
    async def test_reminded_order_cannot_be_rearmed(self, scheduler, store, transport, clock, customer, order):
        await store_order(store)
        await scheduler.schedule(customer, order)
        clock.advance(300)
        assert await scheduler.run_due() == 1
        assert (await store.get_order("ORD-1")).reminded_at is not None

        await store_order(store)
        assert await scheduler.schedule(customer, order) is False
        clock.advance(300)
        assert await scheduler.run_due() == 0
        assert len(transport.sent) == len(VARIANTS)

    @pytest.mark.asyncio
    async def test_concurrent_fire_and_cancel_send_at_most_once(self, scheduler, store, transport, customer, order):
        await store_order(store)
        await scheduler.schedule(customer, order)
        states = await asyncio.gather(
            scheduler.fire("ORD-1"), scheduler.cancel("ORD-1"), scheduler.fire("ORD-1"),
        )
        fired = [s for s in states if s == FollowUpState.FIRED]
        assert len(fired) <= 1
        assert len(transport.sent) in (0, len(VARIANTS))

    @pytest.mark.asyncio
    async def test_fire_without_entry_is_noop(self, scheduler, transport):
        assert await scheduler.fire("unknown") == FollowUpState.CANCELLED
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_customer_without_mobile_is_dropped(self, scheduler, store, transport, clock, order):
        await store_order(store)
        await scheduler.schedule(Customer(email="x@example.com"), order)
        clock.advance(300)
        assert await scheduler.run_due() == 0
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_stale_timer_after_reschedule_does_not_fire_early(
        self, scheduler, store, transport, clock, customer, order,
    ):
        await store_order(store)
        await scheduler.schedule(customer, order)
        await scheduler.cancel("ORD-1")
        clock.advance(200)
        await scheduler.schedule(customer, order)

        clock.advance(100)          # the first timer's due time
        assert await scheduler.run_due() == 0
        clock.advance(200)          # the second timer's due time
        assert await scheduler.run_due() == 1


class TestRateLimitedReminders:
    @pytest.mark.asyncio
    async def test_reminder_respects_limiter_when_configured(self, store, dispatcher, transport, clock, customer, order):
        limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=clock)
        limiter.allow("5511987654321")
        scheduler = FollowUpScheduler(store, dispatcher, delay_seconds=300, clock=clock, rate_limiter=limiter)

        await store_order(store)
        await scheduler.schedule(customer, order)
        clock.advance(30)
        assert await scheduler.fire("ORD-1") == FollowUpState.CANCELLED
        assert transport.sent == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_rearm_requeues_restored_entries(self, store, dispatcher, transport, clock, customer, order):
        await store_order(store)
        first = FollowUpScheduler(store, dispatcher, delay_seconds=0, clock=clock)
        await first.schedule(customer, order)

        # A fresh process: nothing armed in memory, the entry lives in the store
        second = FollowUpScheduler(store, dispatcher, delay_seconds=300, clock=clock)
        assert second.armed_count == 0
        assert await second.rearm() == 1
        assert await second.rearm() == 0

        assert await second.run_due() == 1
        assert len(transport.sent) == len(VARIANTS)

    @pytest.mark.asyncio
    async def test_background_loop_fires_due_reminders(self, store, dispatcher, transport, customer, order):
        await store_order(store)
        scheduler = FollowUpScheduler(store, dispatcher, delay_seconds=0.05, clock=time.monotonic)
        await scheduler.start()
        try:
            await scheduler.schedule(customer, order)
            for _ in range(50):
                if transport.sent:
                    break
                await asyncio.sleep(0.02)
        finally:
            await scheduler.stop()

        assert [a for a, _ in transport.sent] == VARIANTS

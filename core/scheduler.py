"""
Follow-Up Scheduler — one delayed payment reminder per unpaid order.

Lifecycle of an order's reminder:

    NONE ──schedule()──▶ SCHEDULED ──timer, still unpaid──▶ FIRED
                              │
                              ├──cancel()──────────────────▶ CANCELLED
                              └──timer, already paid───────▶ CANCELLED

The pending entry lives in the Record Store (so it survives a snapshot);
the timer is an in-process heap of (due_at, seq, order_id) on the monotonic
clock, drained by a background task that is woken early whenever something
new is scheduled.

Cancellation is advisory: cancel() only removes the store entry. The fire
path pops the entry atomically and re-reads the order status before
sending, so whichever of {approval, timer} wins, at most one reminder goes
out and a paid order never gets one.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from datetime import timedelta
from typing import Callable, Optional

import structlog

from channels.addressing import DEFAULT_COUNTRY_CODE, canonical
from channels.dispatcher import DeliveryDispatcher
from core.rate_limiter import SlidingWindowRateLimiter
from core.templates import render_payment_reminder
from database.store_base import BaseRecordStore
from models.schemas import (
    ConversationMessage, Customer, FollowUpState, MessageOrigin,
    Order, OrderStatus, PendingFollowUp, utcnow,
)

logger = structlog.get_logger()

REMINDER_EVENT = "payment_reminder"


class FollowUpScheduler:

    def __init__(
        self,
        store: BaseRecordStore,
        dispatcher: DeliveryDispatcher,
        delay_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        country_code: str = DEFAULT_COUNTRY_CODE,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.delay = delay_seconds
        self.rate_limiter = rate_limiter          # None → reminders are never throttled
        self.country_code = country_code
        self._clock = clock
        self._heap: list[tuple[float, int, str]] = []
        self._armed: dict[str, int] = {}          # order_id → seq of its live timer
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ── Timer heap ────────────────────────────────────────────

    def _arm(self, order_id: str, delay: float) -> None:
        seq = next(self._seq)
        self._armed[order_id] = seq
        heapq.heappush(self._heap, (self._clock() + max(delay, 0.0), seq, order_id))
        self._wakeup.set()

    def _next_wait(self) -> Optional[float]:
        if not self._heap:
            return None
        return max(self._heap[0][0] - self._clock(), 0.0)

    @property
    def armed_count(self) -> int:
        return len(self._armed)

    # ── Public operations ─────────────────────────────────────

    async def schedule(self, customer: Customer, order: Order) -> bool:
        """Arm a reminder for `order`. False when the store refuses it (see add_pending_followup)."""
        now = utcnow()
        pending = PendingFollowUp(
            order_id=order.order_id,
            customer=customer,
            order=order,
            created_at=now,
            due_at=now + timedelta(seconds=self.delay),
        )
        if not await self.store.add_pending_followup(pending):
            logger.info("followup_not_armed", order_id=order.order_id)
            return False

        self._arm(order.order_id, self.delay)
        logger.info("followup_scheduled", order_id=order.order_id,
                    customer=customer.email, delay_s=self.delay)
        return True

    async def cancel(self, order_id: str) -> bool:
        """Remove the pending entry. A timer already firing re-checks the order anyway."""
        removed = await self.store.pop_pending_followup(order_id)
        self._armed.pop(order_id, None)
        if removed is None:
            return False
        logger.info("followup_cancelled", order_id=order_id)
        return True

    async def rearm(self) -> int:
        """Re-queue entries restored from a snapshot, keeping their remaining delay."""
        count = 0
        now = utcnow()
        for pending in await self.store.list_pending_followups():
            if pending.order_id in self._armed:
                continue
            remaining = (pending.due_at - now).total_seconds()
            self._arm(pending.order_id, remaining)
            count += 1
        if count:
            logger.info("followups_rearmed", count=count)
        return count

    async def run_due(self) -> int:
        """Fire every reminder whose time has come. Returns how many were sent."""
        now = self._clock()
        due = []
        while self._heap and self._heap[0][0] <= now:
            _, seq, order_id = heapq.heappop(self._heap)
            # Stale timers (cancelled or re-scheduled since) are discarded
            if self._armed.get(order_id) == seq:
                del self._armed[order_id]
                due.append(order_id)

        fired = 0
        for order_id in due:
            try:
                if await self.fire(order_id) == FollowUpState.FIRED:
                    fired += 1
            except Exception as e:
                logger.error("followup_fire_failed", order_id=order_id, error=str(e))
        return fired

    async def fire(self, order_id: str) -> FollowUpState:
        pending = await self.store.pop_pending_followup(order_id)
        if pending is None:
            # Cancelled (or already fired) before the timer got here
            return FollowUpState.CANCELLED

        status = await self.store.get_order_status(order_id)
        if status == OrderStatus.PAID.value:
            logger.info("followup_dropped_paid", order_id=order_id)
            return FollowUpState.CANCELLED

        customer = pending.customer
        if not customer.mobile:
            logger.warning("followup_dropped_no_mobile", order_id=order_id, customer=customer.email)
            return FollowUpState.CANCELLED

        address = canonical(customer.mobile, self.country_code)
        if self.rate_limiter is not None and not self.rate_limiter.allow(address):
            logger.warning("followup_dropped_rate_limited", order_id=order_id, to=address)
            return FollowUpState.CANCELLED

        # The stamp outlives the pending entry, so a replayed webhook cannot re-arm this order
        if not await self.store.mark_order_reminded(order_id) and status is not None:
            logger.info("followup_dropped_already_reminded", order_id=order_id)
            return FollowUpState.CANCELLED

        text = render_payment_reminder(customer.display_name, pending.order)
        report = await self.dispatcher.send_all(customer.mobile, text)
        await self.store.append_conversation_message(
            address,
            ConversationMessage(origin=MessageOrigin.SYSTEM, text=text, event_type=REMINDER_EVENT),
            customer_email=customer.email,
        )
        logger.info("followup_fired", order_id=order_id, to=address,
                    delivered=report.delivered, last_status=status)
        return FollowUpState.FIRED

    # ── Background loop ───────────────────────────────────────

    async def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("followup_scheduler_started", delay_s=self.delay)
        while True:
            self._wakeup.clear()
            try:
                await self.run_due()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("followup_loop_error", error=str(e))

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._next_wait())
            except asyncio.TimeoutError:
                pass

"""
Delivery Dispatcher — sends one message to one or more address variants.

- send_one():  a known-good address, one attempt, no retry here
- send():      an explicit list of variants, sequential, paused between sends
- send_all():  a raw, possibly ambiguous contact string → Address Normalizer
               → send() to every variant; delivered if any variant succeeded

Delivery is best-effort. A disconnected transport means the send is
skipped and logged, never queued; transport failures come back as a
negative result, never as an exception.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Awaitable, Callable, Optional

from channels.addressing import DEFAULT_COUNTRY_CODE, variants
from channels.base import MessagingTransport, TransportUnavailableError
from models.schemas import DeliveryResult, DispatchReport

logger = structlog.get_logger()


class DeliveryDispatcher:

    def __init__(
        self,
        transport: MessagingTransport,
        pause_seconds: float = 2.0,
        country_code: str = DEFAULT_COUNTRY_CODE,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.transport = transport
        self.pause_seconds = pause_seconds
        self.country_code = country_code
        self._sleep = sleep or asyncio.sleep

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    async def send_one(self, address: str, message: str) -> DeliveryResult:
        try:
            ok = await self.transport.send(address, message)
        except TransportUnavailableError:
            logger.warning("delivery_skipped_disconnected", to=address)
            return DeliveryResult(address=address, status="skipped", error="transport_disconnected")
        except Exception as e:
            logger.error("delivery_error", to=address, error=str(e))
            return DeliveryResult(address=address, status="failed", error=str(e))

        if ok:
            return DeliveryResult(address=address, status="sent")
        return DeliveryResult(address=address, status="failed", error="send_failed")

    async def send(self, address_variants: list[str], message: str) -> list[DeliveryResult]:
        results: list[DeliveryResult] = []
        for i, address in enumerate(address_variants):
            if i > 0 and self.pause_seconds > 0:
                await self._sleep(self.pause_seconds)
            result = await self.send_one(address, message)
            results.append(result)
            if result.status == "skipped":
                # Transport went away; the remaining variants would be skipped too
                results.extend(
                    DeliveryResult(address=a, status="skipped", error="transport_disconnected")
                    for a in address_variants[i + 1:]
                )
                break
        return results

    async def send_all(self, raw_contact: str, message: str) -> DispatchReport:
        targets = variants(raw_contact, self.country_code)
        results = await self.send(targets, message)
        report = DispatchReport(raw_contact=raw_contact, results=results)
        logger.info("delivery_dispatched",
                    contact=raw_contact,
                    variants=len(targets),
                    delivered=report.delivered,
                    statuses=[r.status for r in results])
        return report

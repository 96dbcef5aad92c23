"""Shared test fixtures for CheckoutConcierge."""
import pytest
from typing import Any
from unittest.mock import AsyncMock

from channels.base import MessagingTransport
from channels.dispatcher import DeliveryDispatcher
from config.settings import ProductConfig
from core.events import EventClassifier
from core.intent import IntentClassifier
from core.orchestrator import Orchestrator
from core.rate_limiter import SlidingWindowRateLimiter
from core.router import ResponseRouter
from core.scheduler import FollowUpScheduler
from database.store_memory import InMemoryRecordStore


# ──────────────────────────────────────────────────────────────
#  Test doubles
# ──────────────────────────────────────────────────────────────

class FakeTransport(MessagingTransport):
    """Records sends; addresses in `fail_addresses` raise like an unknown recipient."""

    channel = "whatsapp"

    def __init__(self, connected: bool = True, fail_addresses=()):
        super().__init__()
        self.connected = connected
        self.fail_addresses = set(fail_addresses)
        self.sent: list[tuple[str, str]] = []
        self.attempts: list[str] = []

    async def initialize(self, config: dict[str, Any]) -> None:
        self._initialized = True

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def _do_send(self, address: str, text: str) -> None:
        self.attempts.append(address)
        if address in self.fail_addresses:
            raise RuntimeError("recipient not on whatsapp")
        self.sent.append((address, text))

    def texts_to(self, address: str) -> list[str]:
        return [t for a, t in self.sent if a == address]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.pauses: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.pauses.append(seconds)


# ──────────────────────────────────────────────────────────────
#  Payload builders
# ──────────────────────────────────────────────────────────────

def platform_payload(
    order_id: str = "ORD-1",
    status: str = "waiting_payment",
    method: str = "pix",
    event_type: str = "",
    email: str = "ana@example.com",
    mobile: str = "11987654321",
    **extra: Any,
) -> dict[str, Any]:
    payload = {
        "order_id": order_id,
        "order_ref": f"REF-{order_id}",
        "order_status": status,
        "payment_method": method,
        "Customer": {
            "email": email,
            "full_name": "Ana Souza",
            "first_name": "Ana",
            "mobile": mobile,
            "CPF": "12345678900",
        },
        "Product": {"product_id": "p-curso", "product_name": "Curso Completo"},
        "pix_code": "00020126PIXCODE",
        "pix_expiration": "2026-10-20 12:00",
        "access_url": "https://members.example.com/ana",
    }
    if event_type:
        payload["webhook_event_type"] = event_type
    payload.update(extra)
    return payload


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def dispatcher(transport, sleeper) -> DeliveryDispatcher:
    return DeliveryDispatcher(transport, pause_seconds=2.0, sleep=sleeper)


@pytest.fixture
def products() -> dict[str, ProductConfig]:
    return {
        "curso": ProductConfig(name="Curso Completo", price="R$ 197", link="https://pay.example.com/curso"),
        "vip": ProductConfig(name="Pacote VIP", price="R$ 997", link="https://pay.example.com/vip"),
    }


@pytest.fixture
def links() -> dict[str, str]:
    return {
        "checkout": "https://pay.example.com",
        "support": "https://wa.me/5511999999999",
        "members": "https://members.example.com",
    }


@pytest.fixture
def ai_engine() -> AsyncMock:
    engine = AsyncMock()
    engine.complete.return_value = "Claro! Veja o curso aqui: {{link:curso}}"
    return engine


@pytest.fixture
def router(ai_engine, products, links) -> ResponseRouter:
    return ResponseRouter(IntentClassifier(), ai_engine, products=products, links=links)


@pytest.fixture
def scheduler(store, dispatcher, clock) -> FollowUpScheduler:
    return FollowUpScheduler(store, dispatcher, delay_seconds=300, clock=clock)


@pytest.fixture
def rate_limiter(clock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(limit=10, window_seconds=60, clock=clock)


@pytest.fixture
def orchestrator(store, dispatcher, router, scheduler, rate_limiter) -> Orchestrator:
    return Orchestrator(
        store=store,
        dispatcher=dispatcher,
        router=router,
        scheduler=scheduler,
        rate_limiter=rate_limiter,
        events=EventClassifier(),
    )


@pytest.fixture
def make_payload():
    return platform_payload


@pytest.fixture
def make_transport():
    return FakeTransport

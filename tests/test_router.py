"""Tests for the two-tier (canned / AI) response router."""
import asyncio
import pytest

from core.engine import AICompletionError
from core.intent import IntentClassifier
from core.router import ResponseRouter
from core.templates import AI_APOLOGY
from models.schemas import Customer, Intent, Order, ResponseSource

IDENTITY = "5511987654321"


@pytest.fixture
def customer():
    return Customer(email="ana@example.com", first_name="Ana", mobile="11987654321")


class TestCannedTier:
    @pytest.mark.asyncio
    async def test_menu_never_calls_ai(self, router, ai_engine, customer):
        reply = await router.respond(IDENTITY, "menu", customer)
        assert reply.source == ResponseSource.CANNED
        assert reply.intent == Intent.MENU
        assert "Ana" in reply.text
        ai_engine.complete.assert_not_called()
        assert router.history(IDENTITY) == []

    @pytest.mark.asyncio
    async def test_selection_digit_maps_to_menu_option(self, router, products):
        reply = await router.respond(IDENTITY, "2")
        assert reply.intent == Intent.SELECTION
        assert products["curso"].name in reply.text

    @pytest.mark.asyncio
    async def test_status_reports_last_order(self, router, customer):
        order = Order(order_id="ORD-1", status="waiting_payment", product_name="Curso Completo")
        reply = await router.respond(IDENTITY, "status", customer, last_order=order)
        assert "Curso Completo" in reply.text
        assert "aguardando pagamento" in reply.text

    @pytest.mark.asyncio
    async def test_access_resends_last_order_link(self, router, customer):
        order = Order(order_id="ORD-1", status="paid", payload={"access_url": "https://members.example.com/ana"})
        reply = await router.respond(IDENTITY, "perdi meu acesso", customer, last_order=order)
        assert "https://members.example.com/ana" in reply.text

    @pytest.mark.asyncio
    async def test_support_includes_support_link(self, router, links):
        reply = await router.respond(IDENTITY, "suporte")
        assert links["support"] in reply.text


class TestAITier:
    @pytest.mark.asyncio
    async def test_unmatched_text_goes_to_ai_with_links_substituted(self, router, ai_engine, products):
        reply = await router.respond(IDENTITY, "esse curso serve pra iniciante?")
        assert reply.source == ResponseSource.AI
        assert reply.intent is None
        assert products["curso"].link in reply.text
        assert "{{" not in reply.text

        kwargs = ai_engine.complete.await_args.kwargs
        assert kwargs["messages"] == [{"role": "user", "content": "esse curso serve pra iniciante?"}]
        assert "Curso Completo" in kwargs["system"]

    @pytest.mark.asyncio
    async def test_unknown_product_key_falls_back_to_checkout(self, router, ai_engine, links):
        ai_engine.complete.return_value = "Compre aqui: {{link:inexistente}}"
        reply = await router.respond(IDENTITY, "quero comprar")
        assert reply.text == f"Compre aqui: {links['checkout']}"

    @pytest.mark.asyncio
    async def test_history_is_committed_raw_and_capped(self, router, ai_engine):
        for i in range(5):
            ai_engine.complete.return_value = f"resposta {i}"
            await router.respond(IDENTITY, f"pergunta {i}")

        history = router.history(IDENTITY)
        assert len(history) == 6
        assert history[0] == {"role": "user", "content": "pergunta 2"}
        assert history[-1] == {"role": "assistant", "content": "resposta 4"}

    @pytest.mark.asyncio
    async def test_history_sent_to_ai_is_bounded(self, router, ai_engine):
        for i in range(5):
            await router.respond(IDENTITY, f"pergunta {i}")
        messages = ai_engine.complete.await_args.kwargs["messages"]
        # six remembered turns plus the new user message
        assert len(messages) == 7
        assert messages[-1] == {"role": "user", "content": "pergunta 4"}

    @pytest.mark.asyncio
    async def test_ai_failure_returns_apology_and_keeps_history(self, router, ai_engine):
        ai_engine.complete.return_value = "primeira resposta"
        await router.respond(IDENTITY, "primeira pergunta")
        before = router.history(IDENTITY)

        ai_engine.complete.side_effect = AICompletionError("timeout")
        reply = await router.respond(IDENTITY, "segunda pergunta")

        assert reply.text == AI_APOLOGY
        assert reply.source == ResponseSource.FALLBACK
        assert router.history(IDENTITY) == before

    @pytest.mark.asyncio
    async def test_histories_are_per_identity(self, router):
        await router.respond("551111111111", "pergunta a")
        await router.respond("552222222222", "pergunta b")
        assert router.history("551111111111")[0]["content"] == "pergunta a"
        assert len(router.history("552222222222")) == 2
        router.clear_history("551111111111")
        assert router.history("551111111111") == []

    @pytest.mark.asyncio
    async def test_concurrent_messages_for_one_identity_keep_arrival_order(self, ai_engine):
        async def slow_complete(system, messages, max_tokens):
            await asyncio.sleep(0.01 if messages[-1]["content"] == "a" else 0)
            return f"re: {messages[-1]['content']}"

        ai_engine.complete.side_effect = slow_complete
        router = ResponseRouter(IntentClassifier(), ai_engine)
        await asyncio.gather(router.respond(IDENTITY, "a"), router.respond(IDENTITY, "b"))

        assert [t["content"] for t in router.history(IDENTITY)] == ["a", "re: a", "b", "re: b"]

"""Tests for the canned message templates."""
import pytest

from core.templates import (
    render_event_message, render_intent_reply, render_payment_reminder,
)
from models.schemas import EventType, Intent, IntentMatch, Order


ORDER = {
    "order_id": "ORD-1",
    "order_ref": "REF-1",
    "product_name": "Curso Completo",
    "access_url": "https://members.example.com/ana",
    "checkout_url": "https://pay.example.com/c/1",
    "pix_code": "PIXCODE",
    "boleto_url": "https://b.example.com/1",
    "card_rejection_reason": "saldo insuficiente",
    "charge_amount": 19700,
}


class TestEventMessages:
    @pytest.mark.parametrize("event_type, expected", [
        (EventType.ABANDONED_CART, "https://pay.example.com/c/1"),
        (EventType.PAYMENT_APPROVED, "https://members.example.com/ana"),
        (EventType.PAYMENT_INITIATED, "PIXCODE"),
        (EventType.BILLET_CREATED, "https://b.example.com/1"),
        (EventType.PAYMENT_REFUSED, "saldo insuficiente"),
        (EventType.SUBSCRIPTION_RENEWED, "R$ 197,00"),
        (EventType.SUBSCRIPTION_CANCELED, "Curso Completo"),
        (EventType.SUBSCRIPTION_LATE, "Curso Completo"),
    ])
    def test_each_event_carries_its_key_detail(self, event_type, expected):
        text = render_event_message(event_type, "Ana", ORDER)
        assert "Ana" in text
        assert expected in text

    def test_missing_name_uses_generic_greeting(self):
        assert "Cliente" in render_event_message(EventType.ABANDONED_CART, "", {})


class TestReplies:
    def test_reminder_repeats_pix_code(self):
        order = Order(order_id="ORD-1", product_name="Curso", payload={"pix_code": "PIXCODE"})
        text = render_payment_reminder("Ana", order)
        assert "PIXCODE" in text
        assert "Curso" in text

    def test_status_without_order(self):
        text = render_intent_reply(IntentMatch(intent=Intent.STATUS))
        assert "Não encontrei pedidos" in text

    def test_payment_without_pix_code_offers_checkout(self):
        text = render_intent_reply(IntentMatch(intent=Intent.PAYMENT), links={"checkout": "https://pay.example.com"})
        assert "https://pay.example.com" in text

    def test_selection_three_is_support(self):
        text = render_intent_reply(IntentMatch(intent=Intent.SELECTION, selection="3"))
        assert "atendente" in text

"""
Canned message templates.

Everything here is a pure function of its arguments: no I/O, no store
access, no clock. Customer-facing text is Brazilian Portuguese.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

from config.settings import ProductConfig
from models.schemas import EventType, Intent, IntentMatch, Order, OrderStatus

THROTTLE_NOTICE = (
    "Você enviou muitas mensagens em pouco tempo. "
    "Aguarde um minuto e tente novamente, por favor. 🙏"
)

AI_APOLOGY = (
    "Desculpe, não consegui processar sua mensagem agora. 😕\n"
    "Digite *menu* para ver as opções ou *suporte* para falar com um atendente."
)

_DEFAULT_NAME = "Cliente"
_DEFAULT_PRODUCT = "Produto"


def _name(first_name: str) -> str:
    return first_name or _DEFAULT_NAME


def _money(cents: Any) -> str:
    try:
        value = int(cents) / 100
    except (TypeError, ValueError):
        return str(cents or "")
    return f"R$ {value:.2f}".replace(".", ",")


# ──────────────────────────────────────────────────────────────
#  Webhook-driven messages
# ──────────────────────────────────────────────────────────────

def render_event_message(event_type: EventType, first_name: str, order: Mapping[str, Any]) -> str:
    """First message of a conversation started by a webhook event."""
    name = _name(first_name)
    product = order.get("product_name") or _DEFAULT_PRODUCT

    if event_type == EventType.ABANDONED_CART:
        link = order.get("checkout_url", "")
        text = (
            f"Olá {name}! 👋\n\n"
            f"Vi que você deixou o *{product}* no carrinho.\n\n"
            "Posso te ajudar a finalizar sua compra? 😊\n"
        )
        if link:
            text += f"É só continuar por aqui: {link}\n"
        return text + "\n_Se tiver alguma dúvida sobre o produto, é só me chamar!_"

    if event_type == EventType.PAYMENT_APPROVED:
        return (
            f"🎉 *Parabéns {name}!*\n\n"
            "Sua compra foi *aprovada com sucesso*!\n\n"
            f"📦 *Produto:* {product}\n"
            f"🔖 *Pedido:* {order.get('order_ref') or order.get('order_id', '')}\n\n"
            f"✅ Acesse por aqui:\n{order.get('access_url', '')}\n\n"
            "Precisa de ajuda? Digite *ajuda* a qualquer momento!"
        )

    if event_type == EventType.PAYMENT_INITIATED:
        return (
            f"Olá {name}! 😊\n\n"
            "Seu *PIX* foi gerado com sucesso!\n\n"
            f"📦 *Produto:* {product}\n"
            f"⏰ *Válido até:* {order.get('pix_expiration', '')}\n\n"
            f"🔑 *Código PIX:*\n```{order.get('pix_code', '')}```\n\n"
            "Após o pagamento, você recebe o acesso *imediatamente*! ⚡"
        )

    if event_type == EventType.BILLET_CREATED:
        return (
            f"Olá {name}! 📃\n\n"
            "Seu *boleto* foi gerado!\n\n"
            f"📦 *Produto:* {product}\n"
            f"📅 *Vencimento:* {order.get('boleto_expiry_date', '')}\n\n"
            f"🔗 *Link do boleto:*\n{order.get('boleto_url', '')}\n\n"
            f"📊 *Código de barras:*\n`{order.get('boleto_barcode', '')}`"
        )

    if event_type == EventType.PAYMENT_REFUSED:
        reason = order.get("card_rejection_reason") or "Não especificado"
        return (
            f"Olá {name}! 😕\n\n"
            "Infelizmente seu pagamento *não foi aprovado*.\n\n"
            f"❌ *Motivo:* {reason}\n\n"
            "Mas posso te ajudar:\n\n"
            "1️⃣ Tentar outro cartão\n"
            "2️⃣ Pagar com PIX\n"
            "3️⃣ Falar com o suporte\n\n"
            "Digite o *número* da opção desejada."
        )

    if event_type == EventType.SUBSCRIPTION_RENEWED:
        return (
            f"Olá {name}! 🔄\n\n"
            f"Sua assinatura de *{product}* foi renovada com sucesso!\n\n"
            f"💳 *Valor:* {_money(order.get('charge_amount'))}\n"
            f"📅 *Próxima cobrança:* {order.get('next_payment', '')}\n\n"
            "Obrigado por continuar conosco! ❤️"
        )

    if event_type == EventType.SUBSCRIPTION_CANCELED:
        return (
            f"Olá {name}! 😢\n\n"
            f"Sua assinatura de *{product}* foi cancelada.\n\n"
            "Pode me contar o motivo? Sua opinião nos ajuda a melhorar."
        )

    if event_type == EventType.SUBSCRIPTION_LATE:
        return (
            f"Olá {name}! ⚠️\n\n"
            f"Detectamos um problema no pagamento da sua assinatura de *{product}*.\n\n"
            "Para não perder o acesso:\n\n"
            "1️⃣ Atualizar forma de pagamento\n"
            "2️⃣ Pagar com PIX\n"
            "3️⃣ Falar com o suporte\n\n"
            "Digite o *número* da opção."
        )

    # Unknown labels get the generic confirmation
    return render_event_message(EventType.PAYMENT_APPROVED, first_name, order)


def render_payment_reminder(first_name: str, order: Order) -> str:
    """Follow-up sent when an instant-transfer order is still unpaid."""
    payload = order.payload
    text = (
        f"Oi {_name(first_name)}! ⏰\n\n"
        f"Seu PIX para o *{order.product_name or _DEFAULT_PRODUCT}* ainda não foi confirmado.\n\n"
    )
    if payload.get("pix_code"):
        text += f"🔑 Aqui está o código de novo:\n```{payload['pix_code']}```\n\n"
    return text + "Ficou com alguma dúvida? É só responder esta mensagem."


# ──────────────────────────────────────────────────────────────
#  Chat replies
# ──────────────────────────────────────────────────────────────

_STATUS_LABELS = {
    OrderStatus.WAITING_PAYMENT.value: "aguardando pagamento ⏳",
    OrderStatus.PAID.value: "pago ✅",
    OrderStatus.REFUSED.value: "recusado ❌",
    OrderStatus.REFUNDED.value: "reembolsado",
    OrderStatus.CHARGEDBACK.value: "estornado",
}

_SELECTION_INTENTS = {
    "1": Intent.STATUS,
    "2": Intent.PRODUCTS,
    "3": Intent.SUPPORT,
}


def render_menu(first_name: str) -> str:
    return (
        f"*🤖 Menu de Atendimento*\n\nOlá {_name(first_name)}! Como posso ajudar?\n\n"
        "1️⃣ *status* - Verificar status do pedido\n"
        "2️⃣ *produtos* - Ver produtos disponíveis\n"
        "3️⃣ *suporte* - Falar com atendente\n\n"
        "Você também pode digitar *acesso* para receber seu link de acesso "
        "ou *pix* para dúvidas de pagamento."
    )


def render_product_list(products: Mapping[str, ProductConfig]) -> str:
    if not products:
        return "📦 Em instantes um atendente te envia nossos produtos!"
    lines = [f"{i}. {p.name} - {p.price}".rstrip(" -") for i, p in enumerate(products.values(), 1)]
    return "📦 Nossos produtos:\n\n" + "\n".join(lines)


def render_intent_reply(
    match: IntentMatch,
    first_name: str = "",
    products: Optional[Mapping[str, ProductConfig]] = None,
    links: Optional[Mapping[str, str]] = None,
    last_order: Optional[Order] = None,
) -> str:
    """Canned reply for a classified chat message."""
    links = links or {}
    intent = match.intent
    if intent == Intent.SELECTION:
        intent = _SELECTION_INTENTS.get(match.selection or "", Intent.MENU)

    if intent == Intent.MENU:
        return render_menu(first_name)

    if intent == Intent.STATUS:
        if last_order is None:
            return (
                "🔍 Não encontrei pedidos vinculados a este número.\n"
                "Se comprou com outro telefone, digite *suporte*."
            )
        label = _STATUS_LABELS.get(last_order.status, last_order.status)
        product = last_order.product_name or _DEFAULT_PRODUCT
        return f"🔍 Seu pedido de *{product}* está: *{label}*."

    if intent == Intent.PRODUCTS:
        return render_product_list(products or {})

    if intent == Intent.SUPPORT:
        text = "👤 Você será transferido para um atendente humano em breve!"
        if links.get("support"):
            text += f"\nSe preferir, fale direto: {links['support']}"
        return text

    if intent == Intent.ACCESS:
        access_url = (last_order.payload.get("access_url") if last_order else "") or links.get("members", "")
        if access_url:
            return f"🔑 Aqui está seu link de acesso:\n{access_url}"
        return "🔑 Não encontrei um acesso liberado para este número. Digite *suporte* que te ajudamos."

    if intent == Intent.PAYMENT:
        if last_order is not None and last_order.payload.get("pix_code"):
            return f"💳 Este é o código PIX do seu pedido:\n```{last_order.payload['pix_code']}```"
        checkout = links.get("checkout", "")
        return "💳 Aceitamos PIX, boleto e cartão." + (f"\nFinalize por aqui: {checkout}" if checkout else "")

    return render_menu(first_name)

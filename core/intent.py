"""
Intent Classifier — keyword-based, zero-cost mapping from chat text to intents.

The keyword table is an ORDERED list of (intent, keywords) pairs evaluated
first-match-wins. Keyword sets overlap ("ajuda com o pix" hits both
MENU and PAYMENT), so table order is the tie-break and must not be turned into a
dict. A bare menu digit ("1"–"3") is a SELECTION, checked only after the
table found nothing. No match returns None: the caller escalates to AI.
"""
from __future__ import annotations

import re
from typing import Any, Optional, Sequence

from models.schemas import Intent, IntentMatch


DEFAULT_INTENT_TABLE: list[tuple[Intent, tuple[str, ...]]] = [
    (Intent.MENU, ("menu", "ajuda", "help")),
    (Intent.STATUS, ("status", "meu pedido", "my order", "rastrear")),
    (Intent.PRODUCTS, ("produto", "product", "preço", "preco", "price", "valor")),
    (Intent.SUPPORT, ("suporte", "support", "atendente", "humano", "human")),
    (Intent.ACCESS, ("acesso", "access", "login", "senha", "password")),
    (Intent.PAYMENT, ("pix", "boleto", "pagamento", "payment", "pagar")),
]

_SELECTION = re.compile(r"^\s*([1-3])\s*$")


class IntentClassifier:

    def __init__(self, table: Sequence[tuple[Intent, Sequence[str]]] = None):
        self._table = [
            (intent, tuple(k.lower() for k in keywords))
            for intent, keywords in (table or DEFAULT_INTENT_TABLE)
        ]

    @classmethod
    def from_config(cls, entries: list[dict[str, Any]]) -> IntentClassifier:
        """
        Build from settings.yaml `intents:` — a list, kept in file order:
            - intent: menu
              keywords: [menu, ajuda]
        Falls back to the default table when the list is empty.
        """
        if not entries:
            return cls()
        table = [(Intent(e["intent"]), tuple(e.get("keywords", []))) for e in entries]
        return cls(table)

    @property
    def table(self) -> list[tuple[Intent, tuple[str, ...]]]:
        return list(self._table)

    def classify(self, text: str) -> Optional[IntentMatch]:
        lowered = (text or "").lower().strip()
        if not lowered:
            return None

        for intent, keywords in self._table:
            for keyword in keywords:
                if keyword in lowered:
                    return IntentMatch(intent=intent, keyword=keyword)

        selection = _SELECTION.match(lowered)
        if selection:
            return IntentMatch(intent=Intent.SELECTION, selection=selection.group(1))

        return None

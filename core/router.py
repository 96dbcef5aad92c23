"""
Response Router — two-tier reply generation for inbound chat messages.

Tier 1 (canned): the Intent Classifier matched → render the template for
that intent. Deterministic, no external call, no cost. This absorbs most
traffic.

Tier 2 (AI): nothing matched → send the identity's recent history plus the
new message to the CompletionEngine, keep the exchange in a bounded
per-identity history, and replace {{link:<product>}} placeholders with
live links. If the AI call fails, a fixed apology goes out and the failed
turn never enters the history.
"""
from __future__ import annotations

import asyncio
import re
import structlog
from typing import Mapping, Optional

from config.settings import DEFAULT_SYSTEM_PROMPT, ProductConfig
from core.engine import AICompletionError, CompletionEngine
from core.intent import IntentClassifier
from core.templates import AI_APOLOGY, render_intent_reply
from models.schemas import Customer, Order, ResponseSource, RoutedResponse

logger = structlog.get_logger()

_LINK_PLACEHOLDER = re.compile(r"\{\{\s*link\s*:\s*([\w-]+)\s*\}\}", re.IGNORECASE)


class ResponseRouter:

    def __init__(
        self,
        classifier: IntentClassifier,
        engine: CompletionEngine,
        products: Optional[Mapping[str, ProductConfig]] = None,
        links: Optional[Mapping[str, str]] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        history_turns: int = 6,
        max_tokens: int = 300,
    ):
        self.classifier = classifier
        self.engine = engine
        self.products = dict(products or {})
        self.links = dict(links or {})
        self.history_turns = history_turns
        self.max_tokens = max_tokens
        self.system_prompt = self._build_system_prompt(system_prompt)
        self._histories: dict[str, list[dict[str, str]]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _build_system_prompt(self, base: str) -> str:
        if not self.products:
            return base
        catalog = "\n".join(
            f"- {key}: {p.name} ({p.price})" for key, p in self.products.items()
        )
        return f"{base}\n\nProducts (key: name (price)):\n{catalog}"

    # ── History ───────────────────────────────────────────────

    def history(self, identity: str) -> list[dict[str, str]]:
        return [dict(turn) for turn in self._histories.get(identity, [])]

    def clear_history(self, identity: str) -> None:
        self._histories.pop(identity, None)

    # ── Routing ───────────────────────────────────────────────

    async def respond(
        self,
        identity: str,
        text: str,
        customer: Optional[Customer] = None,
        last_order: Optional[Order] = None,
    ) -> RoutedResponse:
        first_name = customer.display_name if customer else ""

        match = self.classifier.classify(text)
        if match is not None:
            reply = render_intent_reply(
                match,
                first_name=first_name,
                products=self.products,
                links=self.links,
                last_order=last_order,
            )
            logger.info("response_canned", identity=identity, intent=match.intent.value)
            return RoutedResponse(text=reply, source=ResponseSource.CANNED, intent=match.intent)

        lock = self._locks.setdefault(identity, asyncio.Lock())
        async with lock:
            return await self._respond_with_ai(identity, text)

    async def _respond_with_ai(self, identity: str, text: str) -> RoutedResponse:
        history = self._histories.get(identity, [])[-self.history_turns:]
        user_turn = {"role": "user", "content": text}

        try:
            raw = await self.engine.complete(
                system=self.system_prompt,
                messages=history + [user_turn],
                max_tokens=self.max_tokens,
            )
        except AICompletionError as e:
            logger.warning("response_ai_fallback", identity=identity, error=str(e))
            return RoutedResponse(text=AI_APOLOGY, source=ResponseSource.FALLBACK)

        updated = history + [user_turn, {"role": "assistant", "content": raw}]
        self._histories[identity] = updated[-self.history_turns:]

        reply = self.substitute_links(raw)
        logger.info("response_ai", identity=identity, history_len=len(self._histories[identity]))
        return RoutedResponse(text=reply, source=ResponseSource.AI)

    def substitute_links(self, text: str) -> str:
        fallback = self.links.get("checkout", "")

        def _replace(match: re.Match) -> str:
            product = self.products.get(match.group(1).lower())
            return product.link if product and product.link else fallback

        return _LINK_PLACEHOLDER.sub(_replace, text)

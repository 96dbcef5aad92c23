"""
Configuration loader for the CheckoutConcierge system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_SYSTEM_PROMPT = (
    "You are the customer service assistant of an online course store. "
    "Answer in the customer's language, in at most three short sentences. "
    "Be friendly and objective. When you mention a product, write its link "
    "as {{link:<product_key>}} and never invent prices or URLs."
)


@dataclass
class WebhookConfig:
    secret: str = "YOUR_SECRET_TOKEN"
    default_event: str = "abandoned_cart"


@dataclass
class WhatsAppConfig:
    gateway_url: str = ""                   # empty → mock sends (development)
    api_key: str = ""
    country_code: str = "55"
    send_pause_seconds: float = 2.0         # spacing between variant sends
    timeout_seconds: float = 15.0


@dataclass
class LLMConfig:
    provider: str = "openai"                # "openai" | "anthropic"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 300
    api_key: str = ""
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    history_turns: int = 6


@dataclass
class FollowUpConfig:
    delay_seconds: float = 300.0
    respect_rate_limit: bool = False


@dataclass
class RateLimitConfig:
    limit: int = 10
    window_seconds: float = 60.0


@dataclass
class DatabaseConfig:
    store_backend: str = "memory"                      # "memory" | "file"
    store_file_path: str = "./data/snapshot.json"      # single blob for file backend
    snapshot_interval_seconds: float = 60.0


@dataclass
class ProductConfig:
    name: str = ""
    price: str = ""
    link: str = ""


@dataclass
class Settings:
    app_name: str = "CheckoutConcierge"
    debug: bool = False
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    followup: FollowUpConfig = field(default_factory=FollowUpConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    products: dict[str, ProductConfig] = field(default_factory=dict)
    links: dict[str, str] = field(default_factory=dict)
    intents: list[dict[str, Any]] = field(default_factory=list)


_settings: Optional[Settings] = None


_ENV_REF = re.compile(r"\$\{(\w+)\}")


def _expand_env(obj: Any) -> Any:
    """Expand ${VAR} references in every string of a parsed YAML tree. Unset variables stay as written."""
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    return obj


def _section(raw: dict[str, Any], name: str, cls):
    """Build a config dataclass from a YAML section, ignoring unknown keys."""
    data = raw.get(name) or {}
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CHECKOUT_CONCIERGE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _expand_env(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        settings.webhook = _section(raw, "webhook", WebhookConfig)
        settings.whatsapp = _section(raw, "whatsapp", WhatsAppConfig)
        settings.llm = _section(raw, "llm", LLMConfig)
        settings.followup = _section(raw, "followup", FollowUpConfig)
        settings.rate_limit = _section(raw, "rate_limit", RateLimitConfig)
        settings.database = _section(raw, "database", DatabaseConfig)

        for key, product in (raw.get("products") or {}).items():
            settings.products[key] = ProductConfig(
                name=product.get("name", key),
                price=str(product.get("price", "")),
                link=product.get("link", ""),
            )

        settings.links = raw.get("links") or {}
        settings.intents = raw.get("intents") or []

    # Secrets may be supplied directly through the environment
    settings.webhook.secret = os.environ.get("WEBHOOK_SECRET", settings.webhook.secret)
    settings.llm.api_key = os.environ.get("LLM_API_KEY", settings.llm.api_key)
    settings.whatsapp.gateway_url = os.environ.get("WHATSAPP_GATEWAY_URL", settings.whatsapp.gateway_url)
    settings.whatsapp.api_key = os.environ.get("WHATSAPP_GATEWAY_KEY", settings.whatsapp.api_key)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None

"""
WhatsApp Transport — HTTP bridge to a WhatsApp Web session gateway.

The gateway process owns the WhatsApp connection itself (QR pairing,
credential persistence, socket reconnection). This adapter:
- Tracks the connection lifecycle reported by the gateway
  (QR issued, open, closed with reason, logged out)
- Exposes `is_connected` as the gate the dispatcher reads before sending
- Sends text messages: POST {gateway_url}/send {"jid", "text"}
- Parses inbound message events (plain and extended text), dropping
  self-sent, empty and redelivered messages

Without a gateway_url the adapter runs in mock mode: sends are logged
and reported as successful, the session is considered connected.
"""
from __future__ import annotations

import structlog
from enum import Enum
from typing import Any, Optional
from datetime import datetime, timezone

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.addressing import from_jid, to_jid
from channels.base import InputSanitizer, MessageDeduplicator, MessagingTransport

logger = structlog.get_logger()


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    QR_ISSUED = "qr_issued"
    OPEN = "open"
    CLOSED = "closed"
    LOGGED_OUT = "logged_out"


_LOGGED_OUT_STATUS = 401


class WhatsAppTransport(MessagingTransport):
    """WhatsApp transport backed by an HTTP session gateway."""

    channel = "whatsapp"

    def __init__(self):
        super().__init__()
        self._gateway_url: str = ""
        self._api_key: str = ""
        self._timeout: float = 15.0
        self._client: Optional[httpx.AsyncClient] = None
        self._state = ConnectionState.CONNECTING
        self._qr_code: Optional[str] = None
        self._last_disconnect_reason: str = ""
        self._state_changed_at = datetime.now(timezone.utc)
        self._deduplicator = MessageDeduplicator()
        self._sanitizer = InputSanitizer()

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._gateway_url = (config.get("gateway_url") or "").rstrip("/")
        self._api_key = config.get("api_key", "")
        self._timeout = float(config.get("timeout_seconds", 15.0))
        if not self._gateway_url:
            self._set_state(ConnectionState.OPEN)
            logger.warning("whatsapp_mock_mode", reason="no gateway_url configured")
        self._initialized = True

    @property
    def mock_mode(self) -> bool:
        return not self._gateway_url

    # ── Connection lifecycle ──────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.OPEN

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def qr_code(self) -> Optional[str]:
        return self._qr_code

    def _set_state(self, state: ConnectionState, reason: str = ""):
        self._state = state
        self._state_changed_at = datetime.now(timezone.utc)
        if reason:
            self._last_disconnect_reason = reason

    def on_connection_update(self, update: dict[str, Any]) -> bool:
        """
        Apply a lifecycle event from the gateway.

        Returns True when the gateway should reconnect (closed, but not
        logged out), False otherwise.
        """
        connection = update.get("connection", "")
        qr = update.get("qr")

        if qr:
            self._qr_code = qr
            self._set_state(ConnectionState.QR_ISSUED)
            logger.info("whatsapp_qr_issued")

        if connection == "open":
            self._qr_code = None
            self._set_state(ConnectionState.OPEN)
            logger.info("whatsapp_connected")
            return False

        if connection == "close":
            reason = str(update.get("reason", ""))
            logged_out = (
                update.get("status_code") == _LOGGED_OUT_STATUS
                or reason == ConnectionState.LOGGED_OUT.value
            )
            if logged_out:
                self._set_state(ConnectionState.LOGGED_OUT, reason or "logged_out")
                logger.warning("whatsapp_logged_out")
                return False
            self._set_state(ConnectionState.CLOSED, reason)
            logger.warning("whatsapp_disconnected", reason=reason, should_reconnect=True)
            return True

        if connection == "connecting":
            self._set_state(ConnectionState.CONNECTING)

        return False

    # ── Send ──────────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self._gateway_url,
                headers=headers,
                timeout=httpx.Timeout(self._timeout, connect=5.0),
            )
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(path, json=payload)
        response.raise_for_status()
        return response.json() if response.content else {}

    async def _do_send(self, address: str, text: str) -> None:
        jid = to_jid(address)
        if self.mock_mode:
            logger.info("whatsapp_mock_sent", to=jid, chars=len(text))
            return
        result = await self._post("/send", {"jid": jid, "text": text})
        logger.info("whatsapp_text_sent", to=jid, msg_id=result.get("id", ""))

    # ── Inbound parsing ───────────────────────────────────────

    def parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        """
        Parse a gateway message event.

        Returns {"sender_address", "content", "message_id", "push_name"} or
        None for anything that must not be answered.
        """
        key = raw_payload.get("key") or {}
        message = raw_payload.get("message") or {}
        if not message or key.get("fromMe"):
            return None

        remote_jid = key.get("remoteJid", "")
        if not remote_jid or remote_jid.endswith("@g.us") or remote_jid == "status@broadcast":
            return None

        extended = message.get("extendedTextMessage") or {}
        text = message.get("conversation") or extended.get("text") or ""
        text = self._sanitizer.sanitize(text)
        if not text:
            return None

        msg_id = key.get("id", "")
        if msg_id and self._deduplicator.is_duplicate(msg_id):
            logger.debug("whatsapp_duplicate_inbound", msg_id=msg_id)
            return None

        return {
            "sender_address": from_jid(remote_jid),
            "content": text,
            "message_id": msg_id,
            "push_name": raw_payload.get("pushName", ""),
        }

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        base = await super().health_check()
        return {
            **base,
            "state": self._state.value,
            "has_qr_code": self._qr_code is not None,
            "last_disconnect_reason": self._last_disconnect_reason,
            "state_changed_at": self._state_changed_at.isoformat(),
            "mock_mode": self.mock_mode,
        }

    async def shutdown(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

"""Messaging transports, address normalization and delivery."""
from channels.addressing import variants, canonical, to_jid, from_jid
from channels.base import (
    ChannelError,
    TransportUnavailableError,
    DeliveryStats,
    MessagingTransport,
)
from channels.whatsapp_adapter import WhatsAppTransport, ConnectionState
from channels.dispatcher import DeliveryDispatcher

__all__ = [
    "variants", "canonical", "to_jid", "from_jid",
    "ChannelError", "TransportUnavailableError", "DeliveryStats", "MessagingTransport",
    "WhatsAppTransport", "ConnectionState", "DeliveryDispatcher",
]

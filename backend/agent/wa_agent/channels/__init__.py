"""Chat channels module."""

from wa_agent.channels.base import BaseChannel, InboundMessage, OutboundMessage
from wa_agent.channels.whatsapp import WhatsAppChannel

__all__ = ["BaseChannel", "InboundMessage", "OutboundMessage", "WhatsAppChannel"]

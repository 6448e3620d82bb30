"""Base channel interface for chat platforms."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
import re
from typing import Any


@dataclass
class InboundMessage:
    """Message received from a chat channel."""

    channel: str
    sender_id: str  # User identifier
    chat_id: str  # Where replies go
    content: str
    message_id: str = ""
    kind: str = "text"  # text | audio
    media_id: str = ""
    mime_type: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class OutboundMessage:
    """Message to send to a chat channel."""

    chat_id: str
    content: str
    reply_to: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class BaseChannel(ABC):
    """
    Abstract base class for chat channel implementations.

    A channel turns platform payloads into `InboundMessage` objects and
    delivers `OutboundMessage` replies back to the platform.
    """

    name: str = "base"

    def __init__(self, config: Any):
        """
        Initialize the channel.

        Args:
            config: Channel-specific configuration.
        """
        self.config = config

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> bool:
        """
        Send a message through this channel.

        Args:
            msg: The message to send.

        Returns:
            True when the platform accepted every part of the message.
        """

    def is_allowed(self, sender_id: str) -> bool:
        """
        Check if a sender is allowed to use this bot.

        Args:
            sender_id: The sender's identifier.

        Returns:
            True if allowed, False otherwise.
        """
        allow_list = getattr(self.config, "allow_from", [])

        # If no allow list, allow everyone
        if not allow_list:
            return True

        sender_variants = self._build_identity_variants(sender_id)
        for allowed in allow_list:
            allowed_variants = self._build_identity_variants(allowed)
            if sender_variants & allowed_variants:
                return True
        return False

    def _build_identity_variants(self, raw: str) -> set[str]:
        """Build matching variants for user IDs / phone-like IDs."""
        text = str(raw or "").strip()
        variants = {text}

        if "@" in text:
            variants.add(text.split("@", 1)[0].strip())

        digits = re.sub(r"\D+", "", text)
        if digits:
            variants.add(digits)
            # "+34 600..." and "0034600..." name the same number
            if digits.startswith("00") and len(digits) > 5:
                variants.add(digits[2:])

        return {v for v in variants if v}

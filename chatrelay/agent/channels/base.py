"""
Channel Base — Abstract transport interface and projector delivery adapter.

Every channel adapter (Telegram, Discord, Slack, Matrix, …) implements
``BaseChannel`` so replies can be delivered uniformly.
``ChannelReplyDispatcher`` plugs a channel into the reply projector as its
deliver callback.

Design Principles
-----------------
* Channel-specific logic lives **only** inside the adapter subclass.
* The projector never talks to a channel directly; it calls
  ``dispatcher.deliver(kind, payload, meta)``.
* Tool updates flagged ``allow_edit`` edit the earlier message for the same
  tool call when the channel can edit, otherwise they are sent as new
  messages.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

from chatrelay.agent.delivery_modes import DeliveryMeta, ReplyDispatchKind, ReplyPayload
from chatrelay.agent.structured_logging import channel_log

logger = logging.getLogger(__name__)


class ChannelType(str, Enum):
    TELEGRAM = "telegram"
    DISCORD = "discord"
    SLACK = "slack"
    WEB = "web"
    WHATSAPP = "whatsapp"
    SIGNAL = "signal"
    MATRIX = "matrix"
    API = "api"  # raw HTTP/REST callers


class BaseChannel(ABC):
    """
    Abstract base for a messaging channel adapter.

    Subclasses must implement:
    * ``send_text()`` — Send a text message, returning the platform message id.

    Optional overrides:
    * ``edit_text()`` — Replace the text of an earlier message.
    """

    channel_type: ChannelType

    def __init__(self, channel_type: ChannelType):
        self.channel_type = channel_type

    @abstractmethod
    async def send_text(self, chat_id: str, text: str) -> Optional[str]:
        """Send a text message; return its message id, or None if the platform rejected it."""

    @property
    def supports_edit(self) -> bool:
        return False

    async def edit_text(self, chat_id: str, message_id: str, text: str) -> bool:
        """Edit an earlier message. Default: unsupported."""
        logger.warning(f"[{self.channel_type.value}] edit_text not implemented")
        return False

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} type={self.channel_type.value}>"


class ChannelReplyDispatcher:
    """Adapts projector deliveries to one chat on one channel."""

    def __init__(self, channel: BaseChannel, chat_id: str):
        self.channel = channel
        self.chat_id = chat_id
        self._tool_messages: Dict[str, str] = {}  # tool_call_id -> message id
        self._counts: Dict[str, int] = {kind.value: 0 for kind in ReplyDispatchKind}
        self._edits = 0
        self._rejected = 0

    async def deliver(
        self,
        kind: ReplyDispatchKind,
        payload: ReplyPayload,
        meta: Optional[DeliveryMeta] = None,
    ) -> bool:
        if not payload.text:
            return False

        tool_call_id = meta.tool_call_id if meta else None
        if kind == ReplyDispatchKind.TOOL and meta and meta.allow_edit and tool_call_id:
            message_id = self._tool_messages.get(tool_call_id)
            if message_id and self.channel.supports_edit:
                if await self.channel.edit_text(self.chat_id, message_id, payload.text):
                    self._edits += 1
                    self._counts[kind.value] += 1
                    return True
                logger.debug(f"[DISPATCH] Edit of {message_id} failed, sending new message")

        message_id = await self.channel.send_text(self.chat_id, payload.text)
        if message_id is None:
            self._rejected += 1
            channel_log.warning(
                f"[DISPATCH] {self.channel.channel_type.value} rejected {kind.value} delivery",
                {"chat_id": self.chat_id, "chars": len(payload.text)},
            )
            return False
        if kind == ReplyDispatchKind.TOOL and tool_call_id:
            self._tool_messages[tool_call_id] = message_id
        self._counts[kind.value] += 1
        return True

    def reset(self) -> None:
        """Forget tool-call message ids (call between turns)."""
        self._tool_messages.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.channel_type.value,
            "chat_id": self.chat_id,
            "delivered": dict(self._counts),
            "edits": self._edits,
            "rejected": self._rejected,
        }

"""
Delivery Modes — How projected replies reach a chat transport.

- live: stream visible text incrementally as it arrives
- final_only: hold text and tool/status notices until the turn is flushed

A single async deliver callback receives every payload, classified by
``ReplyDispatchKind``, and returns whether the transport accepted it.

Usage:
    from chatrelay.agent.delivery_modes import DeliveryMeta, ReplyDispatchKind, ReplyPayload

    async def deliver(kind, payload, meta=None) -> bool:
        if kind == ReplyDispatchKind.TOOL and meta and meta.allow_edit:
            ...  # edit the earlier message for meta.tool_call_id
        return True
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional


class DeliveryMode(str, Enum):
    LIVE = "live"              # Stream text as it arrives
    FINAL_ONLY = "final_only"  # Hold meta deliveries until a forced flush


class HiddenBoundarySeparator(str, Enum):
    NONE = "none"
    SPACE = "space"
    NEWLINE = "newline"
    PARAGRAPH = "paragraph"


class ReplyDispatchKind(str, Enum):
    TEXT = "text"    # Final reply text
    TOOL = "tool"    # Tool summaries and status notices
    BLOCK = "block"  # Streamed text blocks


@dataclass(frozen=True)
class ReplyPayload:
    """Content pushed to the transport."""
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text}


@dataclass(frozen=True)
class DeliveryMeta:
    """Delivery hints for the transport."""
    tag: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_status: Optional[str] = None
    allow_edit: Optional[bool] = None  # True = may edit the previous message for tool_call_id

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        if self.tag:
            d["tag"] = self.tag
        if self.tool_call_id:
            d["tool_call_id"] = self.tool_call_id
        if self.tool_status:
            d["tool_status"] = self.tool_status
        if self.allow_edit is not None:
            d["allow_edit"] = self.allow_edit
        return d


# async def deliver(kind, payload, meta=None) -> bool
DeliverCallback = Callable[
    [ReplyDispatchKind, ReplyPayload, Optional[DeliveryMeta]],
    Awaitable[bool],
]

"""
Agent Events — Semantic events emitted by the agent runtime during a turn.

The runtime produces a sequential feed of these values; the reply projector
consumes them one at a time. Every event is immutable.

Usage:
    from chatrelay.agent.events import TextDeltaEvent, DoneEvent, event_from_dict

    events = [
        TextDeltaEvent(text="Hello"),
        event_from_dict({"type": "tool_call", "tag": "tool_call", "toolCallId": "T1"}),
        DoneEvent(),
    ]
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union


class SessionUpdateTag(str, Enum):
    AGENT_MESSAGE_CHUNK = "agent_message_chunk"
    AGENT_THOUGHT_CHUNK = "agent_thought_chunk"
    TOOL_CALL = "tool_call"
    TOOL_CALL_UPDATE = "tool_call_update"
    USAGE_UPDATE = "usage_update"
    AVAILABLE_COMMANDS_UPDATE = "available_commands_update"
    CURRENT_MODE_UPDATE = "current_mode_update"
    CONFIG_OPTION_UPDATE = "config_option_update"
    SESSION_INFO_UPDATE = "session_info_update"
    PLAN = "plan"


OUTPUT_STREAM = "output"


@dataclass(frozen=True)
class TextDeltaEvent:
    """An incremental piece of model output. Only the "output" stream is projected."""
    text: str
    stream: Optional[str] = OUTPUT_STREAM
    tag: Optional[str] = SessionUpdateTag.AGENT_MESSAGE_CHUNK.value


@dataclass(frozen=True)
class StatusEvent:
    """A non-text informational line (usage, mode change, session info, ...)."""
    text: str
    tag: Optional[str] = None
    used: Optional[float] = None
    size: Optional[float] = None


@dataclass(frozen=True)
class ToolCallEvent:
    """Tool invocation lifecycle notice: ``tool_call`` starts, ``tool_call_update`` follows."""
    tag: Optional[str] = SessionUpdateTag.TOOL_CALL.value
    tool_call_id: Optional[str] = None
    title: Optional[str] = None
    status: Optional[str] = None
    text: Optional[str] = None


@dataclass(frozen=True)
class DoneEvent:
    stop_reason: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent:
    message: str = ""
    code: Optional[str] = None


AgentEvent = Union[TextDeltaEvent, StatusEvent, ToolCallEvent, DoneEvent, ErrorEvent]

TERMINAL_EVENT_TYPES = (DoneEvent, ErrorEvent)


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def event_from_dict(data: Dict[str, Any]) -> AgentEvent:
    """
    Build an event from its wire representation.

    The ``type`` key selects the variant. Both camelCase (``toolCallId``,
    ``stopReason``) and snake_case keys are accepted.
    """
    event_type = data.get("type")
    if event_type == "text_delta":
        return TextDeltaEvent(
            text=data.get("text") or "",
            stream=data.get("stream", OUTPUT_STREAM),
            tag=data.get("tag", SessionUpdateTag.AGENT_MESSAGE_CHUNK.value),
        )
    if event_type == "status":
        return StatusEvent(
            text=data.get("text") or "",
            tag=data.get("tag"),
            used=data.get("used"),
            size=data.get("size"),
        )
    if event_type == "tool_call":
        return ToolCallEvent(
            tag=data.get("tag", SessionUpdateTag.TOOL_CALL.value),
            tool_call_id=_pick(data, "toolCallId", "tool_call_id"),
            title=data.get("title"),
            status=data.get("status"),
            text=data.get("text"),
        )
    if event_type == "done":
        return DoneEvent(stop_reason=_pick(data, "stopReason", "stop_reason"))
    if event_type == "error":
        return ErrorEvent(message=data.get("message") or "", code=data.get("code"))
    raise ValueError(f"Unknown agent event type: {event_type!r}")

"""
Agent event tests — defaults, immutability and wire decoding.
"""

import dataclasses

import pytest

from chatrelay.agent.delivery_modes import DeliveryMeta, ReplyPayload
from chatrelay.agent.events import (
    DoneEvent,
    ErrorEvent,
    StatusEvent,
    TextDeltaEvent,
    ToolCallEvent,
    event_from_dict,
)


class TestEventDefaults:
    def test_text_delta_defaults_to_output_stream(self):
        event = TextDeltaEvent("hi")
        assert event.stream == "output"
        assert event.tag == "agent_message_chunk"

    def test_events_are_frozen(self):
        event = ToolCallEvent(tool_call_id="T1")
        with pytest.raises(dataclasses.FrozenInstanceError):
            event.status = "completed"


class TestEventFromDict:
    def test_text_delta(self):
        event = event_from_dict({"type": "text_delta", "text": "Hello", "stream": "output"})
        assert event == TextDeltaEvent(text="Hello")

    def test_status_with_usage(self):
        event = event_from_dict({"type": "status", "text": "ctx", "tag": "usage_update", "used": 5, "size": 10})
        assert event == StatusEvent(text="ctx", tag="usage_update", used=5, size=10)

    def test_tool_call_accepts_camel_case(self):
        event = event_from_dict({
            "type": "tool_call",
            "tag": "tool_call_update",
            "toolCallId": "T9",
            "title": "Read",
            "status": "completed",
        })
        assert event == ToolCallEvent(
            tag="tool_call_update", tool_call_id="T9", title="Read", status="completed",
        )

    def test_tool_call_accepts_snake_case(self):
        event = event_from_dict({"type": "tool_call", "tool_call_id": "T1"})
        assert event.tool_call_id == "T1"
        assert event.tag == "tool_call"

    def test_terminal_events(self):
        assert event_from_dict({"type": "done", "stopReason": "end_turn"}) == DoneEvent(stop_reason="end_turn")
        assert event_from_dict({"type": "error", "message": "boom", "code": "E1"}) == ErrorEvent("boom", "E1")

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError):
            event_from_dict({"type": "telemetry"})


class TestDeliveryTypes:
    def test_payload_to_dict(self):
        assert ReplyPayload("hi").to_dict() == {"text": "hi"}

    def test_meta_to_dict_drops_unset_fields(self):
        assert DeliveryMeta(tag="tool_call").to_dict() == {"tag": "tool_call"}
        meta = DeliveryMeta(tag="tool_call_update", tool_call_id="T1", tool_status="completed", allow_edit=False)
        assert meta.to_dict() == {
            "tag": "tool_call_update",
            "tool_call_id": "T1",
            "tool_status": "completed",
            "allow_edit": False,
        }

"""
Channel dispatch tests — send vs edit for tool updates, rejected sends, and a
full turn through projector → dispatcher → channel.
"""

from typing import Optional

import pytest

from chatrelay.agent.channels import BaseChannel, ChannelReplyDispatcher, ChannelType
from chatrelay.agent.delivery_modes import DeliveryMeta, ReplyDispatchKind, ReplyPayload
from chatrelay.agent.events import DoneEvent, TextDeltaEvent, ToolCallEvent
from chatrelay.agent.projector import ReplyProjector
from chatrelay.agent.scheduler import ManualScheduler
from chatrelay.config import Settings


class FakeChannel(BaseChannel):
    def __init__(self, can_edit: bool = True, reject: bool = False):
        super().__init__(ChannelType.DISCORD)
        self.can_edit = can_edit
        self.reject = reject
        self.log = []
        self._next_id = 0

    @property
    def supports_edit(self) -> bool:
        return self.can_edit

    async def send_text(self, chat_id: str, text: str) -> Optional[str]:
        if self.reject:
            return None
        self._next_id += 1
        message_id = f"m{self._next_id}"
        self.log.append(("send", message_id, text))
        return message_id

    async def edit_text(self, chat_id: str, message_id: str, text: str) -> bool:
        self.log.append(("edit", message_id, text))
        return True


class PlainChannel(BaseChannel):
    def __init__(self):
        super().__init__(ChannelType.SLACK)
        self.sent = []

    async def send_text(self, chat_id: str, text: str) -> Optional[str]:
        self.sent.append(text)
        return str(len(self.sent))


def tool_meta(status: str, allow_edit: bool) -> DeliveryMeta:
    tag = "tool_call_update" if allow_edit else "tool_call"
    return DeliveryMeta(tag=tag, tool_call_id="T1", tool_status=status, allow_edit=allow_edit)


class TestChannelReplyDispatcher:
    @pytest.mark.asyncio
    async def test_tool_update_edits_earlier_message(self):
        channel = FakeChannel()
        dispatcher = ChannelReplyDispatcher(channel, "chat-1")
        assert await dispatcher.deliver(ReplyDispatchKind.TOOL, ReplyPayload("start"), tool_meta("in_progress", False))
        assert await dispatcher.deliver(ReplyDispatchKind.TOOL, ReplyPayload("finish"), tool_meta("completed", True))
        assert channel.log == [("send", "m1", "start"), ("edit", "m1", "finish")]
        assert dispatcher.stats()["edits"] == 1

    @pytest.mark.asyncio
    async def test_update_without_earlier_message_is_sent(self):
        channel = FakeChannel()
        dispatcher = ChannelReplyDispatcher(channel, "chat-1")
        await dispatcher.deliver(ReplyDispatchKind.TOOL, ReplyPayload("finish"), tool_meta("completed", True))
        assert channel.log == [("send", "m1", "finish")]

    @pytest.mark.asyncio
    async def test_channel_without_edit_falls_back_to_send(self):
        channel = FakeChannel(can_edit=False)
        dispatcher = ChannelReplyDispatcher(channel, "chat-1")
        await dispatcher.deliver(ReplyDispatchKind.TOOL, ReplyPayload("start"), tool_meta("in_progress", False))
        await dispatcher.deliver(ReplyDispatchKind.TOOL, ReplyPayload("finish"), tool_meta("completed", True))
        assert [entry[0] for entry in channel.log] == ["send", "send"]

    @pytest.mark.asyncio
    async def test_default_channel_cannot_edit(self):
        channel = PlainChannel()
        dispatcher = ChannelReplyDispatcher(channel, "c")
        await dispatcher.deliver(ReplyDispatchKind.TOOL, ReplyPayload("a"), tool_meta("in_progress", False))
        await dispatcher.deliver(ReplyDispatchKind.TOOL, ReplyPayload("b"), tool_meta("completed", True))
        assert channel.sent == ["a", "b"]
        assert await channel.edit_text("c", "1", "x") is False

    @pytest.mark.asyncio
    async def test_rejected_send_returns_false(self):
        dispatcher = ChannelReplyDispatcher(FakeChannel(reject=True), "chat-1")
        assert await dispatcher.deliver(ReplyDispatchKind.BLOCK, ReplyPayload("hello")) is False
        stats = dispatcher.stats()
        assert stats["rejected"] == 1
        assert stats["delivered"]["block"] == 0

    @pytest.mark.asyncio
    async def test_empty_payload_is_not_sent(self):
        channel = FakeChannel()
        dispatcher = ChannelReplyDispatcher(channel, "chat-1")
        assert await dispatcher.deliver(ReplyDispatchKind.TEXT, ReplyPayload("")) is False
        assert channel.log == []

    @pytest.mark.asyncio
    async def test_reset_forgets_tool_messages(self):
        channel = FakeChannel()
        dispatcher = ChannelReplyDispatcher(channel, "chat-1")
        await dispatcher.deliver(ReplyDispatchKind.TOOL, ReplyPayload("start"), tool_meta("in_progress", False))
        dispatcher.reset()
        await dispatcher.deliver(ReplyDispatchKind.TOOL, ReplyPayload("finish"), tool_meta("completed", True))
        assert [entry[0] for entry in channel.log] == ["send", "send"]


class TestProjectorToChannel:
    @pytest.mark.asyncio
    async def test_full_turn(self):
        channel = FakeChannel()
        dispatcher = ChannelReplyDispatcher(channel, "chat-1")
        cfg = Settings(
            _env_file=None,
            acp={"stream": {"tag_visibility": {"tool_call": True, "tool_call_update": True}}},
        )
        projector = ReplyProjector(cfg, dispatcher.deliver, provider="discord", scheduler=ManualScheduler())
        for event in (
            ToolCallEvent(tag="tool_call", tool_call_id="T1", title="Search", status="in_progress"),
            ToolCallEvent(tag="tool_call_update", tool_call_id="T1", title="Search", status="completed"),
            TextDeltaEvent("Done."),
            DoneEvent(),
        ):
            await projector.on_event(event)

        assert channel.log == [
            ("send", "m1", "🔧 Tool call: Search · status=in_progress"),
            ("edit", "m1", "🔧 Tool call: Search · status=completed"),
            ("send", "m2", "Done."),
        ]
        assert dispatcher.stats()["delivered"] == {"text": 0, "tool": 2, "block": 1}

"""
Reply Projector — Turn agent runtime events into chat deliveries.

The projector consumes one ``AgentEvent`` at a time and decides what to send,
when, how much and how often:

- only visible tags are projected (model text by default)
- visible text is capped per turn; a single "output truncated" notice follows a cut
- a separator marks where hidden tool activity interrupted the text
- live mode buffers text and flushes on sentence/paragraph boundaries or idle
- final-only mode holds text and tool/status notices until the turn ends
- tool and status notices are deduplicated and bounded by a per-turn quota

``done`` and ``error`` force a full flush and reset every piece of turn
state; the projector is then ready for the next turn.

The host must await ``on_event`` before sending the next event. Failures
raised by the deliver callback or the pipeline propagate to the caller;
nothing is retried and no counter or dedup state is rolled back.

Usage:
    from chatrelay.agent.projector import create_reply_projector
    from chatrelay.config import get_settings

    async def deliver(kind, payload, meta=None) -> bool:
        await channel.send_text(chat_id, payload.text)
        return True

    projector = create_reply_projector(get_settings(), deliver, provider="discord")
    async for event in runtime.stream_turn(prompt):
        await projector.on_event(event)
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from chatrelay.agent.block_streaming import BlockChunker, BlockReplyPipeline, BlockStreamingConfig
from chatrelay.agent.delivery_modes import (
    DeliverCallback,
    DeliveryMeta,
    DeliveryMode,
    ReplyDispatchKind,
    ReplyPayload,
)
from chatrelay.agent.events import (
    OUTPUT_STREAM,
    AgentEvent,
    DoneEvent,
    ErrorEvent,
    SessionUpdateTag,
    StatusEvent,
    TextDeltaEvent,
    ToolCallEvent,
)
from chatrelay.agent.reply_format import (
    is_terminal_tool_status,
    normalize_tool_status,
    prefix_system_message,
    render_tool_summary,
    separator_text,
    should_flush_on_boundary,
    should_flush_on_idle,
    should_insert_separator,
    text_fingerprint,
    truncate_text,
)
from chatrelay.agent.scheduler import LoopScheduler, ScheduledCallback, Scheduler
from chatrelay.agent.stream_settings import (
    ProjectionSettings,
    is_tag_visible,
    resolve_projection_settings,
    resolve_streaming_config,
)
from chatrelay.agent.structured_logging import generate_turn_id, set_log_context, stream_log

BLOCK_REPLY_TIMEOUT_MS = 15_000
LIVE_IDLE_FLUSH_FLOOR_MS = 750

TRUNCATION_NOTICE = "output truncated"
HIDDEN_BOUNDARY_TAGS = frozenset({
    SessionUpdateTag.TOOL_CALL.value,
    SessionUpdateTag.TOOL_CALL_UPDATE.value,
})


@dataclass
class ToolLifecycleState:
    started: bool = False
    terminal: bool = False
    last_rendered_hash: Optional[str] = None


@dataclass
class BufferedToolDelivery:
    payload: ReplyPayload
    meta: Optional[DeliveryMeta] = None


@dataclass
class TurnState:
    """Everything the projector remembers within one turn."""
    turn_id: str = field(default_factory=generate_turn_id)
    emitted_turn_chars: int = 0
    emitted_meta_events: int = 0
    truncation_notice_emitted: bool = False
    meta_quota_exhausted: bool = False
    last_status_hash: Optional[str] = None
    last_tool_hash: Optional[str] = None
    last_usage_tuple: Optional[str] = None
    last_visible_output_tail: Optional[str] = None
    pending_hidden_boundary: bool = False
    live_buffer_text: str = ""
    pending_tool_deliveries: List[BufferedToolDelivery] = field(default_factory=list)
    tool_lifecycle_by_id: Dict[str, ToolLifecycleState] = field(default_factory=dict)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ReplyProjector:
    """
    Stateful projector for one conversation.

    Collaborators (chunker, pipeline, scheduler) default to the
    block_streaming implementations and the running asyncio loop; pass your
    own to replace them. A replacement pipeline needs ``enqueue``, ``flush``
    and ``reset``.
    """

    def __init__(
        self,
        cfg: Any,
        deliver: DeliverCallback,
        *,
        should_send_tool_summaries: bool = True,
        provider: Optional[str] = None,
        account_id: Optional[str] = None,
        chunker: Optional[BlockChunker] = None,
        pipeline: Optional[BlockReplyPipeline] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self._settings = resolve_projection_settings(cfg)
        self._streaming = resolve_streaming_config(
            cfg,
            provider=provider,
            account_id=account_id,
            delivery_mode=self._settings.delivery_mode,
        )
        self._deliver = deliver
        self._should_send_tool_summaries = should_send_tool_summaries
        self._scheduler = scheduler or LoopScheduler()
        self._chunker = chunker or BlockChunker(self._streaming.chunking)
        self._pipeline = pipeline or BlockReplyPipeline(
            self._deliver_block,
            timeout_ms=BLOCK_REPLY_TIMEOUT_MS,
            coalescing=None if self._settings.is_live else self._streaming.coalescing,
            scheduler=self._scheduler,
        )
        self._live_idle_flush_ms = max(self._streaming.coalescing.idle_ms, LIVE_IDLE_FLUSH_FLOOR_MS)
        self._idle_handle: Optional[ScheduledCallback] = None
        self._turn = TurnState()
        self._handlers: Dict[type, Callable[[Any], Awaitable[None]]] = {
            TextDeltaEvent: self._on_text_delta,
            StatusEvent: self._on_status,
            ToolCallEvent: self._on_tool_call,
            DoneEvent: self._on_turn_end,
            ErrorEvent: self._on_turn_end,
        }

    @property
    def settings(self) -> ProjectionSettings:
        return self._settings

    @property
    def streaming(self) -> BlockStreamingConfig:
        return self._streaming

    @property
    def turn_state(self) -> TurnState:
        return self._turn

    @property
    def live_idle_flush_ms(self) -> int:
        return self._live_idle_flush_ms

    @property
    def _is_live(self) -> bool:
        return self._settings.delivery_mode == DeliveryMode.LIVE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def on_event(self, event: AgentEvent) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unsupported agent event: {type(event).__name__}")
        set_log_context(turn_id=self._turn.turn_id)
        await handler(event)

    async def flush(self, force: bool = False) -> None:
        if self._is_live:
            self._clear_live_idle_timer()
            self._flush_live_buffer(force=True)
        await self._flush_buffered_tool_deliveries(force)
        self._drain_chunker(force)
        await self._pipeline.flush(force=force)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_text_delta(self, event: TextDeltaEvent) -> None:
        if event.stream and event.stream != OUTPUT_STREAM:
            return
        if not is_tag_visible(self._settings, event.tag):
            return
        text = event.text
        if not text:
            return

        turn = self._turn
        if turn.pending_hidden_boundary:
            separator = separator_text(self._settings.hidden_boundary_separator)
            if should_insert_separator(separator, turn.last_visible_output_tail, text):
                text = f"{separator}{text}"
        turn.pending_hidden_boundary = False

        if turn.emitted_turn_chars >= self._settings.max_turn_chars:
            await self._emit_truncation_notice()
            return
        remaining = self._settings.max_turn_chars - turn.emitted_turn_chars
        accepted = text[:remaining] if remaining < len(text) else text
        if accepted:
            turn.emitted_turn_chars += len(accepted)
            turn.last_visible_output_tail = accepted[-1]
            if self._is_live:
                turn.live_buffer_text += accepted
                if should_flush_on_boundary(turn.live_buffer_text):
                    self._clear_live_idle_timer()
                    self._flush_live_buffer(force=True)
                else:
                    self._schedule_live_idle_flush()
            else:
                self._chunker.append(accepted)
                self._drain_chunker(False)
        if len(accepted) < len(text):
            await self._emit_truncation_notice()

    async def _on_status(self, event: StatusEvent) -> None:
        if not is_tag_visible(self._settings, event.tag):
            return
        turn = self._turn
        if event.tag == SessionUpdateTag.USAGE_UPDATE.value and self._settings.repeat_suppression:
            if _is_number(event.used) and _is_number(event.size):
                usage_tuple = f"{event.used}/{event.size}"
            else:
                usage_tuple = text_fingerprint(event.text)
            if usage_tuple == turn.last_usage_tuple:
                return
            turn.last_usage_tuple = usage_tuple
        meta = DeliveryMeta(tag=event.tag) if event.tag else None
        await self._emit_system_status(event.text, meta, dedupe=True)

    async def _on_tool_call(self, event: ToolCallEvent) -> None:
        if not is_tag_visible(self._settings, event.tag):
            if event.tag in HIDDEN_BOUNDARY_TAGS:
                status = normalize_tool_status(event.status)
                self._turn.pending_hidden_boundary = (
                    event.tag == SessionUpdateTag.TOOL_CALL.value or is_terminal_tool_status(status)
                )
            return
        await self._emit_tool_summary(event)

    async def _on_turn_end(self, event: AgentEvent) -> None:
        if isinstance(event, ErrorEvent):
            stream_log.info(
                "[PROJECTOR] Turn ended with error",
                {"turn_id": self._turn.turn_id, "code": event.code, "message": event.message},
            )
        try:
            await self.flush(force=True)
        finally:
            self._reset_turn_state()

    # ------------------------------------------------------------------
    # Meta deliveries
    # ------------------------------------------------------------------

    def _consume_meta_quota(self, force: bool) -> bool:
        if force:
            return True
        turn = self._turn
        if turn.emitted_meta_events >= self._settings.max_meta_events_per_turn:
            if not turn.meta_quota_exhausted:
                turn.meta_quota_exhausted = True
                stream_log.debug(
                    "[PROJECTOR] Meta event quota exhausted, dropping further notices",
                    {"turn_id": turn.turn_id, "quota": self._settings.max_meta_events_per_turn},
                )
            return False
        turn.emitted_meta_events += 1
        return True

    async def _send_meta(self, payload: ReplyPayload, meta: Optional[DeliveryMeta]) -> None:
        if not self._is_live:
            self._turn.pending_tool_deliveries.append(BufferedToolDelivery(payload=payload, meta=meta))
            return
        # Text already streamed goes out before the notice.
        await self.flush(True)
        await self._deliver(ReplyDispatchKind.TOOL, payload, meta)

    async def _emit_system_status(
        self,
        text: str,
        meta: Optional[DeliveryMeta] = None,
        *,
        force: bool = False,
        dedupe: bool = True,
    ) -> None:
        if not self._should_send_tool_summaries:
            return
        bounded = truncate_text((text or "").strip(), self._settings.max_status_chars)
        if not bounded:
            return
        formatted = prefix_system_message(bounded)
        status_hash = text_fingerprint(formatted)
        turn = self._turn
        if self._settings.repeat_suppression and dedupe and turn.last_status_hash == status_hash:
            return
        if not self._consume_meta_quota(force):
            return
        turn.last_status_hash = status_hash
        await self._send_meta(ReplyPayload(text=formatted), meta)

    async def _emit_tool_summary(self, event: ToolCallEvent, *, force: bool = False) -> None:
        if not self._should_send_tool_summaries:
            return
        summary = truncate_text(render_tool_summary(event), self._settings.max_tool_summary_chars)
        summary_hash = text_fingerprint(summary)
        tool_call_id = (event.tool_call_id or "").strip() or None
        status = normalize_tool_status(event.status)
        is_terminal = is_terminal_tool_status(status)
        is_start = status == "in_progress" or event.tag == SessionUpdateTag.TOOL_CALL.value
        turn = self._turn

        if self._settings.repeat_suppression:
            if tool_call_id:
                state = turn.tool_lifecycle_by_id.get(tool_call_id) or ToolLifecycleState()
                if state.terminal:
                    return
                if is_start and state.started:
                    return
                if state.last_rendered_hash == summary_hash:
                    return
                if is_start:
                    state.started = True
                if is_terminal:
                    state.terminal = True
                state.last_rendered_hash = summary_hash
                turn.tool_lifecycle_by_id[tool_call_id] = state
            elif turn.last_tool_hash == summary_hash:
                return

        if not self._consume_meta_quota(force):
            return
        meta = DeliveryMeta(
            tag=event.tag or None,
            tool_call_id=tool_call_id,
            tool_status=status,
            allow_edit=bool(tool_call_id and event.tag == SessionUpdateTag.TOOL_CALL_UPDATE.value),
        )
        turn.last_tool_hash = summary_hash
        await self._send_meta(ReplyPayload(text=summary), meta)

    async def _emit_truncation_notice(self) -> None:
        turn = self._turn
        if turn.truncation_notice_emitted:
            return
        turn.truncation_notice_emitted = True
        stream_log.info(
            "[PROJECTOR] Turn output truncated",
            {"turn_id": turn.turn_id, "max_turn_chars": self._settings.max_turn_chars},
        )
        await self._emit_system_status(
            TRUNCATION_NOTICE,
            DeliveryMeta(tag=SessionUpdateTag.SESSION_INFO_UPDATE.value),
            force=True,
            dedupe=False,
        )

    async def _flush_buffered_tool_deliveries(self, force: bool) -> None:
        if self._is_live or not force:
            return
        turn = self._turn
        pending, turn.pending_tool_deliveries = turn.pending_tool_deliveries, []
        for entry in pending:
            await self._deliver(ReplyDispatchKind.TOOL, entry.payload, entry.meta)

    # ------------------------------------------------------------------
    # Text path
    # ------------------------------------------------------------------

    async def _deliver_block(self, payload: ReplyPayload) -> None:
        await self._deliver(ReplyDispatchKind.BLOCK, payload, None)

    def _enqueue_chunk(self, chunk: str) -> None:
        self._pipeline.enqueue(ReplyPayload(text=chunk))

    def _drain_chunker(self, force: bool) -> None:
        if not self._is_live and not force:
            return
        self._chunker.drain(force=force, emit=self._enqueue_chunk)

    def _flush_live_buffer(self, *, force: bool = False, idle: bool = False) -> None:
        if not self._is_live:
            return
        turn = self._turn
        if not turn.live_buffer_text:
            return
        if idle and not should_flush_on_idle(turn.live_buffer_text):
            return
        text, turn.live_buffer_text = turn.live_buffer_text, ""
        self._chunker.append(text)
        self._drain_chunker(force)

    def _clear_live_idle_timer(self) -> None:
        if self._idle_handle is None:
            return
        self._idle_handle.cancel()
        self._idle_handle = None

    def _schedule_live_idle_flush(self) -> None:
        if not self._is_live:
            return
        if self._live_idle_flush_ms <= 0 or not self._turn.live_buffer_text:
            return
        self._clear_live_idle_timer()
        self._idle_handle = self._scheduler.call_later(
            self._live_idle_flush_ms / 1000.0, self._on_live_idle
        )

    def _on_live_idle(self) -> None:
        self._idle_handle = None
        self._flush_live_buffer(force=True, idle=True)
        if self._turn.live_buffer_text:
            # Heuristic not met yet; poll again.
            self._schedule_live_idle_flush()

    def _reset_turn_state(self) -> None:
        self._clear_live_idle_timer()
        stream_log.debug(
            "[PROJECTOR] Turn reset",
            {"turn_id": self._turn.turn_id, "emitted_chars": self._turn.emitted_turn_chars},
        )
        self._turn = TurnState()
        # Nothing buffered survives into the next turn.
        self._chunker.reset()
        self._pipeline.reset()


def create_reply_projector(
    cfg: Any,
    deliver: DeliverCallback,
    *,
    should_send_tool_summaries: bool = True,
    provider: Optional[str] = None,
    account_id: Optional[str] = None,
    scheduler: Optional[Scheduler] = None,
) -> ReplyProjector:
    """Build a projector with the default chunker and pipeline."""
    return ReplyProjector(
        cfg,
        deliver,
        should_send_tool_summaries=should_send_tool_summaries,
        provider=provider,
        account_id=account_id,
        scheduler=scheduler,
    )

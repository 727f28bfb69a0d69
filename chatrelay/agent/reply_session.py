"""
Reply Session — Host loop that feeds agent events into a projector.

The projector assumes events arrive one at a time, each awaited before the
next. ``ReplySession`` enforces that with a lock, turns upstream stream
failures into an ``ErrorEvent`` so the turn always terminates cleanly, and
provides ``abort()`` for cancelling the surrounding session.

Usage:
    from chatrelay.agent.reply_session import ReplySession

    session = ReplySession(projector, session_id="discord:123")
    await session.run(runtime.stream_turn(prompt))
    ...
    await session.abort()   # user cancelled
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict

from chatrelay.agent.events import AgentEvent, DoneEvent, ErrorEvent, TERMINAL_EVENT_TYPES
from chatrelay.agent.projector import ReplyProjector
from chatrelay.agent.structured_logging import agent_log, set_log_context

logger = logging.getLogger(__name__)


class ReplySession:
    """Serializes event delivery into one projector."""

    def __init__(self, projector: ReplyProjector, session_id: str = ""):
        self.projector = projector
        self.session_id = session_id
        self._lock = asyncio.Lock()
        self._closed = False
        self._events_processed = 0
        self._turns_completed = 0

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def on_event(self, event: AgentEvent) -> None:
        """Feed one event; concurrent callers are queued in arrival order."""
        async with self._lock:
            if self._closed:
                raise RuntimeError("Reply session is closed, cannot accept events")
            if self.session_id:
                set_log_context(session_id=self.session_id)
            await self.projector.on_event(event)
            self._events_processed += 1
            if isinstance(event, TERMINAL_EVENT_TYPES):
                self._turns_completed += 1

    async def run(self, events: AsyncIterator[AgentEvent]) -> None:
        """
        Consume one turn's event stream.

        If the upstream iterator fails, an ``ErrorEvent`` is fed so the turn
        is flushed and reset, then the failure is re-raised. A stream that
        ends without a terminal event is closed with ``DoneEvent``.
        """
        terminated = False
        iterator = events.__aiter__()
        while True:
            try:
                event = await iterator.__anext__()
            except StopAsyncIteration:
                break
            except Exception as e:
                # Delivery failures raised by on_event below are not caught here.
                if self._closed:
                    raise
                logger.warning(f"[SESSION] {self.session_id or '-'} event stream failed: {e}")
                await self.on_event(ErrorEvent(message=str(e), code=type(e).__name__))
                raise
            await self.on_event(event)
            terminated = isinstance(event, TERMINAL_EVENT_TYPES)
        if not terminated and not self._closed:
            await self.on_event(DoneEvent(stop_reason="end_of_stream"))

    async def abort(self) -> None:
        """Flush whatever is buffered and stop accepting events."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            agent_log.info(
                f"[SESSION] {self.session_id or '-'} aborted",
                {"events_processed": self._events_processed},
            )
            await self.projector.flush(True)

    def stats(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "events_processed": self._events_processed,
            "turns_completed": self._turns_completed,
            "closed": self._closed,
        }

"""
Block Streaming — Chunk streamed text into blocks and deliver them in order.

Three pieces sit between the reply projector and the transport:

* ``resolve_block_streaming_config`` — chunk/coalesce sizing for a provider
  (and optionally one account), capped by the platform's message limit.
* ``BlockChunker`` — buffers appended text and splits it at paragraph,
  newline, sentence or word boundaries into size-bounded chunks.
* ``BlockReplyPipeline`` — coalesces small chunks, then sends blocks one at a
  time, in order, each bounded by a timeout.

Usage:
    from chatrelay.agent.block_streaming import (
        BlockChunker, BlockReplyPipeline, resolve_block_streaming_config,
    )

    streaming = resolve_block_streaming_config(settings, provider="discord")
    chunker = BlockChunker(streaming.chunking)
    pipeline = BlockReplyPipeline(send_block, coalescing=streaming.coalescing)

    chunker.append("Hello world.")
    chunker.drain(force=True, emit=lambda chunk: pipeline.enqueue(ReplyPayload(chunk)))
    await pipeline.flush(force=True)
"""

import asyncio
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, List, Optional

from chatrelay.agent.delivery_modes import ReplyPayload
from chatrelay.agent.scheduler import LoopScheduler, ScheduledCallback, Scheduler

logger = logging.getLogger(__name__)


# Per-platform message length limits
PLATFORM_TEXT_LIMITS = {
    "telegram": 4096,
    "discord": 2000,
    "slack": 4000,
    "whatsapp": 4096,
    "signal": 4000,
    "matrix": 4000,
    "web": 8000,
}
DEFAULT_TEXT_LIMIT = 4000

DEFAULT_CHUNK_MIN_CHARS = 800
DEFAULT_CHUNK_MAX_CHARS = 1200
DEFAULT_COALESCE_IDLE_MS = 1000
DEFAULT_BREAK_PREFERENCE = "paragraph"

_BREAK_ORDER = {
    "paragraph": ("paragraph", "newline", "sentence", "space"),
    "newline": ("newline", "sentence", "space"),
    "sentence": ("sentence", "space"),
}
_JOINERS = {"paragraph": "\n\n", "newline": "\n", "sentence": " "}

_SENTENCE_BREAK = re.compile(r"[.!?][)\"'`]*\s")


@dataclass(frozen=True)
class ChunkingConfig:
    min_chars: int = DEFAULT_CHUNK_MIN_CHARS
    max_chars: int = DEFAULT_CHUNK_MAX_CHARS
    break_preference: str = DEFAULT_BREAK_PREFERENCE


@dataclass(frozen=True)
class CoalescingConfig:
    min_chars: int = DEFAULT_CHUNK_MIN_CHARS
    max_chars: int = DEFAULT_CHUNK_MAX_CHARS
    idle_ms: int = DEFAULT_COALESCE_IDLE_MS
    joiner: str = "\n\n"


@dataclass(frozen=True)
class BlockStreamingConfig:
    chunking: ChunkingConfig
    coalescing: CoalescingConfig

    def with_live_overrides(self) -> "BlockStreamingConfig":
        """Near-zero minimums and an empty joiner so deltas flush promptly and keep exact spacing."""
        return BlockStreamingConfig(
            chunking=replace(self.chunking, min_chars=1),
            coalescing=replace(self.coalescing, min_chars=1, joiner=""),
        )


# ------------------------------------------------------------------
# Config resolution
# ------------------------------------------------------------------

def _channel_layers(cfg: Any, provider: Optional[str], account_id: Optional[str]) -> List[Any]:
    """Global → channel → account, most specific last."""
    layers: List[Any] = [cfg]
    channel = (getattr(cfg, "channels", None) or {}).get(provider) if provider else None
    if channel is not None:
        layers.append(channel)
        account = (channel.accounts or {}).get(account_id) if account_id else None
        if account is not None:
            layers.append(account)
    return layers


def _layered(layers: List[Any], section: str, key: str) -> Any:
    value = None
    for layer in layers:
        block = getattr(layer, section, None)
        candidate = getattr(block, key, None) if block is not None else None
        if candidate is not None:
            value = candidate
    return value


def resolve_text_limit(cfg: Any, provider: Optional[str] = None, account_id: Optional[str] = None) -> int:
    """Maximum characters per outbound message for a provider/account."""
    limit = None
    for layer in _channel_layers(cfg, provider, account_id)[1:]:
        if layer.text_chunk_limit:
            limit = layer.text_chunk_limit
    if limit is None:
        limit = PLATFORM_TEXT_LIMITS.get((provider or "").lower(), DEFAULT_TEXT_LIMIT)
    return max(1, int(limit))


def resolve_block_streaming_config(
    cfg: Any,
    provider: Optional[str] = None,
    account_id: Optional[str] = None,
    *,
    max_chunk_chars: Optional[int] = None,
    coalesce_idle_ms: Optional[int] = None,
) -> BlockStreamingConfig:
    """
    Resolve chunking and coalescing for one provider/account.

    Explicit ``max_chunk_chars`` / ``coalesce_idle_ms`` win over configured
    values. Every size is capped by the provider's text limit and minimums
    never exceed maximums.
    """
    layers = _channel_layers(cfg, provider, account_id)
    text_limit = resolve_text_limit(cfg, provider, account_id)

    max_chars = max_chunk_chars or _layered(layers, "block_streaming_chunk", "max_chars") or DEFAULT_CHUNK_MAX_CHARS
    max_chars = max(1, min(int(max_chars), text_limit))
    min_chars = _layered(layers, "block_streaming_chunk", "min_chars") or DEFAULT_CHUNK_MIN_CHARS
    min_chars = max(1, min(int(min_chars), max_chars))
    preference = _layered(layers, "block_streaming_chunk", "break_preference")
    if preference not in _BREAK_ORDER:
        preference = DEFAULT_BREAK_PREFERENCE

    coalesce_max = _layered(layers, "block_streaming_coalesce", "max_chars") or max_chars
    coalesce_max = max(1, min(int(coalesce_max), text_limit))
    coalesce_min = _layered(layers, "block_streaming_coalesce", "min_chars") or min_chars
    coalesce_min = max(1, min(int(coalesce_min), coalesce_max))
    if coalesce_idle_ms is None:
        coalesce_idle_ms = _layered(layers, "block_streaming_coalesce", "idle_ms")
    if coalesce_idle_ms is None:
        coalesce_idle_ms = DEFAULT_COALESCE_IDLE_MS

    return BlockStreamingConfig(
        chunking=ChunkingConfig(min_chars=min_chars, max_chars=max_chars, break_preference=preference),
        coalescing=CoalescingConfig(
            min_chars=coalesce_min,
            max_chars=coalesce_max,
            idle_ms=max(0, int(coalesce_idle_ms)),
            joiner=_JOINERS[preference],
        ),
    )


# ------------------------------------------------------------------
# Chunker
# ------------------------------------------------------------------

class BlockChunker:
    """
    Lazily splits appended text into chunks of at most ``max_chars``.

    A non-forced drain waits until at least ``min_chars`` are buffered and a
    paragraph, newline or sentence break exists past that point; anything
    over ``max_chars`` is split regardless, at a word break if possible.
    A forced drain empties the buffer. Text is never trimmed, so
    concatenating the chunks reproduces the input.
    """

    def __init__(self, chunking: ChunkingConfig):
        self.chunking = chunking
        self._buffer = ""

    @property
    def has_buffered(self) -> bool:
        return bool(self._buffer)

    @property
    def buffered_text(self) -> str:
        return self._buffer

    def append(self, text: str) -> None:
        if text:
            self._buffer += text

    def reset(self) -> None:
        self._buffer = ""

    def drain(self, *, force: bool, emit: Callable[[str], None]) -> None:
        max_chars = self.chunking.max_chars
        min_chars = self.chunking.min_chars
        while self._buffer:
            length = len(self._buffer)
            if force and length <= max_chars:
                chunk, self._buffer = self._buffer, ""
                emit(chunk)
                return
            if not force and length < min_chars:
                return

            floor = max_chars // 4 if force else min_chars
            # Word breaks only when the buffer has to be split anyway.
            allow_space = force or length > max_chars
            cut = self._find_break(min(length, max_chars), floor, allow_space)
            if cut is None:
                if length <= max_chars:
                    return  # wait for a boundary
                cut = max_chars  # hard split

            chunk, self._buffer = self._buffer[:cut], self._buffer[cut:]
            emit(chunk)

    def _find_break(self, limit: int, floor: int, allow_space: bool) -> Optional[int]:
        """Latest preferred break inside the first ``limit`` chars, not before ``floor``."""
        window = self._buffer[:limit]
        for kind in _BREAK_ORDER[self.chunking.break_preference]:
            if kind == "space" and not allow_space:
                continue
            if kind == "paragraph":
                idx = window.rfind("\n\n")
                cut = idx + 2 if idx != -1 else None
            elif kind == "newline":
                idx = window.rfind("\n")
                cut = idx + 1 if idx != -1 else None
            elif kind == "sentence":
                matches = list(_SENTENCE_BREAK.finditer(window))
                cut = matches[-1].end() if matches else None
            else:
                idx = max(window.rfind(" "), window.rfind("\t"))
                cut = idx + 1 if idx != -1 else None
            if cut is not None and cut >= max(floor, 1):
                return cut
        return None


# ------------------------------------------------------------------
# Reply pipeline
# ------------------------------------------------------------------

class BlockReplyPipeline:
    """
    Ordered, coalescing block sender.

    ``enqueue`` never blocks: blocks are sent by background tasks that run
    strictly one after another. ``flush`` waits for every outstanding send
    and re-raises the first failure. A send that outlives ``timeout_ms``
    aborts the pipeline; later blocks are dropped.
    """

    def __init__(
        self,
        on_block_reply: Callable[[ReplyPayload], Awaitable[Any]],
        *,
        timeout_ms: int = 15_000,
        coalescing: Optional[CoalescingConfig] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self._on_block_reply = on_block_reply
        self._timeout_s = timeout_ms / 1000.0
        self.coalescing = coalescing
        self._scheduler = scheduler or LoopScheduler()
        self._buffer = ""
        self._idle_handle: Optional[ScheduledCallback] = None
        self._pending: List[asyncio.Task] = []
        self._tail: Optional[asyncio.Task] = None
        self._aborted = False
        self.sent_count = 0

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def buffered_text(self) -> str:
        return self._buffer

    def enqueue(self, payload: ReplyPayload) -> None:
        if self._aborted:
            logger.debug(f"[BLOCKS] Pipeline aborted, dropping {len(payload.text)} chars")
            return
        if self.coalescing is None:
            self._schedule_send(payload)
            return
        text = payload.text
        if not text:
            return

        joiner = self.coalescing.joiner
        if self._buffer and len(self._buffer) + len(joiner) + len(text) > self.coalescing.max_chars:
            self._flush_buffer()
        self._buffer = f"{self._buffer}{joiner}{text}" if self._buffer else text

        if len(self._buffer) >= self.coalescing.max_chars:
            self._flush_buffer()
        elif self.coalescing.idle_ms > 0:
            self._arm_idle()

    async def flush(self, *, force: bool = False) -> None:
        if self._buffer and (force or len(self._buffer) >= self.coalescing.min_chars):
            self._flush_buffer()
        pending, self._pending = self._pending, []
        if not pending:
            return
        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def reset(self) -> None:
        """
        Start over for a new turn: drop unsent coalesced text and clear the
        aborted flag. Sends already in flight keep their order but are no
        longer awaited by ``flush``; their failures are only logged.
        """
        self._cancel_idle()
        if self._buffer:
            logger.debug(f"[BLOCKS] Reset dropped {len(self._buffer)} unsent chars")
        self._buffer = ""
        self._aborted = False
        pending, self._pending = self._pending, []
        for task in pending:
            task.add_done_callback(_log_detached_send)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _cancel_idle(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _arm_idle(self) -> None:
        self._cancel_idle()
        self._idle_handle = self._scheduler.call_later(self.coalescing.idle_ms / 1000.0, self._on_idle)

    def _on_idle(self) -> None:
        self._idle_handle = None
        if self._buffer and len(self._buffer) >= self.coalescing.min_chars:
            self._flush_buffer()

    def _flush_buffer(self) -> None:
        self._cancel_idle()
        text, self._buffer = self._buffer, ""
        if text:
            self._schedule_send(ReplyPayload(text=text))

    def _schedule_send(self, payload: ReplyPayload) -> None:
        if not payload.text.strip():
            return
        previous = self._tail
        task = asyncio.get_running_loop().create_task(self._send_after(previous, payload))
        self._tail = task
        self._pending.append(task)

    async def _send_after(self, previous: Optional[asyncio.Task], payload: ReplyPayload) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        if self._aborted:
            return
        try:
            await asyncio.wait_for(self._on_block_reply(payload), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            self._aborted = True
            logger.warning(f"[BLOCKS] Block send exceeded {self._timeout_s:.1f}s, aborting remaining blocks")
            return
        self.sent_count += 1


def _log_detached_send(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning(f"[BLOCKS] Send from a previous turn failed: {error!r}")

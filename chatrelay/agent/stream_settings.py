"""
Stream Settings — Per-conversation projection policy and streaming sizing.

``resolve_projection_settings`` turns the ``acp.stream`` config section into
a frozen ``ProjectionSettings``. Every value is optional and independently
defaulted; numbers are rounded and clamped to documented bounds, anything
unusable falls back to the default. Nothing here raises on bad config.

``resolve_streaming_config`` derives chunking/coalescing for the active
delivery mode and transport.

Usage:
    from chatrelay.agent.stream_settings import is_tag_visible, resolve_projection_settings

    projection = resolve_projection_settings(settings)
    if is_tag_visible(projection, "usage_update"):
        ...
"""

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

from chatrelay.agent.block_streaming import BlockStreamingConfig, resolve_block_streaming_config
from chatrelay.agent.delivery_modes import DeliveryMode, HiddenBoundarySeparator
from chatrelay.agent.events import SessionUpdateTag
from chatrelay.agent.structured_logging import Subsystem, get_subsystem_logger

config_log = get_subsystem_logger(Subsystem.CONFIG)

DEFAULT_STREAM_COALESCE_IDLE_MS = 350
DEFAULT_STREAM_MAX_CHUNK_CHARS = 1800
DEFAULT_REPEAT_SUPPRESSION = True
DEFAULT_DELIVERY_MODE = DeliveryMode.FINAL_ONLY
DEFAULT_HIDDEN_BOUNDARY_SEPARATOR = HiddenBoundarySeparator.PARAGRAPH
DEFAULT_HIDDEN_BOUNDARY_SEPARATOR_LIVE = HiddenBoundarySeparator.SPACE
DEFAULT_MAX_TURN_CHARS = 24_000
DEFAULT_MAX_TOOL_SUMMARY_CHARS = 320
DEFAULT_MAX_STATUS_CHARS = 320
DEFAULT_MAX_META_EVENTS_PER_TURN = 64

# (min, max) per numeric setting
MAX_TURN_CHARS_BOUNDS = (1, 500_000)
MAX_TOOL_SUMMARY_CHARS_BOUNDS = (64, 8_000)
MAX_STATUS_CHARS_BOUNDS = (64, 8_000)
MAX_META_EVENTS_BOUNDS = (1, 2_000)
COALESCE_IDLE_MS_BOUNDS = (0, 5_000)
MAX_CHUNK_CHARS_BOUNDS = (50, 4_000)

# Only model text is visible unless a conversation opts in.
TAG_VISIBILITY_DEFAULTS: Mapping[str, bool] = MappingProxyType({
    SessionUpdateTag.AGENT_MESSAGE_CHUNK.value: True,
    SessionUpdateTag.TOOL_CALL.value: False,
    SessionUpdateTag.TOOL_CALL_UPDATE.value: False,
    SessionUpdateTag.USAGE_UPDATE.value: False,
    SessionUpdateTag.AVAILABLE_COMMANDS_UPDATE.value: False,
    SessionUpdateTag.CURRENT_MODE_UPDATE.value: False,
    SessionUpdateTag.CONFIG_OPTION_UPDATE.value: False,
    SessionUpdateTag.SESSION_INFO_UPDATE.value: False,
    SessionUpdateTag.PLAN.value: False,
    SessionUpdateTag.AGENT_THOUGHT_CHUNK.value: False,
})


@dataclass(frozen=True)
class ProjectionSettings:
    """Resolved once per conversation; read-only afterwards."""
    delivery_mode: DeliveryMode = DEFAULT_DELIVERY_MODE
    hidden_boundary_separator: HiddenBoundarySeparator = DEFAULT_HIDDEN_BOUNDARY_SEPARATOR
    repeat_suppression: bool = DEFAULT_REPEAT_SUPPRESSION
    max_turn_chars: int = DEFAULT_MAX_TURN_CHARS
    max_tool_summary_chars: int = DEFAULT_MAX_TOOL_SUMMARY_CHARS
    max_status_chars: int = DEFAULT_MAX_STATUS_CHARS
    max_meta_events_per_turn: int = DEFAULT_MAX_META_EVENTS_PER_TURN
    tag_visibility: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def is_live(self) -> bool:
        return self.delivery_mode == DeliveryMode.LIVE


def clamp_positive_integer(value: Any, fallback: int, bounds: tuple) -> int:
    """Round half up and clamp into bounds; non-finite or non-numeric values fall back."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    if not math.isfinite(value):
        return fallback
    lower, upper = bounds
    rounded = math.floor(value + 0.5)
    if rounded < lower:
        return lower
    if rounded > upper:
        return upper
    return rounded


def _clamp_boolean(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def _resolve_delivery_mode(value: Any) -> DeliveryMode:
    try:
        return DeliveryMode(value)
    except (ValueError, TypeError):
        if value is not None:
            config_log.debug(f"[STREAM-SETTINGS] Unknown delivery mode {value!r}, using {DEFAULT_DELIVERY_MODE.value}")
        return DEFAULT_DELIVERY_MODE


def _resolve_hidden_boundary_separator(value: Any, fallback: HiddenBoundarySeparator) -> HiddenBoundarySeparator:
    try:
        return HiddenBoundarySeparator(value)
    except (ValueError, TypeError):
        return fallback


def _stream_section(cfg: Any) -> Any:
    acp = getattr(cfg, "acp", None)
    return getattr(acp, "stream", None)


def resolve_projection_settings(cfg: Any) -> ProjectionSettings:
    stream = _stream_section(cfg)

    def raw(name: str) -> Any:
        return getattr(stream, name, None) if stream is not None else None

    delivery_mode = _resolve_delivery_mode(raw("delivery_mode"))
    separator_fallback = (
        DEFAULT_HIDDEN_BOUNDARY_SEPARATOR_LIVE
        if delivery_mode == DeliveryMode.LIVE
        else DEFAULT_HIDDEN_BOUNDARY_SEPARATOR
    )
    overrides = raw("tag_visibility")
    if not isinstance(overrides, Mapping):
        overrides = {}
    tag_visibility = {
        getattr(tag, "value", tag): visible
        for tag, visible in overrides.items()
        if isinstance(visible, bool)
    }

    return ProjectionSettings(
        delivery_mode=delivery_mode,
        hidden_boundary_separator=_resolve_hidden_boundary_separator(
            raw("hidden_boundary_separator"), separator_fallback
        ),
        repeat_suppression=_clamp_boolean(raw("repeat_suppression"), DEFAULT_REPEAT_SUPPRESSION),
        max_turn_chars=clamp_positive_integer(
            raw("max_turn_chars"), DEFAULT_MAX_TURN_CHARS, MAX_TURN_CHARS_BOUNDS
        ),
        max_tool_summary_chars=clamp_positive_integer(
            raw("max_tool_summary_chars"), DEFAULT_MAX_TOOL_SUMMARY_CHARS, MAX_TOOL_SUMMARY_CHARS_BOUNDS
        ),
        max_status_chars=clamp_positive_integer(
            raw("max_status_chars"), DEFAULT_MAX_STATUS_CHARS, MAX_STATUS_CHARS_BOUNDS
        ),
        max_meta_events_per_turn=clamp_positive_integer(
            raw("max_meta_events_per_turn"), DEFAULT_MAX_META_EVENTS_PER_TURN, MAX_META_EVENTS_BOUNDS
        ),
        tag_visibility=MappingProxyType(tag_visibility),
    )


def resolve_streaming_config(
    cfg: Any,
    provider: Optional[str] = None,
    account_id: Optional[str] = None,
    delivery_mode: Optional[Union[DeliveryMode, str]] = None,
) -> BlockStreamingConfig:
    """Chunk/coalesce sizing for the transport, made prompt and spacing-exact in live mode."""
    stream = _stream_section(cfg)
    resolved = resolve_block_streaming_config(
        cfg,
        provider,
        account_id,
        max_chunk_chars=clamp_positive_integer(
            getattr(stream, "max_chunk_chars", None),
            DEFAULT_STREAM_MAX_CHUNK_CHARS,
            MAX_CHUNK_CHARS_BOUNDS,
        ),
        coalesce_idle_ms=clamp_positive_integer(
            getattr(stream, "coalesce_idle_ms", None),
            DEFAULT_STREAM_COALESCE_IDLE_MS,
            COALESCE_IDLE_MS_BOUNDS,
        ),
    )
    if delivery_mode == DeliveryMode.LIVE:
        return resolved.with_live_overrides()
    return resolved


def is_tag_visible(settings: ProjectionSettings, tag: Optional[str]) -> bool:
    if not tag:
        return True
    key = getattr(tag, "value", tag)
    override = settings.tag_visibility.get(key)
    if isinstance(override, bool):
        return override
    return TAG_VISIBILITY_DEFAULTS.get(key, True)

"""
Stream settings tests — projection policy resolution, tag visibility and
chunk/coalesce sizing per delivery mode and transport.
"""

import math

import pytest

from chatrelay.agent.delivery_modes import DeliveryMode, HiddenBoundarySeparator
from chatrelay.agent.stream_settings import (
    clamp_positive_integer,
    is_tag_visible,
    resolve_projection_settings,
    resolve_streaming_config,
)
from chatrelay.config import Settings


def make_settings(**stream) -> Settings:
    return Settings(_env_file=None, acp={"enabled": True, "stream": stream})


# ── Projection settings ──────────────────────────────────

class TestProjectionSettings:
    def test_stable_defaults(self):
        settings = resolve_projection_settings(make_settings())
        assert settings.delivery_mode == DeliveryMode.FINAL_ONLY
        assert settings.hidden_boundary_separator == HiddenBoundarySeparator.PARAGRAPH
        assert settings.repeat_suppression is True
        assert settings.max_turn_chars == 24_000
        assert settings.max_tool_summary_chars == 320
        assert settings.max_status_chars == 320
        assert settings.max_meta_events_per_turn == 64
        assert dict(settings.tag_visibility) == {}

    def test_explicit_overrides(self):
        settings = resolve_projection_settings(make_settings(
            delivery_mode="final_only",
            hidden_boundary_separator="space",
            repeat_suppression=False,
            max_turn_chars=500,
            max_meta_events_per_turn=7,
            tag_visibility={"usage_update": True},
        ))
        assert settings.delivery_mode == DeliveryMode.FINAL_ONLY
        assert settings.hidden_boundary_separator == HiddenBoundarySeparator.SPACE
        assert settings.repeat_suppression is False
        assert settings.max_turn_chars == 500
        assert settings.max_meta_events_per_turn == 7
        assert settings.tag_visibility["usage_update"] is True

    def test_live_mode_defaults_to_space_separator(self):
        settings = resolve_projection_settings(make_settings(delivery_mode="live"))
        assert settings.delivery_mode == DeliveryMode.LIVE
        assert settings.is_live
        assert settings.hidden_boundary_separator == HiddenBoundarySeparator.SPACE

    def test_live_mode_keeps_explicit_separator(self):
        settings = resolve_projection_settings(make_settings(
            delivery_mode="live", hidden_boundary_separator="newline",
        ))
        assert settings.hidden_boundary_separator == HiddenBoundarySeparator.NEWLINE

    def test_unknown_enum_values_fall_back(self):
        settings = resolve_projection_settings(make_settings(
            delivery_mode="streaming", hidden_boundary_separator="tab",
        ))
        assert settings.delivery_mode == DeliveryMode.FINAL_ONLY
        assert settings.hidden_boundary_separator == HiddenBoundarySeparator.PARAGRAPH

    def test_numbers_are_clamped(self):
        settings = resolve_projection_settings(make_settings(
            max_turn_chars=0,
            max_tool_summary_chars=10,
            max_status_chars=1_000_000,
            max_meta_events_per_turn=5_000,
        ))
        assert settings.max_turn_chars == 1
        assert settings.max_tool_summary_chars == 64
        assert settings.max_status_chars == 8_000
        assert settings.max_meta_events_per_turn == 2_000

    def test_numbers_are_rounded(self):
        settings = resolve_projection_settings(make_settings(max_turn_chars=99.5))
        assert settings.max_turn_chars == 100

    def test_non_finite_numbers_fall_back(self):
        settings = resolve_projection_settings(make_settings(
            max_turn_chars=math.nan, max_status_chars=math.inf,
        ))
        assert settings.max_turn_chars == 24_000
        assert settings.max_status_chars == 320

    def test_missing_stream_section(self):
        class Bare:
            pass

        settings = resolve_projection_settings(Bare())
        assert settings.delivery_mode == DeliveryMode.FINAL_ONLY
        assert settings.max_turn_chars == 24_000

    def test_settings_are_frozen(self):
        settings = resolve_projection_settings(make_settings())
        with pytest.raises(Exception):
            settings.max_turn_chars = 5
        with pytest.raises(TypeError):
            settings.tag_visibility["tool_call"] = True


class TestClampPositiveInteger:
    def test_rejects_booleans(self):
        assert clamp_positive_integer(True, 10, (1, 100)) == 10

    def test_rejects_strings(self):
        assert clamp_positive_integer("50", 10, (1, 100)) == 10

    def test_within_bounds(self):
        assert clamp_positive_integer(42, 10, (1, 100)) == 42


# ── Tag visibility ───────────────────────────────────────

class TestTagVisibility:
    def test_defaults_hide_everything_but_text(self):
        settings = resolve_projection_settings(make_settings())
        assert is_tag_visible(settings, "agent_message_chunk") is True
        for tag in ("tool_call", "tool_call_update", "usage_update", "plan",
                    "current_mode_update", "session_info_update", "agent_thought_chunk"):
            assert is_tag_visible(settings, tag) is False, tag

    def test_overrides_win(self):
        settings = resolve_projection_settings(make_settings(
            tag_visibility={"usage_update": True, "tool_call": False, "agent_message_chunk": False},
        ))
        assert is_tag_visible(settings, "usage_update") is True
        assert is_tag_visible(settings, "tool_call") is False
        assert is_tag_visible(settings, "agent_message_chunk") is False

    def test_missing_and_unknown_tags_are_visible(self):
        settings = resolve_projection_settings(make_settings())
        assert is_tag_visible(settings, None) is True
        assert is_tag_visible(settings, "brand_new_update") is True


# ── Streaming parameters ─────────────────────────────────

class TestStreamingConfig:
    def test_stream_controls_drive_chunking(self):
        streaming = resolve_streaming_config(
            make_settings(max_chunk_chars=64, coalesce_idle_ms=0),
            provider="discord",
        )
        assert streaming.chunking.max_chars == 64
        assert streaming.chunking.min_chars == 64
        assert streaming.coalescing.idle_ms == 0
        assert streaming.coalescing.joiner == "\n\n"

    def test_defaults(self):
        streaming = resolve_streaming_config(make_settings(), provider="telegram")
        assert streaming.chunking.max_chars == 1800
        assert streaming.chunking.min_chars == 800
        assert streaming.coalescing.idle_ms == 350

    def test_live_mode_overrides(self):
        streaming = resolve_streaming_config(
            make_settings(delivery_mode="live", coalesce_idle_ms=350, max_chunk_chars=256),
            provider="discord",
            delivery_mode=DeliveryMode.LIVE,
        )
        assert streaming.chunking.min_chars == 1
        assert streaming.chunking.max_chars == 256
        assert streaming.coalescing.min_chars == 1
        assert streaming.coalescing.max_chars == 256
        assert streaming.coalescing.joiner == ""
        assert streaming.coalescing.idle_ms == 350

    def test_live_mode_accepts_plain_string(self):
        streaming = resolve_streaming_config(make_settings(), delivery_mode="live")
        assert streaming.coalescing.joiner == ""

    def test_max_chunk_chars_is_clamped(self):
        streaming = resolve_streaming_config(make_settings(max_chunk_chars=10))
        assert streaming.chunking.max_chars == 50

    def test_provider_limit_caps_chunks(self):
        streaming = resolve_streaming_config(make_settings(max_chunk_chars=4000), provider="discord")
        assert streaming.chunking.max_chars == 2000
        assert streaming.coalescing.max_chars == 2000

    def test_account_limit_overrides_channel_limit(self):
        cfg = Settings(
            _env_file=None,
            channels={
                "discord": {
                    "text_chunk_limit": 1500,
                    "accounts": {"work": {"text_chunk_limit": 900}},
                },
            },
        )
        assert resolve_streaming_config(cfg, provider="discord").chunking.max_chars == 1500
        work = resolve_streaming_config(cfg, provider="discord", account_id="work")
        assert work.chunking.max_chars == 900
        assert work.chunking.min_chars == 800


# ── Loose config input ───────────────────────────────────

class TestLooseConfigInput:
    def test_non_numeric_string_falls_back(self):
        settings = resolve_projection_settings(make_settings(max_turn_chars="lots"))
        assert settings.max_turn_chars == 24_000

    def test_numeric_string_is_parsed(self):
        settings = resolve_projection_settings(make_settings(max_turn_chars=" 250 "))
        assert settings.max_turn_chars == 250

    def test_boolean_budget_falls_back(self):
        settings = resolve_projection_settings(make_settings(max_meta_events_per_turn=True))
        assert settings.max_meta_events_per_turn == 64

    def test_boolean_strings(self):
        assert resolve_projection_settings(make_settings(repeat_suppression="false")).repeat_suppression is False
        assert resolve_projection_settings(make_settings(repeat_suppression="maybe")).repeat_suppression is True

    def test_wrongly_typed_values_fall_back(self):
        settings = resolve_projection_settings(make_settings(
            delivery_mode=5,
            hidden_boundary_separator=["space"],
            tag_visibility="tool_call",
        ))
        assert settings.delivery_mode == DeliveryMode.FINAL_ONLY
        assert settings.hidden_boundary_separator == HiddenBoundarySeparator.PARAGRAPH
        assert dict(settings.tag_visibility) == {}

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Any, Dict, Optional

_NUMERIC_STREAM_FIELDS = (
    "max_turn_chars",
    "max_tool_summary_chars",
    "max_status_chars",
    "max_meta_events_per_turn",
    "coalesce_idle_ms",
    "max_chunk_chars",
)
_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


class AcpStreamConfig(BaseModel):
    # Raw values; stream_settings applies defaults and clamps.
    delivery_mode: Any = None  # live | final_only
    hidden_boundary_separator: Any = None  # none | space | newline | paragraph
    repeat_suppression: Any = None
    max_turn_chars: Any = None
    max_tool_summary_chars: Any = None
    max_status_chars: Any = None
    max_meta_events_per_turn: Any = None
    coalesce_idle_ms: Any = None
    max_chunk_chars: Any = None
    tag_visibility: Any = None  # tag -> visible override

    @field_validator(*_NUMERIC_STREAM_FIELDS, mode="before")
    @classmethod
    def parse_numeric_strings(cls, value: Any) -> Any:
        """Env values arrive as strings; unparseable ones are passed through for the resolver to drop."""
        if not isinstance(value, str):
            return value
        try:
            return float(value.strip())
        except ValueError:
            return value

    @field_validator("repeat_suppression", mode="before")
    @classmethod
    def parse_boolean_strings(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
        return value


class AcpConfig(BaseModel):
    enabled: bool = True
    stream: AcpStreamConfig = AcpStreamConfig()


class BlockStreamingChunkConfig(BaseModel):
    min_chars: Optional[int] = None
    max_chars: Optional[int] = None
    break_preference: Optional[str] = None  # paragraph | newline | sentence


class BlockStreamingCoalesceConfig(BaseModel):
    min_chars: Optional[int] = None
    max_chars: Optional[int] = None
    idle_ms: Optional[int] = None


class ChannelAccountConfig(BaseModel):
    text_chunk_limit: Optional[int] = None
    block_streaming_chunk: Optional[BlockStreamingChunkConfig] = None
    block_streaming_coalesce: Optional[BlockStreamingCoalesceConfig] = None


class ChannelConfig(ChannelAccountConfig):
    accounts: Dict[str, ChannelAccountConfig] = {}  # account id -> overrides


class Settings(BaseSettings):
    # App
    app_name: str = "chatrelay"
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    structured_logs: bool = False  # JSON lines instead of plain text

    # ── Agent runtime stream projection ─────────────────────
    acp: AcpConfig = AcpConfig()

    # ── Block streaming (global defaults) ────────────────────
    block_streaming_chunk: BlockStreamingChunkConfig = BlockStreamingChunkConfig()
    block_streaming_coalesce: BlockStreamingCoalesceConfig = BlockStreamingCoalesceConfig()

    # ── Per-channel overrides ────────────────────────────────
    # {"discord": {"text_chunk_limit": 2000, "accounts": {"work": {...}}}}
    channels: Dict[str, ChannelConfig] = {}

    class Config:
        env_prefix = "RELAY_"
        env_nested_delimiter = "__"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

"""
Reply Formatting — Small pure helpers used by the reply projector.

Covers text bounding, fingerprints for repeat suppression, hidden-boundary
separators, live-buffer flush heuristics and the rendering of tool-call and
system-status lines.
"""

import hashlib
import re
from typing import Optional

from chatrelay.agent.delivery_modes import HiddenBoundarySeparator
from chatrelay.agent.events import ToolCallEvent

# Live buffer thresholds (characters)
LIVE_IDLE_MIN_CHARS = 80
LIVE_SOFT_FLUSH_CHARS = 220
LIVE_HARD_FLUSH_CHARS = 480

TERMINAL_TOOL_STATUSES = frozenset({"completed", "failed", "cancelled", "done", "error"})

SYSTEM_MESSAGE_PREFIX = "⚙️ "
TOOL_SUMMARY_EMOJI = "🔧"

# Sentence end, optionally followed by closing quotes/brackets
_SENTENCE_END_THEN_SPACE = re.compile(r"[.!?][)\"'`]*\s\Z")
_SENTENCE_END = re.compile(r"[.!?][)\"'`]*\Z")

_SEPARATORS = {
    HiddenBoundarySeparator.NONE: "",
    HiddenBoundarySeparator.SPACE: " ",
    HiddenBoundarySeparator.NEWLINE: "\n",
    HiddenBoundarySeparator.PARAGRAPH: "\n\n",
}


def truncate_text(text: str, max_chars: int) -> str:
    """Bound text to max_chars, marking the cut with an ellipsis."""
    if len(text) <= max_chars:
        return text
    if max_chars <= 1:
        return text[:max_chars]
    return text[: max_chars - 1] + "…"


def text_fingerprint(text: str) -> str:
    """Stable fingerprint of the trimmed text, used for repeat suppression."""
    return hashlib.sha256(text.strip().encode("utf-8")).hexdigest()[:32]


def normalize_tool_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    normalized = status.strip().lower()
    return normalized or None


def is_terminal_tool_status(status: Optional[str]) -> bool:
    return status in TERMINAL_TOOL_STATUSES if status else False


def separator_text(mode: HiddenBoundarySeparator) -> str:
    return _SEPARATORS.get(HiddenBoundarySeparator(mode), "")


def should_insert_separator(separator: str, previous_tail: Optional[str], next_text: str) -> bool:
    """
    Decide whether a hidden-boundary separator goes in front of next_text.

    Never doubles whitespace: the next fragment must not start with whitespace
    and the previously emitted text must end with a non-whitespace character.
    """
    if not separator or not next_text:
        return False
    if next_text[0].isspace():
        return False
    if not previous_tail:
        return False
    if previous_tail[-1].isspace():
        return False
    return True


def should_flush_on_boundary(text: str) -> bool:
    """Hard boundary check for the live buffer; bypasses the idle timer."""
    if not text:
        return False
    if len(text) >= LIVE_HARD_FLUSH_CHARS:
        return True
    if text.endswith("\n\n"):
        return True
    if _SENTENCE_END_THEN_SPACE.search(text):
        return True
    if len(text) >= LIVE_SOFT_FLUSH_CHARS and text[-1].isspace():
        return True
    return False


def should_flush_on_idle(text: str) -> bool:
    if not text:
        return False
    if len(text) >= LIVE_IDLE_MIN_CHARS:
        return True
    if _SENTENCE_END.search(text.rstrip()):
        return True
    return "\n" in text


def prefix_system_message(text: str) -> str:
    """Mark a line as a system notice rather than model output."""
    if text.startswith(SYSTEM_MESSAGE_PREFIX.strip()):
        return text
    return f"{SYSTEM_MESSAGE_PREFIX}{text}"


def render_tool_summary(event: ToolCallEvent) -> str:
    """Human-readable one-liner for a tool call lifecycle notice."""
    parts = []
    title = (event.title or "").strip()
    if title:
        parts.append(title)
    status = (event.status or "").strip()
    if status:
        parts.append(f"status={status}")
    fallback = (event.text or "").strip()
    if not parts and fallback:
        parts.append(fallback)
    detail = " · ".join(parts) or "tool call"
    return f"{TOOL_SUMMARY_EMOJI} Tool call: {detail}"

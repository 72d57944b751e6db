"""Sanitization of agent-produced notes before they are persisted.

Only a short single-paragraph summary is ever stored. Anything that looks
like a transcript, tool payload or stack trace is replaced by a fixed
suppression message.
"""

from __future__ import annotations

import json
import re

MAX_SUMMARY_LENGTH = 280
MAX_LINES = 6
MAX_ROLE_MARKERS = 2
LONG_TOOL_TEXT_LENGTH = 200
SUPPRESSED_SUMMARY = "Agent summary suppressed by policy; see stage rationale for details."

_ROLE_MARKER = re.compile(r"\b(user|assistant|system|tool)\s*:", re.IGNORECASE)
_TOOL_MARKERS = ("tool_call", "tool_result", "stdout", "stderr", "traceback (most recent call last)")
_PAYLOAD_KEYS = ("tool", "arguments", "result", "output")
_WHITESPACE = re.compile(r"\s+")


def _looks_like_payload(text: str) -> bool:
    stripped = text.strip()
    if not (stripped.startswith("{") or stripped.startswith("[")):
        return False
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        return False
    items = data if isinstance(data, list) else [data]
    return any(
        isinstance(item, dict) and any(k in item for k in _PAYLOAD_KEYS)
        for item in items
    )


def should_suppress(text: str) -> bool:
    """True if the text must not be stored as a summary."""
    if "```" in text:
        return True
    if len(text.splitlines()) >= MAX_LINES:
        return True
    if len(_ROLE_MARKER.findall(text)) >= MAX_ROLE_MARKERS:
        return True
    lowered = text.lower()
    if len(text) > LONG_TOOL_TEXT_LENGTH and any(m in lowered for m in _TOOL_MARKERS):
        return True
    return _looks_like_payload(text)


def sanitize_agent_note(text: str | None) -> str | None:
    """Return a storable summary for an agent note, or None for empty input.

    Whitespace is collapsed and the result truncated to MAX_SUMMARY_LENGTH
    characters (ending in "..." when cut).
    """
    if text is None or not text.strip():
        return None
    if should_suppress(text):
        return SUPPRESSED_SUMMARY
    collapsed = _WHITESPACE.sub(" ", text).strip()
    if len(collapsed) > MAX_SUMMARY_LENGTH:
        collapsed = collapsed[:MAX_SUMMARY_LENGTH - 3].rstrip() + "..."
    return collapsed

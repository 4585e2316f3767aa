"""Narration extraction and sanitization for model responses."""

import re
from typing import Any

from navreach.llm import LLMResponse, ToolCall, flatten_content

# Checked in order after ``reasoning_content``.
REASONING_FIELDS = ("reasoning", "thought", "thinking")

_ROLE_PREFIX_RE = re.compile(r"^\s*(Narration|Assistant|Reasoning)\s*:\s*", re.IGNORECASE)
_LONE_ACK_RE = re.compile(r"^\s*(Yes|OK|Okay)\.?\s*$", re.IGNORECASE | re.MULTILINE)
_BOXED_RE = re.compile(r"\\boxed\{([\s\S]*?)\}")
_FINAL_ANSWER_RE = re.compile(r"(\*\*|\[)?Final Answer:?(\*\*|\])?:?", re.IGNORECASE)
_SURROUNDING_QUOTES_RE = re.compile(r"^[\"'\u201c\u2018]+|[\"'\u201d\u2019]+$")
_TOOL_TAG_BLOCK_RE = re.compile(
    r"<\s*(tool_call|tool_use|function_call|function|invoke|tool)\b[^>]*>[\s\S]*?<\s*/\s*\1\s*>",
    re.IGNORECASE,
)
_TOOL_TAG_RE = re.compile(
    r"</?\s*(tool_call|tool_use|function_call|function|invoke|tool|parameter)\b[^>]*>",
    re.IGNORECASE,
)
_TOOL_TEXT_MARKER_RE = re.compile(r"\[Tool Call:[^\]]*\]", re.IGNORECASE)


def _field_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("text", "content", "thinking", "summary"):
            if isinstance(value.get(key), str):
                return value[key]
        return ""
    return flatten_content(value)


def raw_narration(response: LLMResponse) -> str:
    """Pick the narration source: first non-empty reasoning field, else content."""
    candidates = [response.reasoning_content]
    candidates.extend(response.provider_fields.get(name) for name in REASONING_FIELDS)
    for candidate in candidates:
        text = _field_text(candidate)
        if text.strip():
            return text
    return response.text


def sanitize_narration(text: str) -> str:
    """Strip role prefixes, answer markup, quotes and tool-call-like tags."""
    cleaned = str(text or "")
    cleaned = _TOOL_TAG_BLOCK_RE.sub("", cleaned)
    cleaned = _TOOL_TAG_RE.sub("", cleaned)
    cleaned = _TOOL_TEXT_MARKER_RE.sub("", cleaned)
    cleaned = _ROLE_PREFIX_RE.sub("", cleaned)
    cleaned = _LONE_ACK_RE.sub("", cleaned)
    cleaned = _BOXED_RE.sub(r"\1", cleaned)
    cleaned = _FINAL_ANSWER_RE.sub("", cleaned)
    cleaned = cleaned.strip()
    cleaned = _SURROUNDING_QUOTES_RE.sub("", cleaned)
    return cleaned.strip()


def extract_narration(response: LLMResponse) -> str | None:
    """Return display-ready narration, or ``None`` when nothing remains."""
    cleaned = sanitize_narration(raw_narration(response))
    return cleaned or None


def narration_key(narration: str, tool_calls: list[ToolCall]) -> str:
    """Key used to emit the same narration for the same calls only once."""
    signature = "|".join(call.signature for call in tool_calls)
    return f"{narration.lower()[:50]}_{signature}"

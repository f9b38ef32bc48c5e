"""Per-provider line parsers for the progress side channel.

Every parser takes one stdout line (plus an optional cwd used to shorten file
paths) and returns a ``StreamEvent`` or ``None``. Anything that is not a JSON
object, and any event type a provider emits for bookkeeping (init, tool
results, final summaries), yields ``None``.
"""
from __future__ import annotations

from typing import Callable, Dict, Optional

from pair_review_ai.domain.contracts import LineParser, StreamEvent
from pair_review_ai.streaming.normalizer import (
    extract_tool_detail,
    load_event,
    strip_path_prefix,
    text_event,
    tool_event,
)

PI_PREVIEW_MIN_CHARS = 80


def parse_claude_line(line: str, cwd: Optional[str] = None) -> Optional[StreamEvent]:
    event = load_event(line)
    if event is None:
        return None
    event_type = event.get("type")

    if event_type == "stream_event":
        delta = (event.get("event") or {}).get("delta") or {}
        if delta.get("type") == "text_delta" and delta.get("text"):
            return text_event(delta["text"])
        return None

    if event_type == "assistant":
        content = (event.get("message") or {}).get("content") or []
        # Text outranks tool_use within a single message.
        first_tool = None
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                return text_event(block["text"])
            if block.get("type") == "tool_use" and first_tool is None:
                first_tool = tool_event(block.get("name"), extract_tool_detail(block.get("input"), cwd))
        return first_tool

    return None


def parse_codex_line(line: str, cwd: Optional[str] = None) -> Optional[StreamEvent]:
    event = load_event(line)
    if event is None or event.get("type") != "item.completed":
        return None
    item = event.get("item") or {}
    item_type = item.get("type")

    if item_type == "agent_message" and item.get("text"):
        return text_event(item["text"])

    if item_type in ("function_call", "tool_call", "tool_use"):
        tool_input = item.get("arguments") or item.get("input") or item.get("args")
        return tool_event(item.get("name") or item.get("tool"), extract_tool_detail(tool_input, cwd))

    return None


def parse_gemini_line(line: str, cwd: Optional[str] = None) -> Optional[StreamEvent]:
    event = load_event(line)
    if event is None:
        return None
    event_type = event.get("type")

    if event_type == "message" and event.get("role") == "assistant":
        content = event.get("content")
        if isinstance(content, str) and content.strip():
            return text_event(content)
        return None

    if event_type == "tool_use":
        return tool_event(event.get("tool_name"), extract_tool_detail(event.get("parameters"), cwd))

    return None


def parse_opencode_line(line: str, cwd: Optional[str] = None) -> Optional[StreamEvent]:
    event = load_event(line)
    if event is None:
        return None
    event_type = event.get("type")

    if event_type == "text":
        text = (event.get("part") or {}).get("text") or event.get("text") or ""
        return text_event(text) if text.strip() else None

    if event_type in ("tool_call", "tool_use"):
        part = event.get("part") or {}
        tool_name = part.get("tool") or part.get("name") or part.get("tool_name")
        tool_input = (part.get("state") or {}).get("input") or part.get("input") or part.get("arguments")
        return tool_event(tool_name, extract_tool_detail(tool_input, cwd))

    return None


_CURSOR_TOOL_KINDS = (
    ("shellToolCall", "shell", "command"),
    ("readToolCall", "read", "path"),
    ("editToolCall", "edit", "path"),
)


def parse_cursor_agent_line(line: str, cwd: Optional[str] = None) -> Optional[StreamEvent]:
    event = load_event(line)
    if event is None:
        return None
    event_type = event.get("type")

    if event_type == "assistant":
        # Partial deltas (timestamp_ms) and the final message both render.
        for block in (event.get("message") or {}).get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text" and (block.get("text") or "").strip():
                return text_event(block["text"])
        return None

    if event_type == "tool_call" and event.get("subtype") == "started":
        tool_call = event.get("tool_call") or {}
        for key, tool_name, arg_name in _CURSOR_TOOL_KINDS:
            if key in tool_call:
                value = ((tool_call.get(key) or {}).get("args") or {}).get(arg_name) or ""
                if value and arg_name == "path" and cwd:
                    value = strip_path_prefix(value, cwd)
                return tool_event(tool_name, value)
        first_key = next(iter(tool_call), None)
        return tool_event(first_key.replace("ToolCall", "") if first_key else None)

    return None


def parse_pi_line(line: str, cwd: Optional[str] = None) -> Optional[StreamEvent]:
    event = load_event(line)
    if event is None:
        return None
    event_type = event.get("type")

    if event_type == "message_update":
        update = event.get("assistantMessageEvent") or {}
        delta = update.get("delta")
        if update.get("type") == "text_delta" and isinstance(delta, str) and delta.strip():
            return text_event(delta)
        return None

    if event_type == "message_end":
        message = event.get("message") or {}
        if message.get("role") != "assistant":
            return None
        content = message.get("content")
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text" and (block.get("text") or "").strip():
                    return text_event(block["text"])
        elif isinstance(content, str) and content.strip():
            return text_event(content)
        return None

    if event_type == "tool_execution_start":
        return tool_event(event.get("toolName"), extract_tool_detail(event.get("args"), cwd))

    if event_type == "tool_execution_end" and event.get("toolName") == "task":
        status = "✗" if event.get("isError") else "✓"
        result = event.get("result")
        summary = ""
        if isinstance(result, str):
            summary = next((part.strip() for part in result.split("\n") if part.strip()), "")
        return tool_event(f"task {status}", summary)

    return None


class PiLineParser:
    """Stateful Pi parser that batches text deltas into readable previews.

    Deltas accumulate until at least ``min_chars`` characters are buffered.
    Any other event discards the pending fragment and is parsed normally, so a
    tool call or completed message always wins over a stale partial preview.
    """

    def __init__(self, min_chars: int = PI_PREVIEW_MIN_CHARS) -> None:
        self._min_chars = min_chars
        self._pending = ""

    def __call__(self, line: str, cwd: Optional[str] = None) -> Optional[StreamEvent]:
        event = load_event(line)
        if event is None:
            return None
        if event.get("type") == "message_update":
            update = event.get("assistantMessageEvent") or {}
            delta = update.get("delta")
            if update.get("type") == "text_delta" and isinstance(delta, str) and delta:
                self._pending += delta
                if len(self._pending) >= self._min_chars:
                    text, self._pending = self._pending, ""
                    return text_event(text)
            return None
        self._pending = ""
        return parse_pi_line(line, cwd=cwd)


LINE_PARSER_FACTORIES: Dict[str, Callable[[], LineParser]] = {
    "claude": lambda: parse_claude_line,
    "codex": lambda: parse_codex_line,
    "gemini": lambda: parse_gemini_line,
    "opencode": lambda: parse_opencode_line,
    "cursor-agent": lambda: parse_cursor_agent_line,
    "pi": PiLineParser,
}


def line_parser_for(provider_id: str) -> Optional[LineParser]:
    """Fresh parser for one invocation; stateful parsers are never shared."""
    factory = LINE_PARSER_FACTORIES.get(provider_id)
    return factory() if factory is not None else None

"""Side-channel progress stream for provider stdout.

StreamParser consumes stdout chunks as they arrive, splits them into lines,
and hands each complete line to a provider-specific line parser. Parsers
return a ``StreamEvent`` (``assistant_text`` or ``tool_use``) or ``None``.

This channel is best-effort: it never sees the accumulation buffer, and
nothing it does (malformed lines, a failing callback) can affect the
authoritative response extraction that runs over the full captured output.

Usage::

    parser = StreamParser(parse_claude_line, on_event, cwd="/tmp/worktree")
    for chunk in chunks:
        parser.feed(chunk)
    parser.flush()
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Optional, Union

from pair_review_ai.domain.contracts import ASSISTANT_TEXT, TOOL_USE, LineParser, StreamEvent
from pair_review_ai.errors import CallbackError

logger = logging.getLogger(__name__)

DEFAULT_SNIPPET_CHARS = 200
_WHITESPACE_RE = re.compile(r"\s+")


def truncate_snippet(text: Optional[str], max_len: int = DEFAULT_SNIPPET_CHARS) -> str:
    if not text:
        return ""
    collapsed = _WHITESPACE_RE.sub(" ", text).strip()
    if len(collapsed) <= max_len:
        return collapsed
    return collapsed[:max_len] + "…"


def strip_path_prefix(file_path: Optional[str], cwd: Optional[str]) -> str:
    if not file_path or not cwd:
        return file_path or ""
    prefix = cwd if cwd.endswith("/") else cwd + "/"
    if file_path.startswith(prefix):
        return file_path[len(prefix):]
    if file_path == cwd:
        return ""
    return file_path


def extract_tool_detail(tool_input: Any, cwd: Optional[str] = None) -> str:
    """Human-readable detail for a tool call.

    Priority: command > description > task > file_path/filePath/path.
    A string input is decoded as JSON when possible and shown verbatim otherwise.
    """
    if not tool_input:
        return ""
    parsed = tool_input
    if isinstance(tool_input, str):
        try:
            parsed = json.loads(tool_input)
        except ValueError:
            return tool_input
    if isinstance(parsed, str):
        return parsed
    if not isinstance(parsed, dict):
        return ""
    for key in ("command", "description", "task"):
        value = parsed.get(key)
        if value:
            return str(value)
    raw_path = parsed.get("file_path") or parsed.get("filePath") or parsed.get("path")
    if raw_path:
        return strip_path_prefix(str(raw_path), cwd) if cwd else str(raw_path)
    return ""


def tool_event(tool_name: Optional[str], detail: str = "") -> StreamEvent:
    name = tool_name or "unknown"
    text = f"{name}: {detail}" if detail else name
    return StreamEvent(kind=TOOL_USE, text=truncate_snippet(text))


def text_event(text: str) -> StreamEvent:
    return StreamEvent(kind=ASSISTANT_TEXT, text=truncate_snippet(text))


def load_event(line: str) -> Optional[dict]:
    """Decode one JSONL line into an object, or None for anything else."""
    if not line or not line.strip():
        return None
    try:
        event = json.loads(line)
    except ValueError:
        return None
    return event if isinstance(event, dict) else None


class StreamParser:
    """Line-buffered parser that tolerates arbitrary chunk boundaries."""

    def __init__(
        self,
        parse_line: LineParser,
        on_event: Callable[[StreamEvent], None],
        cwd: Optional[str] = None,
    ) -> None:
        self._parse_line = parse_line
        self._on_event = on_event
        self._cwd = cwd
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, data: Union[str, bytes]) -> None:
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        self._buffer += data
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        for line in lines:
            if line.strip():
                self._dispatch(line)

    def flush(self) -> None:
        remainder, self._buffer = self._buffer, ""
        if remainder.strip():
            self._dispatch(remainder)

    def _dispatch(self, line: str) -> None:
        try:
            event = self._parse_line(line, cwd=self._cwd)
        except Exception as exc:
            logger.debug("[StreamParser] line parser error: %s", exc)
            return
        if event is None:
            return
        try:
            self._on_event(event)
        except Exception as exc:
            error = CallbackError(f"onEvent callback error: {exc}")
            logger.warning("[StreamParser] %s", error)

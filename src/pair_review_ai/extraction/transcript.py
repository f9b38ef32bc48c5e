from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterator, List

logger = logging.getLogger(__name__)


@dataclass
class Transcript:
    """What a provider's response parser recovered from captured stdout.

    ``text`` is the primary assistant text, ``secondary_text`` a provider's
    fallback field (Cursor's ``result`` string). ``structured`` holds an
    already-decoded payload that outranks any text.
    """

    text: str = ""
    secondary_text: str = ""
    structured: Any = None
    has_structured: bool = False

    @property
    def has_text(self) -> bool:
        return bool(self.text or self.secondary_text)

    def set_structured(self, value: Any) -> None:
        self.structured = value
        self.has_structured = True


def iter_json_events(stdout: str, level: str = "unknown") -> Iterator[dict]:
    """Yield each JSON object line of a JSONL transcript, skipping the rest."""
    for line in (stdout or "").strip().split("\n"):
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except ValueError:
            logger.debug("[Level %s] Skipping malformed JSONL line: %s", level, line[:100])
            continue
        if isinstance(event, dict):
            yield event


def text_blocks(content: Any) -> List[str]:
    """Text of every ``{"type": "text"}`` block in a content array."""
    if not isinstance(content, list):
        return []
    return [
        block["text"]
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str) and block["text"]
    ]


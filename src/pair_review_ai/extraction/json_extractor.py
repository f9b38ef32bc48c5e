"""Layered JSON extraction from free-form model output.

Strategies run in order and the first one producing an object or array wins:

  1. ``whole``      the stripped text is itself JSON
  2. ``fenced``     a ```json fenced block, then any ``` fenced block
  3. ``braces``     the span from the first ``{`` to the last ``}``
  4. ``balanced``   the first brace-balanced ``{...}`` run

``braces`` can select the wrong span when prose around the payload contains
other brace-delimited fragments; ``balanced`` only runs after it fails.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, List, Optional, Tuple

from pair_review_ai.domain.contracts import ExtractionResult
from pair_review_ai.observability.structured_log import log_json
from pair_review_ai.util import preview

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_ERROR = "Empty response"
EXTRACTION_FAILED_ERROR = "Failed to extract JSON from response"
_MAX_BALANCED_SCAN_CHARS = 100_000

_JSON_FENCE_RE = re.compile(r"```json[ \t]*\r?\n(.*?)\r?\n[ \t]*```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE_RE = re.compile(r"```[^\n`]*\r?\n(.*?)\r?\n[ \t]*```", re.DOTALL)


class _NoCandidate(ValueError):
    pass


def _from_whole(text: str) -> Any:
    return json.loads(text.strip())


def _from_fence(text: str) -> Any:
    for pattern in (_JSON_FENCE_RE, _ANY_FENCE_RE):
        for match in pattern.finditer(text):
            content = match.group(1).strip()
            if not content:
                continue
            try:
                return json.loads(content)
            except ValueError:
                continue
    raise _NoCandidate("no fenced JSON block")


def _from_brace_span(text: str) -> Any:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last < first:
        raise _NoCandidate("no brace span")
    return json.loads(text[first:last + 1])


def _from_balanced_braces(text: str) -> Any:
    start = text.find("{")
    if start == -1:
        raise _NoCandidate("no opening brace")
    depth = 0
    end = min(len(text), start + _MAX_BALANCED_SCAN_CHARS)
    for index in range(start, end):
        char = text[index]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return json.loads(text[start:index + 1])
    raise _NoCandidate("unbalanced braces")


STRATEGIES: List[Tuple[str, Callable[[str], Any]]] = [
    ("whole", _from_whole),
    ("fenced", _from_fence),
    ("braces", _from_brace_span),
    ("balanced", _from_balanced_braces),
]


def extract_json(text: Optional[str], level: str = "unknown") -> ExtractionResult:
    if not text or not text.strip():
        return ExtractionResult.failed(EMPTY_RESPONSE_ERROR)

    for name, strategy in STRATEGIES:
        try:
            data = strategy(text)
        except ValueError:
            continue
        if isinstance(data, (dict, list)):
            log_json(logger, "extraction.strategy", level=logging.DEBUG, tag=str(level), strategy=name)
            return ExtractionResult.ok(data, raw_text=text)

    logger.warning("[Level %s] All JSON extraction strategies failed", level)
    logger.debug("[Level %s] Response preview: %s", level, preview(text, 200))
    return ExtractionResult.failed(EXTRACTION_FAILED_ERROR, raw_text=text)

"""Turns a provider's captured stdout into the value ``execute`` resolves with.

Order of attempts:
  1. the provider's own response parser (envelope, transcript text, JSON ladder)
  2. the LLM fallback, at most once, when the provider has an extraction hook

Empty output skips both. Anything still unparsed becomes ``UnparsedOutput``.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Protocol, Union

from pair_review_ai.domain.contracts import ExecutionOptions, ExtractionResult, UnparsedOutput
from pair_review_ai.errors import MalformedOutputError
from pair_review_ai.extraction.json_extractor import EMPTY_RESPONSE_ERROR
from pair_review_ai.extraction.llm_fallback import ExtractionSource, LlmJsonFallback
from pair_review_ai.util import preview

logger = logging.getLogger(__name__)


class ResponseSource(ExtractionSource, Protocol):
    def parse_response(self, stdout: str, level: str) -> ExtractionResult:
        ...

    def collect_text(self, stdout: str, level: str) -> str:
        ...


class ResponseExtractor:
    def __init__(self, source: ResponseSource, fallback: Optional[LlmJsonFallback] = None) -> None:
        self._source = source
        self._fallback = fallback

    async def extract(self, stdout: str, options: ExecutionOptions) -> Union[Any, UnparsedOutput]:
        tag = f"[Level {options.level}]"
        if options.skip_extraction:
            return UnparsedOutput(raw=self._source.collect_text(stdout, options.level) or stdout)
        try:
            return (await self._extract_payload(stdout, options)).data
        except MalformedOutputError as exc:
            logger.warning("%s Failed to extract JSON: %s", tag, exc)
            logger.info("%s Raw response length: %d characters", tag, len(stdout or ""))
            logger.info("%s Raw response preview: %s", tag, preview(stdout, 500))
            return UnparsedOutput(raw=exc.raw, error=str(exc))

    async def _extract_payload(self, stdout: str, options: ExecutionOptions) -> ExtractionResult:
        tag = f"[Level {options.level}]"
        if not stdout or not stdout.strip():
            raise MalformedOutputError(EMPTY_RESPONSE_ERROR, raw=stdout or "", level=options.level)

        parsed = self._source.parse_response(stdout, options.level)
        if parsed.success:
            logger.info("%s Successfully parsed JSON response", tag)
            return parsed

        logger.warning("%s Regex extraction failed: %s", tag, parsed.error)
        if self._fallback is None or not self._fallback.supports(self._source):
            raise MalformedOutputError(parsed.error, raw=stdout, level=options.level)

        logger.info("%s Attempting LLM-based JSON extraction fallback...", tag)
        transcript_text = self._source.collect_text(stdout, options.level)
        fallback = await self._fallback.extract(self._source, transcript_text or stdout, options)
        if fallback.success:
            logger.info("%s LLM extraction fallback succeeded", tag)
            return fallback
        logger.warning("%s LLM extraction fallback also failed: %s", tag, fallback.error)
        raise MalformedOutputError(fallback.error, raw=stdout, level=options.level)

"""Second-chance extraction: ask a fast model to pull the JSON out of free text.

Runs a separate, independent invocation built from the provider's extraction
hook. Every failure is reported as an ``ExtractionResult`` and never raised,
so the caller can degrade to ``UnparsedOutput``.
"""
from __future__ import annotations

import logging
from typing import Optional, Protocol

from pair_review_ai.config import DEFAULT_EXTRACTION_TIMEOUT_SEC, EXTRACTION_TIMEOUT_ENV, env_float
from pair_review_ai.domain.contracts import (
    ExecutionOptions,
    ExecutionRunner,
    ExtractionResult,
    ResolvedInvocation,
)
from pair_review_ai.errors import ProcessFailedError, ProviderError, ProviderTimeoutError
from pair_review_ai.observability.structured_log import log_json

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT_TEMPLATE = (
    "Extract the JSON object from the following text. Return ONLY the valid JSON, nothing else. "
    "Do not include any explanation, markdown formatting, or code blocks - just the raw JSON.\n"
    "\n"
    "=== BEGIN INPUT TEXT ===\n"
    "{raw}\n"
    "=== END INPUT TEXT ==="
)
UNPARSEABLE_REPLY_ERROR = "LLM extraction returned unparseable response"
TIMED_OUT_ERROR = "LLM extraction timed out"


class ExtractionSource(Protocol):
    PROVIDER_ID: str
    LABEL: str

    def get_fast_tier_model(self) -> str:
        ...

    def get_extraction_config(self, model: str) -> Optional[ResolvedInvocation]:
        ...

    def parse_extraction_reply(self, stdout: str, level: str) -> ExtractionResult:
        ...


def build_extraction_prompt(raw: str) -> str:
    # str.format would trip over the braces in raw; substitute directly.
    return EXTRACTION_PROMPT_TEMPLATE.replace("{raw}", raw)


class LlmJsonFallback:
    def __init__(self, executor: ExecutionRunner, timeout_sec: Optional[float] = None) -> None:
        self._executor = executor
        self._timeout_sec = timeout_sec

    @property
    def timeout_sec(self) -> float:
        if self._timeout_sec is not None:
            return self._timeout_sec
        return env_float(EXTRACTION_TIMEOUT_ENV, DEFAULT_EXTRACTION_TIMEOUT_SEC)

    def supports(self, source: ExtractionSource) -> bool:
        return source.get_extraction_config(source.get_fast_tier_model()) is not None

    async def extract(self, source: ExtractionSource, raw: str, options: ExecutionOptions) -> ExtractionResult:
        tag = f"[Level {options.level}]"
        model = source.get_fast_tier_model()
        invocation = source.get_extraction_config(model)
        if invocation is None:
            return ExtractionResult.failed(f"{source.PROVIDER_ID} does not support LLM extraction")

        logger.info("%s Attempting LLM-based JSON extraction with %s...", tag, model)
        log_json(logger, "extraction.fallback", tag=options.level, provider=source.PROVIDER_ID, model=model)
        fallback_options = ExecutionOptions(
            timeout_sec=self.timeout_sec,
            level=options.level,
            analysis_id=options.analysis_id,
            register_process=options.register_process,
        )
        try:
            result = await self._executor.run(
                invocation,
                build_extraction_prompt(raw),
                fallback_options,
                label=f"{source.LABEL} extraction",
            )
        except ProviderTimeoutError:
            logger.warning("%s LLM extraction timed out after %ss", tag, fallback_options.timeout_sec)
            return ExtractionResult.failed(TIMED_OUT_ERROR)
        except ProcessFailedError as exc:
            if exc.returncode is None:
                logger.warning("%s LLM extraction process error: %s", tag, exc)
                return ExtractionResult.failed(str(exc))
            logger.warning("%s LLM extraction process exited with code %s", tag, exc.returncode)
            return ExtractionResult.failed(f"Process exited with code {exc.returncode}")
        except ProviderError as exc:
            logger.warning("%s LLM extraction process error: %s", tag, exc)
            return ExtractionResult.failed(str(exc))

        extracted = source.parse_extraction_reply(result.stdout, options.level)
        if not extracted.success:
            logger.warning("%s %s", tag, UNPARSEABLE_REPLY_ERROR)
            return ExtractionResult.failed(UNPARSEABLE_REPLY_ERROR, raw_text=result.stdout)
        logger.info("%s LLM extraction successful", tag)
        return extracted

"""Shared machinery for CLI-backed review providers.

A provider instance fixes its model and ``ResolvedInvocation`` at construction;
``execute`` only ever runs that invocation. Subclasses describe themselves with
class attributes, build their argv in ``build_args`` and recover assistant text
from captured stdout in ``read_transcript``.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Tuple, Union

from pair_review_ai.config import (
    AVAILABILITY_TIMEOUT_ENV,
    DEFAULT_AVAILABILITY_TIMEOUT_SEC,
    ModelOverride,
    ProviderConfigOverride,
    env_float,
)
from pair_review_ai.domain.contracts import (
    SUPPRESS_MODEL_FLAG,
    CliModel,
    ExecutionOptions,
    ExecutionRunner,
    ExtractionResult,
    ModelConfig,
    ModelDefinition,
    ProviderDefinition,
    ResolvedInvocation,
    UnparsedOutput,
    as_args,
)
from pair_review_ai.domain.models import fast_tier_model, find_model, resolve_default_model
from pair_review_ai.errors import ProviderError
from pair_review_ai.execution.process_executor import ProcessExecutor
from pair_review_ai.extraction.json_extractor import EMPTY_RESPONSE_ERROR, extract_json
from pair_review_ai.extraction.llm_fallback import LlmJsonFallback
from pair_review_ai.extraction.response_extractor import ResponseExtractor
from pair_review_ai.extraction.transcript import Transcript
from pair_review_ai.observability.structured_log import log_json
from pair_review_ai.streaming.line_parsers import line_parser_for
from pair_review_ai.util import redact_env

logger = logging.getLogger(__name__)

READ_ONLY_SHELL_COMMANDS = ("cat", "ls", "head", "tail", "grep", "find", "wc", "pwd", "rg")
READ_ONLY_GIT_COMMANDS = ("diff", "log", "show", "status", "branch", "rev-parse")


class CliProvider:
    PROVIDER_ID = ""
    NAME = ""
    LABEL = "CLI"
    MODELS: Tuple[ModelDefinition, ...] = ()
    DEFAULT_COMMAND = ""
    COMMAND_ENV = ""
    INSTALL_INSTRUCTIONS = ""
    MODEL_FLAG = "--model"
    CHECK_CANCEL_ON_CLEAN_EXIT = False
    # Claude never re-reads raw stdout: its stream is only JSONL events.
    STDOUT_FALLBACK = True
    NOT_JSON_ERROR = "Text content is not valid JSON"
    NO_TEXT_ERROR = "No text content found in response"

    def __init__(
        self,
        model: Optional[str] = None,
        config: Optional[ProviderConfigOverride] = None,
        executor: Optional[ExecutionRunner] = None,
        yolo: bool = False,
        fallback: Optional[LlmJsonFallback] = None,
    ) -> None:
        self.config = config or ProviderConfigOverride()
        self.yolo = bool(yolo or self.config.yolo)
        self.models: List[ModelDefinition] = self.catalogue()
        self.model = model or resolve_default_model(self.models)
        if not self.model:
            raise ValueError(f"{self.NAME} requires a model id; configure one under providers.{self.PROVIDER_ID}.models")
        self.command, self.use_shell = self.resolve_command()
        self.model_config = self.resolve_model_config(self.model)
        self.invocation = ResolvedInvocation(
            command=self.command,
            args=self.build_args(self.model_config),
            env=self.build_env(self.model_config),
            use_shell=self.use_shell,
        )
        self._executor: ExecutionRunner = executor or ProcessExecutor()
        self._fallback = fallback or LlmJsonFallback(self._executor)

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------

    @classmethod
    def definition(cls) -> ProviderDefinition:
        return ProviderDefinition(
            id=cls.PROVIDER_ID,
            name=cls.NAME,
            models=tuple(cls.MODELS),
            default_model=resolve_default_model(cls.MODELS) or "",
            install_instructions=cls.INSTALL_INSTRUCTIONS,
        )

    def catalogue(self) -> List[ModelDefinition]:
        """Built-in models followed by config-only models."""
        models = list(self.MODELS)
        for override in self.config.models:
            if find_model(models, override.id) is None:
                models.append(override.to_definition())
        return models

    @property
    def install_instructions(self) -> str:
        return self.config.install_instructions or self.INSTALL_INSTRUCTIONS

    def get_fast_tier_model(self) -> str:
        fast = fast_tier_model(self.models)
        if fast is None:
            logger.debug("No fast-tier model found for %s, using analysis model: %s", self.PROVIDER_ID, self.model)
            return self.model
        return fast

    # ------------------------------------------------------------------
    # Invocation resolution
    # ------------------------------------------------------------------

    def resolve_command(self) -> Tuple[str, bool]:
        """Command precedence: env override > config override > default."""
        command = (os.environ.get(self.COMMAND_ENV) or "").strip() if self.COMMAND_ENV else ""
        if not command:
            command = (self.config.command or "").strip() or self.DEFAULT_COMMAND
        return command, any(char.isspace() for char in command)

    def _find_override(self, model_id: str, builtin: Optional[ModelDefinition]) -> Optional[ModelOverride]:
        override = self.config.find_model(model_id)
        if override is None and builtin is not None:
            override = self.config.find_model(builtin.id)
        return override

    def resolve_model_config(self, model_id: str) -> ModelConfig:
        builtin = find_model(self.MODELS, model_id)
        override = self._find_override(model_id, builtin)

        cli_model: CliModel = override.resolved_cli_model() if override is not None else None
        if cli_model is None and builtin is not None:
            cli_model = builtin.cli_model
        if cli_model is None:
            cli_model = builtin.id if builtin is not None else model_id

        env: Dict[str, str] = {}
        env.update(builtin.env if builtin is not None else {})
        env.update(self.config.env)
        env.update(override.env if override is not None else {})

        return ModelConfig(
            model_id=model_id,
            builtin=builtin,
            cli_model=cli_model,
            cli_model_args=() if cli_model is SUPPRESS_MODEL_FLAG else self.model_flag_args(cli_model),
            extra_args=(
                as_args(builtin.extra_args if builtin is not None else ())
                + self.config_extra_args(model_id)
            ),
            env=env,
        )

    def config_extra_args(self, model_id: str) -> Tuple[str, ...]:
        """Provider-level then per-model extra args from config."""
        override = self._find_override(model_id, find_model(self.MODELS, model_id))
        return as_args(self.config.extra_args) + as_args(override.extra_args if override is not None else ())

    def model_flag_args(self, cli_model: Union[str, Any]) -> Tuple[str, ...]:
        return (self.MODEL_FLAG, str(cli_model))

    def build_args(self, model_config: ModelConfig) -> Tuple[str, ...]:
        raise NotImplementedError

    def build_env(self, model_config: ModelConfig) -> Dict[str, str]:
        return dict(model_config.env)

    def build_extraction_args(self, model_config: ModelConfig) -> Optional[Tuple[str, ...]]:
        return None

    def get_extraction_config(self, model: str) -> Optional[ResolvedInvocation]:
        model_config = self.resolve_model_config(model)
        args = self.build_extraction_args(model_config)
        if args is None:
            return None
        return ResolvedInvocation(
            command=self.command,
            args=args,
            env=self.build_extraction_env(model_config),
            use_shell=self.use_shell,
        )

    def build_extraction_env(self, model_config: ModelConfig) -> Dict[str, str]:
        return dict(model_config.env)

    def describe(self) -> Dict[str, Any]:
        payload = self.invocation.to_dict()
        payload["env"] = redact_env(self.invocation.env)
        payload.update(provider=self.PROVIDER_ID, model=self.model)
        return payload

    # ------------------------------------------------------------------
    # Response parsing
    # ------------------------------------------------------------------

    def read_transcript(self, stdout: str, level: str) -> Transcript:
        return Transcript(text=stdout)

    def collect_text(self, stdout: str, level: str) -> str:
        if not stdout or not stdout.strip():
            return ""
        transcript = self.read_transcript(stdout, level)
        return transcript.text or transcript.secondary_text

    def parse_response(self, stdout: str, level: str = "unknown") -> ExtractionResult:
        tag = f"[Level {level}]"
        if not stdout or not stdout.strip():
            return ExtractionResult.failed(EMPTY_RESPONSE_ERROR)

        transcript = self.read_transcript(stdout, level)
        if transcript.has_structured:
            logger.info("%s Using structured output from response envelope", tag)
            return ExtractionResult.ok(transcript.structured, raw_text=stdout)

        for candidate in (transcript.text, transcript.secondary_text):
            if not candidate:
                continue
            logger.debug("%s Extracted %d chars of assistant text", tag, len(candidate))
            extracted = extract_json(candidate, level)
            if extracted.success:
                return extracted

        if transcript.has_text:
            logger.warning("%s %s", tag, self.NOT_JSON_ERROR)
            return ExtractionResult.failed(self.NOT_JSON_ERROR, raw_text=transcript.text or transcript.secondary_text)
        if not self.STDOUT_FALLBACK:
            return ExtractionResult.failed(self.NO_TEXT_ERROR, raw_text=stdout)
        return extract_json(stdout, level)

    def parse_extraction_reply(self, stdout: str, level: str) -> ExtractionResult:
        return extract_json(stdout, level)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, prompt: str, options: Optional[ExecutionOptions] = None) -> Union[Any, UnparsedOutput]:
        options = options or ExecutionOptions()
        log_json(
            logger,
            "provider.execute.start",
            provider=self.PROVIDER_ID,
            model=self.model,
            tag=options.level,
            analysis_id=options.analysis_id,
        )
        try:
            result = await self._executor.run(
                self.invocation,
                prompt,
                options,
                line_parser=line_parser_for(self.PROVIDER_ID),
                label=self.LABEL,
                install_instructions=self.install_instructions,
                check_cancel_on_clean_exit=self.CHECK_CANCEL_ON_CLEAN_EXIT,
            )
        except ProviderError as exc:
            log_json(
                logger,
                "provider.execute.error",
                provider=self.PROVIDER_ID,
                tag=options.level,
                code=exc.code,
            )
            raise

        payload = await ResponseExtractor(self, self._fallback).extract(result.stdout, options)
        log_json(
            logger,
            "provider.execute.finish",
            provider=self.PROVIDER_ID,
            tag=options.level,
            parsed=not isinstance(payload, UnparsedOutput),
        )
        return payload

    def accepts_version_output(self, stdout: str) -> bool:
        return True

    async def test_availability(self, timeout_sec: Optional[float] = None) -> bool:
        timeout = timeout_sec or env_float(AVAILABILITY_TIMEOUT_ENV, DEFAULT_AVAILABILITY_TIMEOUT_SEC)
        probe = ResolvedInvocation(command=self.command, args=("--version",), use_shell=self.use_shell)
        logger.debug("%s availability check: %s --version", self.LABEL, self.command)
        try:
            result = await self._executor.probe(probe, timeout)
        except (OSError, ProviderError) as exc:
            logger.warning("%s not available: %s", self.LABEL, exc)
            return False
        if result.returncode == 0 and self.accepts_version_output(result.stdout):
            logger.info("%s available: %s", self.LABEL, result.stdout.strip())
            return True
        logger.warning("%s not available or returned unexpected output", self.LABEL)
        return False

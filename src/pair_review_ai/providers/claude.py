from __future__ import annotations

import logging
import os
from typing import Optional, Tuple

from pair_review_ai.domain.contracts import ModelConfig, ModelDefinition
from pair_review_ai.extraction.transcript import Transcript, iter_json_events, text_blocks
from pair_review_ai.providers.base import READ_ONLY_GIT_COMMANDS, READ_ONLY_SHELL_COMMANDS, CliProvider

logger = logging.getLogger(__name__)

MAX_BUDGET_ENV = "PAIR_REVIEW_MAX_BUDGET_USD"

CLAUDE_MODELS = (
    ModelDefinition(id="haiku", name="Haiku", tier="fast", description="Quick pass over small changes"),
    ModelDefinition(id="sonnet", name="Sonnet", tier="balanced", description="Everyday review depth"),
    ModelDefinition(
        id="opus-4.5",
        name="Opus 4.5",
        tier="balanced",
        cli_model="claude-opus-4-5-20251101",
    ),
    ModelDefinition(
        id="opus-4.6-low",
        name="Opus 4.6 Low",
        tier="balanced",
        cli_model="opus",
        env={"CLAUDE_CODE_EFFORT_LEVEL": "low"},
    ),
    ModelDefinition(
        id="opus-4.6-medium",
        name="Opus 4.6 Medium",
        tier="balanced",
        cli_model="opus",
        env={"CLAUDE_CODE_EFFORT_LEVEL": "medium"},
    ),
    ModelDefinition(
        id="opus",
        name="Opus 4.6 High",
        tier="thorough",
        env={"CLAUDE_CODE_EFFORT_LEVEL": "high"},
        aliases=("opus-4.6-high",),
        default=True,
        description="Deepest analysis for complex changes",
    ),
    ModelDefinition(id="opus-4.6-1m", name="Opus 4.6 1M", tier="balanced", cli_model="opus[1m]"),
)

CLAUDE_ALLOWED_TOOLS = ",".join(
    ["Read"]
    + [f"Bash(git {command}*)" for command in READ_ONLY_GIT_COMMANDS]
    + ["Bash(*git-diff-lines*)"]
    + [f"Bash({command} *)" for command in READ_ONLY_SHELL_COMMANDS]
)


def max_budget_args() -> Tuple[str, ...]:
    raw = os.environ.get(MAX_BUDGET_ENV) or ""
    if not raw:
        return ()
    try:
        budget = float(raw)
    except ValueError:
        budget = 0.0
    if budget <= 0:
        logger.warning('Ignoring %s="%s": expected a positive number', MAX_BUDGET_ENV, raw)
        return ()
    return ("--max-budget-usd", raw.strip())


class ClaudeProvider(CliProvider):
    PROVIDER_ID = "claude"
    NAME = "Claude"
    LABEL = "Claude CLI"
    MODELS = CLAUDE_MODELS
    DEFAULT_COMMAND = "claude"
    COMMAND_ENV = "PAIR_REVIEW_CLAUDE_CMD"
    INSTALL_INSTRUCTIONS = "Install Claude CLI: npm install -g @anthropic-ai/claude-code"
    STDOUT_FALLBACK = False
    NO_TEXT_ERROR = "No text content found in Claude response"
    NOT_JSON_ERROR = "Claude response text is not valid JSON"

    def build_args(self, model_config: ModelConfig) -> Tuple[str, ...]:
        permissions = (
            ("--dangerously-skip-permissions",) if self.yolo else ("--allowedTools", CLAUDE_ALLOWED_TOOLS)
        )
        return (
            "-p",
            "--verbose",
            *model_config.cli_model_args,
            "--output-format",
            "stream-json",
            *permissions,
            *max_budget_args(),
            *model_config.extra_args,
        )

    def build_extraction_args(self, model_config: ModelConfig) -> Optional[Tuple[str, ...]]:
        return ("-p", *model_config.cli_model_args, "--output-format", "text")

    def read_transcript(self, stdout: str, level: str) -> Transcript:
        """First ``result`` event wins; assistant text after the last tool call otherwise."""
        transcript = Transcript()
        assistant_text = ""
        result_seen = False
        for event in iter_json_events(stdout, level):
            event_type = event.get("type")
            if event_type == "assistant":
                for block in (event.get("message") or {}).get("content") or []:
                    if not isinstance(block, dict):
                        continue
                    if block.get("type") == "tool_use":
                        assistant_text = ""
                    elif block.get("type") == "text" and block.get("text"):
                        assistant_text += block["text"]
            elif event_type == "result" and not result_seen:
                result_seen = True
                result = event.get("result")
                if isinstance(result, str):
                    transcript.text = result
                elif isinstance(result, dict):
                    if isinstance(result.get("subresult"), dict):
                        transcript.set_structured(result["subresult"])
                        return transcript
                    transcript.text = "".join(text_blocks(result.get("content")))
        if not transcript.text:
            transcript.text = assistant_text
        return transcript

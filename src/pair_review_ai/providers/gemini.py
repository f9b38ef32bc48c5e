from __future__ import annotations

from typing import Optional, Tuple

from pair_review_ai.domain.contracts import ModelConfig, ModelDefinition
from pair_review_ai.extraction.transcript import Transcript, iter_json_events
from pair_review_ai.providers.base import READ_ONLY_GIT_COMMANDS, READ_ONLY_SHELL_COMMANDS, CliProvider

GEMINI_MODELS = (
    ModelDefinition(id="gemini-3-flash", name="Gemini 3 Flash", tier="fast"),
    ModelDefinition(id="gemini-2.5-pro", name="Gemini 2.5 Pro", tier="balanced", default=True),
    ModelDefinition(id="gemini-3-pro", name="Gemini 3 Pro", tier="thorough"),
    ModelDefinition(id="gemini-3.1-pro", name="Gemini 3.1 Pro", tier="thorough"),
)

GEMINI_ALLOWED_TOOLS = ",".join(
    ["list_directory", "read_file", "glob", "search_file_content"]
    + [f"run_shell_command(git {command})" for command in READ_ONLY_GIT_COMMANDS]
    + ["run_shell_command(git-diff-lines)"]
    + [f"run_shell_command({command})" for command in READ_ONLY_SHELL_COMMANDS]
)


class GeminiProvider(CliProvider):
    PROVIDER_ID = "gemini"
    NAME = "Gemini"
    LABEL = "Gemini CLI"
    MODELS = GEMINI_MODELS
    DEFAULT_COMMAND = "gemini"
    COMMAND_ENV = "PAIR_REVIEW_GEMINI_CMD"
    INSTALL_INSTRUCTIONS = (
        "Install Gemini CLI: npm install -g @google/gemini-cli\n"
        "Or visit: https://github.com/google-gemini/gemini-cli"
    )
    MODEL_FLAG = "-m"
    NOT_JSON_ERROR = "Assistant text is not valid JSON"

    def build_args(self, model_config: ModelConfig) -> Tuple[str, ...]:
        permissions = ("--yolo",) if self.yolo else ("--allowed-tools", GEMINI_ALLOWED_TOOLS)
        return (*model_config.cli_model_args, "-o", "stream-json", *permissions, *model_config.extra_args)

    def build_extraction_args(self, model_config: ModelConfig) -> Optional[Tuple[str, ...]]:
        return (*model_config.cli_model_args, "-o", "text")

    def read_transcript(self, stdout: str, level: str) -> Transcript:
        # Assistant messages stream as deltas; tool calls do not split the answer.
        parts = []
        for event in iter_json_events(stdout, level):
            content = event.get("content")
            if event.get("type") == "message" and event.get("role") == "assistant" and isinstance(content, str):
                parts.append(content)
        return Transcript(text="".join(parts))

from __future__ import annotations

from typing import Optional, Tuple

from pair_review_ai.domain.contracts import ModelConfig, ModelDefinition
from pair_review_ai.extraction.transcript import Transcript, iter_json_events
from pair_review_ai.providers.base import CliProvider

CODEX_MODELS = (
    ModelDefinition(id="gpt-5.1-codex-mini", name="GPT-5.1 Codex Mini", tier="fast"),
    ModelDefinition(id="gpt-5.2-codex", name="GPT-5.2 Codex", tier="balanced", default=True),
    ModelDefinition(id="gpt-5.3-codex", name="GPT-5.3 Codex", tier="thorough"),
)


class CodexProvider(CliProvider):
    PROVIDER_ID = "codex"
    NAME = "Codex"
    LABEL = "Codex CLI"
    MODELS = CODEX_MODELS
    DEFAULT_COMMAND = "codex"
    COMMAND_ENV = "PAIR_REVIEW_CODEX_CMD"
    INSTALL_INSTRUCTIONS = "Install Codex CLI: npm install -g @openai/codex\nOr visit: https://github.com/openai/codex"
    MODEL_FLAG = "-m"
    NOT_JSON_ERROR = "Agent message is not valid JSON"

    def build_args(self, model_config: ModelConfig) -> Tuple[str, ...]:
        if self.yolo:
            sandbox: Tuple[str, ...] = ("--dangerously-bypass-approvals-and-sandbox",)
        else:
            sandbox = ("--sandbox", "workspace-write", "--full-auto")
        return (
            "exec",
            *model_config.cli_model_args,
            "--json",
            *sandbox,
            *model_config.extra_args,
            "-",
        )

    def build_extraction_args(self, model_config: ModelConfig) -> Optional[Tuple[str, ...]]:
        return ("exec", *model_config.cli_model_args, "--json", "--sandbox", "read-only", "-")

    def read_transcript(self, stdout: str, level: str) -> Transcript:
        messages = []
        for event in iter_json_events(stdout, level):
            item = event.get("item") or {}
            if event.get("type") == "item.completed" and item.get("type") == "agent_message" and item.get("text"):
                messages.append(item["text"])
        return Transcript(text="".join(messages))

    def parse_extraction_reply(self, stdout: str, level: str):
        return self.parse_response(stdout, level)

    def accepts_version_output(self, stdout: str) -> bool:
        return "codex" in stdout.lower()

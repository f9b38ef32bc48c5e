from __future__ import annotations

from typing import Optional, Tuple

from pair_review_ai.domain.contracts import ModelConfig, ModelDefinition
from pair_review_ai.extraction.json_extractor import EXTRACTION_FAILED_ERROR
from pair_review_ai.providers.base import CliProvider

COPILOT_MODELS = (
    ModelDefinition(id="gpt-5.1-codex-mini", name="GPT-5.1 Codex Mini", tier="fast"),
    ModelDefinition(id="gemini-3-pro-preview", name="Gemini 3 Pro Preview", tier="balanced", default=True),
    ModelDefinition(id="gpt-5.1-codex-max", name="GPT-5.1 Codex Max", tier="thorough"),
    ModelDefinition(id="claude-opus-4.5", name="Claude Opus 4.5", tier="premium"),
)

COPILOT_ALLOWED_TOOLS = (
    "shell(git diff)",
    "shell(git log)",
    "shell(git show)",
    "shell(git status)",
    "shell(git branch)",
    "shell(git rev-parse)",
    "shell(git-diff-lines)",
    "shell(*/git-diff-lines)",
    "shell(ls)",
    "shell(cat)",
    "shell(pwd)",
    "shell(head)",
    "shell(tail)",
    "shell(wc)",
    "shell(find)",
    "shell(grep)",
    "shell(rg)",
)

COPILOT_DENIED_TOOLS = (
    "shell(rm)",
    "shell(mv)",
    "shell(chmod)",
    "shell(chown)",
    "shell(sudo)",
    "shell(git commit)",
    "shell(git push)",
    "shell(git checkout)",
    "shell(git reset)",
    "shell(git rebase)",
    "shell(git merge)",
    "write",
)


def _repeat_flag(flag: str, values: Tuple[str, ...]) -> Tuple[str, ...]:
    args = []
    for value in values:
        args.extend((flag, value))
    return tuple(args)


class CopilotProvider(CliProvider):
    """GitHub Copilot CLI. Output is plain text, read from stdin in silent mode."""

    PROVIDER_ID = "copilot"
    NAME = "Copilot"
    LABEL = "Copilot CLI"
    MODELS = COPILOT_MODELS
    DEFAULT_COMMAND = "copilot"
    COMMAND_ENV = "PAIR_REVIEW_COPILOT_CMD"
    INSTALL_INSTRUCTIONS = (
        "Install GitHub Copilot CLI: npm install -g @github/copilot\n"
        "Or visit: https://docs.github.com/en/copilot/how-tos/set-up/install-copilot-cli"
    )
    NOT_JSON_ERROR = EXTRACTION_FAILED_ERROR

    def build_args(self, model_config: ModelConfig) -> Tuple[str, ...]:
        if self.yolo:
            permissions: Tuple[str, ...] = ("--allow-all-tools",)
        else:
            permissions = (
                _repeat_flag("--allow-tool", COPILOT_ALLOWED_TOOLS)
                + _repeat_flag("--deny-tool", COPILOT_DENIED_TOOLS)
                + ("--allow-all-tools",)
            )
        return (
            *model_config.cli_model_args,
            *permissions,
            "--allow-all-paths",
            "-s",
            *model_config.extra_args,
        )

    def build_extraction_args(self, model_config: ModelConfig) -> Optional[Tuple[str, ...]]:
        return (*model_config.cli_model_args, "-s", *self.config_extra_args(model_config.model_id))

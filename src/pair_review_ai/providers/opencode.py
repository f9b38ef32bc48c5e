from __future__ import annotations

from typing import List, Optional, Tuple

from pair_review_ai.domain.contracts import ModelConfig
from pair_review_ai.extraction.transcript import Transcript, iter_json_events, text_blocks
from pair_review_ai.providers.base import CliProvider


class OpenCodeProvider(CliProvider):
    """OpenCode has no built-in catalogue; every model comes from config."""

    PROVIDER_ID = "opencode"
    NAME = "OpenCode"
    LABEL = "OpenCode CLI"
    DEFAULT_COMMAND = "opencode"
    COMMAND_ENV = "PAIR_REVIEW_OPENCODE_CMD"
    INSTALL_INSTRUCTIONS = "Install OpenCode: curl -fsSL https://opencode.ai/install | bash\nOr visit: https://opencode.ai"

    def build_args(self, model_config: ModelConfig) -> Tuple[str, ...]:
        return ("run", *model_config.cli_model_args, "--format", "json", *model_config.extra_args)

    def build_extraction_args(self, model_config: ModelConfig) -> Optional[Tuple[str, ...]]:
        return self.build_args(model_config)

    def read_transcript(self, stdout: str, level: str) -> Transcript:
        parts: List[str] = []
        for event in iter_json_events(stdout, level):
            parts.extend(text_blocks(event.get("parts")))
            if event.get("type") == "text":
                part = event.get("part") or {}
                if isinstance(part, dict) and part.get("text"):
                    parts.append(part["text"])
                if isinstance(event.get("text"), str) and event["text"]:
                    parts.append(event["text"])
            parts.extend(text_blocks(event.get("content")))
        return Transcript(text="".join(parts))

    def parse_extraction_reply(self, stdout: str, level: str):
        return self.parse_response(stdout, level)

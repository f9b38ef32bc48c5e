from __future__ import annotations

from typing import Optional, Tuple

from pair_review_ai.domain.contracts import ModelConfig, ModelDefinition
from pair_review_ai.extraction.transcript import Transcript, iter_json_events, text_blocks
from pair_review_ai.providers.base import CliProvider

CURSOR_AGENT_MODELS = (
    ModelDefinition(id="auto", name="Auto", tier="free", description="Cursor picks the model automatically"),
    ModelDefinition(id="gpt-5.2-codex-fast", name="GPT-5.2 Codex Fast", tier="fast"),
    ModelDefinition(
        id="sonnet-4.5-thinking",
        name="Claude 4.5 Sonnet (Thinking)",
        tier="balanced",
        default=True,
    ),
    ModelDefinition(id="gemini-3-pro", name="Gemini 3 Pro", tier="balanced"),
    ModelDefinition(id="gpt-5.2-codex-high", name="GPT-5.2 Codex High", tier="thorough"),
    ModelDefinition(id="opus-4.5-thinking", name="Claude 4.5 Opus (Thinking)", tier="thorough"),
)


class CursorAgentProvider(CliProvider):
    PROVIDER_ID = "cursor-agent"
    NAME = "Cursor Agent"
    LABEL = "Cursor Agent CLI"
    MODELS = CURSOR_AGENT_MODELS
    DEFAULT_COMMAND = "agent"
    COMMAND_ENV = "PAIR_REVIEW_CURSOR_AGENT_CMD"
    INSTALL_INSTRUCTIONS = (
        "Install Cursor Agent CLI: https://cursor.com/docs/cli/using\n"
        'Run "agent login" to authenticate after installation.'
    )
    NOT_JSON_ERROR = "No valid JSON found in assistant or result text"

    def build_args(self, model_config: ModelConfig) -> Tuple[str, ...]:
        sandbox = ("--sandbox", "disabled", "-f", "--approve-mcps") if self.yolo else ("--sandbox", "enabled")
        return (
            "-p",
            "--output-format",
            "stream-json",
            "--stream-partial-output",
            *model_config.cli_model_args,
            *sandbox,
            *model_config.extra_args,
        )

    def build_extraction_args(self, model_config: ModelConfig) -> Optional[Tuple[str, ...]]:
        return ("-p", "--output-format", "text", *model_config.cli_model_args)

    def read_transcript(self, stdout: str, level: str) -> Transcript:
        """Complete assistant messages, with the ``result`` string as a fallback.

        With ``--stream-partial-output`` each turn arrives as deltas carrying
        ``timestamp_ms`` followed by one complete message without it; only the
        complete messages are kept.
        """
        transcript = Transcript()
        for event in iter_json_events(stdout, level):
            event_type = event.get("type")
            if event_type == "assistant" and not isinstance(event.get("timestamp_ms"), (int, float)):
                transcript.text += "".join(text_blocks((event.get("message") or {}).get("content")))
            elif event_type == "result" and isinstance(event.get("result"), str) and event["result"]:
                transcript.secondary_text = event["result"]
        return transcript

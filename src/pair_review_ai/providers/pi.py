"""Pi coding agent.

Pi loads only the tools named in ``--tools`` (edit and write stay unloaded) and
gets a ``task`` subagent tool through an extension directory. The extension
re-invokes Pi for subtasks using ``PI_CMD`` and stops nesting at
``PI_TASK_MAX_DEPTH``. ``bash`` cannot be narrowed to read-only commands, so
analyses rely on worktree isolation.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from pair_review_ai.config import get_pi_resources_dir
from pair_review_ai.domain.contracts import SUPPRESS_MODEL_FLAG, ModelConfig, ModelDefinition
from pair_review_ai.extraction.transcript import Transcript, iter_json_events
from pair_review_ai.providers.base import CliProvider

PI_SESSION_ENV = "PAIR_REVIEW_PI_SESSION"
PI_READ_ONLY_TOOLS = "read,bash,grep,find,ls"
PI_TASK_MAX_DEPTH = "1"

PI_MODELS = (
    ModelDefinition(
        id="default",
        name="Default",
        tier="balanced",
        cli_model=SUPPRESS_MODEL_FLAG,
        default=True,
        description="Whatever model Pi is configured to use",
    ),
    ModelDefinition(
        id="multi-model",
        name="Multi-Model",
        tier="thorough",
        cli_model=SUPPRESS_MODEL_FLAG,
        description="Delegates review areas to different models through subtasks",
    ),
)

# Skills loaded for a built-in model, by model id.
PI_MODEL_SKILLS = {"multi-model": "review-model-guidance"}


def task_extension_dir() -> Path:
    return get_pi_resources_dir() / "extensions" / "task"


def skill_path(skill: str) -> Path:
    return get_pi_resources_dir() / "skills" / skill / "SKILL.md"


def _session_args() -> Tuple[str, ...]:
    return () if os.environ.get(PI_SESSION_ENV) else ("--no-session",)


def _assistant_text(content: Any, seen: Set[str]) -> str:
    """Text of an assistant message, skipping blocks already collected."""
    if isinstance(content, str):
        candidates: List[str] = [content]
    elif isinstance(content, list):
        candidates = [
            block["text"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        ]
    else:
        return ""
    text = ""
    for candidate in candidates:
        if candidate and candidate not in seen:
            seen.add(candidate)
            text += candidate
    return text


class PiProvider(CliProvider):
    PROVIDER_ID = "pi"
    NAME = "Pi"
    LABEL = "Pi CLI"
    MODELS = PI_MODELS
    DEFAULT_COMMAND = "pi"
    COMMAND_ENV = "PAIR_REVIEW_PI_CMD"
    INSTALL_INSTRUCTIONS = "npm install -g @mariozechner/pi-coding-agent"
    # The task extension can swallow SIGTERM and exit 0 after a cancel.
    CHECK_CANCEL_ON_CLEAN_EXIT = True

    def model_flag_args(self, cli_model: Union[str, Any]) -> Tuple[str, ...]:
        value = str(cli_model)
        if "/" in value:
            provider, model = value.split("/", 1)
            return ("--provider", provider, "--model", model)
        return ("--model", value)

    def build_args(self, model_config: ModelConfig) -> Tuple[str, ...]:
        tools = () if self.yolo else ("--tools", PI_READ_ONLY_TOOLS)
        skills: Tuple[str, ...] = ()
        if model_config.builtin is not None and model_config.builtin.id in PI_MODEL_SKILLS:
            skills = ("--skill", str(skill_path(PI_MODEL_SKILLS[model_config.builtin.id])))
        return (
            "-p",
            "--mode",
            "json",
            *model_config.cli_model_args,
            *tools,
            *_session_args(),
            "--no-extensions",
            "--no-skills",
            "--no-prompt-templates",
            "-e",
            str(task_extension_dir()),
            *skills,
            *model_config.extra_args,
        )

    def build_env(self, model_config: ModelConfig) -> Dict[str, str]:
        env = dict(model_config.env)
        env["PI_CMD"] = self.command
        env["PI_TASK_MAX_DEPTH"] = PI_TASK_MAX_DEPTH
        return env

    def build_extraction_args(self, model_config: ModelConfig) -> Optional[Tuple[str, ...]]:
        # No tools, skills or built-in extras: extraction only reformats text.
        return (
            "-p",
            "--mode",
            "json",
            *model_config.cli_model_args,
            "--no-tools",
            *_session_args(),
            *self.config_extra_args(model_config.model_id),
        )

    def build_extraction_env(self, model_config: ModelConfig) -> Dict[str, str]:
        return dict(self.invocation.env)

    def read_transcript(self, stdout: str, level: str) -> Transcript:
        seen: Set[str] = set()
        text = ""
        for event in iter_json_events(stdout, level):
            event_type = event.get("type")
            if event_type in ("message_end", "turn_end"):
                message = event.get("message") or {}
                if message.get("role") == "assistant":
                    text += _assistant_text(message.get("content"), seen)
            elif event_type == "agent_end" and isinstance(event.get("messages"), list):
                for message in event["messages"]:
                    if isinstance(message, dict) and message.get("role") == "assistant":
                        text += _assistant_text(message.get("content"), seen)
        return Transcript(text=text)

    def parse_extraction_reply(self, stdout: str, level: str):
        return self.parse_response(stdout, level)

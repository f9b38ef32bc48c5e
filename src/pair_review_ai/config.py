from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from pair_review_ai.domain.contracts import SUPPRESS_MODEL_FLAG, ModelDefinition, as_args
from pair_review_ai.domain.models import prettify_model_id, validate_tier
from pair_review_ai.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "PAIR_REVIEW_CONFIG"
YOLO_ENV = "PAIR_REVIEW_YOLO"
BIN_DIR_ENV = "PAIR_REVIEW_BIN_DIR"
PI_RESOURCES_ENV = "PAIR_REVIEW_PI_RESOURCES"
EXEC_TIMEOUT_ENV = "PAIR_REVIEW_EXEC_TIMEOUT_SEC"
EXTRACTION_TIMEOUT_ENV = "PAIR_REVIEW_EXTRACTION_TIMEOUT_SEC"
AVAILABILITY_TIMEOUT_ENV = "PAIR_REVIEW_AVAILABILITY_TIMEOUT_SEC"

DEFAULT_CONFIG_DIR = Path.home() / ".pair-review"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.json"
DEFAULT_EXTRACTION_TIMEOUT_SEC = 60.0
DEFAULT_AVAILABILITY_TIMEOUT_SEC = 10.0


class ModelOverride(BaseModel):
    """A model entry under ``providers.<id>.models`` in config.json.

    ``cli_model`` is tri-state: key absent falls through to the built-in
    catalogue, ``null`` omits the model flag, any string (including "") is
    passed to the CLI verbatim.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    cli_model: Optional[str] = None
    tier: Optional[str] = None
    name: Optional[str] = None
    default: bool = False
    description: str = ""
    aliases: List[str] = Field(default_factory=list)
    extra_args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)

    @property
    def has_cli_model(self) -> bool:
        return "cli_model" in self.model_fields_set

    def resolved_cli_model(self):
        if not self.has_cli_model:
            return None
        return SUPPRESS_MODEL_FLAG if self.cli_model is None else self.cli_model

    def to_definition(self) -> ModelDefinition:
        """Build a catalogue entry, inferring the display name and checking the tier."""
        tier = validate_tier(self.id, self.tier)
        return ModelDefinition(
            id=self.id,
            tier=tier,
            name=self.name or prettify_model_id(self.id),
            cli_model=self.resolved_cli_model(),
            extra_args=as_args(self.extra_args),
            env=dict(self.env),
            aliases=tuple(self.aliases),
            default=self.default,
            description=self.description,
        )


class ProviderConfigOverride(BaseModel):
    model_config = ConfigDict(extra="ignore")

    command: Optional[str] = None
    install_instructions: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("install_instructions", "installInstructions"),
    )
    extra_args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    models: List[ModelOverride] = Field(default_factory=list)
    yolo: bool = False

    def find_model(self, model_id: str) -> Optional[ModelOverride]:
        for model in self.models:
            if model.id == model_id:
                return model
        return None


class ReviewConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    yolo: bool = False
    providers: Dict[str, ProviderConfigOverride] = Field(default_factory=dict)


def load_review_config(path: Optional[Path] = None) -> ReviewConfig:
    config_path = path or get_config_path()
    if not config_path.exists():
        return ReviewConfig()
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to read config {config_path}: {exc}") from exc
    try:
        return ReviewConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {config_path}: {exc}") from exc


def get_config_path() -> Path:
    raw = (os.environ.get(CONFIG_PATH_ENV) or "").strip()
    return Path(raw).expanduser() if raw else DEFAULT_CONFIG_PATH


def is_yolo_enabled(config: Optional[ReviewConfig]) -> bool:
    if config is not None and config.yolo:
        return True
    return os.environ.get(YOLO_ENV) == "true"


def get_bin_dir() -> Path:
    raw = (os.environ.get(BIN_DIR_ENV) or "").strip()
    return Path(raw).expanduser() if raw else DEFAULT_CONFIG_DIR / "bin"


def get_pi_resources_dir() -> Path:
    raw = (os.environ.get(PI_RESOURCES_ENV) or "").strip()
    return Path(raw).expanduser() if raw else DEFAULT_CONFIG_DIR / "pi"


def env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return value if value > 0 else float(default)


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip()
    except OSError as exc:
        logger.warning("Failed to read %s: %s", path, exc)
    return data


def apply_env_defaults(env_file: Dict[str, str], target_env: Optional[Dict[str, str]] = None) -> int:
    """Populate missing process env vars from a .env-style mapping.

    Existing environment values are never overwritten.
    Returns the number of keys applied.
    """
    target = target_env if target_env is not None else os.environ  # type: ignore[assignment]
    applied = 0
    for raw_key, raw_value in (env_file or {}).items():
        key = str(raw_key or "").strip()
        if not key:
            continue
        if key in target and str(target.get(key) or "").strip():
            continue
        target[key] = str(raw_value or "")
        applied += 1
    return applied

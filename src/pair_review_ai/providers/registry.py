"""Provider registry: id -> provider class, plus the config applied to them.

The registry is built explicitly and passed around; there is no module-level
instance. Every provider it creates shares the registry's executor, so all of
their processes land in the same ``CancellationRegistry``.

Usage::

    registry = build_default_registry()
    registry.apply_config_overrides(load_review_config())
    provider = registry.create_provider("claude", "opus")
    payload = await provider.execute(prompt, ExecutionOptions(cwd=worktree))
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type

from pair_review_ai.config import ProviderConfigOverride, ReviewConfig, is_yolo_enabled
from pair_review_ai.domain.contracts import ExecutionRunner, ModelDefinition
from pair_review_ai.domain.models import find_model, resolve_default_model
from pair_review_ai.errors import UnknownProviderError
from pair_review_ai.execution.cancellation import CancellationRegistry
from pair_review_ai.execution.process_executor import ProcessExecutor
from pair_review_ai.observability.structured_log import log_json
from pair_review_ai.providers.base import CliProvider
from pair_review_ai.providers.claude import ClaudeProvider
from pair_review_ai.providers.codex import CodexProvider
from pair_review_ai.providers.copilot import CopilotProvider
from pair_review_ai.providers.cursor_agent import CursorAgentProvider
from pair_review_ai.providers.gemini import GeminiProvider
from pair_review_ai.providers.opencode import OpenCodeProvider
from pair_review_ai.providers.pi import PiProvider

logger = logging.getLogger(__name__)

BUILTIN_PROVIDERS: List[Type[CliProvider]] = [
    ClaudeProvider,
    GeminiProvider,
    CodexProvider,
    CopilotProvider,
    CursorAgentProvider,
    OpenCodeProvider,
    PiProvider,
]


class ProviderRegistry:
    def __init__(
        self,
        cancellation: Optional[CancellationRegistry] = None,
        executor: Optional[ExecutionRunner] = None,
    ) -> None:
        self.cancellation = cancellation or CancellationRegistry()
        self.executor: ExecutionRunner = executor or ProcessExecutor(cancellation=self.cancellation)
        self._providers: Dict[str, Type[CliProvider]] = {}
        self._overrides: Dict[str, ProviderConfigOverride] = {}
        self._yolo = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_provider(self, provider_id: str, provider_class: Type[CliProvider]) -> None:
        self._providers[provider_id] = provider_class
        log_json(logger, "provider_registry.register", name=provider_id)

    def get_provider_class(self, provider_id: str) -> Optional[Type[CliProvider]]:
        return self._providers.get(provider_id)

    def provider_ids(self) -> List[str]:
        return list(self._providers)

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def apply_config_overrides(self, config: ReviewConfig) -> None:
        self._overrides = dict(config.providers)
        self._yolo = is_yolo_enabled(config)
        logger.info(
            "Applied config overrides for providers: %s (yolo=%s)",
            ", ".join(sorted(self._overrides)) or "none",
            self._yolo,
        )

    def get_provider_config(self, provider_id: str) -> Optional[ProviderConfigOverride]:
        return self._overrides.get(provider_id)

    @property
    def yolo(self) -> bool:
        return self._yolo

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def create_provider(self, provider_id: str, model: Optional[str] = None) -> CliProvider:
        provider_class = self._providers.get(provider_id)
        if provider_class is None:
            raise UnknownProviderError(
                f"Unknown AI provider: {provider_id}. Available providers: {', '.join(self._providers)}"
            )
        return provider_class(
            model=model,
            config=self.get_provider_config(provider_id),
            executor=self.executor,
            yolo=self._yolo,
        )

    def _models_for(self, provider_class: Type[CliProvider]) -> List[ModelDefinition]:
        models = list(provider_class.MODELS)
        override = self._overrides.get(provider_class.PROVIDER_ID)
        if override is None:
            return models
        for model in override.models:
            if find_model(models, model.id) is None:
                models.append(model.to_definition())
        return models

    def get_tier_for_model(self, provider_id: str, model_id: str) -> Optional[str]:
        provider_class = self._providers.get(provider_id)
        override = self._overrides.get(provider_id)
        if override is not None:
            configured = override.find_model(model_id)
            if configured is not None and configured.tier:
                return configured.tier
        if provider_class is not None:
            builtin = find_model(provider_class.MODELS, model_id)
            if builtin is not None:
                return builtin.tier
        return None

    def get_all_providers_info(self) -> List[Dict[str, Any]]:
        info = []
        for provider_id, provider_class in self._providers.items():
            models = self._models_for(provider_class)
            override = self._overrides.get(provider_id)
            info.append(
                {
                    "id": provider_id,
                    "name": provider_class.NAME,
                    "models": [
                        {
                            "id": model.id,
                            "name": model.name,
                            "tier": model.tier,
                            "default": model.default,
                            "description": model.description,
                            "aliases": list(model.aliases),
                        }
                        for model in models
                    ],
                    "default_model": resolve_default_model(models),
                    "install_instructions": (
                        (override.install_instructions if override is not None else None)
                        or provider_class.INSTALL_INSTRUCTIONS
                    ),
                }
            )
        return info

    async def test_provider_availability(self, provider_id: str, timeout_sec: Optional[float] = None) -> Dict[str, Any]:
        provider_class = self._providers.get(provider_id)
        if provider_class is None:
            return {"available": False, "error": f"Unknown provider: {provider_id}", "install_instructions": None}
        try:
            provider = self.create_provider(provider_id)
        except ValueError as exc:
            return {
                "available": False,
                "error": str(exc),
                "install_instructions": provider_class.INSTALL_INSTRUCTIONS,
            }
        available = await provider.test_availability(timeout_sec)
        return {
            "available": available,
            "error": None if available else f"{provider_class.NAME} CLI not available",
            "install_instructions": None if available else provider.install_instructions,
        }


def build_default_registry(
    cancellation: Optional[CancellationRegistry] = None,
    executor: Optional[ExecutionRunner] = None,
) -> ProviderRegistry:
    registry = ProviderRegistry(cancellation=cancellation, executor=executor)
    for provider_class in BUILTIN_PROVIDERS:
        registry.register_provider(provider_class.PROVIDER_ID, provider_class)
    return registry

from __future__ import annotations

import re
from typing import Iterable, Optional, Sequence

from pair_review_ai.domain.contracts import ModelDefinition

TIERS = ("fast", "balanced", "thorough")
TIER_ALIASES = {
    "free": "fast",
    "premium": "thorough",
}
VALID_TIERS = frozenset(TIERS) | frozenset(TIER_ALIASES)


def resolve_tier(tier: Optional[str]) -> Optional[str]:
    if not tier:
        return None
    value = tier.strip().lower()
    return TIER_ALIASES.get(value, value if value in TIERS else None)


def prettify_model_id(model_id: str) -> str:
    words = re.sub(r"[/\-]", " ", model_id or "").split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


def validate_tier(model_id: str, tier: Optional[str]) -> str:
    if not tier:
        raise ValueError(f"Model '{model_id}' is missing required 'tier' field")
    if tier not in VALID_TIERS:
        raise ValueError(
            f"Model '{model_id}' has invalid tier '{tier}'. "
            f"Valid tiers: {', '.join(sorted(VALID_TIERS))}"
        )
    return tier


def find_model(models: Iterable[ModelDefinition], model_id: str) -> Optional[ModelDefinition]:
    """Exact id match first, then alias match."""
    candidates = list(models)
    for model in candidates:
        if model.id == model_id:
            return model
    for model in candidates:
        if model_id in model.aliases:
            return model
    return None


def resolve_default_model(models: Sequence[ModelDefinition]) -> Optional[str]:
    if not models:
        return None
    for model in models:
        if model.default:
            return model.id
    for model in models:
        if resolve_tier(model.tier) == "balanced":
            return model.id
    return models[0].id


def fast_tier_model(models: Iterable[ModelDefinition]) -> Optional[str]:
    for model in models:
        if model.tier == "fast":
            return model.id
    return None

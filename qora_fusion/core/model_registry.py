"""
Model Registry
==============

Static roster of hosted model backends reachable through the inference
endpoint. Built once at startup from configuration and read-only afterwards,
so lookups need no synchronization.

Default roster:
    primary   meta-llama/llama-3.3-8b-instruct:free   fast, no cooldown
    quality   openai/gpt-oss-20b:free                 reasoning, 25s cooldown
    creative  microsoft/wizardlm-2-8x22b:free         writing, alternatives
    vision    qwen/qwen2.5-vl-32b-instruct:free       images, 5 min cooldown
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional

from qora_fusion.core.errors import ConfigurationError
from qora_fusion.core.fusion_types import ModelDescriptor, ModelRole

logger = logging.getLogger(__name__)


DEFAULT_MODELS: List[ModelDescriptor] = [
    ModelDescriptor(
        id="meta-llama/llama-3.3-8b-instruct:free",
        display_name="Llama 3.3 8B",
        role=ModelRole.PRIMARY,
        specialties=frozenset({"speed", "conversation", "general"}),
        declared_reliability=1.0,
        declared_avg_latency_ms=1200.0,
        cooldown_ms=0.0,
        max_tokens=2000,
        temperature=0.7,
    ),
    ModelDescriptor(
        id="openai/gpt-oss-20b:free",
        display_name="GPT OSS 20B",
        role=ModelRole.QUALITY,
        specialties=frozenset({"reasoning", "analysis", "coding"}),
        declared_reliability=0.78,
        declared_avg_latency_ms=3000.0,
        cooldown_ms=25_000.0,
        max_tokens=1500,
        temperature=0.3,
    ),
    ModelDescriptor(
        id="microsoft/wizardlm-2-8x22b:free",
        display_name="WizardLM 2 8x22B",
        role=ModelRole.CREATIVE,
        specialties=frozenset({"creativity", "alternatives", "writing"}),
        declared_reliability=0.85,
        declared_avg_latency_ms=6000.0,
        cooldown_ms=10_000.0,
        max_tokens=1500,
        temperature=0.9,
    ),
    ModelDescriptor(
        id="qwen/qwen2.5-vl-32b-instruct:free",
        display_name="Qwen 2.5 VL 32B",
        role=ModelRole.VISION,
        specialties=frozenset({"vision", "images"}),
        declared_reliability=0.15,
        declared_avg_latency_ms=4500.0,
        cooldown_ms=300_000.0,
        max_tokens=1000,
        temperature=0.5,
    ),
]


def descriptor_from_dict(data: Dict[str, Any]) -> ModelDescriptor:
    """Build a ModelDescriptor from a configuration mapping."""
    try:
        model_id = str(data["id"])
        role = ModelRole(str(data["role"]).lower())
    except KeyError as e:
        raise ConfigurationError(f"model entry missing field {e}") from e
    except ValueError as e:
        raise ConfigurationError(f"model {data.get('id')!r}: {e}") from e

    reliability = float(data.get("reliability", data.get("declared_reliability", 0.9)))
    if not 0.0 <= reliability <= 1.0:
        raise ConfigurationError(f"model {model_id!r}: reliability {reliability} not in [0, 1]")

    budget = data.get("budget_ms")
    return ModelDescriptor(
        id=model_id,
        display_name=str(data.get("display_name", model_id)),
        role=role,
        specialties=frozenset(data.get("specialties", ())),
        declared_reliability=reliability,
        declared_avg_latency_ms=float(data.get("avg_latency_ms", data.get("declared_avg_latency_ms", 4000.0))),
        cooldown_ms=float(data.get("cooldown_ms", 0.0)),
        budget_ms=float(budget) if budget is not None else None,
        max_tokens=int(data.get("max_tokens", 1500)),
        temperature=float(data.get("temperature", 0.7)),
    )


class ModelRegistry:
    """
    Read-only lookup over the configured models.

    Exactly one PRIMARY model is required: it is the guaranteed-available
    fallback every degraded path ends on.
    """

    def __init__(self, models: Optional[Iterable[ModelDescriptor]] = None) -> None:
        roster = list(models) if models is not None else list(DEFAULT_MODELS)
        self._models: Dict[str, ModelDescriptor] = {}
        for model in roster:
            if model.id in self._models:
                raise ConfigurationError(f"duplicate model id {model.id!r}")
            self._models[model.id] = model

        primaries = [m for m in roster if m.role is ModelRole.PRIMARY]
        if len(primaries) != 1:
            raise ConfigurationError(f"exactly one primary model required, got {len(primaries)}")
        self._primary = primaries[0]

        logger.debug(f"Model registry: {', '.join(self._models)}")

    def __len__(self) -> int:
        return len(self._models)

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._models.values())

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def get(self, model_id: str) -> ModelDescriptor:
        try:
            return self._models[model_id]
        except KeyError:
            raise KeyError(f"unknown model {model_id!r}") from None

    @property
    def primary(self) -> ModelDescriptor:
        return self._primary

    def by_role(self, role: ModelRole) -> List[ModelDescriptor]:
        """Models with ``role``, in configuration order."""
        return [m for m in self._models.values() if m.role is role]

    def first_of(self, role: ModelRole) -> Optional[ModelDescriptor]:
        models = self.by_role(role)
        return models[0] if models else None

    def to_list(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self._models.values()]


__all__ = [
    "DEFAULT_MODELS",
    "ModelRegistry",
    "descriptor_from_dict",
]

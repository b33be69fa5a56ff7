"""
Fusion Router - Strategy and Model Selection
=============================================

Combines the complexity profile, model registry and availability tracker
into a RoutingDecision.

Strategy selection is a pluggable policy object:
    DefaultStrategyPolicy      vision / quality / fast routing
    EnsembleStrategyPolicy     refines fusion into parallel, sequential or
                               consensus from the profile shape
    ContextualStrategyPolicy   folds recent conversation turns into the
                               profile before delegating

MODEL SCORE:
    0.4 * (1 / ema_latency_seconds) + 0.4 * ema_success_rate
        + 0.2 * role_relevance(profile)

Ties go to the lower declared latency, then to the model id, so routing is
deterministic for a fixed profile and tracker state.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Protocol, Sequence

from qora_fusion.core.availability_tracker import AvailabilityTracker
from qora_fusion.core.complexity_classifier import ComplexityClassifier
from qora_fusion.core.fusion_types import (
    ComplexityCategory,
    ComplexityProfile,
    ModelDescriptor,
    ModelRole,
    RoutingDecision,
    RoutingHints,
    RoutingStrategy,
)
from qora_fusion.core.model_registry import ModelRegistry
from qora_fusion.core.prompts import vision_unavailable_message

logger = logging.getLogger(__name__)


# =============================================================================
# SCORING
# =============================================================================

QUALITY_CATEGORIES = frozenset({
    ComplexityCategory.TECHNICAL,
    ComplexityCategory.ANALYTICAL,
    ComplexityCategory.RESEARCH,
    ComplexityCategory.PROGRAMMING,
})


def role_relevance(role: ModelRole, profile: ComplexityProfile) -> float:
    """How well a role fits the matched categories, in [0.5, 1]."""
    categories = profile.matched_categories
    if role is ModelRole.QUALITY:
        return 1.0 if categories & QUALITY_CATEGORIES else 0.5
    if role is ModelRole.CREATIVE:
        return 1.0 if ComplexityCategory.CREATIVE in categories else 0.5
    if role is ModelRole.PRIMARY:
        return 1.0 if ComplexityCategory.EDUCATIONAL in categories else 0.7
    return 0.5


def model_score(model: ModelDescriptor, profile: ComplexityProfile, availability: AvailabilityTracker) -> float:
    state = availability.get_state(model.id)
    latency_s = max(state.ema_latency_ms, 1.0) / 1000.0
    return 0.4 * (1.0 / latency_s) + 0.4 * state.ema_success_rate + 0.2 * role_relevance(model.role, profile)


def rank_models(
    models: Sequence[ModelDescriptor],
    profile: ComplexityProfile,
    availability: AvailabilityTracker,
) -> List[ModelDescriptor]:
    """Best score first; ties prefer lower declared latency."""
    return sorted(
        models,
        key=lambda m: (-model_score(m, profile, availability), m.declared_avg_latency_ms, m.id),
    )


# =============================================================================
# POLICIES
# =============================================================================


class StrategyPolicy(Protocol):
    """Chooses a RoutingDecision for one turn."""

    def select_strategy(
        self,
        profile: ComplexityProfile,
        availability: AvailabilityTracker,
        hints: RoutingHints,
    ) -> RoutingDecision:
        ...


class DefaultStrategyPolicy:
    """
    Baseline routing:

    1. attachments -> vision model, or a canned reply when none is available
    2. high quality + quality model available -> fusion-parallel
       (fusion enabled) or single-quality
    3. otherwise -> single-fast on the primary model
    """

    def __init__(self, registry: ModelRegistry, max_concurrent_models: int = 3) -> None:
        self._registry = registry
        self._max_models = max(1, max_concurrent_models)

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    @property
    def max_concurrent_models(self) -> int:
        return self._max_models

    def available(self, role: ModelRole, availability: AvailabilityTracker) -> List[ModelDescriptor]:
        return [m for m in self._registry.by_role(role) if availability.is_available(m.id)]

    def text_candidates(self, availability: AvailabilityTracker) -> List[ModelDescriptor]:
        """Available non-vision models; the primary is always included."""
        primary = self._registry.primary
        return [
            m for m in self._registry
            if m.role is not ModelRole.VISION and (m is primary or availability.is_available(m.id))
        ]

    def fast_only(self, reason: str) -> RoutingDecision:
        return RoutingDecision(
            strategy=RoutingStrategy.SINGLE_FAST,
            selected_models=(self._registry.primary,),
            reason=reason,
        )

    def select_strategy(
        self,
        profile: ComplexityProfile,
        availability: AvailabilityTracker,
        hints: RoutingHints,
    ) -> RoutingDecision:
        if hints.attachment_count > 0:
            return self._route_vision(profile, availability, hints)

        wants_quality = profile.requires_high_quality or hints.force_quality
        if not wants_quality:
            return self.fast_only(f"standard request (score={profile.score})")

        quality = rank_models(self.available(ModelRole.QUALITY, availability), profile, availability)
        if not quality:
            return self.fast_only("quality tier unavailable (cooldown or low success rate)")

        best_quality = quality[0]
        if not hints.fusion_enabled or self._max_models < 2:
            return RoutingDecision(
                strategy=RoutingStrategy.SINGLE_QUALITY,
                selected_models=(best_quality,),
                reason=f"high complexity (score={profile.score}), fusion disabled",
            )

        others = [m for m in self.text_candidates(availability) if m.id != best_quality.id]
        fastest = min(
            others,
            key=lambda m: (availability.ema_latency_ms(m.id), m.declared_avg_latency_ms, m.id),
        )
        return RoutingDecision(
            strategy=RoutingStrategy.FUSION_PARALLEL,
            selected_models=tuple(rank_models([fastest, best_quality], profile, availability)),
            reason=f"high complexity (score={profile.score}), fusing fast and quality tiers",
        )

    def _route_vision(
        self,
        profile: ComplexityProfile,
        availability: AvailabilityTracker,
        hints: RoutingHints,
    ) -> RoutingDecision:
        vision = rank_models(self.available(ModelRole.VISION, availability), profile, availability)
        if vision:
            return RoutingDecision(
                strategy=RoutingStrategy.SINGLE_QUALITY,
                selected_models=(vision[0],),
                reason=f"{hints.attachment_count} attachment(s), vision model available",
            )
        return RoutingDecision(
            strategy=RoutingStrategy.SINGLE_FAST,
            selected_models=(self._registry.primary,),
            reason="attachments present but vision model unavailable",
            canned_response=vision_unavailable_message(hints.attachment_count),
        )


class EnsembleStrategyPolicy:
    """
    Refines fusion decisions by profile shape:

        multi-dimensional           -> fusion-parallel
        creative + technical        -> fusion-sequential (primary, then quality)
        analytical/research only    -> fusion-consensus over all text models
        otherwise                   -> whatever the base policy chose
    """

    def __init__(self, base: DefaultStrategyPolicy) -> None:
        self._base = base

    def select_strategy(
        self,
        profile: ComplexityProfile,
        availability: AvailabilityTracker,
        hints: RoutingHints,
    ) -> RoutingDecision:
        decision = self._base.select_strategy(profile, availability, hints)
        if decision.strategy is not RoutingStrategy.FUSION_PARALLEL:
            return decision

        categories = profile.matched_categories
        if profile.is_multi_dimensional:
            return replace(decision, reason=f"{decision.reason}; multi-dimensional query")

        registry = self._base.registry
        if ComplexityCategory.CREATIVE in categories and ComplexityCategory.TECHNICAL in categories:
            quality = next(m for m in decision.selected_models if m.role is ModelRole.QUALITY)
            return RoutingDecision(
                strategy=RoutingStrategy.FUSION_SEQUENTIAL,
                selected_models=(registry.primary, quality),
                reason="creative and technical query, primary answer enhanced by quality tier",
            )

        if categories & {ComplexityCategory.ANALYTICAL, ComplexityCategory.RESEARCH} and (
            ComplexityCategory.TECHNICAL not in categories
        ):
            candidates = rank_models(self._base.text_candidates(availability), profile, availability)
            selected = tuple(candidates[: self._base.max_concurrent_models])
            if len(selected) >= 2:
                return RoutingDecision(
                    strategy=RoutingStrategy.FUSION_CONSENSUS,
                    selected_models=selected,
                    reason="accuracy-critical query, cross-validating across models",
                )

        return decision


class ContextualStrategyPolicy:
    """
    Re-profiles the message together with recent user turns, so a follow-up
    in a technical conversation keeps the quality tier.
    """

    def __init__(
        self,
        inner: StrategyPolicy,
        classifier: Optional[ComplexityClassifier] = None,
        history_turns: int = 3,
    ) -> None:
        self._inner = inner
        self._classifier = classifier or ComplexityClassifier()
        self._history_turns = history_turns

    def select_strategy(
        self,
        profile: ComplexityProfile,
        availability: AvailabilityTracker,
        hints: RoutingHints,
    ) -> RoutingDecision:
        recent = [m.content for m in hints.conversation_context if m.role == "user"][-self._history_turns:]
        if recent and not profile.requires_high_quality:
            context_profile = self._classifier.classify("\n".join(recent))
            if context_profile.requires_high_quality:
                profile = replace(
                    profile,
                    requires_high_quality=True,
                    matched_categories=profile.matched_categories | context_profile.matched_categories,
                )
                decision = self._inner.select_strategy(profile, availability, hints)
                return replace(decision, reason=f"{decision.reason} (from conversation context)")
        return self._inner.select_strategy(profile, availability, hints)


# =============================================================================
# ROUTER
# =============================================================================


class Router:
    """
    Routes one classified turn through the configured policy.

    Usage:
        router = Router(registry, policy=EnsembleStrategyPolicy(DefaultStrategyPolicy(registry)))
        decision = router.route(profile, tracker, RoutingHints())
    """

    def __init__(self, registry: ModelRegistry, policy: Optional[StrategyPolicy] = None) -> None:
        self._registry = registry
        self._policy = policy or DefaultStrategyPolicy(registry)
        self._lock = threading.Lock()
        self._stats: Dict[str, Any] = {
            "total_routes": 0,
            "canned": 0,
            "strategy_usage": {s.value: 0 for s in RoutingStrategy},
        }

    @property
    def policy(self) -> StrategyPolicy:
        return self._policy

    def route(
        self,
        profile: ComplexityProfile,
        availability: AvailabilityTracker,
        hints: Optional[RoutingHints] = None,
    ) -> RoutingDecision:
        """Pick strategy and models. Always succeeds."""
        decision = self._policy.select_strategy(profile, availability, hints or RoutingHints())

        with self._lock:
            self._stats["total_routes"] += 1
            self._stats["strategy_usage"][decision.strategy.value] += 1
            if decision.is_canned:
                self._stats["canned"] += 1

        logger.info(
            f"Routed -> {decision.strategy.value} [{', '.join(decision.model_ids)}]: {decision.reason}"
        )
        return decision

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_routes": self._stats["total_routes"],
                "canned": self._stats["canned"],
                "strategy_usage": dict(self._stats["strategy_usage"]),
            }


__all__ = [
    "StrategyPolicy",
    "DefaultStrategyPolicy",
    "EnsembleStrategyPolicy",
    "ContextualStrategyPolicy",
    "Router",
    "role_relevance",
    "model_score",
    "rank_models",
]

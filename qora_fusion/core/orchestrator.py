"""
Fusion Orchestrator - Public Entry Point
=========================================

One object per process wiring the fusion core together:

    TurnInput -> ComplexityClassifier -> Router -> FallbackController
              -> FusionCoordinator -> ModelInvoker -> InferenceEndpoint

Every collaborator is constructed explicitly and injected; there is no
module-level state. ``process_turn`` never raises for model, network or
timeout failures. Degraded answers are recognisable by ``strategy_used``
and ``overall_confidence``.

USAGE:
    async with create_orchestrator(load_config(preset="turbo")) as fusion:
        result = await fusion.process_turn(TurnInput(message="Compare B-trees and LSM trees"))
        print(result.fused_text, result.strategy_used)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from qora_fusion.core.availability_tracker import AvailabilityTracker
from qora_fusion.core.complexity_classifier import ComplexityClassifier
from qora_fusion.core.coordinator import FusionCoordinator
from qora_fusion.core.fallback import FallbackController
from qora_fusion.core.fusion_config import FusionConfig
from qora_fusion.core.fusion_types import (
    FusionResult,
    ModelRole,
    RoutingDecision,
    RoutingHints,
    RoutingStrategy,
    TurnInput,
)
from qora_fusion.core.inference_endpoint import InferenceEndpoint, OpenRouterEndpoint
from qora_fusion.core.invoker import ModelInvoker, ResponseCache
from qora_fusion.core.model_registry import ModelRegistry
from qora_fusion.core.progress import EventSubscription, FusionEventStream
from qora_fusion.core.router import (
    ContextualStrategyPolicy,
    DefaultStrategyPolicy,
    EnsembleStrategyPolicy,
    Router,
    StrategyPolicy,
)

logger = logging.getLogger(__name__)


class FusionOrchestrator:
    """
    Processes user turns through classification, routing, fusion and
    fallback, and aggregates statistics across turns.
    """

    def __init__(
        self,
        config: FusionConfig,
        registry: ModelRegistry,
        classifier: ComplexityClassifier,
        availability: AvailabilityTracker,
        router: Router,
        invoker: ModelInvoker,
        coordinator: FusionCoordinator,
        fallback: FallbackController,
        endpoint: InferenceEndpoint,
        events: FusionEventStream,
        cache: Optional[ResponseCache] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.classifier = classifier
        self.availability = availability
        self.router = router
        self.invoker = invoker
        self.coordinator = coordinator
        self.fallback = fallback
        self.endpoint = endpoint
        self.events = events
        self.cache = cache

        self._started = False
        self._stats: Dict[str, Any] = {
            "turns": 0,
            "degraded_turns": 0,
            "total_latency_ms": 0.0,
            "strategy_usage": {},
        }

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start background maintenance (cache sweep)."""
        if self._started:
            return
        if self.cache is not None:
            self.cache.start()
        self._started = True
        logger.info(f"FusionOrchestrator started ({len(self.registry)} models)")

    async def close(self) -> None:
        """Stop background tasks and release the HTTP session."""
        if self.cache is not None:
            await self.cache.close()
        await self.endpoint.close()
        self.events.close()
        self._started = False
        logger.info("FusionOrchestrator closed")

    async def __aenter__(self) -> "FusionOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # =========================================================================
    # TURNS
    # =========================================================================

    def subscribe(self, turn_id: Optional[int] = None) -> EventSubscription:
        """Progress events for all turns, or for one turn."""
        return self.events.subscribe(turn_id)

    async def process_turn(self, turn: TurnInput, turn_id: Optional[int] = None) -> FusionResult:
        """Answer one user turn. Always returns a FusionResult."""
        start = time.monotonic()
        if turn_id is None:
            turn_id = self.events.next_turn_id()

        decision = self._route(turn)

        total_ms = turn.options.timeout_ms or self.config.fallback.total_timeout_ms
        deadline_ms = min(self.config.coordinator.global_deadline_ms, total_ms)

        images = [a.url for a in turn.attachments if a.is_image]
        image_urls = []
        if decision.selected_models and decision.selected_models[0].role is ModelRole.VISION:
            image_urls = images

        result = await self.fallback.run_with_fallback(
            decision,
            turn.message,
            turn.conversation_context,
            total_ms,
            global_deadline_ms=deadline_ms,
            image_urls=image_urls,
            attachment_count=len(images),
            turn_id=turn_id,
        )

        elapsed = (time.monotonic() - start) * 1000.0
        self._record(result, elapsed)
        logger.info(
            f"Turn {turn_id} answered via {result.strategy_used} "
            f"(confidence={result.overall_confidence:.2f}, {elapsed:.0f}ms)"
        )
        return result

    def _route(self, turn: TurnInput) -> RoutingDecision:
        hints = RoutingHints.from_turn(turn)
        if not self.config.coordinator.fusion_enabled:
            hints = RoutingHints(
                fusion_enabled=False,
                force_quality=hints.force_quality,
                attachment_count=hints.attachment_count,
                conversation_context=hints.conversation_context,
            )

        try:
            profile = self.classifier.classify(turn.message)
            return self.router.route(profile, self.availability, hints)
        except Exception:
            logger.exception("Routing failed, using primary model")
            return RoutingDecision(
                strategy=RoutingStrategy.SINGLE_FAST,
                selected_models=(self.registry.primary,),
                reason="routing error",
            )

    def _record(self, result: FusionResult, elapsed_ms: float) -> None:
        self._stats["turns"] += 1
        self._stats["total_latency_ms"] += elapsed_ms
        usage = self._stats["strategy_usage"]
        usage[result.strategy_used] = usage.get(result.strategy_used, 0) + 1
        if result.degraded:
            self._stats["degraded_turns"] += 1

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def get_statistics(self) -> Dict[str, Any]:
        turns = self._stats["turns"]
        return {
            "turns": turns,
            "degraded_turns": self._stats["degraded_turns"],
            "avg_latency_ms": self._stats["total_latency_ms"] / max(turns, 1),
            "strategy_usage": dict(self._stats["strategy_usage"]),
            "router": self.router.get_statistics(),
            "invoker": self.invoker.get_statistics(),
            "coordinator": self.coordinator.get_statistics(),
            "fallback": self.fallback.get_statistics(),
            "availability": self.availability.snapshot(),
        }


# =============================================================================
# FACTORY
# =============================================================================


def build_policy(config: FusionConfig, registry: ModelRegistry, classifier: ComplexityClassifier) -> StrategyPolicy:
    """Strategy policy selected by ``config.routing``."""
    base = DefaultStrategyPolicy(registry, config.coordinator.max_concurrent_models)
    policy: StrategyPolicy = base
    if config.routing.policy == "ensemble":
        policy = EnsembleStrategyPolicy(base)
    if config.routing.contextual:
        policy = ContextualStrategyPolicy(policy, classifier, config.routing.history_turns)
    return policy


def create_orchestrator(
    config: Optional[FusionConfig] = None,
    endpoint: Optional[InferenceEndpoint] = None,
    policy: Optional[StrategyPolicy] = None,
) -> FusionOrchestrator:
    """
    Build a fully wired orchestrator.

    ``endpoint`` defaults to an OpenRouterEndpoint from ``config.endpoint``;
    tests pass a scripted endpoint instead.
    """
    config = config or FusionConfig()
    registry = ModelRegistry(config.models)
    classifier = ComplexityClassifier()
    availability = AvailabilityTracker(registry, config.availability)
    events = FusionEventStream()

    cache: Optional[ResponseCache] = None
    if config.cache.enabled:
        cache = ResponseCache(
            ttl_ms=config.cache.ttl_ms,
            max_entries=config.cache.max_entries,
            sweep_interval_ms=config.cache.sweep_interval_ms,
        )

    endpoint = endpoint or OpenRouterEndpoint(config.endpoint)
    caps = config.generation.role_token_caps
    invoker = ModelInvoker(endpoint, availability, cache, role_token_caps=caps)
    router = Router(registry, policy or build_policy(config, registry, classifier))
    coordinator = FusionCoordinator(invoker, registry, config.coordinator, config.generation, events)
    fallback = FallbackController(
        coordinator, invoker, registry, config.fallback, events, role_token_caps=caps,
    )

    return FusionOrchestrator(
        config=config,
        registry=registry,
        classifier=classifier,
        availability=availability,
        router=router,
        invoker=invoker,
        coordinator=coordinator,
        fallback=fallback,
        endpoint=endpoint,
        events=events,
        cache=cache,
    )


__all__ = [
    "FusionOrchestrator",
    "build_policy",
    "create_orchestrator",
]

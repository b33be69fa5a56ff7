"""
Fallback Controller - Graceful Degradation
==========================================

Wraps the coordinator so a turn always produces a FusionResult.

FALLBACK CHAIN:
    coordinator (bounded by total_timeout_ms)
        -> primary model alone (bounded by secondary_timeout_ms)
        -> static apology, confidence 0

Worst-case latency is total_timeout_ms + secondary_timeout_ms. Only
asyncio.CancelledError propagates to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Dict, Mapping, Optional, Sequence

from qora_fusion.core.coordinator import FusionCoordinator
from qora_fusion.core.errors import TotalFusionFailure
from qora_fusion.core.fusion_config import FallbackConfig
from qora_fusion.core.fusion_types import (
    STRATEGY_FALLBACK_SINGLE,
    STRATEGY_FALLBACK_STATIC,
    ChatMessage,
    FusionResult,
    RoutingDecision,
)
from qora_fusion.core.invoker import ModelInvoker
from qora_fusion.core.model_registry import ModelRegistry
from qora_fusion.core.progress import FusionEventStream, FusionStage
from qora_fusion.core.prompts import APOLOGY_MESSAGES, VISION_APOLOGY_HINT, generation_params

logger = logging.getLogger(__name__)


class FallbackController:
    """
    Runs the coordinator with a timeout race and degrades on failure.

    ``rng`` picks the apology message and can be seeded for tests.
    """

    def __init__(
        self,
        coordinator: FusionCoordinator,
        invoker: ModelInvoker,
        registry: ModelRegistry,
        config: Optional[FallbackConfig] = None,
        events: Optional[FusionEventStream] = None,
        role_token_caps: Optional[Mapping[str, int]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._coordinator = coordinator
        self._invoker = invoker
        self._registry = registry
        self._config = config or FallbackConfig()
        self._events = events or FusionEventStream()
        self._role_token_caps = dict(role_token_caps or {})
        self._rng = rng or random.Random()

        self._stats = {
            "runs": 0,
            "coordinator_successes": 0,
            "coordinator_failures": 0,
            "coordinator_timeouts": 0,
            "unexpected_errors": 0,
            "fallback_single": 0,
            "fallback_static": 0,
        }

    async def run_with_fallback(
        self,
        decision: RoutingDecision,
        prompt: str,
        context: Sequence[ChatMessage] = (),
        total_timeout_ms: Optional[float] = None,
        *,
        global_deadline_ms: Optional[float] = None,
        image_urls: Sequence[str] = (),
        attachment_count: int = 0,
        turn_id: int = 0,
    ) -> FusionResult:
        """Always returns a FusionResult for ``decision``."""
        start = time.monotonic()
        total_ms = total_timeout_ms if total_timeout_ms is not None else self._config.total_timeout_ms
        deadline_ms = global_deadline_ms if global_deadline_ms is not None else self._coordinator.config.global_deadline_ms
        deadline_ms = min(deadline_ms, total_ms)
        self._stats["runs"] += 1

        try:
            result = await asyncio.wait_for(
                self._coordinator.run(
                    decision, prompt, context, deadline_ms,
                    image_urls=image_urls, turn_id=turn_id,
                ),
                timeout=total_ms / 1000.0,
            )
        except TotalFusionFailure as e:
            self._stats["coordinator_failures"] += 1
            logger.warning(f"Fusion failed, engaging fallback: {e}")
        except asyncio.TimeoutError:
            self._stats["coordinator_timeouts"] += 1
            logger.warning(f"Fusion exceeded {total_ms:.0f}ms, engaging fallback")
        except Exception:
            self._stats["unexpected_errors"] += 1
            logger.exception("Unexpected error during fusion, engaging fallback")
        else:
            self._stats["coordinator_successes"] += 1
            self._complete(turn_id, result)
            return result

        result = await self._degrade(prompt, context, attachment_count, start, turn_id)
        self._complete(turn_id, result)
        return result

    async def _degrade(
        self,
        prompt: str,
        context: Sequence[ChatMessage],
        attachment_count: int,
        start: float,
        turn_id: int,
    ) -> FusionResult:
        primary = self._registry.primary
        self._events.emit(turn_id, FusionStage.FALLBACK, f"Retrying with {primary.display_name} alone")

        try:
            response = await self._invoker.invoke(
                primary,
                prompt,
                context,
                self._config.secondary_timeout_ms,
                params=generation_params(primary, prompt, self._role_token_caps),
            )
        except Exception:
            logger.exception(f"Fallback invocation of {primary.id} raised")
            response = None

        if response is not None and response.ok:
            self._stats["fallback_single"] += 1
            logger.info(f"Fallback answered by {primary.id}")
            return FusionResult(
                fused_text=response.text,
                contributing_models=[primary.id],
                overall_confidence=response.confidence_score,
                strategy_used=STRATEGY_FALLBACK_SINGLE,
                total_processing_time_ms=(time.monotonic() - start) * 1000.0,
                individual_responses=[response],
            )

        self._stats["fallback_static"] += 1
        detail = response.error_detail if response is not None else "invoker error"
        logger.error(f"Fallback model {primary.id} also failed ({detail}), returning static reply")
        message = self._rng.choice(APOLOGY_MESSAGES)
        if attachment_count > 0:
            message += VISION_APOLOGY_HINT
        return FusionResult(
            fused_text=message,
            contributing_models=[],
            overall_confidence=0.0,
            strategy_used=STRATEGY_FALLBACK_STATIC,
            total_processing_time_ms=(time.monotonic() - start) * 1000.0,
            individual_responses=[response] if response is not None else [],
        )

    def _complete(self, turn_id: int, result: FusionResult) -> None:
        self._events.emit(
            turn_id,
            FusionStage.COMPLETED,
            f"{result.strategy_used} (confidence={result.overall_confidence:.2f})",
            completed_models=len(result.contributing_models),
        )

    def get_statistics(self) -> Dict[str, Any]:
        return dict(self._stats)


__all__ = [
    "FallbackController",
    "APOLOGY_MESSAGES",
]

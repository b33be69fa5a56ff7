"""
Availability Tracker
====================

Per-model rolling health state shared by every concurrent invocation.

For each model the tracker keeps:
    - last invocation timestamp and cooldown window (rate-limit spacing)
    - EMA latency      ema = 0.8 * old + 0.2 * sample
    - EMA success rate ema = 0.9 * old + 0.1 * (1 if success else 0)

State starts from the registry's declared priors and is only reset by
constructing a new tracker. Each model has its own lock, so writers on one
model never block readers or writers on another.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from qora_fusion.core.fusion_config import AvailabilityConfig
from qora_fusion.core.fusion_types import ModelDescriptor, ModelRole

logger = logging.getLogger(__name__)

LATENCY_DECAY = 0.8
SUCCESS_DECAY = 0.9


@dataclass
class AvailabilityState:
    """Mutable health record for one model. Owned by AvailabilityTracker."""

    model_id: str
    cooldown_ms: float
    ema_latency_ms: float
    ema_success_rate: float
    success_threshold: float
    last_invoked_at: Optional[float] = None

    # Counters
    total_calls: int = 0
    total_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "cooldown_ms": self.cooldown_ms,
            "ema_latency_ms": round(self.ema_latency_ms, 2),
            "ema_success_rate": round(self.ema_success_rate, 4),
            "success_threshold": self.success_threshold,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
        }


class AvailabilityTracker:
    """
    Tracks cooldowns and EMA health for every registered model.

    ``clock`` returns seconds (``time.monotonic`` by default) and can be
    replaced in tests to step time manually.
    """

    def __init__(
        self,
        models: Iterable[ModelDescriptor],
        thresholds: Optional[Union[AvailabilityConfig, Mapping[ModelRole, float]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._states: Dict[str, AvailabilityState] = {}
        self._locks: Dict[str, threading.Lock] = {}

        for model in models:
            self._states[model.id] = AvailabilityState(
                model_id=model.id,
                cooldown_ms=model.cooldown_ms,
                ema_latency_ms=model.declared_avg_latency_ms,
                ema_success_rate=model.declared_reliability,
                success_threshold=self._threshold(thresholds, model.role),
            )
            self._locks[model.id] = threading.Lock()

    @staticmethod
    def _threshold(
        thresholds: Optional[Union[AvailabilityConfig, Mapping[ModelRole, float]]],
        role: ModelRole,
    ) -> float:
        if thresholds is None:
            thresholds = AvailabilityConfig()
        if isinstance(thresholds, AvailabilityConfig):
            return thresholds.threshold_for(role)
        return float(thresholds.get(role, 0.0))

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _state(self, model_id: str) -> AvailabilityState:
        try:
            return self._states[model_id]
        except KeyError:
            raise KeyError(f"model {model_id!r} is not tracked") from None

    # =========================================================================
    # QUERIES
    # =========================================================================

    def is_available(self, model_id: str) -> bool:
        """True when the cooldown has elapsed and health is above threshold."""
        state = self._state(model_id)
        with self._locks[model_id]:
            if state.ema_success_rate <= state.success_threshold:
                return False
            if state.last_invoked_at is None:
                return True
            return self._now_ms() - state.last_invoked_at >= state.cooldown_ms

    def next_available_in_ms(self, model_id: str) -> float:
        """Remaining cooldown, 0 when the model may be invoked now."""
        state = self._state(model_id)
        with self._locks[model_id]:
            if state.last_invoked_at is None:
                return 0.0
            return max(0.0, state.cooldown_ms - (self._now_ms() - state.last_invoked_at))

    def get_state(self, model_id: str) -> AvailabilityState:
        """Consistent copy of one model's state."""
        state = self._state(model_id)
        with self._locks[model_id]:
            return replace(state)

    def ema_latency_ms(self, model_id: str) -> float:
        return self.get_state(model_id).ema_latency_ms

    def success_rate(self, model_id: str) -> float:
        return self.get_state(model_id).ema_success_rate

    # =========================================================================
    # UPDATES
    # =========================================================================

    def mark_invoked(self, model_id: str) -> None:
        """Start the cooldown window as soon as a call is issued."""
        state = self._state(model_id)
        with self._locks[model_id]:
            state.last_invoked_at = self._now_ms()

    def record_outcome(self, model_id: str, latency_ms: float, success: bool) -> None:
        """Fold one completed, failed or cancelled call into the EMAs."""
        state = self._state(model_id)
        latency_ms = max(0.0, float(latency_ms))
        with self._locks[model_id]:
            state.ema_latency_ms = LATENCY_DECAY * state.ema_latency_ms + (1 - LATENCY_DECAY) * latency_ms
            rate = SUCCESS_DECAY * state.ema_success_rate + (1 - SUCCESS_DECAY) * (1.0 if success else 0.0)
            state.ema_success_rate = min(1.0, max(0.0, rate))
            state.last_invoked_at = self._now_ms()
            state.total_calls += 1
            if not success:
                state.total_failures += 1

        logger.debug(
            f"Outcome {model_id}: success={success} latency={latency_ms:.0f}ms "
            f"ema_latency={state.ema_latency_ms:.0f}ms ema_success={state.ema_success_rate:.3f}"
        )

    # =========================================================================
    # REPORTING
    # =========================================================================

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Per-model EMA values, availability and remaining cooldown."""
        result: Dict[str, Dict[str, Any]] = {}
        for model_id in self._states:
            data = self.get_state(model_id).to_dict()
            data["available"] = self.is_available(model_id)
            data["next_available_in_ms"] = round(self.next_available_in_ms(model_id), 1)
            result[model_id] = data
        return result


__all__ = [
    "AvailabilityState",
    "AvailabilityTracker",
    "LATENCY_DECAY",
    "SUCCESS_DECAY",
]

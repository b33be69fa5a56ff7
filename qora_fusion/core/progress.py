"""
Fusion Progress Events
======================

Stage-transition events produced while a turn is processed. Consumers (a UI
progress bar, a log shipper, tests) subscribe and iterate asynchronously;
the core does not know how progress is displayed.

STAGES (one round):
    initializing -> querying -> [early_completion] -> synthesizing -> completed
    querying -> error -> fallback -> completed
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class FusionStage(Enum):
    INITIALIZING = "initializing"
    QUERYING = "querying"
    MODEL_COMPLETED = "model_completed"
    EARLY_COMPLETION = "early_completion"
    SYNTHESIZING = "synthesizing"
    COMPLETED = "completed"
    ERROR = "error"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class FusionProgressEvent:
    """One stage transition of one turn."""
    turn_id: int
    stage: FusionStage
    message: str
    timestamp: float = field(default_factory=time.time)
    model_id: Optional[str] = None
    completed_models: int = 0
    total_models: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "stage": self.stage.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "model_id": self.model_id,
            "completed_models": self.completed_models,
            "total_models": self.total_models,
        }


_CLOSED = object()


class EventSubscription:
    """
    Async iterator over events delivered after subscribing.

    A slow consumer loses its oldest undelivered events rather than blocking
    the coordinator.
    """

    def __init__(self, stream: "FusionEventStream", turn_id: Optional[int], maxsize: int) -> None:
        self._stream = stream
        self._turn_id = turn_id
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    def _offer(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def _deliver(self, event: FusionProgressEvent) -> None:
        if self._closed:
            return
        if self._turn_id is not None and event.turn_id != self._turn_id:
            return
        self._offer(event)
        if self._turn_id is not None and event.stage is FusionStage.COMPLETED:
            self.close()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._stream._unsubscribe(self)
            self._offer(_CLOSED)

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> FusionProgressEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class FusionEventStream:
    """
    Fan-out of progress events to subscribers, with a bounded history.

    Usage:
        stream = FusionEventStream()
        subscription = stream.subscribe()
        async for event in subscription:
            print(event.stage.value, event.message)
    """

    def __init__(self, history_size: int = 200, queue_size: int = 100) -> None:
        self._subscribers: Set[EventSubscription] = set()
        self._history: Deque[FusionProgressEvent] = deque(maxlen=history_size)
        self._queue_size = queue_size
        self._turn_ids = itertools.count(1)

    def next_turn_id(self) -> int:
        return next(self._turn_ids)

    def subscribe(self, turn_id: Optional[int] = None) -> EventSubscription:
        """Subscribe to all events, or only one turn's (closed on its completion)."""
        subscription = EventSubscription(self, turn_id, self._queue_size)
        self._subscribers.add(subscription)
        return subscription

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        self._subscribers.discard(subscription)

    def emit(
        self,
        turn_id: int,
        stage: FusionStage,
        message: str,
        model_id: Optional[str] = None,
        completed_models: int = 0,
        total_models: int = 0,
    ) -> FusionProgressEvent:
        """Record and deliver one event. Never blocks."""
        event = FusionProgressEvent(
            turn_id=turn_id,
            stage=stage,
            message=message,
            model_id=model_id,
            completed_models=completed_models,
            total_models=total_models,
        )
        self._history.append(event)
        for subscription in list(self._subscribers):
            subscription._deliver(event)
        logger.debug(f"[turn {turn_id}] {stage.value}: {message}")
        return event

    def history(self, turn_id: Optional[int] = None) -> List[FusionProgressEvent]:
        if turn_id is None:
            return list(self._history)
        return [e for e in self._history if e.turn_id == turn_id]

    def close(self) -> None:
        """End every open subscription."""
        for subscription in list(self._subscribers):
            subscription.close()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


__all__ = [
    "FusionStage",
    "FusionProgressEvent",
    "EventSubscription",
    "FusionEventStream",
]

"""
Per-Model Invoker - Bounded, Cached, De-duplicated Calls
=========================================================

Issues one inference call for one model and always answers with a
ModelResponse. Failures are values here, never exceptions.

FLOW:
    fingerprint -> cache hit?      -> success, from_cache, no tracker update
                -> identical call in flight? -> share it
                -> new call: mark_invoked, endpoint.complete, record_outcome,
                   cache on success

DEADLINES:
    Each caller waits on the shared call through asyncio.shield with its own
    deadline. When the last caller leaves (deadline, early completion or
    cancellation) the underlying call is cancelled and recorded as a failure
    with the elapsed time.

CONFIDENCE:
    0.5 base, +0.2 if longer than 200 chars, +0.15 for list/enumeration
    markers, +0.15 for example markers, capped at 1.0.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from qora_fusion.core.availability_tracker import AvailabilityTracker
from qora_fusion.core.errors import ErrorCategory, ErrorClassifier, InferenceError
from qora_fusion.core.fusion_types import (
    ChatMessage,
    GenerationParams,
    ModelDescriptor,
    ModelResponse,
    ResponseStatus,
)
from qora_fusion.core.inference_endpoint import InferenceEndpoint
from qora_fusion.core.prompts import build_messages, generation_params

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIDENCE HEURISTIC
# =============================================================================

CONFIDENCE_BASE = 0.5
LENGTH_BONUS = 0.2
LENGTH_THRESHOLD = 200
STRUCTURE_BONUS = 0.15
EXAMPLE_BONUS = 0.15

_STRUCTURE_PATTERN = re.compile(r"\d+\.|•|\n-|\n\*")
_EXAMPLE_PATTERN = re.compile(r"example|for instance|such as", re.IGNORECASE)


def score_confidence(text: str) -> float:
    """Heuristic 0..1 quality estimate from response structure."""
    if not text:
        return 0.0
    confidence = CONFIDENCE_BASE
    if len(text) > LENGTH_THRESHOLD:
        confidence += LENGTH_BONUS
    if _STRUCTURE_PATTERN.search(text):
        confidence += STRUCTURE_BONUS
    if _EXAMPLE_PATTERN.search(text):
        confidence += EXAMPLE_BONUS
    return min(confidence, 1.0)


def prompt_fingerprint(
    model_id: str,
    prompt: str,
    context: Sequence[ChatMessage] = (),
    image_urls: Sequence[str] = (),
) -> str:
    """Cache / de-duplication key: model, prompt digest and length, context digest."""
    prompt_digest = hashlib.md5(prompt.encode("utf-8")).hexdigest()[:16]
    if context or image_urls:
        h = hashlib.md5()
        for message in context:
            h.update(f"{message.role}\x00{message.content}\x01".encode("utf-8"))
        for url in image_urls:
            h.update(f"img\x00{url}\x01".encode("utf-8"))
        context_digest = h.hexdigest()[:12]
    else:
        context_digest = "-"
    return f"{model_id}:{prompt_digest}:{len(prompt)}:{context_digest}"


# =============================================================================
# RESPONSE CACHE
# =============================================================================


@dataclass
class CacheEntry:
    """Cached completion for one fingerprint."""
    key: str
    response_text: str
    created_at: float
    ttl_ms: float
    confidence: float = 0.0
    usage: Dict[str, Any] = field(default_factory=dict)

    def age_ms(self, now: float) -> float:
        return (now - self.created_at) * 1000.0

    def is_expired(self, now: float) -> bool:
        return self.age_ms(now) > self.ttl_ms


class ResponseCache:
    """
    TTL cache for model completions.

    Expired entries are removed on read and by a periodic sweep; when full,
    the oldest entry is evicted. Never returns an entry older than its TTL.
    """

    def __init__(
        self,
        ttl_ms: float = 30 * 60 * 1000.0,
        max_entries: int = 500,
        sweep_interval_ms: float = 10 * 60 * 1000.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_ms = ttl_ms
        self.max_entries = max(1, max_entries)
        self.sweep_interval_ms = sweep_interval_ms
        self._clock = clock

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

        # Statistics
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[CacheEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return None
            self._hits += 1
            return entry

    def put(
        self,
        key: str,
        response_text: str,
        confidence: float = 0.0,
        usage: Optional[Mapping[str, Any]] = None,
        ttl_ms: Optional[float] = None,
    ) -> None:
        entry = CacheEntry(
            key=key,
            response_text=response_text,
            created_at=self._clock(),
            ttl_ms=self.ttl_ms if ttl_ms is None else ttl_ms,
            confidence=confidence,
            usage=dict(usage or {}),
        )
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
                self._evictions += 1
            self._entries[key] = entry

    def sweep(self) -> int:
        """Drop every expired entry, returning how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._expirations += len(expired)
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        """Stop the periodic sweep."""
        task, self._sweep_task = self._sweep_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_ms / 1000.0)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error in cache sweep: {e}")

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_ms": self.ttl_ms,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / max(total, 1),
                "evictions": self._evictions,
                "expirations": self._expirations,
            }


# =============================================================================
# INVOKER
# =============================================================================


@dataclass
class _InFlight:
    task: "asyncio.Task[ModelResponse]"
    waiters: int = 0


class ModelInvoker:
    """
    Runs single-model calls against the inference endpoint.

    Usage:
        invoker = ModelInvoker(endpoint, tracker, ResponseCache())
        response = await invoker.invoke(model, prompt, context, deadline_ms=8000)
        if response.ok:
            print(response.text)
    """

    def __init__(
        self,
        endpoint: InferenceEndpoint,
        availability: AvailabilityTracker,
        cache: Optional[ResponseCache] = None,
        role_token_caps: Optional[Mapping[str, int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._endpoint = endpoint
        self._availability = availability
        self._cache = cache
        self._role_token_caps = dict(role_token_caps or {})
        self._clock = clock
        self._inflight: Dict[str, _InFlight] = {}

        self._stats = {
            "invocations": 0,
            "network_calls": 0,
            "cache_hits": 0,
            "deduplicated": 0,
            "successes": 0,
            "failures": 0,
            "timeouts": 0,
        }

    @property
    def cache(self) -> Optional[ResponseCache]:
        return self._cache

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    async def invoke(
        self,
        model: ModelDescriptor,
        prompt: str,
        context: Sequence[ChatMessage] = (),
        deadline_ms: Optional[float] = None,
        *,
        params: Optional[GenerationParams] = None,
        image_urls: Sequence[str] = (),
        use_cache: bool = True,
    ) -> ModelResponse:
        """
        Call ``model`` once, bounded by ``deadline_ms``.

        Returns a failed ModelResponse on error or timeout. Only
        asyncio.CancelledError propagates.
        """
        start = self._clock()
        self._stats["invocations"] += 1
        key = prompt_fingerprint(model.id, prompt, context, image_urls)

        if use_cache and self._cache is not None:
            entry = self._cache.get(key)
            if entry is not None:
                self._stats["cache_hits"] += 1
                logger.debug(f"Cache hit for {model.id} ({key})")
                return ModelResponse(
                    model_id=model.id,
                    text=entry.response_text,
                    confidence_score=entry.confidence,
                    processing_time_ms=self._elapsed_ms(start),
                    status=ResponseStatus.SUCCESS,
                    from_cache=True,
                    usage=dict(entry.usage),
                )

        flight = self._inflight.get(key)
        if flight is None:
            params = params or generation_params(model, prompt, self._role_token_caps)
            messages = build_messages(prompt, context, image_urls)
            task = asyncio.get_running_loop().create_task(
                self._call(model, messages, params, key, use_cache)
            )
            flight = _InFlight(task=task)
            self._inflight[key] = flight
            task.add_done_callback(lambda _t, k=key, f=flight: self._release(k, f))
        else:
            self._stats["deduplicated"] += 1
            logger.debug(f"Joining in-flight request for {model.id} ({key})")

        flight.waiters += 1
        timeout_s = deadline_ms / 1000.0 if deadline_ms is not None else None
        try:
            response = await asyncio.wait_for(asyncio.shield(flight.task), timeout=timeout_s)
        except asyncio.TimeoutError:
            self._stats["timeouts"] += 1
            logger.warning(f"{model.id} timed out after {deadline_ms:.0f}ms")
            return ModelResponse(
                model_id=model.id,
                text="",
                confidence_score=0.0,
                processing_time_ms=self._elapsed_ms(start),
                status=ResponseStatus.TIMEOUT,
                error_detail=f"TIMEOUT: no response within {deadline_ms:.0f}ms",
            )
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                # Later callers must start a fresh call, not join this one
                self._release(key, flight)
                flight.task.cancel()

        return replace(response, processing_time_ms=self._elapsed_ms(start))

    def _release(self, key: str, flight: _InFlight) -> None:
        if self._inflight.get(key) is flight:
            del self._inflight[key]

    async def _call(
        self,
        model: ModelDescriptor,
        messages: List[Dict[str, Any]],
        params: GenerationParams,
        key: str,
        use_cache: bool,
    ) -> ModelResponse:
        """The single shared network call behind one fingerprint."""
        start = self._clock()
        self._stats["network_calls"] += 1
        self._availability.mark_invoked(model.id)

        try:
            result = await self._endpoint.complete(model.id, messages, params)
            if not isinstance(result.usage, Mapping):
                raise InferenceError(
                    category=ErrorCategory.MALFORMED_RESPONSE,
                    message=f"usage is {type(result.usage).__name__}, expected a mapping",
                    model_id=model.id,
                )
            text = result.text
            usage = dict(result.usage)
            confidence = score_confidence(text)
        except asyncio.CancelledError:
            elapsed = self._elapsed_ms(start)
            self._availability.record_outcome(model.id, elapsed, success=False)
            self._stats["failures"] += 1
            logger.debug(f"{model.id} call cancelled after {elapsed:.0f}ms")
            raise
        except Exception as e:
            elapsed = self._elapsed_ms(start)
            self._availability.record_outcome(model.id, elapsed, success=False)
            self._stats["failures"] += 1
            detail = ErrorClassifier.describe(e)
            logger.warning(f"{model.id} failed after {elapsed:.0f}ms: {detail}")
            return ModelResponse(
                model_id=model.id,
                text="",
                confidence_score=0.0,
                processing_time_ms=elapsed,
                status=ResponseStatus.ERROR,
                error_detail=detail,
            )

        elapsed = self._elapsed_ms(start)
        self._availability.record_outcome(model.id, elapsed, success=True)
        self._stats["successes"] += 1

        if use_cache and self._cache is not None:
            self._cache.put(key, text, confidence=confidence, usage=usage)

        logger.debug(f"{model.id} answered in {elapsed:.0f}ms (confidence={confidence:.2f})")
        return ModelResponse(
            model_id=model.id,
            text=text,
            confidence_score=confidence,
            processing_time_ms=elapsed,
            status=ResponseStatus.SUCCESS,
            usage=usage,
        )

    def _elapsed_ms(self, start: float) -> float:
        return (self._clock() - start) * 1000.0

    def get_statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._stats)
        stats["in_flight"] = len(self._inflight)
        if self._cache is not None:
            stats["cache"] = self._cache.stats()
        return stats


__all__ = [
    "CacheEntry",
    "ResponseCache",
    "ModelInvoker",
    "score_confidence",
    "prompt_fingerprint",
]

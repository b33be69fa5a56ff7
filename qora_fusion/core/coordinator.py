"""
Fusion Coordinator - Concurrent Fan-out and Synthesis
======================================================

Executes one RoutingDecision under a global deadline.

STRATEGIES:
    single-fast / single-quality  one invocation; failure -> TotalFusionFailure
    fusion-parallel               concurrent calls with early completion,
                                  then synthesis
    fusion-consensus              concurrent calls, no early completion,
                                  consensus synthesis
    fusion-sequential             primary answers, quality model enhances

EARLY COMPLETION (checked on every completion and every poll tick):
    (a) >= 2 successes, mean confidence >= threshold, > 60% of deadline used
    (b) >= 1 success with confidence >= threshold + 0.1, > 80% of deadline used

BOUNDING:
    The monitoring loop never waits past the global deadline, and the
    synthesis call only gets the time that is left, so run() finishes within
    the deadline plus one poll interval even if every model hangs.

SYNTHESIS:
    0 successes  -> TotalFusionFailure
    1 success    -> returned directly, "<strategy>-single-contributor"
    >= 2         -> merge call to the primary model over the top responses;
                    skipped (best response verbatim) when too little time is
                    left or the merge call fails
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Set

from qora_fusion.core.errors import ErrorClassifier, TotalFusionFailure
from qora_fusion.core.fusion_config import CoordinatorConfig, GenerationConfig
from qora_fusion.core.fusion_types import (
    SINGLE_CONTRIBUTOR_SUFFIX,
    STRATEGY_VISION_FALLBACK,
    ChatMessage,
    FusionResult,
    GenerationParams,
    ModelDescriptor,
    ModelResponse,
    ResponseStatus,
    RoutingDecision,
    RoutingStrategy,
)
from qora_fusion.core.invoker import ModelInvoker
from qora_fusion.core.model_registry import ModelRegistry
from qora_fusion.core.progress import FusionEventStream, FusionStage
from qora_fusion.core.prompts import (
    build_consensus_prompt,
    build_enhancement_prompt,
    build_role_prompt,
    build_synthesis_prompt,
    generation_params,
)

logger = logging.getLogger(__name__)


class FusionCoordinator:
    """
    Drives the invokers for one fusion round.

    Holds no per-turn state between calls; every run() is independent.
    """

    def __init__(
        self,
        invoker: ModelInvoker,
        registry: ModelRegistry,
        config: Optional[CoordinatorConfig] = None,
        generation: Optional[GenerationConfig] = None,
        events: Optional[FusionEventStream] = None,
    ) -> None:
        self._invoker = invoker
        self._registry = registry
        self._config = config or CoordinatorConfig()
        self._generation = generation or GenerationConfig()
        self._events = events or FusionEventStream()

        self._stats = {
            "rounds": 0,
            "early_completions": 0,
            "deadline_cutoffs": 0,
            "synthesis_calls": 0,
            "synthesis_skipped": 0,
            "synthesis_failures": 0,
            "total_failures": 0,
        }

    @property
    def config(self) -> CoordinatorConfig:
        return self._config

    # =========================================================================
    # ENTRY
    # =========================================================================

    async def run(
        self,
        decision: RoutingDecision,
        prompt: str,
        context: Sequence[ChatMessage] = (),
        global_deadline_ms: Optional[float] = None,
        *,
        image_urls: Sequence[str] = (),
        turn_id: int = 0,
    ) -> FusionResult:
        """Execute ``decision``. Raises TotalFusionFailure if nothing succeeded."""
        start = time.monotonic()
        deadline_ms = global_deadline_ms if global_deadline_ms is not None else self._config.global_deadline_ms
        self._stats["rounds"] += 1

        if decision.is_canned:
            logger.info(f"Returning canned response ({decision.reason})")
            return FusionResult(
                fused_text=decision.canned_response or "",
                contributing_models=[],
                overall_confidence=0.0,
                strategy_used=STRATEGY_VISION_FALLBACK,
                total_processing_time_ms=self._elapsed_ms(start),
            )

        models = list(decision.selected_models)
        self._emit(turn_id, FusionStage.INITIALIZING, f"{decision.strategy.value}: {decision.reason}", total=len(models))

        strategy = decision.strategy
        try:
            if strategy in (RoutingStrategy.SINGLE_FAST, RoutingStrategy.SINGLE_QUALITY) or len(models) == 1:
                return await self._run_single(strategy, models[0], prompt, context, deadline_ms, start, image_urls, turn_id)
            if strategy is RoutingStrategy.FUSION_SEQUENTIAL:
                return await self._run_sequential(models, prompt, context, deadline_ms, start, turn_id)
            return await self._run_concurrent(
                strategy, models, prompt, context, deadline_ms, start, turn_id,
                early_completion=strategy is RoutingStrategy.FUSION_PARALLEL,
            )
        except TotalFusionFailure as e:
            self._stats["total_failures"] += 1
            self._emit(turn_id, FusionStage.ERROR, str(e), total=len(models))
            raise

    # =========================================================================
    # SINGLE
    # =========================================================================

    async def _run_single(
        self,
        strategy: RoutingStrategy,
        model: ModelDescriptor,
        prompt: str,
        context: Sequence[ChatMessage],
        deadline_ms: float,
        start: float,
        image_urls: Sequence[str],
        turn_id: int,
    ) -> FusionResult:
        self._emit(turn_id, FusionStage.QUERYING, f"Querying {model.display_name}", total=1)
        response = await self._invoker.invoke(
            model,
            prompt,
            context,
            self._call_deadline(model, deadline_ms, start),
            params=self._params(model, prompt),
            image_urls=image_urls,
        )
        self._emit(turn_id, FusionStage.MODEL_COMPLETED, response.status.value, model_id=model.id, completed=1, total=1)

        if not response.ok:
            raise TotalFusionFailure(strategy=strategy.value, responses=[response])

        return FusionResult(
            fused_text=response.text,
            contributing_models=[model.id],
            overall_confidence=response.confidence_score,
            strategy_used=strategy.value,
            total_processing_time_ms=self._elapsed_ms(start),
            individual_responses=[response],
        )

    # =========================================================================
    # CONCURRENT (PARALLEL / CONSENSUS)
    # =========================================================================

    async def _run_concurrent(
        self,
        strategy: RoutingStrategy,
        models: List[ModelDescriptor],
        prompt: str,
        context: Sequence[ChatMessage],
        deadline_ms: float,
        start: float,
        turn_id: int,
        early_completion: bool,
    ) -> FusionResult:
        models = models[: self._config.max_concurrent_models]
        loop = asyncio.get_running_loop()
        tasks: Dict["asyncio.Task[ModelResponse]", ModelDescriptor] = {
            loop.create_task(
                self._invoker.invoke(
                    m,
                    build_role_prompt(prompt, m.role),
                    context,
                    self._call_deadline(m, deadline_ms, start),
                    params=self._params(m, prompt),
                )
            ): m
            for m in models
        }
        self._emit(
            turn_id, FusionStage.QUERYING,
            f"Querying {len(models)} models in parallel", total=len(models),
        )

        responses: List[ModelResponse] = []
        pending: Set["asyncio.Task[ModelResponse]"] = set(tasks)
        poll_s = self._config.poll_interval_ms / 1000.0
        deadline_s = deadline_ms / 1000.0
        cutoff_reason = "global deadline reached"

        try:
            while pending:
                remaining_s = deadline_s - (time.monotonic() - start)
                if remaining_s <= 0:
                    self._stats["deadline_cutoffs"] += 1
                    break

                done, pending = await asyncio.wait(
                    pending, timeout=min(poll_s, remaining_s), return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    response = self._task_response(task, tasks[task])
                    responses.append(response)
                    self._emit(
                        turn_id, FusionStage.MODEL_COMPLETED,
                        f"{tasks[task].display_name}: {response.status.value}",
                        model_id=response.model_id, completed=len(responses), total=len(models),
                    )

                if early_completion and pending and self._should_complete_early(responses, start, deadline_ms):
                    self._stats["early_completions"] += 1
                    cutoff_reason = "early completion"
                    self._emit(
                        turn_id, FusionStage.EARLY_COMPLETION,
                        f"Enough confident answers, cancelling {len(pending)} straggler(s)",
                        completed=len(responses), total=len(models),
                    )
                    break
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for task in pending:
            model = tasks[task]
            logger.info(f"{model.id} abandoned: {cutoff_reason}")
            responses.append(
                ModelResponse(
                    model_id=model.id,
                    text="",
                    confidence_score=0.0,
                    processing_time_ms=self._elapsed_ms(start),
                    status=ResponseStatus.TIMEOUT,
                    error_detail=f"CANCELLED: {cutoff_reason}",
                )
            )

        return await self._synthesize(strategy, models, prompt, responses, deadline_ms, start, turn_id)

    def _should_complete_early(self, responses: List[ModelResponse], start: float, deadline_ms: float) -> bool:
        successes = [r for r in responses if r.ok]
        if not successes:
            return False

        c = self._config
        fraction = self._elapsed_ms(start) / deadline_ms
        if len(successes) >= 2 and fraction > c.early_two_fraction:
            mean = sum(r.confidence_score for r in successes) / len(successes)
            if mean >= c.quality_threshold:
                return True
        best = max(r.confidence_score for r in successes)
        return fraction > c.early_one_fraction and best >= c.quality_threshold + c.early_one_margin

    # =========================================================================
    # SEQUENTIAL
    # =========================================================================

    async def _run_sequential(
        self,
        models: List[ModelDescriptor],
        prompt: str,
        context: Sequence[ChatMessage],
        deadline_ms: float,
        start: float,
        turn_id: int,
    ) -> FusionResult:
        strategy = RoutingStrategy.FUSION_SEQUENTIAL
        first, enhancer = models[0], models[1]

        self._emit(turn_id, FusionStage.QUERYING, f"Drafting with {first.display_name}", total=2)
        draft = await self._invoker.invoke(
            first,
            build_role_prompt(prompt, first.role),
            context,
            self._call_deadline(first, deadline_ms, start),
            params=self._params(first, prompt),
        )
        self._emit(turn_id, FusionStage.MODEL_COMPLETED, draft.status.value, model_id=first.id, completed=1, total=2)

        if not draft.ok:
            # No draft to enhance, ask the second model directly
            logger.warning(f"Sequential draft from {first.id} failed ({draft.error_detail}), querying {enhancer.id}")
            direct = await self._invoker.invoke(
                enhancer,
                build_role_prompt(prompt, enhancer.role),
                context,
                self._call_deadline(enhancer, deadline_ms, start),
                params=self._params(enhancer, prompt),
            )
            return self._single_contributor(strategy, [draft, direct], start)

        if self._remaining_ms(deadline_ms, start) < self._config.min_synthesis_budget_ms:
            self._stats["synthesis_skipped"] += 1
            return self._single_contributor(strategy, [draft], start)

        self._emit(turn_id, FusionStage.SYNTHESIZING, f"Enhancing with {enhancer.display_name}", completed=1, total=2)
        enhanced = await self._invoker.invoke(
            enhancer,
            build_enhancement_prompt(prompt, draft.text),
            context,
            self._call_deadline(enhancer, deadline_ms, start),
            params=self._params(enhancer, prompt),
        )
        if not enhanced.ok:
            self._stats["synthesis_failures"] += 1
            logger.warning(f"Enhancement by {enhancer.id} failed ({enhanced.error_detail}), returning draft")
            return self._single_contributor(strategy, [draft, enhanced], start)

        return FusionResult(
            fused_text=enhanced.text,
            contributing_models=[first.id, enhancer.id],
            overall_confidence=self._fused_confidence([draft, enhanced]),
            strategy_used=strategy.value,
            total_processing_time_ms=self._elapsed_ms(start),
            synthesis_model=enhancer.id,
            individual_responses=[draft, enhanced],
        )

    # =========================================================================
    # SYNTHESIS
    # =========================================================================

    async def _synthesize(
        self,
        strategy: RoutingStrategy,
        models: List[ModelDescriptor],
        prompt: str,
        responses: List[ModelResponse],
        deadline_ms: float,
        start: float,
        turn_id: int,
    ) -> FusionResult:
        priority = {m.id: i for i, m in enumerate(models)}
        successes = sorted(
            (r for r in responses if r.ok),
            key=lambda r: (-r.confidence_score, priority.get(r.model_id, len(priority))),
        )

        if len(successes) < 2:
            return self._single_contributor(strategy, responses, start)

        c = self._config
        best = successes[0]
        remaining_ms = self._remaining_ms(deadline_ms, start)
        if remaining_ms < c.min_synthesis_budget_ms:
            self._stats["synthesis_skipped"] += 1
            logger.warning(f"Skipping synthesis ({remaining_ms:.0f}ms left), using {best.model_id}")
            return self._best_verbatim(strategy, best, responses, start)

        if strategy is RoutingStrategy.FUSION_CONSENSUS:
            top = successes
            synthesis_prompt = build_consensus_prompt(prompt, top, c.synthesis_max_chars)
        else:
            top = successes[: c.synthesis_top_k]
            synthesis_prompt = build_synthesis_prompt(prompt, top, c.synthesis_max_chars)

        synthesizer = self._registry.primary
        self._emit(
            turn_id, FusionStage.SYNTHESIZING,
            f"Merging {len(top)} responses with {synthesizer.display_name}",
            completed=len(responses), total=len(models),
        )
        self._stats["synthesis_calls"] += 1
        merged = await self._invoker.invoke(
            synthesizer,
            synthesis_prompt,
            (),
            min(c.synthesis_timeout_ms, remaining_ms),
            params=GenerationParams(
                temperature=self._generation.synthesis_temperature,
                max_tokens=self._generation.synthesis_max_tokens,
            ),
        )
        if not merged.ok:
            self._stats["synthesis_failures"] += 1
            logger.warning(f"Synthesis failed ({merged.error_detail}), using {best.model_id}")
            return self._best_verbatim(strategy, best, responses, start)

        contributing = sorted((r.model_id for r in top), key=lambda mid: priority.get(mid, len(priority)))
        return FusionResult(
            fused_text=merged.text,
            contributing_models=contributing,
            overall_confidence=self._fused_confidence(top),
            strategy_used=strategy.value,
            total_processing_time_ms=self._elapsed_ms(start),
            synthesis_model=synthesizer.id,
            individual_responses=responses,
        )

    def _single_contributor(
        self,
        strategy: RoutingStrategy,
        responses: List[ModelResponse],
        start: float,
    ) -> FusionResult:
        successes = [r for r in responses if r.ok]
        if not successes:
            raise TotalFusionFailure(strategy=strategy.value, responses=list(responses))

        only = max(successes, key=lambda r: r.confidence_score)
        return FusionResult(
            fused_text=only.text,
            contributing_models=[only.model_id],
            overall_confidence=only.confidence_score,
            strategy_used=f"{strategy.value}{SINGLE_CONTRIBUTOR_SUFFIX}",
            total_processing_time_ms=self._elapsed_ms(start),
            individual_responses=list(responses),
        )

    def _best_verbatim(
        self,
        strategy: RoutingStrategy,
        best: ModelResponse,
        responses: List[ModelResponse],
        start: float,
    ) -> FusionResult:
        return FusionResult(
            fused_text=best.text,
            contributing_models=[best.model_id],
            overall_confidence=best.confidence_score,
            strategy_used=strategy.value,
            total_processing_time_ms=self._elapsed_ms(start),
            synthesis_model=best.model_id,
            individual_responses=list(responses),
        )

    def _fused_confidence(self, responses: Sequence[ModelResponse]) -> float:
        mean = sum(r.confidence_score for r in responses) / len(responses)
        return min(max(mean + self._config.fusion_bonus, 0.0), 1.0)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _params(self, model: ModelDescriptor, query: str) -> GenerationParams:
        return generation_params(model, query, self._generation.role_token_caps)

    def _call_deadline(self, model: ModelDescriptor, deadline_ms: float, start: float) -> float:
        remaining = self._remaining_ms(deadline_ms, start)
        if model.budget_ms is not None:
            remaining = min(remaining, model.budget_ms)
        return max(remaining, 0.0)

    def _remaining_ms(self, deadline_ms: float, start: float) -> float:
        return deadline_ms - self._elapsed_ms(start)

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.monotonic() - start) * 1000.0

    @staticmethod
    def _task_response(task: "asyncio.Task[ModelResponse]", model: ModelDescriptor) -> ModelResponse:
        exc = task.exception()
        if exc is None:
            return task.result()
        logger.error(f"Invoker raised for {model.id}: {exc!r}")
        return ModelResponse(
            model_id=model.id,
            text="",
            confidence_score=0.0,
            processing_time_ms=0.0,
            status=ResponseStatus.ERROR,
            error_detail=ErrorClassifier.describe(exc),
        )

    def _emit(
        self,
        turn_id: int,
        stage: FusionStage,
        message: str,
        model_id: Optional[str] = None,
        completed: int = 0,
        total: int = 0,
    ) -> None:
        self._events.emit(turn_id, stage, message, model_id=model_id, completed_models=completed, total_models=total)

    def get_statistics(self) -> Dict[str, Any]:
        return dict(self._stats)


__all__ = [
    "FusionCoordinator",
]

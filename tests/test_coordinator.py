"""Tests for FusionCoordinator strategies, early completion and synthesis."""

import asyncio
import time

import pytest

from qora_fusion.core.availability_tracker import AvailabilityTracker
from qora_fusion.core.coordinator import FusionCoordinator
from qora_fusion.core.errors import TotalFusionFailure
from qora_fusion.core.fusion_config import CoordinatorConfig, GenerationConfig
from qora_fusion.core.fusion_types import (
    ModelDescriptor,
    ModelRole,
    ResponseStatus,
    RoutingDecision,
    RoutingStrategy,
)
from qora_fusion.core.invoker import ModelInvoker
from qora_fusion.core.model_registry import DEFAULT_MODELS, ModelRegistry
from qora_fusion.core.progress import FusionEventStream, FusionStage

from fakes import HIGH_TEXT, LOW_TEXT, MEDIUM_TEXT, FakeEndpoint, Reply, last_user_content

QUERY = "Compare B-trees and LSM trees"


def make_coordinator(endpoint, registry, **overrides):
    config = CoordinatorConfig(
        global_deadline_ms=1000.0,
        poll_interval_ms=20.0,
        min_synthesis_budget_ms=50.0,
        synthesis_timeout_ms=500.0,
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    events = FusionEventStream()
    invoker = ModelInvoker(endpoint, AvailabilityTracker(registry))
    return FusionCoordinator(invoker, registry, config, GenerationConfig(), events), events


def decide(strategy, *models, canned=None):
    return RoutingDecision(strategy=strategy, selected_models=tuple(models), reason="test", canned_response=canned)


@pytest.fixture
def primary(models):
    return models[ModelRole.PRIMARY]


@pytest.fixture
def quality(models):
    return models[ModelRole.QUALITY]


@pytest.fixture
def creative(models):
    return models[ModelRole.CREATIVE]


class TestSingle:

    @pytest.mark.asyncio
    async def test_single_fast_uses_raw_prompt(self, registry, primary):
        endpoint = FakeEndpoint({primary.id: Reply(LOW_TEXT)})
        coordinator, _ = make_coordinator(endpoint, registry)

        result = await coordinator.run(decide(RoutingStrategy.SINGLE_FAST, primary), "What is 2+2?")

        assert result.strategy_used == "single-fast"
        assert result.fused_text == LOW_TEXT
        assert result.contributing_models == [primary.id]
        assert result.synthesis_model is None
        assert last_user_content(endpoint.calls_for(primary.id)[0]) == "What is 2+2?"

    @pytest.mark.asyncio
    async def test_single_failure_raises(self, registry, quality):
        endpoint = FakeEndpoint({quality.id: Reply(error=ConnectionError("reset"))})
        coordinator, events = make_coordinator(endpoint, registry)

        with pytest.raises(TotalFusionFailure) as info:
            await coordinator.run(decide(RoutingStrategy.SINGLE_QUALITY, quality), QUERY, turn_id=3)

        assert info.value.strategy == "single-quality"
        assert events.history(3)[-1].stage is FusionStage.ERROR

    @pytest.mark.asyncio
    async def test_vision_call_carries_images(self, registry, models):
        vision = models[ModelRole.VISION]
        endpoint = FakeEndpoint({vision.id: Reply(MEDIUM_TEXT)})
        coordinator, _ = make_coordinator(endpoint, registry)

        result = await coordinator.run(
            decide(RoutingStrategy.SINGLE_QUALITY, vision), "What is in this picture?",
            image_urls=["data:image/png;base64,AAAA"],
        )

        content = endpoint.calls_for(vision.id)[0][-1]["content"]
        assert result.contributing_models == [vision.id]
        assert content[0] == {"type": "text", "text": "What is in this picture?"}
        assert content[1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}

    @pytest.mark.asyncio
    async def test_canned_decision_makes_no_calls(self, registry, primary):
        endpoint = FakeEndpoint()
        coordinator, _ = make_coordinator(endpoint, registry)

        result = await coordinator.run(
            decide(RoutingStrategy.SINGLE_FAST, primary, canned="Please describe the image."), "look"
        )

        assert result.fused_text == "Please describe the image."
        assert result.strategy_used == "vision-fallback"
        assert result.overall_confidence == 0.0
        assert endpoint.calls == []


class TestParallel:

    @pytest.mark.asyncio
    async def test_both_succeed_then_synthesis(self, registry, primary, quality):
        endpoint = FakeEndpoint({
            primary.id: [Reply(HIGH_TEXT, delay=0.01), Reply("Merged answer", delay=0.01)],
            quality.id: Reply(LOW_TEXT, delay=0.02),
        })
        coordinator, _ = make_coordinator(endpoint, registry)

        result = await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, quality), QUERY)

        assert result.fused_text == "Merged answer"
        assert result.strategy_used == "fusion-parallel"
        assert result.contributing_models == [primary.id, quality.id]
        assert result.synthesis_model == primary.id
        assert result.overall_confidence == pytest.approx(min((1.0 + 0.5) / 2 + 0.15, 1.0))
        assert len(result.individual_responses) == 2

        synthesis_messages = endpoint.calls_for(primary.id)[1]
        prompt = last_user_content(synthesis_messages)
        assert prompt.startswith("Quickly combine these AI responses")
        assert prompt.index(HIGH_TEXT[:40]) < prompt.index(LOW_TEXT)
        synthesis_params = endpoint.calls[-1][2]
        assert synthesis_params.temperature == 0.1
        assert synthesis_params.max_tokens == 1200

    @pytest.mark.asyncio
    async def test_role_prompts(self, registry, primary, quality):
        endpoint = FakeEndpoint({primary.id: Reply(LOW_TEXT), quality.id: Reply(LOW_TEXT)})
        coordinator, _ = make_coordinator(endpoint, registry)

        await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, quality), QUERY)

        assert "Primary Analysis AI" in last_user_content(endpoint.calls_for(primary.id)[0])
        assert "Analytical AI" in last_user_content(endpoint.calls_for(quality.id)[0])
        assert QUERY in last_user_content(endpoint.calls_for(quality.id)[0])

    @pytest.mark.asyncio
    async def test_synthesis_truncates_responses(self, registry, primary, quality):
        endpoint = FakeEndpoint({
            primary.id: [Reply(HIGH_TEXT), Reply("Merged")],
            quality.id: Reply(MEDIUM_TEXT),
        })
        coordinator, _ = make_coordinator(endpoint, registry, synthesis_max_chars=20)

        await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, quality), QUERY)

        prompt = last_user_content(endpoint.calls_for(primary.id)[1])
        assert f"**1:** {HIGH_TEXT[:20]}\n" in prompt
        assert HIGH_TEXT[:21] not in prompt

    @pytest.mark.asyncio
    async def test_early_completion_with_two_confident_answers(self, registry, primary, quality, creative):
        endpoint = FakeEndpoint({
            primary.id: [Reply(HIGH_TEXT, delay=0.01), Reply("Merged answer", delay=0.01)],
            creative.id: Reply(HIGH_TEXT, delay=0.01),
            quality.id: Reply(HIGH_TEXT, delay=5.0),
        })
        coordinator, events = make_coordinator(endpoint, registry)

        start = time.monotonic()
        result = await coordinator.run(
            decide(RoutingStrategy.FUSION_PARALLEL, primary, quality, creative), QUERY, turn_id=1
        )
        elapsed = time.monotonic() - start
        await asyncio.sleep(0.02)

        assert 0.6 <= elapsed < 1.0
        assert result.fused_text == "Merged answer"
        assert result.contributing_models == [primary.id, creative.id]
        assert quality.id in endpoint.cancelled
        abandoned = next(r for r in result.individual_responses if r.model_id == quality.id)
        assert abandoned.status is ResponseStatus.TIMEOUT
        assert abandoned.error_detail == "CANCELLED: early completion"
        assert FusionStage.EARLY_COMPLETION in [e.stage for e in events.history(1)]
        assert coordinator.get_statistics()["early_completions"] == 1

    @pytest.mark.asyncio
    async def test_early_completion_with_one_very_confident_answer(self, registry, primary, quality):
        endpoint = FakeEndpoint({
            primary.id: Reply(HIGH_TEXT, delay=0.01),
            quality.id: Reply(HIGH_TEXT, delay=5.0),
        })
        coordinator, _ = make_coordinator(endpoint, registry)

        start = time.monotonic()
        result = await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, quality), QUERY)
        elapsed = time.monotonic() - start

        assert 0.8 <= elapsed < 1.0
        assert result.strategy_used == "fusion-parallel-single-contributor"
        assert result.contributing_models == [primary.id]
        assert len(endpoint.calls_for(primary.id)) == 1

    @pytest.mark.asyncio
    async def test_low_confidence_waits_for_deadline(self, registry, primary, quality):
        endpoint = FakeEndpoint({
            primary.id: Reply(LOW_TEXT, delay=0.01),
            quality.id: Reply(HIGH_TEXT, delay=5.0),
        })
        coordinator, _ = make_coordinator(endpoint, registry, global_deadline_ms=400.0)

        start = time.monotonic()
        result = await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, quality), QUERY)
        elapsed = time.monotonic() - start

        assert 0.35 <= elapsed < 0.6
        assert result.contributing_models == [primary.id]
        assert coordinator.get_statistics()["early_completions"] == 0

    @pytest.mark.asyncio
    async def test_all_hanging_models_bounded_by_deadline(self, registry, primary, quality, creative):
        endpoint = FakeEndpoint(default=Reply(HIGH_TEXT, delay=5.0))
        coordinator, _ = make_coordinator(endpoint, registry, global_deadline_ms=300.0)

        start = time.monotonic()
        with pytest.raises(TotalFusionFailure) as info:
            await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, quality, creative), QUERY)
        elapsed = time.monotonic() - start

        assert elapsed < 0.3 + 0.02 + 0.2
        assert len(info.value.responses) == 3
        assert all(not r.ok for r in info.value.responses)

    @pytest.mark.asyncio
    async def test_single_contributor_skips_synthesis(self, registry, primary, quality):
        endpoint = FakeEndpoint({
            primary.id: Reply(MEDIUM_TEXT),
            quality.id: Reply(error=ConnectionError("reset")),
        })
        coordinator, _ = make_coordinator(endpoint, registry)

        result = await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, quality), QUERY)

        assert result.strategy_used == "fusion-parallel-single-contributor"
        assert result.fused_text == MEDIUM_TEXT
        assert result.synthesis_model is None
        assert len(endpoint.calls_for(primary.id)) == 1

    @pytest.mark.asyncio
    async def test_synthesis_skipped_when_out_of_time(self, registry, primary, quality):
        endpoint = FakeEndpoint({primary.id: Reply(HIGH_TEXT), quality.id: Reply(LOW_TEXT)})
        coordinator, _ = make_coordinator(endpoint, registry, min_synthesis_budget_ms=10_000.0)

        result = await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, quality), QUERY)

        assert result.strategy_used == "fusion-parallel"
        assert result.fused_text == HIGH_TEXT
        assert result.synthesis_model == primary.id
        assert result.contributing_models == [primary.id]
        assert len(endpoint.calls_for(primary.id)) == 1
        assert coordinator.get_statistics()["synthesis_skipped"] == 1

    @pytest.mark.asyncio
    async def test_failed_synthesis_returns_best_answer(self, registry, primary, quality):
        endpoint = FakeEndpoint({
            primary.id: [Reply(LOW_TEXT), Reply(error=ConnectionError("reset"))],
            quality.id: Reply(HIGH_TEXT),
        })
        coordinator, _ = make_coordinator(endpoint, registry)

        result = await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, quality), QUERY)

        assert result.fused_text == HIGH_TEXT
        assert result.contributing_models == [quality.id]
        assert coordinator.get_statistics()["synthesis_failures"] == 1

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, registry, primary, quality, creative):
        endpoint = FakeEndpoint(default=Reply(LOW_TEXT))
        coordinator, _ = make_coordinator(endpoint, registry, max_concurrent_models=2)

        await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, quality, creative), QUERY)

        assert endpoint.calls_for(creative.id) == []

    @pytest.mark.asyncio
    async def test_model_budget_caps_call(self):
        slow = ModelDescriptor(id="slow/q", display_name="Slow", role=ModelRole.QUALITY, budget_ms=50.0)
        registry = ModelRegistry([DEFAULT_MODELS[0], slow])
        primary = registry.primary
        endpoint = FakeEndpoint({primary.id: Reply(MEDIUM_TEXT), slow.id: Reply(HIGH_TEXT, delay=2.0)})
        coordinator, _ = make_coordinator(endpoint, registry)

        start = time.monotonic()
        result = await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, slow), QUERY)

        assert time.monotonic() - start < 0.5
        assert result.contributing_models == [primary.id]

    @pytest.mark.asyncio
    async def test_progress_events(self, registry, primary, quality):
        endpoint = FakeEndpoint({primary.id: [Reply(HIGH_TEXT), Reply("Merged")], quality.id: Reply(LOW_TEXT)})
        coordinator, events = make_coordinator(endpoint, registry)

        await coordinator.run(decide(RoutingStrategy.FUSION_PARALLEL, primary, quality), QUERY, turn_id=7)

        stages = [e.stage for e in events.history(7)]
        assert stages == [
            FusionStage.INITIALIZING,
            FusionStage.QUERYING,
            FusionStage.MODEL_COMPLETED,
            FusionStage.MODEL_COMPLETED,
            FusionStage.SYNTHESIZING,
        ]


class TestConsensus:

    @pytest.mark.asyncio
    async def test_waits_for_every_model(self, registry, primary, quality, creative):
        endpoint = FakeEndpoint({
            primary.id: [Reply(HIGH_TEXT, delay=0.01), Reply("Consensus answer", delay=0.01)],
            creative.id: Reply(HIGH_TEXT, delay=0.01),
            quality.id: Reply(MEDIUM_TEXT, delay=0.7),
        })
        coordinator, _ = make_coordinator(endpoint, registry)

        result = await coordinator.run(
            decide(RoutingStrategy.FUSION_CONSENSUS, primary, quality, creative), QUERY
        )

        assert result.strategy_used == "fusion-consensus"
        assert result.fused_text == "Consensus answer"
        assert result.contributing_models == [primary.id, quality.id, creative.id]
        assert endpoint.cancelled == []
        assert "Cross-check" in last_user_content(endpoint.calls_for(primary.id)[1])


class TestSequential:

    @pytest.mark.asyncio
    async def test_draft_then_enhancement(self, registry, primary, quality):
        endpoint = FakeEndpoint({primary.id: Reply(MEDIUM_TEXT), quality.id: Reply("Enhanced answer")})
        coordinator, _ = make_coordinator(endpoint, registry)

        result = await coordinator.run(decide(RoutingStrategy.FUSION_SEQUENTIAL, primary, quality), QUERY)

        assert result.strategy_used == "fusion-sequential"
        assert result.fused_text == "Enhanced answer"
        assert result.contributing_models == [primary.id, quality.id]
        assert result.synthesis_model == quality.id
        assert result.overall_confidence == pytest.approx((0.8 + 0.5) / 2 + 0.15)
        enhancement = last_user_content(endpoint.calls_for(quality.id)[0])
        assert "enhance and expand" in enhancement
        assert MEDIUM_TEXT in enhancement

    @pytest.mark.asyncio
    async def test_failed_draft_asks_second_model_directly(self, registry, primary, quality):
        endpoint = FakeEndpoint({
            primary.id: Reply(error=ConnectionError("reset")),
            quality.id: Reply(HIGH_TEXT),
        })
        coordinator, _ = make_coordinator(endpoint, registry)

        result = await coordinator.run(decide(RoutingStrategy.FUSION_SEQUENTIAL, primary, quality), QUERY)

        assert result.strategy_used == "fusion-sequential-single-contributor"
        assert result.contributing_models == [quality.id]
        assert "Analytical AI" in last_user_content(endpoint.calls_for(quality.id)[0])

    @pytest.mark.asyncio
    async def test_failed_enhancement_returns_draft(self, registry, primary, quality):
        endpoint = FakeEndpoint({
            primary.id: Reply(MEDIUM_TEXT),
            quality.id: Reply(error=ConnectionError("reset")),
        })
        coordinator, _ = make_coordinator(endpoint, registry)

        result = await coordinator.run(decide(RoutingStrategy.FUSION_SEQUENTIAL, primary, quality), QUERY)

        assert result.fused_text == MEDIUM_TEXT
        assert result.contributing_models == [primary.id]

    @pytest.mark.asyncio
    async def test_both_fail(self, registry, primary, quality):
        endpoint = FakeEndpoint(default=Reply(error=ConnectionError("reset")))
        coordinator, _ = make_coordinator(endpoint, registry)

        with pytest.raises(TotalFusionFailure):
            await coordinator.run(decide(RoutingStrategy.FUSION_SEQUENTIAL, primary, quality), QUERY)

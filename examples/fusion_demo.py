#!/usr/bin/env python3
"""
Example: Run fused turns against OpenRouter

This example demonstrates:
- Loading configuration from a preset, a YAML file and the environment
- A short question answered by the fast model alone
- A long technical question fused across the fast and quality models
- Following progress events for a turn

Requires OPENROUTER_API_KEY in the environment.
"""
import argparse
import asyncio
import logging

from qora_fusion import TurnInput, create_orchestrator, load_config
from qora_fusion.core.fusion_types import ChatMessage

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

QUESTIONS = [
    "What is 2+2?",
    (
        "Compare B-trees and LSM trees as storage engine designs. Walk through the "
        "architecture of each, explain how the write path and read path differ, and "
        "analyze the trade-offs for a workload with heavy ingest and occasional range "
        "scans. Include an example of when compaction becomes the bottleneck."
    ),
]


async def follow_progress(subscription, turn_id: int) -> None:
    async for event in subscription:
        logger.info(f"[turn {turn_id}] {event.stage.value}: {event.message}")


async def main() -> None:
    parser = argparse.ArgumentParser(description="Qora fusion demo")
    parser.add_argument("--config", default=None, help="YAML/JSON config file")
    parser.add_argument("--preset", default=None, help="turbo or standard")
    parser.add_argument("question", nargs="*", help="Question(s) to ask")
    args = parser.parse_args()

    config = load_config(args.config, preset=args.preset)
    questions = args.question or QUESTIONS
    context = []

    async with create_orchestrator(config) as fusion:
        for turn_id, question in enumerate(questions, start=1):
            watcher = asyncio.ensure_future(follow_progress(fusion.subscribe(turn_id=turn_id), turn_id))
            result = await fusion.process_turn(
                TurnInput(message=question, conversation_context=tuple(context)),
                turn_id=turn_id,
            )
            await watcher

            print(f"\nQuestion: {question}")
            print(f"Answer:   {result.fused_text}")
            print(
                f"Strategy: {result.strategy_used} | confidence {result.overall_confidence:.2f} | "
                f"{result.total_processing_time_ms:.0f}ms | models {', '.join(result.contributing_models) or '-'}"
            )

            context.append(ChatMessage("user", question))
            context.append(ChatMessage("assistant", result.fused_text))

        print(f"\nStatistics: {fusion.get_statistics()}")


if __name__ == "__main__":
    asyncio.run(main())

"""
Test doubles for the fusion core: a scripted inference endpoint and a
manually stepped clock.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from qora_fusion.core.fusion_types import GenerationParams
from qora_fusion.core.inference_endpoint import CompletionResult

# score_confidence: 0.5 + 0.2 (long) + 0.15 (list) + 0.15 (example) = 1.0
HIGH_TEXT = (
    "Here is a structured answer covering the main points in detail.\n"
    "1. First, the core idea and why it matters for this question.\n"
    "2. Second, how it behaves in practice, for example under heavy load.\n"
    "3. Third, the limits you should keep in mind when applying it."
)
# 0.5 + 0.15 (list) + 0.15 (example) = 0.8
MEDIUM_TEXT = "1. Short point, for example this one."
# 0.5
LOW_TEXT = "A brief reply."


@dataclass
class Reply:
    """One scripted endpoint outcome."""
    text: str = LOW_TEXT
    delay: float = 0.0
    error: Optional[BaseException] = None
    # None means a token count derived from the text
    usage: Any = None


Script = Union[Reply, List[Reply]]


class FakeEndpoint:
    """
    InferenceEndpoint that answers from a per-model script.

    A list script is consumed one reply per call; its last reply repeats.
    """

    def __init__(self, script: Optional[Dict[str, Script]] = None, default: Optional[Reply] = None) -> None:
        self.script: Dict[str, Script] = dict(script or {})
        self.default = default or Reply()
        self.calls: List[Tuple[str, List[Dict[str, Any]], GenerationParams]] = []
        self.cancelled: List[str] = []
        self.closed = False

    def _next_reply(self, model_id: str) -> Reply:
        entry = self.script.get(model_id, self.default)
        if isinstance(entry, list):
            return entry.pop(0) if len(entry) > 1 else entry[0]
        return entry

    def calls_for(self, model_id: str) -> List[List[Dict[str, Any]]]:
        return [messages for mid, messages, _ in self.calls if mid == model_id]

    async def complete(
        self,
        model_id: str,
        messages: List[Dict[str, Any]],
        params: GenerationParams,
    ) -> CompletionResult:
        self.calls.append((model_id, messages, params))
        reply = self._next_reply(model_id)
        try:
            await asyncio.sleep(reply.delay)
        except asyncio.CancelledError:
            self.cancelled.append(model_id)
            raise
        if reply.error is not None:
            raise reply.error
        usage = {"total_tokens": len(reply.text)} if reply.usage is None else reply.usage
        return CompletionResult(text=reply.text, model=model_id, usage=usage)

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Monotonic clock in seconds, advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def last_user_content(messages: Sequence[Dict[str, Any]]) -> str:
    content = messages[-1]["content"]
    if isinstance(content, list):
        return " ".join(part.get("text", "") for part in content)
    return content

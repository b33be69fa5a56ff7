"""
Fusion Types - Shared Data Model
================================

Immutable descriptors and per-turn records passed between the classifier,
router, invoker, coordinator and fallback controller.

LIFETIMES:
    ModelDescriptor      process-wide, built once from configuration
    ComplexityProfile    per turn
    RoutingDecision      per turn
    ModelResponse        per invocation, held for one fusion round
    FusionResult         per turn, returned to the caller
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


# =============================================================================
# MODELS
# =============================================================================

class ModelRole(Enum):
    """Role/specialty tier of a hosted model."""
    PRIMARY = "primary"      # fast, reliable, always available
    QUALITY = "quality"      # reasoning, slower, rate limited
    CREATIVE = "creative"
    VISION = "vision"


@dataclass(frozen=True)
class ModelDescriptor:
    """Static description of one hosted model backend."""
    id: str
    display_name: str
    role: ModelRole
    specialties: FrozenSet[str] = frozenset()
    declared_reliability: float = 0.9
    declared_avg_latency_ms: float = 4000.0

    # Rate limiting / budgets
    cooldown_ms: float = 0.0
    budget_ms: Optional[float] = None

    # Generation defaults
    max_tokens: int = 1500
    temperature: float = 0.7

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "role": self.role.value,
            "specialties": sorted(self.specialties),
            "reliability": self.declared_reliability,
            "avg_latency_ms": self.declared_avg_latency_ms,
            "cooldown_ms": self.cooldown_ms,
            "budget_ms": self.budget_ms,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }


@dataclass(frozen=True)
class GenerationParams:
    """Sampling parameters for one inference call."""
    temperature: float = 0.7
    max_tokens: int = 1500


# =============================================================================
# CLASSIFICATION
# =============================================================================

class ComplexityCategory(Enum):
    """Content categories detected by the classifier."""
    TECHNICAL = "technical"
    PROGRAMMING = "programming"
    EDUCATIONAL = "educational"
    ANALYTICAL = "analytical"
    CREATIVE = "creative"
    RESEARCH = "research"


@dataclass(frozen=True)
class ComplexityProfile:
    """Complexity/role profile of one input message."""
    score: int
    matched_categories: FrozenSet[ComplexityCategory]
    requires_high_quality: bool
    is_multi_dimensional: bool
    length: int = 0

    def has(self, category: ComplexityCategory) -> bool:
        return category in self.matched_categories

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "matched_categories": sorted(c.value for c in self.matched_categories),
            "requires_high_quality": self.requires_high_quality,
            "is_multi_dimensional": self.is_multi_dimensional,
            "length": self.length,
        }


# =============================================================================
# ROUTING
# =============================================================================

class RoutingStrategy(Enum):
    """Execution strategy chosen by the router."""
    SINGLE_FAST = "single-fast"
    SINGLE_QUALITY = "single-quality"
    FUSION_PARALLEL = "fusion-parallel"
    FUSION_SEQUENTIAL = "fusion-sequential"
    FUSION_CONSENSUS = "fusion-consensus"

    @property
    def is_fusion(self) -> bool:
        return self.value.startswith("fusion-")


@dataclass(frozen=True)
class RoutingDecision:
    """
    Result of one routing pass.

    When ``canned_response`` is set the coordinator returns it verbatim and
    makes no network call.
    """
    strategy: RoutingStrategy
    selected_models: Tuple[ModelDescriptor, ...]
    reason: str
    canned_response: Optional[str] = None

    @property
    def is_canned(self) -> bool:
        return self.canned_response is not None

    @property
    def model_ids(self) -> List[str]:
        return [m.id for m in self.selected_models]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "selected_models": self.model_ids,
            "reason": self.reason,
            "canned": self.is_canned,
        }


# =============================================================================
# RESPONSES
# =============================================================================

class ResponseStatus(Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass
class ModelResponse:
    """Outcome of one invoker call. Failures are values, never exceptions."""
    model_id: str
    text: str
    confidence_score: float
    processing_time_ms: float
    status: ResponseStatus
    error_detail: Optional[str] = None
    from_cache: bool = False
    usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is ResponseStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "status": self.status.value,
            "confidence_score": round(self.confidence_score, 3),
            "processing_time_ms": round(self.processing_time_ms, 2),
            "error_detail": self.error_detail,
            "from_cache": self.from_cache,
        }


# Strategy labels that are not RoutingStrategy values
STRATEGY_VISION_FALLBACK = "vision-fallback"
STRATEGY_FALLBACK_SINGLE = "fallback-single"
STRATEGY_FALLBACK_STATIC = "fallback-static"
SINGLE_CONTRIBUTOR_SUFFIX = "-single-contributor"


@dataclass
class FusionResult:
    """Final answer for one user turn."""
    fused_text: str
    contributing_models: List[str]
    overall_confidence: float
    strategy_used: str
    total_processing_time_ms: float
    synthesis_model: Optional[str] = None
    individual_responses: List[ModelResponse] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.strategy_used in (STRATEGY_FALLBACK_SINGLE, STRATEGY_FALLBACK_STATIC, STRATEGY_VISION_FALLBACK)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fused_text": self.fused_text,
            "contributing_models": list(self.contributing_models),
            "overall_confidence": round(self.overall_confidence, 3),
            "strategy_used": self.strategy_used,
            "total_processing_time_ms": round(self.total_processing_time_ms, 2),
            "synthesis_model": self.synthesis_model,
            "individual_responses": [r.to_dict() for r in self.individual_responses],
        }


# =============================================================================
# TURN INPUT
# =============================================================================

@dataclass(frozen=True)
class AttachmentRef:
    """Reference to an uploaded attachment (data URL or remote URL)."""
    url: str
    mime_type: str = "image/png"
    name: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class TurnOptions:
    fusion_enabled: bool = True
    force_quality: bool = False
    timeout_ms: Optional[float] = None


@dataclass(frozen=True)
class TurnInput:
    """Inbound request for one user turn."""
    message: str
    attachments: Tuple[AttachmentRef, ...] = ()
    conversation_context: Tuple[ChatMessage, ...] = ()
    options: TurnOptions = field(default_factory=TurnOptions)


@dataclass(frozen=True)
class RoutingHints:
    """Caller-supplied signals the text classifier cannot see."""
    fusion_enabled: bool = True
    force_quality: bool = False
    # image attachments only, other files never route to the vision model
    attachment_count: int = 0
    conversation_context: Tuple[ChatMessage, ...] = ()

    @classmethod
    def from_turn(cls, turn: TurnInput) -> "RoutingHints":
        return cls(
            fusion_enabled=turn.options.fusion_enabled,
            force_quality=turn.options.force_quality,
            attachment_count=sum(1 for a in turn.attachments if a.is_image),
            conversation_context=tuple(turn.conversation_context),
        )


__all__ = [
    "ModelRole",
    "ModelDescriptor",
    "GenerationParams",
    "ComplexityCategory",
    "ComplexityProfile",
    "RoutingStrategy",
    "RoutingDecision",
    "ResponseStatus",
    "ModelResponse",
    "FusionResult",
    "AttachmentRef",
    "ChatMessage",
    "TurnOptions",
    "TurnInput",
    "RoutingHints",
    "STRATEGY_VISION_FALLBACK",
    "STRATEGY_FALLBACK_SINGLE",
    "STRATEGY_FALLBACK_STATIC",
    "SINGLE_CONTRIBUTOR_SUFFIX",
]

"""
Qora Fusion Core - Multi-Model Fan-out and Response Fusion
===========================================================

Core components of the fusion orchestration layer:
- Model Registry and Availability Tracking
- Complexity Classification and Strategy Routing
- Cached, de-duplicated Model Invocation
- Fusion Coordination with early completion and synthesis
- Fallback Control
"""

from qora_fusion.core.fusion_types import (
    AttachmentRef,
    ChatMessage,
    ComplexityCategory,
    ComplexityProfile,
    FusionResult,
    GenerationParams,
    ModelDescriptor,
    ModelResponse,
    ModelRole,
    ResponseStatus,
    RoutingDecision,
    RoutingHints,
    RoutingStrategy,
    TurnInput,
    TurnOptions,
)
from qora_fusion.core.errors import (
    ConfigurationError,
    ErrorCategory,
    ErrorClassifier,
    FusionError,
    InferenceError,
    TotalFusionFailure,
)
from qora_fusion.core.fusion_config import (
    ConfigLoader,
    FusionConfig,
    PRESETS,
    load_config,
)
from qora_fusion.core.model_registry import (
    DEFAULT_MODELS,
    ModelRegistry,
)
from qora_fusion.core.complexity_classifier import (
    ComplexityClassifier,
    classify,
)
from qora_fusion.core.availability_tracker import (
    AvailabilityState,
    AvailabilityTracker,
)
from qora_fusion.core.router import (
    ContextualStrategyPolicy,
    DefaultStrategyPolicy,
    EnsembleStrategyPolicy,
    Router,
    StrategyPolicy,
    role_relevance,
)
from qora_fusion.core.inference_endpoint import (
    CompletionResult,
    InferenceEndpoint,
    OpenRouterEndpoint,
)
from qora_fusion.core.invoker import (
    CacheEntry,
    ModelInvoker,
    ResponseCache,
    prompt_fingerprint,
    score_confidence,
)
from qora_fusion.core.progress import (
    FusionEventStream,
    FusionProgressEvent,
    FusionStage,
)
from qora_fusion.core.coordinator import FusionCoordinator
from qora_fusion.core.fallback import (
    APOLOGY_MESSAGES,
    FallbackController,
)
from qora_fusion.core.orchestrator import (
    FusionOrchestrator,
    create_orchestrator,
)

__all__ = [
    # Types
    "AttachmentRef",
    "ChatMessage",
    "ComplexityCategory",
    "ComplexityProfile",
    "FusionResult",
    "GenerationParams",
    "ModelDescriptor",
    "ModelResponse",
    "ModelRole",
    "ResponseStatus",
    "RoutingDecision",
    "RoutingHints",
    "RoutingStrategy",
    "TurnInput",
    "TurnOptions",
    # Errors
    "ConfigurationError",
    "ErrorCategory",
    "ErrorClassifier",
    "FusionError",
    "InferenceError",
    "TotalFusionFailure",
    # Config
    "ConfigLoader",
    "FusionConfig",
    "PRESETS",
    "load_config",
    # Registry / availability
    "DEFAULT_MODELS",
    "ModelRegistry",
    "AvailabilityState",
    "AvailabilityTracker",
    # Classification / routing
    "ComplexityClassifier",
    "classify",
    "ContextualStrategyPolicy",
    "DefaultStrategyPolicy",
    "EnsembleStrategyPolicy",
    "Router",
    "StrategyPolicy",
    "role_relevance",
    # Invocation
    "CompletionResult",
    "InferenceEndpoint",
    "OpenRouterEndpoint",
    "CacheEntry",
    "ModelInvoker",
    "ResponseCache",
    "prompt_fingerprint",
    "score_confidence",
    # Fusion
    "FusionEventStream",
    "FusionProgressEvent",
    "FusionStage",
    "FusionCoordinator",
    "APOLOGY_MESSAGES",
    "FallbackController",
    "FusionOrchestrator",
    "create_orchestrator",
]

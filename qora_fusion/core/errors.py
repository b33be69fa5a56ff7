"""
Fusion Errors - Taxonomy and Classification
============================================

Failure modes of the fusion core and how they are classified.

PROPAGATION:
    InferenceError      raised by endpoints, absorbed by the invoker into a
                        failed ModelResponse
    TotalFusionFailure  raised by the coordinator when no selected model
                        produced a usable answer, absorbed by the fallback
                        controller
    anything else       caught and logged at the fallback boundary

Nothing but asyncio.CancelledError escapes FusionOrchestrator.process_turn().
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple, Type

import aiohttp

if TYPE_CHECKING:
    from qora_fusion.core.fusion_types import ModelResponse


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================


class ErrorCategory(Enum):
    """Categories of invocation errors."""

    # Transient errors
    TIMEOUT = auto()
    RATE_LIMIT = auto()
    NETWORK = auto()

    # Remote errors
    HTTP_ERROR = auto()
    MALFORMED_RESPONSE = auto()

    # Local
    CANCELLED = auto()
    CONFIGURATION = auto()

    UNKNOWN = auto()

    @property
    def is_transient(self) -> bool:
        return self in (ErrorCategory.TIMEOUT, ErrorCategory.RATE_LIMIT, ErrorCategory.NETWORK)


class FusionError(Exception):
    """Base class for fusion core errors."""


class ConfigurationError(FusionError):
    """Invalid model roster or configuration value."""


@dataclass(eq=False)
class InferenceError(FusionError):
    """Structured failure from one inference endpoint call."""

    category: ErrorCategory
    message: str
    model_id: str = ""
    status_code: Optional[int] = None
    retry_after: Optional[float] = None

    def __str__(self) -> str:
        return f"[{self.category.name}] {self.message}"


@dataclass(eq=False)
class TotalFusionFailure(FusionError):
    """Every model selected for a round failed or timed out."""

    strategy: str
    responses: List["ModelResponse"] = field(default_factory=list)

    def __str__(self) -> str:
        failed = ", ".join(f"{r.model_id}={r.status.value}" for r in self.responses) or "none invoked"
        return f"all models failed for {self.strategy} ({failed})"


class ErrorClassifier:
    """Classifies exceptions into ErrorCategory values."""

    # Checked in order with isinstance, so subclasses go first
    EXCEPTION_MAP: Tuple[Tuple[Type[BaseException], ErrorCategory], ...] = (
        (asyncio.CancelledError, ErrorCategory.CANCELLED),
        (asyncio.TimeoutError, ErrorCategory.TIMEOUT),
        (aiohttp.ContentTypeError, ErrorCategory.MALFORMED_RESPONSE),
        (aiohttp.ClientResponseError, ErrorCategory.HTTP_ERROR),
        (aiohttp.ClientError, ErrorCategory.NETWORK),
        (ConnectionError, ErrorCategory.NETWORK),
        (KeyError, ErrorCategory.MALFORMED_RESPONSE),
        (ValueError, ErrorCategory.MALFORMED_RESPONSE),
    )

    # Message pattern to category
    MESSAGE_PATTERNS: Dict[str, ErrorCategory] = {
        "rate limit": ErrorCategory.RATE_LIMIT,
        "too many requests": ErrorCategory.RATE_LIMIT,
        "429": ErrorCategory.RATE_LIMIT,
        "timeout": ErrorCategory.TIMEOUT,
        "timed out": ErrorCategory.TIMEOUT,
        "connection": ErrorCategory.NETWORK,
    }

    @classmethod
    def classify(cls, error: BaseException) -> ErrorCategory:
        """Classify an exception into an ErrorCategory."""
        if isinstance(error, InferenceError):
            return error.category

        category = ErrorCategory.UNKNOWN
        for exc_type, cat in cls.EXCEPTION_MAP:
            if isinstance(error, exc_type):
                category = cat
                break

        if category in (ErrorCategory.UNKNOWN, ErrorCategory.HTTP_ERROR, ErrorCategory.NETWORK):
            error_msg = str(error).lower()
            for pattern, cat in cls.MESSAGE_PATTERNS.items():
                if pattern in error_msg:
                    category = cat
                    break

        return category

    @classmethod
    def describe(cls, error: BaseException) -> str:
        """Short ``CATEGORY: message`` string for ModelResponse.error_detail."""
        category = cls.classify(error)
        message = error.message if isinstance(error, InferenceError) else str(error)
        return f"{category.name}: {message or type(error).__name__}"


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "ErrorCategory",
    "FusionError",
    "ConfigurationError",
    "InferenceError",
    "TotalFusionFailure",
    "ErrorClassifier",
]

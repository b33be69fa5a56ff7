"""
Qora Fusion - Multi-Model Response Fusion for Hosted LLMs
"""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.3.0"

# Static analyzers don't infer exports provided via `__getattr__`.
if TYPE_CHECKING:
    from qora_fusion.core import (
        FusionConfig,
        FusionOrchestrator,
        FusionResult,
        TurnInput,
        TurnOptions,
        create_orchestrator,
        load_config,
    )


_LAZY_EXPORTS = {
    "FusionConfig",
    "FusionOrchestrator",
    "FusionResult",
    "TurnInput",
    "TurnOptions",
    "create_orchestrator",
    "load_config",
}


# Lazy imports so `import qora_fusion` does not pull in aiohttp
def __getattr__(name):
    if name in _LAZY_EXPORTS:
        from qora_fusion import core

        return getattr(core, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "__version__",
    *sorted(_LAZY_EXPORTS),
]

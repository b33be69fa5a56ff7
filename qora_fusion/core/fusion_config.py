"""
Fusion Configuration Management
================================

Unified configuration for the fusion orchestration core.

The historical "turbo" and "standard" fusion variants are presets over one
configuration object rather than separate code paths.

CONFIGURATION HIERARCHY (highest to lowest priority):
    1. Environment variables (QORA_FUSION_<SECTION>_<KEY>)
    2. Config files (./qora_fusion.yaml, ~/.qora/fusion.yaml, JSON accepted)
    3. Preset ("standard" or "turbo", QORA_FUSION_PRESET)
    4. Default values

The inference API key itself is never stored here; ``endpoint.api_key_env``
names the environment variable it is read from.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from qora_fusion.core.errors import ConfigurationError
from qora_fusion.core.fusion_types import ModelDescriptor, ModelRole
from qora_fusion.core.model_registry import DEFAULT_MODELS, descriptor_from_dict

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION SECTIONS
# =============================================================================


@dataclass
class EndpointConfig:
    """Configuration for the OpenRouter-compatible inference endpoint."""

    base_url: str = "https://openrouter.ai/api/v1/chat/completions"
    api_key_env: str = "OPENROUTER_API_KEY"

    # Attribution headers
    referer: str = "http://localhost:3000"
    title: str = "Qora Fusion"

    # Connection pool
    connect_timeout_s: float = 10.0
    max_connections: int = 20

    def resolve_api_key(self) -> str:
        return os.environ.get(self.api_key_env, "")


@dataclass
class CoordinatorConfig:
    """Configuration for fan-out, early completion and synthesis."""

    fusion_enabled: bool = True
    max_concurrent_models: int = 3

    # Deadlines
    global_deadline_ms: float = 15_000.0
    poll_interval_ms: float = 500.0

    # Early completion
    quality_threshold: float = 0.7
    early_two_fraction: float = 0.6
    early_one_fraction: float = 0.8
    early_one_margin: float = 0.1

    # Synthesis
    fusion_bonus: float = 0.15
    synthesis_timeout_ms: float = 8_000.0
    min_synthesis_budget_ms: float = 1_000.0
    synthesis_max_chars: int = 800
    synthesis_top_k: int = 2


@dataclass
class RoutingConfig:
    """Configuration for strategy selection."""

    # "default" or "ensemble"
    policy: str = "ensemble"
    contextual: bool = True
    history_turns: int = 3


@dataclass
class FallbackConfig:
    """Configuration for the degradation chain."""

    total_timeout_ms: float = 20_000.0
    secondary_timeout_ms: float = 5_000.0


@dataclass
class CacheConfig:
    """Configuration for the response cache."""

    enabled: bool = True
    ttl_ms: float = 30 * 60 * 1000.0
    max_entries: int = 500
    sweep_interval_ms: float = 10 * 60 * 1000.0


@dataclass
class AvailabilityConfig:
    """Per-role success-rate thresholds below which a model is skipped."""

    primary_threshold: float = 0.0
    quality_threshold: float = 0.3
    creative_threshold: float = 0.3
    vision_threshold: float = 0.1

    def threshold_for(self, role: ModelRole) -> float:
        return float(getattr(self, f"{role.value}_threshold"))


@dataclass
class GenerationConfig:
    """Sampling overrides applied on top of each model's defaults."""

    # role value -> max_tokens ceiling, empty means no caps
    role_token_caps: Dict[str, int] = field(default_factory=dict)
    synthesis_temperature: float = 0.1
    synthesis_max_tokens: int = 1200


@dataclass
class FusionConfig:
    """
    Master configuration for the fusion core.

    Aggregates all sections into a single object that can be loaded,
    validated, and shared across components.
    """

    endpoint: EndpointConfig = field(default_factory=EndpointConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    availability: AvailabilityConfig = field(default_factory=AvailabilityConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    models: List[ModelDescriptor] = field(default_factory=lambda: list(DEFAULT_MODELS))

    preset: str = "default"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "models":
                result[f.name] = [m.to_dict() for m in value]
            elif hasattr(value, "__dataclass_fields__"):
                result[f.name] = copy.deepcopy(value.__dict__)
            else:
                result[f.name] = value
        return result

    def update(self, data: Mapping[str, Any]) -> "FusionConfig":
        """Merge a nested mapping into this config in place."""
        for section_name, section_data in data.items():
            if section_name == "models":
                if section_data is not None:
                    self.models = [descriptor_from_dict(m) for m in section_data]
                continue
            section = getattr(self, section_name, None)
            if section is None or not hasattr(section, "__dataclass_fields__"):
                logger.warning(f"Ignoring unknown config section '{section_name}'")
                continue
            if not isinstance(section_data, Mapping):
                raise ConfigurationError(f"config section '{section_name}' must be a mapping")
            for key, value in section_data.items():
                if hasattr(section, key):
                    setattr(section, key, copy.deepcopy(value))
                else:
                    logger.warning(f"Ignoring unknown config key '{section_name}.{key}'")
        return self

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FusionConfig":
        """Create from dictionary."""
        return cls().update(data)


ROUTING_POLICIES = ("default", "ensemble")


# =============================================================================
# PRESETS
# =============================================================================

PRESETS: Dict[str, Dict[str, Any]] = {
    "standard": {
        "coordinator": {
            "global_deadline_ms": 30_000.0,
            "poll_interval_ms": 500.0,
            "synthesis_timeout_ms": 15_000.0,
        },
        "fallback": {"total_timeout_ms": 35_000.0},
    },
    "turbo": {
        "coordinator": {
            "global_deadline_ms": 15_000.0,
            "poll_interval_ms": 500.0,
            "synthesis_timeout_ms": 8_000.0,
        },
        "fallback": {"total_timeout_ms": 20_000.0},
        "generation": {
            "role_token_caps": {"primary": 1500, "quality": 600, "creative": 1200, "vision": 1000},
        },
    },
}


# =============================================================================
# CONFIGURATION LOADER
# =============================================================================


class ConfigLoader:
    """
    Loads FusionConfig from defaults, a preset, config files and the
    environment, then validates it.

    Usage:
        config = ConfigLoader(preset="turbo").load()
        deadline = config.coordinator.global_deadline_ms
    """

    ENV_PREFIX = "QORA_FUSION_"

    def __init__(
        self,
        config_paths: Optional[List[Path]] = None,
        preset: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._config_paths = config_paths if config_paths is not None else self._default_paths()
        self._environ = environ if environ is not None else os.environ
        self._preset = preset or self._environ.get(f"{self.ENV_PREFIX}PRESET")
        self._config = FusionConfig()

    def _default_paths(self) -> List[Path]:
        """Get default config file paths, highest priority first."""
        return [
            Path("qora_fusion.yaml"),
            Path("qora_fusion.json"),
            Path.home() / ".qora" / "fusion.yaml",
            Path.home() / ".qora" / "fusion.json",
        ]

    @property
    def config(self) -> FusionConfig:
        return self._config

    def load(self) -> FusionConfig:
        """Load configuration from all sources."""
        self._config = FusionConfig()

        if self._preset:
            if self._preset not in PRESETS:
                raise ConfigurationError(
                    f"unknown preset '{self._preset}' (expected one of {sorted(PRESETS)})"
                )
            self._config.update(PRESETS[self._preset])
            self._config.preset = self._preset

        # Lowest priority file first so later files win
        for path in reversed(self._config_paths):
            if path.exists():
                self._load_file(path)

        self._apply_env_vars()
        self._validate()

        logger.info(
            f"Fusion configuration loaded (preset={self._config.preset}, "
            f"models={len(self._config.models)}, "
            f"deadline={self._config.coordinator.global_deadline_ms:.0f}ms)"
        )
        return self._config

    def _load_file(self, path: Path) -> None:
        """Merge configuration from one YAML or JSON file."""
        try:
            content = path.read_text()
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content)
            else:
                data = json.loads(content)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return

        if data:
            if not isinstance(data, Mapping):
                raise ConfigurationError(f"config file {path} must contain a mapping")
            self._config.update(data)
            logger.debug(f"Loaded config from {path}")

    def _apply_env_vars(self) -> None:
        """Apply environment variable overrides."""
        for key, value in self._environ.items():
            if not key.startswith(self.ENV_PREFIX) or key == f"{self.ENV_PREFIX}PRESET":
                continue

            # QORA_FUSION_COORDINATOR_GLOBAL_DEADLINE_MS -> coordinator.global_deadline_ms
            config_key = key[len(self.ENV_PREFIX):].lower().replace("_", ".", 1)

            try:
                self.set(config_key, self._parse_env_value(value))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Failed to apply env var {key}: {e}")

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable value."""
        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def set(self, key: str, value: Any) -> None:
        """Set ``section.key`` to ``value``, coerced to the field's type."""
        parts = key.split(".")
        if len(parts) != 2:
            raise KeyError(f"expected 'section.key', got '{key}'")

        section = getattr(self._config, parts[0], None)
        if section is None or not hasattr(section, "__dataclass_fields__") or not hasattr(section, parts[1]):
            raise KeyError(f"unknown config key '{key}'")

        current = getattr(section, parts[1])
        if isinstance(current, bool):
            value = value if isinstance(value, bool) else str(value).lower() in ("true", "yes", "on", "1")
        elif isinstance(current, int):
            value = int(value)
        elif isinstance(current, float):
            value = float(value)
        elif isinstance(current, dict):
            raise TypeError(f"'{key}' cannot be set from the environment")
        setattr(section, parts[1], value)

    def get(self, key: str, default: Any = None) -> Any:
        section_name, _, name = key.partition(".")
        section = getattr(self._config, section_name, None)
        if section is None or not name:
            return default
        return getattr(section, name, default)

    def _validate(self) -> None:
        """Clamp out-of-range values."""
        c = self._config.coordinator

        if c.global_deadline_ms < 100:
            logger.warning("global_deadline_ms too small, setting to 100")
            c.global_deadline_ms = 100.0

        if c.poll_interval_ms < 10:
            logger.warning("poll_interval_ms too small, setting to 10")
            c.poll_interval_ms = 10.0

        if c.max_concurrent_models < 1:
            logger.warning("max_concurrent_models must be >= 1, setting to 1")
            c.max_concurrent_models = 1

        if not 0 <= c.quality_threshold <= 1:
            logger.warning("quality_threshold out of range, setting to 0.7")
            c.quality_threshold = 0.7

        for name in ("early_two_fraction", "early_one_fraction"):
            if not 0 < getattr(c, name) <= 1:
                logger.warning(f"{name} out of range, setting to 1.0")
                setattr(c, name, 1.0)

        if c.synthesis_top_k < 2:
            logger.warning("synthesis_top_k must be >= 2, setting to 2")
            c.synthesis_top_k = 2

        r = self._config.routing
        if r.policy not in ROUTING_POLICIES:
            logger.warning(f"unknown routing policy '{r.policy}', using 'ensemble'")
            r.policy = "ensemble"
        if r.history_turns < 0:
            r.history_turns = 0

        f = self._config.fallback
        if f.secondary_timeout_ms <= 0:
            logger.warning("secondary_timeout_ms must be positive, setting to 5000")
            f.secondary_timeout_ms = 5_000.0
        if f.total_timeout_ms < c.global_deadline_ms:
            logger.warning("total_timeout_ms shorter than global_deadline_ms, raising it to match")
            f.total_timeout_ms = c.global_deadline_ms

        cache = self._config.cache
        if cache.max_entries < 1:
            logger.warning("cache max_entries must be >= 1, setting to 1")
            cache.max_entries = 1
        if cache.ttl_ms <= 0:
            logger.warning("cache ttl_ms must be positive, disabling cache")
            cache.enabled = False

        a = self._config.availability
        for role in ModelRole:
            name = f"{role.value}_threshold"
            value = getattr(a, name)
            if not 0 <= value <= 1:
                clamped = min(max(value, 0.0), 1.0)
                logger.warning(f"{name} out of range, setting to {clamped}")
                setattr(a, name, clamped)


def load_config(
    path: Optional[Path] = None,
    preset: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> FusionConfig:
    """Convenience wrapper: load with an optional single config file."""
    paths = [Path(path)] if path is not None else None
    return ConfigLoader(config_paths=paths, preset=preset, environ=environ).load()


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "EndpointConfig",
    "CoordinatorConfig",
    "RoutingConfig",
    "FallbackConfig",
    "CacheConfig",
    "AvailabilityConfig",
    "GenerationConfig",
    "FusionConfig",
    "PRESETS",
    "ROUTING_POLICIES",
    "ConfigLoader",
    "load_config",
]

"""Shared fixtures for the fusion core tests."""

import pytest

from qora_fusion.core.availability_tracker import AvailabilityTracker
from qora_fusion.core.complexity_classifier import ComplexityClassifier
from qora_fusion.core.fusion_types import ModelRole
from qora_fusion.core.model_registry import ModelRegistry

from fakes import FakeClock


@pytest.fixture
def registry():
    return ModelRegistry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(registry, clock):
    return AvailabilityTracker(registry, clock=clock)


@pytest.fixture
def classifier():
    return ComplexityClassifier()


@pytest.fixture
def models(registry):
    """Default roster keyed by role."""
    return {role: registry.first_of(role) for role in ModelRole}

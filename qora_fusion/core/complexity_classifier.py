"""
Complexity Classifier
=====================

Heuristic, dependency-free analysis of a user message into a
ComplexityProfile used for routing.

SCORING:
    each matched category adds its weight
    length > 200 chars          +1
    length > 500 chars          +2 (instead of +1)
    more than one question mark +1

    requires_high_quality  score >= 4, or two or more categories matched
                           with "technical" among them
"""

from __future__ import annotations

import logging
import re
from typing import Dict, FrozenSet, List, Pattern, Tuple

from qora_fusion.core.fusion_types import ComplexityCategory, ComplexityProfile

logger = logging.getLogger(__name__)


class ComplexityClassifier:
    """
    Weighted keyword classifier.

    Deterministic and side-effect free: the same text always yields the same
    profile.
    """

    CATEGORY_PATTERNS: Dict[ComplexityCategory, Tuple[str, int]] = {
        ComplexityCategory.TECHNICAL: (
            r"\b(algorithms?|implementation|architecture|system design|data structures?|"
            r"complexity analysis|optimi[sz]ation|performance tuning|scalability|"
            r"distributed systems?|recursion|database|concurrency|quantum)\b",
            3,
        ),
        ComplexityCategory.PROGRAMMING: (
            r"\b(code|function|class|method|python|javascript|typescript|java|rust|"
            r"debugging|refactor(ing)?|design patterns|api design|microservices|unit tests?)\b",
            2,
        ),
        ComplexityCategory.EDUCATIONAL: (
            r"\b(learn|teach|tutorial|guide|how to|step[- ]by[- ]step|explain|"
            r"comprehensive|detailed|thorough|in-depth)\b",
            1,
        ),
        ComplexityCategory.ANALYTICAL: (
            r"\b(analy[sz]e|compare|comparison|evaluate|pros and cons|advantages|"
            r"disadvantages|trade-?offs?|assessment|critique)\b",
            2,
        ),
        ComplexityCategory.CREATIVE: (
            r"\b(write|story|poem|essay|creative|brainstorm(ing)?|compose|storytelling|slogan)\b",
            1,
        ),
        ComplexityCategory.RESEARCH: (
            r"\b(research|literature review|meta-analysis|systematic review|evidence-based|"
            r"statistical analysis|mathematical proof|probability theory|methodology)\b",
            3,
        ),
    }

    CONJUNCTION_PATTERN = r"\b(and also|as well as|additionally|furthermore|moreover|in addition|along with)\b"

    MEDIUM_LENGTH = 200
    LONG_LENGTH = 500
    HIGH_QUALITY_SCORE = 4

    def __init__(self) -> None:
        self._compiled: List[Tuple[ComplexityCategory, Pattern[str], int]] = [
            (category, re.compile(pattern, re.IGNORECASE), weight)
            for category, (pattern, weight) in self.CATEGORY_PATTERNS.items()
        ]
        self._conjunctions = re.compile(self.CONJUNCTION_PATTERN, re.IGNORECASE)

    def classify(self, text: str) -> ComplexityProfile:
        """Profile ``text``. Never raises; empty input gets the lowest profile."""
        text = text or ""
        score = 0
        matched: List[ComplexityCategory] = []

        for category, pattern, weight in self._compiled:
            if pattern.search(text):
                matched.append(category)
                score += weight

        length = len(text)
        if length > self.LONG_LENGTH:
            score += 2
        elif length > self.MEDIUM_LENGTH:
            score += 1

        question_marks = text.count("?")
        if question_marks > 1:
            score += 1

        categories: FrozenSet[ComplexityCategory] = frozenset(matched)
        requires_high_quality = score >= self.HIGH_QUALITY_SCORE or (
            len(categories) >= 2 and ComplexityCategory.TECHNICAL in categories
        )
        is_multi_dimensional = question_marks > 1 or bool(self._conjunctions.search(text))

        profile = ComplexityProfile(
            score=score,
            matched_categories=categories,
            requires_high_quality=requires_high_quality,
            is_multi_dimensional=is_multi_dimensional,
            length=length,
        )
        logger.debug(
            f"Classified '{text[:50]}' -> score={score} "
            f"categories={sorted(c.value for c in categories)} hq={requires_high_quality}"
        )
        return profile


_default_classifier = ComplexityClassifier()


def classify(text: str) -> ComplexityProfile:
    """Classify with the shared default classifier."""
    return _default_classifier.classify(text)


__all__ = [
    "ComplexityClassifier",
    "classify",
]

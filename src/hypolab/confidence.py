"""Confidence update policies.

The default policy is asymmetric: challenging evidence moves confidence
twice as far as supporting evidence of the same discriminative power, since
one clean refutation says more than many consistent observations.

Formula, with p = power / 5 and c the current confidence:
    supports:     c + (100 - c) * p * support_multiplier, capped at max_confidence
    challenges:   c - c * p * challenge_multiplier, floored at min_confidence
    inconclusive: c

The cap and floor never reverse the direction of an update, so a supporting
result is always non-decreasing and a challenging one non-increasing.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from .errors import EngineValidationError
from .models import DiscriminativePower, EvidenceResult

if TYPE_CHECKING:
    from .config import ConfidenceConfig


@dataclass(frozen=True)
class ConfidenceUpdate:
    new_confidence: float
    delta: float
    explanation: str
    significant: bool


class ConfidencePolicy(Protocol):
    def update(
        self,
        current: float,
        power: DiscriminativePower,
        result: EvidenceResult,
    ) -> ConfidenceUpdate: ...


def check_confidence(value: float, field: str = "confidence") -> float:
    """Reject non-finite values and values outside [0, 100]."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise EngineValidationError(
            f"{field} must be a finite number (got {value!r})",
            code="INVALID_TYPE",
            field=field,
        )
    if not 0 <= value <= 100:
        raise EngineValidationError(
            f"{field} must be between 0 and 100 (got {value})",
            code="INVALID_RANGE",
            field=field,
        )
    return float(value)


_STARS = {power: "★" * power + "☆" * (5 - power) for power in DiscriminativePower}


@dataclass(frozen=True)
class AsymmetricConfidencePolicy:
    support_multiplier: float = 0.15
    challenge_multiplier: float = 0.3
    min_confidence: float = 1.0
    max_confidence: float = 99.0
    significance_threshold: float = 5.0

    def update(
        self,
        current: float,
        power: DiscriminativePower,
        result: EvidenceResult,
    ) -> ConfidenceUpdate:
        current = check_confidence(current, "current confidence")
        power = DiscriminativePower(power)
        result = EvidenceResult(result)
        weight = power / 5
        stars = _STARS[power]
        label = power.label.lower()

        if result is EvidenceResult.INCONCLUSIVE:
            return ConfidenceUpdate(
                new_confidence=current,
                delta=0.0,
                explanation=f"{stars} test was inconclusive. Confidence unchanged at {current:.1f}%.",
                significant=False,
            )

        if result is EvidenceResult.SUPPORTS:
            proposed = min(current + (100 - current) * weight * self.support_multiplier, self.max_confidence)
            new_confidence = max(proposed, current)
            verb = "supports"
        else:
            proposed = max(current - current * weight * self.challenge_multiplier, self.min_confidence)
            new_confidence = min(proposed, current)
            verb = "challenges"

        delta = new_confidence - current
        significant = abs(delta) >= self.significance_threshold
        explanation = (
            f"{stars} {label} test {verb} hypothesis. "
            f"Confidence {current:.1f}% → {new_confidence:.1f}% ({delta:+.1f}%)."
        )
        if significant and result is EvidenceResult.CHALLENGES:
            explanation += " This is a major blow to the hypothesis."
        elif significant:
            explanation += " Hypothesis survives a meaningful test."

        return ConfidenceUpdate(
            new_confidence=new_confidence,
            delta=delta,
            explanation=explanation,
            significant=significant,
        )


@dataclass(frozen=True)
class WhatIfAnalysis:
    current_confidence: float
    if_supports: ConfidenceUpdate
    if_challenges: ConfidenceUpdate
    if_inconclusive: ConfidenceUpdate

    @property
    def max_impact(self) -> float:
        return max(abs(self.if_supports.delta), abs(self.if_challenges.delta))

    @property
    def information_value(self) -> float:
        """Spread of possible outcomes; larger means the test teaches more."""
        return abs(self.if_supports.new_confidence - self.if_challenges.new_confidence)


def analyze_what_if(
    current: float,
    power: DiscriminativePower,
    policy: ConfidencePolicy | None = None,
) -> WhatIfAnalysis:
    policy = policy or AsymmetricConfidencePolicy()
    return WhatIfAnalysis(
        current_confidence=current,
        if_supports=policy.update(current, power, EvidenceResult.SUPPORTS),
        if_challenges=policy.update(current, power, EvidenceResult.CHALLENGES),
        if_inconclusive=policy.update(current, power, EvidenceResult.INCONCLUSIVE),
    )


def policy_from_config(config: "ConfidenceConfig") -> AsymmetricConfidencePolicy:
    return AsymmetricConfidencePolicy(
        support_multiplier=config.support_multiplier,
        challenge_multiplier=config.challenge_multiplier,
        min_confidence=config.min_confidence,
        max_confidence=config.max_confidence,
        significance_threshold=config.significance_threshold,
    )


"""Threshold decision: probability of "Heavy" -> label and confidence.

Confidence is the distance from the probability to the predicted side
(``p`` for Heavy, ``1 - p`` for Light). With a threshold other than 0.5 it
can drop below 50%; it is not a calibrated certainty.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import StrEnum

THRESHOLD_MIN: float = 0.3
THRESHOLD_MAX: float = 0.8
THRESHOLD_STEP: float = 0.01
DEFAULT_THRESHOLD: float = 0.5


class VehicleClass(StrEnum):
    HEAVY = "Heavy"
    LIGHT = "Light"


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def round_percent(fraction: float) -> float:
    """Express ``fraction`` as a percentage with one decimal, halves rounded up."""
    return math.floor(fraction * 1000 + 0.5) / 10


def validate_threshold(value: float) -> float:
    """Check bounds and snap ``value`` to the 0.01 step.

    Raises:
        ValueError: If the threshold is outside [0.30, 0.80].
    """
    if math.isnan(value) or not THRESHOLD_MIN <= value <= THRESHOLD_MAX:
        raise ValueError(f"Threshold must be between {THRESHOLD_MIN:.2f} and {THRESHOLD_MAX:.2f}, got {value}")
    return round(value, 2)


@dataclass(frozen=True)
class PredictionResult:
    """Outcome of one prediction."""

    label: VehicleClass
    prob_heavy: float
    confidence_percent: float
    threshold: float

    @property
    def prob_heavy_percent(self) -> float:
        return round_percent(self.prob_heavy)

    @property
    def prob_light_percent(self) -> float:
        return round_percent(1 - self.prob_heavy)


def decide(prob_heavy: float, threshold: float) -> PredictionResult:
    """Label ``prob_heavy`` against ``threshold``; ties go to Heavy."""
    prob_heavy = clamp01(prob_heavy)
    label = VehicleClass.HEAVY if prob_heavy >= threshold else VehicleClass.LIGHT
    confidence = prob_heavy if label is VehicleClass.HEAVY else 1 - prob_heavy
    return PredictionResult(
        label=label,
        prob_heavy=prob_heavy,
        confidence_percent=round_percent(confidence),
        threshold=threshold,
    )

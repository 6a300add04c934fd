"""Confidence classifier: the single definition of tier boundaries."""

from .models.escalation import Tier

STABLE_MIN = 0.8
WARNING_MIN = 0.6


def classify(confidence: float) -> Tier:
    """Map a synthesis confidence onto a tier.

    Args:
        confidence: Confidence in [0.0, 1.0]

    Returns:
        STABLE for >= 0.8, WARNING for [0.6, 0.8), CRITICAL below 0.6

    Raises:
        ValueError: If confidence is outside [0.0, 1.0]
    """
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(f"confidence must be within [0, 1], got {confidence}")
    if confidence >= STABLE_MIN:
        return Tier.STABLE
    if confidence >= WARNING_MIN:
        return Tier.WARNING
    return Tier.CRITICAL


def is_critical(confidence: float) -> bool:
    return classify(confidence) == Tier.CRITICAL

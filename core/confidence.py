"""
confidence.py
--------------
Cross-source confidence combination.

A single source is trusted as-is. When an email and a bank pattern describe
the same canonical bill, the stronger confidence is raised by a boost that
scales with the weaker side: two confident sources agreeing says more than
one confident source and one shaky one.
"""

from typing import Any, Dict

from config.config_loader import get_confidence_config


def _clamp(value: float) -> float:
    return max(0.0, min(float(value), 100.0))


class ConfidenceScorer:
    """
    Pure scoring function with a configurable corroboration boost.

    Usage:
        scorer = ConfidenceScorer()
        scorer.score(95, 80, corroborated=True)   # → 100.0
        scorer.score(72, 0, corroborated=False)   # → 72.0
    """

    def __init__(self, config: Dict[str, Any] | None = None):
        self.config = config if config is not None else get_confidence_config()
        self.corroboration_boost = float(self.config["corroboration_boost"])

    def score(self, confidence_a: float, confidence_b: float, corroborated: bool) -> float:
        """
        Combine two per-source confidences.

        Args:
            confidence_a: Confidence from one source (0–100).
            confidence_b: Confidence from the other source (0–100), 0 if absent.
            corroborated: True when both sources agree on the same canonical bill.

        Returns:
            Without corroboration, max(a, b). With corroboration, a value
            >= max(a, b) that grows with min(a, b), capped at 100.
        """
        a, b = _clamp(confidence_a), _clamp(confidence_b)
        strongest = max(a, b)
        if not corroborated:
            return strongest

        agreement = min(a, b) / 100.0
        boosted = round(min(strongest + self.corroboration_boost * agreement, 100.0), 2)
        return max(boosted, strongest)

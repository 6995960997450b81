"""Weight vector helpers: normalization and per-class totals."""

from dataclasses import dataclass, field
from typing import Dict, Tuple

from ..registry.observation import SourceClass, SourceClassification

# Tolerance for weight sum validation
WEIGHT_SUM_TOLERANCE = 1e-6


def total_weight(weights: Dict[str, float]) -> float:
    return sum(weights.values())


def normalize(weights: Dict[str, float]) -> Dict[str, float]:
    """
    Scale weights to sum to 1.0.

    Raises:
        ValueError: If the weights sum to zero or less
    """
    total = total_weight(weights)
    if total <= 0:
        raise ValueError(f"Cannot normalize weights summing to {total}")
    return {source: w / total for source, w in weights.items()}


def class_totals(
    weights: Dict[str, float],
    classification: SourceClassification
) -> Tuple[float, float]:
    """Return (endogenous_total, exogenous_total)."""
    endogenous = 0.0
    exogenous = 0.0
    for source, w in weights.items():
        if classification.is_exogenous(source):
            exogenous += w
        else:
            endogenous += w
    return endogenous, exogenous


@dataclass(frozen=True)
class WeightVector:
    """Point-in-time weights split by source class."""
    endogenous: Dict[str, float] = field(default_factory=dict)
    exogenous: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_weights(
        cls,
        weights: Dict[str, float],
        classification: SourceClassification
    ) -> "WeightVector":
        endogenous = {}
        exogenous = {}
        for source, w in weights.items():
            if classification.classify(source) == SourceClass.EXOGENOUS:
                exogenous[source] = w
            else:
                endogenous[source] = w
        return cls(endogenous=endogenous, exogenous=exogenous)

    @property
    def weights(self) -> Dict[str, float]:
        merged = dict(self.endogenous)
        merged.update(self.exogenous)
        return merged

    @property
    def endogenous_total(self) -> float:
        return sum(self.endogenous.values())

    @property
    def exogenous_total(self) -> float:
        return sum(self.exogenous.values())

    @property
    def total(self) -> float:
        return self.endogenous_total + self.exogenous_total

    def is_normalized(self, tolerance: float = WEIGHT_SUM_TOLERANCE) -> bool:
        return abs(self.total - 1.0) <= tolerance

    def to_dict(self) -> Dict[str, object]:
        return {
            "endogenous": dict(self.endogenous),
            "exogenous": dict(self.exogenous),
            "total_exogenous_weight": self.exogenous_total,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "WeightVector":
        return cls(
            endogenous=dict(data.get("endogenous") or {}),
            exogenous=dict(data.get("exogenous") or {}),
        )

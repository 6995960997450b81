"""
The exogenous weight cap.

Aggregate weight of exogenous ("soft") sources may never exceed the cap
(default 0.15). This module is the only implementation of the rule; the
reweighting engine calls it after every mutation, after decay and after
configuration changes, and the observation router calls it as an admission
check at ingestion time.
"""

import logging
from typing import Dict, Optional

from ..config import ConfigurationError
from ..registry.observation import SourceClassification
from .weights import class_totals

logger = logging.getLogger(__name__)

DEFAULT_EXOGENOUS_CAP = 0.15

# Absorbs float round-off so enforcement is idempotent
CAP_TOLERANCE = 1e-9


def validate_cap(cap: float) -> float:
    if not 0.0 <= cap <= 1.0:
        raise ConfigurationError(f"Exogenous cap must be in [0, 1], got {cap}")
    return cap


class WeightCap:
    """Enforces ``sum(exogenous weights) <= cap``."""

    def __init__(
        self,
        cap: float = DEFAULT_EXOGENOUS_CAP,
        classification: Optional[SourceClassification] = None,
    ):
        self._cap = validate_cap(cap)
        self.classification = classification or SourceClassification.default()

    @property
    def cap(self) -> float:
        return self._cap

    def set_cap(self, cap: float) -> None:
        self._cap = validate_cap(cap)

    def exogenous_total(self, weights: Dict[str, float]) -> float:
        return class_totals(weights, self.classification)[1]

    def exceeds_threshold(self, weights: Dict[str, float]) -> bool:
        return self.exogenous_total(weights) > self._cap + CAP_TOLERANCE

    def enforce(self, weights: Dict[str, float]) -> Dict[str, float]:
        """
        Return a copy of ``weights`` that satisfies the cap.

        If exogenous weight exceeds the cap, exogenous weights are scaled
        down proportionally to hit the cap exactly and the freed weight is
        redistributed to endogenous sources in proportion to their current
        share. A compliant vector is returned unchanged.

        Args:
            weights: Source -> weight mapping

        Returns:
            Capped source -> weight mapping
        """
        endogenous, exogenous = class_totals(weights, self.classification)
        if exogenous <= self._cap + CAP_TOLERANCE:
            return dict(weights)

        excess = exogenous - self._cap
        scale = self._cap / exogenous
        endogenous_sources = [s for s in weights if not self.classification.is_exogenous(s)]

        capped: Dict[str, float] = {}
        for source, w in weights.items():
            if self.classification.is_exogenous(source):
                capped[source] = w * scale
            elif endogenous > 0:
                capped[source] = w + excess * (w / endogenous)
            else:
                capped[source] = w + excess / len(endogenous_sources)

        if not endogenous_sources:
            logger.warning(
                f"No endogenous sources to absorb {excess:.4f} freed exogenous weight"
            )

        logger.debug(
            f"Exogenous weight {exogenous:.4f} capped to {self._cap:.4f}; "
            f"redistributed {excess:.4f}"
        )
        return capped

    def admits(self, exogenous_count: int, total_count: int) -> bool:
        """
        Admission check for one more exogenous observation.

        Admitted while the exogenous share of admitted observations,
        including the new one, stays within the cap.
        """
        share = (exogenous_count + 1) / (total_count + 1)
        return share <= self._cap + CAP_TOLERANCE

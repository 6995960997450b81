"""
Ingestion-time routing of producer observations.

Every observation is stored at its own path. Observations from known sources
are also mirrored into ``blocks.endogenous.<path>`` or
``blocks.exogenous.<path>``; only mirrored observations take part in
weighting. Exogenous observations are admitted while the exogenous share of
admitted observations stays within the weight cap.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from ..reweighting.weight_cap import WeightCap
from .observation import Observation, SourceClass, SourceClassification
from .store import Registry, block_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutedObservation:
    """Outcome of routing one observation."""
    path: str
    block: Optional[SourceClass]
    stored: bool
    included: bool
    reason: str


class ObservationRouter:
    """Routes producer writes into the registry and its class blocks."""

    def __init__(
        self,
        registry: Registry,
        classification: SourceClassification,
        weight_cap: WeightCap,
    ):
        self.registry = registry
        self.classification = classification
        self.weight_cap = weight_cap
        self._counts: Dict[SourceClass, int] = {
            SourceClass.ENDOGENOUS: 0,
            SourceClass.EXOGENOUS: 0,
        }

    def ingest(self, path: str, observation: Observation) -> RoutedObservation:
        """
        Store an observation and decide whether it takes part in weighting.

        Args:
            path: Registry path the producer writes to
            observation: The producer's observation

        Returns:
            RoutedObservation describing where it went
        """
        if not self.classification.is_known(observation.source):
            logger.warning(f"Rejected observation at {path}: unknown source {observation.source}")
            return RoutedObservation(path, None, stored=False, included=False, reason="unknown_source")

        block = self.classification.classify(observation.source)
        stored = self.registry.set(path, observation)

        if stored.is_dead_signal:
            return RoutedObservation(path, block, stored=True, included=False, reason="dead_signal")

        if block == SourceClass.EXOGENOUS:
            exogenous = self._counts[SourceClass.EXOGENOUS]
            if not self.weight_cap.admits(exogenous, self.total_admitted):
                logger.warning(
                    f"Exogenous observation at {path} from {observation.source} not admitted: "
                    f"share would exceed cap {self.weight_cap.cap}"
                )
                return RoutedObservation(path, block, stored=True, included=False, reason="exogenous_cap")

        self._counts[block] += 1
        self.registry.set(block_path(block, path), stored)
        return RoutedObservation(path, block, stored=True, included=True, reason="admitted")

    @property
    def total_admitted(self) -> int:
        return sum(self._counts.values())

    def distribution(self) -> Dict[str, Dict[str, float]]:
        """Admitted counts and proportions per block."""
        total = self.total_admitted
        return {
            block.value: {
                "count": count,
                "proportion": count / total if total else 0.0,
            }
            for block, count in self._counts.items()
        }

    def reset_counts(self) -> None:
        for block in self._counts:
            self._counts[block] = 0

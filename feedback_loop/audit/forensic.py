"""
Forensic capture: a point-in-time dump of system state at a decision.

Snapshots hold only JSON-native values so they can be hashed, exported and
reloaded without loss. Non-finite floats are written as the strings
"NaN", "Infinity" and "-Infinity".
"""

import itertools
import json
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from ..registry.observation import Observation, Payload, PayloadKind, SourceClassification
from ..registry.store import Registry
from ..reweighting.engine import WEIGHTS_PATH
from ..reweighting.weights import WeightVector

logger = logging.getLogger(__name__)

# Registry paths holding derived matrices, keyed by snapshot field
DERIVED_MATRIX_PATHS = {
    "covariance": "derived.covariance",
    "correlation": "derived.correlation",
    "factor_loadings": "derived.factor_loadings",
}

UNKNOWN_REGIME = "unknown"


def serialize_value(value: Any) -> Any:
    """Convert a value into JSON-native types."""
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return value
    if isinstance(value, np.ndarray):
        return serialize_value(value.tolist())
    if isinstance(value, np.generic):
        return serialize_value(value.item())
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (Payload, Observation)):
        return serialize_value(value.to_dict())
    if isinstance(value, dict):
        return {str(k): serialize_value(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return {"__type": "set", "values": [serialize_value(v) for v in sorted(value, key=repr)]}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    if hasattr(value, "to_dict"):
        return serialize_value(value.to_dict())
    return str(value)


@dataclass(frozen=True)
class ForensicSnapshot:
    """Complete system state captured for one decision."""
    id: str
    timestamp: str
    decision_id: str
    registry_state: Dict[str, Any]
    weights: Dict[str, Any]
    matrices: Dict[str, Any] = field(default_factory=dict)
    regime_id: str = UNKNOWN_REGIME
    model_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "decision_id": self.decision_id,
            "registry_state": self.registry_state,
            "weights": self.weights,
            "matrices": self.matrices,
            "regime_id": self.regime_id,
            "model_ids": list(self.model_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForensicSnapshot":
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            decision_id=data["decision_id"],
            registry_state=data["registry_state"],
            weights=data["weights"],
            matrices=data.get("matrices") or {},
            regime_id=data.get("regime_id", UNKNOWN_REGIME),
            model_ids=list(data.get("model_ids") or []),
        )


def snapshot_size(snapshot: ForensicSnapshot) -> int:
    """Serialized size of a snapshot in bytes."""
    return len(json.dumps(snapshot.to_dict(), sort_keys=True).encode("utf-8"))


class ForensicCapture:
    """Captures ForensicSnapshots from the shared registry."""

    def __init__(self, registry: Registry, classification: SourceClassification):
        self.registry = registry
        self.classification = classification
        self._counter = itertools.count(1)

    def capture(
        self,
        decision_id: str,
        weights: Optional[Dict[str, float]] = None,
    ) -> ForensicSnapshot:
        """
        Capture every observation, the weight vector and derived matrices.

        Args:
            decision_id: Decision (mutation) the snapshot belongs to
            weights: Weights to record; read from the registry if omitted

        Returns:
            ForensicSnapshot
        """
        now = datetime.now(timezone.utc)
        snapshot_id = f"SNAP_{now.strftime('%Y%m%dT%H%M%S')}_{next(self._counter):06d}"

        state = self.registry.snapshot()
        registry_state = self._capture_registry(state)

        snapshot = ForensicSnapshot(
            id=snapshot_id,
            timestamp=now.isoformat(),
            decision_id=decision_id,
            registry_state=registry_state,
            weights=self._capture_weights(weights),
            matrices=self._capture_matrices(),
            regime_id=self._dominant_regime(state),
            model_ids=sorted({obs.model_id for obs in state.values()}),
        )
        logger.info(
            f"Snapshot {snapshot_id} captured for {decision_id}: "
            f"{registry_state['count']} observations"
        )
        return snapshot

    def _capture_registry(self, state: Dict[str, Observation]) -> Dict[str, Any]:
        observations = {}
        endogenous_paths = []
        exogenous_paths = []
        for path in sorted(state):
            observation = state[path]
            observations[path] = serialize_value(observation)
            if self.classification.is_exogenous(observation.source):
                exogenous_paths.append(path)
            else:
                endogenous_paths.append(path)

        return {
            "count": len(state),
            "observations": observations,
            "endogenous_paths": endogenous_paths,
            "exogenous_paths": exogenous_paths,
        }

    def _capture_weights(self, weights: Optional[Dict[str, float]]) -> Dict[str, Any]:
        if weights is None:
            weights = {}
            published = self.registry.get(WEIGHTS_PATH)
            if published is not None and isinstance(published.value.data, dict):
                weights = WeightVector.from_dict(published.value.data).weights
        vector = WeightVector.from_weights(weights, self.classification)
        return serialize_value(vector.to_dict())

    def _capture_matrices(self) -> Dict[str, Any]:
        matrices = {}
        for name, path in DERIVED_MATRIX_PATHS.items():
            observation = self.registry.get(path)
            if observation is None:
                continue
            payload = observation.value
            if payload.kind in (PayloadKind.MATRIX, PayloadKind.COVARIANCE):
                matrices[name] = serialize_value(list(payload.data))
            else:
                matrices[name] = serialize_value(payload.data)
        return matrices

    @staticmethod
    def _dominant_regime(state: Dict[str, Observation]) -> str:
        """Most common regime tag across observations."""
        counts = Counter(obs.regime_id for obs in state.values())
        if not counts:
            return UNKNOWN_REGIME
        return counts.most_common(1)[0][0]

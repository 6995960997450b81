"""
Observations, typed payloads and the source classification table.

Every value in the registry is an Observation: a payload plus lineage
metadata (source, timestamp, producing model, regime, confidence interval).
The payload kind is decided when the observation is written, so readers never
have to guess whether a value holds a matrix.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from ..config import ConfigurationError, FeedbackLoopConfig
from ..monitoring.geometry import pack_covariance, packed_dimension

DEAD_SIGNAL_CONFIDENCE = (0.0, 0.0)


class DeadSignalWarning(UserWarning):
    """Issued when an observation with [0, 0] confidence is recorded."""
    pass


class MalformedStateError(Exception):
    """Raised when no state matrix can be extracted from a payload."""
    pass


class PayloadKind(str, Enum):
    MATRIX = "matrix"
    COVARIANCE = "covariance"
    SCALAR = "scalar"
    GENERIC = "generic"


class SourceClass(str, Enum):
    ENDOGENOUS = "endogenous"
    EXOGENOUS = "exogenous"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_numeric_sequence(value: Any) -> bool:
    return (
        isinstance(value, (list, tuple))
        and len(value) > 0
        and all(_is_number(v) for v in value)
    )


@dataclass(frozen=True)
class Payload:
    """Tagged payload. ``data`` layout depends on ``kind``."""
    kind: PayloadKind
    data: Any
    dimension: Optional[int] = None

    @classmethod
    def matrix(cls, packed: Sequence[float], dimension: Optional[int] = None) -> "Payload":
        """Packed upper-triangular SPD matrix."""
        return cls(PayloadKind.MATRIX, tuple(float(v) for v in packed), dimension)

    @classmethod
    def covariance(cls, values: Sequence[float], dimension: int) -> "Payload":
        """Raw row-major n x n covariance buffer."""
        return cls(PayloadKind.COVARIANCE, tuple(float(v) for v in values), dimension)

    @classmethod
    def scalar(cls, value: float) -> "Payload":
        return cls(PayloadKind.SCALAR, float(value))

    @classmethod
    def generic(cls, data: Any) -> "Payload":
        return cls(PayloadKind.GENERIC, data)

    @classmethod
    def from_raw(cls, value: Any, dimension: Optional[int] = None) -> "Payload":
        """
        Decide the payload kind for a raw producer value.

        Order: an existing Payload, a number, a numeric array (packed matrix),
        a ``{"matrix": [...]}`` mapping, a ``{"covariance": [...]}`` mapping,
        anything else as generic data.
        """
        if isinstance(value, Payload):
            return value
        if _is_number(value):
            return cls.scalar(value)
        if _is_numeric_sequence(value):
            return cls.matrix(value, dimension)
        if isinstance(value, dict):
            if _is_numeric_sequence(value.get("matrix")):
                return cls.matrix(value["matrix"], value.get("dimension", dimension))
            if _is_numeric_sequence(value.get("covariance")):
                n = value.get("dimension", dimension)
                if n is None:
                    n = int(round(math.sqrt(len(value["covariance"]))))
                return cls.covariance(value["covariance"], n)
        return cls.generic(value)

    def state_matrix(self, dimension: int) -> List[float]:
        """
        Packed SPD state of the given dimension.

        Raises:
            MalformedStateError: If the payload holds no matrix of that size
        """
        if self.kind == PayloadKind.MATRIX:
            if packed_dimension(len(self.data)) != dimension:
                raise MalformedStateError(
                    f"Packed matrix of length {len(self.data)} does not match dimension {dimension}"
                )
            return list(self.data)
        if self.kind == PayloadKind.COVARIANCE:
            if len(self.data) != dimension * dimension:
                raise MalformedStateError(
                    f"Covariance of length {len(self.data)} does not match dimension {dimension}"
                )
            return pack_covariance(self.data, dimension)
        raise MalformedStateError(f"{self.kind.value} payload holds no state matrix")

    def to_dict(self) -> Dict[str, Any]:
        data = list(self.data) if isinstance(self.data, tuple) else self.data
        return {"kind": self.kind.value, "data": data, "dimension": self.dimension}


@dataclass(frozen=True)
class Observation:
    """A payload with lineage metadata. Immutable once written."""
    value: Payload
    source: str
    timestamp: datetime
    model_id: str
    regime_id: str
    confidence: Tuple[float, float] = (0.0, 1.0)

    def __post_init__(self):
        lower, upper = self.confidence
        if lower > upper:
            raise ValueError(
                f"Confidence lower bound {lower} exceeds upper bound {upper} ({self.source})"
            )

    @property
    def is_dead_signal(self) -> bool:
        return tuple(self.confidence) == DEAD_SIGNAL_CONFIDENCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value.to_dict(),
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "model_id": self.model_id,
            "regime_id": self.regime_id,
            "confidence": [self.confidence[0], self.confidence[1]],
        }


def create_observation(
    value: Any,
    source: str,
    model_id: str,
    regime_id: str,
    confidence: Tuple[float, float] = (0.0, 1.0),
    timestamp: Optional[datetime] = None,
    dimension: Optional[int] = None,
) -> Observation:
    """Wrap a raw value into an Observation stamped with the current time."""
    return Observation(
        value=Payload.from_raw(value, dimension),
        source=source,
        timestamp=timestamp or datetime.now(timezone.utc),
        model_id=model_id,
        regime_id=regime_id,
        confidence=(float(confidence[0]), float(confidence[1])),
    )


@dataclass(frozen=True)
class SourceClassification:
    """
    Closed table assigning each known source to a class.

    Sources outside the table classify as endogenous (system producers such
    as the monitor itself) but are not ``known`` and are refused at
    ingestion.
    """
    endogenous: FrozenSet[str] = field(default_factory=frozenset)
    exogenous: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        overlap = self.endogenous & self.exogenous
        if overlap:
            raise ConfigurationError(
                f"Sources classified as both endogenous and exogenous: {sorted(overlap)}"
            )

    @classmethod
    def from_lists(cls, endogenous: Iterable[str], exogenous: Iterable[str]) -> "SourceClassification":
        return cls(frozenset(endogenous), frozenset(exogenous))

    @classmethod
    def from_config(cls, config: FeedbackLoopConfig) -> "SourceClassification":
        return cls.from_lists(config.endogenous_sources, config.exogenous_sources)

    @classmethod
    def default(cls) -> "SourceClassification":
        return cls.from_config(FeedbackLoopConfig())

    def classify(self, source: str) -> SourceClass:
        if source in self.exogenous:
            return SourceClass.EXOGENOUS
        return SourceClass.ENDOGENOUS

    def is_known(self, source: str) -> bool:
        return source in self.endogenous or source in self.exogenous

    def is_exogenous(self, source: str) -> bool:
        return source in self.exogenous

    @property
    def sources(self) -> List[str]:
        """All known sources, endogenous first, each class sorted."""
        return sorted(self.endogenous) + sorted(self.exogenous)

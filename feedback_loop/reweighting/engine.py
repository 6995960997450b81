"""
Reweighting Engine: attribute prediction error to sources and adjust weights.

On every failure from the outcome monitor the engine:

1. Scores the failure distance against the rolling error history (z-score).
   Ordinary variance (z below threshold with enough history) is ignored.
2. Attributes the error across sources from each source's recent variance.
3. Penalises culprits, renormalizes and enforces the exogenous weight cap.
4. Emits an immutable MutationEvent and publishes the new weights.

The reaction runs synchronously inside the failure notification. Its cost is
bounded by (number of sources) x (history window).
"""

import itertools
import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Tuple

import numpy as np

from ..config import ReweightingConfig
from ..monitoring.geometry import SENTINEL_DISTANCE
from ..monitoring.outcome_monitor import OutcomeMonitor, OutcomeResult
from ..registry.observation import (
    Observation,
    Payload,
    PayloadKind,
    SourceClass,
    SourceClassification,
)
from ..registry.store import BLOCK_PREFIX, Registry
from ..scheduling import PeriodicTask
from ..subscriptions import Subscription, SubscriptionRegistry
from .weight_cap import WeightCap
from .weights import WeightVector, class_totals, normalize, total_weight

logger = logging.getLogger(__name__)

ENGINE_SOURCE = "REWEIGHTING_ENGINE"
WEIGHTS_PATH = "reweighting.weights"
EVENTS_PREFIX = "reweighting.events"

# Attribution for a source with too little history to estimate variance
DEFAULT_ATTRIBUTION = 0.1
# Standard deviation used when the error history has no spread
FALLBACK_STDDEV = 0.1
CULPRIT_MULTIPLIER = 1.5
MAX_PEAK_LAG = 5

MutationCallback = Callable[["MutationEvent"], None]


def bounded_error(error: float) -> float:
    """Clamp an error magnitude to [0, SENTINEL_DISTANCE]; non-finite values map to the sentinel."""
    error = float(error)
    if not math.isfinite(error):
        return SENTINEL_DISTANCE
    return min(max(error, 0.0), SENTINEL_DISTANCE)


@dataclass(frozen=True)
class Attribution:
    """How much of one failure is attributed to one source."""
    source: str
    block: SourceClass
    score: float
    contribution: float
    peak_lag: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "source": self.source,
            "block": self.block.value,
            "score": self.score,
            "contribution": self.contribution,
            "peak_lag": self.peak_lag,
        }


@dataclass(frozen=True)
class WeightAdjustment:
    """A single culprit's weight change."""
    timestamp: datetime
    source: str
    block: SourceClass
    previous_weight: float
    new_weight: float
    reason: str
    prediction_id: str
    attribution: float

    @property
    def delta(self) -> float:
        return self.previous_weight - self.new_weight

    def to_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "block": self.block.value,
            "previous_weight": self.previous_weight,
            "new_weight": self.new_weight,
            "reason": self.reason,
            "prediction_id": self.prediction_id,
            "attribution": self.attribution,
        }


@dataclass(frozen=True)
class MutationEvent:
    """Immutable record of one recalibration."""
    id: str
    timestamp: datetime
    prediction_id: str
    outcome: OutcomeResult
    attributions: Tuple[Attribution, ...]
    adjustments: Tuple[WeightAdjustment, ...]
    total_weight_reduction: float
    z_score: float
    weights_after: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "prediction_id": self.prediction_id,
            "outcome": self.outcome.to_dict(),
            "attributions": [a.to_dict() for a in self.attributions],
            "adjustments": [a.to_dict() for a in self.adjustments],
            "total_weight_reduction": self.total_weight_reduction,
            "z_score": self.z_score,
            "weights_after": dict(self.weights_after),
        }


class ReweightingEngine:
    """
    Maintains per-source weights and recalibrates them on failures.

    Args:
        registry: Shared registry; weights and events are published to it
        monitor: Outcome monitor whose failures trigger mutations
        classification: Closed source classification table
        config: Engine settings (validated on construction)
        weight_cap: Shared cap instance; built from config if omitted
    """

    def __init__(
        self,
        registry: Registry,
        monitor: Optional[OutcomeMonitor] = None,
        classification: Optional[SourceClassification] = None,
        config: Optional[ReweightingConfig] = None,
        weight_cap: Optional[WeightCap] = None,
    ):
        self.registry = registry
        self.monitor = monitor
        self.classification = classification or SourceClassification.default()
        self.config = (config or ReweightingConfig()).validate()
        if weight_cap is None:
            weight_cap = WeightCap(self.config.max_exogenous_weight, self.classification)
        else:
            weight_cap.set_cap(self.config.max_exogenous_weight)
        self.weight_cap = weight_cap

        self._rng = np.random.default_rng(self.config.seed)
        self._lock = threading.RLock()
        self._weights: Dict[str, float] = {}
        self._history: Dict[str, Deque[float]] = {}
        self._errors: Deque[float] = deque(maxlen=self.config.error_history_cap)
        self._events: List[MutationEvent] = []
        self._counter = itertools.count(1)
        self._mutation_subscribers = SubscriptionRegistry("reweighting:mutation")
        self._subscriptions: List[Subscription] = []
        self._decay_task: Optional[PeriodicTask] = None
        self.is_running = False

        self._initialize_weights()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return
        self.is_running = True
        logger.info("Reweighting engine starting")

        if self.config.auto_mutate and self.monitor is not None:
            self._subscriptions.append(self.monitor.on_failure(self.handle_failure))
        self._subscriptions.append(self.registry.subscribe_all(self._on_registry_write))

        if self.config.decay_interval_seconds:
            self._decay_task = PeriodicTask(
                "reweighting-decay",
                self.config.decay_interval_seconds,
                lambda cancel: self.apply_decay(),
                run_immediately=False,
            )
            self._decay_task.start()

        self._publish_weights()

    def stop(self) -> None:
        if not self.is_running:
            return
        for subscription in self._subscriptions:
            subscription.release()
        self._subscriptions = []
        if self._decay_task is not None:
            self._decay_task.stop()
            self._decay_task = None
        self.is_running = False
        logger.info("Reweighting engine stopped")

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def record_data_point(self, source: str, value: float) -> None:
        """Append to a source's bounded observation history."""
        with self._lock:
            if source not in self._history:
                self._history[source] = deque(maxlen=self.config.history_window)
            self._history[source].append(float(value))

    def record_error(self, error: float) -> None:
        """Append a failure magnitude to the rolling error history."""
        with self._lock:
            self._errors.append(bounded_error(error))

    def _on_registry_write(self, observation: Optional[Observation], path: str) -> None:
        # Only admitted observations are mirrored into the class blocks
        if observation is None or not path.startswith(f"{BLOCK_PREFIX}."):
            return
        if observation.is_dead_signal or observation.value.kind != PayloadKind.SCALAR:
            return
        if not self.classification.is_known(observation.source):
            return
        self.record_data_point(observation.source, observation.value.data)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def handle_failure(self, prediction_id: str, result: OutcomeResult) -> Optional[MutationEvent]:
        """
        React to a failed outcome.

        Returns:
            The MutationEvent, or None if the failure was within tolerance
        """
        with self._lock:
            # A non-finite distance would poison the mean and spread for the whole window
            distance = bounded_error(result.distance)
            errors = np.asarray(self._errors, dtype=float)
            sample_count = len(errors)
            mean_error = float(errors.mean()) if sample_count else 0.0
            stddev = float(errors.std()) if sample_count else 0.0
            if stddev == 0:
                stddev = FALLBACK_STDDEV
            z_score = (distance - mean_error) / stddev

            logger.info(
                f"Failure {prediction_id}: distance={distance:.4f} "
                f"mean={mean_error:.4f} z={z_score:.2f}"
            )
            self._errors.append(distance)

            if z_score < self.config.z_score_threshold and sample_count > self.config.min_error_samples:
                logger.info(
                    f"Deviation within tolerance (z={z_score:.2f} < "
                    f"{self.config.z_score_threshold}); no mutation"
                )
                return None

            attributions = self._attribute(distance)
            culprits = self._identify_culprits(attributions, distance)
            adjustments = self._apply_adjustments(culprits, prediction_id, result)
            self._normalize()
            self._weights = self.weight_cap.enforce(self._weights)

            event = MutationEvent(
                id=f"mut_{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S')}_{next(self._counter):06d}",
                timestamp=datetime.now(timezone.utc),
                prediction_id=prediction_id,
                outcome=result,
                attributions=tuple(attributions),
                adjustments=tuple(adjustments),
                total_weight_reduction=sum(a.delta for a in adjustments),
                z_score=z_score,
                weights_after=dict(self._weights),
            )
            self._events.append(event)

        self.registry.set(
            f"{EVENTS_PREFIX}.{event.id}",
            Observation(
                value=Payload.generic(event.to_dict()),
                source=ENGINE_SOURCE,
                timestamp=event.timestamp,
                model_id="reweighting_engine",
                regime_id="active",
            ),
        )
        self._publish_weights()
        logger.info(f"Mutation {event.id} applied: {len(adjustments)} adjustments")
        self._mutation_subscribers.publish(event)
        return event

    def _attribute(self, distance: float) -> List[Attribution]:
        raw = []
        for source in self._weights:
            history = self._history.get(source, ())
            if len(history) < 2:
                score = DEFAULT_ATTRIBUTION
            else:
                variance = float(np.var(np.asarray(history, dtype=float)))
                noise = self._rng.random() * self.config.attribution_noise
                score = max(0.0, distance * variance + noise)
            raw.append((source, score, min(len(history), MAX_PEAK_LAG)))

        total = sum(score for _, score, _ in raw)
        return [
            Attribution(
                source=source,
                block=self.classification.classify(source),
                score=score,
                contribution=score / total if total > 0 else 0.0,
                peak_lag=peak_lag,
            )
            for source, score, peak_lag in raw
        ]

    @staticmethod
    def _identify_culprits(attributions: List[Attribution], distance: float) -> List[Attribution]:
        """Sources whose contribution exceeds a threshold that tightens with distance."""
        if not attributions:
            return []
        uniform_share = 1.0 / len(attributions)
        threshold = uniform_share * CULPRIT_MULTIPLIER / min(2.0, 1.0 + distance)
        ranked = sorted(attributions, key=lambda a: a.contribution, reverse=True)
        return [a for a in ranked if a.contribution > threshold]

    def _apply_adjustments(
        self,
        culprits: List[Attribution],
        prediction_id: str,
        result: OutcomeResult,
    ) -> List[WeightAdjustment]:
        adjustments = []
        now = datetime.now(timezone.utc)
        for culprit in culprits:
            current = self._weights.get(culprit.source, 0.0)
            reduction = self.config.learning_rate * culprit.contribution * min(1.0, bounded_error(result.distance))
            new_weight = min(
                self.config.max_weight,
                max(self.config.min_weight, current * (1.0 - reduction)),
            )
            self._weights[culprit.source] = new_weight
            adjustments.append(WeightAdjustment(
                timestamp=now,
                source=culprit.source,
                block=culprit.block,
                previous_weight=current,
                new_weight=new_weight,
                reason=f"Failure at {result.horizon}",
                prediction_id=prediction_id,
                attribution=culprit.score,
            ))
        return adjustments

    def trigger_mutation(self, prediction_id: str, result: OutcomeResult) -> Optional[MutationEvent]:
        """Run a mutation by hand. Returns None if the engine is not running."""
        if not self.is_running:
            return None
        return self.handle_failure(prediction_id, result)

    # ------------------------------------------------------------------
    # Weight maintenance
    # ------------------------------------------------------------------

    def _initialize_weights(self) -> None:
        endogenous = sorted(self.classification.endogenous)
        exogenous = sorted(self.classification.exogenous)
        weights = {}
        if endogenous:
            weights.update({source: 1.0 / len(endogenous) for source in endogenous})
        if exogenous:
            share = self.weight_cap.cap / len(exogenous)
            weights.update({source: share for source in exogenous})
        self._weights = weights
        if total_weight(weights) > 0:
            self._weights = normalize(weights)

    def _normalize(self) -> None:
        if total_weight(self._weights) <= 0:
            logger.warning("All weights are zero; reinitializing")
            self._initialize_weights()
            return
        self._weights = normalize(self._weights)

    def apply_decay(self) -> Dict[str, float]:
        """Pull every weight toward uniform by (1 - decay_factor), then re-cap."""
        with self._lock:
            if not self._weights:
                return {}
            uniform = 1.0 / len(self._weights)
            pull = 1.0 - self.config.decay_factor
            self._weights = {
                source: w + (uniform - w) * pull for source, w in self._weights.items()
            }
            self._normalize()
            self._weights = self.weight_cap.enforce(self._weights)
            weights = dict(self._weights)
        self._publish_weights()
        logger.debug("Applied weight decay")
        return weights

    def update_config(self, **changes) -> ReweightingConfig:
        """
        Apply and validate new settings, then re-enforce the cap.

        Raises:
            ConfigurationError: If a setting is unknown or invalid
        """
        with self._lock:
            candidate = self.config.merged(**changes)
            self.weight_cap.set_cap(candidate.max_exogenous_weight)
            self.config = candidate
            if "seed" in changes:
                self._rng = np.random.default_rng(candidate.seed)
            if "error_history_cap" in changes:
                self._errors = deque(self._errors, maxlen=candidate.error_history_cap)
            if "history_window" in changes:
                self._history = {
                    s: deque(h, maxlen=candidate.history_window) for s, h in self._history.items()
                }
            self._weights = self.weight_cap.enforce(self._weights)
        self._publish_weights()
        return self.config

    def reset_weights(self) -> None:
        with self._lock:
            self._initialize_weights()
        self._publish_weights()

    def clear_history(self) -> None:
        with self._lock:
            self._events = []
            self._history.clear()

    def _publish_weights(self) -> None:
        vector = self.get_weight_vector()
        self.registry.set(
            WEIGHTS_PATH,
            Observation(
                value=Payload.generic(vector.to_dict()),
                source=ENGINE_SOURCE,
                timestamp=datetime.now(timezone.utc),
                model_id="weight_vector",
                regime_id="active",
            ),
        )

    # ------------------------------------------------------------------
    # Queries and subscriptions
    # ------------------------------------------------------------------

    def on_mutation(self, callback: MutationCallback) -> Subscription:
        return self._mutation_subscribers.subscribe(callback)

    def get_weight(self, source: str) -> float:
        return self._weights.get(source, 0.0)

    def get_weights(self) -> Dict[str, float]:
        return dict(self._weights)

    def get_weight_vector(self) -> WeightVector:
        return WeightVector.from_weights(self.get_weights(), self.classification)

    def get_history(self, source: str) -> List[float]:
        return list(self._history.get(source, ()))

    def get_error_history(self) -> List[float]:
        return list(self._errors)

    def get_mutation_events(self) -> List[MutationEvent]:
        return list(self._events)

    def get_statistics(self) -> Dict[str, float]:
        total_reduction = sum(e.total_weight_reduction for e in self._events)
        adjustment_count = sum(len(e.adjustments) for e in self._events)
        endogenous, exogenous = class_totals(self._weights, self.classification)
        return {
            "total_mutations": len(self._events),
            "total_weight_reduction": total_reduction,
            "current_exogenous_weight": exogenous,
            "current_endogenous_weight": endogenous,
            "average_adjustment_size": (
                total_reduction / adjustment_count if adjustment_count else 0.0
            ),
        }

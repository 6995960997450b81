"""
Outcome Monitor: did the prediction come true?

Predictions are registered with a packed SPD state and a list of horizons.
A periodic sweep fetches the realized state from the registry once a
horizon's deadline has elapsed and scores it with the geodesic distance.
Distances above the horizon's threshold are failures and are fanned out to
failure subscribers.
"""

import itertools
import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from ..config import ConfigurationError, MonitorConfig
from ..registry.observation import (
    MalformedStateError,
    Observation,
    Payload,
)
from ..registry.store import Registry
from ..scheduling import PeriodicTask
from ..subscriptions import Subscription, SubscriptionRegistry
from .geometry import geodesic_distance, pack_covariance

logger = logging.getLogger(__name__)

MONITOR_SOURCE = "OUTCOME_MONITOR"

HORIZONS = {
    "T+1": timedelta(days=1),
    "T+7": timedelta(days=7),
    "T+30": timedelta(days=30),
}
DEFAULT_HORIZONS = ["T+1", "T+7", "T+30"]

# Share of max_predictions evicted when the ceiling is reached
EVICTION_FRACTION = 0.1

PREDICTIONS_PREFIX = "monitor.predictions"
RESULTS_PREFIX = "monitor.results"

FailureCallback = Callable[[str, "OutcomeResult"], None]


class NotFoundError(Exception):
    """Raised when a prediction id is not registered."""
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OutcomeResult:
    """Score of one (prediction, horizon) pair. Computed once, then cached."""
    horizon: str
    distance: float
    is_failure: bool
    threshold: float
    evaluation_time: datetime
    predicted_state: tuple
    actual_state: tuple

    def to_dict(self) -> Dict[str, object]:
        return {
            "horizon": self.horizon,
            "distance": self.distance,
            "is_failure": self.is_failure,
            "threshold": self.threshold,
            "evaluation_time": self.evaluation_time.isoformat(),
            "predicted_state": list(self.predicted_state),
            "actual_state": list(self.actual_state),
        }


@dataclass
class PredictionRecord:
    """A registered prediction and the results gathered so far."""
    id: str
    created_at: datetime
    predicted_state: tuple
    dimension: int
    model_id: str
    source_path: str
    horizons: List[str]
    results: Dict[str, OutcomeResult] = field(default_factory=dict)

    def deadline(self, horizon: str) -> datetime:
        return self.created_at + HORIZONS[horizon]

    def pending_horizons(self) -> List[str]:
        return [h for h in self.horizons if h not in self.results]

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "predicted_state": list(self.predicted_state),
            "dimension": self.dimension,
            "model_id": self.model_id,
            "source_path": self.source_path,
            "horizons": list(self.horizons),
        }


class OutcomeMonitor:
    """
    Registers predictions and scores them against realized state.

    Args:
        registry: Shared registry holding realized states
        config: Monitor settings (validated on construction)
        clock: Returns the current time; injectable for tests
    """

    def __init__(
        self,
        registry: Registry,
        config: Optional[MonitorConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry
        self.config = (config or MonitorConfig()).validate()
        self.clock = clock or _utc_now
        self._predictions: Dict[str, PredictionRecord] = {}
        self._failure_subscribers = SubscriptionRegistry("monitor:failure")
        self._counter = itertools.count(1)
        self._lock = threading.RLock()
        self._task: Optional[PeriodicTask] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and self._task.running

    def start(self) -> None:
        if self.is_running:
            logger.warning("Outcome monitor already running")
            return
        self._task = PeriodicTask(
            "outcome-monitor",
            self.config.polling_interval_seconds,
            lambda cancel: self.sweep(cancel=cancel),
        )
        self._task.start()
        logger.info(
            f"Outcome monitor started (interval {self.config.polling_interval_seconds}s)"
        )

    def stop(self) -> None:
        if self._task is None:
            return
        self._task.stop()
        self._task = None
        logger.info("Outcome monitor stopped")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_prediction(
        self,
        state: Sequence[float],
        dimension: int,
        model_id: str,
        source_path: str,
        horizons: Optional[Sequence[str]] = None,
    ) -> str:
        """
        Register a predicted state for evaluation at future horizons.

        Args:
            state: Packed SPD predicted state
            dimension: Matrix dimension
            model_id: Owning model
            source_path: Registry path holding the realized state
            horizons: Horizon tags (default T+1, T+7, T+30)

        Returns:
            Prediction id
        """
        horizons = list(horizons) if horizons is not None else list(DEFAULT_HORIZONS)
        unknown = [h for h in horizons if h not in HORIZONS]
        if unknown:
            raise ValueError(f"Unknown horizons {unknown}; expected {sorted(HORIZONS)}")

        with self._lock:
            if len(self._predictions) >= self.config.max_predictions:
                self._evict_oldest()

            created_at = self.clock()
            prediction_id = f"pred_{created_at.strftime('%Y%m%dT%H%M%S')}_{next(self._counter):06d}"
            record = PredictionRecord(
                id=prediction_id,
                created_at=created_at,
                predicted_state=tuple(float(v) for v in state),
                dimension=dimension,
                model_id=model_id,
                source_path=source_path,
                horizons=horizons,
            )
            self._predictions[prediction_id] = record

        self.registry.set(
            f"{PREDICTIONS_PREFIX}.{prediction_id}",
            Observation(
                value=Payload.generic(record.to_dict()),
                source=MONITOR_SOURCE,
                timestamp=created_at,
                model_id=model_id,
                regime_id="monitoring",
                confidence=(1.0, 1.0),
            ),
        )
        logger.info(f"Registered prediction {prediction_id} for horizons: {', '.join(horizons)}")
        return prediction_id

    def _evict_oldest(self) -> None:
        to_remove = math.ceil(self.config.max_predictions * EVICTION_FRACTION)
        oldest = sorted(self._predictions.values(), key=lambda p: p.created_at)[:to_remove]
        for record in oldest:
            del self._predictions[record.id]
            self.registry.delete(f"{PREDICTIONS_PREFIX}.{record.id}")
        logger.info(f"Evicted {len(oldest)} oldest predictions")

    @staticmethod
    def capture_state(covariance: Sequence[float], n: int) -> List[float]:
        """Convert a row-major n x n covariance buffer to packed SPD form."""
        return pack_covariance(covariance, n)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self,
        prediction_id: str,
        horizon: str,
        actual_state: Sequence[float],
    ) -> Optional[OutcomeResult]:
        """
        Score a prediction at one horizon.

        A result already computed for (prediction_id, horizon) is returned
        unchanged.

        Returns:
            OutcomeResult, or None if the prediction id is unknown
        """
        with self._lock:
            try:
                record = self.get_prediction(prediction_id)
            except NotFoundError:
                logger.warning(f"Prediction {prediction_id} not found")
                return None

            cached = record.results.get(horizon)
            if cached is not None:
                return cached

            try:
                actual = tuple(float(v) for v in actual_state)
            except (TypeError, ValueError) as e:
                logger.warning(f"Unusable actual state for {prediction_id} at {horizon}: {e}")
                actual = ()
            # An empty state has the wrong length and scores SENTINEL_DISTANCE
            distance = geodesic_distance(record.predicted_state, actual, record.dimension)
            threshold = self.config.threshold_for(horizon)
            result = OutcomeResult(
                horizon=horizon,
                distance=distance,
                is_failure=distance > threshold,
                threshold=threshold,
                evaluation_time=self.clock(),
                predicted_state=record.predicted_state,
                actual_state=actual,
            )
            record.results[horizon] = result

        self.registry.set(
            f"{RESULTS_PREFIX}.{prediction_id}.{horizon}",
            Observation(
                value=Payload.generic(result.to_dict()),
                source=MONITOR_SOURCE,
                timestamp=result.evaluation_time,
                model_id=record.model_id,
                regime_id="failure" if result.is_failure else "success",
                confidence=(0.0, 1.0),
            ),
        )

        if result.is_failure:
            logger.info(
                f"FAILURE for {prediction_id} at {horizon}: "
                f"distance={distance:.4f} > threshold={threshold}"
            )
            self._failure_subscribers.publish(prediction_id, result)
        else:
            logger.info(
                f"SUCCESS for {prediction_id} at {horizon}: "
                f"distance={distance:.4f} <= threshold={threshold}"
            )
        return result

    def sweep(
        self,
        now: Optional[datetime] = None,
        cancel: Optional[threading.Event] = None,
    ) -> int:
        """
        Evaluate every pending (prediction, horizon) whose deadline has passed.

        The realized state is read from the prediction's source path. Pairs
        with no usable state are left pending for the next sweep. Checks
        ``cancel`` before each pair.

        Returns:
            Number of pairs evaluated
        """
        now = now or self.clock()
        with self._lock:
            due = [
                (record, horizon)
                for record in self._predictions.values()
                for horizon in record.pending_horizons()
                if now >= record.deadline(horizon)
            ]

        evaluated = 0
        for record, horizon in due:
            if cancel is not None and cancel.is_set():
                logger.debug(f"Sweep cancelled after {evaluated} evaluations")
                break

            observation = self.registry.get(record.source_path)
            if observation is None:
                logger.debug(f"No realized state at {record.source_path} for {record.id}")
                continue
            try:
                actual = observation.value.state_matrix(record.dimension)
            except MalformedStateError as e:
                logger.warning(f"Skipping {record.id} at {horizon}: {e}; retrying next sweep")
                continue

            if self.evaluate(record.id, horizon, actual) is not None:
                evaluated += 1

        logger.debug(f"Sweep evaluated {evaluated}/{len(due)} due horizons")
        return evaluated

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_failure(self, callback: FailureCallback) -> Subscription:
        """Subscribe to failures. Callbacks receive (prediction_id, result)."""
        return self._failure_subscribers.subscribe(callback)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_prediction(self, prediction_id: str) -> PredictionRecord:
        with self._lock:
            record = self._predictions.get(prediction_id)
        if record is None:
            raise NotFoundError(f"Prediction {prediction_id} not found")
        return record

    def get_predictions(self) -> Dict[str, PredictionRecord]:
        with self._lock:
            return dict(self._predictions)

    def get_results(self, prediction_id: str) -> Optional[Dict[str, OutcomeResult]]:
        with self._lock:
            record = self._predictions.get(prediction_id)
            return dict(record.results) if record else None

    def get_statistics(self) -> Dict[str, float]:
        pending = 0
        failures = 0
        successes = 0
        distances = []
        with self._lock:
            total = len(self._predictions)
            for record in self._predictions.values():
                pending += len(record.pending_horizons())
                for result in record.results.values():
                    if result.is_failure:
                        failures += 1
                    else:
                        successes += 1
                    distances.append(result.distance)

        return {
            "total_predictions": total,
            "pending_evaluations": pending,
            "failures": failures,
            "successes": successes,
            "average_distance": sum(distances) / len(distances) if distances else 0.0,
        }

    def update_config(self, **changes) -> MonitorConfig:
        """
        Apply and validate new settings.

        Raises:
            ConfigurationError: If a setting is unknown or invalid
        """
        unknown = set(changes) - set(vars(self.config))
        if unknown:
            raise ConfigurationError(f"Unknown monitor settings: {sorted(unknown)}")
        candidate = MonitorConfig(**{**vars(self.config), **changes}).validate()
        interval_changed = (
            candidate.polling_interval_seconds != self.config.polling_interval_seconds
        )
        self.config = candidate

        if interval_changed and self.is_running:
            self.stop()
            self.start()
        return self.config

    def clear(self) -> None:
        with self._lock:
            for prediction_id in list(self._predictions):
                self.registry.delete(f"{PREDICTIONS_PREFIX}.{prediction_id}")
            self._predictions.clear()
        logger.info("Cleared all predictions")

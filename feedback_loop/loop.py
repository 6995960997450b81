"""
FeedbackLoop: explicit construction and lifecycle of every component.

Data flow: producers -> ObservationRouter -> Registry -> OutcomeMonitor
(sweeps, evaluates, notifies) -> ReweightingEngine (attributes, adjusts,
caps, publishes) -> ForensicCapture -> AuditChain (seal) -> JSONL ledger.
Decisions recorded through the DecisionJournal share the same chain and ledger.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from .audit.chain import AuditChain, SealedEntry, SealResult
from .audit.forensic import ForensicCapture
from .audit.journal import DecisionJournal, JournalEntry
from .audit.ledger import (
    LedgerError,
    append_sealed_entry,
    append_training_record,
    read_sealed_entries,
)
from .config import DEFAULT_CONFIG_PATH, FeedbackLoopConfig, load_config
from .monitoring.outcome_monitor import OutcomeMonitor
from .registry.observation import SourceClassification, create_observation
from .registry.router import ObservationRouter, RoutedObservation
from .registry.store import Registry
from .reweighting.engine import MutationEvent, ReweightingEngine
from .reweighting.weight_cap import WeightCap
from .subscriptions import Subscription

logger = logging.getLogger(__name__)


def training_record(event: MutationEvent) -> Dict[str, Any]:
    """Compact per-mutation record for the training log."""
    punished = max(event.adjustments, key=lambda a: a.delta, default=None)
    return {
        "mutation_id": event.id,
        "timestamp": event.timestamp.isoformat(),
        "prediction_id": event.prediction_id,
        "horizon": event.outcome.horizon,
        "punished_source": punished.source if punished else None,
        "error_magnitude": event.outcome.distance,
        "weight_delta": event.total_weight_reduction,
        "adjustment_count": len(event.adjustments),
    }


class FeedbackLoop:
    """
    Owns one instance of each component and wires them together.

    Args:
        config: Validated configuration (defaults if omitted)
        registry: Registry to share (a new one if omitted)
        clock: Time source for the outcome monitor
        persist: Append sealed entries and training records to the ledger
        resume: Restore the audit chain from the ledger before sealing
    """

    def __init__(
        self,
        config: Optional[FeedbackLoopConfig] = None,
        registry: Optional[Registry] = None,
        clock: Optional[Callable[[], datetime]] = None,
        persist: bool = True,
        resume: bool = False,
    ):
        self.config = (config or FeedbackLoopConfig()).validate()
        self.ledger_dir = Path(self.config.ledger_dir)
        self.persist = persist

        self.classification = SourceClassification.from_config(self.config)
        self.registry = registry or Registry()
        self.weight_cap = WeightCap(self.config.reweighting.max_exogenous_weight, self.classification)
        self.router = ObservationRouter(self.registry, self.classification, self.weight_cap)
        self.monitor = OutcomeMonitor(self.registry, self.config.monitor, clock=clock)
        self.engine = ReweightingEngine(
            self.registry,
            self.monitor,
            self.classification,
            self.config.reweighting,
            weight_cap=self.weight_cap,
        )
        self.forensic = ForensicCapture(self.registry, self.classification)

        if resume:
            self.chain = AuditChain.from_entries(read_sealed_entries(self.ledger_dir))
            logger.info(f"Resumed audit chain with {self.chain.chain_length} entries")
        else:
            self.chain = AuditChain()
        self.journal = DecisionJournal(
            self.chain,
            self.forensic,
            ledger_dir=self.ledger_dir if persist else None,
        )

        self._mutation_subscription: Optional[Subscription] = None

    @classmethod
    def from_config_file(cls, config_path: Path = DEFAULT_CONFIG_PATH, **kwargs) -> "FeedbackLoop":
        return cls(load_config(config_path), **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._mutation_subscription is not None

    def start(self, poll: bool = True) -> None:
        """
        Start the engine and, unless ``poll`` is False, the monitor's sweep.
        """
        if self.is_running:
            logger.warning("Feedback loop already running")
            return
        self._mutation_subscription = self.engine.on_mutation(self.commit_decision)
        self.engine.start()
        if poll:
            self.monitor.start()
        logger.info("Feedback loop started")

    def stop(self) -> None:
        if not self.is_running:
            return
        self.monitor.stop()
        self.engine.stop()
        self._mutation_subscription.release()
        self._mutation_subscription = None
        logger.info("Feedback loop stopped")

    def __enter__(self) -> "FeedbackLoop":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Data flow
    # ------------------------------------------------------------------

    def ingest(
        self,
        path: str,
        value: Any,
        source: str,
        model_id: str,
        regime_id: str,
        confidence: Tuple[float, float] = (0.0, 1.0),
        dimension: Optional[int] = None,
    ) -> RoutedObservation:
        """Wrap a producer value and route it into the registry."""
        observation = create_observation(
            value, source, model_id, regime_id, confidence=confidence, dimension=dimension
        )
        return self.router.ingest(path, observation)

    def commit_decision(self, event: MutationEvent) -> SealResult:
        """
        Capture, seal and persist one mutation.

        The sealed entry is written to the ledger before the in-memory chain
        advances, so memory and disk never diverge. The training record is
        written only once the entry is on disk.

        Raises:
            LedgerError: If persisting fails; the chain is left unchanged
        """
        snapshot = self.forensic.capture(event.id, weights=event.weights_after)
        before_commit = self._persist_entry if self.persist else None
        try:
            result = self.chain.seal(event.to_dict(), snapshot, before_commit=before_commit)
        except LedgerError as e:
            logger.error(f"Mutation {event.id} not sealed: {e}")
            raise
        self.registry.mark_clean()
        if self.persist:
            append_training_record(training_record(event), self.ledger_dir)
        return result

    def _persist_entry(self, entry: SealedEntry) -> None:
        append_sealed_entry(entry, self.ledger_dir)

    def record_decision(
        self,
        ticker: str,
        details: Optional[Dict[str, Any]] = None,
        strategy: str = "",
        decision_id: Optional[str] = None,
    ) -> JournalEntry:
        """Journal a decision into the shared chain (and ledger when persisting)."""
        return self.journal.record(ticker, details, strategy=strategy, decision_id=decision_id)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "registry_size": self.registry.size(),
            "registry_dirty": self.registry.is_dirty,
            "routing": self.router.distribution(),
            "monitor": self.monitor.get_statistics(),
            "engine": self.engine.get_statistics(),
            "chain": self.chain.get_chain_stats(),
            "journal": self.journal.get_stats(),
        }

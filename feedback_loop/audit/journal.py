"""
Decision journal: seals arbitrary decisions into the audit chain.

Each decision (a trade, an allocation, a manual override) is captured with a
forensic snapshot at the moment it is recorded and sealed through the same
AuditChain as weight mutations. The journal keeps an index of its own
entries for lookup by id, ticker, time range and strategy. The chain itself
stays the record of truth: a journal built over an existing chain indexes
the decision entries already in it.

Decision payloads are tagged ``{"kind": "decision", ...}`` so they can be
told apart from mutation events in a shared chain or ledger.
"""

import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .chain import AuditChain, SealedEntry, VerificationResult, integrity_failure
from .forensic import ForensicCapture, ForensicSnapshot, serialize_value
from .ledger import append_sealed_entry

logger = logging.getLogger(__name__)

DECISION_KIND = "decision"
JOURNAL_VERSION = "1.0"
DEFAULT_PLAN_KEYWORDS = ("saving", "plan")


class JournalError(Exception):
    """Raised when a decision cannot be recorded."""
    pass


@dataclass(frozen=True)
class DecisionRecord:
    """One journaled decision as it was sealed."""
    id: str
    timestamp: datetime
    ticker: str
    strategy: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": DECISION_KIND,
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "ticker": self.ticker,
            "strategy": self.strategy,
            "details": serialize_value(self.details),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DecisionRecord":
        return cls(
            id=payload["id"],
            timestamp=datetime.fromisoformat(payload["timestamp"]),
            ticker=payload["ticker"],
            strategy=payload.get("strategy", ""),
            details=dict(payload.get("details") or {}),
        )


@dataclass(frozen=True)
class JournalEntry:
    """A decision together with the chain entry that seals it."""
    decision: DecisionRecord
    entry: SealedEntry
    chain_index: int

    @property
    def snapshot(self) -> ForensicSnapshot:
        return self.entry.snapshot

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.to_payload(),
            "chain_index": self.chain_index,
            "entry_hash": self.entry.hash,
            "previous_hash": self.entry.previous_hash,
            "merkle_root": self.entry.merkle_root,
            "snapshot": self.entry.snapshot.to_dict(),
        }


def is_decision_entry(entry: SealedEntry) -> bool:
    return isinstance(entry.payload, dict) and entry.payload.get("kind") == DECISION_KIND


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DecisionJournal:
    """
    Records decisions into an AuditChain and indexes them.

    Args:
        chain: Chain to seal into; shared with the feedback loop when wired there
        forensic: Snapshot source for each decision
        ledger_dir: If set, each sealed entry is appended to the ledger before
            the chain advances
        clock: Time source for decision timestamps
    """

    def __init__(
        self,
        chain: AuditChain,
        forensic: ForensicCapture,
        ledger_dir: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.chain = chain
        self.forensic = forensic
        self.ledger_dir = Path(ledger_dir) if ledger_dir is not None else None
        self.clock = clock or _utc_now
        self._entries: List[JournalEntry] = []
        self._by_id: Dict[str, JournalEntry] = {}
        self._lock = threading.Lock()

        for index, entry in enumerate(chain.entries, start=1):
            if is_decision_entry(entry):
                self._index(JournalEntry(DecisionRecord.from_payload(entry.payload), entry, index))
        if self._entries:
            logger.info(f"Indexed {len(self._entries)} decisions from the audit chain")

    def record(
        self,
        ticker: str,
        details: Optional[Dict[str, Any]] = None,
        strategy: str = "",
        decision_id: Optional[str] = None,
    ) -> JournalEntry:
        """
        Capture a snapshot and seal one decision.

        Args:
            ticker: Instrument or subject the decision is about
            details: Decision data (amount, price, currency, ...)
            strategy: Strategy or plan name, used for grouping
            decision_id: Explicit id; generated if omitted

        Returns:
            The JournalEntry for the sealed decision

        Raises:
            JournalError: If the id is already journaled or the ticker is empty
            LedgerError: If persisting fails; nothing is sealed
        """
        if not ticker:
            raise JournalError("Decision ticker must not be empty")

        timestamp = self.clock()
        decision_id = decision_id or (
            f"DEC_{timestamp.strftime('%Y%m%dT%H%M%S')}_{secrets.token_hex(4)}"
        )
        with self._lock:
            if decision_id in self._by_id:
                raise JournalError(f"Decision {decision_id} already journaled")

        decision = DecisionRecord(
            id=decision_id,
            timestamp=timestamp,
            ticker=ticker,
            strategy=strategy,
            details=dict(details or {}),
        )
        snapshot = self.forensic.capture(decision_id)
        before_commit = self._persist_entry if self.ledger_dir is not None else None
        result = self.chain.seal(decision.to_payload(), snapshot, before_commit=before_commit)

        journal_entry = JournalEntry(
            DecisionRecord.from_payload(result.entry.payload), result.entry, result.chain_length
        )
        self._index(journal_entry)
        logger.info(
            f"Decision {decision_id} ({ticker}) sealed at chain position "
            f"#{result.chain_length}"
        )
        return journal_entry

    def _persist_entry(self, entry: SealedEntry) -> None:
        append_sealed_entry(entry, self.ledger_dir)

    def _index(self, journal_entry: JournalEntry) -> None:
        with self._lock:
            self._entries.append(journal_entry)
            self._by_id[journal_entry.decision.id] = journal_entry

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, decision_id: str) -> Optional[JournalEntry]:
        with self._lock:
            return self._by_id.get(decision_id)

    def get_snapshot(self, decision_id: str) -> Optional[ForensicSnapshot]:
        """Forensic snapshot sealed with a decision, or None if unknown."""
        journal_entry = self.get(decision_id)
        return journal_entry.snapshot if journal_entry else None

    def entries(self) -> List[JournalEntry]:
        with self._lock:
            return list(self._entries)

    def decisions(self) -> List[DecisionRecord]:
        return [e.decision for e in self.entries()]

    def by_ticker(self, ticker: str) -> List[DecisionRecord]:
        return [d for d in self.decisions() if d.ticker == ticker]

    def by_time_range(self, start: datetime, end: datetime) -> List[DecisionRecord]:
        """Decisions with ``start <= timestamp <= end``."""
        return [d for d in self.decisions() if start <= d.timestamp <= end]

    def group_by_strategy(
        self,
        keywords: Sequence[str] = DEFAULT_PLAN_KEYWORDS,
    ) -> Dict[str, List[DecisionRecord]]:
        """
        Group recurring decisions by strategy.

        Only strategies whose name contains one of ``keywords``
        (case-insensitive) are grouped; pass an empty sequence to group all.
        """
        lowered = [k.lower() for k in keywords]
        grouped: Dict[str, List[DecisionRecord]] = {}
        for decision in self.decisions():
            name = decision.strategy.lower()
            if lowered and not any(k in name for k in lowered):
                continue
            grouped.setdefault(decision.strategy, []).append(decision)
        return grouped

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Integrity and export
    # ------------------------------------------------------------------

    def verify_integrity(self) -> VerificationResult:
        """
        Verify the underlying chain and that every journaled entry is in it.
        """
        result = self.chain.verify_chain()
        if not result.valid:
            logger.error(
                f"Journal chain integrity FAILED at entry {result.invalid_index}: {result.reason}"
            )
            return result

        chain_entries = self.chain.entries
        for journal_entry in self.entries():
            index = journal_entry.chain_index - 1
            if index >= len(chain_entries) or chain_entries[index] != journal_entry.entry:
                logger.error(f"Decision {journal_entry.decision.id} missing from the chain")
                return integrity_failure(
                    f"Decision {journal_entry.decision.id} not found at its chain position", index
                )

        logger.info(f"Journal integrity verified: {len(self)} decisions")
        return result

    def get_stats(self) -> Dict[str, Any]:
        entries = self.entries()
        if not entries:
            return {
                "decision_count": 0,
                "first_decision_at": None,
                "last_decision_at": None,
                "last_merkle_root": None,
            }
        return {
            "decision_count": len(entries),
            "first_decision_at": entries[0].decision.timestamp.isoformat(),
            "last_decision_at": entries[-1].decision.timestamp.isoformat(),
            "last_merkle_root": entries[-1].entry.merkle_root,
        }

    def export_document(self) -> Dict[str, Any]:
        """Versioned export of every journaled decision with its seal and snapshot."""
        entries = self.entries()
        return {
            "version": JOURNAL_VERSION,
            "exported_at": _utc_now().isoformat(),
            "decision_count": len(entries),
            "entries": [e.to_dict() for e in entries],
        }

    def clear(self) -> None:
        """Drop the index. The chain and ledger are left as they are."""
        with self._lock:
            self._entries = []
            self._by_id = {}
        logger.info("Decision journal index cleared")

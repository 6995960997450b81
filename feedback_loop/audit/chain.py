"""
Append-only hash chain of sealed decisions.

Each SealedEntry embeds a decision payload and the ForensicSnapshot taken for
it. The entry hash covers the previous entry's hash, so rewriting any entry
breaks every link after it.

Entry hash = sha256(canonical JSON of {previous_hash, timestamp, payload,
snapshot_id, merkle_root, nonce}). The merkle root covers every snapshot
field plus the decision payload. The genesis entry has an empty previous
hash.

Verification never raises: problems are reported as a VerificationResult
with ``valid=False``, the failing index and a reason.
"""

import asyncio
import copy
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import jsonschema

from ..config import PROJECT_ROOT, load_schema
from .forensic import ForensicSnapshot, serialize_value
from .merkle import MerkleTree, canonical_json, sha256_hex

logger = logging.getLogger(__name__)

GENESIS_PREVIOUS_HASH = ""
DOCUMENT_VERSION = "1.0"
CHAIN_SCHEMA_PATH = PROJECT_ROOT / "config" / "schemas" / "audit_chain.schema.json"


class ChainDocumentError(Exception):
    """Raised when an exported chain document cannot be imported."""
    pass


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of verifying an entry or chain."""
    valid: bool
    invalid_index: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"valid": self.valid}
        if self.invalid_index is not None:
            result["invalid_index"] = self.invalid_index
        if self.reason is not None:
            result["reason"] = self.reason
        return result


def integrity_failure(reason: str, index: Optional[int] = None) -> VerificationResult:
    return VerificationResult(valid=False, invalid_index=index, reason=reason)


@dataclass(frozen=True)
class SealedEntry:
    hash: str
    previous_hash: str
    timestamp: str
    payload: Any
    snapshot: ForensicSnapshot
    merkle_root: str
    nonce: str

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy({
            "hash": self.hash,
            "previous_hash": self.previous_hash,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "snapshot": self.snapshot.to_dict(),
            "merkle_root": self.merkle_root,
            "nonce": self.nonce,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SealedEntry":
        data = copy.deepcopy(data)
        return cls(
            hash=data["hash"],
            previous_hash=data["previous_hash"],
            timestamp=data["timestamp"],
            payload=data["payload"],
            snapshot=ForensicSnapshot.from_dict(data["snapshot"]),
            merkle_root=data["merkle_root"],
            nonce=data["nonce"],
        )


@dataclass(frozen=True)
class SealResult:
    entry: SealedEntry
    is_genesis: bool
    chain_length: int


def snapshot_fields(snapshot: ForensicSnapshot, payload: Any) -> Dict[str, Any]:
    """Hash tree leaves for one sealed decision."""
    registry_state = snapshot.registry_state
    fields: Dict[str, Any] = {
        f"observations.{path}": value
        for path, value in registry_state.get("observations", {}).items()
    }
    fields["registry.index"] = {
        "count": registry_state.get("count"),
        "endogenous_paths": registry_state.get("endogenous_paths"),
        "exogenous_paths": registry_state.get("exogenous_paths"),
    }
    fields["weights.endogenous"] = snapshot.weights.get("endogenous")
    fields["weights.exogenous"] = snapshot.weights.get("exogenous")
    fields["weights.total_exogenous_weight"] = snapshot.weights.get("total_exogenous_weight")
    for name, matrix in snapshot.matrices.items():
        fields[f"matrices.{name}"] = matrix
    fields["regime"] = snapshot.regime_id
    fields["model_ids"] = list(snapshot.model_ids)
    fields["snapshot.meta"] = {
        "id": snapshot.id,
        "timestamp": snapshot.timestamp,
        "decision_id": snapshot.decision_id,
    }
    fields["decision"] = payload
    return fields


def compute_merkle_root(snapshot: ForensicSnapshot, payload: Any) -> str:
    return MerkleTree(snapshot_fields(snapshot, payload)).root_hash


def compute_entry_hash(
    previous_hash: str,
    timestamp: str,
    payload: Any,
    snapshot_id: str,
    merkle_root: str,
    nonce: str,
) -> str:
    return sha256_hex(canonical_json({
        "previous_hash": previous_hash,
        "timestamp": timestamp,
        "payload": payload,
        "snapshot_id": snapshot_id,
        "merkle_root": merkle_root,
        "nonce": nonce,
    }))


def verify(entry: SealedEntry, expected_previous_hash: str) -> VerificationResult:
    """
    Recompute an entry's merkle root and hash and compare.

    Args:
        entry: Entry to check
        expected_previous_hash: Hash the entry must link to

    Returns:
        VerificationResult (invalid_index left unset)
    """
    if entry.previous_hash != expected_previous_hash:
        return integrity_failure(
            f"Previous hash mismatch: expected '{expected_previous_hash}', "
            f"got '{entry.previous_hash}'"
        )
    try:
        merkle_root = compute_merkle_root(entry.snapshot, entry.payload)
        if merkle_root != entry.merkle_root:
            return integrity_failure(
                f"Merkle root mismatch: expected {merkle_root}, got {entry.merkle_root}"
            )
        expected_hash = compute_entry_hash(
            entry.previous_hash,
            entry.timestamp,
            entry.payload,
            entry.snapshot.id,
            entry.merkle_root,
            entry.nonce,
        )
    except (TypeError, ValueError, AttributeError) as e:
        return integrity_failure(f"Entry could not be hashed: {e}")

    if expected_hash != entry.hash:
        return integrity_failure(f"Hash mismatch: expected {expected_hash}, got {entry.hash}")
    return VerificationResult(valid=True)


def verify_chain(entries: Sequence[SealedEntry]) -> VerificationResult:
    """
    Walk the chain from genesis and report the first broken entry.

    Returns:
        VerificationResult with the first invalid index, or valid
    """
    if not entries:
        return VerificationResult(valid=True)

    if entries[0].previous_hash != GENESIS_PREVIOUS_HASH:
        return integrity_failure("Genesis entry must have an empty previous hash", 0)

    expected_previous = GENESIS_PREVIOUS_HASH
    for index, entry in enumerate(entries):
        result = verify(entry, expected_previous)
        if not result.valid:
            logger.warning(f"Chain verification failed at index {index}: {result.reason}")
            return integrity_failure(result.reason, index)
        expected_previous = entry.hash
    return VerificationResult(valid=True)


def validate_document(document: Dict[str, Any], schema_path: Path = CHAIN_SCHEMA_PATH) -> None:
    """
    Raises:
        ChainDocumentError: If the document violates the export schema
    """
    schema = load_schema(schema_path)
    if schema is None:
        return
    try:
        jsonschema.validate(document, schema)
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path)
        where = f" at '{path}'" if path else ""
        raise ChainDocumentError(f"Chain document invalid{where}: {e.message}")


def entries_from_document(document: Dict[str, Any]) -> List[SealedEntry]:
    """
    Raises:
        ChainDocumentError: If the document is malformed
    """
    validate_document(document)
    try:
        return [SealedEntry.from_dict(e) for e in document["entries"]]
    except (KeyError, TypeError) as e:
        raise ChainDocumentError(f"Malformed chain entry: {e}")


def verify_document(document: Dict[str, Any]) -> VerificationResult:
    """Verify an exported chain document without importing it."""
    try:
        entries = entries_from_document(document)
    except ChainDocumentError as e:
        return integrity_failure(str(e))

    if document["chain_length"] != len(entries):
        return integrity_failure(
            f"Declared chain length {document['chain_length']} != {len(entries)} entries"
        )
    return verify_chain(entries)


class AuditChain:
    """
    In-memory sealed-entry chain with a single owner.

    Sealing is all-or-nothing: the entry is fully built and hashed, and any
    ``before_commit`` hook has returned, before the chain pointer advances.
    """

    def __init__(self):
        self._entries: List[SealedEntry] = []
        self._head_hash = GENESIS_PREVIOUS_HASH
        self._lock = threading.Lock()

    def seal(
        self,
        payload: Any,
        snapshot: ForensicSnapshot,
        before_commit: Optional[Callable[[SealedEntry], None]] = None,
    ) -> SealResult:
        """
        Seal a decision payload with its forensic snapshot.

        Args:
            payload: Decision data (made JSON-native before hashing)
            snapshot: Snapshot captured for this decision
            before_commit: Called with the built entry while the chain is
                locked, e.g. to persist it. If it raises, the chain is left
                unchanged and the exception propagates.

        Returns:
            SealResult with the committed entry
        """
        with self._lock:
            previous_hash = self._head_hash
            timestamp = datetime.now(timezone.utc).isoformat()
            nonce = secrets.token_hex(16)
            payload = serialize_value(payload)
            snapshot = ForensicSnapshot.from_dict(copy.deepcopy(snapshot.to_dict()))

            merkle_root = compute_merkle_root(snapshot, payload)
            entry_hash = compute_entry_hash(
                previous_hash, timestamp, payload, snapshot.id, merkle_root, nonce
            )
            entry = SealedEntry(
                hash=entry_hash,
                previous_hash=previous_hash,
                timestamp=timestamp,
                payload=payload,
                snapshot=snapshot,
                merkle_root=merkle_root,
                nonce=nonce,
            )

            if before_commit is not None:
                before_commit(entry)

            # Commit
            self._entries.append(entry)
            self._head_hash = entry_hash
            chain_length = len(self._entries)

        logger.info(f"Sealed entry #{chain_length}: {entry_hash[:16]}...")
        if previous_hash:
            logger.debug(f"Chained to previous: {previous_hash[:16]}...")
        return SealResult(entry=entry, is_genesis=not previous_hash, chain_length=chain_length)

    async def seal_async(
        self,
        payload: Any,
        snapshot: ForensicSnapshot,
        before_commit: Optional[Callable[[SealedEntry], None]] = None,
    ) -> SealResult:
        """Awaitable seal; hashing runs in a worker thread."""
        return await asyncio.to_thread(self.seal, payload, snapshot, before_commit)

    def verify(self, entry: SealedEntry, expected_previous_hash: str) -> VerificationResult:
        return verify(entry, expected_previous_hash)

    def verify_chain(self, entries: Optional[Sequence[SealedEntry]] = None) -> VerificationResult:
        """Verify ``entries``, or this chain if omitted."""
        return verify_chain(self.entries if entries is None else entries)

    @property
    def chain_length(self) -> int:
        return len(self._entries)

    @property
    def head_hash(self) -> str:
        return self._head_hash

    @property
    def entries(self) -> List[SealedEntry]:
        return list(self._entries)

    def get_chain_stats(self) -> Dict[str, Any]:
        return {
            "chain_length": len(self._entries),
            "head_hash": self._head_hash,
            "genesis_hash": self._entries[0].hash if self._entries else None,
            "first_timestamp": self._entries[0].timestamp if self._entries else None,
            "last_timestamp": self._entries[-1].timestamp if self._entries else None,
        }

    def reset(self) -> None:
        with self._lock:
            self._entries = []
            self._head_hash = GENESIS_PREVIOUS_HASH
        logger.info("Audit chain reset")

    def export_document(self) -> Dict[str, Any]:
        """Versioned export that round-trips through verify_document."""
        entries = self.entries
        return {
            "version": DOCUMENT_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "chain_length": len(entries),
            "entries": [e.to_dict() for e in entries],
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "AuditChain":
        """
        Restore a chain from an exported document.

        Raises:
            ChainDocumentError: If the document is malformed or fails verification
        """
        entries = entries_from_document(document)
        result = verify_chain(entries)
        if not result.valid:
            raise ChainDocumentError(
                f"Chain invalid at index {result.invalid_index}: {result.reason}"
            )
        chain = cls()
        chain._entries = entries
        chain._head_hash = entries[-1].hash if entries else GENESIS_PREVIOUS_HASH
        return chain

    @classmethod
    def from_entries(cls, entries: Sequence[SealedEntry]) -> "AuditChain":
        """Restore from already-parsed entries, e.g. read back from the ledger."""
        return cls.from_document({
            "version": DOCUMENT_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "chain_length": len(entries),
            "entries": [e.to_dict() for e in entries],
        })

"""
Append-only JSONL ledger for sealed entries and training records.

Provides atomic append operations and filtered reads. Sealed entries go to
``sealed_entries.jsonl``; one compact training record per mutation goes to
``training_log.jsonl``.
"""

import json
import os
import fcntl
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .chain import SealedEntry

LEDGER_DIR = Path("audit/ledger")
SEALED_ENTRIES_FILE = "sealed_entries.jsonl"
TRAINING_LOG_FILE = "training_log.jsonl"


class LedgerError(Exception):
    """Raised when ledger operations fail."""
    pass


def ensure_ledger_dir(ledger_dir: Path = LEDGER_DIR) -> None:
    """Create ledger directory if it doesn't exist."""
    ledger_dir.mkdir(parents=True, exist_ok=True)


def append_record(file_path: Path, record: Dict[str, Any]) -> None:
    """
    Atomically append a record to a JSONL file.

    Uses file locking to ensure safe concurrent writes.

    Args:
        file_path: Path to JSONL file
        record: Record dictionary to append

    Raises:
        LedgerError: If append fails
    """
    try:
        ensure_ledger_dir(file_path.parent)
        # Serialize first to catch JSON errors before touching file
        line = json.dumps(record, ensure_ascii=False, sort_keys=True) + "\n"

        with open(file_path, 'a') as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    except (IOError, OSError) as e:
        raise LedgerError(f"Failed to append record: {e}")
    except (TypeError, ValueError) as e:
        raise LedgerError(f"Failed to serialize record: {e}")


def read_records(
    file_path: Path,
    filter_fn: Optional[Callable[[Dict[str, Any]], bool]] = None
) -> List[Dict[str, Any]]:
    """
    Read all records from a JSONL file, optionally filtered.

    Args:
        file_path: Path to JSONL file
        filter_fn: Optional predicate function to filter records

    Returns:
        List of matching record dictionaries

    Raises:
        LedgerError: If read fails
    """
    if not file_path.exists():
        return []

    records = []
    try:
        with open(file_path, 'r') as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    raise LedgerError(f"Invalid JSON on line {line_num}: {e}")
                if filter_fn is None or filter_fn(record):
                    records.append(record)
    except IOError as e:
        raise LedgerError(f"Failed to read ledger: {e}")

    return records


def append_sealed_entry(entry: SealedEntry, ledger_dir: Path = LEDGER_DIR) -> None:
    append_record(ledger_dir / SEALED_ENTRIES_FILE, entry.to_dict())


def read_sealed_entries(ledger_dir: Path = LEDGER_DIR) -> List[SealedEntry]:
    """
    Read sealed entries in append order.

    Raises:
        LedgerError: If a line is not a valid sealed entry
    """
    entries = []
    for line_num, record in enumerate(read_records(ledger_dir / SEALED_ENTRIES_FILE), 1):
        try:
            entries.append(SealedEntry.from_dict(record))
        except (KeyError, TypeError) as e:
            raise LedgerError(f"Malformed sealed entry on record {line_num}: {e}")
    return entries


def append_training_record(record: Dict[str, Any], ledger_dir: Path = LEDGER_DIR) -> None:
    """
    Append a training record to the training log.

    Args:
        record: Training record dictionary
        ledger_dir: Directory containing ledger files
    """
    record["record_type"] = "training"
    append_record(ledger_dir / TRAINING_LOG_FILE, record)


def read_training_records(
    ledger_dir: Path = LEDGER_DIR,
    mutation_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Get training records, optionally filtered by mutation id.

    Args:
        ledger_dir: Directory containing ledger files
        mutation_id: Optional mutation ID filter

    Returns:
        List of matching training records
    """
    def filter_fn(r: Dict[str, Any]) -> bool:
        if mutation_id and r.get("mutation_id") != mutation_id:
            return False
        return True

    return read_records(ledger_dir / TRAINING_LOG_FILE, filter_fn)

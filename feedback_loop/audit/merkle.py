"""
Binary hash tree over path -> value fields.

Leaf hash = sha256("<path>:<canonical JSON value>"); internal node =
sha256(left + right) over hex digests. A level with an odd number of nodes
duplicates its last node. Leaves are ordered by path, so the root does not
depend on insertion order.

Each leaf carries a dirty marker. ``rebuild_dirty`` is a no-op on a clean
tree, but any rebuild re-hashes every leaf.
"""

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

EMPTY_ROOT = hashlib.sha256(b"").hexdigest()


def canonical_json(value: Any) -> str:
    """Deterministic JSON encoding used for hashing."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_leaf(path: str, value: Any) -> str:
    return sha256_hex(f"{path}:{canonical_json(value)}")


def hash_pair(left: str, right: str) -> str:
    return sha256_hex(left + right)


def verify_proof(leaf_hash: str, proof: List[Dict[str, str]], root: str) -> bool:
    """
    Check an inclusion proof.

    Args:
        leaf_hash: Hash of the leaf being proven
        proof: Sibling hashes from leaf to root, each with the sibling's
            ``position`` ("left" or "right")
        root: Expected root hash
    """
    current = leaf_hash
    for step in proof:
        if step["position"] == "left":
            current = hash_pair(step["hash"], current)
        else:
            current = hash_pair(current, step["hash"])
    return current == root


class MerkleTree:
    """Hash tree with per-leaf dirty markers."""

    def __init__(self, fields: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, str] = {}
        self._leaves: Dict[str, str] = {}
        self._dirty: Set[str] = set()
        self._levels: List[List[str]] = []
        self._order: List[str] = []
        self._stale = False
        for path, value in (fields or {}).items():
            self.update(path, value)
        self.rebuild_full()

    def update(self, path: str, value: Any) -> None:
        self._values[path] = canonical_json(value)
        self._dirty.add(path)
        self._stale = True

    def remove(self, path: str) -> bool:
        if path not in self._values:
            return False
        del self._values[path]
        self._leaves.pop(path, None)
        self._dirty.discard(path)
        self._stale = True
        return True

    @property
    def dirty_paths(self) -> Set[str]:
        return set(self._dirty)

    def rebuild_dirty(self) -> str:
        """Rebuild if anything changed since the last build."""
        if self._stale:
            return self.rebuild_full()
        return self.root_hash

    def rebuild_full(self) -> str:
        """Re-hash every leaf and every level."""
        self._order = sorted(self._values)
        self._leaves = {
            path: sha256_hex(f"{path}:{self._values[path]}") for path in self._order
        }
        self._levels = []
        level = [self._leaves[path] for path in self._order]
        if level:
            self._levels.append(level)
        while len(level) > 1:
            if len(level) % 2 == 1:
                level = level + [level[-1]]
            level = [hash_pair(level[i], level[i + 1]) for i in range(0, len(level), 2)]
            self._levels.append(level)

        self._dirty.clear()
        self._stale = False
        logger.debug(f"Rebuilt hash tree over {len(self._order)} leaves")
        return self.root_hash

    @property
    def root_hash(self) -> str:
        if self._stale:
            self.rebuild_full()
        if not self._levels:
            return EMPTY_ROOT
        return self._levels[-1][0]

    def leaf_hash(self, path: str) -> Optional[str]:
        if self._stale:
            self.rebuild_full()
        return self._leaves.get(path)

    def get_proof(self, path: str) -> Optional[List[Dict[str, str]]]:
        """Sibling path from a leaf to the root, or None for unknown paths."""
        if self._stale:
            self.rebuild_full()
        if path not in self._leaves:
            return None

        proof = []
        index = self._order.index(path)
        for level in self._levels[:-1]:
            padded = level + [level[-1]] if len(level) % 2 == 1 else level
            if index % 2 == 0:
                proof.append({"hash": padded[index + 1], "position": "right"})
            else:
                proof.append({"hash": padded[index - 1], "position": "left"})
            index //= 2
        return proof

    def verify_path(self, path: str, value: Any) -> bool:
        """True if ``value`` at ``path`` is included under the current root."""
        proof = self.get_proof(path)
        if proof is None:
            return False
        return verify_proof(hash_leaf(path, value), proof, self.root_hash)

    def paths(self) -> List[str]:
        return sorted(self._values)

    def clear(self) -> None:
        self._values.clear()
        self._leaves.clear()
        self._dirty.clear()
        self._levels = []
        self._order = []
        self._stale = False

    def __len__(self) -> int:
        return len(self._values)

"""
Merkle Tree Index

Batch-level attestation over the whole evidence set. One root commits
to the latest state of every evidence item. Any item can prove its
inclusion without revealing the others.

LEAF:
    SHA256(canonical {id, name, case_no, current_link})

TREE:
    parent = SHA256(left_hex + right_hex)
    Any level with an odd node count above one duplicates its last node.
    The leaf level always pairs, so a single leaf is paired with itself
    and every proof has at least one step.

The index is rebuilt in full on every evidence mutation. Each rebuild
produces an immutable IndexSnapshot (root + every proof) that the store
swaps in by reference, so a reader never sees a root from one rebuild
with a proof from another.
"""

import hashlib
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Optional, Sequence
from uuid import UUID

from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import GENESIS, EvidenceRecord, MerkleProof, MerkleRoot, ProofStep
from .hasher import CanonicalSerializationError, Hasher
from .ledger import IndexCorruptionError, NotFoundError


logger = get_logger(__name__)


class MerkleTree:
    """
    Binary Merkle tree over hex digests.

    Keeps every level so proofs are read off without rehashing.
    """

    def __init__(self, leaves: Sequence[str], subject_ids: Optional[Sequence[UUID]] = None):
        """
        Build a Merkle tree from a list of leaf digests.

        Args:
            leaves: Leaf digests, in index order
            subject_ids: Optional subject id per leaf
        """
        if not leaves:
            raise ValueError("Cannot create Merkle tree with no leaves")
        if subject_ids is not None and len(subject_ids) != len(leaves):
            raise ValueError("subject_ids must match leaves one to one")

        self._leaves = list(leaves)
        self._subject_ids = list(subject_ids) if subject_ids is not None else []
        self._levels = self._build_levels(self._leaves)

    @staticmethod
    def _hash_pair(left: str, right: str) -> str:
        """Hash two nodes together."""
        return hashlib.sha256(f"{left}{right}".encode("utf-8")).hexdigest()

    @classmethod
    def _build_levels(cls, leaves: list[str]) -> list[list[str]]:
        level = list(leaves)

        # The leaf level always pairs, even a single leaf
        if len(level) % 2 == 1:
            level.append(level[-1])

        levels = [level]
        while len(level) > 1:
            level = [
                cls._hash_pair(level[i], level[i + 1])
                for i in range(0, len(level), 2)
            ]
            if len(level) > 1 and len(level) % 2 == 1:
                level.append(level[-1])
            levels.append(level)

        return levels

    @property
    def root_hash(self) -> str:
        return self._levels[-1][0]

    @property
    def leaf_count(self) -> int:
        return len(self._leaves)

    @property
    def leaves(self) -> list[str]:
        return list(self._leaves)

    def index_of(self, subject_id: UUID) -> Optional[int]:
        try:
            return self._subject_ids.index(subject_id)
        except ValueError:
            return None

    def proof_steps(self, index: int) -> list[ProofStep]:
        """Sibling path from leaf `index` to the root."""
        if not 0 <= index < len(self._leaves):
            raise IndexError(f"Leaf index {index} out of range")

        steps = []
        for level in self._levels[:-1]:
            if index % 2 == 0:
                steps.append(ProofStep(sibling=level[index + 1], side="right"))
            else:
                steps.append(ProofStep(sibling=level[index - 1], side="left"))
            index //= 2

        return steps

    @staticmethod
    def compute_root(leaf: str, steps: Sequence[ProofStep]) -> str:
        """Walk a proof path upward from a leaf."""
        current = leaf
        for step in steps:
            if not Hasher.is_digest(step.sibling):
                raise ValueError(f"Malformed proof sibling: {step.sibling!r}")
            if step.side == "left":
                current = MerkleTree._hash_pair(step.sibling, current)
            else:
                current = MerkleTree._hash_pair(current, step.sibling)
        return current


@dataclass(frozen=True)
class IndexSnapshot:
    """
    The result of one full index rebuild.

    root is None only for an empty evidence set.
    """
    root: Optional[MerkleRoot]
    proofs: Mapping[UUID, MerkleProof] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def empty(cls) -> "IndexSnapshot":
        return cls(root=None)

    @property
    def is_empty(self) -> bool:
        return self.root is None

    def proof_for(self, subject_id: UUID) -> Optional[MerkleProof]:
        return self.proofs.get(subject_id)


class MerkleTreeIndex:
    """
    Builds snapshots and checks inclusion proofs.

    Stateless apart from metrics: the current snapshot and the root chain
    live in the store.
    """

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self._metrics = metrics or get_metrics()

    @staticmethod
    def leaf_for(record: EvidenceRecord) -> str:
        """
        Leaf digest of one evidence record.

        Raises:
            IndexCorruptionError: The record has no ledger entry
        """
        if record.entry is None:
            raise IndexCorruptionError(
                f"Evidence {record.id} ({record.evidence_number}) has no ledger entry. "
                "Every indexed record must be chained."
            )
        return Hasher.leaf_digest(record.id, record.name, record.case_no, record.entry.current_link)

    def build_tree(self, records: Sequence[EvidenceRecord]) -> MerkleTree:
        ids = [r.id for r in records]
        if len(set(ids)) != len(ids):
            raise IndexCorruptionError("Duplicate evidence ids in the index input")
        return MerkleTree([self.leaf_for(r) for r in records], ids)

    def rebuild(
        self,
        records: Sequence[EvidenceRecord],
        previous_root: Optional[MerkleRoot] = None,
    ) -> IndexSnapshot:
        """
        Rebuild the index over the full evidence set.

        Args:
            records: Every evidence record, ordered by creation
            previous_root: Latest root in the root chain, if any

        Returns:
            A new IndexSnapshot. Empty (no root) when records is empty.

        Raises:
            IndexCorruptionError: A record has no entry, or ids repeat
        """
        if not records:
            logger.info("Index rebuilt over an empty evidence set")
            return IndexSnapshot.empty()

        started = time.perf_counter()
        tree = self.build_tree(records)

        root = MerkleRoot(
            root=tree.root_hash,
            leaf_count=tree.leaf_count,
            previous_root=previous_root.root if previous_root else GENESIS,
            sequence=previous_root.sequence + 1 if previous_root else 0,
            computed_at=datetime.now(timezone.utc),
        )

        proofs = {}
        for index, record in enumerate(records):
            proofs[record.id] = MerkleProof(
                subject_id=record.id,
                leaf=tree.leaves[index],
                steps=tree.proof_steps(index),
                merkle_root=root.root,
            )

        latency_ms = (time.perf_counter() - started) * 1000
        self._metrics.record_rebuild(latency_ms)
        logger.info(
            "Index rebuilt",
            leaf_count=root.leaf_count,
            root=root.root[:16],
            root_sequence=root.sequence,
            duration_ms=round(latency_ms, 2),
        )

        return IndexSnapshot(root=root, proofs=MappingProxyType(proofs))

    def prove_inclusion(self, tree: MerkleTree, record: EvidenceRecord) -> MerkleProof:
        """
        Proof for one record against a built tree.

        Raises:
            NotFoundError: The record is not a leaf of this tree
        """
        index = tree.index_of(record.id)
        if index is None:
            raise NotFoundError(f"Evidence {record.id} is not in the index")

        return MerkleProof(
            subject_id=record.id,
            leaf=tree.leaves[index],
            steps=tree.proof_steps(index),
            merkle_root=tree.root_hash,
        )

    @staticmethod
    def verify_inclusion(
        proof: Optional[MerkleProof],
        record: EvidenceRecord,
        root: Optional[str],
    ) -> bool:
        """
        Recompute the leaf from the record and walk the proof to `root`.

        False on any mismatch, on a missing proof or root, on an empty
        proof and on a malformed step. Never raises.
        """
        if proof is None or not root or not proof.steps:
            return False
        if proof.subject_id != record.id or record.entry is None:
            return False

        try:
            leaf = Hasher.leaf_digest(record.id, record.name, record.case_no, record.entry.current_link)
            if leaf != proof.leaf:
                return False
            return MerkleTree.compute_root(leaf, proof.steps) == root
        except (CanonicalSerializationError, ValueError):
            return False

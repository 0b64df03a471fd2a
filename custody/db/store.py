"""
Custody Store Abstraction

Defines the CustodyStore interface and an in-memory implementation.

The store is responsible for:
- Per-stream cursors (tail link, next sequence) and their locks
- Atomic commit of a ledger entry together with the records written
  alongside it (evidence or movement record, index snapshot)
- The Merkle root chain and the current index snapshot
- Human-readable numbering (EV1001, ML10001, AL10001)
- The append-only audit trail

The HashChainLedger retains responsibility for:
- Link computation and signing
- Continuity checks and audits

TRANSACTION CONTRACT:
All ledger writes MUST use the begin_append() context manager:

    with store.begin_append("evidence") as ctx:
        prev = ctx.cursor.last_link
        # ... compute link and sign ...
        ctx.commit(entry, evidence=record, snapshot=snapshot)

Lookup of the tail and the commit happen under the same stream lock.
If the block raises before commit, nothing becomes visible.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Generator, Optional
from uuid import UUID

from ..core.hasher import Hasher
from ..core.ledger import ChainError, LedgerError, NotFoundError
from ..core.merkle import IndexSnapshot
from ..schemas import (
    EVIDENCE_STREAM,
    GENESIS,
    MOVEMENT_STREAM,
    AccessRecord,
    AuditRecord,
    EvidenceRecord,
    LedgerEntry,
    MerkleRoot,
    MovementRecord,
)


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(LedgerError):
    """Raised on misuse of the store's transaction contract."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

# First number handed out per prefix
NUMBER_START = {
    "EV": 1001,
    "ML": 10001,
    "AL": 10001,
}


@dataclass(frozen=True)
class StreamCursor:
    """
    Tail of one ledger stream.

    This is what gets locked during an append.
    """
    stream: str
    last_sequence: int = -1  # -1 means empty stream
    last_link: str = GENESIS

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    @property
    def is_empty(self) -> bool:
        return self.last_sequence == -1


@dataclass
class AppendContext:
    """
    Transaction context for one append.

    Holds the cursor read under the stream lock. Commit and rollback
    release that same lock.
    """
    cursor: StreamCursor
    _store: "CustodyStore"
    _lock: Any = field(default=None)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def commit(
        self,
        entry: LedgerEntry,
        evidence: Optional[EvidenceRecord] = None,
        movement: Optional[MovementRecord] = None,
        snapshot: Optional[IndexSnapshot] = None,
    ) -> LedgerEntry:
        """
        Commit the entry and its companion records in one step.

        Returns:
            The persisted entry
        """
        if self._committed:
            raise StoreError("Transaction already committed")
        if self._rolled_back:
            raise StoreError("Transaction already rolled back")

        result = self._store._do_commit(self, entry, evidence, movement, snapshot)
        self._committed = True
        return result

    def rollback(self) -> None:
        """Explicitly rollback this transaction."""
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class CustodyStore(ABC):
    """
    Abstract base class for custody storage.

    Implementations must ensure:
    1. Atomic append: the entry and its companion records become visible together
    2. No gaps or duplicates in a stream's sequence numbers
    3. A non-genesis entry links to an existing entry of its stream
    4. Snapshots are replaced whole, never patched
    """

    @contextmanager
    @abstractmethod
    def begin_append(self, stream: str) -> Generator[AppendContext, None, None]:
        """
        Begin an atomic append on one stream.

        1. Acquires the stream lock
        2. Yields an AppendContext with the current cursor
        3. Auto-rollbacks if an exception occurs or nothing is committed
        """
        pass

    @abstractmethod
    def _do_commit(
        self,
        ctx: AppendContext,
        entry: LedgerEntry,
        evidence: Optional[EvidenceRecord],
        movement: Optional[MovementRecord],
        snapshot: Optional[IndexSnapshot],
    ) -> LedgerEntry:
        """Internal: commit within current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: AppendContext) -> None:
        """Internal: rollback current transaction. Use ctx.rollback() instead."""
        pass

    # ---- ledger streams ----

    @abstractmethod
    def list_streams(self) -> list[str]:
        pass

    @abstractmethod
    def get_cursor(self, stream: str) -> StreamCursor:
        """Current cursor without locking. Raises NotFoundError for an unknown stream."""
        pass

    @abstractmethod
    def list_entries(self, stream: str) -> list[LedgerEntry]:
        """Every entry of a stream ordered by sequence. Raises NotFoundError for an unknown stream."""
        pass

    @abstractmethod
    def list_entries_for(self, stream: str, subject_id: UUID) -> list[LedgerEntry]:
        pass

    # ---- evidence ----

    @abstractmethod
    def get_evidence(self, evidence_id: UUID) -> Optional[EvidenceRecord]:
        pass

    @abstractmethod
    def list_evidence(self) -> list[EvidenceRecord]:
        """Every evidence record, ordered by creation."""
        pass

    @abstractmethod
    def save_evidence(self, record: EvidenceRecord) -> EvidenceRecord:
        """
        Overwrite the stored fields of an existing record without a ledger entry.

        Used for status changes, which are outside the signed payload.
        """
        pass

    @abstractmethod
    def delete_evidence(self, evidence_id: UUID, snapshot: IndexSnapshot) -> None:
        """Remove a record and install the snapshot rebuilt without it."""
        pass

    # ---- movements and access ----

    @abstractmethod
    def get_movement(self, movement_id: UUID) -> Optional[MovementRecord]:
        pass

    @abstractmethod
    def list_movements(self, evidence_id: Optional[UUID] = None) -> list[MovementRecord]:
        pass

    @abstractmethod
    def save_movement(self, record: MovementRecord) -> MovementRecord:
        """Overwrite an existing movement's unsigned fields (status)."""
        pass

    @abstractmethod
    def get_access(self, access_id: UUID) -> Optional[AccessRecord]:
        pass

    @abstractmethod
    def list_accesses(self, evidence_id: Optional[UUID] = None) -> list[AccessRecord]:
        pass

    @abstractmethod
    def save_access(self, record: AccessRecord) -> AccessRecord:
        pass

    # ---- index ----

    @abstractmethod
    def get_snapshot(self) -> IndexSnapshot:
        pass

    @abstractmethod
    def install_snapshot(self, snapshot: IndexSnapshot) -> None:
        """Install a rebuilt snapshot outside of an append (manual rebuild)."""
        pass

    @abstractmethod
    def read_evidence_with_snapshot(
        self, evidence_id: UUID
    ) -> tuple[Optional[EvidenceRecord], IndexSnapshot]:
        """
        A record and the snapshot it was committed with, read together.

        A commit between two separate reads would pair an old record
        with a newer root.
        """
        pass

    @abstractmethod
    def list_roots(self) -> list[MerkleRoot]:
        pass

    def latest_root(self) -> Optional[MerkleRoot]:
        roots = self.list_roots()
        return roots[-1] if roots else None

    # ---- audit trail ----

    @abstractmethod
    def append_audit(self, record: AuditRecord) -> AuditRecord:
        """Append-only. Records are never updated or removed."""
        pass

    @abstractmethod
    def list_audit(self) -> list[AuditRecord]:
        """Every audit record, oldest first."""
        pass

    # ---- numbering ----

    @abstractmethod
    def allocate_number(self, prefix: str) -> str:
        """Next human-readable number for a prefix, e.g. EV1001. Never reused."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryCustodyStore(CustodyStore):
    """
    In-memory implementation of CustodyStore.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments without persistence requirements

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)

    LOCKING:
    - One lock per stream serializes tail lookup and commit
    - One state lock guards the record maps and is only held briefly
    - Order is always stream lock, then state lock
    """

    KNOWN_STREAMS = (EVIDENCE_STREAM, MOVEMENT_STREAM)

    def __init__(self):
        self._state_lock = Lock()
        self._stream_locks: dict[str, Lock] = {}
        self._cursors: dict[str, StreamCursor] = {}
        self._entries: dict[str, list[LedgerEntry]] = {}
        self._links: dict[str, set[str]] = {}

        self._evidence: dict[UUID, EvidenceRecord] = {}
        self._movements: dict[UUID, MovementRecord] = {}
        self._accesses: dict[UUID, AccessRecord] = {}
        self._audit: list[AuditRecord] = []

        self._snapshot = IndexSnapshot.empty()
        self._roots: list[MerkleRoot] = []
        self._counters = dict(NUMBER_START)

        for stream in self.KNOWN_STREAMS:
            self._ensure_stream(stream)

    def _ensure_stream(self, stream: str) -> Lock:
        with self._state_lock:
            if stream not in self._stream_locks:
                self._stream_locks[stream] = Lock()
                self._cursors[stream] = StreamCursor(stream=stream)
                self._entries[stream] = []
                self._links[stream] = set()
            return self._stream_locks[stream]

    @contextmanager
    def begin_append(self, stream: str) -> Generator[AppendContext, None, None]:
        """Begin atomic append with the stream's lock."""
        lock = self._ensure_stream(stream)
        lock.acquire()

        ctx = AppendContext(cursor=self._cursors[stream], _store=self, _lock=lock)

        try:
            yield ctx
        except Exception:
            if not ctx._committed:
                self._do_rollback(ctx)
            raise
        finally:
            if not ctx._committed and not ctx._rolled_back:
                self._do_rollback(ctx)

    def _validate_entry(self, ctx: AppendContext, entry: LedgerEntry) -> None:
        cursor = ctx.cursor

        if entry.stream != cursor.stream:
            raise ChainError(
                f"Entry for stream '{entry.stream}' committed inside "
                f"a '{cursor.stream}' transaction"
            )

        if entry.sequence != cursor.next_sequence:
            raise ChainError(
                f"Sequence mismatch: expected {cursor.next_sequence}, "
                f"got {entry.sequence}"
            )

        if cursor.is_empty:
            if entry.previous_link != GENESIS:
                raise ChainError("First entry of a stream must follow GENESIS")
        elif entry.previous_link not in self._links[cursor.stream]:
            raise ChainError(
                f"Previous link {entry.previous_link[:16]}... is not in "
                f"stream '{cursor.stream}'"
            )

        if not Hasher.verify_link(entry.canonical_payload, entry.previous_link, entry.current_link):
            raise ChainError(
                f"Link verification failed for sequence {entry.sequence}: "
                f"claimed {entry.current_link[:16]}..."
            )

    def _validate_snapshot(self, snapshot: IndexSnapshot) -> None:
        if snapshot.root is None:
            return
        latest = self._roots[-1] if self._roots else None
        expected_previous = latest.root if latest else GENESIS
        expected_sequence = latest.sequence + 1 if latest else 0
        if snapshot.root.previous_root != expected_previous or snapshot.root.sequence != expected_sequence:
            raise ChainError(
                f"Merkle root {snapshot.root.sequence} does not extend the root chain "
                f"(expected sequence {expected_sequence})"
            )

    def _apply_snapshot(self, snapshot: IndexSnapshot) -> None:
        """Caller holds the state lock."""
        if snapshot.root is not None:
            self._roots.append(snapshot.root)
        self._snapshot = snapshot
        for evidence_id, record in self._evidence.items():
            proof = snapshot.proof_for(evidence_id)
            if record.merkle_proof != proof:
                self._evidence[evidence_id] = record.model_copy(update={"merkle_proof": proof})

    def _do_commit(
        self,
        ctx: AppendContext,
        entry: LedgerEntry,
        evidence: Optional[EvidenceRecord],
        movement: Optional[MovementRecord],
        snapshot: Optional[IndexSnapshot],
    ) -> LedgerEntry:
        """Validate, then make the entry and its companions visible together."""
        if ctx._lock is None:
            raise StoreError("_do_commit called outside transaction")

        try:
            self._validate_entry(ctx, entry)

            if evidence is not None and evidence.entry != entry:
                raise ChainError("Evidence record does not embed the committed entry")
            if movement is not None and movement.entry != entry:
                raise ChainError("Movement record does not embed the committed entry")

            with self._state_lock:
                if snapshot is not None:
                    self._validate_snapshot(snapshot)

                # All checks passed - apply
                stream = entry.stream
                self._entries[stream].append(entry)
                self._links[stream].add(entry.current_link)
                self._cursors[stream] = StreamCursor(
                    stream=stream,
                    last_sequence=entry.sequence,
                    last_link=entry.current_link,
                )

                if evidence is not None:
                    self._evidence[evidence.id] = evidence
                if movement is not None:
                    self._movements[movement.id] = movement
                if snapshot is not None:
                    self._apply_snapshot(snapshot)

            return entry

        finally:
            lock, ctx._lock = ctx._lock, None
            lock.release()

    def _do_rollback(self, ctx: AppendContext) -> None:
        """Release lock without committing."""
        if ctx._lock is not None:
            lock, ctx._lock = ctx._lock, None
            lock.release()

    # ---- ledger streams ----

    def list_streams(self) -> list[str]:
        with self._state_lock:
            return list(self._cursors.keys())

    def _require_stream(self, stream: str) -> None:
        if stream not in self._cursors:
            raise NotFoundError(f"Ledger stream '{stream}' does not exist")

    def get_cursor(self, stream: str) -> StreamCursor:
        self._require_stream(stream)
        return self._cursors[stream]

    def list_entries(self, stream: str) -> list[LedgerEntry]:
        self._require_stream(stream)
        with self._state_lock:
            return list(self._entries[stream])

    def list_entries_for(self, stream: str, subject_id: UUID) -> list[LedgerEntry]:
        return [e for e in self.list_entries(stream) if e.subject_id == subject_id]

    # ---- evidence ----

    def get_evidence(self, evidence_id: UUID) -> Optional[EvidenceRecord]:
        return self._evidence.get(evidence_id)

    def list_evidence(self) -> list[EvidenceRecord]:
        # dicts keep insertion order, which is creation order
        with self._state_lock:
            return list(self._evidence.values())

    def save_evidence(self, record: EvidenceRecord) -> EvidenceRecord:
        with self._state_lock:
            if record.id not in self._evidence:
                raise NotFoundError(f"Evidence {record.id} does not exist")
            self._evidence[record.id] = record
        return record

    def delete_evidence(self, evidence_id: UUID, snapshot: IndexSnapshot) -> None:
        with self._state_lock:
            if evidence_id not in self._evidence:
                raise NotFoundError(f"Evidence {evidence_id} does not exist")
            self._validate_snapshot(snapshot)
            del self._evidence[evidence_id]
            self._apply_snapshot(snapshot)

    # ---- movements and access ----

    def get_movement(self, movement_id: UUID) -> Optional[MovementRecord]:
        return self._movements.get(movement_id)

    def list_movements(self, evidence_id: Optional[UUID] = None) -> list[MovementRecord]:
        with self._state_lock:
            movements = list(self._movements.values())
        if evidence_id is not None:
            movements = [m for m in movements if m.evidence_id == evidence_id]
        return movements

    def save_movement(self, record: MovementRecord) -> MovementRecord:
        with self._state_lock:
            if record.id not in self._movements:
                raise NotFoundError(f"Movement {record.id} does not exist")
            self._movements[record.id] = record
        return record

    def get_access(self, access_id: UUID) -> Optional[AccessRecord]:
        return self._accesses.get(access_id)

    def list_accesses(self, evidence_id: Optional[UUID] = None) -> list[AccessRecord]:
        with self._state_lock:
            accesses = list(self._accesses.values())
        if evidence_id is not None:
            accesses = [a for a in accesses if a.evidence_id == evidence_id]
        return accesses

    def save_access(self, record: AccessRecord) -> AccessRecord:
        with self._state_lock:
            self._accesses[record.id] = record
        return record

    # ---- index ----

    def get_snapshot(self) -> IndexSnapshot:
        return self._snapshot

    def read_evidence_with_snapshot(
        self, evidence_id: UUID
    ) -> tuple[Optional[EvidenceRecord], IndexSnapshot]:
        with self._state_lock:
            return self._evidence.get(evidence_id), self._snapshot

    def install_snapshot(self, snapshot: IndexSnapshot) -> None:
        with self._state_lock:
            self._validate_snapshot(snapshot)
            self._apply_snapshot(snapshot)

    def list_roots(self) -> list[MerkleRoot]:
        with self._state_lock:
            return list(self._roots)

    # ---- audit trail ----

    def append_audit(self, record: AuditRecord) -> AuditRecord:
        with self._state_lock:
            self._audit.append(record)
        return record

    def list_audit(self) -> list[AuditRecord]:
        with self._state_lock:
            return list(self._audit)

    # ---- numbering ----

    def allocate_number(self, prefix: str) -> str:
        with self._state_lock:
            if prefix not in self._counters:
                raise StoreError(f"Unknown number prefix: {prefix}")
            number = self._counters[prefix]
            self._counters[prefix] = number + 1
        return f"{prefix}{number}"

"""
Hash-Chain Ledger

An append-only, hash-chained log of signed entries, split into named
streams ("evidence", "movement"). Nothing is edited. Things happen.

Each entry carries:
    current_link  = SHA256(canonical_payload + previous_link)
    previous_link = GENESIS for the first entry of a stream,
                    otherwise the link this entry follows
    signature     = Ed25519 over SHA256(canonical_payload), by the signer

The ledger never sees a private key. Signing is delegated to KeyCustody
by principal id.

ARCHITECTURE NOTE:
- HashChainLedger: link computation, signing, continuity and audits
- CustodyStore: per-stream cursor, locking, atomic commit, durability

The store's stream cursor is the single source of truth for the tail
link and the next sequence. The ledger reads both inside begin_append()
while the stream lock is held.
"""

import re
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Generator, Optional
from uuid import UUID

from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import GENESIS, LedgerEntry
from .hasher import CanonicalSerializationError, Hasher
from .signer import Signer

if TYPE_CHECKING:
    from ..db.store import AppendContext, CustodyStore, StreamCursor
    from .keystore import KeyCustody


logger = get_logger(__name__)

_STREAM_NAME = re.compile(r"^[a-z][a-z0-9_-]{0,63}$")


# ============================================================
# EXCEPTIONS
# ============================================================

class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class NotFoundError(LedgerError):
    """Raised when a subject, stream or principal does not exist."""
    pass


class PreconditionError(LedgerError):
    """Raised when a write is missing something it needs (key, principal, fields)."""
    pass


class DuplicateError(PreconditionError):
    """Raised when creating something that already exists."""
    pass


class ChainError(LedgerError):
    """Raised when an entry does not fit the chain at commit time."""
    pass


class CorruptionError(LedgerError):
    """Raised when a stored invariant is found violated."""
    pass


class IndexCorruptionError(CorruptionError):
    """Raised when the Merkle index cannot be rebuilt from the stored records."""
    pass


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return time.time_ns() // 1_000_000


# ============================================================
# AUDIT RESULTS
# ============================================================

@dataclass
class ChainBreak:
    """One entry that failed a chain audit, and why."""
    sequence: int
    subject_id: UUID
    reason: str


@dataclass
class ChainAudit:
    """Result of walking one stream from genesis to tail."""
    stream: str
    entry_count: int
    head: Optional[str]
    breaks: list[ChainBreak] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.breaks

    def to_dict(self) -> dict:
        return {
            "stream": self.stream,
            "entry_count": self.entry_count,
            "head": self.head,
            "valid": self.valid,
            "breaks": [
                {"sequence": b.sequence, "subject_id": str(b.subject_id), "reason": b.reason}
                for b in self.breaks
            ],
        }


# ============================================================
# PENDING APPEND
# ============================================================

class PendingAppend:
    """
    An append in progress on one stream.

    Created by HashChainLedger.begin_append(). The stream lock is held
    for the lifetime of this object, so the cursor cannot move under it.

    Usage:
        with ledger.begin_append("evidence") as pending:
            entry = pending.prepare(payload, signer_id, subject_id)
            pending.commit(entry, evidence=record, snapshot=snapshot)
    """

    def __init__(self, ledger: "HashChainLedger", ctx: "AppendContext"):
        self._ledger = ledger
        self._ctx = ctx
        self._started = time.perf_counter()

    @property
    def stream(self) -> str:
        return self._ctx.cursor.stream

    @property
    def cursor(self) -> "StreamCursor":
        return self._ctx.cursor

    def prepare(
        self,
        canonical_payload: str,
        signer_id: UUID,
        subject_id: UUID,
        previous_link: Optional[str] = None,
        signed_at: Optional[int] = None,
    ) -> LedgerEntry:
        """
        Build and sign the next entry without committing it.

        Args:
            canonical_payload: Exact string to chain and sign
            signer_id: Principal whose key signs the entry
            subject_id: Evidence item or movement the entry authenticates
            previous_link: Link to follow. Defaults to the stream tail.
                Pass the subject's prior link for an update.
            signed_at: Epoch milliseconds already embedded in the payload.
                Defaults to now.

        Raises:
            PreconditionError: Empty payload, malformed previous link or
                unknown signer
        """
        if not canonical_payload:
            raise PreconditionError("Canonical payload is empty")

        if previous_link is None:
            previous_link = self.cursor.last_link

        try:
            current_link = Hasher.chain_link(canonical_payload, previous_link)
        except CanonicalSerializationError as e:
            raise PreconditionError(str(e)) from e

        signature = self._ledger.keys.sign(canonical_payload, signer_id)

        return LedgerEntry(
            stream=self.stream,
            sequence=self.cursor.next_sequence,
            subject_id=subject_id,
            current_link=current_link,
            previous_link=previous_link,
            canonical_payload=canonical_payload,
            signature=signature,
            signer_id=signer_id,
            signed_at=signed_at if signed_at is not None else now_ms(),
            recorded_at=datetime.now(timezone.utc),
        )

    def commit(self, entry: LedgerEntry, **records) -> LedgerEntry:
        """
        Commit the entry, plus any records written with it, atomically.

        Keyword records are passed through to the store
        (evidence=..., movement=..., snapshot=...).
        """
        result = self._ctx.commit(entry, **records)

        latency_ms = (time.perf_counter() - self._started) * 1000
        self._ledger.metrics.record_append(latency_ms)
        logger.info(
            "Ledger entry appended",
            stream=entry.stream,
            sequence=entry.sequence,
            subject_id=str(entry.subject_id),
            link=entry.current_link[:16],
            duration_ms=round(latency_ms, 2),
        )
        return result


# ============================================================
# LEDGER
# ============================================================

class HashChainLedger:
    """
    Append-only, hash-chained ledger over a CustodyStore.

    CHAIN INTEGRITY GUARANTEES:
    - Sequences within a stream are gap-free (0, 1, 2, ...)
    - previous_link is GENESIS only for sequence 0
    - Every other previous_link is the current_link of an earlier entry
    - Every current_link recomputes from its own payload and predecessor

    CONCURRENCY GUARANTEES:
    - Tail lookup and commit happen under the same stream lock
    - Streams are independent: appends to different streams never contend
    """

    def __init__(
        self,
        store: "CustodyStore",
        keys: "KeyCustody",
        metrics: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._keys = keys
        self._metrics = metrics or get_metrics()

    @property
    def store(self) -> "CustodyStore":
        return self._store

    @property
    def keys(self) -> "KeyCustody":
        return self._keys

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @staticmethod
    def _check_stream_name(stream: str) -> None:
        if not isinstance(stream, str) or not _STREAM_NAME.match(stream):
            raise PreconditionError(
                f"Invalid stream name: {stream!r}. "
                "Use lowercase letters, digits, '-' or '_'."
            )

    @contextmanager
    def begin_append(self, stream: str) -> Generator[PendingAppend, None, None]:
        """
        Hold the stream lock and yield a PendingAppend.

        Any exception inside the block rolls back. No entry becomes visible.
        """
        self._check_stream_name(stream)
        with self._store.begin_append(stream) as ctx:
            yield PendingAppend(self, ctx)

    def append(
        self,
        stream: str,
        canonical_payload: str,
        signer_id: UUID,
        subject_id: UUID,
        previous_link: Optional[str] = None,
        signed_at: Optional[int] = None,
    ) -> LedgerEntry:
        """
        Append one entry to a stream and return it.

        Raises:
            PreconditionError: Bad stream name, empty payload or unknown signer
            ChainError: The store rejected the entry at commit
        """
        with self.begin_append(stream) as pending:
            entry = pending.prepare(
                canonical_payload,
                signer_id,
                subject_id,
                previous_link=previous_link,
                signed_at=signed_at,
            )
            return pending.commit(entry)

    def streams(self) -> list[str]:
        return self._store.list_streams()

    def entries(self, stream: str) -> list[LedgerEntry]:
        return self._store.list_entries(stream)

    def revisions(self, stream: str, subject_id: UUID) -> list[LedgerEntry]:
        """Every entry for one subject in a stream, oldest first."""
        return self._store.list_entries_for(stream, subject_id)

    def verify_continuity(self, entry: LedgerEntry) -> bool:
        """
        Single-hop continuity check.

        True iff the entry is the genesis of its stream, or some entry in
        the same stream has current_link == entry.previous_link.
        """
        try:
            entries = self._store.list_entries(entry.stream)
        except NotFoundError:
            return False

        if entry.previous_link == GENESIS:
            return bool(entries) and entries[0].current_link == entry.current_link

        return any(e.current_link == entry.previous_link for e in entries)

    def audit_stream(self, stream: str) -> ChainAudit:
        """
        Walk a whole stream from genesis and report every broken entry.

        Checks, per entry:
        - sequence equals its position (no gaps, no duplicates)
        - GENESIS only at position 0, and position 0 is GENESIS
        - previous_link names an earlier entry's current_link
        - current_link recomputes from canonical_payload + previous_link
        - signature verifies against the signer's public key

        Raises:
            NotFoundError: Unknown stream
        """
        entries = self._store.list_entries(stream)
        audit = ChainAudit(
            stream=stream,
            entry_count=len(entries),
            head=entries[-1].current_link if entries else None,
        )

        seen_links: set[str] = set()
        public_keys: dict[UUID, Optional[str]] = {}

        for position, entry in enumerate(entries):
            def broken(reason: str) -> None:
                audit.breaks.append(ChainBreak(entry.sequence, entry.subject_id, reason))

            if entry.sequence != position:
                broken(f"sequence {entry.sequence} found at position {position}")

            if position == 0:
                if entry.previous_link != GENESIS:
                    broken("first entry does not start from GENESIS")
            elif entry.previous_link == GENESIS:
                broken("GENESIS previous link after the first entry")
            elif entry.previous_link not in seen_links:
                broken("previous link does not reference an earlier entry")

            if not Hasher.verify_link(entry.canonical_payload, entry.previous_link, entry.current_link):
                broken("link does not match payload and previous link")

            if entry.signer_id not in public_keys:
                public_keys[entry.signer_id] = self._keys.find_public_key(entry.signer_id)
            public_key = public_keys[entry.signer_id]
            if public_key is None:
                broken(f"unknown signer {entry.signer_id}")
            elif not Signer.verify(entry.canonical_payload, entry.signature, public_key):
                broken("signature does not verify")

            seen_links.add(entry.current_link)

        if audit.valid:
            logger.debug("Stream audit passed", stream=stream, entry_count=audit.entry_count)
        else:
            logger.warning(
                "Stream audit found breaks",
                stream=stream,
                entry_count=audit.entry_count,
                breaks=len(audit.breaks),
            )
        return audit

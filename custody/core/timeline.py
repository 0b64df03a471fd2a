"""
Provenance Timeline Builder

Merges everything that happened to one evidence item into a single
ordered chain of custody:

    COLLECTION    the first evidence revision (collection date, collector)
    MOVEMENT      one per movement log entry
    ACCESS        one per evidence-room entry
    ACCESS_EXIT   one per evidence-room exit, independent of its entry
    MODIFICATION  one per later evidence revision

ORDERING:
    Stable sort by (timestamp, kind priority), priority in the order
    above. Remaining ties keep emission order. Sequence numbers 1..N are
    assigned after sorting.

Timelines are read-time projections. They are never persisted.
"""

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Sequence
from uuid import UUID

from ..observability import get_logger
from ..schemas import (
    EVIDENCE_STREAM,
    GENESIS,
    AccessRecord,
    EvidenceRecord,
    LedgerEntry,
    MovementRecord,
    Timeline,
    TimelineEvent,
    TimelineKind,
)
from .ledger import NotFoundError

if TYPE_CHECKING:
    from ..db.store import CustodyStore


logger = get_logger(__name__)

KIND_PRIORITY = {
    TimelineKind.COLLECTION: 0,
    TimelineKind.MOVEMENT: 1,
    TimelineKind.ACCESS: 2,
    TimelineKind.ACCESS_EXIT: 3,
    TimelineKind.MODIFICATION: 4,
}

SUMMARY_KEYS = {
    TimelineKind.COLLECTION: "collections",
    TimelineKind.MOVEMENT: "movements",
    TimelineKind.ACCESS: "accesses",
    TimelineKind.ACCESS_EXIT: "access_exits",
    TimelineKind.MODIFICATION: "modifications",
}

# Payload keys that change on every revision and say nothing about the edit
_VOLATILE_KEYS = ("__canon_v", "timestamp")


def _utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC so they sort against aware ones."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _changed_fields(before: LedgerEntry, after: LedgerEntry) -> list[str]:
    old = json.loads(before.canonical_payload)
    new = json.loads(after.canonical_payload)
    keys = (set(old) | set(new)) - set(_VOLATILE_KEYS)
    return sorted(k for k in keys if old.get(k) != new.get(k))


class ProvenanceTimelineBuilder:
    """Builds chain-of-custody timelines."""

    def __init__(self, store: "CustodyStore"):
        self._store = store

    @staticmethod
    def build(
        record: EvidenceRecord,
        movements: Sequence[MovementRecord],
        accesses: Sequence[AccessRecord],
        revisions: Sequence[LedgerEntry],
    ) -> Timeline:
        """
        Assemble a timeline from already-fetched records.

        Args:
            record: The evidence item
            movements: Its movement log entries
            accesses: Its evidence-room visits
            revisions: Its evidence-stream entries, oldest first
        """
        events: list[TimelineEvent] = []

        origin = revisions[0] if revisions else record.entry
        events.append(TimelineEvent(
            kind=TimelineKind.COLLECTION,
            timestamp=_utc(record.collection_date),
            actor_id=record.collected_by,
            detail={
                "action": "Evidence Collected",
                "location": record.collection_location,
                "evidence_type": record.evidence_type.value,
            },
            link=origin.current_link if origin else None,
            previous_link=origin.previous_link if origin else None,
            signature=origin.signature if origin else None,
        ))

        for movement in movements:
            entry = movement.entry
            events.append(TimelineEvent(
                kind=TimelineKind.MOVEMENT,
                timestamp=_utc(movement.created_at),
                actor_id=movement.officer_id,
                detail={
                    "action": "Evidence Movement",
                    "log_number": movement.log_number,
                    "source": movement.source,
                    "destination": movement.destination,
                    "purpose": movement.purpose,
                    "status": movement.status.value,
                },
                link=entry.current_link if entry else None,
                previous_link=entry.previous_link if entry else None,
                signature=entry.signature if entry else None,
            ))

        for access in accesses:
            detail = {
                "log_number": access.log_number,
                "purpose": access.purpose.value,
                "department": access.department,
            }
            events.append(TimelineEvent(
                kind=TimelineKind.ACCESS,
                timestamp=_utc(access.entry_time),
                actor_id=access.officer_id,
                detail={"action": "Officer Entry", **detail},
            ))
            if access.exit_time is not None:
                events.append(TimelineEvent(
                    kind=TimelineKind.ACCESS_EXIT,
                    timestamp=_utc(access.exit_time),
                    actor_id=access.officer_id,
                    detail={"action": "Officer Exit", **detail},
                ))

        for number, (before, after) in enumerate(zip(revisions, revisions[1:]), start=1):
            events.append(TimelineEvent(
                kind=TimelineKind.MODIFICATION,
                timestamp=_utc(after.recorded_at),
                actor_id=after.signer_id,
                detail={
                    "action": "Evidence Modified",
                    "revision": number,
                    "changed_fields": _changed_fields(before, after),
                },
                link=after.current_link,
                previous_link=after.previous_link,
                signature=after.signature,
            ))

        # Records with no revision history: one synthetic modification
        if not revisions and record.entry is not None and record.entry.previous_link != GENESIS:
            events.append(TimelineEvent(
                kind=TimelineKind.MODIFICATION,
                timestamp=_utc(record.updated_at),
                actor_id=record.entry.signer_id,
                detail={"action": "Evidence Modified", "status": record.status.value},
                link=record.entry.current_link,
                previous_link=record.entry.previous_link,
                signature=record.entry.signature,
            ))

        # sorted() is stable, so equal keys keep emission order
        events = sorted(events, key=lambda e: (e.timestamp, KIND_PRIORITY[e.kind]))
        events = [
            event.model_copy(update={"sequence": index})
            for index, event in enumerate(events, start=1)
        ]

        summary = {"total": len(events)}
        for kind, key in SUMMARY_KEYS.items():
            summary[key] = sum(1 for e in events if e.kind == kind)

        return Timeline(
            evidence_id=record.id,
            evidence_number=record.evidence_number,
            name=record.name,
            case_no=record.case_no,
            current_status=record.status.value,
            current_location=record.storage_location,
            events=events,
            summary=summary,
        )

    def build_timeline(self, evidence_id: UUID) -> Timeline:
        """
        Fetch everything about one evidence item and build its timeline.

        Raises:
            NotFoundError: Unknown evidence id
        """
        record: Optional[EvidenceRecord] = self._store.get_evidence(evidence_id)
        if record is None:
            raise NotFoundError(f"Evidence {evidence_id} does not exist")

        timeline = self.build(
            record,
            self._store.list_movements(evidence_id),
            self._store.list_accesses(evidence_id),
            self._store.list_entries_for(EVIDENCE_STREAM, evidence_id),
        )
        logger.debug(
            "Timeline built",
            evidence_id=str(evidence_id),
            events=timeline.summary["total"],
        )
        return timeline

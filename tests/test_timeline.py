"""
Tests for chain-of-custody timelines.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from custody.core import Hasher, NotFoundError, ProvenanceTimelineBuilder
from custody.schemas import (
    AccessCreate,
    AccessPurpose,
    EvidenceUpdate,
    MovementCreate,
    MovementStatus,
    TimelineKind,
)


def kinds(timeline):
    return [event.kind for event in timeline.events]


class TestTimeline:

    def test_new_record_has_only_collection(self, service, laptop, officer, collected_at):
        timeline = service.build_timeline(laptop.id)

        assert kinds(timeline) == [TimelineKind.COLLECTION]
        collection = timeline.events[0]
        assert collection.sequence == 1
        assert collection.timestamp == collected_at
        assert collection.actor_id == officer.principal_id
        assert collection.link == laptop.current_link
        assert timeline.summary == {
            "total": 1,
            "collections": 1,
            "movements": 0,
            "accesses": 0,
            "access_exits": 0,
            "modifications": 0,
        }

    def test_full_history_in_order(self, service, laptop, analyst, collected_at):
        visit = service.log_access(AccessCreate(
            evidence_id=laptop.id,
            department="Forensics",
            purpose=AccessPurpose.ANALYSIS,
            entry_time=collected_at + timedelta(hours=1),
        ), analyst.principal_id)
        service.record_exit(visit.id, collected_at + timedelta(hours=2))

        movement = service.record_movement(MovementCreate(
            evidence_id=laptop.id,
            source="Evidence Room A",
            destination="Lab 3",
        ), analyst.principal_id)
        service.update_movement_status(movement.id, MovementStatus.ARRIVED)

        service.update_evidence(laptop.id, EvidenceUpdate(description="Imaged"), analyst.principal_id)
        service.update_evidence(laptop.id, EvidenceUpdate(storage_location="Room B"), analyst.principal_id)

        timeline = service.build_timeline(laptop.id)

        assert kinds(timeline) == [
            TimelineKind.COLLECTION,
            TimelineKind.ACCESS,
            TimelineKind.ACCESS_EXIT,
            TimelineKind.MOVEMENT,
            TimelineKind.MODIFICATION,
            TimelineKind.MODIFICATION,
        ]
        assert [e.sequence for e in timeline.events] == [1, 2, 3, 4, 5, 6]
        assert timeline.summary["total"] == 6
        assert timeline.summary["modifications"] == 2
        assert timeline.current_location == "Room B"
        assert timeline.current_status == "In Storage"

        movement_event = timeline.events[3]
        assert movement_event.detail["status"] == MovementStatus.ARRIVED.value
        assert movement_event.link == movement.entry.current_link

        first_edit, second_edit = timeline.events[4:]
        assert first_edit.detail["changed_fields"] == ["description"]
        assert second_edit.detail["changed_fields"] == ["storage_location"]
        assert second_edit.previous_link == first_edit.link

    def test_access_events_carry_no_link(self, service, laptop, analyst, collected_at):
        service.log_access(AccessCreate(
            evidence_id=laptop.id,
            department="Forensics",
            purpose=AccessPurpose.INSPECTION,
            entry_time=collected_at + timedelta(minutes=5),
        ), analyst.principal_id)

        access = service.build_timeline(laptop.id).events[1]
        assert access.kind == TimelineKind.ACCESS
        assert access.link is None

    def test_open_visit_has_no_exit_event(self, service, laptop, analyst, collected_at):
        service.log_access(AccessCreate(
            evidence_id=laptop.id,
            department="Forensics",
            purpose=AccessPurpose.TAKE,
            entry_time=collected_at + timedelta(minutes=5),
        ), analyst.principal_id)

        assert service.build_timeline(laptop.id).summary["access_exits"] == 0

    def test_equal_timestamps_sort_by_kind(self, service, laptop, analyst, collected_at):
        service.log_access(AccessCreate(
            evidence_id=laptop.id,
            department="Forensics",
            purpose=AccessPurpose.STORE,
            entry_time=collected_at,
        ), analyst.principal_id)

        assert kinds(service.build_timeline(laptop.id)) == [TimelineKind.COLLECTION, TimelineKind.ACCESS]

    def test_naive_access_time_is_taken_as_utc(self, service, laptop, analyst, collected_at):
        service.log_access(AccessCreate(
            evidence_id=laptop.id,
            department="Forensics",
            purpose=AccessPurpose.COURT,
            entry_time=(collected_at - timedelta(hours=1)).replace(tzinfo=None),
        ), analyst.principal_id)

        assert kinds(service.build_timeline(laptop.id)) == [TimelineKind.ACCESS, TimelineKind.COLLECTION]

    def test_other_items_are_excluded(self, service, laptop, knife, analyst):
        service.record_movement(MovementCreate(
            evidence_id=knife.id,
            source="Room A",
            destination="Court 2",
        ), analyst.principal_id)

        assert service.build_timeline(laptop.id).summary["movements"] == 0
        assert service.build_timeline(knife.id).summary["movements"] == 1

    def test_unknown_evidence(self, service):
        with pytest.raises(NotFoundError):
            service.build_timeline(uuid4())


class TestRecordsWithoutRevisionHistory:
    """Records whose revisions are not in the ledger, e.g. imported ones."""

    def test_non_genesis_record_gets_one_modification(self, laptop):
        record = laptop.model_copy(update={
            "entry": laptop.entry.model_copy(update={"previous_link": Hasher.sha256_hex("older")}),
        })

        timeline = ProvenanceTimelineBuilder.build(record, [], [], [])

        assert kinds(timeline) == [TimelineKind.COLLECTION, TimelineKind.MODIFICATION]
        assert timeline.events[1].previous_link == Hasher.sha256_hex("older")

    def test_genesis_record_gets_none(self, laptop):
        timeline = ProvenanceTimelineBuilder.build(laptop, [], [], [])
        assert kinds(timeline) == [TimelineKind.COLLECTION]

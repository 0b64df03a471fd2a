"""
Tests for the action audit trail.

Every write and every verification leaves one record, whether it
succeeded or failed. The trail is queryable by filter, by target and
as statistics.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from custody.core import AuditTrail, NotFoundError, PreconditionError
from custody.db import InMemoryCustodyStore
from custody.schemas import (
    AccessCreate,
    AccessPurpose,
    AuditAction,
    AuditOutcome,
    AuditTarget,
    EvidenceUpdate,
    MovementCreate,
    MovementStatus,
)


def actions(service):
    return [r.action for r in service.audit.query(limit=500).records]


class TestTrack:

    @pytest.fixture
    def trail(self):
        return AuditTrail(InMemoryCustodyStore())

    def test_success_is_recorded_on_exit(self, trail):
        target = uuid4()
        with trail.track(AuditAction.EVIDENCE_CREATED, None, AuditTarget.EVIDENCE, case_no="C-1") as scope:
            scope.target_id = target
            scope.target_name = "EV1001"

        [record] = trail.for_target(target)
        assert record.status == AuditOutcome.SUCCESS
        assert record.target_name == "EV1001"
        assert record.details == {"case_no": "C-1"}
        assert record.error_message is None

    def test_failure_is_recorded_and_reraised(self, trail):
        actor = uuid4()
        with pytest.raises(PreconditionError, match="nope"):
            with trail.track(AuditAction.EVIDENCE_DELETED, actor, AuditTarget.EVIDENCE):
                raise PreconditionError("nope")

        [record] = trail.query().records
        assert record.status == AuditOutcome.FAILED
        assert record.actor_id == actor
        assert record.error_message == "nope"


class TestServiceAuditing:

    def test_writes_are_recorded_newest_first(self, service, officer, analyst, laptop):
        movement = service.record_movement(MovementCreate(
            evidence_id=laptop.id,
            source="Evidence Room A",
            destination="Digital Lab",
        ), analyst.principal_id)
        service.update_movement_status(movement.id, MovementStatus.ARRIVED, analyst.principal_id)
        visit = service.log_access(AccessCreate(
            evidence_id=laptop.id,
            department="Forensics",
            purpose=AccessPurpose.ANALYSIS,
        ), analyst.principal_id)
        service.record_exit(visit.id, actor_id=analyst.principal_id)
        service.update_evidence(laptop.id, EvidenceUpdate(description="Imaged"), analyst.principal_id)
        service.verify_evidence(laptop.id)
        service.delete_evidence(laptop.id, officer.principal_id)

        assert actions(service) == [
            AuditAction.EVIDENCE_DELETED,
            AuditAction.EVIDENCE_VERIFIED,
            AuditAction.EVIDENCE_UPDATED,
            AuditAction.ACCESS_LOG_EXIT,
            AuditAction.ACCESS_LOG_CREATED,
            AuditAction.MOVEMENT_STATUS_UPDATED,
            AuditAction.MOVEMENT_LOG_CREATED,
            AuditAction.EVIDENCE_CREATED,
            AuditAction.PRINCIPAL_REGISTERED,
            AuditAction.PRINCIPAL_REGISTERED,
        ]

    def test_create_names_its_target(self, service, laptop, officer):
        [record] = service.audit.for_target(laptop.id)

        assert record.action == AuditAction.EVIDENCE_CREATED
        assert record.actor_id == officer.principal_id
        assert record.target_type == AuditTarget.EVIDENCE
        assert record.target_name == "EV1001"
        assert record.details["case_no"] == laptop.case_no
        assert record.details["link"] == laptop.current_link

    def test_movement_names_its_log_number(self, service, laptop, analyst):
        movement = service.record_movement(MovementCreate(
            evidence_id=laptop.id,
            source="A",
            destination="B",
        ), analyst.principal_id)

        [record] = service.audit.for_target(movement.id)
        assert record.target_type == AuditTarget.MOVEMENT
        assert record.target_name == "ML10001"
        assert record.details["evidence_id"] == str(laptop.id)

    def test_unknown_actor_is_recorded_as_failure(self, service, make_evidence):
        stranger = uuid4()
        with pytest.raises(PreconditionError):
            service.create_evidence(make_evidence(), stranger)

        [record] = service.audit.query(status=AuditOutcome.FAILED).records
        assert record.action == AuditAction.EVIDENCE_CREATED
        assert record.actor_id == stranger
        assert "not registered" in record.error_message

    def test_missing_target_is_recorded_as_failure(self, service, officer):
        missing = uuid4()
        with pytest.raises(NotFoundError):
            service.delete_evidence(missing, officer.principal_id)

        [record] = service.audit.for_target(missing)
        assert record.action == AuditAction.EVIDENCE_DELETED
        assert record.status == AuditOutcome.FAILED

    def test_second_exit_is_recorded_as_failure(self, service, analyst):
        visit = service.log_access(AccessCreate(
            department="Forensics",
            purpose=AccessPurpose.INSPECTION,
        ), analyst.principal_id)
        service.record_exit(visit.id)
        with pytest.raises(PreconditionError):
            service.record_exit(visit.id)

        outcomes = [r.status for r in service.audit.for_target(visit.id)]
        assert outcomes == [AuditOutcome.FAILED, AuditOutcome.SUCCESS, AuditOutcome.SUCCESS]

    def test_tampered_verdict_is_a_successful_verification(self, service, laptop):
        service.store.save_evidence(laptop.model_copy(update={"name": "Spoon"}))
        service.verify_evidence(laptop.id)

        record = service.audit.query(action=AuditAction.EVIDENCE_VERIFIED).records[0]
        assert record.status == AuditOutcome.SUCCESS
        assert record.details["integrity"] == "TAMPERED"

    def test_update_without_revision_is_recorded(self, service, laptop, officer):
        service.update_evidence(laptop.id, EvidenceUpdate(description=laptop.description), officer.principal_id)

        record = service.audit.query(action=AuditAction.EVIDENCE_UPDATED).records[0]
        assert record.details["new_revision"] is False


class TestQueries:

    @pytest.fixture
    def history(self, service, officer, analyst, laptop, knife, make_evidence):
        service.update_evidence(knife.id, EvidenceUpdate(description="Prints lifted"), analyst.principal_id)
        service.create_evidence(make_evidence(name="Ledger book", case_no="CASE-2024-099"), analyst.principal_id)
        with pytest.raises(PreconditionError):
            service.create_evidence(make_evidence(), uuid4())

    def test_filters(self, service, history, analyst):
        page = service.audit.query(actor_id=analyst.principal_id)
        assert {r.action for r in page.records} == {
            AuditAction.EVIDENCE_UPDATED,
            AuditAction.EVIDENCE_CREATED,
        }

        assert service.audit.query(status=AuditOutcome.FAILED).total == 1
        assert service.audit.query(target_type=AuditTarget.PRINCIPAL).total == 2

    def test_search_matches_case_and_target_name(self, service, history):
        assert service.audit.query(search="case-2024-099").total == 1
        assert service.audit.query(search="EV1002").total == 2

    def test_time_range(self, service, history):
        now = datetime.now(timezone.utc)
        assert service.audit.query(since=now + timedelta(minutes=1)).total == 0
        assert service.audit.query(until=now + timedelta(minutes=1)).total == 7

    def test_naive_bounds_are_utc(self, service, history):
        future = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)
        assert service.audit.query(since=future).total == 0

    def test_pagination(self, service, history):
        first = service.audit.query(page=1, limit=3)
        last = service.audit.query(page=3, limit=3)

        assert (first.total, first.pages) == (7, 3)
        assert len(first.records) == 3
        assert len(last.records) == 1
        assert last.records[0].action == AuditAction.PRINCIPAL_REGISTERED

    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 501)])
    def test_bad_page_rejected(self, service, page, limit):
        with pytest.raises(PreconditionError):
            service.audit.query(page=page, limit=limit)

    def test_stats(self, service, history, officer, analyst):
        stats = service.audit.stats()
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        assert stats.total == 7
        assert stats.by_action == {
            "EVIDENCE_CREATED": 4,
            "PRINCIPAL_REGISTERED": 2,
            "EVIDENCE_UPDATED": 1,
        }
        assert stats.by_status == {"SUCCESS": 6, "FAILED": 1}
        assert stats.top_actors[str(officer.principal_id)] == 2
        assert stats.top_actors[str(analyst.principal_id)] == 2
        assert stats.daily == {today: 7}
        assert [r.action for r in stats.recent_critical] == [
            AuditAction.EVIDENCE_UPDATED,
            AuditAction.PRINCIPAL_REGISTERED,
            AuditAction.PRINCIPAL_REGISTERED,
        ]

    def test_stats_range_leaves_daily_window_alone(self, service, history):
        later = datetime.now(timezone.utc) + timedelta(minutes=1)
        stats = service.audit.stats(since=later)

        assert stats.total == 0
        assert sum(stats.daily.values()) == 7

"""
Custody Service - Write-Path Orchestration

Ties key custody, the hash-chain ledger, the Merkle index, the verifier,
the timeline builder and the audit trail to one store.

Rules (enforced in code):
- Principals must be registered before they can write
- Every evidence create/update is a signed ledger revision
- Every movement is a signed entry in the movement stream
- Every evidence mutation rebuilds the whole Merkle index
- Entry, record and index snapshot are committed together or not at all
- Status changes are outside the signed payload and never add revisions
- Every write and every verification leaves an audit record, failed or not

LOCK ORDER:
    index lock (this service) -> stream lock (store) -> state lock (store)
The index lock serializes evidence create, update, delete and every
rebuild, so two rebuilds never interleave.
"""

from datetime import datetime, timezone
from threading import RLock
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID, uuid4

from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import (
    EVIDENCE_STREAM,
    MOVEMENT_STREAM,
    AccessCreate,
    AccessRecord,
    AccessStatus,
    AuditAction,
    AuditTarget,
    EvidenceCreate,
    EvidenceRecord,
    EvidenceStatus,
    EvidenceUpdate,
    IntegrityReport,
    MovementCreate,
    MovementRecord,
    MovementStatus,
    Timeline,
)
from .audit import AuditTrail
from .hasher import Hasher
from .keystore import InMemoryKeyCustody, KeyCustody, Principal
from .ledger import ChainAudit, HashChainLedger, NotFoundError, PreconditionError, now_ms
from .merkle import IndexSnapshot, MerkleTreeIndex
from .payloads import EVIDENCE_FIELDS, evidence_payload, movement_payload
from .timeline import ProvenanceTimelineBuilder
from .verifier import IntegrityVerifier

if TYPE_CHECKING:
    from ..db.store import CustodyStore


logger = get_logger(__name__)

BUNDLE_VERSION = 1

# Fields whose change requires a new signed revision
SIGNED_FIELDS = frozenset(EVIDENCE_FIELDS) | {"attachments"}


class CustodyService:
    """
    The write path and the read entry points of the custody ledger.

    Storage is delegated to a CustodyStore, signing to KeyCustody.
    """

    def __init__(
        self,
        store: Optional["CustodyStore"] = None,
        keys: Optional[KeyCustody] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            store: CustodyStore implementation. If None, an InMemoryCustodyStore.
            keys: KeyCustody implementation. If None, an InMemoryKeyCustody.
            metrics: Metrics sink. If None, the global collector.
        """
        # Import here to avoid circular imports
        if store is None:
            from ..db.store import InMemoryCustodyStore
            store = InMemoryCustodyStore()

        self.store = store
        self.keys = keys or InMemoryKeyCustody()
        self.metrics = metrics or get_metrics()

        self.ledger = HashChainLedger(self.store, self.keys, self.metrics)
        self.index = MerkleTreeIndex(self.metrics)
        self.verifier = IntegrityVerifier(self.store, self.keys, self.ledger, self.metrics)
        self.timelines = ProvenanceTimelineBuilder(self.store)
        self.audit = AuditTrail(self.store)

        self._index_lock = RLock()

    # ================================================================
    # PRINCIPALS
    # ================================================================

    def register_principal(self, display_name: str) -> Principal:
        with self.audit.track(
            AuditAction.PRINCIPAL_REGISTERED,
            None,
            AuditTarget.PRINCIPAL,
            target_name=display_name,
        ) as scope:
            principal = self.keys.register_principal(display_name)
            scope.target_id = principal.principal_id
            scope.target_name = principal.display_name
        return principal

    def require_principal(self, principal_id: Optional[UUID]) -> UUID:
        if principal_id is None:
            raise PreconditionError("An acting principal is required")
        # Raises PreconditionError for an unknown principal
        self.keys.public_key(principal_id)
        return principal_id

    # ================================================================
    # EVIDENCE
    # ================================================================

    def _rebuild(self, records: list[EvidenceRecord]) -> IndexSnapshot:
        """Caller holds the index lock."""
        return self.index.rebuild(records, self.store.latest_root())

    def create_evidence(self, command: EvidenceCreate, actor_id: UUID) -> EvidenceRecord:
        """
        Record a new evidence item as the genesis revision of its subject.

        Raises:
            PreconditionError: Unknown actor or missing canonical fields
        """
        with self.audit.track(
            AuditAction.EVIDENCE_CREATED,
            actor_id,
            AuditTarget.EVIDENCE,
            target_name=command.name,
            case_no=command.case_no,
        ) as scope:
            actor_id = self.require_principal(actor_id)
            now = datetime.now(timezone.utc)

            with self._index_lock:
                draft = EvidenceRecord(
                    id=uuid4(),
                    evidence_number=self.store.allocate_number("EV"),
                    name=command.name,
                    case_no=command.case_no,
                    evidence_type=command.evidence_type,
                    description=command.description,
                    collected_by=actor_id,
                    collection_date=command.collection_date or now,
                    collection_location=command.collection_location,
                    storage_location=command.storage_location,
                    storage_pointer=command.storage_pointer,
                    status=EvidenceStatus.COLLECTED,
                    attachments=command.attachments,
                    created_at=now,
                    updated_at=now,
                )
                scope.target_id = draft.id
                scope.target_name = draft.evidence_number
                signed_at = now_ms()
                payload = evidence_payload(draft, signed_at)

                with self.ledger.begin_append(EVIDENCE_STREAM) as pending:
                    entry = pending.prepare(payload, actor_id, draft.id, signed_at=signed_at)
                    record = draft.model_copy(update={"entry": entry})
                    snapshot = self._rebuild([*self.store.list_evidence(), record])
                    pending.commit(entry, evidence=record, snapshot=snapshot)

            # The committed record as stored, without a second read
            record = record.model_copy(update={"merkle_proof": snapshot.proof_for(record.id)})
            scope.details["link"] = entry.current_link

        logger.info(
            "Evidence recorded",
            evidence_id=str(record.id),
            evidence_number=record.evidence_number,
            case_no=record.case_no,
        )
        return record

    def update_evidence(
        self,
        evidence_id: UUID,
        command: EvidenceUpdate,
        actor_id: UUID,
    ) -> EvidenceRecord:
        """
        Apply a partial update.

        A change to any signed field appends a new revision linked to the
        subject's previous link and rebuilds the index. A status-only
        change is saved without a revision.

        Raises:
            NotFoundError: Unknown evidence id
            PreconditionError: Unknown actor or missing canonical fields
        """
        with self.audit.track(
            AuditAction.EVIDENCE_UPDATED,
            actor_id,
            AuditTarget.EVIDENCE,
            target_id=evidence_id,
        ) as scope:
            actor_id = self.require_principal(actor_id)

            with self._index_lock:
                current = self.get_evidence(evidence_id)
                scope.target_name = current.evidence_number
                scope.details["case_no"] = current.case_no
                now = datetime.now(timezone.utc)

                changes: dict[str, Any] = {
                    key: getattr(command, key)
                    for key in command.model_fields_set
                    if getattr(command, key) is not None
                }
                signed_changes = {
                    key: value for key, value in changes.items()
                    if key in SIGNED_FIELDS and getattr(current, key) != value
                }
                scope.details["fields"] = sorted(changes)
                scope.details["new_revision"] = bool(signed_changes)

                updated = current.model_copy(update={**changes, "updated_at": now})

                if not signed_changes:
                    record = self.store.save_evidence(updated)
                    logger.info(
                        "Evidence updated without new revision",
                        evidence_id=str(evidence_id),
                        fields=sorted(changes),
                    )
                    return record

                signed_at = now_ms()
                payload = evidence_payload(updated, signed_at)
                previous_link = current.entry.current_link if current.entry else None

                with self.ledger.begin_append(EVIDENCE_STREAM) as pending:
                    entry = pending.prepare(
                        payload,
                        actor_id,
                        evidence_id,
                        previous_link=previous_link,
                        signed_at=signed_at,
                    )
                    record = updated.model_copy(update={"entry": entry})
                    records = [
                        record if r.id == evidence_id else r
                        for r in self.store.list_evidence()
                    ]
                    snapshot = self._rebuild(records)
                    pending.commit(entry, evidence=record, snapshot=snapshot)

            record = record.model_copy(update={"merkle_proof": snapshot.proof_for(evidence_id)})
            scope.details["link"] = entry.current_link

        logger.info(
            "Evidence revised",
            evidence_id=str(evidence_id),
            fields=sorted(signed_changes),
            link=entry.current_link[:16],
        )
        return record

    def delete_evidence(self, evidence_id: UUID, actor_id: Optional[UUID] = None) -> None:
        """
        Remove an evidence record and rebuild the index without it.

        Its ledger entries stay: the ledger is append-only. A given actor
        must be registered; None is an internal caller.

        Raises:
            NotFoundError: Unknown evidence id
            PreconditionError: Unknown actor
        """
        with self.audit.track(
            AuditAction.EVIDENCE_DELETED,
            actor_id,
            AuditTarget.EVIDENCE,
            target_id=evidence_id,
        ) as scope:
            if actor_id is not None:
                self.require_principal(actor_id)

            with self._index_lock:
                record = self.get_evidence(evidence_id)
                scope.target_name = record.evidence_number
                scope.details["case_no"] = record.case_no
                remaining = [r for r in self.store.list_evidence() if r.id != evidence_id]
                snapshot = self._rebuild(remaining)
                self.store.delete_evidence(evidence_id, snapshot)

        logger.info("Evidence deleted", evidence_id=str(evidence_id), remaining=len(remaining))

    def get_evidence(self, evidence_id: UUID) -> EvidenceRecord:
        record = self.store.get_evidence(evidence_id)
        if record is None:
            raise NotFoundError(f"Evidence {evidence_id} does not exist")
        return record

    def list_evidence(
        self,
        case_no: Optional[str] = None,
        status: Optional[EvidenceStatus] = None,
    ) -> list[EvidenceRecord]:
        records = self.store.list_evidence()
        if case_no is not None:
            records = [r for r in records if r.case_no == case_no]
        if status is not None:
            records = [r for r in records if r.status == status]
        return records

    def _set_evidence_status(self, evidence_id: UUID, status: EvidenceStatus) -> None:
        with self._index_lock:
            record = self.store.get_evidence(evidence_id)
            if record is None:
                # Deleted since the movement was logged
                logger.warning("Status change for missing evidence", evidence_id=str(evidence_id))
                return
            self.store.save_evidence(record.model_copy(update={
                "status": status,
                "updated_at": datetime.now(timezone.utc),
            }))

    # ================================================================
    # INDEX
    # ================================================================

    def rebuild_index(self) -> IndexSnapshot:
        """Rebuild the Merkle index over every evidence record and install it."""
        with self._index_lock:
            snapshot = self._rebuild(self.store.list_evidence())
            self.store.install_snapshot(snapshot)
        return snapshot

    # ================================================================
    # MOVEMENTS
    # ================================================================

    def record_movement(self, command: MovementCreate, actor_id: UUID) -> MovementRecord:
        """
        Log a transfer of an evidence item and chain it in the movement stream.

        The item's status becomes In Transit.

        Raises:
            NotFoundError: Unknown evidence id
            PreconditionError: Unknown actor
        """
        with self.audit.track(
            AuditAction.MOVEMENT_LOG_CREATED,
            actor_id,
            AuditTarget.MOVEMENT,
            evidence_id=str(command.evidence_id),
            source=command.source,
            destination=command.destination,
        ) as scope:
            actor_id = self.require_principal(actor_id)
            evidence = self.get_evidence(command.evidence_id)
            scope.details["case_no"] = evidence.case_no

            draft = MovementRecord(
                id=uuid4(),
                log_number=self.store.allocate_number("ML"),
                evidence_id=evidence.id,
                case_no=evidence.case_no,
                source=command.source,
                destination=command.destination,
                officer_id=actor_id,
                purpose=command.purpose,
                status=MovementStatus.DEPARTED,
                created_at=datetime.now(timezone.utc),
            )
            scope.target_id = draft.id
            scope.target_name = draft.log_number
            signed_at = now_ms()
            payload = movement_payload(draft, signed_at)

            with self.ledger.begin_append(MOVEMENT_STREAM) as pending:
                entry = pending.prepare(payload, actor_id, draft.id, signed_at=signed_at)
                record = draft.model_copy(update={"entry": entry})
                pending.commit(entry, movement=record)

            self._set_evidence_status(evidence.id, EvidenceStatus.IN_TRANSIT)

        logger.info(
            "Movement logged",
            movement_id=str(record.id),
            log_number=record.log_number,
            evidence_id=str(evidence.id),
        )
        return record

    def update_movement_status(
        self,
        movement_id: UUID,
        status: MovementStatus,
        actor_id: Optional[UUID] = None,
    ) -> MovementRecord:
        """
        Change a movement's status. Arrival puts the item back In Storage.

        Raises:
            NotFoundError: Unknown movement id
            PreconditionError: Unknown actor
        """
        with self.audit.track(
            AuditAction.MOVEMENT_STATUS_UPDATED,
            actor_id,
            AuditTarget.MOVEMENT,
            target_id=movement_id,
            status=status.value,
        ) as scope:
            if actor_id is not None:
                self.require_principal(actor_id)

            movement = self.store.get_movement(movement_id)
            if movement is None:
                raise NotFoundError(f"Movement {movement_id} does not exist")
            scope.target_name = movement.log_number
            scope.details["case_no"] = movement.case_no

            movement = self.store.save_movement(movement.model_copy(update={"status": status}))

            if status == MovementStatus.ARRIVED:
                self._set_evidence_status(movement.evidence_id, EvidenceStatus.IN_STORAGE)

        logger.info(
            "Movement status changed",
            movement_id=str(movement_id),
            status=status.value,
        )
        return movement

    def list_movements(
        self,
        evidence_id: Optional[UUID] = None,
        case_no: Optional[str] = None,
        officer_id: Optional[UUID] = None,
    ) -> list[MovementRecord]:
        movements = self.store.list_movements(evidence_id)
        if case_no is not None:
            movements = [m for m in movements if m.case_no == case_no]
        if officer_id is not None:
            movements = [m for m in movements if m.officer_id == officer_id]
        return movements

    # ================================================================
    # ACCESS LOG
    # ================================================================

    def log_access(self, command: AccessCreate, actor_id: UUID) -> AccessRecord:
        """
        Record an officer entering the evidence room.

        Raises:
            NotFoundError: The referenced evidence does not exist
            PreconditionError: Unknown actor
        """
        with self.audit.track(
            AuditAction.ACCESS_LOG_CREATED,
            actor_id,
            AuditTarget.ACCESS,
            department=command.department,
            purpose=command.purpose.value,
        ) as scope:
            actor_id = self.require_principal(actor_id)

            case_no = None
            if command.evidence_id is not None:
                case_no = self.get_evidence(command.evidence_id).case_no
                scope.details["evidence_id"] = str(command.evidence_id)
                scope.details["case_no"] = case_no

            record = AccessRecord(
                id=uuid4(),
                log_number=self.store.allocate_number("AL"),
                evidence_id=command.evidence_id,
                case_no=case_no,
                officer_id=actor_id,
                department=command.department,
                designation=command.designation,
                purpose=command.purpose,
                entry_time=command.entry_time or datetime.now(timezone.utc),
                status=AccessStatus.ENTERED,
            )
            scope.target_id = record.id
            scope.target_name = record.log_number
            self.store.save_access(record)

        logger.info("Access logged", access_id=str(record.id), log_number=record.log_number)
        return record

    def record_exit(
        self,
        access_id: UUID,
        exit_time: Optional[datetime] = None,
        actor_id: Optional[UUID] = None,
    ) -> AccessRecord:
        """
        Stamp an officer's exit.

        Raises:
            NotFoundError: Unknown access id
            PreconditionError: Unknown actor, already exited, or exit before entry
        """
        with self.audit.track(
            AuditAction.ACCESS_LOG_EXIT,
            actor_id,
            AuditTarget.ACCESS,
            target_id=access_id,
        ) as scope:
            if actor_id is not None:
                self.require_principal(actor_id)

            record = self.store.get_access(access_id)
            if record is None:
                raise NotFoundError(f"Access log {access_id} does not exist")
            scope.target_name = record.log_number
            if record.status == AccessStatus.EXITED:
                raise PreconditionError(f"Access log {record.log_number} already has an exit")

            exit_time = exit_time or datetime.now(timezone.utc)
            entry_time = record.entry_time
            if exit_time.tzinfo is None:
                exit_time = exit_time.replace(tzinfo=timezone.utc)
            if entry_time.tzinfo is None:
                entry_time = entry_time.replace(tzinfo=timezone.utc)
            if exit_time < entry_time:
                raise PreconditionError("Exit time is before entry time")

            record = self.store.save_access(record.model_copy(update={
                "exit_time": exit_time,
                "status": AccessStatus.EXITED,
            }))
        logger.info("Access exit logged", access_id=str(access_id))
        return record

    def list_accesses(
        self,
        evidence_id: Optional[UUID] = None,
        officer_id: Optional[UUID] = None,
    ) -> list[AccessRecord]:
        accesses = self.store.list_accesses(evidence_id)
        if officer_id is not None:
            accesses = [a for a in accesses if a.officer_id == officer_id]
        return accesses

    # ================================================================
    # VERIFICATION AND PROVENANCE
    # ================================================================

    def verify_evidence(self, evidence_id: UUID, actor_id: Optional[UUID] = None) -> IntegrityReport:
        """A TAMPERED verdict is a successful verification, audited as such."""
        with self.audit.track(
            AuditAction.EVIDENCE_VERIFIED,
            actor_id,
            AuditTarget.EVIDENCE,
            target_id=evidence_id,
        ) as scope:
            report = self.verifier.verify(evidence_id)
            scope.target_name = report.evidence_number
            scope.details["integrity"] = report.status.value
        return report

    def build_timeline(self, evidence_id: UUID) -> Timeline:
        return self.timelines.build_timeline(evidence_id)

    def audit_all(self) -> dict[str, ChainAudit]:
        """Full audit of every ledger stream."""
        return {stream: self.ledger.audit_stream(stream) for stream in self.ledger.streams()}

    def export_bundle(self, evidence_id: UUID) -> dict:
        """
        Self-contained verification bundle for one evidence item.

        Contains every signed revision, every movement entry, the signers'
        public keys and the current inclusion proof. tools/verify.py checks
        it without a server.
        """
        record, snapshot = self.store.read_evidence_with_snapshot(evidence_id)
        if record is None:
            raise NotFoundError(f"Evidence {evidence_id} does not exist")

        report = self.verifier.verify_record(record, snapshot)
        # Nothing newer than the record that was read
        revisions = [
            e for e in self.ledger.revisions(EVIDENCE_STREAM, evidence_id)
            if record.entry is None or e.sequence <= record.entry.sequence
        ]
        movements = self.store.list_movements(evidence_id)
        proof = snapshot.proof_for(evidence_id)

        signer_ids = {e.signer_id for e in revisions}
        signer_ids.update(m.entry.signer_id for m in movements if m.entry)
        signers = {}
        for signer_id in sorted(signer_ids, key=str):
            principal = self.keys.get_principal(signer_id)
            if principal is not None:
                signers[str(signer_id)] = {
                    "display_name": principal.display_name,
                    "public_key": principal.public_key,
                }

        return {
            "_meta": {
                "bundle_version": BUNDLE_VERSION,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "integrity_at_export": report.status.value,
            },
            "_verification": {
                "canonicalization_version": Hasher.SERIALIZATION_VERSION,
                "link": "sha256(canonical_payload + previous_link)",
                "signature": "ed25519(sha256(canonical_payload))",
                "merkle_parent": "sha256(left_hex + right_hex)",
            },
            "evidence": record.model_dump(mode="json", exclude={"entry", "merkle_proof"}),
            "revisions": [e.model_dump(mode="json") for e in revisions],
            "movements": [
                m.model_dump(mode="json") for m in movements
            ],
            "signers": signers,
            "merkle": {
                "root": snapshot.root.model_dump(mode="json") if snapshot.root else None,
                "proof": proof.model_dump(mode="json") if proof else None,
            },
        }

"""
Integrity Verifier

Answers one question about an evidence record: is it exactly what its
signer committed to?

Checks, in a single pass:
1. signature: re-derive the canonical payload from the CURRENT stored
   fields and verify the signature against the signer's public key
2. merkle: verify the record's inclusion proof against the root of the
   same index snapshot
3. hash chain: the record's entry links to an existing entry of its stream

VERDICT:
    no signed_at                       -> CANNOT_VERIFY
    signature valid and chain valid    -> VERIFIED
    otherwise                          -> TAMPERED

Merkle inclusion is reported but does not gate the verdict.
Negative outcomes are values, never exceptions.
"""

from typing import TYPE_CHECKING, Optional
from uuid import UUID

from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import EvidenceRecord, IntegrityReport, IntegrityStatus
from .hasher import CanonicalSerializationError
from .ledger import HashChainLedger, LedgerError, NotFoundError
from .merkle import IndexSnapshot, MerkleTreeIndex
from .payloads import evidence_payload
from .signer import Signer

if TYPE_CHECKING:
    from ..db.store import CustodyStore
    from .keystore import KeyCustody


logger = get_logger(__name__)


class IntegrityVerifier:
    """Verifies evidence records against signature, index and chain."""

    def __init__(
        self,
        store: "CustodyStore",
        keys: "KeyCustody",
        ledger: HashChainLedger,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._keys = keys
        self._ledger = ledger
        self._metrics = metrics or get_metrics()

    def verify(self, evidence_id: UUID) -> IntegrityReport:
        """
        Verify one evidence record.

        Raises:
            NotFoundError: Unknown evidence id
        """
        record, snapshot = self._store.read_evidence_with_snapshot(evidence_id)
        if record is None:
            raise NotFoundError(f"Evidence {evidence_id} does not exist")

        report = self.verify_record(record, snapshot)
        self._metrics.record_verification(report.status.value)

        log = logger.info if report.status == IntegrityStatus.VERIFIED else logger.warning
        log(
            "Evidence verified",
            evidence_id=str(record.id),
            status=report.status.value,
            signature_valid=report.signature_valid,
            merkle_valid=report.merkle_valid,
            hash_chain_valid=report.hash_chain_valid,
        )
        return report

    def verify_record(
        self,
        record: EvidenceRecord,
        snapshot: Optional[IndexSnapshot] = None,
    ) -> IntegrityReport:
        """
        Verify a record already in hand.

        The snapshot must be the one read together with the record.
        Without one the current snapshot is used.
        """
        entry = record.entry

        if entry is None or entry.signed_at is None:
            return IntegrityReport(
                evidence_id=record.id,
                evidence_number=record.evidence_number,
                signature_valid=False,
                merkle_valid=False,
                hash_chain_valid=False,
                status=IntegrityStatus.CANNOT_VERIFY,
                signer_id=entry.signer_id if entry else None,
                current_link=record.current_link,
                previous_link=record.previous_link,
                message="Record has no signing timestamp; integrity cannot be established",
            )

        signature_valid = self._check_signature(record)

        # Root and proof from one snapshot, never from two rebuilds
        if snapshot is None:
            snapshot = self._store.get_snapshot()
        merkle_root = snapshot.root.root if snapshot.root else None
        merkle_valid = MerkleTreeIndex.verify_inclusion(
            snapshot.proof_for(record.id), record, merkle_root
        )

        hash_chain_valid = self._check_chain(record)

        if signature_valid and hash_chain_valid:
            status = IntegrityStatus.VERIFIED
            message = "Signature and hash chain verified"
        else:
            status = IntegrityStatus.TAMPERED
            failed = []
            if not signature_valid:
                failed.append("signature")
            if not hash_chain_valid:
                failed.append("hash chain")
            message = f"Integrity check failed: {' and '.join(failed)}"

        if not merkle_valid:
            message += "; not included under the current Merkle root"

        return IntegrityReport(
            evidence_id=record.id,
            evidence_number=record.evidence_number,
            signature_valid=signature_valid,
            merkle_valid=merkle_valid,
            hash_chain_valid=hash_chain_valid,
            status=status,
            signer_id=entry.signer_id,
            current_link=entry.current_link,
            previous_link=entry.previous_link,
            merkle_root=merkle_root,
            message=message,
        )

    def _check_signature(self, record: EvidenceRecord) -> bool:
        entry = record.entry
        public_key = self._keys.find_public_key(entry.signer_id)
        if public_key is None:
            logger.warning(
                "Unknown signer on evidence",
                evidence_id=str(record.id),
                signer_id=str(entry.signer_id),
            )
            return False

        try:
            payload = evidence_payload(record, entry.signed_at)
        except (CanonicalSerializationError, LedgerError) as e:
            logger.warning(
                "Could not rebuild canonical payload",
                evidence_id=str(record.id),
                error=str(e),
            )
            return False

        return Signer.verify(payload, entry.signature, public_key)

    def _check_chain(self, record: EvidenceRecord) -> bool:
        try:
            return self._ledger.verify_continuity(record.entry)
        except LedgerError as e:
            logger.warning(
                "Continuity check failed",
                evidence_id=str(record.id),
                error=str(e),
            )
            return False

# Canonical Schemas for the Evidence Custody Ledger
# These define the contract every stored record must obey.

from .ledger import (
    GENESIS,
    EVIDENCE_STREAM,
    MOVEMENT_STREAM,
    LedgerEntry,
    MerkleProof,
    MerkleRoot,
    ProofStep,
)
from .evidence import (
    Attachment,
    EvidenceRecord,
    EvidenceStatus,
    EvidenceType,
)
from .custody import (
    AccessPurpose,
    AccessRecord,
    AccessStatus,
    MovementRecord,
    MovementStatus,
)
from .commands import (
    AccessCreate,
    AccessExit,
    EvidenceCreate,
    EvidenceUpdate,
    MovementCreate,
    MovementStatusUpdate,
    PrincipalCreate,
)
from .audit import (
    AuditAction,
    AuditOutcome,
    AuditPage,
    AuditRecord,
    AuditStats,
    AuditTarget,
)
from .timeline import (
    IntegrityReport,
    IntegrityStatus,
    Timeline,
    TimelineEvent,
    TimelineKind,
)

__all__ = [
    # Ledger
    "GENESIS",
    "EVIDENCE_STREAM",
    "MOVEMENT_STREAM",
    "LedgerEntry",
    "MerkleProof",
    "MerkleRoot",
    "ProofStep",
    # Evidence
    "Attachment",
    "EvidenceRecord",
    "EvidenceStatus",
    "EvidenceType",
    # Custody logs
    "AccessPurpose",
    "AccessRecord",
    "AccessStatus",
    "MovementRecord",
    "MovementStatus",
    # Commands
    "AccessCreate",
    "AccessExit",
    "EvidenceCreate",
    "EvidenceUpdate",
    "MovementCreate",
    "MovementStatusUpdate",
    "PrincipalCreate",
    # Audit trail
    "AuditAction",
    "AuditOutcome",
    "AuditPage",
    "AuditRecord",
    "AuditStats",
    "AuditTarget",
    # Read models
    "IntegrityReport",
    "IntegrityStatus",
    "Timeline",
    "TimelineEvent",
    "TimelineKind",
]

# Core custody services
from .hasher import Hasher, CanonicalSerializationError
from .signer import Signer
from .ledger import (
    HashChainLedger,
    PendingAppend,
    ChainAudit,
    ChainBreak,
    LedgerError,
    NotFoundError,
    PreconditionError,
    DuplicateError,
    ChainError,
    CorruptionError,
    IndexCorruptionError,
)
from .keystore import KeyCustody, InMemoryKeyCustody, Principal
from .audit import AuditTrail, AuditScope
from .merkle import MerkleTree, MerkleTreeIndex, IndexSnapshot
from .payloads import evidence_payload, movement_payload
from .verifier import IntegrityVerifier
from .timeline import ProvenanceTimelineBuilder
from .service import CustodyService

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "Signer",
    "HashChainLedger",
    "PendingAppend",
    "ChainAudit",
    "ChainBreak",
    "LedgerError",
    "NotFoundError",
    "PreconditionError",
    "DuplicateError",
    "ChainError",
    "CorruptionError",
    "IndexCorruptionError",
    "KeyCustody",
    "InMemoryKeyCustody",
    "Principal",
    "AuditTrail",
    "AuditScope",
    "MerkleTree",
    "MerkleTreeIndex",
    "IndexSnapshot",
    "evidence_payload",
    "movement_payload",
    "IntegrityVerifier",
    "ProvenanceTimelineBuilder",
    "CustodyService",
]

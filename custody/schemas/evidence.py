"""
Canonical Evidence Schema

Descriptive fields belong to the records layer.
Cryptographic fields (entry, merkle_proof) belong to the ledger.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .ledger import GENESIS, LedgerEntry, MerkleProof


class EvidenceType(str, Enum):
    DIGITAL = "Digital"
    PHYSICAL = "Physical"
    BIOLOGICAL = "Biological"
    DOCUMENTARY = "Documentary"
    WEAPON = "Weapon"
    DRUG = "Drug"
    FINANCIAL = "Financial"
    OTHER = "Other"


class EvidenceStatus(str, Enum):
    """
    Custody status of an evidence item.

    Status is NOT part of the canonical payload. It changes as the item
    moves and must never invalidate historical signatures.
    """
    COLLECTED = "Collected"
    IN_STORAGE = "In Storage"
    IN_TRANSIT = "In Transit"
    UNDER_ANALYSIS = "Under Analysis"
    IN_COURT = "In Court"
    DISPOSED = "Disposed"


class Attachment(BaseModel):
    """A file attached to an evidence item. Content lives in file storage."""
    file_name: str
    file_hash: str = Field(
        ...,
        min_length=64,
        max_length=64,
        pattern=r"^[0-9a-fA-F]{64}$",
        description="SHA-256 of the file content (hex)"
    )
    file_size: int = Field(..., ge=0)
    media_type: str = "application/octet-stream"
    uploaded_at: Optional[datetime] = None


class EvidenceRecord(BaseModel):
    """
    An evidence item with its embedded ledger state.

    entry is the latest revision. Older revisions stay in the
    evidence stream of the ledger.
    """
    id: UUID
    evidence_number: str = Field(..., description="Human-readable id, e.g. EV1001")

    name: str = Field(..., min_length=1)
    case_no: str = Field(..., min_length=1)
    evidence_type: EvidenceType
    description: str
    collected_by: UUID
    collection_date: datetime
    collection_location: str
    storage_location: str
    storage_pointer: str = Field(
        ...,
        description="Storage reference: content address, object URL or shelf code"
    )

    status: EvidenceStatus = EvidenceStatus.COLLECTED
    attachments: list[Attachment] = Field(default_factory=list)

    entry: Optional[LedgerEntry] = None
    merkle_proof: Optional[MerkleProof] = None

    created_at: datetime
    updated_at: datetime

    @property
    def current_link(self) -> Optional[str]:
        return self.entry.current_link if self.entry else None

    @property
    def previous_link(self) -> str:
        return self.entry.previous_link if self.entry else GENESIS

    @property
    def signed_at(self) -> Optional[int]:
        return self.entry.signed_at if self.entry else None

"""
Canonical Ledger Schema

Every write to a custody stream produces one immutable LedgerEntry.
Nothing is edited in place. An update is a new entry that links back
to the subject's previous link.

Merkle roots form their own chain, one entry per full index rebuild.
"""

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# Sentinel previous link for the first entry of a stream
# (and previous root for the first Merkle root).
GENESIS = "GENESIS"

EVIDENCE_STREAM = "evidence"
MOVEMENT_STREAM = "movement"


class LedgerEntry(BaseModel):
    """
    The immutable record of one append to a ledger stream.

    Chain Integrity Rules:
    - current_link = SHA256(canonical_payload + previous_link)
    - previous_link is GENESIS only for the first entry of a stream
    - signed_at is persisted verbatim; verification never re-derives it
    """
    model_config = ConfigDict(frozen=True)

    stream: str = Field(
        ...,
        description="Ledger stream this entry belongs to ('evidence', 'movement')"
    )
    sequence: int = Field(
        ...,
        ge=0,
        description="Append order within the stream (0 for the first entry)"
    )
    subject_id: UUID = Field(
        ...,
        description="The evidence item or movement this entry authenticates"
    )

    # Hash chain - CRITICAL INTEGRITY FIELDS
    current_link: str = Field(
        ...,
        description="SHA-256 of canonical_payload + previous_link"
    )
    previous_link: str = Field(
        default=GENESIS,
        description="current_link of the entry this one follows, or GENESIS"
    )
    canonical_payload: str = Field(
        ...,
        description="Exact canonical string that was hashed and signed"
    )

    # Attribution
    signature: str = Field(
        ...,
        description="Ed25519 signature (base64) over SHA-256 of the payload"
    )
    signer_id: UUID = Field(
        ...,
        description="Principal whose key produced the signature"
    )
    signed_at: Optional[int] = Field(
        default=None,
        description="Epoch milliseconds used in the signed payload. None for legacy records."
    )

    recorded_at: datetime = Field(
        ...,
        description="When the entry was committed"
    )

    @property
    def is_genesis(self) -> bool:
        return self.previous_link == GENESIS


class ProofStep(BaseModel):
    """One sibling on the path from a leaf to the root."""
    model_config = ConfigDict(frozen=True)

    sibling: str
    side: Literal["left", "right"]


class MerkleProof(BaseModel):
    """
    Proof that a subject's leaf is included under a Merkle root.

    Proofs are regenerated on every rebuild. A proof is only meaningful
    against the root it was generated with.
    """
    model_config = ConfigDict(frozen=True)

    subject_id: UUID
    leaf: str
    steps: list[ProofStep] = Field(default_factory=list)
    merkle_root: str


class MerkleRoot(BaseModel):
    """One link in the chain of Merkle roots."""
    model_config = ConfigDict(frozen=True)

    root: str
    leaf_count: int = Field(..., ge=1)
    previous_root: str = GENESIS
    sequence: int = Field(..., ge=0)
    computed_at: datetime

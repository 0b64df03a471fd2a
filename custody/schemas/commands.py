"""
Command Schemas

What a caller submits. The service turns these into records, payloads
and ledger entries. Identity (who is acting) is never part of a command:
it comes from the authentication layer as a principal id.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .custody import AccessPurpose, MovementStatus
from .evidence import Attachment, EvidenceStatus, EvidenceType


class EvidenceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=500)
    case_no: str = Field(..., min_length=1, max_length=100)
    evidence_type: EvidenceType
    description: str = ""
    collection_date: Optional[datetime] = Field(
        default=None,
        description="Defaults to the time of recording"
    )
    collection_location: str = ""
    storage_location: str = ""
    storage_pointer: str = Field(..., min_length=1)
    attachments: list[Attachment] = Field(default_factory=list)


class EvidenceUpdate(BaseModel):
    """
    Partial update. Only fields that are set are changed.

    Every update of a signed field creates a new ledger revision.
    """
    name: Optional[str] = Field(default=None, min_length=1, max_length=500)
    case_no: Optional[str] = Field(default=None, min_length=1, max_length=100)
    evidence_type: Optional[EvidenceType] = None
    description: Optional[str] = None
    collection_location: Optional[str] = None
    storage_location: Optional[str] = None
    storage_pointer: Optional[str] = Field(default=None, min_length=1)
    status: Optional[EvidenceStatus] = None
    attachments: Optional[list[Attachment]] = None


class MovementCreate(BaseModel):
    evidence_id: UUID
    source: str = Field(..., min_length=1)
    destination: str = Field(..., min_length=1)
    purpose: Optional[str] = None


class MovementStatusUpdate(BaseModel):
    status: MovementStatus


class AccessCreate(BaseModel):
    evidence_id: Optional[UUID] = None
    department: str = Field(..., min_length=1)
    designation: Optional[str] = None
    purpose: AccessPurpose
    entry_time: Optional[datetime] = Field(
        default=None,
        description="Defaults to the time of recording"
    )


class AccessExit(BaseModel):
    exit_time: Optional[datetime] = None


class PrincipalCreate(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=200)

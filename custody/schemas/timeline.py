"""
Timeline and Verification Schemas

Read-time projections. Never persisted.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class TimelineKind(str, Enum):
    COLLECTION = "COLLECTION"
    MOVEMENT = "MOVEMENT"
    ACCESS = "ACCESS"
    ACCESS_EXIT = "ACCESS_EXIT"
    MODIFICATION = "MODIFICATION"


class TimelineEvent(BaseModel):
    """One point in an evidence item's chain of custody."""
    kind: TimelineKind
    timestamp: datetime
    actor_id: Optional[UUID] = None
    detail: dict[str, Any] = Field(default_factory=dict)
    sequence: int = Field(default=0, ge=0, description="1-based, assigned after sorting")

    # Ledger data for display (None for unchained events such as access)
    link: Optional[str] = None
    previous_link: Optional[str] = None
    signature: Optional[str] = None


class Timeline(BaseModel):
    """Merged, sequenced custody history of one evidence item."""
    evidence_id: UUID
    evidence_number: str
    name: str
    case_no: str
    current_status: str
    current_location: str
    events: list[TimelineEvent]
    summary: dict[str, int]


class IntegrityStatus(str, Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    CANNOT_VERIFY = "CANNOT_VERIFY"


class IntegrityReport(BaseModel):
    """
    Outcome of verifying one evidence record.

    Carries each check separately so a caller can explain WHY
    integrity failed, not just that it failed.
    """
    evidence_id: UUID
    evidence_number: str
    signature_valid: bool
    merkle_valid: bool
    hash_chain_valid: bool
    status: IntegrityStatus
    signer_id: Optional[UUID] = None
    current_link: Optional[str] = None
    previous_link: Optional[str] = None
    merkle_root: Optional[str] = None
    message: str = ""

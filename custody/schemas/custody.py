"""
Custody Log Schemas

Movement records are hash-chained in their own ledger stream.
Access records are plain log entries with an entry and exit time.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .ledger import LedgerEntry


class MovementStatus(str, Enum):
    DEPARTED = "Evidence Departed"
    IN_TRANSIT = "In Transit"
    ARRIVED = "Evidence Arrived"


class AccessPurpose(str, Enum):
    STORE = "To Store Evidence"
    TAKE = "To Take Evidence"
    ANALYSIS = "For Analysis"
    COURT = "For Court"
    INSPECTION = "Inspection"


class AccessStatus(str, Enum):
    ENTERED = "Officer Entered"
    EXITED = "Officer Exited"


class MovementRecord(BaseModel):
    """A transfer of an evidence item between locations."""
    id: UUID
    log_number: str = Field(..., description="Human-readable id, e.g. ML10001")
    evidence_id: UUID
    case_no: str
    source: str
    destination: str
    officer_id: UUID
    purpose: Optional[str] = None
    status: MovementStatus = MovementStatus.DEPARTED
    created_at: datetime
    entry: Optional[LedgerEntry] = None


class AccessRecord(BaseModel):
    """An officer's visit to the evidence room."""
    id: UUID
    log_number: str = Field(..., description="Human-readable id, e.g. AL10001")
    evidence_id: Optional[UUID] = None
    case_no: Optional[str] = None
    officer_id: UUID
    department: str
    designation: Optional[str] = None
    purpose: AccessPurpose
    entry_time: datetime
    exit_time: Optional[datetime] = None
    status: AccessStatus = AccessStatus.ENTERED
    entry: Optional[LedgerEntry] = None

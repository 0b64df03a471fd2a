"""
Audit Trail Schemas

Who did what to which record, and whether it worked.

Audit records are operational history, not evidence: they are neither
chained nor signed. The hash-chain ledger remains the integrity record.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class AuditAction(str, Enum):
    """Every action the trail records. Closed set."""
    PRINCIPAL_REGISTERED = "PRINCIPAL_REGISTERED"
    EVIDENCE_CREATED = "EVIDENCE_CREATED"
    EVIDENCE_UPDATED = "EVIDENCE_UPDATED"
    EVIDENCE_DELETED = "EVIDENCE_DELETED"
    EVIDENCE_VERIFIED = "EVIDENCE_VERIFIED"
    MOVEMENT_LOG_CREATED = "MOVEMENT_LOG_CREATED"
    MOVEMENT_STATUS_UPDATED = "MOVEMENT_STATUS_UPDATED"
    ACCESS_LOG_CREATED = "ACCESS_LOG_CREATED"
    ACCESS_LOG_EXIT = "ACCESS_LOG_EXIT"


class AuditTarget(str, Enum):
    EVIDENCE = "Evidence"
    MOVEMENT = "MovementLog"
    ACCESS = "AccessLog"
    PRINCIPAL = "Principal"


class AuditOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# Shown in the stats as recent critical actions
CRITICAL_ACTIONS = frozenset({
    AuditAction.EVIDENCE_DELETED,
    AuditAction.EVIDENCE_UPDATED,
    AuditAction.PRINCIPAL_REGISTERED,
})


class AuditRecord(BaseModel):
    """One attempted action."""
    id: UUID
    action: AuditAction
    actor_id: Optional[UUID] = Field(
        default=None,
        description="Acting principal as given; None for anonymous reads"
    )
    target_type: AuditTarget
    target_id: Optional[UUID] = None
    target_name: Optional[str] = Field(
        default=None,
        description="Human-readable target, e.g. an evidence or log number"
    )
    details: dict[str, Any] = Field(default_factory=dict)
    status: AuditOutcome = AuditOutcome.SUCCESS
    error_message: Optional[str] = None
    created_at: datetime


class AuditPage(BaseModel):
    """A page of audit records, newest first."""
    records: list[AuditRecord]
    page: int
    limit: int
    total: int
    pages: int


class AuditStats(BaseModel):
    total: int
    by_action: dict[str, int]
    by_status: dict[str, int]
    top_actors: dict[str, int] = Field(
        ...,
        description="Ten most active principals by record count"
    )
    daily: dict[str, int] = Field(
        ...,
        description="Records per UTC day over the last seven days"
    )
    recent_critical: list[AuditRecord]

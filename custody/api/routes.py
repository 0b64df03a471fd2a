"""
API Routes for the Evidence Custody Ledger

Commands (signed by the acting principal, X-Principal-ID):
- POST   /principals                 - Register a principal
- POST   /evidence                   - Record evidence (genesis revision)
- PUT    /evidence/{id}              - Update evidence (new revision)
- DELETE /evidence/{id}              - Delete evidence, rebuild the index
- POST   /movements                  - Log a movement
- POST   /movements/{id}/status      - Change a movement's status
- POST   /access                     - Log an evidence-room entry
- POST   /access/{id}/exit           - Log the matching exit

Queries:
- GET /principals                    - Public keys of every principal
- GET /evidence, /evidence/{id}
- GET /evidence/{id}/verify          - Integrity report
- GET /evidence/{id}/bundle          - Offline verification bundle
- GET /merkle/root, /merkle/roots    - Latest root and root chain
- GET /movements, /access
- GET /chain-of-custody/{id}         - Provenance timeline
- GET /ledger/{stream}/audit         - Full chain audit of one stream
- GET /audit, /audit/stats           - Action audit trail and its statistics
- GET /audit/{target_id}             - Audit records for one record

Domain errors are mapped to HTTP status codes in custody.main.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status

from ..core.service import CustodyService
from ..schemas import (
    AccessCreate,
    AccessExit,
    AccessRecord,
    AuditAction,
    AuditOutcome,
    AuditPage,
    AuditRecord,
    AuditStats,
    AuditTarget,
    EvidenceCreate,
    EvidenceRecord,
    EvidenceStatus,
    EvidenceUpdate,
    IntegrityReport,
    MerkleRoot,
    MovementCreate,
    MovementRecord,
    MovementStatusUpdate,
    PrincipalCreate,
    Timeline,
)
from .deps import get_optional_principal_id, get_principal_id, get_service


router = APIRouter()


# ============================================================
# Principals
# ============================================================

@router.post(
    "/principals",
    status_code=status.HTTP_201_CREATED,
    tags=["Principals"],
    summary="Register a principal",
)
async def register_principal(
    request: PrincipalCreate,
    service: CustodyService = Depends(get_service),
):
    """
    Create a keypair held by key custody and return the public record.

    The private key never leaves the server.
    """
    return service.register_principal(request.display_name).to_dict()


@router.get(
    "/principals",
    tags=["Principals"],
    summary="List principals and their public keys",
)
async def list_principals(
    service: CustodyService = Depends(get_service),
):
    return [p.to_dict() for p in service.keys.list_principals()]


# ============================================================
# Evidence
# ============================================================

@router.post(
    "/evidence",
    response_model=EvidenceRecord,
    status_code=status.HTTP_201_CREATED,
    tags=["Evidence"],
    summary="Record evidence",
)
async def create_evidence(
    request: EvidenceCreate,
    service: CustodyService = Depends(get_service),
    principal_id: UUID = Depends(get_principal_id),
):
    return service.create_evidence(request, principal_id)


@router.get(
    "/evidence",
    response_model=list[EvidenceRecord],
    tags=["Evidence"],
)
async def list_evidence(
    case_no: Optional[str] = None,
    status: Optional[EvidenceStatus] = None,
    service: CustodyService = Depends(get_service),
):
    return service.list_evidence(case_no=case_no, status=status)


@router.get(
    "/evidence/{evidence_id}",
    response_model=EvidenceRecord,
    tags=["Evidence"],
)
async def get_evidence(
    evidence_id: UUID,
    service: CustodyService = Depends(get_service),
):
    return service.get_evidence(evidence_id)


@router.put(
    "/evidence/{evidence_id}",
    response_model=EvidenceRecord,
    tags=["Evidence"],
    summary="Update evidence",
)
async def update_evidence(
    evidence_id: UUID,
    request: EvidenceUpdate,
    service: CustodyService = Depends(get_service),
    principal_id: UUID = Depends(get_principal_id),
):
    """
    Changing a signed field appends a new revision signed by the caller.
    Changing only the status does not.
    """
    return service.update_evidence(evidence_id, request, principal_id)


@router.delete(
    "/evidence/{evidence_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Evidence"],
)
async def delete_evidence(
    evidence_id: UUID,
    service: CustodyService = Depends(get_service),
    principal_id: UUID = Depends(get_principal_id),
):
    service.delete_evidence(evidence_id, principal_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/evidence/{evidence_id}/verify",
    response_model=IntegrityReport,
    tags=["Verification"],
    summary="Verify evidence integrity",
)
async def verify_evidence(
    evidence_id: UUID,
    service: CustodyService = Depends(get_service),
    principal_id: Optional[UUID] = Depends(get_optional_principal_id),
):
    """
    Signature, Merkle inclusion and hash-chain continuity in one report.

    VERIFIED requires a valid signature and an unbroken chain.
    """
    return service.verify_evidence(evidence_id, principal_id)


@router.get(
    "/evidence/{evidence_id}/bundle",
    tags=["Verification"],
    summary="Export a verification bundle",
)
async def export_bundle(
    evidence_id: UUID,
    service: CustodyService = Depends(get_service),
):
    """Self-contained JSON for tools/verify.py. No server needed to check it."""
    return service.export_bundle(evidence_id)


# ============================================================
# Merkle index
# ============================================================

@router.get(
    "/merkle/root",
    tags=["Verification"],
    summary="Latest Merkle root",
)
async def get_merkle_root(
    service: CustodyService = Depends(get_service),
):
    root = service.store.latest_root()
    if root is None:
        return {"root": None, "message": "No Merkle root computed yet"}
    return root.model_dump(mode="json")


@router.get(
    "/merkle/roots",
    response_model=list[MerkleRoot],
    tags=["Verification"],
    summary="Merkle root chain, oldest first",
)
async def list_merkle_roots(
    service: CustodyService = Depends(get_service),
):
    return service.store.list_roots()


# ============================================================
# Movement log
# ============================================================

@router.post(
    "/movements",
    response_model=MovementRecord,
    status_code=status.HTTP_201_CREATED,
    tags=["Custody Logs"],
)
async def create_movement(
    request: MovementCreate,
    service: CustodyService = Depends(get_service),
    principal_id: UUID = Depends(get_principal_id),
):
    return service.record_movement(request, principal_id)


@router.get(
    "/movements",
    response_model=list[MovementRecord],
    tags=["Custody Logs"],
)
async def list_movements(
    evidence_id: Optional[UUID] = None,
    case_no: Optional[str] = None,
    service: CustodyService = Depends(get_service),
):
    return service.list_movements(evidence_id=evidence_id, case_no=case_no)


@router.post(
    "/movements/{movement_id}/status",
    response_model=MovementRecord,
    tags=["Custody Logs"],
)
async def update_movement_status(
    movement_id: UUID,
    request: MovementStatusUpdate,
    service: CustodyService = Depends(get_service),
    principal_id: UUID = Depends(get_principal_id),
):
    return service.update_movement_status(movement_id, request.status, principal_id)


# ============================================================
# Access log
# ============================================================

@router.post(
    "/access",
    response_model=AccessRecord,
    status_code=status.HTTP_201_CREATED,
    tags=["Custody Logs"],
)
async def create_access(
    request: AccessCreate,
    service: CustodyService = Depends(get_service),
    principal_id: UUID = Depends(get_principal_id),
):
    return service.log_access(request, principal_id)


@router.get(
    "/access",
    response_model=list[AccessRecord],
    tags=["Custody Logs"],
)
async def list_access(
    evidence_id: Optional[UUID] = None,
    officer_id: Optional[UUID] = None,
    service: CustodyService = Depends(get_service),
):
    return service.list_accesses(evidence_id=evidence_id, officer_id=officer_id)


@router.post(
    "/access/{access_id}/exit",
    response_model=AccessRecord,
    tags=["Custody Logs"],
)
async def record_exit(
    access_id: UUID,
    request: Optional[AccessExit] = None,
    service: CustodyService = Depends(get_service),
    principal_id: UUID = Depends(get_principal_id),
):
    return service.record_exit(
        access_id,
        request.exit_time if request else None,
        principal_id,
    )


# ============================================================
# Provenance and audit
# ============================================================

@router.get(
    "/chain-of-custody/{evidence_id}",
    response_model=Timeline,
    tags=["Verification"],
    summary="Chain-of-custody timeline",
)
async def chain_of_custody(
    evidence_id: UUID,
    service: CustodyService = Depends(get_service),
):
    return service.build_timeline(evidence_id)


@router.get(
    "/ledger/{stream}/audit",
    tags=["System"],
    summary="Audit one ledger stream",
)
async def audit_stream(
    stream: str,
    service: CustodyService = Depends(get_service),
):
    """
    Walk the stream from genesis: sequences, links, predecessors and
    signatures. Returns every break found.
    """
    return service.ledger.audit_stream(stream).to_dict()


# ============================================================
# Audit trail
# ============================================================

@router.get(
    "/audit",
    response_model=AuditPage,
    tags=["Audit"],
    summary="Query the audit trail",
)
async def list_audit(
    action: Optional[AuditAction] = None,
    actor_id: Optional[UUID] = None,
    target_type: Optional[AuditTarget] = None,
    status: Optional[AuditOutcome] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    service: CustodyService = Depends(get_service),
):
    """Newest first. search matches target names and case numbers."""
    return service.audit.query(
        action=action,
        actor_id=actor_id,
        target_type=target_type,
        status=status,
        since=since,
        until=until,
        search=search,
        page=page,
        limit=limit,
    )


@router.get(
    "/audit/stats",
    response_model=AuditStats,
    tags=["Audit"],
    summary="Audit trail statistics",
)
async def audit_stats(
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    service: CustodyService = Depends(get_service),
):
    return service.audit.stats(since=since, until=until)


@router.get(
    "/audit/{target_id}",
    response_model=list[AuditRecord],
    tags=["Audit"],
    summary="Audit records for one target",
)
async def target_audit(
    target_id: UUID,
    service: CustodyService = Depends(get_service),
):
    return service.audit.for_target(target_id)

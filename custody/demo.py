"""
Demo Data

Seeds a small but complete custody history: two officers, three evidence
items, one revision, movements in both directions and room visits.

SAFETY RULES:
- Only seeds an empty store
- Disabled by default (CUSTODY_SEED_DEMO=1 to enable at startup)
- For anything but a demo, record real evidence through the API
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from .core.service import CustodyService
from .observability import get_logger
from .schemas import (
    AccessCreate,
    AccessPurpose,
    Attachment,
    EvidenceCreate,
    EvidenceType,
    EvidenceUpdate,
    MovementCreate,
    MovementStatus,
)


logger = get_logger(__name__)


def seed_demo(service: CustodyService, system_id: Optional[UUID] = None) -> dict:
    """
    Record the demo lifecycle.

    Returns a summary of what was created, or {"skipped": True} if the
    store already holds evidence.
    """
    if service.store.list_evidence():
        logger.info("Store already holds evidence - skipping demo seed")
        return {"skipped": True}

    collector = service.register_principal("Officer A. Rao")
    analyst = service.register_principal("Analyst J. Mensah")
    collected = datetime.now(timezone.utc) - timedelta(days=3)

    laptop = service.create_evidence(EvidenceCreate(
        name="Seized laptop",
        case_no="CASE-2024-017",
        evidence_type=EvidenceType.DIGITAL,
        description="Black 14-inch laptop recovered from the suspect's desk",
        collection_date=collected,
        collection_location="12 Harbour Road, office 3",
        storage_location="Evidence Room A, shelf 4",
        storage_pointer="shelf:A-4-07",
        attachments=[Attachment(
            file_name="disk-image.e01",
            file_hash="9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08",
            file_size=512_000_000_000,
        )],
    ), collector.principal_id)

    knife = service.create_evidence(EvidenceCreate(
        name="Kitchen knife",
        case_no="CASE-2024-017",
        evidence_type=EvidenceType.WEAPON,
        description="Steel blade, 20 cm, bagged at scene",
        collection_date=collected + timedelta(hours=1),
        collection_location="12 Harbour Road, kitchen",
        storage_location="Evidence Room A, locker 2",
        storage_pointer="locker:A-2",
    ), collector.principal_id)

    ledger_book = service.create_evidence(EvidenceCreate(
        name="Handwritten ledger",
        case_no="CASE-2024-021",
        evidence_type=EvidenceType.DOCUMENTARY,
        description="Spiral notebook with payment records",
        collection_date=collected + timedelta(days=1),
        collection_location="Warehouse 9, back office",
        storage_location="Evidence Room B, drawer 1",
        storage_pointer="drawer:B-1",
    ), collector.principal_id)

    service.update_evidence(
        knife.id,
        EvidenceUpdate(description="Steel blade, 20 cm, bagged at scene; prints lifted"),
        analyst.principal_id,
    )

    outbound = service.record_movement(MovementCreate(
        evidence_id=laptop.id,
        source="Evidence Room A",
        destination="Digital Forensics Lab",
        purpose="Disk imaging",
    ), analyst.principal_id)
    service.update_movement_status(outbound.id, MovementStatus.ARRIVED)

    visit = service.log_access(AccessCreate(
        evidence_id=knife.id,
        department="Forensics",
        designation="Analyst",
        purpose=AccessPurpose.ANALYSIS,
    ), analyst.principal_id)
    service.record_exit(visit.id)

    service.log_access(AccessCreate(
        evidence_id=ledger_book.id,
        department="Investigations",
        designation="Inspector",
        purpose=AccessPurpose.INSPECTION,
    ), system_id or collector.principal_id)

    summary = {
        "skipped": False,
        "principals": [str(collector.principal_id), str(analyst.principal_id)],
        "evidence": [laptop.evidence_number, knife.evidence_number, ledger_book.evidence_number],
        "movements": [outbound.log_number],
    }
    logger.info("Demo data seeded", evidence_count=3)
    return summary

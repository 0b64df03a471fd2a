"""
Demonstration: Complete Custody Lifecycle

This example follows one evidence item from collection to the lab and
back, then shows what happens when someone edits the stored record
behind the ledger's back.

Run with: python -m examples.demo_lifecycle
"""

from datetime import datetime, timedelta, timezone

from custody.core import CustodyService
from custody.schemas import (
    AccessCreate,
    AccessPurpose,
    EvidenceCreate,
    EvidenceType,
    EvidenceUpdate,
    MovementCreate,
    MovementStatus,
)


def banner(title: str):
    print("=" * 60)
    print(title)
    print("=" * 60)


def main():
    banner("Evidence Custody - Lifecycle Demonstration")
    print()

    service = CustodyService()

    officer = service.register_principal("Officer D. Okafor")
    analyst = service.register_principal("Analyst P. Lindqvist")

    print(f"Officer: {officer.principal_id}")
    print(f"Officer Public Key: {officer.public_key[:32]}...")
    print()

    # ================================================================
    # STEP 1: COLLECTION
    # ================================================================
    banner("STEP 1: EVIDENCE COLLECTED")

    phone = service.create_evidence(EvidenceCreate(
        name="Mobile phone",
        case_no="CASE-2024-104",
        evidence_type=EvidenceType.DIGITAL,
        description="Cracked screen, powered off at seizure",
        collection_date=datetime.now(timezone.utc) - timedelta(hours=6),
        collection_location="Bus depot, platform 2",
        storage_location="Evidence Room A, locker 9",
        storage_pointer="locker:A-9",
    ), officer.principal_id)

    print(f"[OK] {phone.evidence_number} recorded")
    print(f"   Link:          {phone.current_link[:16]}...")
    print(f"   Previous link: {phone.previous_link[:16]}")
    print(f"   Merkle root:   {phone.merkle_proof.merkle_root[:16]}...")
    print()

    # ================================================================
    # STEP 2: TRANSFER TO THE LAB
    # ================================================================
    banner("STEP 2: MOVED TO THE LAB")

    movement = service.record_movement(MovementCreate(
        evidence_id=phone.id,
        source="Evidence Room A",
        destination="Mobile Forensics Lab",
        purpose="Chip-off extraction",
    ), analyst.principal_id)
    print(f"[OK] {movement.log_number}: {movement.source} -> {movement.destination}")
    print(f"   Item status: {service.get_evidence(phone.id).status.value}")

    service.update_movement_status(movement.id, MovementStatus.ARRIVED)
    print(f"   Arrived. Item status: {service.get_evidence(phone.id).status.value}")
    print()

    # ================================================================
    # STEP 3: ANALYSIS AND A REVISION
    # ================================================================
    banner("STEP 3: ANALYSED AND REVISED")

    visit = service.log_access(AccessCreate(
        evidence_id=phone.id,
        department="Forensics",
        designation="Analyst",
        purpose=AccessPurpose.ANALYSIS,
    ), analyst.principal_id)
    service.record_exit(visit.id)
    print(f"[OK] {visit.log_number}: room visit logged with exit")

    phone = service.update_evidence(
        phone.id,
        EvidenceUpdate(
            description="Cracked screen; extraction image stored as IMG-104",
            storage_location="Evidence Room A, locker 9 (resealed)",
        ),
        analyst.principal_id,
    )
    print(f"[OK] Revision signed by the analyst")
    print(f"   Link:          {phone.current_link[:16]}...")
    print(f"   Previous link: {phone.previous_link[:16]}...")
    print()

    # ================================================================
    # STEP 4: VERIFY AND TRACE
    # ================================================================
    banner("STEP 4: VERIFY AND TRACE")

    report = service.verify_evidence(phone.id)
    print(f"Integrity: {report.status.value}")
    print(f"   Signature: {report.signature_valid}")
    print(f"   Merkle:    {report.merkle_valid}")
    print(f"   Chain:     {report.hash_chain_valid}")
    print()

    timeline = service.build_timeline(phone.id)
    print(f"Chain of custody ({timeline.summary['total']} events):")
    for event in timeline.events:
        print(f"   {event.sequence}. {event.kind.value:<13} {event.detail.get('action')}")
    print()

    # ================================================================
    # STEP 5: TAMPERING
    # ================================================================
    banner("STEP 5: SOMEONE EDITS THE STORED RECORD")

    # Write straight to the store, skipping the ledger
    forged = phone.model_copy(update={"storage_location": "Officer's car"})
    service.store.save_evidence(forged)

    report = service.verify_evidence(phone.id)
    print(f"Integrity: {report.status.value}")
    print(f"   {report.message}")
    print()

    audit = service.audit_all()
    for stream, result in audit.items():
        print(f"Stream '{stream}': {result.entry_count} entries, valid={result.valid}")
    print("   The ledger itself is intact. Only the stored record was changed.")
    print()

    banner("DEMONSTRATION COMPLETE")


if __name__ == "__main__":
    main()

"""
Tests for evidence integrity verification.

The verdict depends on signature and hash chain. Merkle inclusion is
reported alongside but never decides it.
"""

from uuid import uuid4

import pytest

from custody.core import Hasher, NotFoundError
from custody.schemas import EvidenceStatus, EvidenceUpdate, IntegrityStatus


def tamper(service, record, **fields):
    """Change a stored record without going through the ledger."""
    forged = record.model_copy(update=fields)
    service.store.save_evidence(forged)
    return forged


class TestVerifiedRecords:

    def test_fresh_record_verifies(self, service, laptop):
        report = service.verify_evidence(laptop.id)

        assert report.status == IntegrityStatus.VERIFIED
        assert report.signature_valid
        assert report.merkle_valid
        assert report.hash_chain_valid
        assert report.current_link == laptop.current_link
        assert report.merkle_root == service.store.latest_root().root

    def test_revised_record_verifies(self, service, laptop, analyst):
        service.update_evidence(laptop.id, EvidenceUpdate(description="Imaged"), analyst.principal_id)

        report = service.verify_evidence(laptop.id)
        assert report.status == IntegrityStatus.VERIFIED
        assert report.signer_id == analyst.principal_id

    def test_status_change_keeps_signature_valid(self, service, laptop, officer):
        service.update_evidence(laptop.id, EvidenceUpdate(status=EvidenceStatus.IN_COURT), officer.principal_id)
        assert service.verify_evidence(laptop.id).status == IntegrityStatus.VERIFIED

    def test_every_record_verifies_after_later_writes(self, service, laptop, knife):
        for record in (laptop, knife):
            report = service.verify_evidence(record.id)
            assert report.status == IntegrityStatus.VERIFIED
            assert report.merkle_valid

    def test_unknown_evidence(self, service):
        with pytest.raises(NotFoundError):
            service.verify_evidence(uuid4())


class TestTamperedRecords:

    def test_edited_signed_field(self, service, laptop):
        tamper(service, laptop, storage_location="Officer's car")

        report = service.verify_evidence(laptop.id)
        assert report.status == IntegrityStatus.TAMPERED
        assert not report.signature_valid
        assert report.hash_chain_valid
        # storage_location is not part of the Merkle leaf
        assert report.merkle_valid

    def test_edited_name_breaks_signature_and_inclusion(self, service, laptop):
        tamper(service, laptop, name="Different laptop")

        report = service.verify_evidence(laptop.id)
        assert report.status == IntegrityStatus.TAMPERED
        assert not report.signature_valid
        assert not report.merkle_valid
        assert "Merkle" in report.message

    def test_unknown_signer(self, service, laptop):
        tamper(service, laptop, entry=laptop.entry.model_copy(update={"signer_id": uuid4()}))

        report = service.verify_evidence(laptop.id)
        assert report.status == IntegrityStatus.TAMPERED
        assert not report.signature_valid

    def test_broken_chain(self, service, laptop, knife):
        forged_entry = knife.entry.model_copy(update={"previous_link": Hasher.sha256_hex("elsewhere")})
        tamper(service, knife, entry=forged_entry)

        report = service.verify_evidence(knife.id)
        assert report.status == IntegrityStatus.TAMPERED
        assert report.signature_valid
        assert not report.hash_chain_valid
        assert "hash chain" in report.message

    def test_missing_signing_time_cannot_verify(self, service, laptop):
        tamper(service, laptop, entry=laptop.entry.model_copy(update={"signed_at": None}))

        report = service.verify_evidence(laptop.id)
        assert report.status == IntegrityStatus.CANNOT_VERIFY
        assert not report.signature_valid
        assert not report.merkle_valid
        assert not report.hash_chain_valid

    def test_missing_entry_cannot_verify(self, service, laptop):
        tamper(service, laptop, entry=None)
        assert service.verify_evidence(laptop.id).status == IntegrityStatus.CANNOT_VERIFY


class TestMerkleDoesNotGateVerdict:

    def test_record_outside_current_root_still_verifies(self, service, laptop, knife):
        # Install an index that leaves the laptop out
        snapshot = service.index.rebuild([service.get_evidence(knife.id)], service.store.latest_root())
        service.store.install_snapshot(snapshot)

        report = service.verify_evidence(laptop.id)
        assert report.status == IntegrityStatus.VERIFIED
        assert not report.merkle_valid
        assert "not included" in report.message


class TestConcurrentRevision:
    """A revision committed while a verification is running."""

    @pytest.fixture
    def revise_during_check(self, service, laptop, analyst, monkeypatch):
        real_find = service.keys.find_public_key
        fired = []

        def find_public_key(principal_id):
            if not fired:
                fired.append(True)
                service.update_evidence(
                    laptop.id,
                    EvidenceUpdate(description="Changed mid-check"),
                    analyst.principal_id,
                )
            return real_find(principal_id)

        monkeypatch.setattr(service.keys, "find_public_key", find_public_key)
        return fired

    def test_report_pairs_record_with_its_own_root(self, service, laptop, revise_during_check):
        root_before = service.store.latest_root().root

        report = service.verify_evidence(laptop.id)

        assert revise_during_check
        assert report.status == IntegrityStatus.VERIFIED
        assert report.merkle_valid
        assert report.merkle_root == root_before
        assert report.current_link == laptop.current_link
        assert "not included" not in report.message

    def test_bundle_pairs_record_with_its_own_root(self, service, laptop, revise_during_check):
        bundle = service.export_bundle(laptop.id)

        assert revise_during_check
        assert bundle["_meta"]["integrity_at_export"] == "VERIFIED"
        assert bundle["evidence"]["description"] == laptop.description
        assert bundle["merkle"]["proof"]["merkle_root"] == bundle["merkle"]["root"]["root"]
        assert [r["current_link"] for r in bundle["revisions"]] == [laptop.current_link]


class TestVerificationMetrics:

    def test_outcomes_are_counted(self, service, metrics, laptop, knife):
        service.verify_evidence(laptop.id)
        tamper(service, knife, name="Spoon")
        service.verify_evidence(knife.id)

        summary = metrics.get_summary()
        assert summary["verifications"] == 2
        assert summary["verifications_tampered"] == 1

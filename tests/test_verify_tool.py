"""
Tests for offline bundle verification (tools/verify.py).

Bundles go through a JSON round trip first, exactly as they would
through a file.
"""

import json
from uuid import uuid4

import pytest

from custody.schemas import EvidenceUpdate, MovementCreate
from tools.verify import BundleVerifier, VerificationResult, main


def verify(bundle):
    return BundleVerifier(bundle).verify()


@pytest.fixture
def bundle(service, laptop, knife, analyst):
    service.update_evidence(laptop.id, EvidenceUpdate(description="Imaged"), analyst.principal_id)
    service.record_movement(MovementCreate(
        evidence_id=laptop.id,
        source="Evidence Room A",
        destination="Digital Lab",
    ), analyst.principal_id)
    return json.loads(json.dumps(service.export_bundle(laptop.id)))


class TestExportBundle:

    def test_bundle_contents(self, bundle, laptop, officer, analyst):
        assert bundle["_meta"]["integrity_at_export"] == "VERIFIED"
        assert bundle["evidence"]["id"] == str(laptop.id)
        assert "entry" not in bundle["evidence"]
        assert len(bundle["revisions"]) == 2
        assert len(bundle["movements"]) == 1
        assert set(bundle["signers"]) == {str(officer.principal_id), str(analyst.principal_id)}
        assert bundle["merkle"]["proof"]["merkle_root"] == bundle["merkle"]["root"]["root"]

    def test_unknown_evidence(self, service):
        from custody.core import NotFoundError

        with pytest.raises(NotFoundError):
            service.export_bundle(uuid4())


class TestBundleVerifier:

    def test_untouched_bundle_verifies(self, bundle):
        report = verify(bundle)

        assert report.result == VerificationResult.VERIFIED, report.checks_failed
        assert report.revision_count == 2
        assert report.movement_count == 1
        assert "Merkle inclusion verified" in report.checks_passed

    def test_edited_evidence_field(self, bundle):
        bundle["evidence"]["storage_location"] = "Officer's car"

        report = verify(bundle)
        assert report.result == VerificationResult.TAMPERED
        assert any("latest signed payload" in c for c in report.checks_failed)

    def test_edited_historical_revision(self, bundle):
        first = bundle["revisions"][0]
        first["canonical_payload"] = first["canonical_payload"].replace("Grey", "Black")

        report = verify(bundle)
        assert report.result == VerificationResult.TAMPERED
        assert any("Link mismatch" in c for c in report.checks_failed)

    def test_reordered_revision_chain(self, bundle):
        bundle["revisions"][1]["previous_link"] = "0" * 64

        assert verify(bundle).result == VerificationResult.TAMPERED

    def test_forged_movement_signature(self, bundle):
        entry = bundle["movements"][0]["entry"]
        other = bundle["revisions"][0]["signature"]
        entry["signature"] = other

        report = verify(bundle)
        assert report.result == VerificationResult.TAMPERED
        assert any("Signature verification failed" in c for c in report.checks_failed)

    def test_wrong_merkle_root(self, bundle):
        bundle["merkle"]["root"]["root"] = "f" * 64

        report = verify(bundle)
        assert report.result == VerificationResult.TAMPERED
        assert any("Merkle root mismatch" in c for c in report.checks_failed)

    def test_missing_proof_is_a_warning(self, bundle):
        bundle["merkle"]["proof"] = None

        report = verify(bundle)
        assert report.result == VerificationResult.VERIFIED
        assert report.warnings

    def test_missing_signer(self, bundle):
        bundle["signers"] = {}
        assert verify(bundle).result == VerificationResult.INCOMPLETE

    def test_missing_signing_time(self, bundle):
        bundle["revisions"][-1]["signed_at"] = None
        assert verify(bundle).result == VerificationResult.INCOMPLETE

    @pytest.mark.parametrize("key", ["evidence", "revisions", "merkle", "_meta"])
    def test_missing_section(self, bundle, key):
        del bundle[key]
        assert verify(bundle).result == VerificationResult.INVALID_FORMAT

    def test_empty_revisions(self, bundle):
        bundle["revisions"] = []
        assert verify(bundle).result == VerificationResult.INVALID_FORMAT


class TestCommandLine:

    def test_exit_codes(self, bundle, tmp_path, capsys):
        good = tmp_path / "bundle.json"
        good.write_text(json.dumps(bundle), encoding="utf-8")
        assert main([str(good)]) == 0
        assert "[VERIFIED]" in capsys.readouterr().out

        bundle["evidence"]["name"] = "Something else"
        bad = tmp_path / "tampered.json"
        bad.write_text(json.dumps(bundle), encoding="utf-8")
        assert main([str(bad), "--json"]) == 1
        assert json.loads(capsys.readouterr().out)["result"] == "TAMPERED"

    def test_unreadable_input(self, tmp_path):
        assert main([str(tmp_path / "missing.json")]) == 3

        not_json = tmp_path / "notes.txt"
        not_json.write_text("hello", encoding="utf-8")
        assert main([str(not_json)]) == 3

#!/usr/bin/env python3
"""
Offline verifier for evidence custody bundles.

Checks a bundle exported from GET /api/evidence/{id}/bundle using only
the bundle itself: every link is recomputed, every Ed25519 signature is
checked against the signer keys shipped in the bundle, and the Merkle
proof is walked up to the recorded root.

    python tools/verify.py bundle.json [--verbose] [--json]

Exit status: 0 VERIFIED, 1 TAMPERED, 2 INCOMPLETE (a signer key or
signing time is missing), 3 INVALID_FORMAT (unreadable or malformed).
"""

import argparse
import base64
import binascii
import hashlib
import json
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

try:
    from nacl.exceptions import BadSignatureError, CryptoError
    from nacl.signing import VerifyKey
except ImportError:
    print("ERROR: PyNaCl not installed. Run: pip install pynacl")
    sys.exit(3)


# ============================================================
# Result Types
# ============================================================

class VerificationResult:
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INCOMPLETE = "INCOMPLETE"
    INVALID_FORMAT = "INVALID_FORMAT"


EXIT_CODES = {
    VerificationResult.VERIFIED: 0,
    VerificationResult.TAMPERED: 1,
    VerificationResult.INCOMPLETE: 2,
    VerificationResult.INVALID_FORMAT: 3,
}


@dataclass
class VerificationReport:
    result: str
    evidence_id: str
    evidence_number: str
    revision_count: int
    movement_count: int
    checks_passed: list[str]
    checks_failed: list[str]
    warnings: list[str]
    details: dict[str, Any]


# ============================================================
# Canonical Serialization
# ============================================================

SERIALIZATION_VERSION = 1
GENESIS = "GENESIS"

# Signed evidence fields. Must match custody/core/payloads.py.
EVIDENCE_FIELDS = (
    "name",
    "case_no",
    "evidence_type",
    "description",
    "collection_location",
    "storage_location",
    "storage_pointer",
    "collected_by",
)


def canonicalize(data: dict[str, Any]) -> str:
    """
    Convert JSON data to the canonical string.

    Bundles are JSON already, so only the JSON types occur:
    - Keys sorted in Unicode codepoint order
    - No whitespace, ensure_ascii=True
    - None values omitted
    - Version field injected
    """
    if not isinstance(data, dict):
        raise ValueError("Top-level canonicalization requires an object/dict")

    canonical_dict = _to_canonical_dict(data)
    canonical_dict = {"__canon_v": SERIALIZATION_VERSION, **canonical_dict}

    return json.dumps(
        canonical_dict,
        separators=(",", ":"),
        ensure_ascii=True,
        sort_keys=True,
        allow_nan=False,
    )


def _to_canonical_dict(data: dict) -> dict:
    result = {}
    for key in sorted(data.keys()):
        value = data[key]
        if value is None:
            continue
        result[key] = _serialize_value(value)
    return result


def _serialize_value(value: Any) -> Any:
    if isinstance(value, float):
        raise ValueError(f"Floats not allowed in canonical form: {value}")
    if isinstance(value, dict):
        return _to_canonical_dict(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def is_digest(value: Any) -> bool:
    return (
        isinstance(value, str)
        and len(value) == 64
        and all(c in "0123456789abcdef" for c in value.lower())
    )


# ============================================================
# Link, Signature and Merkle Computation
# ============================================================

def compute_link(canonical_payload: str, previous_link: str) -> str:
    """
    SHA256(canonical_payload + previous_link)

    previous_link is GENESIS or the lowercase hex link of the predecessor.
    """
    if previous_link != GENESIS:
        if not is_digest(previous_link):
            raise ValueError(f"Invalid previous_link: {previous_link!r}")
        previous_link = previous_link.lower()
    return sha256_hex(canonical_payload + previous_link)


def verify_signature(canonical_payload: str, signature_b64: str, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    MUST match custody/core/signer.py: the signature is over the raw
    SHA-256 digest of the canonical payload.
    """
    try:
        verify_key = VerifyKey(base64.b64decode(public_key_b64, validate=True))
        signature_bytes = base64.b64decode(signature_b64, validate=True)
        digest = hashlib.sha256(canonical_payload.encode("utf-8")).digest()
        verify_key.verify(digest, signature_bytes)
        return True
    except (BadSignatureError, CryptoError, binascii.Error, ValueError, TypeError):
        return False


def evidence_payload(evidence: dict, signed_at: int) -> str:
    """Rebuild the signed payload of an evidence item's latest revision."""
    data = {key: evidence.get(key) for key in EVIDENCE_FIELDS}
    data["timestamp"] = signed_at
    data["attachments"] = [
        {"file_name": a["file_name"], "file_hash": a["file_hash"].lower()}
        for a in evidence.get("attachments", [])
    ]
    return canonicalize(data)


def leaf_digest(evidence_id: str, name: str, case_no: str, current_link: str) -> str:
    return sha256_hex(canonicalize({
        "id": evidence_id.lower(),
        "name": name,
        "case_no": case_no,
        "current_link": current_link,
    }))


def walk_proof(leaf: str, steps: list[dict]) -> str:
    """Hash a leaf up its sibling path. parent = SHA256(left_hex + right_hex)."""
    current = leaf
    for step in steps:
        sibling = step.get("sibling")
        if not is_digest(sibling):
            raise ValueError(f"Malformed proof sibling: {sibling!r}")
        if step.get("side") == "left":
            current = sha256_hex(sibling + current)
        elif step.get("side") == "right":
            current = sha256_hex(current + sibling)
        else:
            raise ValueError(f"Malformed proof side: {step.get('side')!r}")
    return current


# ============================================================
# Bundle Verifier
# ============================================================

class BundleVerifier:
    """
    Verifies evidence bundles exported by the custody service.
    """

    def __init__(self, bundle: dict, verbose: bool = False):
        self.bundle = bundle
        self.verbose = verbose
        self.checks_passed = []
        self.checks_failed = []
        self.warnings = []
        self.details = {}

    def log(self, msg: str):
        if self.verbose:
            print(f"  {msg}")

    def verify(self) -> VerificationReport:
        """Run the checks in order; the first failing one decides the result."""
        if not self._check_structure():
            return self._report(VerificationResult.INVALID_FORMAT)
        self._check_meta()

        steps = (
            (self._check_completeness, VerificationResult.INCOMPLETE),
            (self._verify_current_payload, VerificationResult.TAMPERED),
            (self._verify_links, VerificationResult.TAMPERED),
            (self._verify_revision_linkage, VerificationResult.TAMPERED),
            (self._verify_signatures, VerificationResult.TAMPERED),
            (self._verify_merkle, VerificationResult.TAMPERED),
        )
        for step, failure in steps:
            if not step():
                return self._report(failure)

        return self._report(VerificationResult.VERIFIED)

    def _all_entries(self) -> list[tuple[str, dict]]:
        entries = [(f"revision {i}", e) for i, e in enumerate(self.bundle["revisions"])]
        entries += [
            (f"movement {m.get('log_number', i)}", m["entry"])
            for i, m in enumerate(self.bundle.get("movements", []))
            if m.get("entry")
        ]
        return entries

    def _check_structure(self) -> bool:
        """Verify bundle has required structure."""
        self.log("Checking bundle structure...")

        required_keys = ["_meta", "_verification", "evidence", "revisions", "movements", "signers", "merkle"]
        missing = [k for k in required_keys if k not in self.bundle]

        if missing:
            self.checks_failed.append(f"Missing required keys: {missing}")
            return False

        if not isinstance(self.bundle["evidence"], dict) or "id" not in self.bundle["evidence"]:
            self.checks_failed.append("'evidence' must be an object with an id")
            return False

        for key in ("revisions", "movements"):
            if not isinstance(self.bundle[key], list):
                self.checks_failed.append(f"'{key}' must be an array")
                return False

        if not isinstance(self.bundle["signers"], dict):
            self.checks_failed.append("'signers' must be an object")
            return False

        if len(self.bundle["revisions"]) == 0:
            self.checks_failed.append("Bundle has no revisions")
            return False

        entry_keys = ("current_link", "previous_link", "canonical_payload", "signature", "signer_id")
        for label, entry in self._all_entries():
            if not isinstance(entry, dict) or any(k not in entry for k in entry_keys):
                self.checks_failed.append(f"{label}: ledger entry is malformed")
                return False

        self.checks_passed.append("Bundle structure valid")
        return True

    def _check_meta(self):
        """Check meta information."""
        self.log("Checking meta information...")

        meta = self.bundle.get("_meta", {})

        self.details["bundle_version"] = meta.get("bundle_version")
        self.details["exported_at"] = meta.get("exported_at")
        self.details["integrity_at_export"] = meta.get("integrity_at_export")

        canon_v = self.bundle.get("_verification", {}).get("canonicalization_version")
        if canon_v and canon_v != SERIALIZATION_VERSION:
            self.warnings.append(
                f"Canonicalization version mismatch: bundle={canon_v}, verifier={SERIALIZATION_VERSION}"
            )

        if meta.get("integrity_at_export") not in (None, VerificationResult.VERIFIED):
            self.warnings.append(
                f"Server reported {meta.get('integrity_at_export')} at export time"
            )

        self.checks_passed.append("Meta information present")

    def _check_completeness(self) -> bool:
        """Every signer has a public key and every revision a signing time."""
        self.log("Checking signer keys and signing times...")

        signers = self.bundle["signers"]
        all_present = True

        for label, entry in self._all_entries():
            signer = signers.get(entry["signer_id"])
            if not signer or not signer.get("public_key"):
                self.checks_failed.append(
                    f"{label}: signer {entry['signer_id'][:8]}... not in bundle"
                )
                all_present = False

        latest = self.bundle["revisions"][-1]
        if latest.get("signed_at") is None:
            self.checks_failed.append(
                "Latest revision has no signed_at. The signed payload cannot be rebuilt."
            )
            all_present = False

        if all_present:
            self.checks_passed.append(f"All {len(signers)} signers present")
        return all_present

    def _verify_current_payload(self) -> bool:
        """The record's fields must reproduce the latest signed payload."""
        self.log("Rebuilding the latest signed payload...")

        evidence = self.bundle["evidence"]
        latest = self.bundle["revisions"][-1]

        if latest.get("subject_id") != evidence["id"]:
            self.checks_failed.append("Latest revision belongs to a different subject")
            return False

        try:
            rebuilt = evidence_payload(evidence, latest["signed_at"])
        except (KeyError, AttributeError, ValueError) as e:
            self.checks_failed.append(f"Failed to rebuild payload - {e}")
            return False

        if rebuilt != latest["canonical_payload"]:
            self.checks_failed.append(
                "Evidence fields do not match the latest signed payload"
            )
            return False

        self.checks_passed.append("Evidence fields match the latest signed payload")
        return True

    def _verify_links(self) -> bool:
        """Recompute current_link for every revision and movement."""
        self.log("Verifying links...")

        entries = self._all_entries()
        all_valid = True

        for label, entry in entries:
            stored = entry["current_link"]
            try:
                computed = compute_link(entry["canonical_payload"], entry["previous_link"])
            except ValueError as e:
                self.checks_failed.append(f"{label}: Failed to compute link - {e}")
                all_valid = False
                continue

            if not is_digest(stored) or computed != stored.lower():
                self.checks_failed.append(
                    f"{label}: Link mismatch (computed={computed[:16]}..., stored={str(stored)[:16]}...)"
                )
                all_valid = False
            else:
                self.log(f"  {label}: Link verified [OK]")

        if all_valid:
            self.checks_passed.append(f"All {len(entries)} links verified")
        return all_valid

    def _verify_revision_linkage(self) -> bool:
        """Each revision's previous_link is the link of the revision before it."""
        self.log("Verifying revision linkage...")

        revisions = self.bundle["revisions"]
        all_valid = True

        for i in range(1, len(revisions)):
            expected_prev = revisions[i - 1]["current_link"].lower()
            actual_prev = revisions[i]["previous_link"].lower()
            if expected_prev != actual_prev:
                self.checks_failed.append(
                    f"Chain break at revision {i}: previous_link doesn't match"
                )
                all_valid = False

        sequences = [r.get("sequence", -1) for r in revisions]
        for i in range(1, len(sequences)):
            if sequences[i] <= sequences[i - 1]:
                self.warnings.append(
                    f"Non-monotonic sequence at revision {i}: {sequences[i-1]} -> {sequences[i]}"
                )

        if all_valid:
            self.checks_passed.append("Revision linkage verified")
        return all_valid

    def _verify_signatures(self) -> bool:
        """Verify Ed25519 signatures."""
        self.log("Verifying signatures...")

        signers = self.bundle["signers"]
        entries = self._all_entries()
        all_valid = True

        for label, entry in entries:
            public_key = signers[entry["signer_id"]]["public_key"]
            if not verify_signature(entry["canonical_payload"], entry["signature"], public_key):
                self.checks_failed.append(f"{label}: Signature verification failed")
                all_valid = False
            else:
                self.log(f"  {label}: Signature verified [OK]")

        if all_valid:
            self.checks_passed.append(f"All {len(entries)} signatures verified")
        return all_valid

    def _verify_merkle(self) -> bool:
        """Recompute the leaf and walk the inclusion proof to the root."""
        self.log("Verifying Merkle inclusion...")

        merkle = self.bundle.get("merkle") or {}
        root = (merkle.get("root") or {}).get("root")
        proof = merkle.get("proof")

        if not root or not proof:
            self.warnings.append("No Merkle proof in bundle - inclusion not checked")
            return True

        evidence = self.bundle["evidence"]
        latest = self.bundle["revisions"][-1]
        self.details["merkle_root"] = root

        try:
            leaf = leaf_digest(evidence["id"], evidence["name"], evidence["case_no"], latest["current_link"])
            if leaf != proof.get("leaf"):
                self.checks_failed.append("Merkle leaf does not match the evidence record")
                return False
            computed_root = walk_proof(leaf, proof.get("steps", []))
        except (KeyError, AttributeError, ValueError) as e:
            self.checks_failed.append(f"Failed to walk Merkle proof - {e}")
            return False

        if computed_root != root or proof.get("merkle_root") != root:
            self.checks_failed.append(
                f"Merkle root mismatch (computed={computed_root[:16]}..., bundle={root[:16]}...)"
            )
            return False

        self.checks_passed.append("Merkle inclusion verified")
        return True

    def _report(self, result: str) -> VerificationReport:
        evidence = self.bundle.get("evidence")
        if not isinstance(evidence, dict):
            evidence = {}
        revisions = self.bundle.get("revisions")
        movements = self.bundle.get("movements")
        return VerificationReport(
            result=result,
            evidence_id=str(evidence.get("id", "unknown")),
            evidence_number=str(evidence.get("evidence_number", "unknown")),
            revision_count=len(revisions) if isinstance(revisions, list) else 0,
            movement_count=len(movements) if isinstance(movements, list) else 0,
            checks_passed=self.checks_passed,
            checks_failed=self.checks_failed,
            warnings=self.warnings,
            details=self.details,
        )


# ============================================================
# CLI
# ============================================================

_BANNERS = {
    VerificationResult.VERIFIED: "[VERIFIED] - All checks passed",
    VerificationResult.TAMPERED: "[TAMPERED] - Link, signature or Merkle mismatch detected",
    VerificationResult.INCOMPLETE: "[INCOMPLETE] - Missing required data",
    VerificationResult.INVALID_FORMAT: "[INVALID_FORMAT] - Bundle structure invalid",
}


def print_report(report: VerificationReport, json_output: bool = False):
    if json_output:
        print(json.dumps(asdict(report), indent=2))
        return

    rule = "=" * 60
    print(f"\n{rule}\n  {_BANNERS[report.result]}\n{rule}")
    print(f"\nEvidence:  {report.evidence_number} ({report.evidence_id})")
    print(f"Revisions: {report.revision_count}")
    print(f"Movements: {report.movement_count}")

    sections = (
        ("Passed", "+", report.checks_passed),
        ("Failed", "-", report.checks_failed),
        ("Warnings", "!", report.warnings),
    )
    for title, marker, lines in sections:
        if lines:
            print(f"\n{title}:")
            print("\n".join(f"  {marker} {line}" for line in lines))
    print()


def load_bundle(path: Path) -> Optional[dict]:
    """Read a bundle file. None (with a message) if it cannot be read."""
    if not path.exists():
        print(f"ERROR: File not found: {path}")
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            bundle = json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON: {e}")
        return None
    except OSError as e:
        print(f"ERROR: Failed to read file: {e}")
        return None

    if not isinstance(bundle, dict):
        print("ERROR: Bundle must be a JSON object")
        return None
    return bundle


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Verify an evidence custody bundle",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 2=INCOMPLETE, 3=INVALID_FORMAT"
    )
    parser.add_argument(
        "bundle",
        type=str,
        help="Path to the bundle JSON file"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed verification progress"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output result as JSON"
    )

    args = parser.parse_args(argv)

    bundle = load_bundle(Path(args.bundle))
    if bundle is None:
        return EXIT_CODES[VerificationResult.INVALID_FORMAT]

    report = BundleVerifier(bundle, verbose=args.verbose).verify()
    print_report(report, json_output=args.json)

    return EXIT_CODES[report.result]


if __name__ == "__main__":
    sys.exit(main())

"""
Canonical Payloads

The exact field sets that are chained and signed. A verifier rebuilds
these from the stored records and compares against the signature, so
the field sets below are a compatibility contract: adding, removing or
renaming a field invalidates every existing signature.

Evidence status is deliberately absent. It changes as an item moves and
must never invalidate a historical signature.
"""

from ..schemas import EvidenceRecord, MovementRecord
from .hasher import Hasher
from .ledger import PreconditionError


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

MOVEMENT_FIELDS = (
    "evidence_id",
    "case_no",
    "source",
    "destination",
    "purpose",
    "officer_id",
)

_REQUIRED_TEXT = ("name", "case_no", "storage_pointer", "source", "destination")


def _require(data: dict, kind: str) -> None:
    missing = [
        key for key in _REQUIRED_TEXT
        if key in data and (data[key] is None or not str(data[key]).strip())
    ]
    if missing:
        raise PreconditionError(f"{kind} payload is missing required fields: {', '.join(missing)}")


def evidence_payload(record: EvidenceRecord, signed_at: int) -> str:
    """
    Canonical payload of an evidence revision.

    Args:
        record: Record holding the descriptive fields to sign
        signed_at: Epoch milliseconds, embedded as `timestamp`
    """
    data = {key: getattr(record, key) for key in EVIDENCE_FIELDS}
    _require(data, "Evidence")

    data["timestamp"] = signed_at
    data["attachments"] = [
        {"file_name": a.file_name, "file_hash": a.file_hash.lower()}
        for a in record.attachments
    ]
    return Hasher.canonicalize(data)


def movement_payload(record: MovementRecord, signed_at: int) -> str:
    """Canonical payload of a movement log entry."""
    data = {key: getattr(record, key) for key in MOVEMENT_FIELDS}
    _require(data, "Movement")

    data["timestamp"] = signed_at
    return Hasher.canonicalize(data)

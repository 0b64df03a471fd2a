"""
Canonical form and SHA-256 for ledger payloads.

Every link, signature and Merkle leaf is computed over the canonical
string produced here, so its rules are frozen at version 1:

- "__canon_v": 1 is added to the top-level object
- object keys sorted at every depth; keys must be strings
- None dropped; empty strings, lists and objects kept
- aware datetimes as UTC "YYYY-MM-DDTHH:MM:SS.ffffffZ"; naive ones rejected
- dates as YYYY-MM-DD, UUIDs lowercase, enums by value, Decimal as str
- floats, bytes and sets rejected
- compact separators, ASCII only

A chain link is SHA256(canonical_payload + previous_link), where
previous_link is "GENESIS" for the first entry of a stream.
"""

import hashlib
import hmac
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from ..schemas.ledger import GENESIS


class CanonicalSerializationError(Exception):
    """Value has no deterministic canonical form."""


_HEX = frozenset("0123456789abcdef")

_REJECTED = {
    float: "floats are not allowed in canonical payloads (use int, Decimal or str)",
    bytes: "bytes must be hex or base64 encoded first",
    set: "sets have no stable order (use a sorted list)",
    frozenset: "sets have no stable order (use a sorted list)",
}


def _format_datetime(value: datetime, where: str) -> str:
    if value.tzinfo is None:
        raise CanonicalSerializationError(f"{where}: datetime is timezone-naive")
    value = value.astimezone(timezone.utc)
    return f"{value:%Y-%m-%dT%H:%M:%S}.{value.microsecond:06d}Z"


def _canonical(value: Any, where: str) -> Any:
    # str-valued enums are str instances; they must reach the Enum branch
    if value is None or isinstance(value, (bool, str)) and not isinstance(value, Enum):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, int):
        return value
    if isinstance(value, UUID):
        return str(value).lower()
    if isinstance(value, datetime):
        return _format_datetime(value, where)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return _canonical_object(value, where)
    if isinstance(value, (list, tuple)):
        return [_canonical(item, f"{where}[{i}]") for i, item in enumerate(value)]
    if hasattr(value, "model_dump"):
        return _canonical_object(value.model_dump(mode="python"), where)

    for kind, reason in _REJECTED.items():
        if isinstance(value, kind):
            raise CanonicalSerializationError(f"{where}: {reason}")
    raise CanonicalSerializationError(f"{where}: unsupported type {type(value).__name__}")


def _canonical_object(data: dict, where: str) -> dict:
    out = {}
    for key in sorted(data, key=lambda k: (not isinstance(k, str), str(k))):
        if not isinstance(key, str):
            raise CanonicalSerializationError(
                f"{where or '<root>'}: object keys must be str, not {type(key).__name__}"
            )
        value = _canonical(data[key], f"{where}.{key}" if where else key)
        if value is not None:
            out[key] = value
    return out


class Hasher:
    """Stateless helpers; everything is a class or static method."""

    SERIALIZATION_VERSION = 1

    @classmethod
    def canonicalize(cls, data: Any) -> str:
        """The exact string that is chained and signed."""
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")
        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"only objects can be canonicalized, got {type(data).__name__}"
            )

        body = _canonical_object(data, "")
        body["__canon_v"] = cls.SERIALIZATION_VERSION
        return json.dumps(
            body,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @staticmethod
    def sha256_hex(data: str | bytes) -> str:
        raw = data.encode("utf-8") if isinstance(data, str) else data
        return hashlib.sha256(raw).hexdigest()

    @classmethod
    def hash_data(cls, data: Any) -> str:
        return cls.sha256_hex(cls.canonicalize(data))

    @staticmethod
    def is_digest(value: Any) -> bool:
        """64 hex characters, either case."""
        return isinstance(value, str) and len(value) == 64 and set(value.lower()) <= _HEX

    @classmethod
    def chain_link(cls, canonical_payload: str, previous_link: str) -> str:
        if previous_link != GENESIS:
            if not cls.is_digest(previous_link):
                raise CanonicalSerializationError(
                    f"previous_link must be {GENESIS} or a hex digest, got {previous_link!r}"
                )
            previous_link = previous_link.lower()
        return cls.sha256_hex(canonical_payload + previous_link)

    @classmethod
    def verify_link(cls, canonical_payload: str, previous_link: str, expected_link: str) -> bool:
        """Recompute a stored link and compare in constant time."""
        try:
            computed = cls.chain_link(canonical_payload, previous_link)
        except CanonicalSerializationError:
            return False
        if not cls.is_digest(expected_link):
            return False
        return hmac.compare_digest(computed, expected_link.lower())

    @classmethod
    def leaf_digest(cls, subject_id: UUID, name: str, case_no: str, current_link: str) -> str:
        """
        Merkle leaf for one subject: its identity plus the link of its
        latest revision, and nothing else.
        """
        return cls.hash_data({
            "id": subject_id,
            "name": name,
            "case_no": case_no,
            "current_link": current_link,
        })

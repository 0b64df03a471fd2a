"""
Tests for canonical serialization and chain links.

Every stored link and signature depends on these rules staying fixed.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from custody.core import CanonicalSerializationError, Hasher
from custody.schemas import GENESIS, EvidenceType


class TestCanonicalize:
    """Test canonical hashing - THIS IS SACRED GROUND."""

    def test_deterministic_hash(self):
        data = {"name": "test", "value": 42}
        assert Hasher.hash_data(data) == Hasher.hash_data(data)

    def test_sorted_keys(self):
        """Key order doesn't affect hash, at any depth."""
        data1 = {"outer": {"z": 1, "a": 2}, "b": 2, "a": 1}
        data2 = {"a": 1, "b": 2, "outer": {"a": 2, "z": 1}}
        assert Hasher.canonicalize(data1) == Hasher.canonicalize(data2)

    def test_version_field_first(self):
        canonical = Hasher.canonicalize({"a": 1})
        assert canonical == '{"__canon_v":1,"a":1}'

    def test_null_omitted(self):
        assert Hasher.canonicalize({"a": 1, "b": None}) == Hasher.canonicalize({"a": 1})

    def test_empty_values_preserved(self):
        """Empty strings and lists are data, not absence."""
        assert Hasher.canonicalize({"a": ""}) != Hasher.canonicalize({})
        assert Hasher.canonicalize({"a": []}) != Hasher.canonicalize({})

    def test_float_banned(self):
        with pytest.raises(CanonicalSerializationError, match="float"):
            Hasher.canonicalize({"weight": 1.5})

    def test_top_level_must_be_dict(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize(["a", "b"])

    def test_naive_datetime_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            Hasher.canonicalize({"at": datetime(2024, 1, 1, 12, 0)})

    def test_datetime_normalized_to_utc(self):
        utc_time = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        other_time = datetime(2024, 1, 1, 17, 0, tzinfo=timezone(timedelta(hours=5)))
        assert Hasher.hash_data({"at": utc_time}) == Hasher.hash_data({"at": other_time})
        assert "2024-01-01T12:00:00.000000Z" in Hasher.canonicalize({"at": utc_time})

    def test_uuid_lowercase(self):
        canonical = Hasher.canonicalize({"id": UUID("550E8400-E29B-41D4-A716-446655440000")})
        assert "550e8400-e29b-41d4-a716-446655440000" in canonical

    def test_enum_uses_value(self):
        canonical = Hasher.canonicalize({"type": EvidenceType.DIGITAL})
        assert '"Digital"' in canonical
        assert "DIGITAL" not in canonical

    def test_sets_and_bytes_rejected(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize({"tags": {"a", "b"}})
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize({"blob": b"\x00"})


class TestChainLink:
    """current_link = SHA256(canonical_payload + previous_link)"""

    def test_genesis_link(self):
        payload = Hasher.canonicalize({"name": "knife"})
        expected = hashlib.sha256((payload + GENESIS).encode("utf-8")).hexdigest()
        assert Hasher.chain_link(payload, GENESIS) == expected

    def test_chained_link(self):
        payload = Hasher.canonicalize({"name": "knife"})
        previous = Hasher.sha256_hex("earlier")
        expected = hashlib.sha256((payload + previous).encode("utf-8")).hexdigest()
        assert Hasher.chain_link(payload, previous) == expected

    def test_previous_link_case_insensitive(self):
        payload = Hasher.canonicalize({"name": "knife"})
        previous = Hasher.sha256_hex("earlier")
        assert Hasher.chain_link(payload, previous.upper()) == Hasher.chain_link(payload, previous)

    def test_malformed_previous_link_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="previous_link"):
            Hasher.chain_link("{}", "not-a-link")

    def test_verify_link(self):
        payload = Hasher.canonicalize({"name": "knife"})
        link = Hasher.chain_link(payload, GENESIS)

        assert Hasher.verify_link(payload, GENESIS, link)
        assert Hasher.verify_link(payload, GENESIS, link.upper())
        assert not Hasher.verify_link(payload + " ", GENESIS, link)
        assert not Hasher.verify_link(payload, "garbage", link)

    def test_is_digest(self):
        assert Hasher.is_digest("a" * 64)
        assert Hasher.is_digest("A" * 64)
        assert not Hasher.is_digest("a" * 63)
        assert not Hasher.is_digest("g" * 64)
        assert not Hasher.is_digest(None)


class TestLeafDigest:

    def test_leaf_is_hash_of_identifying_fields(self):
        subject_id = UUID("12345678-1234-4234-8234-123456789abc")
        link = Hasher.sha256_hex("entry")
        expected = Hasher.hash_data({
            "id": subject_id,
            "name": "Laptop",
            "case_no": "C-1",
            "current_link": link,
        })
        assert Hasher.leaf_digest(subject_id, "Laptop", "C-1", link) == expected

    def test_leaf_changes_with_name(self):
        subject_id = UUID("12345678-1234-4234-8234-123456789abc")
        link = Hasher.sha256_hex("entry")
        assert (
            Hasher.leaf_digest(subject_id, "Laptop", "C-1", link)
            != Hasher.leaf_digest(subject_id, "Laptop ", "C-1", link)
        )

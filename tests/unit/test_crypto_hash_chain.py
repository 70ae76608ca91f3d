"""Tests for crypto hash chain module."""

from __future__ import annotations

import json

from membership_admin.core.crypto.hash_chain import (
    GENESIS_HASH,
    canonical_json,
    compute_entry_hash,
    verify_chain,
    verify_entry,
)


def _payload(n: int) -> dict[str, object]:
    return {
        "entity_type": "member",
        "entity_id": n,
        "action": "update",
        "metadata_json": json.dumps({"path": f"/api/members/{n}"}),
        "created_at": f"2025-06-01T12:00:0{n}.000000+00:00",
    }


def _chain(count: int) -> list[dict[str, object]]:
    entries: list[dict[str, object]] = []
    prev = GENESIS_HASH
    for n in range(count):
        entry = _payload(n)
        entry["prev_event_hash"] = prev
        entry["chain_sequence"] = n
        entry["event_hash"] = compute_entry_hash(entry, prev)
        prev = entry["event_hash"]  # type: ignore[assignment]
        entries.append(entry)
    return entries


class TestCanonicalJson:
    """Tests for deterministic JSON serialization."""

    def test_sorted_keys(self) -> None:
        result = json.loads(canonical_json({"z": 1, "a": 2, "m": 3}))
        assert list(result.keys()) == ["a", "m", "z"]

    def test_no_whitespace(self) -> None:
        result = canonical_json({"key": "value", "num": 42})
        assert b" " not in result
        assert b"\n" not in result

    def test_returns_bytes(self) -> None:
        assert isinstance(canonical_json({"key": "value"}), bytes)

    def test_deterministic(self) -> None:
        """Same data always produces same bytes regardless of insertion order."""
        assert canonical_json({"b": 2, "a": 1}) == canonical_json({"a": 1, "b": 2})


class TestComputeEntryHash:
    def test_hex_sha256(self) -> None:
        digest = compute_entry_hash(_payload(1), GENESIS_HASH)
        assert len(digest) == 64
        int(digest, 16)

    def test_depends_on_previous_hash(self) -> None:
        assert compute_entry_hash(_payload(1), GENESIS_HASH) != compute_entry_hash(
            _payload(1), "f" * 64
        )

    def test_chain_columns_ignored(self) -> None:
        plain = _payload(1)
        with_chain = {**plain, "event_hash": "x", "prev_event_hash": "y", "chain_sequence": 9}
        assert compute_entry_hash(plain, GENESIS_HASH) == compute_entry_hash(
            with_chain, GENESIS_HASH
        )


class TestVerifyChain:
    def test_empty_chain_is_valid(self) -> None:
        result = verify_chain([])
        assert result.is_valid
        assert result.verified_count == 0

    def test_intact_chain(self) -> None:
        result = verify_chain(_chain(4))
        assert result.is_valid
        assert result.verified_count == 4
        assert result.first_break_at is None

    def test_edited_entry_detected(self) -> None:
        entries = _chain(4)
        entries[2]["action"] = "delete"
        result = verify_chain(entries)
        assert not result.is_valid
        assert result.first_break_at == 2
        assert result.verified_count == 2
        assert "hash mismatch" in result.errors[0]

    def test_deleted_entry_detected(self) -> None:
        entries = _chain(4)
        del entries[1]
        result = verify_chain(entries)
        assert not result.is_valid
        assert result.first_break_at == 1
        assert "prev_event_hash mismatch" in result.errors[0]

    def test_missing_hash_detected(self) -> None:
        entries = _chain(2)
        entries[0]["event_hash"] = None
        assert verify_chain(entries).first_break_at == 0


class TestVerifyEntry:
    def test_valid_entry(self) -> None:
        entries = _chain(3)
        assert verify_entry(entries[2], entries[2]["prev_event_hash"])  # type: ignore[arg-type]

    def test_first_entry_against_genesis(self) -> None:
        assert verify_entry(_chain(1)[0], None)

    def test_tampered_entry(self) -> None:
        entry = _chain(1)[0]
        entry["entity_id"] = 99
        assert not verify_entry(entry, GENESIS_HASH)

    def test_unhashed_entry(self) -> None:
        assert not verify_entry(_payload(1), GENESIS_HASH)

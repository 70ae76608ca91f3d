"""
SHA-256 hash chaining for audit log integrity.

Each entry hash is ``SHA256(jcs(entry_data) + prev_hash)`` where ``jcs`` is
RFC 8785 canonical JSON. Editing, reordering or deleting an entry breaks
every hash after it.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any

import rfc8785

GENESIS_HASH: str = "0" * 64

CHAIN_FIELDS = frozenset({"event_hash", "prev_event_hash", "chain_sequence"})


def canonical_json(data: Any) -> bytes:
    """Return RFC 8785 (JCS) canonical bytes."""
    canonical = rfc8785.dumps(data)
    if isinstance(canonical, bytes):
        return canonical
    return str(canonical).encode("utf-8")


def compute_entry_hash(entry_data: dict[str, Any], prev_hash: str) -> str:
    """
    Hash one entry's payload together with its predecessor's hash.

    ``entry_data`` must hold only JSON-compatible values (timestamps as ISO
    strings); chain columns are ignored if present.
    """
    payload = {k: v for k, v in entry_data.items() if k not in CHAIN_FIELDS}
    hasher = hashlib.sha256()
    hasher.update(canonical_json(payload))
    hasher.update(prev_hash.encode("utf-8"))
    return hasher.hexdigest()


@dataclass
class ChainVerificationResult:
    """
    Outcome of walking a chain in sequence order.

    ``first_break_at`` is the zero-based position of the first entry whose
    link or hash does not match; verification stops there.
    """

    is_valid: bool = True
    verified_count: int = 0
    first_break_at: int | None = None
    errors: list[str] = field(default_factory=list)

    def fail(self, index: int, message: str) -> ChainVerificationResult:
        self.is_valid = False
        self.first_break_at = index
        self.errors.append(f"Entry at index {index}: {message}")
        return self


def verify_entry(entry: dict[str, Any], prev_hash: str | None) -> bool:
    stored = entry.get("event_hash")
    if stored is None:
        return False
    return bool(stored == compute_entry_hash(entry, prev_hash or GENESIS_HASH))


def verify_chain(entries: list[dict[str, Any]]) -> ChainVerificationResult:
    """Verify entries ordered by ``chain_sequence`` ascending, starting at genesis."""
    result = ChainVerificationResult()
    expected_prev = GENESIS_HASH

    for index, entry in enumerate(entries):
        stored = entry.get("event_hash")
        if stored is None:
            return result.fail(index, "missing event_hash")

        linked_prev = entry.get("prev_event_hash")
        if linked_prev != expected_prev:
            return result.fail(
                index,
                f"prev_event_hash mismatch (stored={linked_prev!r}, expected={expected_prev!r})",
            )

        recomputed = compute_entry_hash(entry, expected_prev)
        if recomputed != stored:
            return result.fail(
                index, f"hash mismatch (stored={stored!r}, recomputed={recomputed!r})"
            )

        result.verified_count += 1
        expected_prev = stored

    return result

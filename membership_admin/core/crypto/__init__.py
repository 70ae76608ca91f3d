"""Tamper-evidence primitives for the audit log."""

from membership_admin.core.crypto.hash_chain import (
    GENESIS_HASH,
    ChainVerificationResult,
    canonical_json,
    compute_entry_hash,
    verify_chain,
    verify_entry,
)

__all__ = [
    "GENESIS_HASH",
    "ChainVerificationResult",
    "canonical_json",
    "compute_entry_hash",
    "verify_chain",
    "verify_entry",
]

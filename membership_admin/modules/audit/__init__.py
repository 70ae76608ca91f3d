"""Audit trail listing and integrity verification."""

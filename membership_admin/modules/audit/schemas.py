"""Pydantic schemas for audit trail API responses."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class AuditEntryResponse(BaseModel):
    """Single audit entry with its JSON columns decoded."""

    id: int
    entity_type: str
    entity_id: int | None = None
    action: str
    user_session_id: str | None = None
    user_id: str | None = None
    user_ip: str | None = None
    old_values: Any = None
    new_values: Any = None
    metadata: dict[str, Any] | None = None
    created_at: datetime

    event_hash: str | None = None
    prev_event_hash: str | None = None
    chain_sequence: int | None = None


class AuditEntryListResponse(BaseModel):
    data: list[AuditEntryResponse]
    total: int
    limit: int
    offset: int


class ChainVerificationResponse(BaseModel):
    """Result of verifying the whole audit hash chain."""

    is_valid: bool
    verified_count: int
    first_break_at: int | None = None
    errors: list[str]


class EntryVerificationResponse(BaseModel):
    is_valid: bool
    entry_id: int
    event_hash: str | None = None

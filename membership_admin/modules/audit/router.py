"""Admin audit trail endpoints for entry listing and chain verification."""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Query
from sqlalchemy import desc, func, select

from membership_admin.core.audit import entry_hash_payload
from membership_admin.core.clock import as_utc
from membership_admin.core.crypto.hash_chain import verify_chain, verify_entry
from membership_admin.core.errors import NotFoundError
from membership_admin.core.logging import get_logger
from membership_admin.core.security.authorization import AuditReader
from membership_admin.db.models import AuditLogEntry
from membership_admin.db.session import DbSession
from membership_admin.modules.audit.schemas import (
    AuditEntryListResponse,
    AuditEntryResponse,
    ChainVerificationResponse,
    EntryVerificationResponse,
)

logger = get_logger(__name__)
router = APIRouter()


def _decode(raw: str | None, entry_id: int, column: str) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("audit_entry_json_corrupt", entry_id=entry_id, column=column)
        return None


def _entry_to_response(entry: AuditLogEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        action=entry.action,
        user_session_id=entry.user_session_id,
        user_id=entry.user_id,
        user_ip=entry.user_ip,
        old_values=_decode(entry.old_values_json, entry.id, "old_values_json"),
        new_values=_decode(entry.new_values_json, entry.id, "new_values_json"),
        metadata=_decode(entry.metadata_json, entry.id, "metadata_json"),
        created_at=as_utc(entry.created_at),
        event_hash=entry.event_hash,
        prev_event_hash=entry.prev_event_hash,
        chain_sequence=entry.chain_sequence,
    )


def _entry_to_dict(entry: AuditLogEntry) -> dict[str, Any]:
    """Hashable payload plus chain columns, as consumed by the verifiers."""
    data = entry_hash_payload(entry)
    data["event_hash"] = entry.event_hash
    data["prev_event_hash"] = entry.prev_event_hash
    data["chain_sequence"] = entry.chain_sequence
    return data


@router.get("", response_model=AuditEntryListResponse)
async def list_audit_entries(
    db: DbSession,
    _session: AuditReader,
    entity_type: str | None = Query(None, description="Filter by entity type"),
    entity_id: int | None = Query(None, description="Filter by entity id"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> AuditEntryListResponse:
    """List audit entries, newest first (admin only)."""
    query = select(AuditLogEntry)
    count_query = select(func.count()).select_from(AuditLogEntry)

    if entity_type is not None:
        query = query.where(AuditLogEntry.entity_type == entity_type)
        count_query = count_query.where(AuditLogEntry.entity_type == entity_type)
    if entity_id is not None:
        query = query.where(AuditLogEntry.entity_id == entity_id)
        count_query = count_query.where(AuditLogEntry.entity_id == entity_id)

    total = (await db.execute(count_query)).scalar() or 0
    query = (
        query.order_by(desc(AuditLogEntry.created_at), desc(AuditLogEntry.id))
        .offset(offset)
        .limit(limit)
    )
    entries = (await db.execute(query)).scalars().all()

    return AuditEntryListResponse(
        data=[_entry_to_response(entry) for entry in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/verify/chain", response_model=ChainVerificationResponse)
async def verify_audit_chain(db: DbSession, _session: AuditReader) -> ChainVerificationResponse:
    """Verify the hash chain over every chained entry (admin only)."""
    query = (
        select(AuditLogEntry)
        .where(AuditLogEntry.chain_sequence.is_not(None))
        .order_by(AuditLogEntry.chain_sequence)
    )
    entries = (await db.execute(query)).scalars().all()
    result = verify_chain([_entry_to_dict(entry) for entry in entries])
    if not result.is_valid:
        logger.error(
            "audit_chain_broken",
            first_break_at=result.first_break_at,
            verified_count=result.verified_count,
        )
    return ChainVerificationResponse(
        is_valid=result.is_valid,
        verified_count=result.verified_count,
        first_break_at=result.first_break_at,
        errors=result.errors,
    )


@router.get("/verify/entry/{entry_id}", response_model=EntryVerificationResponse)
async def verify_audit_entry(
    entry_id: int, db: DbSession, _session: AuditReader
) -> EntryVerificationResponse:
    """Verify one entry's hash against its recorded predecessor (admin only)."""
    entry = await db.get(AuditLogEntry, entry_id)
    if entry is None:
        raise NotFoundError("audit_entry", entry_id)
    return EntryVerificationResponse(
        is_valid=verify_entry(_entry_to_dict(entry), entry.prev_event_hash),
        entry_id=entry.id,
        event_hash=entry.event_hash,
    )

"""
Flag definitions and per-member flag grants.

Every public method runs in exactly one transaction obtained from the
injected session factory, so the store can be pointed at any database
(including an in-memory one in tests) without process-wide state.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from membership_admin.core.clock import Clock, as_utc, utc_now
from membership_admin.core.errors import FlagError, FlagErrorKind, UniqueConstraintError
from membership_admin.core.logging import get_logger
from membership_admin.db.models import Flag, FlagCategory, FlagGrant
from membership_admin.db.session import transaction

logger = get_logger(__name__)


@dataclass(frozen=True)
class GrantView:
    """A grant joined with its flag definition, as returned to callers."""

    flag_id: str
    member_id: str
    name: str
    granted_at: datetime
    granted_by: str
    expires_at: datetime | None
    expired: bool
    metadata: dict[str, Any] | None


@dataclass(frozen=True)
class GrantRequest:
    subject_id: str
    flag_id: str
    expires_at: datetime | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class PurgeResult:
    processed: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0


def _active_clause(now: datetime) -> Any:
    return or_(FlagGrant.expires_at.is_(None), FlagGrant.expires_at > as_utc(now))


def _is_expired(expires_at: datetime | None, now: datetime) -> bool:
    return expires_at is not None and as_utc(expires_at) <= as_utc(now)


def _require_text(value: str | None, name: str) -> str:
    if value is None or not str(value).strip():
        raise FlagError(f"{name} is required", FlagErrorKind.INVALID)
    return str(value).strip()


class FlagStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def grant(
        self,
        subject_id: str,
        flag_id: str,
        granted_by: str,
        expires_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> GrantView:
        """
        Grant ``flag_id`` to ``subject_id``, replacing any existing grant.

        Re-granting overwrites ``granted_at``, ``granted_by``, ``expires_at``
        and ``metadata``; concurrent grants on the same key resolve to the
        last committed one. An unknown flag id is a caller error.
        """
        subject_id = _require_text(subject_id, "subject id")
        flag_id = _require_text(flag_id, "flag id")
        granted_by = _require_text(granted_by, "granted_by")
        if metadata is not None and not isinstance(metadata, dict):
            raise FlagError("metadata must be an object", FlagErrorKind.INVALID)
        granted_at = as_utc(now or self.clock())

        async with transaction(self.session_factory) as session:
            definition = await session.get(Flag, flag_id)
            if definition is None:
                raise FlagError(f"Flag '{flag_id}' is invalid: no such flag", FlagErrorKind.INVALID)

            await self._upsert(
                session,
                [
                    {
                        "member_id": subject_id,
                        "flag_id": flag_id,
                        "granted_at": granted_at,
                        "granted_by": granted_by,
                        "expires_at": as_utc(expires_at) if expires_at else None,
                        "metadata": metadata,
                    }
                ],
            )
            row = await session.get(FlagGrant, (subject_id, flag_id), populate_existing=True)

        if row is None:
            raise FlagError(f"Grant of '{flag_id}' to {subject_id} was not stored")
        logger.info(
            "flag_granted",
            subject_id=subject_id,
            flag_id=flag_id,
            granted_by=granted_by,
            expires_at=row.expires_at.isoformat() if row.expires_at else None,
        )
        return self._view(row, definition.name, granted_at)

    async def revoke(
        self,
        subject_id: str,
        flag_id: str,
        reason: str | None = None,
        *,
        revoked_by: str | None = None,
    ) -> bool:
        """Delete the grant. Returns ``False`` (not an error) when none existed."""
        async with transaction(self.session_factory) as session:
            result = await session.execute(
                delete(FlagGrant).where(
                    FlagGrant.member_id == subject_id,
                    FlagGrant.flag_id == flag_id,
                )
            )
        removed = bool(result.rowcount)
        logger.info(
            "flag_revoked",
            subject_id=subject_id,
            flag_id=flag_id,
            revoked_by=revoked_by,
            reason=reason,
            removed=removed,
        )
        return removed

    async def is_active(self, subject_id: str, flag_id: str, now: datetime) -> bool:
        async with transaction(self.session_factory) as session:
            found = await session.scalar(
                select(func.count())
                .select_from(FlagGrant)
                .where(
                    FlagGrant.member_id == subject_id,
                    FlagGrant.flag_id == flag_id,
                    _active_clause(now),
                )
            )
        return bool(found)

    async def list_for_subject(self, subject_id: str, now: datetime) -> set[str]:
        async with transaction(self.session_factory) as session:
            result = await session.scalars(
                select(FlagGrant.flag_id).where(
                    FlagGrant.member_id == subject_id,
                    _active_clause(now),
                )
            )
            return set(result.all())

    async def grants_for_subject(
        self, subject_id: str, now: datetime | None = None
    ) -> list[GrantView]:
        """All grants held by the subject, expired ones included and marked."""
        now = now or self.clock()
        async with transaction(self.session_factory) as session:
            result = await session.execute(
                select(FlagGrant, Flag.name)
                .join(Flag, Flag.id == FlagGrant.flag_id)
                .where(FlagGrant.member_id == subject_id)
                .order_by(FlagGrant.flag_id)
            )
            rows = result.all()
        return [self._view(grant, name, now) for grant, name in rows]

    async def holders(self, flag_id: str, now: datetime | None = None) -> list[GrantView]:
        """Active grants of ``flag_id`` across all subjects."""
        now = now or self.clock()
        async with transaction(self.session_factory) as session:
            definition = await session.get(Flag, flag_id)
            if definition is None:
                raise FlagError(f"Flag '{flag_id}' not found", FlagErrorKind.NOT_FOUND)
            result = await session.scalars(
                select(FlagGrant)
                .where(FlagGrant.flag_id == flag_id, _active_clause(now))
                .order_by(FlagGrant.granted_at.desc())
            )
            grants = list(result.all())
        return [self._view(grant, definition.name, now) for grant in grants]

    async def bulk_grant(
        self,
        requests: Sequence[GrantRequest],
        granted_by: str,
        *,
        now: datetime | None = None,
    ) -> int:
        """Grant every request in one transaction; any invalid flag aborts all of them."""
        if not requests:
            raise FlagError("at least one assignment is required", FlagErrorKind.INVALID)
        granted_by = _require_text(granted_by, "granted_by")
        granted_at = as_utc(now or self.clock())

        # One row per (member, flag); the last assignment for a key wins.
        by_key: dict[tuple[str, str], dict[str, Any]] = {}
        for request in requests:
            row = {
                "member_id": _require_text(request.subject_id, "subject id"),
                "flag_id": _require_text(request.flag_id, "flag id"),
                "granted_at": granted_at,
                "granted_by": granted_by,
                "expires_at": as_utc(request.expires_at) if request.expires_at else None,
                "metadata": request.metadata,
            }
            by_key[(row["member_id"], row["flag_id"])] = row
        rows = list(by_key.values())

        async with transaction(self.session_factory) as session:
            wanted = {row["flag_id"] for row in rows}
            known = set(
                (await session.scalars(select(Flag.id).where(Flag.id.in_(wanted)))).all()
            )
            unknown = sorted(wanted - known)
            if unknown:
                raise FlagError(
                    f"Flag '{unknown[0]}' is invalid: no such flag", FlagErrorKind.INVALID
                )
            await self._upsert(session, rows)

        logger.info("flags_bulk_granted", count=len(rows), granted_by=granted_by)
        return len(rows)

    async def purge_expired(self, now: datetime | None = None) -> PurgeResult:
        """
        Delete grants whose expiry has passed.

        Expired grants are already ignored by ``is_active``; this only keeps
        the table small. Failures are reported in the result, not raised.
        """
        started = time.monotonic()
        now = as_utc(now or self.clock())
        result = PurgeResult()
        try:
            async with transaction(self.session_factory) as session:
                deleted = await session.execute(
                    delete(FlagGrant).where(
                        FlagGrant.expires_at.is_not(None),
                        FlagGrant.expires_at <= now,
                    )
                )
            result.processed = deleted.rowcount or 0
        except Exception as exc:
            logger.error("expired_flags_purge_failed", error=str(exc), exc_info=True)
            result.errors.append(str(exc))
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "expired_flags_purged",
            processed=result.processed,
            errors=len(result.errors),
            duration_ms=result.duration_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def list_definitions(self, category: FlagCategory | None = None) -> list[Flag]:
        query = select(Flag).order_by(Flag.category, Flag.name)
        if category is not None:
            query = query.where(Flag.category == category)
        async with transaction(self.session_factory) as session:
            return list((await session.scalars(query)).all())

    async def get_definition(self, flag_id: str) -> Flag:
        async with transaction(self.session_factory) as session:
            definition = await session.get(Flag, flag_id)
        if definition is None:
            raise FlagError(f"Flag '{flag_id}' not found", FlagErrorKind.NOT_FOUND)
        return definition

    async def create_definition(
        self,
        flag_id: str,
        name: str,
        description: str | None = None,
        category: FlagCategory = FlagCategory.OTHER,
    ) -> Flag:
        flag_id = _require_text(flag_id, "flag id")
        name = _require_text(name, "name")
        async with transaction(self.session_factory) as session:
            if await session.get(Flag, flag_id) is not None:
                raise UniqueConstraintError("id", flag_id)
            if await session.scalar(select(Flag.id).where(Flag.name == name)) is not None:
                raise UniqueConstraintError("name", name)
            definition = Flag(id=flag_id, name=name, description=description, category=category)
            session.add(definition)
            await session.flush()
            await session.refresh(definition)
        logger.info("flag_defined", flag_id=flag_id, category=category.value)
        return definition

    async def update_definition(
        self,
        flag_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        category: FlagCategory | None = None,
    ) -> Flag:
        async with transaction(self.session_factory) as session:
            definition = await session.get(Flag, flag_id)
            if definition is None:
                raise FlagError(f"Flag '{flag_id}' not found", FlagErrorKind.NOT_FOUND)
            if name is not None and name != definition.name:
                clash = await session.scalar(
                    select(Flag.id).where(Flag.name == name, Flag.id != flag_id)
                )
                if clash is not None:
                    raise UniqueConstraintError("name", name)
                definition.name = name
            if description is not None:
                definition.description = description
            if category is not None:
                definition.category = category
            await session.flush()
            await session.refresh(definition)
        return definition

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _upsert(self, session: AsyncSession, rows: list[dict[str, Any]]) -> None:
        table = FlagGrant.__table__
        dialect = session.bind.dialect.name
        if dialect == "postgresql":
            stmt: Any = postgresql.insert(table)
        elif dialect == "sqlite":
            stmt = sqlite.insert(table)
        else:
            for row in rows:
                await session.merge(
                    FlagGrant(
                        member_id=row["member_id"],
                        flag_id=row["flag_id"],
                        granted_at=row["granted_at"],
                        granted_by=row["granted_by"],
                        expires_at=row["expires_at"],
                        metadata_=row["metadata"],
                    )
                )
            await session.flush()
            return

        stmt = stmt.values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.member_id, table.c.flag_id],
            set_={
                "granted_at": stmt.excluded["granted_at"],
                "granted_by": stmt.excluded["granted_by"],
                "expires_at": stmt.excluded["expires_at"],
                "metadata": stmt.excluded["metadata"],
            },
        )
        await session.execute(stmt)

    @staticmethod
    def _view(grant: FlagGrant, name: str, now: datetime) -> GrantView:
        expires_at = as_utc(grant.expires_at) if grant.expires_at else None
        return GrantView(
            flag_id=grant.flag_id,
            member_id=grant.member_id,
            name=name,
            granted_at=as_utc(grant.granted_at),
            granted_by=grant.granted_by,
            expires_at=expires_at,
            expired=_is_expired(expires_at, now),
            metadata=grant.metadata_,
        )

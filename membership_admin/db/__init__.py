"""Database package."""

from membership_admin.db.models import (
    AuditLogEntry,
    AuthSession,
    AuthUser,
    Base,
    Event,
    Flag,
    FlagCategory,
    FlagGrant,
    Member,
)
from membership_admin.db.session import (
    DbSession,
    SessionFactory,
    close_db,
    get_db_session,
    init_db,
    transaction,
)

__all__ = [
    "DbSession",
    "SessionFactory",
    "get_db_session",
    "init_db",
    "close_db",
    "transaction",
    "Base",
    "Member",
    "Event",
    "AuthUser",
    "AuthSession",
    "Flag",
    "FlagCategory",
    "FlagGrant",
    "AuditLogEntry",
]

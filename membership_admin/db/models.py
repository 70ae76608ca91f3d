"""
SQLAlchemy ORM models for the membership administration core.

Only ``flags``, ``members_flags`` and ``audit_log`` are written by this
package. ``members``, ``events``, ``membership_types``, ``payment_statuses``,
``external_integrations``, ``auth_users`` and ``auth_sessions`` are owned by
other services; they are mapped here as read-only slices holding just the
columns authorization needs.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
    }


# =============================================================================
# Enums
# =============================================================================


class FlagCategory(str, PyEnum):
    """Grouping used by the admin UI when listing flag definitions."""

    VERIFICATION = "verification"
    SUBSCRIPTION = "subscription"
    FEATURE = "feature"
    COMPLIANCE = "compliance"
    ADMIN = "admin"
    OTHER = "other"


# =============================================================================
# Read-only collaborator tables
# =============================================================================


class Member(Base):
    __tablename__ = "members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    flags: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Bitfield: 1=active, 2=professional_affiliate",
    )


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    flags: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
        comment="Bitfield: 1=active, 2=public",
    )


class MembershipType(Base):
    __tablename__ = "membership_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    flags: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Bitfield: 1=active, 2=recurring, 4=exclusive_group",
    )


class PaymentStatus(Base):
    __tablename__ = "payment_statuses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    flags: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class ExternalIntegration(Base):
    __tablename__ = "external_integrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[int] = mapped_column(ForeignKey("members.id"), nullable=False)
    system_name: Mapped[str] = mapped_column(Text, nullable=False)
    flags: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class AuthUser(Base):
    """Authenticated principal, owned by the identity service."""

    __tablename__ = "auth_users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str | None] = mapped_column(Text)
    access_level: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="1=member, 2=moderator, 3=admin, 4=super_admin",
    )
    member_id: Mapped[int | None] = mapped_column(ForeignKey("members.id"))


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    token: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("auth_users.id"), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# =============================================================================
# Flag definitions and grants
# =============================================================================


class Flag(Base):
    """A named capability that can be granted to members."""

    __tablename__ = "flags"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[FlagCategory] = mapped_column(
        Enum(FlagCategory, name="flag_category", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=FlagCategory.OTHER,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class FlagGrant(Base):
    """
    A flag held by a member.

    At most one row per (member, flag). ``expires_at`` NULL means permanent;
    otherwise the grant is active only while ``expires_at > now``.
    """

    __tablename__ = "members_flags"

    member_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    flag_id: Mapped[str] = mapped_column(
        ForeignKey("flags.id", ondelete="CASCADE"),
        primary_key=True,
    )
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    granted_by: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata")

    __table_args__ = (
        Index("ix_members_flags_flag_id", "flag_id"),
        Index("ix_members_flags_expires_at", "expires_at"),
    )


# =============================================================================
# Audit trail
# =============================================================================


class AuditLogEntry(Base):
    """
    Append-only record of a successful state-changing or read request.

    JSON payloads are stored as serialized text. ``old_values_json`` is part
    of the table contract but never populated. The hash chain columns make
    edits or deletions detectable.
    """

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(Integer)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    user_session_id: Mapped[str | None] = mapped_column(String(64))
    user_id: Mapped[str | None] = mapped_column(String(64))
    user_ip: Mapped[str | None] = mapped_column(String(45))
    old_values_json: Mapped[str | None] = mapped_column(Text)
    new_values_json: Mapped[str | None] = mapped_column(Text)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    event_hash: Mapped[str | None] = mapped_column(String(64))
    prev_event_hash: Mapped[str | None] = mapped_column(String(64))
    chain_sequence: Mapped[int | None] = mapped_column(Integer, unique=True)

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
        Index("ix_audit_log_created_at", "created_at"),
    )

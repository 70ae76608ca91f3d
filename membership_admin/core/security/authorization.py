"""
Authorization decisions.

Two independent policies are evaluated, never mixed in one check:

* **Coarse actions** (``read all``, ``manage members`` ...) compare the
  session's access level against a static minimum.
* **Resource-scoped checks** verify the target row exists and is active
  (legacy bitfield) and that the acting member holds every required flag
  grant at the engine's current time.

``AuthorizationEngine.authorize`` is pure with respect to its inputs and the
injected clock; it never writes. The FastAPI dependencies at the bottom turn
a denial into the matching domain error.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Protocol

from fastapi import Depends, Request

from membership_admin.core import bitfield
from membership_admin.core.clock import Clock, utc_now
from membership_admin.core.errors import (
    AuthenticationError,
    AuthFailureReason,
    AuthorizationError,
    NotFoundError,
    ResourceRef,
    ValidationError,
)
from membership_admin.core.logging import get_logger
from membership_admin.core.routing import classify, is_id_segment, parse_id, singularize
from membership_admin.core.security.resources import ResourceReader
from membership_admin.core.security.session import AccessLevel, CurrentSession, Session

logger = get_logger(__name__)


class DenyReason(str, Enum):
    MISSING_SESSION = "missing_session"
    EXPIRED_SESSION = "expired_session"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_NOT_FOUND = "resource_not_found"


@dataclass(frozen=True)
class Subject:
    """What a check is about: an entity type and, for scoped checks, a row id."""

    entity_type: str
    entity_id: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "entity_type", singularize(self.entity_type))


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None
    required_permission: str | None = None
    resource: ResourceRef | None = None
    missing_flag: str | None = None

    @classmethod
    def allow(cls) -> Decision:
        return cls(allowed=True)

    @classmethod
    def deny(
        cls,
        reason: DenyReason,
        *,
        required_permission: str | None = None,
        resource: ResourceRef | None = None,
        missing_flag: str | None = None,
    ) -> Decision:
        return cls(
            allowed=False,
            reason=reason,
            required_permission=required_permission,
            resource=resource,
            missing_flag=missing_flag,
        )

    def raise_for_denial(self) -> None:
        if self.allowed:
            return
        match self.reason:
            case DenyReason.MISSING_SESSION:
                raise AuthenticationError(AuthFailureReason.MISSING_SESSION)
            case DenyReason.EXPIRED_SESSION:
                raise AuthenticationError(AuthFailureReason.EXPIRED_SESSION)
            case DenyReason.RESOURCE_NOT_FOUND:
                resource = self.resource or ResourceRef(type="")
                raise NotFoundError(resource.type, resource.id)
            case _:
                message = (
                    f"Missing required flag: {self.missing_flag}"
                    if self.missing_flag
                    else "Permission denied"
                )
                raise AuthorizationError(
                    message,
                    required_permission=self.required_permission,
                    resource=self.resource,
                )


# Minimum access level per (action, entity type). Entity types are singular.
COARSE_ACTIONS: dict[tuple[str, str], AccessLevel] = {
    ("read", "all"): AccessLevel.ADMIN,
    ("read", "member"): AccessLevel.MODERATOR,
    ("read", "event"): AccessLevel.MODERATOR,
    ("manage", "member"): AccessLevel.MODERATOR,
    ("manage", "event"): AccessLevel.MODERATOR,
    ("read", "audit"): AccessLevel.ADMIN,
    ("read", "flag"): AccessLevel.MODERATOR,
    ("manage", "flag"): AccessLevel.ADMIN,
    ("manage", "setting"): AccessLevel.SUPER_ADMIN,
}


class FlagChecker(Protocol):
    async def is_active(self, subject_id: str, flag_id: str, now: datetime) -> bool: ...

    async def list_for_subject(self, subject_id: str, now: datetime) -> set[str]: ...


@dataclass
class PermissionReport:
    """Outcome of evaluating a flag policy for an arbitrary member."""

    subject_id: str
    allowed: bool
    active_flags: list[str] = field(default_factory=list)
    missing_flags: list[str] = field(default_factory=list)
    resource: ResourceRef | None = None
    reason: DenyReason | None = None


class AuthorizationEngine:
    def __init__(
        self,
        flag_store: FlagChecker,
        resource_reader: ResourceReader,
        clock: Clock = utc_now,
    ) -> None:
        self.flag_store = flag_store
        self.resource_reader = resource_reader
        self.clock = clock

    @staticmethod
    def coarse_level(action: str, entity_type: str) -> AccessLevel | None:
        return COARSE_ACTIONS.get((action, singularize(entity_type)))

    async def authorize(
        self,
        session: Session | None,
        action: str,
        subject: Subject,
        required_flags: Sequence[str] = (),
    ) -> Decision:
        if session is None:
            return Decision.deny(DenyReason.MISSING_SESSION)
        now = self.clock()
        if session.is_expired(now):
            return Decision.deny(DenyReason.EXPIRED_SESSION)

        # A subject with a row id is always resource-scoped.
        required_level = (
            self.coarse_level(action, subject.entity_type) if subject.entity_id is None else None
        )
        if required_level is not None:
            if required_flags:
                raise ValidationError(
                    f"'{action} {subject.entity_type}' is a coarse action and takes no flags"
                )
            if session.access_level >= required_level:
                return Decision.allow()
            return Decision.deny(
                DenyReason.PERMISSION_DENIED,
                required_permission=f"{action}:{subject.entity_type}",
                resource=ResourceRef(type=subject.entity_type),
            )

        resource = ResourceRef(
            type=subject.entity_type,
            id="" if subject.entity_id is None else str(subject.entity_id),
        )

        if subject.entity_id is None and not required_flags:
            # No coarse rule and nothing to scope by: there is no policy granting this.
            return Decision.deny(
                DenyReason.PERMISSION_DENIED,
                required_permission=f"{action}:{subject.entity_type}",
                resource=resource,
            )

        if subject.entity_id is not None and not await self._resource_active(subject):
            return Decision.deny(DenyReason.RESOURCE_NOT_FOUND, resource=resource)

        for flag_id in required_flags:
            if not await self.flag_store.is_active(session.principal_id, flag_id, now):
                return Decision.deny(
                    DenyReason.PERMISSION_DENIED,
                    required_permission=flag_id,
                    resource=resource,
                    missing_flag=flag_id,
                )
        return Decision.allow()

    async def evaluate_member(
        self,
        subject_id: str,
        required_flags: Sequence[str],
        resource: Subject | None = None,
    ) -> PermissionReport:
        """Evaluate a flag policy for any member, without a session (permission tester)."""
        now = self.clock()
        active = await self.flag_store.list_for_subject(subject_id, now)
        missing = [flag_id for flag_id in required_flags if flag_id not in active]
        ref = None
        reason = None
        if resource is not None:
            ref = ResourceRef(
                type=resource.entity_type,
                id="" if resource.entity_id is None else str(resource.entity_id),
            )
            if resource.entity_id is not None and not await self._resource_active(resource):
                reason = DenyReason.RESOURCE_NOT_FOUND
        if reason is None and missing:
            reason = DenyReason.PERMISSION_DENIED
        return PermissionReport(
            subject_id=subject_id,
            allowed=reason is None,
            active_flags=sorted(active),
            missing_flags=missing,
            resource=ref,
            reason=reason,
        )

    async def _resource_active(self, subject: Subject) -> bool:
        if subject.entity_id is None:
            return False
        try:
            value = await self.resource_reader.get_resource_flags_bitfield(
                subject.entity_type, subject.entity_id
            )
        except NotFoundError:
            return False
        return bitfield.is_active(value)


# =============================================================================
# FastAPI dependencies
# =============================================================================


def get_authorization_engine(request: Request) -> AuthorizationEngine:
    engine: AuthorizationEngine = request.app.state.authorization_engine
    return engine


Engine = Annotated[AuthorizationEngine, Depends(get_authorization_engine)]


def _api_prefix(request: Request) -> str:
    settings = getattr(request.app.state, "settings", None)
    return settings.api_prefix if settings is not None else "/api"


async def _enforce(
    engine: AuthorizationEngine,
    session: Session,
    action: str,
    subject: Subject,
    required_flags: Sequence[str],
    path: str,
) -> Session:
    decision = await engine.authorize(session, action, subject, required_flags)
    if not decision.allowed:
        logger.info(
            "authorization_denied",
            user_id=session.user_id,
            action=action,
            entity_type=subject.entity_type,
            entity_id=subject.entity_id,
            reason=decision.reason.value if decision.reason else None,
            missing_flag=decision.missing_flag,
            path=path,
        )
    decision.raise_for_denial()
    return session


def require_permission(
    action: str,
    subject: str | None = None,
    field: str | None = None,
) -> Callable[..., Awaitable[Session]]:
    """
    Dependency factory for a coarse or resource-scoped permission.

    Without ``subject`` the entity type (and id, when the path has one) is
    taken from the request path. ``field`` narrows the permission name used
    in denial responses.
    """

    async def dependency(request: Request, session: CurrentSession, engine: Engine) -> Session:
        route = classify(request.url.path, request.method, _api_prefix(request))
        entity_type = subject or route.entity_type
        entity_id = route.entity_id if route.entity_type == singularize(entity_type) else None
        if engine.coarse_level(action, entity_type) is not None:
            entity_id = None
        target = Subject(entity_type, entity_id)
        try:
            return await _enforce(engine, session, action, target, (), request.url.path)
        except AuthorizationError as exc:
            if field and exc.required_permission:
                exc.required_permission = f"{exc.required_permission}.{field}"
            raise

    return dependency


def require_resource_permission(
    resource_type: str,
    permission: str,
    required_flags: Sequence[str] = (),
    resource_id_param: str = "id",
) -> Callable[..., Awaitable[Session]]:
    """
    Dependency factory for a flag-gated check on one resource row.

    The row id comes from the path parameter ``resource_id_param``; a missing
    or non-numeric id is a permission denial, not a lookup.
    """
    flags = tuple(required_flags)

    async def dependency(request: Request, session: CurrentSession, engine: Engine) -> Session:
        entity_type = singularize(resource_type)
        raw_id = str(request.path_params.get(resource_id_param, ""))
        if not is_id_segment(raw_id):
            raise AuthorizationError(
                "Resource id required",
                required_permission=f"{permission}:{entity_type}",
                resource=ResourceRef(type=entity_type),
            )
        entity_id = parse_id(raw_id)
        if entity_id is None:
            # Numeric, but larger than any row id.
            raise NotFoundError(entity_type, raw_id)
        target = Subject(entity_type, entity_id)
        return await _enforce(engine, session, permission, target, flags, request.url.path)

    return dependency


require_verified = require_resource_permission(
    "members", "read", ["socials_approved", "video_verified"]
)
require_volunteer = require_resource_permission("events", "read", ["guardian_certified"])
require_admin_access = require_permission("read", "all")
require_event_manager_access = require_permission("read", "events")
require_member_manager_access = require_permission("read", "members")
require_audit_access = require_permission("read", "audit")
require_flag_manager_access = require_permission("manage", "flags")
require_flag_reader_access = require_permission("read", "flags")

AdminSession = Annotated[Session, Depends(require_admin_access)]
AuditReader = Annotated[Session, Depends(require_audit_access)]
FlagManager = Annotated[Session, Depends(require_flag_manager_access)]
FlagReader = Annotated[Session, Depends(require_flag_reader_access)]
MemberManager = Annotated[Session, Depends(require_member_manager_access)]

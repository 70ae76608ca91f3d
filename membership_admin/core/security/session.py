"""
Session resolution.

Sessions are issued by the identity service; this module only reads them.
A request carries its session token either as ``Authorization: Bearer <token>``
or in the session cookie. ``require_auth`` resolves it once per request and
stores the result on ``request.state.session`` so later dependencies and the
audit middleware can see who acted.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from http.cookies import SimpleCookie
from typing import Annotated, Protocol

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from membership_admin.core.clock import Clock, as_utc, utc_now
from membership_admin.core.errors import AuthenticationError, AuthFailureReason
from membership_admin.core.logging import get_logger
from membership_admin.db.models import AuthSession, AuthUser

logger = get_logger(__name__)


class AccessLevel(IntEnum):
    """Totally ordered coarse privilege; comparisons are plain integer comparisons."""

    MEMBER = 1
    MODERATOR = 2
    ADMIN = 3
    SUPER_ADMIN = 4

    @classmethod
    def coerce(cls, value: int | None) -> AccessLevel:
        try:
            return cls(value or cls.MEMBER)
        except ValueError:
            return cls.SUPER_ADMIN if (value or 0) > cls.SUPER_ADMIN else cls.MEMBER


@dataclass(frozen=True)
class Session:
    """An authenticated session as seen by authorization and audit."""

    id: str
    user_id: str
    email: str
    name: str | None
    expires_at: datetime
    access_level: AccessLevel = AccessLevel.MEMBER
    member_id: int | None = None

    @property
    def principal_id(self) -> str:
        """Subject whose flag grants are checked."""
        return str(self.member_id) if self.member_id is not None else self.user_id

    def is_expired(self, now: datetime) -> bool:
        return as_utc(self.expires_at) <= as_utc(now)


class SessionResolver(Protocol):
    async def validate_session(self, headers: Mapping[str, str]) -> Session: ...


def extract_session_token(headers: Mapping[str, str], cookie_name: str) -> str | None:
    authorization = headers.get("authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    raw_cookie = headers.get("cookie")
    if raw_cookie:
        cookie: SimpleCookie = SimpleCookie()
        cookie.load(raw_cookie)
        morsel = cookie.get(cookie_name)
        if morsel is not None and morsel.value:
            return morsel.value
    return None


class DatabaseSessionResolver:
    """Resolves tokens against the identity service's ``auth_sessions`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cookie_name: str = "session_token",
        clock: Clock = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.cookie_name = cookie_name
        self.clock = clock

    async def validate_session(self, headers: Mapping[str, str]) -> Session:
        token = extract_session_token(headers, self.cookie_name)
        if token is None:
            raise AuthenticationError(AuthFailureReason.MISSING_SESSION)

        try:
            async with self.session_factory() as db:
                row = (
                    await db.execute(
                        select(AuthSession, AuthUser)
                        .join(AuthUser, AuthUser.id == AuthSession.user_id)
                        .where(AuthSession.token == token)
                    )
                ).first()
        except SQLAlchemyError as exc:
            logger.error("session_lookup_failed", error=str(exc))
            raise AuthenticationError(AuthFailureReason.AUTH_SERVICE_ERROR) from exc

        if row is None:
            raise AuthenticationError(AuthFailureReason.INVALID_SESSION)

        auth_session, user = row
        session = Session(
            id=auth_session.id,
            user_id=user.id,
            email=user.email,
            name=user.name,
            expires_at=as_utc(auth_session.expires_at),
            access_level=AccessLevel.coerce(user.access_level),
            member_id=user.member_id,
        )
        if session.is_expired(self.clock()):
            raise AuthenticationError(AuthFailureReason.EXPIRED_SESSION)
        return session


def get_session_resolver(request: Request) -> SessionResolver:
    resolver: SessionResolver = request.app.state.session_resolver
    return resolver


async def require_auth(
    request: Request,
    resolver: Annotated[SessionResolver, Depends(get_session_resolver)],
) -> Session:
    """Dependency that requires a valid session; raises 401 otherwise."""
    cached = getattr(request.state, "session", None)
    if isinstance(cached, Session):
        return cached
    session = await resolver.validate_session(request.headers)
    request.state.session = session
    return session


CurrentSession = Annotated[Session, Depends(require_auth)]

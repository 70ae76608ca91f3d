"""Tests for session token extraction and database-backed session resolution."""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import MagicMock

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from membership_admin.core.errors import AuthenticationError, AuthFailureReason
from membership_admin.core.security.session import (
    AccessLevel,
    DatabaseSessionResolver,
    extract_session_token,
)
from tests.conftest import FIXED_NOW, FrozenClock


class TestExtractSessionToken:
    def test_bearer_header(self) -> None:
        assert extract_session_token({"authorization": "Bearer abc"}, "session_token") == "abc"

    def test_cookie(self) -> None:
        headers = {"cookie": "theme=dark; session_token=xyz"}
        assert extract_session_token(headers, "session_token") == "xyz"

    def test_header_wins_over_cookie(self) -> None:
        headers = {"authorization": "Bearer abc", "cookie": "session_token=xyz"}
        assert extract_session_token(headers, "session_token") == "abc"

    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"authorization": "Basic dXNlcjpwYXNz"},
            {"authorization": "Bearer "},
            {"cookie": "a=b"},
        ],
    )
    def test_absent(self, headers: dict[str, str]) -> None:
        assert extract_session_token(headers, "session_token") is None


class TestDatabaseSessionResolver:
    @pytest.fixture
    def resolver(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FrozenClock
    ) -> DatabaseSessionResolver:
        return DatabaseSessionResolver(session_factory, clock=clock)

    @pytest.mark.asyncio
    async def test_valid_session(self, resolver: DatabaseSessionResolver) -> None:
        session = await resolver.validate_session({"authorization": "Bearer moderator-token"})
        assert session.id == "sess-mod"
        assert session.user_id == "user-mod"
        assert session.access_level is AccessLevel.MODERATOR
        assert session.member_id == 3
        assert session.principal_id == "3"

    @pytest.mark.asyncio
    async def test_principal_falls_back_to_user(self, resolver: DatabaseSessionResolver) -> None:
        session = await resolver.validate_session({"authorization": "Bearer admin-token"})
        assert session.principal_id == "user-admin"

    @pytest.mark.asyncio
    async def test_missing(self, resolver: DatabaseSessionResolver) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await resolver.validate_session({})
        assert exc_info.value.reason is AuthFailureReason.MISSING_SESSION

    @pytest.mark.asyncio
    async def test_unknown_token(self, resolver: DatabaseSessionResolver) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await resolver.validate_session({"authorization": "Bearer nope"})
        assert exc_info.value.reason is AuthFailureReason.INVALID_SESSION

    @pytest.mark.asyncio
    async def test_expired(self, resolver: DatabaseSessionResolver) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await resolver.validate_session({"authorization": "Bearer expired-token"})
        assert exc_info.value.reason is AuthFailureReason.EXPIRED_SESSION

    @pytest.mark.asyncio
    async def test_expires_with_clock(
        self, resolver: DatabaseSessionResolver, clock: FrozenClock
    ) -> None:
        clock.advance(days=1)
        assert clock() > FIXED_NOW
        with pytest.raises(AuthenticationError) as exc_info:
            await resolver.validate_session({"authorization": "Bearer member-token"})
        assert exc_info.value.reason is AuthFailureReason.EXPIRED_SESSION

    @pytest.mark.asyncio
    async def test_database_failure(self) -> None:
        factory = MagicMock(side_effect=OperationalError("SELECT", {}, Exception("down")))
        resolver = DatabaseSessionResolver(factory)
        with pytest.raises(AuthenticationError) as exc_info:
            await resolver.validate_session({"authorization": "Bearer admin-token"})
        assert exc_info.value.reason is AuthFailureReason.AUTH_SERVICE_ERROR


class TestSessionEndpoint:
    @pytest.mark.asyncio
    async def test_current_session(
        self, client: AsyncClient, auth_headers: Callable[[str], dict[str, str]]
    ) -> None:
        response = await client.get("/api/auth/session", headers=auth_headers("admin-token"))
        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == "user-admin"
        assert body["access_level"] == 3

    @pytest.mark.asyncio
    async def test_cookie_session(self, client: AsyncClient) -> None:
        response = await client.get(
            "/api/auth/session", headers={"Cookie": "session_token=member-token"}
        )
        assert response.status_code == 200
        assert response.json()["member_id"] == 1

    @pytest.mark.asyncio
    async def test_no_session(self, client: AsyncClient) -> None:
        response = await client.get("/api/auth/session")
        assert response.status_code == 401
        assert response.json() == {
            "error": "Authentication required",
            "code": "UNAUTHENTICATED",
            "reason": "missing_session",
        }

    @pytest.mark.asyncio
    async def test_expired_session(
        self, client: AsyncClient, auth_headers: Callable[[str], dict[str, str]]
    ) -> None:
        response = await client.get("/api/auth/session", headers=auth_headers("expired-token"))
        assert response.status_code == 401
        assert response.json()["reason"] == "expired_session"

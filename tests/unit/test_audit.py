"""
Unit tests for audit recording.

Covers suppression rules, the record/skip decision, record construction and
the hash-chained store. Store tests run against the in-memory database.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.datastructures import Headers

from membership_admin.core.audit import (
    AuditLogStore,
    AuditRecord,
    AuditRecorder,
    AuditSuppressionRule,
    entry_hash_payload,
)
from membership_admin.core.config import Settings
from membership_admin.core.crypto.hash_chain import GENESIS_HASH, compute_entry_hash
from membership_admin.core.routing import RouteAction, classify
from membership_admin.core.security.session import AccessLevel, Session
from membership_admin.db.models import AuditLogEntry

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def _recorder(store: object | None = None, **overrides: object) -> AuditRecorder:
    settings = Settings(_env_file=None, environment="test", **overrides)  # type: ignore[arg-type]
    store = store or AsyncMock()
    return AuditRecorder(store, settings, clock=lambda: NOW)  # type: ignore[arg-type]


def _record(**overrides: object) -> AuditRecord:
    values: dict[str, object] = {
        "entity_type": "event",
        "entity_id": None,
        "action": "create",
        "created_at": NOW,
        "metadata": {"method": "POST", "path": "/api/events", "status_code": 201},
        "new_values": {"name": "Open Day"},
        "user_session_id": "sess-1",
        "user_id": "user-1",
        "user_ip": "10.0.0.1",
    }
    values.update(overrides)
    return AuditRecord(**values)  # type: ignore[arg-type]


class TestSuppressionRules:
    def test_entity_only(self) -> None:
        rule = AuditSuppressionRule.parse("audit")
        assert rule.matches(classify("/api/audit", "GET"))
        assert rule.matches(classify("/api/audit/verify/chain", "GET"))
        assert not rule.matches(classify("/api/events", "GET"))

    def test_sub_resource_any_action(self) -> None:
        rule = AuditSuppressionRule.parse("member:*:notes")
        assert rule.matches(classify("/api/members/4/notes", "POST"))
        assert rule.matches(classify("/api/members/4/notes", "GET"))
        assert not rule.matches(classify("/api/members/4", "PUT"))

    def test_action(self) -> None:
        rule = AuditSuppressionRule.parse("flag:search")
        assert rule.matches(classify("/api/flags", "GET"))
        assert not rule.matches(classify("/api/flags", "POST"))

    @pytest.mark.parametrize("raw", ["*", "a:b:c:d", ""])
    def test_invalid(self, raw: str) -> None:
        with pytest.raises(ValueError):
            AuditSuppressionRule.parse(raw)


class TestShouldRecord:
    def test_successful_write(self) -> None:
        route = _recorder().should_record("/api/events", "POST", 201)
        assert route is not None
        assert route.action is RouteAction.CREATE

    def test_redirect_recorded(self) -> None:
        assert _recorder().should_record("/api/members/1", "GET", 302) is not None

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 500, 504])
    def test_failures_skipped(self, status_code: int) -> None:
        assert _recorder().should_record("/api/events", "POST", status_code) is None

    def test_auth_paths_excluded(self) -> None:
        recorder = _recorder()
        assert recorder.should_record("/api/auth/session", "GET", 200) is None
        assert recorder.should_record("/api/auth", "POST", 200) is None
        assert recorder.should_record("/api/authors", "GET", 200) is not None

    def test_suppressed_routes_skipped(self) -> None:
        recorder = _recorder()
        assert recorder.should_record("/api/audit", "GET", 200) is None
        assert recorder.should_record("/api/members/2/notes", "POST", 201) is None

    def test_unclassifiable_skipped(self) -> None:
        assert _recorder().should_record("/health", "GET", 200) is None
        assert _recorder().should_record("/api/members", "OPTIONS", 200) is None

    def test_disabled(self) -> None:
        assert _recorder(audit_enabled=False).should_record("/api/events", "POST", 201) is None


class TestBuildRecord:
    def _build(
        self,
        recorder: AuditRecorder,
        method: str,
        path: str,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
        session: Session | None = None,
    ) -> AuditRecord:
        route = classify(path, method)
        return recorder.build_record(
            route,
            method=method,
            path=path,
            status_code=200,
            headers=Headers(headers or {}),
            client_host="127.0.0.1",
            session=session,
            body=body,
        )

    def test_create_captures_json_body(self) -> None:
        record = self._build(
            _recorder(),
            "POST",
            "/api/events",
            b'{"name": "Open Day"}',
            {"content-type": "application/json", "user-agent": "pytest"},
        )
        assert record.entity_type == "event"
        assert record.action == "create"
        assert record.new_values == {"name": "Open Day"}
        assert record.created_at == NOW
        assert record.metadata == {
            "user_agent": "pytest",
            "referer": None,
            "method": "POST",
            "path": "/api/events",
            "status_code": 200,
        }

    def test_view_has_no_payload(self) -> None:
        record = self._build(
            _recorder(), "GET", "/api/members/9", b"{}", {"content-type": "application/json"}
        )
        assert record.entity_id == 9
        assert record.new_values is None

    def test_non_json_body_ignored(self) -> None:
        record = self._build(
            _recorder(), "PUT", "/api/members/9", b"name=x", {"content-type": "text/plain"}
        )
        assert record.new_values is None

    def test_malformed_json_ignored(self) -> None:
        record = self._build(
            _recorder(), "PUT", "/api/members/9", b"{oops", {"content-type": "application/json"}
        )
        assert record.new_values is None

    def test_session_identity(self) -> None:
        session = Session(
            id="sess-9",
            user_id="user-9",
            email="u9@example.com",
            name=None,
            expires_at=NOW,
            access_level=AccessLevel.ADMIN,
        )
        record = self._build(_recorder(), "DELETE", "/api/events/3", session=session)
        assert record.user_session_id == "sess-9"
        assert record.user_id == "user-9"

    def test_forwarded_for_ignored_by_default(self) -> None:
        record = self._build(
            _recorder(), "GET", "/api/events/3", headers={"x-forwarded-for": "203.0.113.5"}
        )
        assert record.user_ip == "127.0.0.1"

    def test_forwarded_for_when_trusted(self) -> None:
        record = self._build(
            _recorder(audit_trust_forwarded_for=True),
            "GET",
            "/api/events/3",
            headers={"x-forwarded-for": "203.0.113.5, 10.0.0.1"},
        )
        assert record.user_ip == "203.0.113.5"


class TestRecorderWrites:
    @pytest.mark.asyncio
    async def test_submit_and_drain(self) -> None:
        store = AsyncMock()
        recorder = _recorder(store)
        recorder.submit(_record())
        assert recorder.pending_count == 1
        await recorder.drain()
        store.append.assert_awaited_once()
        assert recorder.pending_count == 0

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self) -> None:
        store = AsyncMock()
        store.append.side_effect = RuntimeError("database unavailable")
        recorder = _recorder(store)
        task = recorder.submit(_record())
        await task
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_drain_timeout_abandons_slow_writes(self) -> None:
        release = asyncio.Event()

        async def slow_append(record: AuditRecord) -> None:
            await release.wait()

        store = AsyncMock()
        store.append.side_effect = slow_append
        recorder = _recorder(store)
        recorder.submit(_record())
        await recorder.drain(timeout=0.01)
        assert recorder.pending_count == 1
        release.set()
        await recorder.drain()
        assert recorder.pending_count == 0

    @pytest.mark.asyncio
    async def test_record_note(self) -> None:
        store = AsyncMock()
        recorder = _recorder(store)
        await recorder.record_note("member", 4, "Called about renewal")
        record = store.append.await_args.args[0]
        assert record.action == "note"
        assert record.metadata == {"note": "Called about renewal"}


class TestAuditLogStore:
    @pytest.mark.asyncio
    async def test_append_persists_entry(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        store = AuditLogStore(session_factory)
        await store.append(_record())

        async with session_factory() as session:
            entry = (await session.scalars(select(AuditLogEntry))).one()
        assert entry.entity_type == "event"
        assert entry.old_values_json is None
        assert json.loads(entry.new_values_json or "null") == {"name": "Open Day"}
        assert json.loads(entry.metadata_json)["status_code"] == 201

    @pytest.mark.asyncio
    async def test_entries_are_chained(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        store = AuditLogStore(session_factory)
        first = await store.append(_record())
        second = await store.append(_record(action="update", entity_id=1))

        assert first.chain_sequence == 0
        assert first.prev_event_hash == GENESIS_HASH
        assert second.chain_sequence == 1
        assert second.prev_event_hash == first.event_hash
        assert second.event_hash == compute_entry_hash(
            entry_hash_payload(second), first.event_hash or ""
        )

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_sequence(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        store = AuditLogStore(session_factory)
        await asyncio.gather(*(store.append(_record(entity_id=n)) for n in range(5)))

        async with session_factory() as session:
            sequences = sorted(
                (await session.scalars(select(AuditLogEntry.chain_sequence))).all()
            )
        assert sequences == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_unserializable_payload_rejected(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        store = AuditLogStore(session_factory)
        with pytest.raises(ValueError):
            await store.append(_record(new_values={"ratio": float("nan")}))

    @pytest.mark.asyncio
    async def test_chain_disabled(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        store = AuditLogStore(session_factory, hash_chain=False)
        entry = await store.append(_record())
        assert entry.event_hash is None
        assert entry.chain_sequence is None

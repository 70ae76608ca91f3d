"""
Audit trail recording.

``AuditMiddleware`` watches every HTTP exchange and, once the response has
been fully sent with a 2xx/3xx status, hands an ``AuditRecord`` to the
``AuditRecorder``. The recorder writes it in the background through
``AuditLogStore`` using its **own short-lived transaction**, so a failed
audit write never affects the client response; failures are logged with
enough context to reconstruct the missed entry.

Pending writes are tracked and awaited by ``AuditRecorder.drain()`` during
application shutdown.

Every entry is chained to its predecessor (``event_hash``,
``prev_event_hash``, ``chain_sequence``) so later tampering is detectable.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import desc, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from membership_admin.core.clock import Clock, as_utc, utc_now
from membership_admin.core.config import Settings
from membership_admin.core.crypto.hash_chain import GENESIS_HASH, compute_entry_hash
from membership_admin.core.logging import get_logger
from membership_admin.core.routing import RouteAction, RouteClassification, classify
from membership_admin.core.security.session import Session
from membership_admin.db.models import AuditLogEntry
from membership_admin.db.session import transaction

logger = get_logger(__name__)

# Arbitrary constant key for pg_advisory_xact_lock serializing chain appends
AUDIT_CHAIN_LOCK_KEY = 0x61756474

_PAYLOAD_ACTIONS = {RouteAction.CREATE, RouteAction.UPDATE}
_WILDCARD = "*"


@dataclass(frozen=True)
class AuditSuppressionRule:
    """
    Deny-list entry ``entity_type[:action[:sub_resource]]``.

    Omitted parts and ``*`` match anything, so ``audit`` suppresses every
    request against the audit log and ``member:*:notes`` suppresses member
    note routes of any method.
    """

    entity_type: str
    action: str = _WILDCARD
    sub_resource: str = _WILDCARD

    @classmethod
    def parse(cls, raw: str) -> AuditSuppressionRule:
        parts = [part.strip() or _WILDCARD for part in raw.strip().split(":")]
        if not parts or parts[0] == _WILDCARD or len(parts) > 3:
            raise ValueError(f"Invalid audit suppression rule: {raw!r}")
        return cls(*parts)  # type: ignore[arg-type]

    def matches(self, route: RouteClassification) -> bool:
        if self.entity_type != route.entity_type:
            return False
        if self.action not in (_WILDCARD, route.action.value):
            return False
        return self.sub_resource in (_WILDCARD, route.sub_resource)


@dataclass
class AuditRecord:
    """An entry waiting to be written. ``new_values`` is serialized at write time."""

    entity_type: str
    entity_id: int | None
    action: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    new_values: Any = None
    user_session_id: str | None = None
    user_id: str | None = None
    user_ip: str | None = None


def entry_hash_payload(entry: AuditLogEntry) -> dict[str, Any]:
    """Hashable view of a stored entry; ``None`` columns are omitted."""
    data: dict[str, Any] = {
        "entity_type": entry.entity_type,
        "action": entry.action,
        "metadata_json": entry.metadata_json,
        "created_at": as_utc(entry.created_at).isoformat(timespec="microseconds"),
    }
    optional = {
        "entity_id": entry.entity_id,
        "user_session_id": entry.user_session_id,
        "user_id": entry.user_id,
        "user_ip": entry.user_ip,
        "new_values_json": entry.new_values_json,
        "old_values_json": entry.old_values_json,
    }
    data.update({key: value for key, value in optional.items() if value is not None})
    return data


class AuditLogStore:
    """Appends entries to ``audit_log``; one transaction per entry."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        hash_chain: bool = True,
    ) -> None:
        self.session_factory = session_factory
        self.hash_chain = hash_chain
        self._chain_lock = asyncio.Lock()

    async def append(self, record: AuditRecord) -> AuditLogEntry:
        # Raises TypeError/ValueError for payloads JSON cannot represent.
        new_values_json = (
            json.dumps(record.new_values, allow_nan=False)
            if record.new_values is not None
            else None
        )
        entry = AuditLogEntry(
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            action=record.action,
            user_session_id=record.user_session_id,
            user_id=record.user_id,
            user_ip=record.user_ip,
            old_values_json=None,
            new_values_json=new_values_json,
            metadata_json=json.dumps(record.metadata, allow_nan=False),
            created_at=as_utc(record.created_at),
        )
        if not self.hash_chain:
            async with transaction(self.session_factory) as session:
                session.add(entry)
            return entry

        async with self._chain_lock:
            async with transaction(self.session_factory) as session:
                if session.bind.dialect.name == "postgresql":
                    await session.execute(
                        text("SELECT pg_advisory_xact_lock(:key)"),
                        {"key": AUDIT_CHAIN_LOCK_KEY},
                    )
                previous = (
                    await session.execute(
                        select(AuditLogEntry.event_hash, AuditLogEntry.chain_sequence)
                        .where(AuditLogEntry.chain_sequence.is_not(None))
                        .order_by(desc(AuditLogEntry.chain_sequence))
                        .limit(1)
                    )
                ).first()
                prev_hash = previous[0] if previous is not None and previous[0] else GENESIS_HASH
                prev_seq = previous[1] if previous is not None else -1

                entry.prev_event_hash = prev_hash
                entry.chain_sequence = prev_seq + 1
                entry.event_hash = compute_entry_hash(entry_hash_payload(entry), prev_hash)
                session.add(entry)
        return entry


class AuditRecorder:
    def __init__(
        self,
        store: AuditLogStore,
        settings: Settings,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.clock = clock
        self.enabled = settings.audit_enabled
        self.prefix = settings.api_prefix
        self.excluded_prefixes = tuple(settings.audit_excluded_path_prefixes)
        self.rules = parse_suppression_rules(settings.audit_suppressed_routes)
        self.trust_forwarded_for = settings.audit_trust_forwarded_for
        self.drain_timeout = settings.audit_drain_timeout_seconds
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_suppressed(self, route: RouteClassification) -> bool:
        return any(rule.matches(route) for rule in self.rules)

    def should_record(
        self, path: str, method: str, status_code: int
    ) -> RouteClassification | None:
        """Classify the request, or return ``None`` when it must not be audited."""
        if not self.enabled:
            return None
        if any(_under(path, prefix) for prefix in self.excluded_prefixes):
            return None
        if not 200 <= status_code < 400:
            return None
        route = classify(path, method, self.prefix)
        if route.is_unknown or self.is_suppressed(route):
            return None
        return route

    def build_record(
        self,
        route: RouteClassification,
        *,
        method: str,
        path: str,
        status_code: int,
        headers: Headers,
        client_host: str | None,
        session: Session | None,
        body: bytes,
    ) -> AuditRecord:
        new_values = None
        if route.action in _PAYLOAD_ACTIONS:
            new_values = _json_payload(headers, body)
        return AuditRecord(
            entity_type=route.entity_type,
            entity_id=route.entity_id,
            action=route.action.value,
            created_at=self.clock(),
            metadata={
                "user_agent": headers.get("user-agent"),
                "referer": headers.get("referer"),
                "method": method,
                "path": path,
                "status_code": status_code,
            },
            new_values=new_values,
            user_session_id=session.id if session else None,
            user_id=session.user_id if session else None,
            user_ip=self._client_ip(headers, client_host),
        )

    def submit(self, record: AuditRecord) -> asyncio.Task[None]:
        """Schedule the write; the returned task never raises."""
        task = asyncio.get_running_loop().create_task(self._write(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def record_note(
        self,
        entity_type: str,
        entity_id: int | None,
        note: str,
        *,
        session: Session | None = None,
        user_ip: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> asyncio.Task[None]:
        """Queue an explicit ``note`` entry from a handler."""
        record = AuditRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            action=RouteAction.NOTE.value,
            created_at=self.clock(),
            metadata={"note": note, **(extra or {})},
            user_session_id=session.id if session else None,
            user_id=session.user_id if session else None,
            user_ip=user_ip,
        )
        return self.submit(record)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for pending writes before shutdown."""
        if not self._pending:
            return
        pending = list(self._pending)
        logger.info("audit_drain_started", pending=len(pending))
        _done, still_pending = await asyncio.wait(pending, timeout=timeout or self.drain_timeout)
        if still_pending:
            logger.error("audit_drain_incomplete", abandoned=len(still_pending))

    async def _write(self, record: AuditRecord) -> None:
        try:
            await self.store.append(record)
        except Exception:
            logger.error(
                "audit_entry_write_failed",
                entity_type=record.entity_type,
                entity_id=record.entity_id,
                action=record.action,
                user_id=record.user_id,
                path=record.metadata.get("path"),
                exc_info=True,
            )

    def _client_ip(self, headers: Headers, client_host: str | None) -> str | None:
        if self.trust_forwarded_for:
            forwarded = headers.get("x-forwarded-for")
            if forwarded:
                first = forwarded.split(",")[0].strip()
                if first:
                    return first
        return client_host


def _under(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


def _json_payload(headers: Headers, body: bytes) -> Any:
    content_type = headers.get("content-type", "")
    if not body or "json" not in content_type:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


class AuditMiddleware:
    """
    Pure ASGI middleware; never alters or short-circuits the exchange.

    Nothing is recorded when the handler raises, when the response body was
    not completely sent, or when the client disconnected first.
    """

    def __init__(self, app: ASGIApp, recorder: AuditRecorder) -> None:
        self.app = app
        self.recorder = recorder

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.recorder.enabled:
            await self.app(scope, receive, send)
            return

        # Shared with request.state, so the session set by require_auth is visible here.
        state: dict[str, Any] = scope.setdefault("state", {})
        body = bytearray()
        status_code = 0
        completed = False
        disconnected = False

        async def receive_wrapper() -> Message:
            nonlocal disconnected
            message = await receive()
            if message["type"] == "http.request":
                body.extend(message.get("body", b""))
            elif message["type"] == "http.disconnect" and not completed:
                disconnected = True
            return message

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code, completed
            if message["type"] == "http.response.start":
                status_code = message["status"]
            elif message["type"] == "http.response.body" and not message.get("more_body", False):
                completed = True
            await send(message)

        await self.app(scope, receive_wrapper, send_wrapper)

        if not completed or disconnected:
            return
        self._record(scope, state, status_code, bytes(body))

    def _record(
        self, scope: Scope, state: dict[str, Any], status_code: int, body: bytes
    ) -> None:
        path = scope["path"]
        method = scope["method"]
        try:
            route = self.recorder.should_record(path, method, status_code)
            if route is None:
                return
            session = state.get("session")
            client = scope.get("client")
            record = self.recorder.build_record(
                route,
                method=method,
                path=path,
                status_code=status_code,
                headers=Headers(scope=scope),
                client_host=client[0] if client else None,
                session=session if isinstance(session, Session) else None,
                body=body,
            )
        except Exception:
            logger.error("audit_entry_build_failed", path=path, method=method, exc_info=True)
            return
        self.recorder.submit(record)


def parse_suppression_rules(raw_rules: Iterable[str]) -> list[AuditSuppressionRule]:
    return [AuditSuppressionRule.parse(raw) for raw in raw_rules]

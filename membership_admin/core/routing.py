"""
Request path classification.

Maps ``(path, method)`` to the entity type, optional numeric id and logical
action a request operates on. Used by the audit recorder to decide what to
record and by the permission dependencies to infer a default subject.
The parser is total: anything it cannot interpret yields the ``UNKNOWN``
sentinel instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RouteAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    VIEW = "view"
    SEARCH = "search"
    NOTE = "note"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RouteClassification:
    entity_type: str
    entity_id: int | None
    action: RouteAction
    extra_segments: tuple[str, ...] = ()

    @property
    def is_unknown(self) -> bool:
        return not self.entity_type or self.action is RouteAction.UNKNOWN

    @property
    def sub_resource(self) -> str | None:
        return self.extra_segments[0] if self.extra_segments else None


UNKNOWN = RouteClassification(entity_type="", entity_id=None, action=RouteAction.UNKNOWN)

_WRITE_ACTIONS = {
    "POST": RouteAction.CREATE,
    "PUT": RouteAction.UPDATE,
    "PATCH": RouteAction.UPDATE,
    "DELETE": RouteAction.DELETE,
}


# Path segments and type names resolved to the canonical (singular) entity
# type. Canonical names map to themselves, so resolving twice is a no-op.
ENTITY_TYPES: dict[str, str] = {
    "all": "all",
    "audit": "audit",
    "auth": "auth",
    "events": "event",
    "event": "event",
    "external_integrations": "external_integration",
    "external_integration": "external_integration",
    "flags": "flag",
    "flag": "flag",
    "members": "member",
    "member": "member",
    "membership_types": "membership_type",
    "membership_type": "membership_type",
    "payment_statuses": "payment_status",
    "payment_status": "payment_status",
    "settings": "setting",
    "setting": "setting",
}

# Row ids are 32-bit signed integer columns.
MAX_ENTITY_ID = 2**31 - 1


def singularize(segment: str) -> str:
    """
    Canonical entity type for a path segment or type name.

    Known types come from ``ENTITY_TYPES``. Anything else loses one trailing
    "s" unless it ends in "ss" or "us", which keeps the result stable when
    applied again.
    """
    canonical = ENTITY_TYPES.get(segment)
    if canonical is not None:
        return canonical
    if segment.endswith("s") and not segment.endswith(("ss", "us")):
        return segment[:-1]
    return segment


def is_id_segment(segment: str) -> bool:
    return bool(segment) and segment.isascii() and segment.isdigit()


def parse_id(segment: str) -> int | None:
    """Row id for an ASCII-digit segment within the id column range, else ``None``."""
    if not is_id_segment(segment):
        return None
    value = int(segment)
    return value if value <= MAX_ENTITY_ID else None


def _strip_prefix(path: str, prefix: str) -> str | None:
    prefix = prefix.rstrip("/")
    if not prefix:
        return path
    if path == prefix:
        return ""
    if path.startswith(prefix + "/"):
        return path[len(prefix) :]
    return None


def classify(path: str, method: str, prefix: str = "/api") -> RouteClassification:
    rest = _strip_prefix(path.split("?", 1)[0], prefix)
    if rest is None:
        return UNKNOWN

    segments = [segment for segment in rest.split("/") if segment]
    if not segments:
        return UNKNOWN

    entity_type = singularize(segments[0])
    entity_id = parse_id(segments[1]) if len(segments) > 1 else None
    extra_start = 2 if entity_id is not None else 1
    extra_segments = tuple(segments[extra_start:])

    verb = method.upper()
    if verb == "GET":
        action = RouteAction.VIEW if entity_id is not None else RouteAction.SEARCH
    else:
        action = _WRITE_ACTIONS.get(verb, RouteAction.UNKNOWN)

    return RouteClassification(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        extra_segments=extra_segments,
    )

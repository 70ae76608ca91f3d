"""
Legacy integer bitfield helpers.

Older tables (members, events, membership types, payment statuses, external
integrations) carry a ``flags`` integer column whose bits are fixed booleans.
Bit 0 is always "active"; a row with bit 0 cleared is treated as absent.

All helpers operate on 32-bit unsigned values: inputs are masked to 32 bits
and bit indexes outside ``0..31`` leave the value unchanged (and read as
``False``).
"""

from __future__ import annotations

from enum import IntEnum

FLAG_WIDTH = 32
_MASK = (1 << FLAG_WIDTH) - 1


def _in_range(bit: int) -> bool:
    return 0 <= bit < FLAG_WIDTH


def has_flag(value: int, bit: int) -> bool:
    if not _in_range(bit):
        return False
    return bool((value & _MASK) & (1 << bit))


def set_flag(value: int, bit: int) -> int:
    value &= _MASK
    if not _in_range(bit):
        return value
    return value | (1 << bit)


def clear_flag(value: int, bit: int) -> int:
    value &= _MASK
    if not _in_range(bit):
        return value
    return value & ~(1 << bit) & _MASK


def toggle_flag(value: int, bit: int) -> int:
    value &= _MASK
    if not _in_range(bit):
        return value
    return value ^ (1 << bit)


class MemberBit(IntEnum):
    ACTIVE = 0
    PROFESSIONAL_AFFILIATE = 1


class EventBit(IntEnum):
    ACTIVE = 0
    PUBLIC = 1


class MembershipTypeBit(IntEnum):
    ACTIVE = 0
    RECURRING = 1
    EXCLUSIVE_GROUP = 2


class PaymentStatusBit(IntEnum):
    ACTIVE = 0


class ExternalIntegrationBit(IntEnum):
    ACTIVE = 0


ACTIVE_BIT = 0

RESOURCE_BITS: dict[str, type[IntEnum]] = {
    "member": MemberBit,
    "event": EventBit,
    "membership_type": MembershipTypeBit,
    "payment_status": PaymentStatusBit,
    "external_integration": ExternalIntegrationBit,
}


def is_active(value: int) -> bool:
    return has_flag(value, ACTIVE_BIT)


def _bits_for(resource_type: str) -> type[IntEnum]:
    try:
        return RESOURCE_BITS[resource_type]
    except KeyError:
        raise ValueError(f"No bitfield layout for resource type {resource_type!r}") from None


def decode(resource_type: str, value: int) -> dict[str, bool]:
    """Expand a bitfield into ``{"active": True, "public": False, ...}``."""
    return {bit.name.lower(): has_flag(value, bit) for bit in _bits_for(resource_type)}


def encode(resource_type: str, **named: bool) -> int:
    """Build a bitfield from named booleans; unknown names raise ``ValueError``."""
    bits = _bits_for(resource_type)
    value = 0
    for name, enabled in named.items():
        try:
            bit = bits[name.upper()]
        except KeyError:
            raise ValueError(f"Unknown {resource_type} flag {name!r}") from None
        if enabled:
            value = set_flag(value, bit)
    return value

"""Tests for the legacy bitfield helpers."""

from __future__ import annotations

import pytest

from membership_admin.core import bitfield
from membership_admin.core.bitfield import (
    EventBit,
    MemberBit,
    clear_flag,
    has_flag,
    set_flag,
    toggle_flag,
)


class TestBitOperations:
    def test_set_then_has(self) -> None:
        assert has_flag(set_flag(0, 5), 5)

    def test_clear_then_not_has(self) -> None:
        assert not has_flag(clear_flag(0b111, 1), 1)
        assert clear_flag(0b111, 1) == 0b101

    def test_toggle_twice_is_identity(self) -> None:
        for value in (0, 1, 0b1010, 0xFFFFFFFF):
            assert toggle_flag(toggle_flag(value, 7), 7) == value

    def test_set_is_idempotent(self) -> None:
        assert set_flag(set_flag(0, 3), 3) == set_flag(0, 3)

    def test_highest_bit(self) -> None:
        assert set_flag(0, 31) == 0x80000000
        assert has_flag(0x80000000, 31)

    @pytest.mark.parametrize("bit", [-1, 32, 64])
    def test_out_of_range_bits_are_ignored(self, bit: int) -> None:
        assert set_flag(0b101, bit) == 0b101
        assert clear_flag(0b101, bit) == 0b101
        assert toggle_flag(0b101, bit) == 0b101
        assert not has_flag(0xFFFFFFFF, bit)

    def test_values_are_masked_to_32_bits(self) -> None:
        assert set_flag(1 << 40, 0) == 1
        assert not has_flag(1 << 32, 0)


class TestResourceLayouts:
    """Named bit layouts of the legacy tables."""

    def test_active_is_bit_zero(self) -> None:
        assert bitfield.is_active(1)
        assert bitfield.is_active(0b11)
        assert not bitfield.is_active(0b10)

    def test_decode_member(self) -> None:
        assert bitfield.decode("member", 0b11) == {
            "active": True,
            "professional_affiliate": True,
        }

    def test_decode_event_inactive_public(self) -> None:
        decoded = bitfield.decode("event", 1 << EventBit.PUBLIC)
        assert decoded == {"active": False, "public": True}

    def test_encode(self) -> None:
        assert bitfield.encode("member", active=True) == 1
        assert bitfield.encode("membership_type", active=True, exclusive_group=True) == 0b101
        assert bitfield.encode("event", active=False, public=True) == 0b10

    def test_encode_unknown_name_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown member flag"):
            bitfield.encode("member", public=True)

    def test_unknown_resource_type_raises(self) -> None:
        with pytest.raises(ValueError, match="No bitfield layout"):
            bitfield.decode("widget", 1)

    def test_member_bits(self) -> None:
        assert MemberBit.ACTIVE == 0
        assert MemberBit.PROFESSIONAL_AFFILIATE == 1

"""Permission bit-flag vocabulary.

Masks combine with bitwise OR. A caller passes a check only when its mask
contains every required bit.
"""

from __future__ import annotations

from enum import IntFlag
from typing import Iterable

from aclguard.errors import UnknownPermissionName


class PermissionMask(IntFlag):
    """Capability bits carried by ACL entries."""

    NONE = 0
    READ = 1
    WRITE = 2
    DELETE = 4
    ADMIN = 8
    CREATE = 16
    FULL = READ | WRITE | DELETE | ADMIN | CREATE


# Single-bit members in bit order; composite members are excluded.
PERMISSION_BITS: tuple[PermissionMask, ...] = (
    PermissionMask.READ,
    PermissionMask.WRITE,
    PermissionMask.DELETE,
    PermissionMask.ADMIN,
    PermissionMask.CREATE,
)

_NAME_ALIASES = {
    "ADMINISTRATION": PermissionMask.ADMIN,
    "ALL": PermissionMask.FULL,
}


def combine(*masks: int) -> PermissionMask:
    """Combine masks with bitwise OR."""
    result = PermissionMask.NONE
    for mask in masks:
        result |= PermissionMask(mask)
    return result


def contains(actual: int, required: int) -> bool:
    """Check that ``actual`` has every bit of ``required`` set."""
    return (actual & required) == required


def from_name(name: str) -> PermissionMask:
    """Look up a single permission by name (case-insensitive)."""
    key = name.strip().upper()
    if key in _NAME_ALIASES:
        return _NAME_ALIASES[key]
    try:
        return PermissionMask[key]
    except KeyError:
        raise UnknownPermissionName(name) from None


def from_names(names: Iterable[str]) -> PermissionMask:
    """Build a mask from permission names."""
    return combine(*(from_name(name) for name in names))


def to_names(mask: int) -> set[str]:
    """Return the names of the single bits set in ``mask``."""
    return {bit.name for bit in PERMISSION_BITS if mask & bit}


def bits(mask: int) -> list[PermissionMask]:
    """Split a mask into its single-bit members, lowest bit first."""
    return [bit for bit in PERMISSION_BITS if mask & bit]


def parse_mask(value: int | str | Iterable[str]) -> PermissionMask:
    """Coerce a mask, integer, name, comma list or iterable of names.

    Raises:
        UnknownPermissionName: If any name is not a permission
    """
    if isinstance(value, PermissionMask):
        return value
    if isinstance(value, int):
        return PermissionMask(value)
    if isinstance(value, str):
        return from_names(part for part in value.split(",") if part.strip())
    return from_names(value)

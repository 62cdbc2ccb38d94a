"""Lenient typed lookups in property-list dictionaries."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .common import error

__all__ = ["dict_get_uint", "dict_get_bool", "UINT64_MAX"]

UINT64_MAX = (1 << 64) - 1
_WHITESPACE = " \t\n\v\f\r"
_MISSING = object()


def _lookup(mapping: Any, key: str) -> Any:
    if not isinstance(mapping, Mapping):
        return _MISSING
    return mapping.get(key, _MISSING)


def _strtoull(text: str) -> int:
    """Parse an unsigned integer the way C's strtoull does with base 0."""
    s = text.lstrip(_WHITESPACE)
    negative = False
    if s[:1] in ("+", "-"):
        negative = s[0] == "-"
        s = s[1:]
    if s[:2].lower() == "0x" and s[2:3] and s[2] in "0123456789abcdefABCDEF":
        base, s = 16, s[2:]
    elif s[:1] == "0":
        base = 8
    else:
        base = 10
    digits = "0123456789abcdef"[:base]
    count = 0
    for ch in s:
        if ch.lower() not in digits:
            break
        count += 1
    if count == 0:
        return 0
    value = int(s[:count], base)
    if value > UINT64_MAX:
        return UINT64_MAX
    return (-value) & UINT64_MAX if negative else value


def dict_get_uint(mapping: Any, key: str) -> int:
    """Return ``mapping[key]`` as an unsigned 64-bit integer.

    Integers are taken as they are, strings are parsed with automatic base
    detection, and 1, 2, 4 or 8 byte data is read little endian. A missing
    key gives ``UINT64_MAX``; any other type gives 0.
    """
    node = _lookup(mapping, key)
    if node is _MISSING:
        return UINT64_MAX
    if isinstance(node, bool):
        return 0
    if isinstance(node, int):
        return node & UINT64_MAX
    if isinstance(node, str):
        return _strtoull(node)
    if isinstance(node, (bytes, bytearray)):
        size = len(node)
        if size in (2, 4, 8):
            return int.from_bytes(node, "little")
        if size == 1:
            return int.from_bytes(node, "little", signed=True) & UINT64_MAX
        error(f"dict_get_uint: ERROR: invalid size {size} for data to integer conversion\n")
        return 0
    return 0


def dict_get_bool(mapping: Any, key: str) -> bool:
    """Return ``mapping[key]`` as a boolean.

    Booleans are taken as they are, integers by their lowest byte, the
    strings ``"true"``/``"false"`` by name and one byte of data by its value.
    A missing key or any other value gives False.
    """
    node = _lookup(mapping, key)
    if node is _MISSING:
        return False
    if isinstance(node, bool):
        return node
    if isinstance(node, int):
        return (node & 0xFF) != 0
    if isinstance(node, str):
        return node == "true"
    if isinstance(node, (bytes, bytearray)):
        if len(node) == 1:
            return node[0] != 0
        error(f"dict_get_bool: ERROR: invalid size {len(node)} for data to boolean conversion\n")
        return False
    return False
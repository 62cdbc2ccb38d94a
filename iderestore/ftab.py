"""Reading, extending and writing of ftab firmware containers."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from .common import error

__all__ = [
    "FtabError",
    "FtabEntry",
    "Ftab",
    "parse_ftab",
    "HEADER_SIZE",
    "ENTRY_SIZE",
    "FTAB_MAGIC",
]

_HEADER = struct.Struct("<II24x4s4sI4x")
_ENTRY = struct.Struct("<4sII4x")
HEADER_SIZE = _HEADER.size
ENTRY_SIZE = _ENTRY.size
FTAB_MAGIC = int.from_bytes(b"ftab", "big")


class FtabError(ValueError):
    """Raised when ftab data is invalid or an entry is missing."""


def _tag_value(tag: int | str | bytes) -> int:
    if isinstance(tag, str):
        tag = tag.encode("latin-1")
    if isinstance(tag, (bytes, bytearray)):
        if len(tag) != 4:
            raise FtabError(f"tag must be 4 bytes long: {tag!r}")
        return int.from_bytes(tag, "big")
    return int(tag)


@dataclass
class FtabEntry:
    """One file stored in an ftab container."""

    tag: int
    offset: int
    data: bytes

    @property
    def size(self) -> int:
        """Length of the entry's data."""
        return len(self.data)


@dataclass
class Ftab:
    """An ftab container: a tagged list of files."""

    tag: int
    entries: list[FtabEntry] = field(default_factory=list)
    always_01: int = 1
    always_ff: int = 0xFFFFFFFF

    def get_entry(self, tag: int | str | bytes) -> bytes:
        """Return the data of the last entry with ``tag``."""
        value = _tag_value(tag)
        if not value:
            raise FtabError("tag must not be zero")
        found = None
        for entry in self.entries:
            if entry.tag == value:
                found = entry
        if found is None:
            raise FtabError(f"no entry with tag 0x{value:08x}")
        return found.data

    def add_entry(self, tag: int | str | bytes, data: bytes) -> None:
        """Append an entry and recompute the offsets of all entries."""
        value = _tag_value(tag)
        if not value or not data:
            raise FtabError("an entry needs a non-zero tag and non-empty data")
        self.entries.append(FtabEntry(value, 0, bytes(data)))
        offset = HEADER_SIZE + ENTRY_SIZE * len(self.entries)
        for entry in self.entries:
            entry.offset = offset
            offset += entry.size

    def to_bytes(self) -> bytes:
        """Serialise the container; entry data follows the entry table in order."""
        parts = [
            _HEADER.pack(
                self.always_01,
                self.always_ff,
                self.tag.to_bytes(4, "big"),
                FTAB_MAGIC.to_bytes(4, "big"),
                len(self.entries),
            )
        ]
        parts.extend(
            _ENTRY.pack(entry.tag.to_bytes(4, "big"), entry.offset, entry.size)
            for entry in self.entries
        )
        parts.extend(entry.data for entry in self.entries)
        return b"".join(parts)


def parse_ftab(data: bytes) -> Ftab:
    """Parse an ftab container."""
    if not data:
        raise FtabError("no ftab data")
    data = bytes(data)
    if len(data) < HEADER_SIZE:
        error("ERROR: parse_ftab: Buffer too small for ftab data\n")
        raise FtabError("buffer too small for ftab data")
    always_01, always_ff, tag, magic, count = _HEADER.unpack_from(data)
    if magic != b"ftab":
        raw = int.from_bytes(magic, "little")
        error(f"ERROR: parse_ftab: Unexpected magic value 0x{raw:08x}\n")
        raise FtabError(f"unexpected magic value 0x{raw:08x}")
    if len(data) < HEADER_SIZE + ENTRY_SIZE * count:
        error("ERROR: parse_ftab: Buffer too small for ftab entries\n")
        raise FtabError("buffer too small for ftab entries")

    entries = []
    for index in range(count):
        etag, offset, size = _ENTRY.unpack_from(data, HEADER_SIZE + ENTRY_SIZE * index)
        if offset + size > len(data):
            error("ERROR: parse_ftab: entry data out of bounds\n")
            raise FtabError(f"entry {index} data out of bounds")
        entries.append(FtabEntry(int.from_bytes(etag, "big"), offset, data[offset : offset + size]))
    return Ftab(int.from_bytes(tag, "big"), entries, always_01, always_ff)
"""Reading and patching of .fls baseband firmware images."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Callable

from .common import error

__all__ = ["FlsError", "FlsElement", "FlsFile", "parse_fls"]

_U32_MASK = 0xFFFFFFFF
_GENERIC_HEADER_SIZE = 12
_HEADER_SIZES = {0x0C: 40, 0x10: 24, 0x14: 24}
# Positions in FlsElement.fields (the header words that follow type and size).
_DATA_SIZE_FIELD = {0x0C: 5, 0x10: 1, 0x14: 1}
_OFFSET_FIELD = {0x0C: 7, 0x10: 3, 0x14: 3}
_SIG_INFO_POS = 0x10


class FlsError(ValueError):
    """Raised when an fls image cannot be processed."""


def _fail(message: str) -> FlsError:
    error(f"ERROR: {message}\n")
    return FlsError(message)


@dataclass
class FlsElement:
    """One element of an fls image: its header words and the data after the header."""

    type: int
    size: int
    fields: list[int]
    payload: bytes = b""

    @property
    def header_size(self) -> int:
        """Length of the element header in bytes."""
        return _HEADER_SIZES.get(self.type, _GENERIC_HEADER_SIZE)

    @property
    def data_size(self) -> int | None:
        """Size of the data without header, for element types that record it."""
        index = _DATA_SIZE_FIELD.get(self.type)
        return None if index is None else self.fields[index]

    @property
    def offset(self) -> int | None:
        """Absolute offset of the data in the file, for element types that record it."""
        index = _OFFSET_FIELD.get(self.type)
        return None if index is None else self.fields[index]

    def _set_data_size(self, value: int) -> None:
        self.fields[_DATA_SIZE_FIELD[self.type]] = value & _U32_MASK

    def _set_offset(self, value: int) -> None:
        self.fields[_OFFSET_FIELD[self.type]] = value & _U32_MASK

    def header_bytes(self) -> bytes:
        """Serialise the element header."""
        return struct.pack(
            f"<{2 + len(self.fields)}I", self.type, self.size & _U32_MASK, *self.fields
        )

    def to_bytes(self) -> bytes:
        """Serialise the element as it is stored in the image."""
        return (self.header_bytes() + self.payload)[: self.size]


@dataclass
class FlsFile:
    """A parsed fls image."""

    elements: list[FlsElement] = field(default_factory=list)
    data: bytes = b""

    @property
    def size(self) -> int:
        """Size of the image in bytes."""
        return len(self.data)

    @property
    def c_element(self) -> FlsElement | None:
        """The (last) 0x0c element, which carries the signature blob."""
        for element in reversed(self.elements):
            if element.type == 0x0C:
                return element
        return None

    def _require_c_element(self, caller: str) -> FlsElement:
        if not self.elements:
            raise _fail(f"{caller}: no data")
        element = self.c_element
        if element is None:
            raise _fail(f"{caller}: no fls_0c_element in fls data")
        return element

    def _rebuild(self, patch: Callable[[FlsElement], None]) -> None:
        chunks = []
        position = 0
        for element in self.elements:
            if element.type in _OFFSET_FIELD:
                element._set_offset(position + element.header_size)
            if element.type == 0x0C:
                patch(element)
            chunks.append(element.to_bytes())
            position += element.size
        self.data = b"".join(chunks)

    def update_sig_blob(self, sigdata: bytes) -> None:
        """Replace the signature blob at the end of the 0x0c element's data."""
        sigdata = bytes(sigdata)
        c_element = self._require_c_element("update_sig_blob")
        if len(c_element.payload) < _SIG_INFO_POS + 8:
            raise _fail("update_sig_blob: 0x0c element data too short")
        datasize, sigoffset = struct.unpack_from("<II", c_element.payload, _SIG_INFO_POS)
        if datasize != c_element.data_size:
            raise _fail(
                f"update_sig_blob: data size mismatch "
                f"(0x{datasize:x} != 0x{c_element.data_size:x})"
            )
        if sigoffset > datasize:
            raise _fail(
                f"update_sig_blob: signature offset greater than data size "
                f"(0x{sigoffset:x} > 0x{datasize:x})"
            )
        oldsiglen = datasize - sigoffset
        siglen = len(sigdata)

        for element in self.elements:
            if element.type != 0x0C:
                continue
            if len(element.payload) < oldsiglen:
                raise _fail("update_sig_blob: element data shorter than signature")
            if len(element.payload) - oldsiglen + siglen < _SIG_INFO_POS + 4:
                raise _fail("update_sig_blob: resulting element data too short")

        def patch(element: FlsElement) -> None:
            firstpart = len(element.payload) - oldsiglen
            element.size = (element.size - oldsiglen + siglen) & _U32_MASK
            element._set_data_size(element.data_size - oldsiglen + siglen)
            body = bytearray(element.payload[:firstpart] + sigdata)
            body[_SIG_INFO_POS : _SIG_INFO_POS + 4] = struct.pack("<I", element.data_size)
            element.payload = bytes(body)

        self._rebuild(patch)

    def insert_ticket(self, ticket: bytes) -> None:
        """Insert a ticket, padded with 0xFF to a multiple of 4 bytes, before the 0x0c element's data."""
        ticket = bytes(ticket)
        self._require_c_element("insert_ticket")
        padding = -len(ticket) % 4
        grow = len(ticket) + padding

        def patch(element: FlsElement) -> None:
            element.payload = ticket + b"\xff" * padding + element.payload
            element.size = (element.size + grow) & _U32_MASK
            element._set_data_size(element.data_size + grow)

        self._rebuild(patch)


def parse_fls(data: bytes) -> FlsFile:
    """Split an fls image into its elements.

    Parsing stops at the first element that does not fit; that is reported
    through the error log and the elements read so far are kept.
    """
    data = bytes(data)
    total = len(data)
    elements: list[FlsElement] = []
    offset = 0
    while offset < total:
        if total - offset < 8:
            break
        etype, esize = struct.unpack_from("<II", data, offset)
        if esize == 0 or offset + esize > total:
            break
        if etype in _HEADER_SIZES:
            hdrsize = _HEADER_SIZES[etype]
            raw = data[offset : offset + hdrsize].ljust(hdrsize, b"\0")
            fields = list(struct.unpack_from(f"<{hdrsize // 4 - 2}I", raw, 8))
        else:
            hdrsize = _GENERIC_HEADER_SIZE
            fields = [0]
        payload = data[offset + hdrsize : offset + esize] if esize > hdrsize else b""
        elements.append(FlsElement(etype, esize, fields, payload))
        offset += esize
    if offset != total:
        error("ERROR: parse_fls: error parsing elements\n")
    return FlsFile(elements, data)
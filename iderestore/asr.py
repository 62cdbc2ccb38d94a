"""Client for the ASR service that streams a filesystem image to a device."""

from __future__ import annotations

import hashlib
import os
import plistlib
import time
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Protocol
from xml.parsers.expat import ExpatError

from .common import debug, debug_plist, error, info, is_debug

__all__ = [
    "AsrError",
    "AsrClient",
    "Connection",
    "Device",
    "open_asr",
    "ASR_PORT",
]

ASR_VERSION = 1
ASR_STREAM_ID = 1
ASR_PORT = 12345
ASR_BUFFER_SIZE = 65536
ASR_FEC_SLICE_STRIDE = 40
ASR_PACKETS_PER_FEC = 25
ASR_PAYLOAD_PACKET_SIZE = 1450
ASR_PAYLOAD_CHUNK_SIZE = 131072
ASR_CHECKSUM_CHUNK_SIZE = 131072

_CONNECT_ATTEMPTS = 10
_CONNECT_DELAY = 2
_VALIDATION_RETRIES = 5
_PAYLOAD_RETRIES = 3


class AsrError(RuntimeError):
    """Raised when talking to the ASR service fails."""


class Connection(Protocol):
    """A byte stream to a service on the device."""

    def send(self, data: bytes) -> int: ...

    def receive(self, size: int) -> bytes: ...

    def close(self) -> None: ...


class Device(Protocol):
    """A device that can open connections to ports on itself."""

    def connect(self, port: int) -> Connection: ...


def _fail(message: str) -> AsrError:
    error(f"ERROR: {message}\n")
    return AsrError(message)


def _file_length(handle: BinaryIO) -> int:
    length = handle.seek(0, os.SEEK_END)
    handle.seek(0, os.SEEK_SET)
    return length


@dataclass(eq=False)
class AsrClient:
    """An open ASR connection."""

    connection: Connection | None
    checksum_chunks: bool = False
    progress_callback: Callable[[float], None] | None = None
    _last_progress: int = field(default=0, init=False, repr=False)

    def __enter__(self) -> AsrClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _require_connection(self) -> Connection:
        if self.connection is None:
            raise AsrError("ASR connection is closed")
        return self.connection

    def receive(self) -> dict[str, Any] | None:
        """Receive one XML property list; None if the data could not be parsed."""
        connection = self._require_connection()
        try:
            raw = connection.receive(ASR_BUFFER_SIZE)
        except OSError as exc:
            raise _fail("Unable to receive data from ASR") from exc
        try:
            packet = plistlib.loads(raw, fmt=plistlib.FMT_XML)
        except (ValueError, ExpatError):
            packet = None
        debug(f"Received {len(raw)} bytes:\n")
        if is_debug() and packet is not None:
            debug_plist(packet)
        return packet

    def send(self, data: Any) -> None:
        """Send a property list as XML."""
        buffer = plistlib.dumps(data, fmt=plistlib.FMT_XML)
        try:
            self.send_buffer(buffer)
        except AsrError:
            error("ERROR: Unable to send plist to ASR\n")
            raise

    def send_buffer(self, data: bytes) -> None:
        """Send raw bytes; all of them must go out."""
        connection = self._require_connection()
        size = len(data)
        try:
            sent = connection.send(bytes(data))
        except OSError as exc:
            raise _fail(f"Unable to send data to ASR. Sent 0 of {size} bytes.") from exc
        if sent != size:
            raise _fail(f"Unable to send data to ASR. Sent {sent} of {size} bytes.")

    def close(self) -> None:
        """Close the connection; closing twice does nothing."""
        if self.connection is not None:
            connection, self.connection = self.connection, None
            connection.close()

    def perform_validation(self, filesystem: str | os.PathLike[str]) -> None:
        """Announce the image and answer out-of-band data requests until the payload is asked for."""
        try:
            handle = open(filesystem, "rb")
        except OSError as exc:
            raise AsrError(f"unable to open filesystem image {os.fspath(filesystem)}") from exc
        with handle:
            length = _file_length(handle)
            packet_info: dict[str, Any] = {}
            if self.checksum_chunks:
                packet_info["Checksum Chunk Size"] = ASR_CHECKSUM_CHUNK_SIZE
            packet_info["FEC Slice Stride"] = ASR_FEC_SLICE_STRIDE
            packet_info["Packet Payload Size"] = ASR_PAYLOAD_PACKET_SIZE
            packet_info["Packets Per FEC"] = ASR_PACKETS_PER_FEC
            packet_info["Payload"] = {"Port": 1, "Size": length}
            packet_info["Stream ID"] = ASR_STREAM_ID
            packet_info["Version"] = ASR_VERSION

            try:
                self.send(packet_info)
            except AsrError:
                error("ERROR: Unable to sent packet information to ASR\n")
                raise

            attempts = 0
            while True:
                try:
                    packet = self.receive()
                except AsrError:
                    error("ERROR: Unable to receive validation packet\n")
                    raise
                if packet is None and attempts < _VALIDATION_RETRIES:
                    info(f"Retrying to receive validation packet... {attempts}\n")
                    attempts += 1
                    time.sleep(1)
                    continue
                attempts = 0

                command = packet.get("Command") if isinstance(packet, dict) else None
                if not isinstance(command, str):
                    raise _fail("Unable to find command node in validation request")
                if command == "OOBData":
                    self.handle_oob_data_request(packet, handle)
                elif command == "Payload":
                    return
                else:
                    raise _fail(f"Unknown command received from ASR: {command}")

    def handle_oob_data_request(self, packet: dict[str, Any], file: BinaryIO) -> None:
        """Send the slice of ``file`` that an OOBData request asks for."""
        length = packet.get("OOB Length")
        if not isinstance(length, int) or isinstance(length, bool):
            raise _fail("Unable to find OOB data length")
        offset = packet.get("OOB Offset")
        if not isinstance(offset, int) or isinstance(offset, bool):
            raise _fail("Unable to find OOB data offset")
        try:
            file.seek(offset, os.SEEK_SET)
            data = file.read(length)
        except (OSError, ValueError) as exc:
            raise _fail(f"Unable to read OOB data from filesystem offset: {exc}") from exc
        if len(data) != length:
            raise _fail("Unable to read OOB data from filesystem offset: short read")
        try:
            self.send_buffer(data)
        except AsrError:
            error("ERROR: Unable to send OOB data to ASR\n")
            raise

    def send_payload(self, filesystem: str | os.PathLike[str]) -> None:
        """Stream the image in chunks, each followed by its SHA-1 when checksums are on."""
        try:
            handle = open(filesystem, "rb")
        except OSError as exc:
            raise _fail(
                f"Unable to open filesystem image {os.fspath(filesystem)}: {exc.strerror}"
            ) from exc
        with handle:
            length = _file_length(handle)
            sent_bytes = 0
            retries_left = _PAYLOAD_RETRIES
            while sent_bytes < length:
                size = min(ASR_PAYLOAD_CHUNK_SIZE, length - sent_bytes)
                handle.seek(sent_bytes)
                chunk = handle.read(size)
                if len(chunk) != size:
                    error("Error reading filesystem\n")
                    retries_left -= 1
                    if retries_left < 0:
                        raise AsrError("unable to read filesystem image")
                    continue
                if self.checksum_chunks:
                    chunk += hashlib.sha1(chunk).digest()
                try:
                    self.send_buffer(chunk)
                except AsrError as exc:
                    error("ERROR: Unable to send filesystem payload\n")
                    retries_left -= 1
                    if retries_left < 0:
                        raise AsrError("unable to send filesystem payload") from exc
                    continue

                sent_bytes += size
                progress = sent_bytes / length
                percent = int(progress * 100)
                if self.progress_callback is not None and percent > self._last_progress:
                    self.progress_callback(progress)
                    self._last_progress = percent


def open_asr(device: Device) -> AsrClient:
    """Connect to the ASR service and wait for its Initiate message."""
    if device is None:
        raise AsrError("no device given")
    debug("Connecting to ASR\n")
    connection = None
    for attempt in range(1, _CONNECT_ATTEMPTS + 1):
        try:
            connection = device.connect(ASR_PORT)
            break
        except OSError as exc:
            if attempt >= _CONNECT_ATTEMPTS:
                raise _fail("Unable to connect to ASR client") from exc
            time.sleep(_CONNECT_DELAY)
            debug("Retrying connection...\n")

    client = AsrClient(connection)
    try:
        data = client.receive()
    except AsrError:
        error("ERROR: Unable to receive data from ASR\n")
        client.close()
        raise

    if isinstance(data, dict):
        command = data.get("Command")
        if isinstance(command, str) and command != "Initiate":
            error("ERROR: unexpected ASR plist received:\n")
            debug_plist(data)
            client.close()
            raise AsrError(f"unexpected ASR command: {command}")
        flag = data.get("Checksum Chunks")
        if isinstance(flag, bool):
            client.checksum_chunks = flag
    return client
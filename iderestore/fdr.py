"""FDR connection proxy: control and data channels that relay device traffic to the network."""

from __future__ import annotations

import enum
import plistlib
import socket
import struct
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from .common import debug, debug_plist, error, is_debug

__all__ = [
    "FdrType",
    "FdrError",
    "FdrClient",
    "Connection",
    "Device",
    "fdr_connect",
    "CTRL_PORT",
    "FDR_SYNC_MSG",
    "FDR_PROXY_MSG",
    "FDR_PLIST_MSG",
]

CTRL_PORT = 0x43A
FDR_SYNC_MSG = 0x1
FDR_PROXY_MSG = 0x105
FDR_PLIST_MSG = 0xBBAA

_CTRL_CMD = b"BeginCtrl\0"
_HELLO_CTRL_CMD = b"HelloCtrl\0"
_HELLO_CMD = b"HelloConn\0"
_PROXY_ACK = struct.pack("<H", 5)

_CONNECT_ATTEMPTS = 10
_CONNECT_DELAY = 2
_POLL_TIMEOUT = 20.0
_PROXY_TIMEOUT = 0.1
_PROXY_BUFFER_SIZE = 1048576
_SYNC_BUFFER_SIZE = 4096
_PLIST_ERRORS = (ValueError, struct.error, IndexError, KeyError, TypeError, OverflowError)


class FdrError(RuntimeError):
    """Raised when an FDR exchange fails."""


class FdrType(enum.Enum):
    """Kind of FDR channel."""

    CTRL = 0
    CONN = 1


class Connection(Protocol):
    """A byte stream to a service on the device.

    ``receive`` may return fewer bytes than asked for and raises
    ``TimeoutError`` when a timeout (in seconds) is given and expires.
    """

    def send(self, data: bytes) -> int: ...

    def receive(self, size: int, timeout: float | None = None) -> bytes: ...

    def close(self) -> None: ...


class Device(Protocol):
    """A device that can open connections to ports on itself."""

    def connect(self, port: int) -> Connection: ...


@dataclass
class _Session:
    conn_port: int = 0
    proto_version: int = 2
    serial: int = 0


_session = _Session()


def _fail(message: str) -> FdrError:
    error(f"ERROR: {message}\n")
    return FdrError(message)


def _is_uint(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(eq=False)
class FdrClient:
    """An open FDR channel."""

    connection: Connection | None
    device: Device
    type: FdrType

    def __enter__(self) -> FdrClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    @property
    def _tag(self) -> str:
        return f"0x{id(self):x}"

    def _conn(self) -> Connection:
        if self.connection is None:
            raise FdrError("FDR connection is closed")
        return self.connection

    def disconnect(self) -> None:
        """Close the channel; closing twice does nothing."""
        if self.connection is not None:
            connection, self.connection = self.connection, None
            connection.close()

    def _try_send(self, data: bytes) -> bool:
        try:
            return self._conn().send(data) == len(data)
        except OSError:
            return False

    def _send_exact(self, data: bytes, message: str) -> None:
        try:
            sent = self._conn().send(data)
        except OSError as exc:
            raise _fail(f"{message} Sent 0 of {len(data)} bytes.") from exc
        if sent != len(data):
            raise _fail(f"{message} Sent {sent} of {len(data)} bytes.")

    def _receive(self, size: int, message: str) -> bytes:
        try:
            return self._conn().receive(size)
        except OSError as exc:
            raise _fail(message) from exc

    def _receive_plist(self) -> Any:
        header = self._receive(4, "Unable to receive packet length from FDR")
        if len(header) != 4:
            raise _fail("Unable to receive packet length from FDR")
        (length,) = struct.unpack("<I", header)
        raw = self._receive(length, "Unable to receive data from FDR")
        try:
            data = plistlib.loads(raw, fmt=plistlib.FMT_BINARY)
        except _PLIST_ERRORS:
            data = None
        debug(f"FDR Received {len(raw)} bytes\n")
        return data

    def _send_plist(self, data: Any) -> None:
        raw = plistlib.dumps(data, fmt=plistlib.FMT_BINARY)
        debug(f"FDR sending {len(raw)} bytes:\n")
        if is_debug():
            debug_plist(data)
        self._send_exact(struct.pack("<I", len(raw)), "FDR unable to send data length.")
        self._send_exact(raw, "FDR unable to send data.")
        debug(f"FDR Sent {len(raw)} bytes\n")

    @staticmethod
    def _reply_text(reply: bytes) -> str:
        return reply[:9].split(b"\0", 1)[0].decode("latin-1")

    def _ctrl_handshake(self) -> None:
        debug("About to do ctrl handshake\n")
        _session.proto_version = 2
        if not self._try_send(_CTRL_CMD):
            debug("Hmm... looks like the device doesn't like the newer protocol, using the old one\n")
            _session.proto_version = 1
            if not self._try_send(_HELLO_CTRL_CMD):
                raise _fail("FDR unable to send BeginCtrl.")

        if _session.proto_version == 2:
            try:
                self._send_plist({"Command": "BeginCtrl", "CtrlProtoVersion": 2})
            except FdrError:
                error("ERROR: FDR could not send Begin command.\n")
                raise
            try:
                reply = self._receive_plist()
            except FdrError:
                error("ERROR: FDR did not get Begin command reply.\n")
                raise
            if is_debug() and reply is not None:
                debug_plist(reply)
            port = reply.get("ConnPort") if isinstance(reply, dict) else None
            if not _is_uint(port):
                raise _fail("Could not get FDR ConnPort value")
            _session.conn_port = port
        else:
            raw = self._receive(10, "Could not receive reply to HelloCtrl command")
            reply = raw.ljust(10, b"\0")[:10]
            if reply != _HELLO_CTRL_CMD:
                raise _fail(f"Did not receive HelloCtrl as reply, but {self._reply_text(reply)}")
            raw = self._receive(2, "Failed to receive conn port")
            _session.conn_port = int.from_bytes(raw.ljust(2, b"\0")[:2], "little")

        debug(f"Ctrl handshake done (ConnPort = {_session.conn_port})\n")

    def _sync_handshake(self) -> None:
        self._send_exact(_HELLO_CMD, "FDR unable to send Hello.")
        if _session.proto_version == 2:
            try:
                reply = self._receive_plist()
            except FdrError:
                error("ERROR: FDR did not get HelloConn reply.\n")
                raise
            reply = reply if isinstance(reply, dict) else {}
            command = reply.get("Command")
            identifier = reply.get("Identifier")
            if command != "HelloConn":
                raise _fail("Did not receive HelloConn reply...")
            if isinstance(identifier, str):
                debug(f"Got device identifier {identifier}\n")
        else:
            raw = self._receive(10, "Could not receive reply to HelloConn command")
            reply = raw.ljust(10, b"\0")[:10]
            if reply != _HELLO_CMD:
                raise _fail(f"Did not receive HelloConn as reply, but {self._reply_text(reply)}")

    def poll_and_handle_message(self) -> bool:
        """Wait for one command and handle it.

        Returns False when a proxied network connection was closed by its
        peer, True otherwise (including when no command arrived in time).
        """
        connection = self._conn()
        try:
            raw = connection.receive(2, timeout=_POLL_TIMEOUT)
        except TimeoutError:
            raw = b""
        except OSError as exc:
            if self.connection is not None:
                error(f"ERROR: Unable to receive message from FDR {self._tag} ({exc}).\n")
            raise FdrError(f"unable to receive message from FDR: {exc}") from exc
        if len(raw) != 2:
            debug(f"FDR {self._tag} timeout waiting for command\n")
            return True

        (cmd,) = struct.unpack("<H", raw)
        if cmd == FDR_SYNC_MSG:
            debug(f"FDR {self._tag} got sync message\n")
            return self._handle_sync_cmd()
        if cmd == FDR_PROXY_MSG:
            debug(f"FDR {self._tag} got proxy message\n")
            return self._handle_proxy_cmd()
        if cmd == FDR_PLIST_MSG:
            debug(f"FDR {self._tag} got plist message\n")
            return self._handle_plist_cmd()

        error(f"WARNING: FDR {self._tag} received unknown packet {cmd:#x} of size {len(raw)}\n")
        return True

    def run_listener(self) -> None:
        """Handle messages until the channel fails or is finished, then disconnect."""
        while self.connection is not None:
            debug(f"FDR {self._tag} waiting for message...\n")
            try:
                keep_going = self.poll_and_handle_message()
            except FdrError:
                break
            if self.type is FdrType.CTRL:
                continue
            if not keep_going:
                break
        debug(f"FDR {self._tag} terminating...\n")
        self.disconnect()

    def _handle_sync_cmd(self) -> bool:
        try:
            raw = self._conn().receive(_SYNC_BUFFER_SIZE)
        except OSError:
            raw = b""
        if len(raw) != 2:
            raise _fail("Unexpected data from FDR")
        try:
            client = fdr_connect(self.device, FdrType.CONN)
        except FdrError:
            error("ERROR: Failed to connect to FDR port\n")
            raise
        debug("FDR connected in reply to sync message, starting command thread\n")
        thread = threading.Thread(target=client.run_listener, name="fdr-conn", daemon=True)
        try:
            thread.start()
        except RuntimeError as exc:
            client.disconnect()
            raise _fail("Failed to start FDR command thread") from exc
        return True

    def _handle_plist_cmd(self) -> bool:
        try:
            packet = self._receive_plist()
        except FdrError:
            error(f"ERROR: FDR {self._tag} could not receive plist command.\n")
            raise
        command = packet.get("Command") if isinstance(packet, dict) else None
        if not isinstance(command, str):
            raise _fail(f"FDR {self._tag} Could not find Command in plist command")
        if command != "Ping":
            error(f"WARNING: FDR {self._tag} received unknown plist command: {command}\n")
            raise FdrError(f"unknown plist command: {command}")
        try:
            self._send_plist({"Pong": True})
        except FdrError:
            error(f"ERROR: FDR {self._tag} could not send Ping command reply.\n")
            raise
        # The device closes this channel itself after the reply.
        return True

    def _handle_proxy_cmd(self) -> bool:
        buf = self._receive(
            _PROXY_BUFFER_SIZE, f"FDR {self._tag} failed to read data for proxy command"
        )
        debug(f"Got proxy command with {len(buf)} bytes\n")

        # The request is acknowledged unconditionally; failures surface later.
        self._send_exact(_PROXY_ACK, f"FDR {self._tag} unable to send ack.")
        if len(buf) < 3:
            debug(f"FDR {self._tag} proxy command data too short, retrying\n")
            return self.poll_and_handle_message()

        self._send_exact(buf, f"FDR {self._tag} unable to send data.")

        host = None
        port = 0
        # Connect request: 0 3 hostlen <host> <port>
        if buf[0] == 0 and buf[1] == 3:
            port = int.from_bytes(buf[-2:], "big")
            host = buf[3:-2].split(b"\0", 1)[0].decode("latin-1")
            debug(f"FDR {self._tag} Proxy connect request to {host}:{port}\n")
        if host is None or buf[2] == 0:
            return True

        try:
            sock = socket.create_connection((host, port))
        except OSError as exc:
            raise _fail(f"Failed to connect socket: {exc}") from exc
        with sock:
            sock.settimeout(_PROXY_TIMEOUT)
            return self._relay(sock)

    def _relay(self, sock: socket.socket) -> bool:
        connection = self._conn()
        while True:
            try:
                payload = connection.receive(_PROXY_BUFFER_SIZE, timeout=_PROXY_TIMEOUT)
            except TimeoutError:
                payload = b""
            except OSError as exc:
                raise _fail(f"FDR {self._tag} Unable to receive proxy payload ({exc})") from exc
            if payload:
                debug(f"FDR {self._tag} got payload of {len(payload)} bytes, now try to proxy it\n")
                try:
                    sock.sendall(payload)
                except OSError as exc:
                    raise _fail(
                        f"Sending proxy payload failed: {exc}. Sent less than {len(payload)} bytes."
                    ) from exc

            try:
                reply: bytes | None = sock.recv(_PROXY_BUFFER_SIZE)
            except TimeoutError:
                reply = None
            except OSError as exc:
                error(f"ERROR: FDR {self._tag} receiving proxy payload failed: {exc}\n")
                return True
            if reply is None:
                _session.serial += 1
                continue
            if not reply:
                return False

            debug(f"FDR {self._tag} Received {len(reply)} bytes reply data, sending to device\n")
            sent = 0
            try:
                while sent < len(reply):
                    count = connection.send(reply[sent:])
                    if count <= 0:
                        break
                    sent += count
            except OSError:
                pass
            if sent != len(reply):
                raise _fail(
                    f"FDR {self._tag} unable to send data. Sent {sent} of {len(reply)} bytes."
                )


def fdr_connect(device: Device, fdr_type: FdrType) -> FdrClient:
    """Open an FDR channel of the given type and perform its handshake."""
    fdr_type = FdrType(fdr_type)
    port = (_session.conn_port if fdr_type is FdrType.CONN else CTRL_PORT) & 0xFFFF
    debug(f"Connecting to FDR client at port {port}\n")

    connection = None
    for attempt in range(1, _CONNECT_ATTEMPTS + 1):
        try:
            connection = device.connect(port)
            break
        except OSError as exc:
            if attempt >= _CONNECT_ATTEMPTS:
                raise _fail(f"Unable to connect to FDR client ({exc})") from exc
            time.sleep(_CONNECT_DELAY)
            debug("Retrying connection...\n")

    client = FdrClient(connection, device, fdr_type)
    try:
        if fdr_type is FdrType.CTRL:
            client._ctrl_handshake()
        else:
            client._sync_handshake()
    except BaseException:
        client.disconnect()
        raise
    return client
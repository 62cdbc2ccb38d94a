"""Logging, file, temporary-file and console helpers shared by the restore tools."""

from __future__ import annotations

import enum
import os
import plistlib
import secrets
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, TextIO

try:
    import termios
except ImportError:  # pragma: no cover - not available on Windows
    termios = None  # type: ignore[assignment]

try:
    import msvcrt
except ImportError:  # pragma: no cover - only available on Windows
    msvcrt = None  # type: ignore[assignment]

__all__ = [
    "Mode",
    "info",
    "error",
    "debug",
    "set_debug",
    "set_info_stream",
    "set_error_stream",
    "set_debug_stream",
    "get_last_error",
    "read_file",
    "write_file",
    "debug_plist",
    "print_progress_bar",
    "generate_guid",
    "mkdir_with_parents",
    "get_temp_filename",
    "get_user_input",
]

MAX_PRINT_LEN = 64 * 1024
ERROR_BUFFER_SIZE = 256
USER_AGENT_STRING = "InetURL/1.0"

FLAG_QUIT = 1 << 0

_IS_WINDOWS = os.name == "nt"
_BACKSPACE = "\b" if _IS_WINDOWS else "\x7f"
_CANCEL_CHARS = ("\x03", "\x1b")
_GUID_CHARS = "ABCDEF0123456789"
_TEMP_LETTERS = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
_TEMP_ATTEMPTS = 62 * 62 * 62
_TMP_VARS = ("TMPDIR", "TMP", "TEMP", "TEMPDIR")


class Mode(enum.Enum):
    """Device operating modes."""

    UNKNOWN = -1
    WTF = 0
    DFU = 1
    RECOVERY = 2
    RESTORE = 3
    NORMAL = 4

    @property
    def label(self) -> str | None:
        """Human readable name of the mode, or None for an unknown mode."""
        return _MODE_LABELS.get(self)


_MODE_LABELS = {
    Mode.WTF: "WTF",
    Mode.DFU: "DFU",
    Mode.RECOVERY: "Recovery",
    Mode.RESTORE: "Restore",
    Mode.NORMAL: "Normal",
}


@dataclass
class _Channel:
    default: Callable[[], TextIO]
    stream: TextIO | None = None
    disabled: bool = False

    def target(self) -> TextIO:
        return self.stream if self.stream is not None else self.default()

    def configure(self, stream: TextIO | None) -> None:
        if stream is None:
            self.disabled = True
        else:
            self.disabled = False
            self.stream = stream


@dataclass
class _LogState:
    info: _Channel = field(default_factory=lambda: _Channel(lambda: sys.stdout))
    error: _Channel = field(default_factory=lambda: _Channel(lambda: sys.stderr))
    debug: _Channel = field(default_factory=lambda: _Channel(lambda: sys.stderr))
    debug_enabled: bool = False
    last_error: str = ""


_state = _LogState()


def info(message: str) -> None:
    """Write an informational message unless info output is disabled."""
    if _state.info.disabled:
        return
    _state.info.target().write(message)


def error(message: str) -> None:
    """Record a message as the last error and write it unless error output is disabled."""
    _state.last_error = message[: ERROR_BUFFER_SIZE - 1]
    if not _state.error.disabled:
        _state.error.target().write(message)


def debug(message: str) -> None:
    """Write a debug message when debugging is enabled."""
    if _state.debug.disabled or not _state.debug_enabled:
        return
    _state.debug.target().write(message)


def set_debug(enabled: bool) -> None:
    """Turn debug output on or off."""
    _state.debug_enabled = bool(enabled)


def is_debug() -> bool:
    """Return whether debug output is enabled."""
    return _state.debug_enabled


def set_info_stream(stream: TextIO | None) -> None:
    """Send info output to ``stream``; None disables it."""
    _state.info.configure(stream)


def set_error_stream(stream: TextIO | None) -> None:
    """Send error output to ``stream``; None disables it."""
    _state.error.configure(stream)


def set_debug_stream(stream: TextIO | None) -> None:
    """Send debug output to ``stream``; None disables it."""
    _state.debug.configure(stream)


def get_last_error() -> str | None:
    """Return the last error message up to its first line break, or None if there was none."""
    if not _state.last_error:
        return None
    return _state.last_error.split("\n", 1)[0]


def read_file(filename: str | os.PathLike[str]) -> bytes:
    """Return the whole content of a file."""
    debug(f"Reading data from {os.fspath(filename)}\n")
    try:
        with open(filename, "rb") as handle:
            length = os.fstat(handle.fileno()).st_size
            data = handle.read(length)
    except OSError as exc:
        error(f"read_file: cannot open {os.fspath(filename)}: {exc.strerror}\n")
        raise
    if len(data) != length:
        error("ERROR: Unable to read entire file\n")
        raise OSError(f"unable to read entire file {os.fspath(filename)}")
    return data


def write_file(filename: str | os.PathLike[str], data: bytes) -> int:
    """Write ``data`` to a file, replacing it, and return the number of bytes written."""
    debug(f"Writing data to {os.fspath(filename)}\n")
    try:
        with open(filename, "wb") as handle:
            written = handle.write(data)
    except OSError:
        error(f"write_file: Unable to open file {os.fspath(filename)}\n")
        raise
    if written != len(data):
        error(
            f"ERROR: Unable to write entire file: {os.fspath(filename)}: "
            f"{written} of {len(data)}\n"
        )
        raise OSError(f"unable to write entire file {os.fspath(filename)}")
    return written


def debug_plist(plist: Any) -> None:
    """Print a property list as XML through the info channel."""
    data = plistlib.dumps(plist, fmt=plistlib.FMT_XML)
    size = len(data)
    if size <= MAX_PRINT_LEN:
        info(f"{__name__}:printing {size} bytes plist:\n{data.decode('utf-8')}")
    else:
        info(f"{__name__}:supressed printing {size} bytes plist...\n")


def print_progress_bar(progress: float) -> None:
    """Draw a 50 column progress bar for a percentage between 0 and 100."""
    if _state.info.disabled or progress < 0:
        return
    progress = min(progress, 100.0)
    bar = "".join("=" if i < progress / 2 else " " for i in range(50))
    info(f"\r[{bar}] {progress:5.1f}%")
    if progress >= 100:
        info("\n")
    _state.info.target().flush()


def generate_guid() -> str:
    """Return a random GUID of upper-case hexadecimal digits in 8-4-4-4-12 form."""
    return "".join(
        "-" if i in (8, 13, 18, 23) else secrets.choice(_GUID_CHARS) for i in range(36)
    )


def mkdir_with_parents(path: str | os.PathLike[str], mode: int = 0o755) -> None:
    """Create a directory and any missing parents; an existing path is accepted."""
    try:
        os.makedirs(path, mode, exist_ok=True)
    except FileExistsError:
        pass


def _temp_dir() -> str:
    tmpdir = next((os.environ[name] for name in _TMP_VARS if name in os.environ), None)
    if not tmpdir or not os.access(tmpdir, os.W_OK | os.X_OK):
        tmpdir = "C:\\WINDOWS\\TEMP" if _IS_WINDOWS else "/tmp"
    if not os.access(tmpdir, os.W_OK | os.X_OK):
        raise FileNotFoundError(f"no usable temporary directory: {tmpdir}")
    return tmpdir


def get_temp_filename(prefix: str | None = None) -> str:
    """Create an empty, uniquely named file in the temporary directory and return its path."""
    if prefix is None:
        prefix = "tmp_"
    separators = ("/", "\\") if _IS_WINDOWS else ("/",)
    if any(sep in prefix for sep in separators):
        raise ValueError(f"prefix must not contain a path separator: {prefix!r}")

    tmpdir = _temp_dir()
    if not tmpdir.endswith(separators):
        tmpdir += "\\" if _IS_WINDOWS else "/"

    for _ in range(_TEMP_ATTEMPTS):
        suffix = "".join(secrets.choice(_TEMP_LETTERS) for _ in range(6))
        candidate = f"{tmpdir}{prefix}{suffix}"
        try:
            fd = os.open(candidate, os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            continue
        os.close(fd)
        return candidate
    raise FileExistsError(f"unable to create a unique temporary file in {tmpdir}")


def _read_char() -> str:
    """Read one character from the console without echo; empty string on end of input."""
    if msvcrt is not None and sys.stdin.isatty():
        return msvcrt.getwch()
    try:
        fd = sys.stdin.fileno()
        raw = termios is not None and os.isatty(fd)
    except (AttributeError, OSError, ValueError):
        raw = False
    if not raw:
        return sys.stdin.read(1)
    old = termios.tcgetattr(fd)
    new = list(old)
    new[3] &= ~(termios.ICANON | termios.ECHO)
    termios.tcsetattr(fd, termios.TCSANOW, new)
    try:
        return os.read(fd, 1).decode("latin-1")
    finally:
        termios.tcsetattr(fd, termios.TCSANOW, old)


def get_user_input(max_length: int, secure: bool = False) -> str:
    """Read a line from the console, keeping at most ``max_length - 1`` characters.

    Typed characters are echoed, or shown as ``*`` when ``secure`` is set.
    End of input or cancelling returns an empty string.
    """
    chars: list[str] = []
    cancelled = False
    out = sys.stdout
    while True:
        ch = _read_char()
        if not ch:
            cancelled = True
            break
        if ch == "\0" or ch in ("\r", "\n"):
            break
        if " " <= ch <= "~":
            if len(chars) < max_length - 1:
                chars.append(ch)
            out.write("*" if secure else ch)
        elif ch == _BACKSPACE:
            if chars:
                out.write("\b \b")
                chars.pop()
        elif _IS_WINDOWS and ch in _CANCEL_CHARS:
            cancelled = True
            break
    out.write("\n")
    return "" if cancelled else "".join(chars)
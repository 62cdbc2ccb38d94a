"""Fetching files over HTTP(S) into memory or onto disk."""

from __future__ import annotations

import http.client
import os
import ssl
import urllib.request
from collections.abc import Iterator
from contextlib import contextmanager
from typing import IO
from urllib.error import HTTPError

from .common import USER_AGENT_STRING, debug, error, info

__all__ = ["DownloadError", "download_to_buffer", "download_to_file"]

_VERSION = "1.0.1"
_IPSW_API_PREFIX = "https://api.ipsw.me/"
_CHUNK_SIZE = 64 * 1024
_TRANSFER_ERRORS = (OSError, http.client.HTTPException)


class DownloadError(RuntimeError):
    """Raised when a download produced no data or could not be stored."""


def _user_agent(url: str) -> str:
    if url.startswith(_IPSW_API_PREFIX):
        return f"{USER_AGENT_STRING} iderestore/{_VERSION}"
    return USER_AGENT_STRING


def _opener() -> urllib.request.OpenerDirector:
    # Certificates are not verified so that untrusted https locations work.
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return urllib.request.build_opener(urllib.request.HTTPSHandler(context=context))


@contextmanager
def _open(url: str, user_agent: str) -> Iterator[IO[bytes]]:
    """Open ``url``; error responses are returned with their body like any other."""
    request = urllib.request.Request(url, headers={"User-Agent": user_agent})
    debug(f"Downloading {url}\n")
    try:
        response = _opener().open(request)
    except HTTPError as exc:
        response = exc
    try:
        yield response
    finally:
        response.close()


def _chunks(response: IO[bytes]) -> Iterator[bytes]:
    while True:
        chunk = response.read(_CHUNK_SIZE)
        if not chunk:
            return
        yield chunk


def _content_length(response: IO[bytes]) -> int:
    headers = getattr(response, "headers", None)
    value = headers.get("Content-Length") if headers is not None else None
    try:
        return int(value) if value is not None else 0
    except ValueError:
        return 0


def download_to_buffer(url: str) -> bytes:
    """Return the body fetched from ``url``; an empty result is an error."""
    parts: list[bytes] = []
    try:
        with _open(url, _user_agent(url)) as response:
            parts.extend(_chunks(response))
    except _TRANSFER_ERRORS as exc:
        debug(f"Transfer of {url} failed: {exc}\n")
    content = b"".join(parts)
    if not content:
        raise DownloadError(f"no data received from {url}")
    return content


def download_to_file(
    url: str, filename: str | os.PathLike[str], enable_progress: bool = False
) -> None:
    """Store the body fetched from ``url`` in ``filename``.

    When ``enable_progress`` is set, whole-percent progress lines are written
    to the info channel. An empty result removes the file and is an error.
    """
    try:
        handle = open(filename, "wb")
    except OSError as exc:
        error(f"ERROR: cannot open '{os.fspath(filename)}' for writing\n")
        raise DownloadError(f"cannot open {os.fspath(filename)} for writing") from exc

    with handle:
        try:
            with _open(url, USER_AGENT_STRING) as response:
                total = _content_length(response)
                received = 0
                last_progress = 0
                for chunk in _chunks(response):
                    handle.write(chunk)
                    received += len(chunk)
                    if enable_progress and total > 0:
                        percent = received / total * 100
                        if percent < 100.0 and int(percent) > last_progress:
                            info(f"downloading: {int(percent)}%\n")
                            last_progress = int(percent)
        except _TRANSFER_ERRORS as exc:
            debug(f"Transfer of {url} failed: {exc}\n")
        size = handle.tell()

    if size == 0:
        os.remove(filename)
        raise DownloadError(f"no data received from {url}")
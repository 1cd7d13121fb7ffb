"""Upload and download helpers over the pooled client.

Local files and streams are handled through :func:`read_all_bytes_from` and
:func:`write_all_bytes_to`, which accept either a path or an open binary
file object.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import IO, Union

from httpagent.networking.client import HttpClient, default_client
from httpagent.networking.errors import RequestFailed
from httpagent.networking.request import HttpMethod, RequestDescriptor
from httpagent.networking.types import HttpResponse

logger = logging.getLogger(__name__)

Source = Union[str, "os.PathLike[str]", IO[bytes]]
Destination = Union[str, "os.PathLike[str]", IO[bytes]]


def read_all_bytes_from(source: Source) -> bytes:
    """Read everything from a path or a readable binary stream."""
    if isinstance(source, (str, os.PathLike)):
        return Path(source).read_bytes()
    return source.read()


def write_all_bytes_to(destination: Destination, data: bytes) -> None:
    """Write ``data`` to a path (replacing it) or a writable binary stream."""
    if isinstance(destination, (str, os.PathLike)):
        Path(destination).write_bytes(data)
        return
    destination.write(data)
    destination.flush()


def _fetch(url: str, client: HttpClient | None) -> HttpResponse | None:
    result = (client or default_client()).execute(
        RequestDescriptor(url=url, method=HttpMethod.GET)
    )
    if not result.ok:
        logger.error("Failed to download %s: %s", url, result.error)
        raise RequestFailed(
            f"download of {url} failed: {result.error}", cause=result.error
        ) from result.error
    response = result.value
    if not response.ok:
        logger.warning(
            "Download of %s isn't ok: %s %s",
            url,
            response.status_code,
            response.text,
        )
        return None
    return response


def upload_stream(
    url: str,
    field_name: str,
    file_name: str,
    stream: IO[bytes],
    *,
    client: HttpClient | None = None,
) -> str:
    """POST ``stream`` as a multipart part and return the response body.

    The stream is read once up front so every attempt sends the same bytes.

    Raises:
        RequestFailed: The upload could not be performed.
    """
    descriptor = RequestDescriptor(
        url=url,
        method=HttpMethod.POST,
        files={field_name: (file_name, read_all_bytes_from(stream))},
    )
    result = (client or default_client()).execute(descriptor)
    if not result.ok:
        logger.error(
            "Failed to upload %s to %s (field=%s): %s",
            file_name,
            url,
            field_name,
            result.error,
        )
        raise RequestFailed(
            f"upload of {file_name} to {url} failed: {result.error}",
            cause=result.error,
        ) from result.error
    return result.value.text


def upload(
    url: str,
    field_name: str,
    file: str | os.PathLike[str],
    *,
    client: HttpClient | None = None,
) -> str:
    """POST the file at ``file`` as a multipart part named ``field_name``."""
    path = Path(file)
    try:
        stream = path.open("rb")
    except OSError as exc:
        logger.error(
            "Failed to upload %s to %s (field=%s): %s", path, url, field_name, exc
        )
        raise RequestFailed(f"cannot read {path}: {exc}", cause=exc) from exc
    with stream:
        return upload_stream(url, field_name, path.name, stream, client=client)


def download(
    url: str,
    into: Destination,
    *,
    client: HttpClient | None = None,
) -> bool:
    """GET ``url`` and write the body to ``into``.

    Returns:
        ``True`` when the body was written, ``False`` when the server
        answered with a non-success status (nothing is written then).

    Raises:
        RequestFailed: Transport or protocol failure.
    """
    response = _fetch(url, client)
    if response is None:
        return False
    try:
        write_all_bytes_to(into, response.content)
    except OSError as exc:
        logger.error("Failed to write download of %s into %s: %s", url, into, exc)
        raise RequestFailed(f"cannot write {into}: {exc}", cause=exc) from exc
    return True


def download_text(
    url: str,
    *,
    encoding: str = "utf-8",
    client: HttpClient | None = None,
) -> str | None:
    """GET ``url`` and return its body decoded as ``encoding``.

    ``None`` when the server answered with a non-success status.
    """
    response = _fetch(url, client)
    if response is None:
        return None
    return response.content.decode(encoding, errors="replace")


__all__ = [
    "download",
    "download_text",
    "read_all_bytes_from",
    "upload",
    "upload_stream",
    "write_all_bytes_to",
]

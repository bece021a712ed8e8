"""Turn a clip or track reference into bytes.

Accepted references:
  - bytes / bytearray / memoryview: used as-is
  - "http://..." / "https://...": downloaded with httpx
  - "data:<mime>;base64,<payload>": decoded inline
  - "file://..." or a plain filesystem path (str or Path)

Every failure becomes a FetchError whose message carries the reference
truncated for readability.
"""

import asyncio
import base64
import binascii
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from .common import describe_source
from .errors import FetchError


async def fetch_source(
    source,
    timeout: Optional[float] = 60.0,
    client: Optional[httpx.AsyncClient] = None,
) -> bytes:
    """Fetch the bytes behind `source`.

    Args:
        source: Reference as described in the module docstring.
        timeout: Seconds allowed for a network fetch.
        client: Optional shared httpx client (tests pass a mock transport).

    Raises:
        FetchError: Unreachable, non-2xx, unreadable or empty source.
    """
    label = describe_source(source)

    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
    elif isinstance(source, Path):
        data = await _read_path(source, label)
    else:
        text = str(source)
        scheme = urlparse(text).scheme.lower()
        if scheme in ("http", "https"):
            data = await _download(text, label, timeout, client)
        elif scheme == "data":
            data = _decode_data_url(text, label)
        elif scheme == "file":
            data = await _read_path(Path(unquote(urlparse(text).path)), label)
        else:
            data = await _read_path(Path(text), label)

    if not data:
        raise FetchError(label, "empty file")
    return data


async def _read_path(path: Path, label: str) -> bytes:
    try:
        return await asyncio.to_thread(path.read_bytes)
    except OSError as exc:
        raise FetchError(label, exc.strerror or str(exc)) from exc


async def _download(url: str, label: str, timeout, client) -> bytes:
    try:
        if client is not None:
            response = await client.get(url, timeout=timeout, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as own:
                response = await own.get(url)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        raise FetchError(label, f"HTTP {status}: {exc.response.reason_phrase}") from exc
    except httpx.HTTPError as exc:
        raise FetchError(label, str(exc) or type(exc).__name__) from exc
    return response.content


def _decode_data_url(url: str, label: str) -> bytes:
    header, sep, payload = url.partition(",")
    if not sep:
        raise FetchError(label, "malformed data URL")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise FetchError(label, f"invalid base64 payload: {exc}") from exc
    return unquote(payload).encode()

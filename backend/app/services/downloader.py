"""
Bounded streaming downloads.

Remote media is pulled into a local file under a byte cap and a wall-clock
timeout. The body is read one chunk at a time; the running total is checked
before each write, so an absent or understated Content-Length cannot push
the file past the cap. Writes go through a small in-memory buffer that is
flushed to disk off the event loop once it crosses a high-water mark; the
next read does not start until that flush completes.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import BinaryIO

import httpx

from app.services.errors import ExternalServiceError, ResourceLimitError
from app.services.payloads import is_data_uri, parse_data_uri

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
HIGH_WATER_MARK = 1024 * 1024


def _format_mb(num_bytes: int) -> str:
    return f"{num_bytes / (1024 * 1024):.1f}MB"


def _declared_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


async def _flush(handle: BinaryIO, buffer: bytearray) -> None:
    if not buffer:
        return
    data = bytes(buffer)
    buffer.clear()
    await asyncio.to_thread(handle.write, data)


async def _stream_to_file(
    client: httpx.AsyncClient,
    url: str,
    dest_path: Path,
    max_bytes: int,
) -> int:
    async with client.stream("GET", url, follow_redirects=True) as response:
        if response.status_code < 200 or response.status_code >= 300:
            raise ExternalServiceError(
                f"Failed to download {url}: HTTP {response.status_code}"
            )

        declared = _declared_length(response)
        if declared is not None and declared > max_bytes:
            raise ResourceLimitError(
                f"File too large: {_format_mb(declared)} exceeds "
                f"{_format_mb(max_bytes)} limit"
            )

        received = 0
        buffer = bytearray()
        handle = await asyncio.to_thread(open, dest_path, "wb")
        try:
            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                received += len(chunk)
                if received > max_bytes:
                    raise ResourceLimitError(
                        f"Download exceeded {_format_mb(max_bytes)} limit "
                        f"after {_format_mb(received)}"
                    )
                buffer.extend(chunk)
                if len(buffer) >= HIGH_WATER_MARK:
                    await _flush(handle, buffer)
            await _flush(handle, buffer)
        finally:
            await asyncio.to_thread(handle.close)
        return received


def _discard(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove partial download %s: %s", path, e)


async def download_to_file(
    url: str,
    dest_path: str | Path,
    *,
    max_bytes: int,
    timeout: float,
    client: httpx.AsyncClient | None = None,
) -> int:
    """
    Stream `url` into `dest_path`, returning the number of bytes written.

    Raises:
        ResourceLimitError: declared or actual size exceeds max_bytes.
        ExternalServiceError: non-2xx response, transport error, or timeout.

    On any failure the partial file is removed.
    """
    dest_path = Path(dest_path)
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient()

    try:
        received = await asyncio.wait_for(
            _stream_to_file(client, url, dest_path, max_bytes), timeout=timeout
        )
    except asyncio.TimeoutError:
        _discard(dest_path)
        raise ExternalServiceError(f"Download timed out after {timeout:g}s: {url}")
    except httpx.HTTPError as e:
        _discard(dest_path)
        raise ExternalServiceError(f"Failed to download {url}: {e}") from e
    except BaseException:
        _discard(dest_path)
        raise
    finally:
        if owns_client:
            await client.aclose()

    logger.info("Downloaded %s (%s) to %s", url, _format_mb(received), dest_path)
    return received


async def fetch_bytes(
    url: str,
    *,
    max_bytes: int,
    timeout: float,
    client: httpx.AsyncClient | None = None,
) -> bytes:
    """Fetch a remote resource into memory under the same cap and timeout rules."""
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient()

    async def _read() -> bytes:
        async with client.stream("GET", url, follow_redirects=True) as response:
            if response.status_code < 200 or response.status_code >= 300:
                raise ExternalServiceError(
                    f"Failed to fetch {url}: HTTP {response.status_code}"
                )
            declared = _declared_length(response)
            if declared is not None and declared > max_bytes:
                raise ResourceLimitError(
                    f"File too large: {_format_mb(declared)} exceeds "
                    f"{_format_mb(max_bytes)} limit"
                )
            body = bytearray()
            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                body.extend(chunk)
                if len(body) > max_bytes:
                    raise ResourceLimitError(
                        f"Download exceeded {_format_mb(max_bytes)} limit"
                    )
            return bytes(body)

    try:
        return await asyncio.wait_for(_read(), timeout=timeout)
    except asyncio.TimeoutError:
        raise ExternalServiceError(f"Fetch timed out after {timeout:g}s: {url}")
    except httpx.HTTPError as e:
        raise ExternalServiceError(f"Failed to fetch {url}: {e}") from e
    finally:
        if owns_client:
            await client.aclose()


def decode_data_uri(uri: str, *, max_bytes: int) -> bytes:
    """Decode an embedded base64 payload, enforcing the same byte cap as downloads."""
    _, data = parse_data_uri(uri)
    if len(data) > max_bytes:
        raise ResourceLimitError(
            f"File too large: {_format_mb(len(data))} exceeds {_format_mb(max_bytes)} limit"
        )
    return data


async def decode_data_uri_to_file(uri: str, dest_path: str | Path, *, max_bytes: int) -> int:
    """Write an embedded base64 payload to disk under the byte cap."""
    data = decode_data_uri(uri, max_bytes=max_bytes)
    await asyncio.to_thread(Path(dest_path).write_bytes, data)
    return len(data)


async def materialize(
    reference: str,
    dest_path: str | Path,
    *,
    max_bytes: int,
    timeout: float,
    client: httpx.AsyncClient | None = None,
) -> int:
    """Put a data URI or http(s) URL on disk at dest_path."""
    if is_data_uri(reference):
        return await decode_data_uri_to_file(reference, dest_path, max_bytes=max_bytes)
    return await download_to_file(
        reference, dest_path, max_bytes=max_bytes, timeout=timeout, client=client
    )

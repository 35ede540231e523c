"""Stream tunnel: target-header handshake and bidirectional byte relay."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Tuple

from .protocol import ProtocolError, TruncatedError, encode_target_header

logger = logging.getLogger(__name__)

StreamPair = Tuple[asyncio.StreamReader, asyncio.StreamWriter]


async def _read_exactly(reader: asyncio.StreamReader, size: int) -> bytes:
    try:
        return await reader.readexactly(size)
    except asyncio.IncompleteReadError as exc:
        raise TruncatedError(f"expected {size} bytes, got {len(exc.partial)}") from exc


async def _read_target(reader: asyncio.StreamReader) -> str:
    length = int.from_bytes(await _read_exactly(reader, 2), "big")
    raw = await _read_exactly(reader, length)
    return raw.decode("utf-8", "surrogateescape")


async def _close_writer(writer) -> None:
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()


def _split_host_port(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


async def relay(client_reader, client_writer, remote_reader, remote_writer, buf_size: int) -> tuple[int, int]:
    """Copy bytes both ways until each side reaches end of stream.

    Returns the byte counts (client to remote, remote to client). On a
    write or read failure both writers are closed so the other direction
    ends too.
    """

    async def pipe(src, dst) -> int:
        total = 0
        try:
            while chunk := await src.read(buf_size):
                dst.write(chunk)
                await dst.drain()
                total += len(chunk)
            if dst.can_write_eof():
                dst.write_eof()
        except (ConnectionError, OSError) as exc:
            logger.debug("Relay direction ended with error: %s", exc)
            client_writer.close()
            remote_writer.close()
        return total

    tx, rx = await asyncio.gather(
        pipe(client_reader, remote_writer),
        pipe(remote_reader, client_writer),
    )
    return tx, rx


async def dial_tcp(open_stream: Callable[[], Awaitable[StreamPair]], target: str) -> StreamPair:
    """Open a tunnel stream and announce ``target`` on it.

    ``open_stream`` is a coroutine function returning a reader/writer pair.
    The writer is closed if the header cannot be sent.
    """
    reader, writer = await open_stream()
    try:
        writer.write(encode_target_header(target))
        await writer.drain()
    except BaseException:
        await _close_writer(writer)
        raise
    return reader, writer


async def handle_tcp(reader, writer, dial_timeout: float, buf_size: int) -> None:
    """Serve one incoming tunnel stream: read its target, connect, relay."""
    try:
        try:
            target = await _read_target(reader)
        except (ProtocolError, ConnectionError, OSError) as exc:
            logger.error("Failed to read TCP target header: %s", exc)
            return
        try:
            host, port = _split_host_port(target)
            remote_reader, remote_writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), dial_timeout or None
            )
        except (ValueError, OSError, asyncio.TimeoutError) as exc:
            logger.error("Failed to dial TCP target target=%s error=%s", target, exc)
            return
        try:
            await relay(reader, writer, remote_reader, remote_writer, buf_size)
        finally:
            await _close_writer(remote_writer)
    finally:
        await _close_writer(writer)
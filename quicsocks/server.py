"""SOCKS5 front end: handshake, request parsing and command dispatch."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import ipaddress
import logging
from enum import IntEnum
from typing import Any, Awaitable, Callable, Tuple

from .protocol import ProtocolError, join_host_port, parse_address
from .tunnel import _close_writer, _read_exactly, _split_host_port, relay

logger = logging.getLogger(__name__)

SOCKS_VERSION = 0x05
METHOD_NO_AUTH = 0x00
MAX_CONCURRENT_CONNECTIONS = 1000

DialTCP = Callable[[str], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]
DialUDP = Callable[[], Awaitable[Tuple[Any, Any]]]


class ReplyCode(IntEnum):
    SUCCESS = 0x00
    GENERAL_FAILURE = 0x01
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08
    NO_ACCEPTABLE_METHODS = 0xFF


class Command(IntEnum):
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class AddressType(IntEnum):
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class HandshakeError(ProtocolError):
    """The client greeting was invalid or offered no usable method."""


class RequestError(ProtocolError):
    """The client request was malformed."""


class UnsupportedAddressTypeError(RequestError):
    """The request used an address type this server does not handle."""


_SOCKET_ERRORS = (ConnectionError, OSError)


def _reply(code: int) -> bytes:
    return bytes([SOCKS_VERSION, code, 0x00, AddressType.IPV4, 0, 0, 0, 0, 0, 0])


async def _send(writer, data: bytes, what: str) -> None:
    try:
        writer.write(data)
        await writer.drain()
    except _SOCKET_ERRORS as exc:
        logger.debug("Failed to send %s response: %s", what, exc)
        raise


async def write_error(writer, code: int) -> None:
    """Send a failure reply carrying ``code``."""
    await _send(writer, _reply(code), "error")


async def write_success(writer) -> None:
    """Send a success reply with an all-zero IPv4 bind address."""
    await _send(writer, _reply(ReplyCode.SUCCESS), "success")


async def _quiet_error(writer, code: int) -> None:
    with contextlib.suppress(*_SOCKET_ERRORS):
        await write_error(writer, code)


async def perform_handshake(reader, writer) -> None:
    """Negotiate the no-authentication method with the client."""
    version, nmethods = await _read_exactly(reader, 2)
    if version != SOCKS_VERSION:
        raise HandshakeError(f"invalid SOCKS version: {version}")
    methods = await _read_exactly(reader, nmethods)
    if METHOD_NO_AUTH in methods:
        writer.write(bytes([SOCKS_VERSION, METHOD_NO_AUTH]))
        await writer.drain()
        return
    writer.write(bytes([SOCKS_VERSION, ReplyCode.NO_ACCEPTABLE_METHODS]))
    await writer.drain()
    raise HandshakeError("no acceptable authentication method")


async def read_host(reader, atyp: int) -> str:
    """Read a destination host of address type ``atyp``."""
    if atyp == AddressType.DOMAIN:
        (length,) = await _read_exactly(reader, 1)
        raw = await _read_exactly(reader, length)
        return raw.decode("utf-8", "surrogateescape")
    sizes = {AddressType.IPV4: 4, AddressType.IPV6: 16}
    size = sizes.get(atyp)
    if size is None:
        raise UnsupportedAddressTypeError(f"unsupported address type: {atyp}")
    raw = await _read_exactly(reader, size)
    host, _ = parse_address(raw, atyp, 0)
    return host


async def read_port(reader) -> int:
    """Read a big-endian two-byte port."""
    return int.from_bytes(await _read_exactly(reader, 2), "big")


async def parse_request(reader) -> tuple[int, str]:
    """Read a request; return its command byte and ``host:port`` target."""
    version, cmd, reserved, atyp = await _read_exactly(reader, 4)
    if version != SOCKS_VERSION:
        raise RequestError(f"invalid SOCKS version: {version}")
    if reserved != 0x00:
        raise RequestError(f"invalid reserved field: {reserved}")
    host = await read_host(reader, atyp)
    port = await read_port(reader)
    return cmd, join_host_port(host, port)


def reply_code_for(error: BaseException) -> ReplyCode:
    """Map a request parsing failure to the reply code sent to the client."""
    if isinstance(error, UnsupportedAddressTypeError) or "unsupported address type" in str(error):
        return ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED
    return ReplyCode.GENERAL_FAILURE


def _peer(writer) -> str:
    peer = writer.get_extra_info("peername")
    if isinstance(peer, tuple) and len(peer) >= 2:
        return join_host_port(str(peer[0]), peer[1])
    return str(peer)


async def _close_closer(closer) -> None:
    result = closer.close()
    if inspect.isawaitable(result):
        await result


async def handle_connect(reader, writer, target: str, client: str, buf_size: int, dial_tcp: DialTCP) -> None:
    """Serve a CONNECT request: dial the target, reply, then relay."""
    logger.debug("SOCKS5 TCP request client=%s target=%s", client, target)
    try:
        remote_reader, remote_writer = await dial_tcp(target)
    except Exception as exc:
        logger.error("TCP Connect failed client=%s target=%s error=%s", client, target, exc)
        await _quiet_error(writer, ReplyCode.GENERAL_FAILURE)
        return
    try:
        with contextlib.suppress(*_SOCKET_ERRORS):
            await write_success(writer)
        await relay(reader, writer, remote_reader, remote_writer, buf_size)
    finally:
        await _close_writer(remote_writer)


async def handle_udp_associate(reader, writer, client: str, dial_udp: DialUDP) -> None:
    """Serve a UDP ASSOCIATE request.

    ``dial_udp`` returns the bound ``(host, port)`` and an object with
    ``close()``. The association lives until the client closes the TCP
    connection or the task is cancelled.
    """
    logger.debug("SOCKS5 UDP Associate request client=%s", client)
    try:
        bind_addr, closer = await dial_udp()
    except Exception as exc:
        logger.error("UDP Associate failed client=%s error=%s", client, exc)
        await _quiet_error(writer, ReplyCode.GENERAL_FAILURE)
        return
    try:
        try:
            ip = ipaddress.ip_address(str(bind_addr[0]).split("%", 1)[0])
            port = int(bind_addr[1]) & 0xFFFF
        except (TypeError, ValueError, IndexError, KeyError):
            logger.error(
                "UDP Associate returned non-UDP address client=%s addr_type=%s",
                client,
                type(bind_addr).__name__,
            )
            await _quiet_error(writer, ReplyCode.GENERAL_FAILURE)
            return
        if ip.version == 6 and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        atyp = AddressType.IPV4 if ip.version == 4 else AddressType.IPV6
        reply = bytes([SOCKS_VERSION, ReplyCode.SUCCESS, 0x00, atyp]) + ip.packed + port.to_bytes(2, "big")
        try:
            writer.write(reply)
            await writer.drain()
        except _SOCKET_ERRORS:
            return
        try:
            while await reader.read(4096):
                pass
        except _SOCKET_ERRORS:
            pass
        except asyncio.CancelledError:
            writer.close()
            raise
    finally:
        await _close_closer(closer)


async def handle_client(reader, writer, buf_size: int, dial_tcp: DialTCP, dial_udp: DialUDP) -> None:
    """Run one SOCKS5 session from greeting to the end of its command."""
    client = _peer(writer)
    try:
        try:
            await perform_handshake(reader, writer)
        except (ProtocolError, *_SOCKET_ERRORS) as exc:
            logger.debug("SOCKS5 handshake failed client=%s error=%s", client, exc)
            return
        try:
            cmd, target = await parse_request(reader)
        except (ProtocolError, *_SOCKET_ERRORS) as exc:
            await _quiet_error(writer, reply_code_for(exc))
            return
        if cmd == Command.CONNECT:
            await handle_connect(reader, writer, target, client, buf_size, dial_tcp)
        elif cmd == Command.UDP_ASSOCIATE:
            await handle_udp_associate(reader, writer, client, dial_udp)
        else:
            await _quiet_error(writer, ReplyCode.COMMAND_NOT_SUPPORTED)
    finally:
        await _close_writer(writer)


async def serve(listen_addr: str, buf_size: int, dial_tcp: DialTCP, dial_udp: DialUDP) -> None:
    """Listen on ``listen_addr`` and serve SOCKS5 clients until cancelled.

    Connections beyond the concurrency limit are closed at once. On
    cancellation the listener closes and running sessions are cancelled.
    """
    host, port = _split_host_port(listen_addr)
    handlers: set[asyncio.Task] = set()

    async def on_connect(reader, writer) -> None:
        if len(handlers) >= MAX_CONCURRENT_CONNECTIONS:
            logger.debug("Connection limit reached, rejecting connection client=%s", _peer(writer))
            writer.close()
            return
        task = asyncio.current_task()
        handlers.add(task)
        try:
            await handle_client(reader, writer, buf_size, dial_tcp, dial_udp)
        finally:
            handlers.discard(task)

    server = await asyncio.start_server(on_connect, host or None, port)
    try:
        await server.serve_forever()
    finally:
        server.close()
        pending = list(handlers)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
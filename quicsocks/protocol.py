"""Wire formats shared by the SOCKS5 front end and the stream tunnel.

Covers the length-prefixed target header written at the start of each
tunnelled stream, SOCKS5 address decoding and the SOCKS5 UDP request
header.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import BinaryIO

# Largest UDP datagram the relay will read in one go.
UDP_BUFFER_SIZE = 65535

# Largest target accepted by the two-byte length prefix.
MAX_TARGET_LENGTH = 0xFFFF

ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04


class ProtocolError(Exception):
    """Malformed or unsupported protocol data."""


class TruncatedError(ProtocolError, EOFError):
    """The data ended before a complete field could be read."""


class InvalidAddressError(ProtocolError):
    """An address field is empty or of an unknown type."""


class TargetHeaderTooLongError(ProtocolError):
    """The target does not fit in the two-byte length prefix."""


@dataclass(frozen=True)
class UDPHeader:
    """A parsed SOCKS5 UDP request: destination, payload and raw header bytes."""

    target: str
    payload: bytes
    header: bytes


def _encode(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = reader.read(size - len(buf))
        if not chunk:
            raise TruncatedError(f"expected {size} bytes, got {len(buf)}")
        buf += chunk
    return bytes(buf)


def encode_target_header(target: str) -> bytes:
    """Return the big-endian length-prefixed encoding of ``target``."""
    raw = _encode(target)
    if len(raw) > MAX_TARGET_LENGTH:
        raise TargetHeaderTooLongError("target header too long")
    return len(raw).to_bytes(2, "big") + raw


def read_target_header(reader: BinaryIO) -> str:
    """Read a length-prefixed target from a binary reader."""
    length = int.from_bytes(_read_exact(reader, 2), "big")
    return _decode(_read_exact(reader, length))


def join_host_port(host: str, port: int) -> str:
    """Combine host and port, bracketing hosts that contain a colon."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _format_ipv6(raw: bytes) -> str:
    addr = ipaddress.IPv6Address(raw)
    if addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return str(addr)


def parse_address(data: bytes, atyp: int, offset: int) -> tuple[str, int]:
    """Decode a SOCKS5 address of type ``atyp`` at ``offset``.

    Returns the host text and the offset just past the address.
    """
    if atyp == ATYP_IPV4:
        end = offset + 4
        if len(data) < end:
            raise TruncatedError("truncated IPv4 address")
        return str(ipaddress.IPv4Address(bytes(data[offset:end]))), end
    if atyp == ATYP_DOMAIN:
        if len(data) < offset + 1:
            raise TruncatedError("missing domain length")
        length = data[offset]
        if length == 0:
            raise InvalidAddressError("empty domain")
        start = offset + 1
        end = start + length
        if len(data) < end:
            raise TruncatedError("truncated domain")
        return _decode(bytes(data[start:end])), end
    if atyp == ATYP_IPV6:
        end = offset + 16
        if len(data) < end:
            raise TruncatedError("truncated IPv6 address")
        return _format_ipv6(bytes(data[offset:end])), end
    raise InvalidAddressError("invalid atyp")


def parse_udp_header(data: bytes) -> UDPHeader:
    """Parse a SOCKS5 UDP request datagram."""
    data = bytes(data)
    if len(data) < 4:
        raise TruncatedError("UDP header too short")
    if data[2] != 0:
        raise ProtocolError("fragmentation not supported")
    host, idx = parse_address(data, data[3], 4)
    if len(data) < idx + 2:
        raise TruncatedError("truncated port")
    port = int.from_bytes(data[idx:idx + 2], "big")
    idx += 2
    return UDPHeader(
        target=join_host_port(host, port),
        payload=data[idx:],
        header=data[:idx],
    )
import asyncio
import io
import socket

import pytest

from quicsocks.protocol import TargetHeaderTooLongError, encode_target_header, read_target_header
from quicsocks.tunnel import dial_tcp, handle_tcp, relay


class FakeWriter:
    def __init__(self, fail=False):
        self.data = bytearray()
        self.writes = []
        self.closed = False
        self.eof = False
        self.fail = fail

    def write(self, b):
        if self.closed or self.fail:
            raise ConnectionResetError("connection closed")
        self.data += b
        self.writes.append(bytes(b))

    async def drain(self):
        if self.closed:
            raise ConnectionResetError("connection closed")

    def can_write_eof(self):
        return True

    def write_eof(self):
        self.eof = True

    def close(self):
        self.closed = True

    def is_closing(self):
        return self.closed

    async def wait_closed(self):
        pass

    def get_extra_info(self, name, default=None):
        return default


def make_reader(data=b"", eof=True):
    reader = asyncio.StreamReader()
    if data:
        reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


def closed_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


async def start_echo_server():
    async def handle(r, w):
        data = await r.read()
        w.write(data)
        await w.drain()
        w.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


@pytest.mark.asyncio
async def test_relay_copies_both_directions():
    client_writer, remote_writer = FakeWriter(), FakeWriter()
    tx, rx = await relay(
        make_reader(b"hello"), client_writer, make_reader(b"world!"), remote_writer, 1024
    )
    assert (tx, rx) == (len(b"hello"), len(b"world!"))
    assert bytes(remote_writer.data) == b"hello"
    assert bytes(client_writer.data) == b"world!"
    assert remote_writer.eof and client_writer.eof


@pytest.mark.asyncio
async def test_relay_respects_buffer_size():
    payload = bytes(range(50))
    remote_writer = FakeWriter()
    tx, _ = await relay(make_reader(payload), FakeWriter(), make_reader(), remote_writer, 7)
    assert tx == len(payload)
    assert bytes(remote_writer.data) == payload
    assert all(len(chunk) <= 7 for chunk in remote_writer.writes)


@pytest.mark.asyncio
async def test_relay_write_failure_closes_both_sides():
    client_writer = FakeWriter()
    remote_writer = FakeWriter(fail=True)
    tx, _ = await asyncio.wait_for(
        relay(make_reader(b"data"), client_writer, make_reader(b"back"), remote_writer, 64), 2
    )
    assert tx == 0
    assert client_writer.closed and remote_writer.closed


@pytest.mark.asyncio
async def test_dial_tcp_writes_target_header():
    writer = FakeWriter()
    reader = make_reader()

    async def open_stream():
        return reader, writer

    got_reader, got_writer = await dial_tcp(open_stream, "example.com:80")
    assert got_reader is reader and got_writer is writer
    assert bytes(writer.data) == encode_target_header("example.com:80")
    assert read_target_header(io.BytesIO(bytes(writer.data))) == "example.com:80"
    assert not writer.closed


@pytest.mark.asyncio
async def test_dial_tcp_too_long_target_closes_stream():
    writer = FakeWriter()

    async def open_stream():
        return make_reader(), writer

    with pytest.raises(TargetHeaderTooLongError):
        await dial_tcp(open_stream, "a" * 70000)
    assert writer.closed


@pytest.mark.asyncio
async def test_dial_tcp_open_failure_propagates():
    async def open_stream():
        raise ConnectionRefusedError("refused")

    with pytest.raises(ConnectionRefusedError):
        await dial_tcp(open_stream, "example.com:80")


@pytest.mark.asyncio
async def test_handle_tcp_relays_to_target():
    server, port = await start_echo_server()
    try:
        reader = make_reader(encode_target_header(f"127.0.0.1:{port}") + b"ping")
        writer = FakeWriter()
        await asyncio.wait_for(handle_tcp(reader, writer, 2.0, 1024), 5)
        assert bytes(writer.data) == b"ping"
        assert writer.closed
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_handle_tcp_dial_failure_closes_stream():
    reader = make_reader(encode_target_header(f"127.0.0.1:{closed_port()}"))
    writer = FakeWriter()
    await asyncio.wait_for(handle_tcp(reader, writer, 2.0, 1024), 5)
    assert writer.closed
    assert bytes(writer.data) == b""


@pytest.mark.asyncio
async def test_handle_tcp_truncated_header_closes_stream():
    writer = FakeWriter()
    await handle_tcp(make_reader(b"\x00\x0aab"), writer, 2.0, 1024)
    assert writer.closed
    assert bytes(writer.data) == b""


@pytest.mark.asyncio
async def test_handle_tcp_target_without_port():
    writer = FakeWriter()
    await handle_tcp(make_reader(encode_target_header("example.com")), writer, 2.0, 1024)
    assert writer.closed
    assert bytes(writer.data) == b""
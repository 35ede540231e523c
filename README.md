# quicsocks

`quicsocks` holds the pieces of a SOCKS5 proxy that hands its traffic over
to a multiplexed stream transport:

- a SOCKS5 server that speaks the handshake, parses requests and dispatches
  `CONNECT` and `UDP ASSOCIATE` to dial coroutines you supply;
- the small wire formats used between the two ends of the tunnel (a
  length-prefixed target header and the SOCKS5 UDP datagram header);
- asyncio helpers that relay a TCP connection through a tunnel stream;
- connection telemetry counters and a connectivity monitor that notices when
  packets go out but nothing comes back.

It needs nothing beyond the standard library and runs on Python 3.10 or later.

## Modules

| Module                | What it provides |
|-----------------------|------------------|
| `quicsocks.protocol`  | `encode_target_header`, `read_target_header`, `join_host_port`, `parse_address`, `parse_udp_header`, `UDPHeader` and the errors `ProtocolError`, `TruncatedError`, `InvalidAddressError`, `TargetHeaderTooLongError` |
| `quicsocks.server`    | `serve`, `handle_client`, `handle_connect`, `handle_udp_associate`, `perform_handshake`, `parse_request`, `read_host`, `read_port`, `write_error`, `write_success`, `reply_code_for`, the enums `ReplyCode`, `Command`, `AddressType` and the errors `HandshakeError`, `RequestError`, `UnsupportedAddressTypeError` |
| `quicsocks.tunnel`    | `relay`, `dial_tcp`, `handle_tcp` |
| `quicsocks.telemetry` | `ConnTelemetry` and its `TelemetryStats` snapshot |
| `quicsocks.monitor`   | `ConnectivityMonitor` |

## Target headers

Each tunnel stream starts with the address it is meant for: two big-endian
length bytes followed by the `host:port` text. Targets longer than 65535 bytes
are refused with `TargetHeaderTooLongError`.

```python
from quicsocks.protocol import encode_target_header, join_host_port

header = encode_target_header(join_host_port("::1", 443))
# b"\x00\t[::1]:443"
```

`read_target_header` reads the same header back from a binary file-like
object and raises `TruncatedError` if the data ends early.

## SOCKS5 UDP datagrams

```python
from quicsocks.protocol import parse_udp_header

packet = bytes([0, 0, 0, 3, 1]) + b"a" + bytes([0, 53]) + b"\xff"
parsed = parse_udp_header(packet)
parsed.target    # "a:53"
parsed.payload   # b"\xff"
parsed.header    # the 8 header bytes, kept to prefix replies
```

Fragmented datagrams, unknown address types, empty domain names and truncated
packets raise a `ProtocolError` subclass. IPv4-mapped IPv6 addresses are shown
in their IPv4 form.

## Running the SOCKS5 front end

`serve(listen_addr, buf_size, dial_tcp, dial_udp)` is a coroutine that
listens on a `host:port` address and hands each accepted client to
`handle_client`. You supply two coroutines:

- `dial_tcp(target)` opens a path to a `host:port` target and returns an
  asyncio reader/writer pair;
- `dial_udp()` sets up a UDP relay and returns its bound `(host, port)` and an
  object whose `close()` (plain or awaitable) is called when the association
  ends.

Only the "no authentication" method is offered. `BIND` and other commands are
answered with `ReplyCode.COMMAND_NOT_SUPPORTED`, unknown address types with
`ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED`, and a failed dial with
`ReplyCode.GENERAL_FAILURE`. A UDP association lasts until the client closes
its TCP connection. At most 1000 clients are served at once; further
connections are closed straight away. Cancelling the task running `serve`
closes the listener, cancels the sessions still running and waits for them.

On the far side of the tunnel, `handle_tcp(reader, writer, dial_timeout,
buf_size)` reads the target header from an incoming stream, connects to the
target with `asyncio.open_connection` and relays bytes both ways with
`relay`. On the near side, `dial_tcp(open_stream, target)` opens a stream with
your `open_stream` coroutine and writes the header on it.

## Telemetry

```python
from quicsocks.telemetry import ConnTelemetry

with ConnTelemetry("transport", 30.0) as telemetry:
    telemetry.record_tx(100)
    telemetry.record_rx(250)
    telemetry.record_drop()
    print(telemetry.stats())
```

Counters are safe to update from many threads. A background thread logs a
summary every interval, but only when bytes moved or drops or rebinds were
seen. An interval of `0` uses the default of 30 seconds.

## Connectivity monitoring

```python
from quicsocks.monitor import ConnectivityMonitor

def reconnect():
    ...

with ConnectivityMonitor(reconnect, 0.25, 30.0, 4.0) as monitor:
    monitor.record_tx()
    monitor.record_rx()
```

The monitor checks every `check_interval` seconds (defaults: 0.25 s check
interval, 30 s idle timeout, 4 s asymmetric timeout). Both directions idle
past `idle_timeout` counts as a normal quiet link. The callback fires when
packets were sent within `asymmetric_timeout` but nothing arrived for longer
than that, or when something was sent within the last check interval while
nothing arrived for longer than `idle_timeout`. `check()` runs one such
evaluation on demand and returns whether a failure was detected.

## What this package does not do

- It has no multiplexed transport of its own: the streams that carry tunnelled
  traffic come from the `open_stream`, `dial_tcp` and `dial_udp` coroutines
  you pass in.
- It does not relay UDP datagrams. `parse_udp_header` decodes them, but
  binding the UDP socket and forwarding its packets is up to your `dial_udp`.
- It has no command-line program and no configuration file; it is used as a
  library from your own asyncio code.

## Tests

The test suite uses pytest and pytest-asyncio, both listed in the `test`
extra.
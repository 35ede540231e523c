"""SOCKS5 front end, tunnel wire formats and relay helpers, and connection telemetry."""

__version__ = "0.1.0"

__all__ = ["monitor", "protocol", "server", "telemetry", "tunnel"]
"""Connection-level counters with periodic logging."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_TELEMETRY_INTERVAL = 30.0


@dataclass(frozen=True)
class TelemetryStats:
    """A snapshot of the counters of a :class:`ConnTelemetry`."""

    tx_bytes: int = 0
    rx_bytes: int = 0
    tx_packets: int = 0
    rx_packets: int = 0
    drops: int = 0
    rebinds: int = 0


class ConnTelemetry:
    """Thread-safe traffic counters logged every ``interval`` seconds."""

    def __init__(self, layer: str, interval: float = 0) -> None:
        self.layer = layer
        self.interval = interval or DEFAULT_TELEMETRY_INTERVAL
        self._lock = threading.Lock()
        self._tx_bytes = 0
        self._rx_bytes = 0
        self._tx_packets = 0
        self._rx_packets = 0
        self._drops = 0
        self._rebinds = 0
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._log_loop, name=f"telemetry-{layer}", daemon=True
        )
        self._thread.start()

    def record_tx(self, nbytes: int) -> None:
        """Count one transmitted packet of ``nbytes`` bytes."""
        with self._lock:
            self._tx_bytes += nbytes
            self._tx_packets += 1

    def record_rx(self, nbytes: int) -> None:
        """Count one received packet of ``nbytes`` bytes."""
        with self._lock:
            self._rx_bytes += nbytes
            self._rx_packets += 1

    def record_drop(self) -> None:
        """Count a dropped connection or packet."""
        with self._lock:
            self._drops += 1

    def record_rebind(self) -> None:
        """Count a socket rebind."""
        with self._lock:
            self._rebinds += 1

    def stats(self) -> TelemetryStats:
        """Return the current counters."""
        with self._lock:
            return TelemetryStats(
                self._tx_bytes,
                self._rx_bytes,
                self._tx_packets,
                self._rx_packets,
                self._drops,
                self._rebinds,
            )

    def _log_loop(self) -> None:
        last_tx = last_rx = 0
        while not self._stop.wait(self.interval):
            s = self.stats()
            if s.tx_bytes != last_tx or s.rx_bytes != last_rx or s.drops > 0 or s.rebinds > 0:
                logger.info(
                    "Transport Telemetry layer=%s interval=%ss tx_bytes=%d rx_bytes=%d "
                    "tx_pkts=%d rx_pkts=%d drops=%d rebinds=%d",
                    self.layer,
                    self.interval,
                    s.tx_bytes,
                    s.rx_bytes,
                    s.tx_packets,
                    s.rx_packets,
                    s.drops,
                    s.rebinds,
                )
                last_tx, last_rx = s.tx_bytes, s.rx_bytes

    def close(self) -> None:
        """Stop the logging thread and wait for it to finish."""
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join()

    def __enter__(self) -> "ConnTelemetry":
        return self

    def __exit__(self, *args) -> None:
        self.close()
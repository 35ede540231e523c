"""Detection of one-way or stalled connectivity from packet activity."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Watch TX/RX activity and call ``on_failure`` when traffic looks one-sided.

    Times are seconds on the monotonic clock; ``last_tx`` and ``last_rx``
    hold the most recent activity.
    """

    def __init__(
        self,
        on_failure: Optional[Callable[[], None]],
        check_interval: float = 0.25,
        idle_timeout: float = 30.0,
        asymmetric_timeout: float = 4.0,
    ) -> None:
        self.on_failure = on_failure
        self.check_interval = check_interval
        self.idle_timeout = idle_timeout
        self.asymmetric_timeout = asymmetric_timeout
        now = time.monotonic()
        self.last_tx = now
        self.last_rx = now
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop, name="connectivity-monitor", daemon=True
        )
        self._thread.start()

    def record_tx(self) -> None:
        """Note a packet transmission now."""
        self.last_tx = time.monotonic()

    def record_rx(self) -> None:
        """Note a packet reception now."""
        self.last_rx = time.monotonic()

    def _loop(self) -> None:
        while not self._stop.wait(self.check_interval):
            if self._stop.is_set():
                return
            self.check()

    def check(self) -> bool:
        """Evaluate activity once; return True if a failure was detected."""
        now = time.monotonic()
        since_rx = now - self.last_rx
        since_tx = now - self.last_tx
        logger.debug(
            "Checking connectivity time_since_rx=%.3fs time_since_tx=%.3fs",
            since_rx,
            since_tx,
        )

        if since_rx > self.idle_timeout and since_tx > self.idle_timeout:
            logger.debug("Connection idle (normal state) idle_timeout=%ss", self.idle_timeout)
            return False

        if since_tx < self.asymmetric_timeout and since_rx > self.asymmetric_timeout:
            logger.warning(
                "Connectivity issue detected: sending packets but not receiving "
                "time_since_rx=%.0fs time_since_tx=%.0fs",
                since_rx,
                since_tx,
            )
            self._fail()
            return True

        if since_tx < self.check_interval and since_rx > self.idle_timeout:
            logger.warning(
                "Connectivity issue detected: recent TX but no RX for extended period "
                "time_since_rx=%.0fs",
                since_rx,
            )
            self._fail()
            return True

        return False

    def _fail(self) -> None:
        if self.on_failure is not None:
            self.on_failure()

    def close(self) -> None:
        """Stop the monitoring thread."""
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join()

    def __enter__(self) -> "ConnectivityMonitor":
        return self

    def __exit__(self, *args) -> None:
        self.close()
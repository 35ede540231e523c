import logging
import threading
import time

from quicsocks.telemetry import ConnTelemetry, TelemetryStats

HOUR = 3600.0
LOGGER = "quicsocks.telemetry"


def test_record_tx():
    with ConnTelemetry("test", HOUR) as tel:
        tel.record_tx(100)
        tel.record_tx(200)
        stats = tel.stats()
    assert stats.tx_bytes == 300
    assert stats.tx_packets == 2


def test_record_rx():
    with ConnTelemetry("test", HOUR) as tel:
        tel.record_rx(150)
        tel.record_rx(250)
        stats = tel.stats()
    assert stats.rx_bytes == 400
    assert stats.rx_packets == 2


def test_record_drop():
    with ConnTelemetry("test", HOUR) as tel:
        for _ in range(3):
            tel.record_drop()
        assert tel.stats().drops == 3


def test_record_rebind():
    with ConnTelemetry("test", HOUR) as tel:
        tel.record_rebind()
        tel.record_rebind()
        assert tel.stats().rebinds == 2


def test_concurrent_recording():
    workers, iterations = 20, 100
    with ConnTelemetry("test", HOUR) as tel:

        def run(action):
            for _ in range(iterations):
                action()

        threads = []
        for _ in range(workers):
            threads.append(threading.Thread(target=run, args=(lambda: tel.record_tx(10),)))
            threads.append(threading.Thread(target=run, args=(lambda: tel.record_rx(20),)))
            threads.append(threading.Thread(target=run, args=(tel.record_drop,)))
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        stats = tel.stats()

    packets = workers * iterations
    assert stats == TelemetryStats(
        tx_bytes=packets * 10,
        rx_bytes=packets * 20,
        tx_packets=packets,
        rx_packets=packets,
        drops=packets,
        rebinds=0,
    )


def test_default_interval():
    with ConnTelemetry("test", 0) as tel:
        assert tel.interval == 30.0


def test_log_loop_with_activity(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER)
    with ConnTelemetry("test", 0.1) as tel:
        tel.record_tx(100)
        tel.record_rx(200)
        tel.record_drop()
        tel.record_rebind()
        time.sleep(0.35)
        stats = tel.stats()
    assert (stats.tx_bytes, stats.rx_bytes, stats.drops, stats.rebinds) == (100, 200, 1, 1)
    messages = [r.getMessage() for r in caplog.records if r.name == LOGGER]
    assert any("Transport Telemetry" in m and "tx_bytes=100" in m for m in messages)


def test_log_loop_no_activity(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER)
    with ConnTelemetry("test", 0.1) as tel:
        time.sleep(0.25)
        stats = tel.stats()
    assert stats == TelemetryStats()
    assert [r for r in caplog.records if r.name == LOGGER] == []


def test_close_stops_thread():
    tel = ConnTelemetry("test", 0.05)
    tel.close()
    assert not tel._thread.is_alive()
"""
Serial Load Monitor
Byte counters sampled into a utilization estimate of the serial link
"""

import time
from typing import Callable

from dvbridge.lib.models.messages import SerialLoadStatus, StatusLevel

SERIAL_LOAD_SAMPLE_MS = 1000
# 8N1: start bit + 8 data bits + stop bit
BITS_PER_BYTE = 10
HIGH_LOAD = 0.85
ELEVATED_LOAD = 0.65


class SerialLoadMonitor:
    """Counts rx/tx bytes between samples"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.reset()

    def reset(self):
        self.window_started_at = self._clock()
        self.rx_bytes = 0
        self.tx_bytes = 0

    def record_rx(self, byte_count: int):
        if byte_count > 0:
            self.rx_bytes += byte_count

    def record_tx(self, byte_count: int):
        if byte_count > 0:
            self.tx_bytes += byte_count

    def sample(self, connected: bool, baudrate: int) -> SerialLoadStatus:
        """Close the current window and estimate link utilization over it"""
        elapsed_ms = max(1.0, (self._clock() - self.window_started_at) * 1000.0)
        rx_bytes, tx_bytes = self.rx_bytes, self.tx_bytes
        self.reset()

        if not connected:
            return SerialLoadStatus()

        bits_per_sec = (rx_bytes + tx_bytes) * BITS_PER_BYTE * 1000.0 / elapsed_ms
        utilization = bits_per_sec / baudrate if baudrate > 0 else 0.0
        rx_rate = round(rx_bytes * 1000.0 / elapsed_ms)
        tx_rate = round(tx_bytes * 1000.0 / elapsed_ms)
        percent = f"{round(utilization * 100)}%"
        rates = f"rx {rx_rate}B/s tx {tx_rate}B/s"

        if utilization >= HIGH_LOAD:
            level, text = StatusLevel.WARN, f"high {percent} (overrun risk, {rates})"
        elif utilization >= ELEVATED_LOAD:
            level, text = StatusLevel.WARN, f"elevated {percent} ({rates})"
        else:
            level, text = StatusLevel.OK, f"{percent} ({rates})"

        return SerialLoadStatus(
            level=level,
            utilization=utilization,
            rx_bytes_per_sec=rx_rate,
            tx_bytes_per_sec=tx_rate,
            text=text,
        )

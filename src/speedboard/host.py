from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime

import psutil

from .aggregator import format_flow


@dataclass(slots=True)
class HostMetrics:
    recv_bps: float = 0.0
    sent_bps: float = 0.0
    updated_at: datetime | None = None


class HostMonitor:
    """Interface throughput from the OS counters, to compare with the estimate."""

    def __init__(self) -> None:
        self.metrics = HostMetrics()
        self._last_net = psutil.net_io_counters()
        self._last_net_ts = time.time()

    def refresh(self) -> HostMetrics:
        now = time.time()
        current = psutil.net_io_counters()
        elapsed = max(0.001, now - self._last_net_ts)

        recv_bps = max(0.0, (current.bytes_recv - self._last_net.bytes_recv) / elapsed)
        sent_bps = max(0.0, (current.bytes_sent - self._last_net.bytes_sent) / elapsed)

        self._last_net = current
        self._last_net_ts = now

        self.metrics = HostMetrics(
            recv_bps=recv_bps, sent_bps=sent_bps, updated_at=datetime.now()
        )
        return self.metrics


def human_bytes_per_second(value: float) -> str:
    return f"{format_flow(max(0.0, value))}/s"

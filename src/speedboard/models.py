from __future__ import annotations

import threading
from collections.abc import Hashable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal

Severity = Literal["info", "success", "warning", "danger"]
SEVERITIES: tuple[str, ...] = ("info", "success", "warning", "danger")


class NodeStatus(str, Enum):
    PENDING = "pending"
    PINGING = "pinging"
    DOWNLOADING = "downloading"
    ERROR = "error"


# Forward-only progression; ERROR sits outside it.
_STATUS_RANK = {
    NodeStatus.PENDING: 0,
    NodeStatus.PINGING: 1,
    NodeStatus.DOWNLOADING: 2,
}


class EngineState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class Target:
    id: Hashable
    name: str
    url: str

    @property
    def request_url(self) -> str:
        url = self.url.strip()
        if url.lower().startswith(("http://", "https://")):
            return url
        return f"https://{url}"


@dataclass(slots=True)
class NodeState:
    """Mutable per-target counters shared by workers, sampler and aggregator.

    Every cell carries its own lock so unrelated targets never contend.
    """

    id: Hashable
    name: str
    bytes_transferred: int = 0
    last_latency_ms: int | None = None
    status: NodeStatus = NodeStatus.PENDING
    pinging: bool = False
    failure_streak: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    @classmethod
    def for_target(cls, target: Target) -> NodeState:
        return cls(id=target.id, name=target.name)

    def add_bytes(self, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self.bytes_transferred += count
            self.failure_streak = 0
            if self.status is NodeStatus.ERROR:
                self.status = NodeStatus.DOWNLOADING

    def set_latency(
        self, latency_ms: int, recover_to: NodeStatus = NodeStatus.PINGING
    ) -> None:
        with self._lock:
            self.last_latency_ms = max(0, int(latency_ms))
            self.failure_streak = 0
            if self.status is NodeStatus.ERROR:
                self.status = recover_to

    def advance_status(self, new_status: NodeStatus) -> bool:
        """Move status forward along pending -> pinging -> downloading.

        Returns True only for the caller that performed the transition.
        """
        with self._lock:
            current = _STATUS_RANK.get(self.status)
            target = _STATUS_RANK.get(new_status)
            if current is None or target is None or target <= current:
                return False
            self.status = new_status
            return True

    def try_begin_ping(self) -> bool:
        with self._lock:
            if self.pinging:
                return False
            self.pinging = True
            if self.status is NodeStatus.PENDING:
                self.status = NodeStatus.PINGING
            return True

    def end_ping(self) -> None:
        with self._lock:
            self.pinging = False

    def record_failure(self, threshold: int) -> bool:
        """Count a failed attempt; returns True when this promotes to ERROR."""
        with self._lock:
            self.failure_streak += 1
            if (
                self.status is not NodeStatus.ERROR
                and self.failure_streak >= threshold
                and self.last_latency_ms is None
                and self.bytes_transferred == 0
            ):
                self.status = NodeStatus.ERROR
                return True
            return False

    def read(self) -> tuple[int, int | None, NodeStatus]:
        with self._lock:
            return self.bytes_transferred, self.last_latency_ms, self.status


@dataclass(frozen=True, slots=True)
class NodeView:
    id: Hashable
    name: str
    status: NodeStatus
    bytes_transferred: int
    latency_ms: int | None
    speed_mbs: float
    speed_str: str
    latency_str: str
    flow_str: str


@dataclass(frozen=True, slots=True)
class Snapshot:
    speed_mbs: float = 0.0
    avg_latency_ms: int | None = None
    cumulative_bytes: int = 0
    cumulative_str: str = "0.00 KB"
    elapsed_seconds: float = 0.0
    duration_str: str = "00:00"
    nodes: tuple[NodeView, ...] = ()
    taken_at: datetime | None = None

    @property
    def speed_str(self) -> str:
        return f"{self.speed_mbs:.2f}"

    @property
    def latency_str(self) -> str:
        if self.avg_latency_ms is None:
            return "Calculating..."
        return str(self.avg_latency_ms)


@dataclass(frozen=True, slots=True)
class SeriesPoint:
    timestamp: datetime
    label: str
    speed_mbs: float
    avg_latency_ms: int | None


@dataclass(frozen=True, slots=True)
class LogEntry:
    timestamp: datetime
    severity: Severity
    message: str

    @property
    def time_label(self) -> str:
        return self.timestamp.strftime("%H:%M:%S")

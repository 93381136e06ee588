from __future__ import annotations

import time
from collections.abc import Hashable, Mapping
from datetime import datetime

from .models import NodeState, NodeStatus, NodeView, SeriesPoint, Snapshot

KIB = 1024
MIB = 1024 * 1024
GIB = 1024 * 1024 * 1024


def format_flow(num_bytes: float) -> str:
    if num_bytes < MIB:
        return f"{num_bytes / KIB:.2f} KB"
    if num_bytes < GIB:
        return f"{num_bytes / MIB:.2f} MB"
    return f"{num_bytes / GIB:.2f} GB"


def format_speed(speed_mbs: float) -> str:
    return f"{speed_mbs:.2f} MB/s"


def format_latency(latency_ms: int | None) -> str:
    if latency_ms is None:
        return "--"
    return f"{latency_ms} ms"


def format_duration(seconds: float) -> str:
    total = int(max(0, seconds))
    m, s = divmod(total, 60)
    return f"{m:02d}:{s:02d}"


def _round_ms(value: float) -> int:
    # half-up, latencies are never negative
    return int(value + 0.5)


def _sort_key(node_id: Hashable) -> tuple[int, object]:
    # Catalog ids are ints, custom nodes get string ids; never compare the two.
    if isinstance(node_id, (int, float)) and not isinstance(node_id, bool):
        return (0, node_id)
    return (1, str(node_id))


def _node_view(
    node_id: Hashable,
    name: str,
    num_bytes: int,
    latency: int | None,
    status: NodeStatus,
    speed_mbs: float,
) -> NodeView:
    return NodeView(
        id=node_id,
        name=name,
        status=status,
        bytes_transferred=num_bytes,
        latency_ms=latency,
        speed_mbs=speed_mbs,
        speed_str=format_speed(speed_mbs),
        latency_str=format_latency(latency),
        flow_str=format_flow(num_bytes),
    )


class TimeSeries:
    """Sliding window of chart points, published as an immutable tuple."""

    def __init__(self, max_points: int = 120) -> None:
        if max_points < 1:
            raise ValueError("max_points must be positive")
        self.max_points = max_points
        self._points: tuple[SeriesPoint, ...] = ()

    @property
    def points(self) -> tuple[SeriesPoint, ...]:
        return self._points

    def __len__(self) -> int:
        return len(self._points)

    def append(self, point: SeriesPoint) -> None:
        self._points = (self._points + (point,))[-self.max_points :]


class MetricsAggregator:
    """Reduces the shared node table into one Snapshot and one chart point per tick."""

    def __init__(
        self,
        states: Mapping[Hashable, NodeState],
        tick_interval: float = 1.0,
        max_points: int = 120,
        baseline_bytes: int = 0,
        started_at: float | None = None,
    ) -> None:
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        self.states = states
        self.tick_interval = tick_interval
        self.baseline_bytes = baseline_bytes
        self.started_at = time.monotonic() if started_at is None else started_at
        self.series = TimeSeries(max_points)
        self._last_bytes: dict[Hashable, int] = {}
        self._snapshot = Snapshot(nodes=self._initial_views())

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    def tick(self, now: float | None = None, wall: datetime | None = None) -> Snapshot:
        if now is None:
            now = time.monotonic()
        if wall is None:
            wall = datetime.now()

        total_speed = 0.0
        total_bytes = 0
        latencies: list[int] = []
        views: list[NodeView] = []

        for node_id, state in self.states.items():
            current, latency, status = state.read()
            delta = max(0, current - self._last_bytes.get(node_id, 0))
            self._last_bytes[node_id] = current

            node_speed = (delta / MIB) / self.tick_interval
            total_speed += node_speed
            total_bytes += current
            if latency is not None:
                latencies.append(latency)

            views.append(
                _node_view(node_id, state.name, current, latency, status, node_speed)
            )

        avg_latency = (
            _round_ms(sum(latencies) / len(latencies)) if latencies else None
        )
        cumulative = self.baseline_bytes + total_bytes
        elapsed = max(0.0, now - self.started_at)

        snapshot = Snapshot(
            speed_mbs=total_speed,
            avg_latency_ms=avg_latency,
            cumulative_bytes=cumulative,
            cumulative_str=format_flow(cumulative),
            elapsed_seconds=elapsed,
            duration_str=format_duration(elapsed),
            nodes=tuple(sorted(views, key=lambda view: _sort_key(view.id))),
            taken_at=wall,
        )
        self._snapshot = snapshot
        self.series.append(
            SeriesPoint(
                timestamp=wall,
                label=wall.strftime("%H:%M:%S"),
                speed_mbs=total_speed,
                avg_latency_ms=avg_latency,
            )
        )
        return snapshot

    def _initial_views(self) -> tuple[NodeView, ...]:
        views = [
            _node_view(node_id, state.name, *state.read(), 0.0)
            for node_id, state in self.states.items()
        ]
        return tuple(sorted(views, key=lambda view: _sort_key(view.id)))

"""Tests for speedboard.aggregator reduction, windowing and formatting."""

from datetime import datetime, timedelta

import pytest

from speedboard.aggregator import (
    MIB,
    MetricsAggregator,
    TimeSeries,
    format_duration,
    format_flow,
    format_latency,
    format_speed,
)
from speedboard.models import NodeState, NodeStatus, SeriesPoint


def _states(*ids):
    return {node_id: NodeState(id=node_id, name=f"node-{node_id}") for node_id in ids}


def _point(i):
    ts = datetime(2024, 1, 1) + timedelta(seconds=i)
    return SeriesPoint(
        timestamp=ts,
        label=ts.strftime("%H:%M:%S"),
        speed_mbs=float(i),
        avg_latency_ms=i,
    )


class TestFormatting:
    """Display formatting helpers."""

    def test_flow_thresholds(self):
        assert format_flow(0) == "0.00 KB"
        assert format_flow(1536) == "1.50 KB"
        assert format_flow(MIB - 1).endswith(" KB")
        assert format_flow(MIB) == "1.00 MB"
        assert format_flow(1024 * MIB - 1).endswith(" MB")
        assert format_flow(1024 * MIB) == "1.00 GB"
        assert format_flow(int(2.5 * 1024 * MIB)) == "2.50 GB"

    def test_speed_and_latency(self):
        assert format_speed(3.14159) == "3.14 MB/s"
        assert format_latency(None) == "--"
        assert format_latency(18) == "18 ms"

    def test_duration(self):
        assert format_duration(0) == "00:00"
        assert format_duration(59.9) == "00:59"
        assert format_duration(61) == "01:01"
        assert format_duration(3725) == "62:05"
        assert format_duration(-5) == "00:00"


class TestTimeSeries:
    """Bounded sliding window."""

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            TimeSeries(0)

    def test_never_exceeds_capacity(self):
        series = TimeSeries(max_points=3)
        for i in range(10):
            series.append(_point(i))
            assert len(series) <= 3

    def test_evicts_oldest_first(self):
        series = TimeSeries(max_points=3)
        for i in range(5):
            series.append(_point(i))

        assert [p.speed_mbs for p in series.points] == [2.0, 3.0, 4.0]

        series.append(_point(5))
        assert [p.speed_mbs for p in series.points] == [3.0, 4.0, 5.0]

    def test_published_tuple_is_not_mutated(self):
        series = TimeSeries(max_points=2)
        series.append(_point(0))
        published = series.points
        series.append(_point(1))
        series.append(_point(2))

        assert [p.speed_mbs for p in published] == [0.0]


class TestMetricsAggregator:
    """Per-tick reduction of the node table."""

    def test_speed_from_delta(self):
        states = _states(1)
        agg = MetricsAggregator(states, tick_interval=1.0, started_at=0.0)

        states[1].add_bytes(2 * MIB)
        first = agg.tick(now=1.0)
        states[1].add_bytes(MIB)
        second = agg.tick(now=2.0)

        assert first.speed_mbs == pytest.approx(2.0)
        assert second.speed_mbs == pytest.approx(1.0)
        assert second.cumulative_bytes == 3 * MIB

    def test_speed_scales_with_tick_interval(self):
        states = _states(1)
        agg = MetricsAggregator(states, tick_interval=0.5, started_at=0.0)
        states[1].add_bytes(MIB)

        assert agg.tick(now=0.5).speed_mbs == pytest.approx(2.0)

    def test_idle_tick_reports_zero_speed(self):
        states = _states(1)
        agg = MetricsAggregator(states, started_at=0.0)
        states[1].add_bytes(MIB)
        agg.tick(now=1.0)

        snapshot = agg.tick(now=2.0)

        assert snapshot.speed_mbs == 0.0
        assert snapshot.cumulative_bytes == MIB

    def test_total_is_sum_of_nodes(self):
        states = _states(1, 2, 3)
        agg = MetricsAggregator(states, started_at=0.0)
        states[1].add_bytes(MIB)
        states[2].add_bytes(3 * MIB)

        snapshot = agg.tick(now=1.0)

        assert all(view.speed_mbs >= 0 for view in snapshot.nodes)
        assert snapshot.speed_mbs == pytest.approx(
            sum(view.speed_mbs for view in snapshot.nodes)
        )
        assert snapshot.speed_mbs == pytest.approx(4.0)

    def test_sum_of_deltas_equals_final_bytes(self):
        states = _states(1)
        agg = MetricsAggregator(states, tick_interval=1.0, started_at=0.0)
        total_speed = 0.0
        for i, amount in enumerate([100, 0, 4096, 77, 123456]):
            states[1].add_bytes(amount)
            total_speed += agg.tick(now=float(i + 1)).nodes[0].speed_mbs

        assert total_speed * MIB == pytest.approx(states[1].bytes_transferred)

    def test_avg_latency_absent_until_any_sample(self):
        states = _states(1, 2)
        agg = MetricsAggregator(states, started_at=0.0)

        assert agg.tick(now=1.0).avg_latency_ms is None

        states[2].set_latency(30)
        assert agg.tick(now=2.0).avg_latency_ms == 30

    def test_avg_latency_ignores_missing_and_rounds(self):
        states = _states(1, 2, 3)
        agg = MetricsAggregator(states, started_at=0.0)
        states[1].set_latency(10)
        states[2].set_latency(11)

        assert agg.tick(now=1.0).avg_latency_ms == 11

    def test_baseline_added_to_cumulative(self):
        states = _states(1)
        agg = MetricsAggregator(states, baseline_bytes=1000, started_at=0.0)
        states[1].add_bytes(24)

        snapshot = agg.tick(now=1.0)

        assert snapshot.cumulative_bytes == 1024
        assert snapshot.cumulative_str == "1.00 KB"

    def test_elapsed_and_duration(self):
        agg = MetricsAggregator(_states(1), started_at=100.0)

        snapshot = agg.tick(now=165.0)

        assert snapshot.elapsed_seconds == pytest.approx(65.0)
        assert snapshot.duration_str == "01:05"

    def test_nodes_sorted_by_id_with_mixed_ids(self):
        states = {
            "custom-1": NodeState(id="custom-1", name="custom"),
            3: NodeState(id=3, name="three"),
            1: NodeState(id=1, name="one"),
        }
        agg = MetricsAggregator(states, started_at=0.0)

        ids = [view.id for view in agg.tick(now=1.0).nodes]

        assert ids == [1, 3, "custom-1"]

    def test_node_view_fields(self):
        states = _states(1)
        agg = MetricsAggregator(states, started_at=0.0)
        states[1].add_bytes(MIB)
        states[1].advance_status(NodeStatus.DOWNLOADING)

        view = agg.tick(now=1.0).nodes[0]

        assert view.name == "node-1"
        assert view.status is NodeStatus.DOWNLOADING
        assert view.speed_str == "1.00 MB/s"
        assert view.latency_str == "--"
        assert view.flow_str == "1.00 MB"

    def test_snapshot_published_per_tick(self):
        states = _states(1)
        agg = MetricsAggregator(states, started_at=0.0)
        before = agg.snapshot

        after = agg.tick(now=1.0)

        assert before is not after
        assert agg.snapshot is after
        assert before.taken_at is None

    def test_initial_snapshot_lists_nodes(self):
        agg = MetricsAggregator(_states(2, 1), started_at=0.0)

        assert [view.id for view in agg.snapshot.nodes] == [1, 2]
        assert agg.snapshot.speed_mbs == 0.0

    def test_series_appended_in_tick_order_and_bounded(self):
        states = _states(1)
        agg = MetricsAggregator(states, max_points=4, started_at=0.0)
        base = datetime(2024, 1, 1, 12, 0, 0)

        for i in range(6):
            states[1].add_bytes(MIB * i)
            agg.tick(now=float(i + 1), wall=base + timedelta(seconds=i))

        points = agg.series.points
        assert len(points) == 4
        assert [p.label for p in points] == [
            "12:00:02",
            "12:00:03",
            "12:00:04",
            "12:00:05",
        ]
        assert [p.speed_mbs for p in points] == pytest.approx([2.0, 3.0, 4.0, 5.0])

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            MetricsAggregator({}, tick_interval=0)

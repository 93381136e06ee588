from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable, Hashable, Iterable
from functools import partial

import httpx

from .aggregator import MetricsAggregator, format_duration, format_flow
from .config import EngineConfig, clamp_workers
from .eventlog import EventLog
from .models import (
    EngineState,
    LogEntry,
    NodeState,
    NodeStatus,
    NodeView,
    SeriesPoint,
    Snapshot,
    Target,
)
from .probes import LatencySampler, TrafficWorkerPool

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Snapshot], None]


def _unique_targets(targets: Iterable[Target]) -> list[Target]:
    seen: set[Hashable] = set()
    unique: list[Target] = []
    for target in targets:
        if target.id in seen:
            continue
        seen.add(target.id)
        unique.append(target)
    return unique


class Engine:
    """Owns one measurement session at a time.

    ``start`` builds a fresh node table and launches the latency sweep, the
    traffic workers and the aggregation tick, all sharing one stop event.
    ``stop`` signals that event and cancels the session's tasks without
    waiting for them; ``aclose`` (or leaving ``async with``) also waits for
    them and releases the HTTP client.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        client: httpx.AsyncClient | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config if config is not None else EngineConfig()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=self.config.request_timeout_seconds,
            follow_redirects=True,
        )
        self._rng = rng

        self.state = EngineState.IDLE
        self.event_log = EventLog(self.config.log_limit)
        self.event_log.append("Ready to test.")

        self.targets: tuple[Target, ...] = ()
        self.states: dict[Hashable, NodeState] = {}
        self.worker_count = 0

        self._stop_event = asyncio.Event()
        self._aggregator: MetricsAggregator | None = None
        self._sampler: LatencySampler | None = None
        self._pool: TrafficWorkerPool | None = None
        self._tasks: list[asyncio.Task] = []
        self._retired: set[asyncio.Task] = set()
        self._subscribers: list[SnapshotCallback] = []
        self._reported_errors: set[Hashable] = set()

    async def __aenter__(self) -> Engine:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def is_running(self) -> bool:
        return self.state is EngineState.RUNNING

    @property
    def status_text(self) -> str:
        if self.state is EngineState.RUNNING:
            return f"Running ({self.worker_count} Workers)"
        if self.state is EngineState.STOPPED:
            return "Stopped"
        return "Idle"

    @property
    def snapshot(self) -> Snapshot:
        if self._aggregator is None:
            return Snapshot()
        return self._aggregator.snapshot

    @property
    def nodes(self) -> tuple[NodeView, ...]:
        return self.snapshot.nodes

    @property
    def series(self) -> tuple[SeriesPoint, ...]:
        if self._aggregator is None:
            return ()
        return self._aggregator.series.points

    @property
    def logs(self) -> tuple[LogEntry, ...]:
        return self.event_log.entries

    @property
    def active_workers(self) -> int:
        return self._pool.active_workers if self._pool is not None else 0

    def configure(self, worker_count: int | None = None) -> None:
        """Change the defaults used by the next ``start``."""
        if worker_count is not None:
            self.config.worker_count = clamp_workers(worker_count)

    def subscribe(self, callback: SnapshotCallback) -> SnapshotCallback:
        self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: SnapshotCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def start(
        self, targets: Iterable[Target] | None, worker_count: int | None = None
    ) -> bool:
        unique = _unique_targets(targets or ())
        if not unique:
            self.event_log.append("No nodes selected.", "warning")
            return False

        if self.is_running:
            self.stop()

        config = self.config
        count = clamp_workers(
            config.worker_count if worker_count is None else worker_count
        )

        self.targets = tuple(unique)
        self.states = {target.id: NodeState.for_target(target) for target in unique}
        self.worker_count = count
        self._reported_errors = set()
        self._stop_event = asyncio.Event()
        self._aggregator = MetricsAggregator(
            self.states,
            tick_interval=config.tick_seconds,
            max_points=config.max_points,
        )
        self._sampler = LatencySampler(
            self.client,
            self.states,
            timeout_seconds=config.ping_timeout_seconds,
            failure_threshold=config.failure_threshold,
        )
        self._pool = TrafficWorkerPool(
            self.client,
            self.states,
            rotate_seconds=config.rotate_seconds,
            backoff_seconds=config.backoff_seconds,
            failure_threshold=config.failure_threshold,
            rng=self._rng,
        )

        stop_event = self._stop_event
        self._tasks = [
            asyncio.create_task(
                self._run_periodic(
                    config.ping_interval_seconds,
                    partial(self._sampler.sweep, unique, stop_event),
                    stop_event,
                    immediate=True,
                ),
                name="latency-sweep",
            ),
            *self._pool.spawn(count, unique, stop_event),
            asyncio.create_task(
                self._run_periodic(
                    config.tick_seconds,
                    partial(self._tick, self._aggregator),
                    stop_event,
                    immediate=False,
                ),
                name="aggregator",
            ),
        ]

        self.state = EngineState.RUNNING
        self.event_log.append(
            f"Started traffic mode: {len(unique)} nodes, {count} workers.", "info"
        )
        return True

    def stop(self) -> bool:
        if not self.is_running:
            return False

        self._stop_event.set()
        pending = list(self._tasks)
        if self._sampler is not None:
            pending.extend(self._sampler.cancel_inflight())
        for task in pending:
            task.cancel()
            self._retired.add(task)
            task.add_done_callback(self._retired.discard)
        self._tasks = []
        self.state = EngineState.STOPPED

        total = sum(state.read()[0] for state in self.states.values())
        elapsed = 0.0
        if self._aggregator is not None:
            elapsed = time.monotonic() - self._aggregator.started_at
        self.event_log.append(
            f"Test stopped: {format_flow(total)} in {format_duration(elapsed)}.",
            "success",
        )
        return True

    async def aclose(self) -> None:
        self.stop()
        if self._retired:
            await asyncio.gather(*list(self._retired), return_exceptions=True)
        if self._owns_client:
            await self.client.aclose()

    async def _run_periodic(
        self,
        interval: float,
        callback: Callable[[], object],
        stop_event: asyncio.Event,
        *,
        immediate: bool,
    ) -> None:
        # deadlines advance by whole intervals so the period never drifts
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (0.0 if immediate else interval)
        while not stop_event.is_set():
            delay = deadline - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            if stop_event.is_set():
                return
            try:
                callback()
            except Exception:
                logger.exception("Periodic task %r failed", callback)
            deadline += interval
            now = loop.time()
            while deadline <= now:
                deadline += interval

    def _tick(self, aggregator: MetricsAggregator) -> None:
        snapshot = aggregator.tick()
        self._report_errors(snapshot)
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot subscriber %r failed", callback)

    def _report_errors(self, snapshot: Snapshot) -> None:
        for view in snapshot.nodes:
            if view.status is NodeStatus.ERROR:
                if view.id not in self._reported_errors:
                    self._reported_errors.add(view.id)
                    self.event_log.append(
                        f"{view.name} unreachable: every probe has failed.", "danger"
                    )
            else:
                self._reported_errors.discard(view.id)

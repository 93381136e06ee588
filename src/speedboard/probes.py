from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Hashable, Mapping, Sequence

import httpx

from .config import clamp_workers
from .models import NodeState, NodeStatus, Target

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}


def cache_bust_url(url: str, param: str, value: str) -> str:
    # merge into the query, never into a #fragment
    return str(httpx.URL(url).copy_merge_params({param: value}))


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _elapsed_ms(start: float) -> int:
    return max(1, int((time.perf_counter() - start) * 1000 + 0.5))


async def measure_latency(
    client: httpx.AsyncClient, url: str, timeout: float = 5.0
) -> int | None:
    """HEAD the url once and return the round trip in whole milliseconds.

    Any HTTP response counts as a reply; transport errors and timeouts
    return None.
    """
    probe_url = cache_bust_url(url, "ping", str(_epoch_ms()))
    start = time.perf_counter()
    try:
        await asyncio.wait_for(
            client.head(probe_url, headers=NO_CACHE_HEADERS, timeout=timeout),
            timeout=timeout,
        )
    except Exception as exc:
        logger.debug("Latency probe failed: url=%s, error=%r", url, exc)
        return None
    return _elapsed_ms(start)


class LatencySampler:
    """Refreshes each node's round-trip time independently of the traffic load."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        states: Mapping[Hashable, NodeState],
        *,
        timeout_seconds: float = 5.0,
        failure_threshold: int = 10,
    ) -> None:
        self.client = client
        self.states = states
        self.timeout_seconds = timeout_seconds
        self.failure_threshold = failure_threshold
        self._inflight: set[asyncio.Task[None]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    def sweep(self, targets: Sequence[Target], stop_event: asyncio.Event) -> int:
        """Launch one background probe per idle node; returns how many started."""
        launched = 0
        for target in targets:
            if stop_event.is_set():
                break
            state = self.states.get(target.id)
            if state is None or not state.try_begin_ping():
                continue
            task = asyncio.create_task(
                self._probe(target, state, stop_event), name=f"ping-{target.id}"
            )
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            launched += 1
        return launched

    async def _probe(
        self, target: Target, state: NodeState, stop_event: asyncio.Event
    ) -> None:
        try:
            latency = await measure_latency(
                self.client, target.request_url, self.timeout_seconds
            )
            if stop_event.is_set():
                return
            if latency is None:
                state.record_failure(self.failure_threshold)
            else:
                state.set_latency(latency)
        finally:
            state.end_ping()

    def cancel_inflight(self) -> list[asyncio.Task[None]]:
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        return tasks

    async def wait_idle(self) -> None:
        await asyncio.gather(*list(self._inflight), return_exceptions=True)


class TrafficWorkerPool:
    """Workers that keep streaming from randomly chosen nodes and count the bytes."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        states: Mapping[Hashable, NodeState],
        *,
        rotate_seconds: float = 2.0,
        backoff_seconds: float = 0.05,
        failure_threshold: int = 10,
        rng: random.Random | None = None,
    ) -> None:
        self.client = client
        self.states = states
        self.rotate_seconds = rotate_seconds
        self.backoff_seconds = backoff_seconds
        self.failure_threshold = failure_threshold
        self._random = rng if rng is not None else random.Random()
        self.active_workers = 0

    def spawn(
        self, worker_count: int, targets: Sequence[Target], stop_event: asyncio.Event
    ) -> list[asyncio.Task[None]]:
        if not targets:
            raise ValueError("targets must not be empty")
        targets = list(targets)
        return [
            asyncio.create_task(
                self.run_worker(worker_id, targets, stop_event),
                name=f"traffic-worker-{worker_id}",
            )
            for worker_id in range(clamp_workers(worker_count))
        ]

    async def run_worker(
        self, worker_id: int, targets: Sequence[Target], stop_event: asyncio.Event
    ) -> None:
        self.active_workers += 1
        try:
            while not stop_event.is_set():
                target = self._random.choice(targets)
                state = self.states.get(target.id)
                if state is not None:
                    state.advance_status(NodeStatus.DOWNLOADING)
                    await self._fetch_once(worker_id, target, state, stop_event)
                await asyncio.sleep(self.backoff_seconds)
        finally:
            self.active_workers -= 1

    async def _fetch_once(
        self,
        worker_id: int,
        target: Target,
        state: NodeState,
        stop_event: asyncio.Event,
    ) -> None:
        try:
            await asyncio.wait_for(
                self._download(worker_id, target, state, stop_event),
                timeout=self.rotate_seconds,
            )
        except TimeoutError:
            # forced rotation, the bytes read so far are already counted
            pass
        except Exception as exc:
            logger.debug(
                "Traffic request failed: worker=%d, node=%s, error=%r",
                worker_id,
                target.id,
                exc,
            )
            if not stop_event.is_set():
                state.record_failure(self.failure_threshold)

    async def _download(
        self,
        worker_id: int,
        target: Target,
        state: NodeState,
        stop_event: asyncio.Event,
    ) -> int:
        salt = f"{_epoch_ms()}-{worker_id}-{self._random.random()}"
        url = cache_bust_url(target.request_url, "t", salt)
        received = 0
        start = time.perf_counter()
        async with self.client.stream("GET", url, headers=NO_CACHE_HEADERS) as response:
            state.set_latency(_elapsed_ms(start), recover_to=NodeStatus.DOWNLOADING)
            if response.is_stream_consumed:
                # body already loaded (event hooks, in-memory transports)
                state.add_bytes(len(response.content))
                return len(response.content)
            async for chunk in response.aiter_raw():
                if chunk:
                    state.add_bytes(len(chunk))
                    received += len(chunk)
                if stop_event.is_set():
                    break
        return received

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Hashable

from rich.console import Console

from .app import DashboardApp
from .catalog import NodeCatalog, load_catalog, parse_custom_node, parse_node_ids
from .config import AppConfig, clamp_workers, load_config
from .engine import Engine
from .logging_config import configure_logging
from .models import Snapshot


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="speedboard",
        description="Concurrent multi-node throughput and latency monitor",
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        help="print one line per tick instead of the dashboard",
    )
    parser.add_argument("--group", help="node group to test (default: first group)")
    parser.add_argument(
        "--nodes",
        metavar="ID,...",
        help="test these catalog node ids instead of a whole group",
    )
    parser.add_argument(
        "--node",
        metavar="NAME=URL",
        action="append",
        default=[],
        help="add a custom node (repeatable)",
    )
    parser.add_argument("--workers", type=int, help="number of traffic workers")
    parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="headless run time in seconds (0 runs until interrupted)",
    )
    return parser


def apply_node_args(catalog: NodeCatalog, args: argparse.Namespace) -> list[Hashable]:
    """Register ``--node`` entries as custom nodes and return the ``--nodes`` ids."""
    for spec in args.node:
        catalog.add_custom(*parse_custom_node(spec))
    return parse_node_ids(args.nodes) if args.nodes else []


async def run_headless(
    config: AppConfig,
    catalog: NodeCatalog,
    duration: float = 0.0,
    node_ids: list[Hashable] | None = None,
    engine: Engine | None = None,
    console: Console | None = None,
) -> None:
    console = console or Console()
    group_key = config.default_group
    if group_key not in catalog.groups:
        group_key = next(iter(catalog.groups), "")
    targets = catalog.targets_for(group_key, node_ids)

    def show(snapshot: Snapshot) -> None:
        latency = snapshot.latency_str
        if snapshot.avg_latency_ms is not None:
            latency = f"{latency} ms"
        console.print(
            f"[dim]{snapshot.duration_str}[/]  "
            f"[bold #4f9dff]{snapshot.speed_str} MB/s[/]  "
            f"latency {latency}  total {snapshot.cumulative_str}"
        )

    if engine is None:
        engine = Engine(config.engine)

    async with engine:
        engine.subscribe(show)
        if not engine.start(targets):
            console.print("[yellow]No nodes selected.[/]")
            return
        console.print(f"[bold]{engine.status_text}[/] against {len(targets)} nodes")
        try:
            if duration > 0:
                await asyncio.sleep(duration)
            else:
                await asyncio.Event().wait()
        finally:
            engine.stop()
            for entry in engine.logs[-1:]:
                console.print(entry.message)


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    config = load_config()
    if args.group:
        config.default_group = args.group
    if args.workers is not None:
        config.engine.worker_count = clamp_workers(args.workers)

    if args.headless:
        configure_logging(config.log_level, config.log_file)
    else:
        configure_logging(config.log_level, config.log_file or "speedboard.log")

    catalog = load_catalog(config.nodes_file)
    try:
        node_ids = apply_node_args(catalog, args)
    except ValueError as exc:
        parser.error(str(exc))

    if args.headless:
        try:
            asyncio.run(run_headless(config, catalog, args.duration, node_ids))
        except KeyboardInterrupt:
            pass
        return

    app = DashboardApp(config, catalog, node_ids=node_ids)
    app.run()


if __name__ == "__main__":
    main()

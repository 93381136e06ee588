from __future__ import annotations

from collections.abc import Hashable

from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.widgets import Footer, Header, Sparkline, Static

from .catalog import NodeCatalog
from .config import AppConfig
from .engine import Engine
from .host import HostMonitor, human_bytes_per_second
from .models import NodeStatus, Target

STATUS_STYLES = {
    NodeStatus.PENDING: "[dim]Pending[/]",
    NodeStatus.PINGING: "[yellow]Ping[/]",
    NodeStatus.DOWNLOADING: "[bold #4f9dff]Running[/]",
    NodeStatus.ERROR: "[bold red]Error[/]",
}

LOG_STYLES = {
    "info": "#8fb8ff",
    "success": "green",
    "warning": "yellow",
    "danger": "red",
}


class DashboardApp(App[None]):
    CSS = """
    #root { height: 1fr; }
    #top_strip { height: 3; }
    #middle { height: 12; }
    #metrics_panel { width: 1fr; }
    #chart { width: 2fr; border: round #8f7ad4; padding: 0 1; }
    #speed_chart, #latency_chart { height: 1fr; }
    #nodes_panel { height: 1fr; }
    #logs_panel { height: 10; }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("s", "toggle_test", "Start/Stop"),
        Binding("g", "next_group", "Group"),
        Binding("plus,equals_sign", "more_workers", "+Workers"),
        Binding("minus", "fewer_workers", "-Workers"),
        Binding("x", "drop_custom", "Drop custom"),
    ]

    title = "Node Speed Monitor"
    sub_title = "Multi-node throughput & latency"

    def __init__(
        self,
        config: AppConfig,
        catalog: NodeCatalog,
        engine: Engine | None = None,
        node_ids: list[Hashable] | None = None,
    ) -> None:
        super().__init__()
        self.config = config
        self.catalog = catalog
        self.engine = engine or Engine(config.engine)
        self.host = HostMonitor()
        # explicit ids pin the selection until the group is cycled
        self.node_ids: list[Hashable] = list(node_ids or ())

        keys = catalog.group_keys()
        if config.default_group in keys:
            self.group_key = config.default_group
        else:
            self.group_key = keys[0] if keys else ""

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Container(id="root"):
            yield Static(id="top_strip")
            with Horizontal(id="middle"):
                yield Static(id="metrics_panel")
                with Vertical(id="chart"):
                    yield Sparkline([], id="speed_chart")
                    yield Sparkline([], id="latency_chart")
            yield Static(id="nodes_panel")
            yield Static(id="logs_panel")
        yield Footer()

    async def on_mount(self) -> None:
        self.set_interval(0.25, self._render_ui)
        self.set_interval(1.0, self.host.refresh)
        self._render_ui()

    async def on_unmount(self) -> None:
        await self.engine.aclose()

    def action_toggle_test(self) -> None:
        if self.engine.is_running:
            self.engine.stop()
        else:
            self.engine.start(self._selected_targets())
        self._render_ui()

    def action_next_group(self) -> None:
        keys = self.catalog.group_keys()
        if not keys:
            return
        index = keys.index(self.group_key) if self.group_key in keys else -1
        self.group_key = keys[(index + 1) % len(keys)]
        self.node_ids = []
        if self.engine.is_running:
            self.engine.start(self._selected_targets())
        self._render_ui()

    def action_more_workers(self) -> None:
        self.engine.configure(worker_count=self.engine.config.worker_count + 1)
        self._render_ui()

    def action_fewer_workers(self) -> None:
        self.engine.configure(worker_count=self.engine.config.worker_count - 1)
        self._render_ui()

    def action_drop_custom(self) -> None:
        if not self.catalog.custom:
            return
        self.catalog.remove_custom(self.catalog.custom[-1].id)
        if self.engine.is_running:
            self.engine.start(self._selected_targets())
        self._render_ui()

    def _selected_targets(self) -> list[Target]:
        return self.catalog.targets_for(self.group_key, self.node_ids)

    def _render_ui(self) -> None:
        self.query_one("#top_strip", Static).update(self._build_top_strip())
        self.query_one("#metrics_panel", Static).update(self._build_metrics_panel())
        self.query_one("#nodes_panel", Static).update(self._build_nodes_panel())
        self.query_one("#logs_panel", Static).update(self._build_logs_panel())

        series = self.engine.series
        self.query_one("#speed_chart", Sparkline).data = [
            point.speed_mbs for point in series
        ]
        self.query_one("#latency_chart", Sparkline).data = [
            float(point.avg_latency_ms or 0) for point in series
        ]

    def _build_top_strip(self) -> Panel:
        group = self.catalog.group(self.group_key)
        group_name = group.name if group is not None else "-"
        if self.node_ids:
            group_name = f"{len(self.node_ids)} picked nodes"
        if self.catalog.custom:
            group_name += f" + {len(self.catalog.custom)} custom"
        status = (
            f"Status: [bold]{self.engine.status_text}[/]    "
            f"Group: [bold]{group_name}[/]    "
            f"Workers: [bold]{self.engine.config.worker_count}[/]"
        )
        return Panel(status, title="Test", border_style="purple")

    def _build_metrics_panel(self) -> Panel:
        snapshot = self.engine.snapshot
        host = self.host.metrics

        table = Table(expand=True, box=None)
        table.add_column("Metric", style="bold #d5c9ff")
        table.add_column("Value", ratio=2)

        table.add_row("Speed", f"[bold #4f9dff]{snapshot.speed_str}[/] MB/s")
        latency = snapshot.latency_str
        if snapshot.avg_latency_ms is not None:
            latency = f"{latency} ms"
        table.add_row("Latency", latency)
        table.add_row("Total Data", snapshot.cumulative_str)
        table.add_row("Duration", snapshot.duration_str)
        table.add_row("Host Down", human_bytes_per_second(host.recv_bps))
        table.add_row("Host Up", human_bytes_per_second(host.sent_bps))

        return Panel(table, title="Live Metrics", border_style="#8f7ad4")

    def _build_nodes_panel(self) -> Panel:
        table = Table(expand=True, box=None)
        table.add_column("Node", style="bold #d5c9ff", ratio=2)
        table.add_column("Latency", justify="right")
        table.add_column("Speed", justify="right")
        table.add_column("Total Data", justify="right")
        table.add_column("Status", justify="right")

        nodes = self.engine.nodes
        if not nodes:
            table.add_row("No active session", "-", "-", "-", "-")
        for node in nodes:
            table.add_row(
                node.name[:40],
                node.latency_str,
                node.speed_str,
                node.flow_str,
                STATUS_STYLES.get(node.status, node.status.value),
            )
        return Panel(table, title="Node Statistics", border_style="#8f7ad4")

    def _build_logs_panel(self) -> Panel:
        lines = Text()
        for entry in self.engine.logs[-8:]:
            lines.append(f"{entry.time_label} ", style="dim")
            lines.append(f"{entry.message}\n", style=LOG_STYLES[entry.severity])
        return Panel(lines, title="Log", border_style="#8f7ad4")

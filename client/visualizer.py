"""
MODULE OVERVIEW:
The Rich terminal dashboard for a live gateway session.

WHAT IS HAPPENING HERE:
The client runs in a background task while a Rich `Live` layout redraws four times a
second from the client's state: the connection state, the session snapshot, the
heartbeat counters and a short timeline of state transitions.
"""
import asyncio
from collections import deque
from datetime import datetime

from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from client.gateway_client import GatewayClient
from shared.models import ConnectionState

STATE_COLORS = {
    ConnectionState.CONNECTED: "green",
    ConnectionState.IDENTIFYING: "yellow",
    ConnectionState.RESUMING: "yellow",
    ConnectionState.AWAITING_HELLO: "yellow",
    ConnectionState.CONNECTING: "yellow",
    ConnectionState.DISCONNECTED: "red",
}


class Visualizer:
    def __init__(self, client: GatewayClient):
        self.client = client
        self.status = ConnectionState.DISCONNECTED
        self.timeline = deque(maxlen=8)

    def on_status_change(self, status: ConnectionState):
        self.status = status
        ts = datetime.now().strftime("%H:%M:%S")
        self.timeline.appendleft(f"[{ts}] {status.value}")

    def generate_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main")
        )
        layout["main"].split_row(
            Layout(name="left", ratio=2),
            Layout(name="right", ratio=1)
        )

        color = STATE_COLORS.get(self.status, "red")
        layout["header"].update(Panel(
            f"[{color} bold]Gateway: {self.client.endpoint or 'discovering...'} | State: {self.status.value}[/]",
            style=color,
        ))

        snapshot = self.client.snapshot()
        stats = self.client.stats
        table = Table(title="Session", expand=True)
        table.add_column("Field", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")
        table.add_row("session_id", snapshot.session_id or "-")
        table.add_row("last_sequence", str(snapshot.last_sequence))
        table.add_row("reconnect_attempts", str(snapshot.reconnect_attempts))
        table.add_row("heartbeats sent / acked", f"{stats['heartbeats_sent']} / {stats['heartbeat_acks']}")
        latency = stats["last_heartbeat_latency_ms"]
        table.add_row("heartbeat latency", f"{latency} ms" if latency is not None else "-")
        table.add_row("identify / resume", f"{stats['identifies_sent']} / {stats['resumes_sent']}")
        table.add_row("dispatches", str(stats["dispatches_received"]))
        table.add_row("decode errors", str(stats["decode_errors"]))
        layout["left"].update(Panel(table, title="Live Session"))

        layout["right"].update(Panel("\n".join(self.timeline), title="Timeline"))
        return layout

    async def run(self, duration_s: float):
        async def status_hook(s): self.on_status_change(s)

        self.client.set_callbacks(status_hook)

        client_task = asyncio.create_task(self.client.run(duration_s))

        with Live(self.generate_layout(), refresh_per_second=4) as live:
            while not client_task.done():
                live.update(self.generate_layout())
                await asyncio.sleep(0.25)
        # surfaces DiscoveryError to the CLI
        await client_task

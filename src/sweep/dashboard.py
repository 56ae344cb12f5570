"""TUI Dashboard for sweep."""

from __future__ import annotations

from datetime import datetime

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker

from .client import SSHFleetClient
from .config import Config
from .coordinator import Coordinator, NodeStatus

STATUS_ICONS = {
    None: ("·", "dim"),
    NodeStatus.TRIGGERED: ("…", "yellow"),
    NodeStatus.APPLYING: ("▶", "yellow"),
    NodeStatus.FINISHED: ("✔", "green"),
    NodeStatus.EVICTED: ("✘", "red"),
    NodeStatus.FAILED: ("✘", "red"),
}

DONE = (NodeStatus.FINISHED, NodeStatus.EVICTED, NodeStatus.FAILED)


class NodePanel(Static):
    """A panel displaying the run state of a single node."""

    status: reactive[NodeStatus | None] = reactive(None)

    def __init__(self, node_name: str, host: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.node_name = node_name
        self.host = host

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), id=f"header-{self.node_name}")
        yield RichLog(id=f"log-{self.node_name}", markup=True, wrap=True, auto_scroll=True)

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS.get(self.status, ("?", "white"))
        return f"[{color}]{icon}[/] [{color}][bold]{self.node_name}[/bold][/] [dim]{self.host}[/]"

    def watch_status(self, status: NodeStatus | None) -> None:
        """Update header and history when status changes."""
        if not self.is_mounted:
            return
        self.query_one(f"#header-{self.node_name}", Label).update(self._get_header())
        if status is not None:
            _, color = STATUS_ICONS[status]
            log = self.query_one(f"#log-{self.node_name}", RichLog)
            log.write(f"{datetime.now():%H:%M:%S} [{color}]{status.value}[/]")


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Complete"
        return f"Progress: {self.completed}/{self.total} nodes done | {status} | Press 'q' to quit"


class RolloutLog(Message):
    """Message for a coordinator log line."""

    def __init__(self, line: str) -> None:
        super().__init__()
        self.line = line


class NodeStatusChange(Message):
    """Message for node status change."""

    def __init__(self, node_name: str, status: NodeStatus) -> None:
        super().__init__()
        self.node_name = node_name
        self.status = status


class Dashboard(App):
    """Shows a single rollout pass as it progresses."""

    CSS = """
    #node-container {
        layout: grid;
        grid-size: 3;
        grid-gutter: 1;
        height: 2fr;
    }

    NodePanel {
        border: solid $primary;
        height: 100%;
        min-height: 6;
    }

    NodePanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    NodePanel RichLog {
        height: 1fr;
        padding: 0 1;
    }

    #rollout-log {
        border: solid $secondary;
        height: 1fr;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(self, config: Config, **kwargs) -> None:
        super().__init__(**kwargs)
        self.config = config
        self.panels: dict[str, NodePanel] = {}
        self._dispatched: set[str] = set()
        self.coordinator: Coordinator | None = None
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        with Container(id="node-container"):
            for node in self.config.nodes:
                panel = NodePanel(node.name, node.host, id=f"panel-{node.name}")
                self.panels[node.name] = panel
                yield panel

        yield RichLog(id="rollout-log", markup=False, wrap=True, auto_scroll=True)
        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start the pass when the app mounts."""
        self.coordinator = Coordinator(
            SSHFleetClient(self.config.nodes),
            self.config.run,
            on_status=self._on_status,
        )
        self.coordinator.logger(self._on_log)

        self._worker = self.run_worker(self._run_rollout, exclusive=True, thread=True)

    def _run_rollout(self) -> None:
        """Run one pass in the worker thread."""
        if self.coordinator:
            self.coordinator.runall_once()

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        """Handle worker completion."""
        if event.worker == self._worker and event.state == event.worker.state.SUCCESS:
            self.query_one("#status-bar", StatusBar).running = False

    def _on_log(self, line: str) -> None:
        """Handle a log line from the coordinator - posts message to main thread."""
        self.post_message(RolloutLog(line))

    def _on_status(self, node_name: str, status: NodeStatus) -> None:
        """Handle status change for a node - posts message to main thread."""
        self.post_message(NodeStatusChange(node_name, status))

    def on_rollout_log(self, message: RolloutLog) -> None:
        log = self.query_one("#rollout-log", RichLog)
        log.write(f"{datetime.now():%H:%M:%S} {message.line}")

    def on_node_status_change(self, message: NodeStatusChange) -> None:
        """Handle NodeStatusChange message in main thread."""
        if message.node_name in self.panels:
            self.panels[message.node_name].status = message.status

        status_bar = self.query_one("#status-bar", StatusBar)
        if message.node_name not in self._dispatched:
            self._dispatched.add(message.node_name)
            status_bar.total += 1
        if message.status in DONE:
            status_bar.completed += 1

    async def action_quit(self) -> None:
        """Quit the application."""
        if self._worker and self._worker.is_running:
            self._worker.cancel()
        self.exit()

"""Bounded-concurrency rollout of agent runs across a fleet."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol

from .config import RUN_OPTIONS, RunConfig, validate_concurrency
from .errors import ConfigurationError

ENABLED_PREDICATE = "puppet().enabled=true"

# Polls a node may spend asked-to-run but not applying before it is skipped.
MAX_CHECKS = 5

POLL_INTERVAL = 1


class NodeStatus(Enum):
    """Status of a node within a pass."""

    TRIGGERED = "triggered"
    APPLYING = "applying"
    FINISHED = "finished"
    EVICTED = "evicted"
    FAILED = "failed"


@dataclass
class TrackedNode:
    """A node that has been asked to run and has not finished yet."""

    name: str
    initiated_at: int
    checks: int = 0


class FleetClient(Protocol):
    """The remote calls the coordinator relies on."""

    filter: dict[str, list[Any]]
    progress: bool

    def compound_filter(self, predicate: str) -> None: ...

    def identity_filter(self, name: str) -> None: ...

    def discover(self, nodes: str | Sequence[str] | None = None) -> list[str]: ...

    def runonce(self, **options: Any) -> list[dict[str, Any]]: ...

    def status(self) -> list[dict[str, Any]]: ...

    def reset(self) -> None: ...


LogSink = Callable[[str], None]
StatusCallback = Callable[[str, NodeStatus], None]  # (node_name, status) -> None


class Coordinator:
    """Runs the agent on every enabled node, ``concurrency`` nodes at a time."""

    def __init__(
        self,
        client: FleetClient,
        configuration: RunConfig,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        on_status: StatusCallback | None = None,
    ):
        self.concurrency = validate_concurrency(configuration.concurrency)

        if client.filter.get("compound"):
            raise ConfigurationError("The compound filter should be empty")

        self.client = client
        self.client.progress = False
        self.configuration = configuration
        self.on_status = on_status
        self._clock = clock
        self._sleep = sleep
        self._logger: LogSink | None = None
        self._statuses: dict[str, NodeStatus] = {}

    def logger(self, sink: LogSink) -> None:
        """Install the callable that receives log lines."""
        self._logger = sink

    def log(self, message: str) -> None:
        if self._logger is not None:
            self._logger(message)

    def _emit_status(self, name: str, status: NodeStatus) -> None:
        if self._statuses.get(name) is status:
            return
        self._statuses[name] = status
        if self.on_status:
            self.on_status(name, status)

    def runall(self, repeat: bool, min_interval: float) -> None:
        if repeat:
            self.runall_forever(min_interval)
        else:
            self.runall_once()

    def runall_forever(self, min_interval: float, iterations: int | None = None) -> None:
        """Run passes back to back, starting them at most every ``min_interval`` seconds.

        ``iterations`` bounds the number of passes; ``None`` runs forever.
        """
        count = 0
        while iterations is None or count < iterations:
            start = self._clock()
            self.runall_once()
            elapsed = self._clock() - start

            if elapsed < min_interval:
                sleep_time = float(min_interval - elapsed)
                self.log(f"Sleeping for {sleep_time:.2f} seconds before the next run")
                self._sleep(sleep_time)

            count += 1

    def runall_once(self) -> None:
        nodes = self.find_enabled_nodes()
        self.log(f"Running {len(nodes)} nodes with a concurrency of {self.concurrency}")
        self.runhosts(nodes)
        self.log(f"Finished running {len(nodes)} nodes")

    def find_enabled_nodes(self) -> list[str]:
        """Discover nodes whose agent is not administratively disabled."""
        self.client.compound_filter(ENABLED_PREDICATE)
        try:
            return list(self.client.discover())
        finally:
            self.client.reset()

    def runhosts(self, hosts: Iterable[str]) -> None:
        """Trigger runs on ``hosts`` and block until none of them is in flight."""
        queue = deque(hosts)
        running: list[TrackedNode] = []

        while queue or running:
            if len(running) < self.concurrency and queue:
                while len(running) < self.concurrency and queue:
                    name = queue.popleft()
                    if any(node.name == name for node in running):
                        continue
                    initiated_at = self.runhost(name)
                    running.append(TrackedNode(name=name, initiated_at=initiated_at))
            else:
                self._sleep(POLL_INTERVAL)

            running = self.find_applying_nodes([node.name for node in running], running)

    def runhost(self, name: str) -> int:
        """Ask ``name`` to run once and return when the agent says it started.

        Older agents do not report a start time, in which case 0 is returned.
        """
        self.log(f"Running agent on {name}")
        try:
            self.client.discover(nodes=name)
            responses = self.client.runonce(**{**self.runonce_arguments(), "force": True})
        finally:
            self.client.reset()

        if not responses:
            self.log(f"Host {name} did not respond to the run request")
            self._emit_status(name, NodeStatus.FAILED)
            return 0

        self._emit_status(name, NodeStatus.TRIGGERED)

        data = responses[0].get("data") or {}
        self.log(f"{name}: {data.get('summary', '')}")

        initiated_at = data.get("initiated_at")
        if initiated_at is None:
            return 0
        return int(initiated_at)

    def find_applying_nodes(
        self,
        hosts: Sequence[str],
        previously_tracked: Iterable[TrackedNode] = (),
    ) -> list[TrackedNode]:
        """Return the nodes from ``hosts`` that are still in flight.

        A node that is applying is kept with its checks reset. A node that
        was asked to run but has not started yet is kept with one more check,
        until it has been checked more than ``MAX_CHECKS`` times. A node that
        finished, or that did not answer, is dropped.
        """
        previous = {node.name: node for node in previously_tracked}
        hosts = list(dict.fromkeys(hosts))
        if not hosts:
            return []

        for host in hosts:
            self.client.identity_filter(host)
        try:
            responses = self.client.status()
        finally:
            self.client.reset()

        latest: dict[str, dict[str, Any]] = {}
        for response in responses:
            latest[response.get("sender")] = response.get("data") or {}

        result: list[TrackedNode] = []
        for host in hosts:
            data = latest.get(host)
            tracked = previous.get(host)

            if data is None:
                if tracked is not None:
                    # Only a node seen applying is known to have run
                    if self._statuses.get(host) is NodeStatus.APPLYING:
                        self._emit_status(host, NodeStatus.FINISHED)
                    else:
                        self._emit_status(host, NodeStatus.FAILED)
                continue

            initiated_at = tracked.initiated_at if tracked else int(data.get("initiated_at") or 0)

            if data.get("applying"):
                result.append(TrackedNode(name=host, initiated_at=initiated_at, checks=0))
                self._emit_status(host, NodeStatus.APPLYING)
            elif int(data.get("lastrun") or 0) < initiated_at:
                checks = tracked.checks + 1 if tracked else 1
                if checks > MAX_CHECKS:
                    self.log(f"Host {host} did not move into an applying state. Skipping.")
                    self._emit_status(host, NodeStatus.EVICTED)
                    continue
                result.append(TrackedNode(name=host, initiated_at=initiated_at, checks=checks))
            else:
                self._emit_status(host, NodeStatus.FINISHED)

        return result

    def runonce_arguments(self) -> dict[str, Any]:
        """Map the run configuration onto ``runonce`` parameters, omitting unset ones."""
        arguments: dict[str, Any] = {}
        for option in RUN_OPTIONS:
            value = getattr(self.configuration, option)
            if value is not None:
                arguments[option] = value

        if self.configuration.tag:
            arguments["tags"] = ",".join(self.configuration.tag)

        return arguments

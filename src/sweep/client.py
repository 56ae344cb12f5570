"""SSH transport that drives the Puppet agent on fleet nodes."""

from __future__ import annotations

import asyncio
import copy
import logging
import shlex
from collections.abc import Callable, Sequence
from typing import Any

import asyncssh

from .config import NodeConfig
from .coordinator import ENABLED_PREDICATE
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_PREDICATES = (ENABLED_PREDICATE,)

CommandBuilder = Callable[[NodeConfig], str]


def empty_filter() -> dict[str, list[Any]]:
    """Return a filter that matches every node."""
    return {"identity": [], "compound": []}


def enabled_command(node: NodeConfig) -> str:
    """Exit 0 when the agent is not administratively disabled."""
    puppet = shlex.quote(node.puppet)
    return f'test ! -e "$({puppet} config print agent_disabled_lockfile)"'


def runonce_command(node: NodeConfig, options: dict[str, Any]) -> str:
    """Start a detached one-off agent run and print the remote start time."""
    args = [node.puppet, "agent", "--onetime", "--no-daemonize"]

    if options.get("noop") is not None:
        args.append("--noop" if options["noop"] else "--no-noop")
    if options.get("environment"):
        args += ["--environment", str(options["environment"])]
    if options.get("server"):
        server, _, port = str(options["server"]).partition(":")
        args += ["--server", server]
        if port:
            args += ["--serverport", port]
    if options.get("force"):
        # A forced run starts now, regardless of splay settings
        args.append("--no-splay")
    else:
        if options.get("splay") is not None:
            args.append("--splay" if options["splay"] else "--no-splay")
        if options.get("splaylimit") is not None:
            args += ["--splaylimit", str(options["splaylimit"])]
    if options.get("tags"):
        args += ["--tags", str(options["tags"])]
    if options.get("ignoreschedules"):
        args.append("--ignoreschedules")

    command = " ".join(shlex.quote(arg) for arg in args)
    return f"nohup {command} >/dev/null 2>&1 </dev/null & date +%s"


def status_command(node: NodeConfig) -> str:
    """Report whether a catalog run is in progress and when the last one finished."""
    puppet = shlex.quote(node.puppet)
    return (
        f'lock="$({puppet} config print agent_catalog_run_lockfile)"; '
        f'summary="$({puppet} config print lastrunfile)"; '
        'if [ -e "$lock" ]; then echo applying=1; else echo applying=0; fi; '
        'if [ -e "$summary" ]; then echo "lastrun=$(stat -c %Y "$summary")"; '
        "else echo lastrun=0; fi"
    )


def parse_status(output: str) -> dict[str, Any]:
    """Parse the ``key=value`` lines printed by :func:`status_command`."""
    values: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep:
            values[key] = value

    try:
        lastrun = int(values.get("lastrun", "0"))
    except ValueError:
        lastrun = 0

    return {"applying": values.get("applying") == "1", "lastrun": lastrun}


class SSHFleetClient:
    """Discovers nodes from an inventory and talks to their agents over SSH."""

    def __init__(
        self,
        nodes: Sequence[NodeConfig],
        filter: dict[str, list[Any]] | None = None,
    ):
        self.nodes: dict[str, NodeConfig] = {node.name: node for node in nodes}
        self._base_filter = copy.deepcopy(filter) if filter is not None else empty_filter()
        self.filter = copy.deepcopy(self._base_filter)
        self.progress = True
        self._discovered: list[str] | None = None
        self._initiated: dict[str, int] = {}

    def identity_filter(self, name: str) -> None:
        self.filter.setdefault("identity", []).append(name)

    def compound_filter(self, predicate: str) -> None:
        if predicate not in SUPPORTED_PREDICATES:
            raise ConfigurationError(f"Unsupported compound filter: {predicate}")
        self.filter.setdefault("compound", []).append(predicate)

    def reset(self) -> None:
        """Restore the filter given at construction and forget discovered nodes."""
        self.filter = copy.deepcopy(self._base_filter)
        self._discovered = None

    def discover(self, nodes: str | Sequence[str] | None = None) -> list[str]:
        """Select the nodes later calls act on.

        Explicit ``nodes`` are used as given; otherwise the inventory is
        narrowed by the current filter.
        """
        if nodes is not None:
            names = [nodes] if isinstance(nodes, str) else list(nodes)
            unknown = [name for name in names if name not in self.nodes]
            if unknown:
                raise ConfigurationError(f"Unknown nodes: {', '.join(unknown)}")
        else:
            names = list(self.nodes)
            identities = self.filter.get("identity") or []
            if identities:
                names = [name for name in names if name in identities]
            if ENABLED_PREDICATE in (self.filter.get("compound") or []):
                results = self._run_many(names, enabled_command)
                names = [
                    name
                    for name in names
                    if name in results and results[name].exit_status == 0
                ]

        self._discovered = names
        logger.debug("Discovered %d nodes", len(names))
        return list(names)

    def _targets(self) -> list[str]:
        if self._discovered is None:
            return self.discover()
        return list(self._discovered)

    def runonce(self, **options: Any) -> list[dict[str, Any]]:
        """Start an agent run on every discovered node."""
        names = self._targets()
        results = self._run_many(names, lambda node: runonce_command(node, options))

        responses = []
        for name in names:
            result = results.get(name)
            if result is None or result.exit_status != 0:
                logger.warning("Could not start an agent run on %s", name)
                continue

            lines = str(result.stdout).split()
            try:
                initiated_at = int(lines[-1])
            except (IndexError, ValueError):
                logger.warning("%s did not report when its run started", name)
                data: dict[str, Any] = {"summary": "Started a Puppet run"}
            else:
                self._initiated[name] = initiated_at
                data = {"summary": "Started a Puppet run", "initiated_at": initiated_at}

            responses.append({"sender": name, "data": data})

        return responses

    def status(self) -> list[dict[str, Any]]:
        """Report the agent state of every discovered node."""
        names = self._targets()
        results = self._run_many(names, status_command)

        responses = []
        for name in names:
            result = results.get(name)
            if result is None or result.exit_status != 0:
                logger.warning("Could not read agent status from %s", name)
                continue

            data = parse_status(str(result.stdout))
            data["initiated_at"] = self._initiated.get(name, 0)
            responses.append({"sender": name, "data": data})

        return responses

    def _run_many(
        self, names: Sequence[str], build_command: CommandBuilder
    ) -> dict[str, asyncssh.SSHCompletedProcess]:
        """Run a command on each node concurrently, keyed by node name."""
        if not names:
            return {}
        return asyncio.run(self._gather(names, build_command))

    async def _gather(
        self, names: Sequence[str], build_command: CommandBuilder
    ) -> dict[str, asyncssh.SSHCompletedProcess]:
        nodes = [self.nodes[name] for name in names]
        results = await asyncio.gather(
            *(self._run_node(node, build_command(node)) for node in nodes),
            return_exceptions=True,
        )

        completed = {}
        for node, result in zip(nodes, results):
            if isinstance(result, BaseException):
                logger.warning("Command failed on %s: %s", node.name, result)
            elif result is not None:
                completed[node.name] = result
        return completed

    async def _run_node(
        self, node: NodeConfig, command: str
    ) -> asyncssh.SSHCompletedProcess | None:
        """Run a single command on ``node``. Returns None if the node could not be reached."""
        try:
            async with asyncssh.connect(
                node.host,
                port=node.port,
                username=node.user,
                client_keys=[str(node.ssh_key)],
                known_hosts=None,  # Skip host key verification for simplicity
                connect_timeout=node.timeout,
            ) as conn:
                result = await asyncio.wait_for(conn.run(command, check=False), node.timeout)
        except asyncssh.Error as e:
            logger.warning("SSH error on %s: %s", node.name, e)
            return None
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("Connection error on %s: %s", node.name, e or "timed out")
            return None
        except ValueError as e:
            # Raised for keys asyncssh cannot load
            logger.warning("Could not connect to %s: %s", node.name, e)
            return None

        if self.progress:
            logger.info("%s: exit status %s", node.name, result.exit_status)
        else:
            logger.debug("%s: exit status %s", node.name, result.exit_status)
        return result

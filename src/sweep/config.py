"""Configuration loader for sweep."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError


@dataclass
class Defaults:
    """Default values that can be overridden per node."""

    user: str = "root"
    port: int = 22
    ssh_key: Path = field(default_factory=lambda: Path("~/.ssh/id_rsa").expanduser())
    timeout: int = 30
    puppet: str = "puppet"


@dataclass
class NodeConfig:
    """Connection details for a single node."""

    name: str
    host: str
    port: int = 22
    user: str = "root"
    ssh_key: Path = field(default_factory=lambda: Path("~/.ssh/id_rsa").expanduser())
    timeout: int = 30
    puppet: str = "puppet"


@dataclass
class RunConfig:
    """Options for a rollout pass.

    Everything except ``concurrency`` is optional; ``None`` (or an empty tag
    list) means the agent's own default applies.
    """

    concurrency: int | None = None
    force: bool | None = None
    server: str | None = None
    noop: bool | None = None
    environment: str | None = None
    splay: bool | None = None
    splaylimit: int | None = None
    tag: list[str] = field(default_factory=list)
    ignoreschedules: bool | None = None


RUN_OPTIONS = (
    "force",
    "server",
    "noop",
    "environment",
    "splay",
    "splaylimit",
    "ignoreschedules",
)


@dataclass
class Config:
    """Main configuration for sweep."""

    nodes: list[NodeConfig]
    defaults: Defaults = field(default_factory=Defaults)
    run: RunConfig = field(default_factory=RunConfig)
    source_path: Path | None = None  # Path to the original config file


def load_config(config_path: str | Path) -> Config:
    """Load and validate configuration from a YAML file."""
    config_path = Path(config_path).resolve()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration must be a mapping")

    config = _parse_config(raw)
    config.source_path = config_path
    return config


def _parse_defaults(raw: dict[str, Any]) -> Defaults:
    """Parse the defaults section."""
    defaults_raw = raw.get("defaults") or {}
    ssh_key_str = defaults_raw.get("ssh_key", "~/.ssh/id_rsa")
    return Defaults(
        user=defaults_raw.get("user", "root"),
        port=defaults_raw.get("port", 22),
        ssh_key=Path(ssh_key_str).expanduser(),
        timeout=defaults_raw.get("timeout", 30),
        puppet=defaults_raw.get("puppet", "puppet"),
    )


def _parse_run(raw: dict[str, Any]) -> RunConfig:
    """Parse the run section into a RunConfig."""
    run_raw = raw.get("run") or {}

    tag = run_raw.get("tag", [])
    if isinstance(tag, str):
        tag = [t for t in tag.split(",") if t]

    run = RunConfig(
        concurrency=run_raw.get("concurrency"),
        tag=list(tag),
        **{option: run_raw.get(option) for option in RUN_OPTIONS},
    )
    validate_concurrency(run.concurrency)
    return run


def validate_concurrency(concurrency: Any) -> int:
    """Return ``concurrency`` if it is a positive integer, else raise."""
    if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
        raise ConfigurationError("Concurrency has to be > 0")
    return concurrency


def _parse_config(raw: dict[str, Any]) -> Config:
    """Parse raw YAML data into Config object."""
    defaults = _parse_defaults(raw)
    run = _parse_run(raw)

    nodes_raw = raw.get("nodes", [])
    if not nodes_raw:
        raise ConfigurationError("No nodes defined in configuration")
    if not isinstance(nodes_raw, list):
        raise ConfigurationError("'nodes' must be a list of node mappings")

    nodes = []
    seen: set[str] = set()
    for node_raw in nodes_raw:
        node = _parse_node(node_raw, defaults)
        if node.name in seen:
            raise ConfigurationError(f"Duplicate node name '{node.name}'")
        seen.add(node.name)
        nodes.append(node)

    return Config(nodes=nodes, defaults=defaults, run=run)


def _parse_node(node_raw: dict[str, Any], defaults: Defaults) -> NodeConfig:
    """Parse a single node configuration."""
    if not isinstance(node_raw, dict):
        raise ConfigurationError(f"Node entry must be a mapping, got {node_raw!r}")

    name = node_raw.get("name")
    if not name:
        raise ConfigurationError("Node must have a 'name' field")

    host = node_raw.get("host")
    if not host:
        raise ConfigurationError(f"Node '{name}' must have a 'host' field")

    ssh_key = defaults.ssh_key
    if "ssh_key" in node_raw:
        ssh_key = Path(node_raw["ssh_key"]).expanduser()

    return NodeConfig(
        name=name,
        host=host,
        port=node_raw.get("port", defaults.port),
        user=node_raw.get("user", defaults.user),
        ssh_key=ssh_key,
        timeout=node_raw.get("timeout", defaults.timeout),
        puppet=node_raw.get("puppet", defaults.puppet),
    )

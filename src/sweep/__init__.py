"""sweep: Roll Puppet agent runs across a fleet, a few nodes at a time."""

from .client import SSHFleetClient, empty_filter
from .config import Config, Defaults, NodeConfig, RunConfig, load_config
from .coordinator import Coordinator, NodeStatus, TrackedNode
from .errors import ConfigurationError, SweepError

__all__ = [
    "Config",
    "ConfigurationError",
    "Coordinator",
    "Defaults",
    "NodeConfig",
    "NodeStatus",
    "RunConfig",
    "SSHFleetClient",
    "SweepError",
    "TrackedNode",
    "empty_filter",
    "load_config",
]

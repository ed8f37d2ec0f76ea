"""Data types for reporting available devices to the kubelet."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

HEALTHY = "Healthy"
UNHEALTHY = "Unhealthy"


@dataclass(frozen=True)
class DeviceSpec:
    """A device node to expose inside a container."""

    host_path: str
    container_path: str
    permissions: str = ""


@dataclass(frozen=True)
class Mount:
    """A host path to mount inside a container."""

    host_path: str
    container_path: str
    read_only: bool = False


@dataclass(frozen=True)
class TopologyInfo:
    """NUMA nodes a device is attached to."""

    nodes: tuple[int, ...] = ()


@dataclass
class DeviceInfo:
    """Everything the plugin knows about one device."""

    state: str
    nodes: list[DeviceSpec] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)
    envs: dict[str, str] = field(default_factory=dict)
    topology: TopologyInfo | None = None


TopologyLookup = Callable[[list[str]], TopologyInfo]


def new_device_info(
    state: str,
    nodes: Iterable[DeviceSpec] = (),
    mounts: Iterable[Mount] = (),
    envs: Mapping[str, str] | None = None,
    topology: TopologyLookup | None = None,
) -> DeviceInfo:
    """Build a DeviceInfo, resolving its topology from the nodes' host paths.

    ``topology`` is called with the host paths of the device nodes; if it
    fails, a warning is logged and the device is left without topology.
    """
    info = DeviceInfo(state, list(nodes), list(mounts), dict(envs or {}))
    if topology is not None:
        dev_paths = [node.host_path for node in info.nodes]
        try:
            info.topology = topology(dev_paths)
        except Exception as err:  # noqa: BLE001 - any lookup failure is non-fatal
            logger.warning("GetTopologyInfo: %s", err)
    return info


class DeviceTree(dict[str, dict[str, DeviceInfo]]):
    """Mapping of device type -> device id -> device info."""

    def add_device(self, dev_type: str, device_id: str, info: DeviceInfo) -> None:
        """Add or replace a device under its type."""
        self.setdefault(dev_type, {})[device_id] = info


class Notifier(ABC):
    """Receives device trees produced by a Scanner."""

    @abstractmethod
    def notify(self, device_tree: DeviceTree) -> None:
        """Report the full set of devices found by the latest scan."""


class Scanner(ABC):
    """Discovers devices on the host and reports them to a Notifier."""

    @abstractmethod
    def scan(self, notifier: Notifier) -> None:
        """Scan for devices, reporting each result to ``notifier``.

        Called once per plugin; usually runs until the plugin stops.
        """
"""Registered nodes and the devices they carry."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from .types import DeviceUsage

log = logging.getLogger(__name__)


@dataclass
class DeviceInfo:
    """A device registered by a node."""

    id: str
    index: int = 0
    count: int = 0
    devmem: int = 0
    devcore: int = 0
    type: str = ""
    health: bool = False


@dataclass
class NodeInfo:
    """A node and its registered devices."""

    id: str = ""
    devices: list[DeviceInfo] = field(default_factory=list)


@dataclass
class NodeUsage:
    """Usage of every device of a node."""

    devices: list[DeviceUsage] = field(default_factory=list)


class NodeNotFoundError(LookupError):
    """The node has not registered any device."""


class NodeManager:
    """Thread-safe store of registered nodes."""

    def __init__(self) -> None:
        self._nodes: dict[str, NodeInfo] = {}
        self._lock = threading.Lock()

    def __contains__(self, node_id: object) -> bool:
        with self._lock:
            return node_id in self._nodes

    def add_node(self, node_id: str, node_info: NodeInfo | None) -> None:
        """Register a node's devices, appending to any already known."""
        if node_info is None or not node_info.devices:
            return
        with self._lock:
            existing = self._nodes.get(node_id)
            if existing is not None:
                existing.devices = [*existing.devices, *node_info.devices]
            else:
                self._nodes[node_id] = node_info

    def remove_node_devices(self, node_id: str, node_info: NodeInfo) -> None:
        """Forget the given devices of a node, and any device without an id."""
        with self._lock:
            existing = self._nodes.get(node_id)
            if existing is None or not existing.devices:
                return
            log.info("before rm: %s needs remove %s", existing.devices, node_info.devices)
            removed = {d.id for d in node_info.devices}
            existing.devices = [d for d in existing.devices if d.id not in removed and d.id]
            log.info("Rm Devices res: %s", existing.devices)

    def get_node(self, node_id: str) -> NodeInfo:
        """Return a registered node."""
        with self._lock:
            try:
                return self._nodes[node_id]
            except KeyError:
                raise NodeNotFoundError(f"node {node_id} not found") from None

    def list_nodes(self) -> dict[str, NodeInfo]:
        """Return every registered node by id."""
        with self._lock:
            return dict(self._nodes)
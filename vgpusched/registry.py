"""The set of device backends the scheduler knows, and pod allocation bookkeeping."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Iterator, Mapping
from typing import Any

from . import cambricon, hygon, nvidia
from .devicebase import Device
from .kube import ApiError, KubeClient, patch_pod_annotations
from .nodelock import NodeLockError, release_node_lock
from .types import (
    ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS,
    DEVICE_BIND_FAILED,
    DEVICE_BIND_PHASE,
    DEVICE_BIND_SUCCESS,
    ContainerDeviceRequest,
    SchedulerConfig,
)

log = logging.getLogger(__name__)

KNOWN_DEVICES: dict[str, str] = {
    nvidia.HANDSHAKE_ANNOS: nvidia.REGISTER_ANNOS,
    cambricon.HANDSHAKE_ANNOS: cambricon.REGISTER_ANNOS,
    hygon.HANDSHAKE_ANNOS: hygon.REGISTER_ANNOS,
}

DEVICES_TO_HANDLE: tuple[str, ...] = (
    nvidia.NVIDIA_GPU_COMMON_WORD,
    cambricon.CAMBRICON_MLU_COMMON_WORD,
    hygon.HYGON_DCU_COMMON_WORD,
)

_TERMINATED_PHASES = frozenset({"Failed", "Succeeded"})


class DeviceRegistry:
    """Holds one backend for each supported kind of device."""

    def __init__(self, config: SchedulerConfig | None = None) -> None:
        self.config = config if config is not None else SchedulerConfig()
        self.devices: dict[str, Device] = {
            "Cambricon": cambricon.CambriconDevices(),
            "Nvidia": nvidia.NvidiaGPUDevices(self.config),
            "Hygon": hygon.DCUDevices(),
        }
        self.debug_mode = False

    def __iter__(self) -> Iterator[Device]:
        return iter(self.devices.values())

    def build_parser(self, prog: str | None = None) -> argparse.ArgumentParser:
        """Build a parser holding every backend's options and --debug."""
        parser = argparse.ArgumentParser(prog=prog)
        for device in self.devices.values():
            device.add_flags(parser)
        parser.add_argument("--debug", action="store_true", default=False, help="debug mode")
        return parser

    def configure(self, namespace: argparse.Namespace) -> DeviceRegistry:
        """Apply the global options of a parsed command line."""
        self.debug_mode = bool(getattr(namespace, "debug", False))
        return self

    def _container_requests(self, container: Mapping[str, Any]) -> Iterator[ContainerDeviceRequest]:
        for device in self.devices.values():
            request = device.generate_resource_requests(container)
            if request.nums > 0:
                yield request

    def resource_requests(self, pod: Mapping[str, Any]) -> list[list[ContainerDeviceRequest]]:
        """Return, for each container of the pod, the device requests it makes."""
        containers = (pod.get("spec") or {}).get("containers") or []
        counts = [list(self._container_requests(c)) for c in containers]
        log.info("counts=%s", counts)
        return counts


def _finish_allocation(client: KubeClient, node_name: str, pod: Mapping[str, Any], phase: str) -> None:
    try:
        patch_pod_annotations(client, pod, {DEVICE_BIND_PHASE: phase})
    except ApiError as err:
        log.error("patchPodAnnotations failed:%s", err)
    try:
        release_node_lock(client, node_name)
    except (ApiError, NodeLockError) as err:
        log.error("release lock failed:%s", err)


def pod_allocation_try_success(client: KubeClient, node_name: str, pod: Mapping[str, Any]) -> bool:
    """Mark the pod allocated once no device type is left to allocate.

    Returns whether the allocation was completed and the node lock released.
    """
    meta = pod.get("metadata") or {}
    refreshed = client.get_pod(meta.get("namespace", ""), meta.get("name", ""))
    annos = ((refreshed.get("metadata") or {}).get("annotations") or {}).get(
        ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS, ""
    )
    log.info("TrySuccess: %s", annos)
    if any(word in annos for word in DEVICES_TO_HANDLE):
        return False
    log.info("AllDevicesAllocateSuccess releasing lock")
    pod_allocation_success(client, node_name, pod)
    return True


def pod_allocation_success(client: KubeClient, node_name: str, pod: Mapping[str, Any]) -> None:
    """Record a successful bind on the pod and release the node lock."""
    _finish_allocation(client, node_name, pod, DEVICE_BIND_SUCCESS)


def pod_allocation_failed(client: KubeClient, node_name: str, pod: Mapping[str, Any]) -> None:
    """Record a failed bind on the pod and release the node lock."""
    _finish_allocation(client, node_name, pod, DEVICE_BIND_FAILED)


def is_pod_in_terminated_state(pod: Mapping[str, Any]) -> bool:
    """Return whether the pod has failed or succeeded."""
    return (pod.get("status") or {}).get("phase") in _TERMINATED_PHASES


def all_containers_created(pod: Mapping[str, Any]) -> bool:
    """Return whether every container of the pod has a status."""
    statuses = (pod.get("status") or {}).get("containerStatuses") or []
    containers = (pod.get("spec") or {}).get("containers") or []
    return len(statuses) >= len(containers)
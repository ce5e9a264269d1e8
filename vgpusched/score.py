"""Fitting device requests onto nodes and scoring the fits."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from .nodes import NodeUsage
from .registry import DeviceRegistry
from .types import ContainerDevice, ContainerDeviceRequest, DeviceUsage

log = logging.getLogger(__name__)

_MEM_PERCENTAGE_UNSET = 101
_FULL_CORES = 100


@dataclass
class NodeScore:
    """A node that fits a pod, with the devices chosen for each container."""

    node_id: str
    devices: list[list[ContainerDevice]] = field(default_factory=list)
    score: float = 0.0


def check_type(
    registry: DeviceRegistry,
    annotations: Mapping[str, str],
    usage: DeviceUsage,
    request: ContainerDeviceRequest,
) -> bool:
    """Decide whether a device may serve a request."""
    if request.type not in usage.type:
        return False
    for device in registry:
        found, allowed = device.check_type(annotations, usage, request)
        if found:
            return allowed
    log.info("Unrecognized device %s", request.type)
    return False


def _free(device: DeviceUsage) -> int:
    return device.count - device.used


def _memory_request(device: DeviceUsage, request: ContainerDeviceRequest) -> int:
    memreq = request.memreq if request.memreq > 0 else 0
    if request.mem_percentagereq != _MEM_PERCENTAGE_UNSET and request.memreq == 0:
        memreq = device.totalmem * request.mem_percentagereq // 100
    return memreq


def _fits(device: DeviceUsage, request: ContainerDeviceRequest, memreq: int) -> bool:
    if device.totalmem - device.usedmem < memreq:
        return False
    if device.totalcore - device.usedcores < request.coresreq:
        return False
    # A request for all cores wants the card to itself.
    if device.totalcore == _FULL_CORES and request.coresreq == _FULL_CORES and device.used > 0:
        return False
    # A request without cores cannot go to a card whose cores are all taken.
    if device.totalcore != 0 and device.usedcores == device.totalcore and request.coresreq == 0:
        return False
    return True


def calc_score(
    registry: DeviceRegistry,
    nodes: Mapping[str, NodeUsage],
    requests: Sequence[Sequence[ContainerDeviceRequest]],
    annotations: Mapping[str, str],
) -> list[NodeScore]:
    """Fit every container's requests onto each node, updating the usage in place.

    Returns a score for each node on which the whole pod fits.
    """
    result = []
    for node_id, node in nodes.items():
        log.debug("viewing status of %s: %s", node_id, node.devices)
        dn = len(node.devices)
        score = NodeScore(node_id=node_id)
        for container_requests in requests:
            sums = sum(r.nums for r in container_requests)
            if sums == 0:
                score.devices.append([])
                continue
            devs: list[ContainerDevice] = []
            fit = True
            total = 0
            free = 0
            for original in container_requests:
                request = dataclasses.replace(original)
                if request.nums == 0:
                    continue
                if request.nums > dn:
                    fit = False
                    break
                node.devices.sort(key=_free)
                if _free(node.devices[dn - request.nums]) <= 0:
                    fit = False
                    break
                log.info("Allocating device for container request %s", request)
                for device in reversed(node.devices):
                    if _free(device) <= 0:
                        continue
                    if request.coresreq > _FULL_CORES:
                        raise ValueError("core limit can't exceed 100")
                    memreq = _memory_request(device, request)
                    if not _fits(device, request, memreq):
                        continue
                    if not check_type(registry, annotations, device, request):
                        continue
                    total += device.count
                    free += _free(device)
                    if request.nums > 0:
                        log.info("device %s fitted", device.id)
                        request.nums -= 1
                        device.used += 1
                        device.usedmem += memreq
                        device.usedcores += request.coresreq
                        devs.append(
                            ContainerDevice(
                                uuid=device.id,
                                type=request.type,
                                usedmem=memreq,
                                usedcores=request.coresreq,
                            )
                        )
                    if request.nums == 0:
                        break
                if request.nums > 0:
                    fit = False
                    break
            if not fit:
                break
            score.devices.append(devs)
            score.score += free / total + (dn - sums)
        if len(score.devices) == len(requests):
            result.append(score)
    return result
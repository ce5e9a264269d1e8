"""The scheduler extender: node registration, filtering and binding."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any

from .codec import decode_node_devices, decode_pod_devices, encode_pod_devices
from .kube import ApiError, KubeClient, patch_node_annotations, patch_pod_annotations
from .nodelock import NodeLockError, lock_node
from .nodes import DeviceInfo, NodeInfo, NodeManager, NodeNotFoundError, NodeUsage
from .pods import PodManager
from .registry import KNOWN_DEVICES, DeviceRegistry, is_pod_in_terminated_state
from .score import calc_score
from .types import (
    ASSIGNED_IDS_ANNOTATIONS,
    ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS,
    ASSIGNED_NODE_ANNOTATIONS,
    ASSIGNED_TIME_ANNOTATIONS,
    BIND_TIME_ANNOTATIONS,
    DEVICE_BIND_ALLOCATING,
    DEVICE_BIND_PHASE,
    DeviceUsage,
)

log = logging.getLogger(__name__)

HANDSHAKE_TIME_FORMAT = "%Y.%m.%d %H:%M:%S"
HANDSHAKE_TIMEOUT = timedelta(seconds=60)
REGISTRATION_INTERVAL = 15.0


def _meta(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def _annotations(obj: Mapping[str, Any]) -> Mapping[str, str]:
    return _meta(obj).get("annotations") or {}


def _now_stamp() -> str:
    return datetime.now().strftime(HANDSHAKE_TIME_FORMAT)


def _handshake_expired(handshake: str) -> bool:
    try:
        former = datetime.strptime(handshake.split("_")[1], HANDSHAKE_TIME_FORMAT)
    except (IndexError, ValueError):
        return True
    return datetime.now() > former + HANDSHAKE_TIMEOUT


def _filter_result(
    node_names: Sequence[str] | None = None,
    failed_nodes: Mapping[str, str] | None = None,
    error: str = "",
) -> dict[str, Any]:
    return {
        "Nodes": None,
        "NodeNames": list(node_names) if node_names is not None else None,
        "FailedNodes": dict(failed_nodes) if failed_nodes is not None else None,
        "FailedAndUnresolvableNodes": None,
        "Error": error,
    }


class Scheduler:
    """Keeps track of node devices and scheduled pods and places new pods."""

    def __init__(self, registry: DeviceRegistry | None, client: KubeClient) -> None:
        self.registry = registry if registry is not None else DeviceRegistry()
        self.client = client
        self.nodes = NodeManager()
        self.pods = PodManager()
        self.cached_status: dict[str, NodeUsage] = {}
        self.overview_status: dict[str, NodeUsage] = {}
        self._stop = threading.Event()
        self._node_info_copy: dict[str, NodeInfo] = {}

    def on_add_pod(self, pod: Mapping[str, Any]) -> None:
        """Track a pod that carries a device assignment."""
        annos = _annotations(pod)
        node_id = annos.get(ASSIGNED_NODE_ANNOTATIONS)
        if node_id is None:
            return
        ids = annos.get(ASSIGNED_IDS_ANNOTATIONS)
        if ids is None:
            return
        if is_pod_in_terminated_state(pod):
            self.pods.del_pod(pod)
            return
        self.pods.add_pod(pod, node_id, decode_pod_devices(ids))

    def on_update_pod(self, old_pod: Mapping[str, Any], new_pod: Mapping[str, Any]) -> None:
        """Handle a pod update like an addition of the new pod."""
        self.on_add_pod(new_pod)

    def on_del_pod(self, pod: Mapping[str, Any]) -> None:
        """Forget a deleted pod that had been assigned a node."""
        if ASSIGNED_NODE_ANNOTATIONS not in _annotations(pod):
            return
        self.pods.del_pod(pod)

    def _patch_handshake(self, node_name: str, handshake_key: str, value: str) -> None:
        try:
            node = self.client.get_node(node_name)
            patch_node_annotations(self.client, node, {handshake_key: value})
        except ApiError as err:
            log.error("patch node %s handshake failed: %s", node_name, err)

    def _register_device_kind(self, node: Mapping[str, Any], handshake_key: str, register_key: str) -> None:
        annos = _annotations(node)
        name = _meta(node).get("name", "")
        if register_key not in annos:
            return
        node_devices = decode_node_devices(annos[register_key])
        if not node_devices:
            return
        log.debug("nodedevices=%s", node_devices)
        handshake = annos.get(handshake_key, "")
        if "Requesting" in handshake:
            previous = self._node_info_copy.get(handshake_key)
            if _handshake_expired(handshake) and name in self.nodes and previous is not None:
                self.nodes.remove_node_devices(name, previous)
                log.info(
                    "node %s device %s:%s leave, remaining devices:%s",
                    name,
                    handshake_key,
                    previous,
                    self.nodes.get_node(name).devices,
                )
                self._patch_handshake(name, handshake_key, "Deleted_" + _now_stamp())
            return
        if "Deleted" in handshake:
            return
        self._patch_handshake(name, handshake_key, "Requesting_" + _now_stamp())

        node_info = NodeInfo(id=name)
        found = False
        for index, dev in enumerate(node_devices):
            if name in self.nodes:
                for existing in self.nodes.get_node(name).devices:
                    if existing.id == dev.id:
                        found = True
                        existing.devmem = dev.devmem
                        existing.devcore = dev.devcore
                        break
            if not found:
                node_info.devices.append(
                    DeviceInfo(
                        id=dev.id,
                        index=index,
                        count=dev.count,
                        devmem=dev.devmem,
                        devcore=dev.devcore,
                        type=dev.type,
                        health=dev.health,
                    )
                )
        self.nodes.add_node(name, node_info)
        self._node_info_copy[handshake_key] = node_info
        if node_info.devices and name in self.nodes:
            log.info(
                "node %s device %s come node info=%s total=%s",
                name,
                handshake_key,
                node_info,
                self.nodes.get_node(name).devices,
            )

    def register_nodes_once(self) -> None:
        """Read the device registrations of every node once."""
        try:
            nodes = self.client.list_nodes()
        except ApiError as err:
            log.error("nodes list failed %s", err)
            raise
        for node in nodes:
            for handshake_key, register_key in KNOWN_DEVICES.items():
                self._register_device_kind(node, handshake_key, register_key)

    def run_registration(self, interval: float = REGISTRATION_INTERVAL) -> None:
        """Read node registrations repeatedly until stopped."""
        while not self._stop.is_set():
            self.register_nodes_once()
            self._stop.wait(interval)

    def stop(self) -> None:
        """Stop the registration loop."""
        self._stop.set()

    def inspect_all_nodes_usage(self) -> dict[str, NodeUsage]:
        """Return the usage of every registered node as last computed."""
        return self.overview_status

    def get_nodes_usage(
        self, node_names: Sequence[str], pod: Mapping[str, Any] | None = None
    ) -> tuple[dict[str, NodeUsage], dict[str, str]]:
        """Compute device usage of the given nodes and list those not registered."""
        overall: dict[str, NodeUsage] = {}
        for node in self.nodes.list_nodes().values():
            overall[node.id] = NodeUsage(
                devices=[
                    DeviceUsage(
                        id=d.id,
                        index=d.index,
                        count=d.count,
                        totalmem=d.devmem,
                        totalcore=d.devcore,
                        type=d.type,
                        health=d.health,
                    )
                    for d in node.devices
                ]
            )
        for info in self.pods.scheduled_pods().values():
            usage = overall.get(info.node_id)
            if usage is None:
                continue
            for container_devices in info.devices:
                for assigned in container_devices:
                    for device in usage.devices:
                        if device.id == assigned.uuid:
                            device.used += 1
                            device.usedmem += assigned.usedmem
                            device.usedcores += assigned.usedcores
            log.debug("usage: pod %s assigned %s %s", info.name, info.node_id, info.devices)
        self.overview_status = overall

        cached: dict[str, NodeUsage] = {}
        failed: dict[str, str] = {}
        for node_id in node_names:
            try:
                node = self.nodes.get_node(node_id)
            except NodeNotFoundError as err:
                log.error("get node %s device error, %s", node_id, err)
                failed[node_id] = "node unregisterd"
                continue
            cached[node.id] = overall[node.id]
        self.cached_status = cached
        return cached, failed

    def bind(self, args: Mapping[str, Any]) -> dict[str, str]:
        """Lock the node, mark the pod as allocating and bind it."""
        pod_name = args.get("PodName", "")
        namespace = args.get("PodNamespace", "")
        uid = args.get("PodUID", "")
        node_name = args.get("Node", "")
        log.info("Bind pod %s namespace %s podUID %s node %s", pod_name, namespace, uid, node_name)
        try:
            current: Mapping[str, Any] = self.client.get_pod(namespace, pod_name)
        except ApiError as err:
            log.error("Get pod failed: %s", err)
            current = {"metadata": {"name": pod_name, "namespace": namespace}}
        try:
            lock_node(self.client, node_name)
        except (ApiError, NodeLockError) as err:
            log.error("Failed to lock node %s: %s", node_name, err)
        try:
            patch_pod_annotations(
                self.client,
                current,
                {
                    DEVICE_BIND_PHASE: DEVICE_BIND_ALLOCATING,
                    BIND_TIME_ANNOTATIONS: str(int(time.time())),
                },
            )
        except ApiError as err:
            log.error("patch pod annotation failed: %s", err)
        error = ""
        try:
            self.client.bind_pod(namespace, pod_name, uid, node_name)
        except ApiError as err:
            log.error("Failed to bind pod %s/%s to %s: %s", namespace, pod_name, node_name, err)
            error = str(err)
        log.info("After Binding Process")
        return {"Error": error}

    def filter(self, args: Mapping[str, Any]) -> dict[str, Any]:
        """Choose a node and devices for a pod and record the choice on the pod."""
        pod = args.get("Pod") or {}
        meta = _meta(pod)
        node_names = args.get("NodeNames")
        log.info("schedule pod %s/%s[%s]", meta.get("namespace"), meta.get("name"), meta.get("uid"))
        requests = self.registry.resource_requests(pod)
        if sum(r.nums for container in requests for r in container) == 0:
            log.info("pod %s not find resource", meta.get("name"))
            return _filter_result(node_names=node_names)
        annos = dict(_annotations(pod))
        self.pods.del_pod(pod)
        usage, failed = self.get_nodes_usage(node_names or [], pod)
        scores = calc_score(self.registry, usage, requests, annos)
        if not scores:
            return _filter_result(failed_nodes=failed)
        best = sorted(scores, key=lambda s: s.score)[-1]
        log.info(
            "schedule %s/%s to %s %s", meta.get("namespace"), meta.get("name"), best.node_id, best.devices
        )
        encoded = encode_pod_devices(best.devices)
        annotations = {
            ASSIGNED_NODE_ANNOTATIONS: best.node_id,
            ASSIGNED_TIME_ANNOTATIONS: str(int(time.time())),
            ASSIGNED_IDS_ANNOTATIONS: encoded,
            ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS: encoded,
        }
        self.pods.add_pod(pod, best.node_id, best.devices)
        try:
            patch_pod_annotations(self.client, pod, annotations)
        except ApiError:
            self.pods.del_pod(pod)
            raise
        return _filter_result(node_names=[best.node_id])
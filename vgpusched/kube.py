"""Access to the cluster API and annotation helpers built on it."""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any

from .codec import decode_pod_devices, encode_pod_devices
from .types import (
    ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS,
    ASSIGNED_NODE_ANNOTATIONS,
    BIND_TIME_ANNOTATIONS,
    DEVICE_BIND_ALLOCATING,
    DEVICE_BIND_PHASE,
    ContainerDevice,
)

log = logging.getLogger(__name__)

Obj = dict[str, Any]


class ApiError(Exception):
    """The cluster API rejected a request."""

    def __init__(self, message: str, status: int = 500) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(ApiError):
    """The requested object does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=404)


class KubeClient(ABC):
    """The operations the scheduler needs from the cluster API.

    Nodes and pods are plain dictionaries in the API's JSON shape.
    """

    @abstractmethod
    def get_node(self, name: str) -> Obj:
        """Return the named node."""

    @abstractmethod
    def list_nodes(self) -> list[Obj]:
        """Return every node."""

    @abstractmethod
    def update_node(self, node: Obj) -> Obj:
        """Replace a node, honouring its resourceVersion."""

    @abstractmethod
    def patch_node(self, name: str, patch: Mapping[str, Any]) -> Obj:
        """Merge a patch into the named node."""

    @abstractmethod
    def get_pod(self, namespace: str, name: str) -> Obj:
        """Return the named pod."""

    @abstractmethod
    def list_pods(self) -> list[Obj]:
        """Return the pods of all namespaces."""

    @abstractmethod
    def patch_pod(self, namespace: str, name: str, patch: Mapping[str, Any]) -> Obj:
        """Merge a patch into the named pod."""

    @abstractmethod
    def bind_pod(self, namespace: str, name: str, uid: str, node: str) -> None:
        """Bind the pod to a node."""


def _merge(target: dict, patch: Mapping[str, Any]) -> None:
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, Mapping) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        elif isinstance(value, Mapping):
            fresh: dict = {}
            _merge(fresh, value)
            target[key] = fresh
        else:
            target[key] = copy.deepcopy(value)


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def _annotations(obj: Mapping[str, Any]) -> Mapping[str, str]:
    return _metadata(obj).get("annotations") or {}


class InMemoryKubeClient(KubeClient):
    """A cluster held in memory, with optimistic concurrency on nodes."""

    def __init__(self, nodes: Iterable[Obj] = (), pods: Iterable[Obj] = ()) -> None:
        self._nodes: dict[str, Obj] = {}
        self._pods: dict[tuple[str, str], Obj] = {}
        for node in nodes:
            stored = copy.deepcopy(node)
            meta = stored.setdefault("metadata", {})
            meta.setdefault("resourceVersion", "1")
            self._nodes[meta["name"]] = stored
        for pod in pods:
            stored = copy.deepcopy(pod)
            meta = stored.setdefault("metadata", {})
            self._pods[(meta.get("namespace", ""), meta["name"])] = stored

    def _node(self, name: str) -> Obj:
        try:
            return self._nodes[name]
        except KeyError:
            raise NotFoundError(f'nodes "{name}" not found') from None

    def _pod(self, namespace: str, name: str) -> Obj:
        try:
            return self._pods[(namespace, name)]
        except KeyError:
            raise NotFoundError(f'pods "{name}" not found') from None

    @staticmethod
    def _bump(node: Obj) -> None:
        meta = node["metadata"]
        meta["resourceVersion"] = str(int(meta.get("resourceVersion", "0")) + 1)

    def get_node(self, name: str) -> Obj:
        return copy.deepcopy(self._node(name))

    def list_nodes(self) -> list[Obj]:
        return [copy.deepcopy(n) for n in self._nodes.values()]

    def update_node(self, node: Obj) -> Obj:
        name = _metadata(node).get("name", "")
        current = self._node(name)
        version = _metadata(node).get("resourceVersion")
        if version is not None and version != current["metadata"].get("resourceVersion"):
            raise ApiError(f'operation cannot be fulfilled on nodes "{name}"', status=409)
        stored = copy.deepcopy(node)
        stored.setdefault("metadata", {})["resourceVersion"] = current["metadata"].get(
            "resourceVersion", "0"
        )
        self._bump(stored)
        self._nodes[name] = stored
        return copy.deepcopy(stored)

    def patch_node(self, name: str, patch: Mapping[str, Any]) -> Obj:
        node = self._node(name)
        _merge(node, patch)
        self._bump(node)
        return copy.deepcopy(node)

    def get_pod(self, namespace: str, name: str) -> Obj:
        return copy.deepcopy(self._pod(namespace, name))

    def list_pods(self) -> list[Obj]:
        return [copy.deepcopy(p) for p in self._pods.values()]

    def patch_pod(self, namespace: str, name: str, patch: Mapping[str, Any]) -> Obj:
        pod = self._pod(namespace, name)
        _merge(pod, patch)
        return copy.deepcopy(pod)

    def bind_pod(self, namespace: str, name: str, uid: str, node: str) -> None:
        pod = self._pod(namespace, name)
        if uid and _metadata(pod).get("uid") != uid:
            raise ApiError(f'pod "{name}" uid mismatch', status=409)
        spec = pod.setdefault("spec", {})
        if spec.get("nodeName"):
            raise ApiError(
                f'pod {name} is already assigned to node "{spec["nodeName"]}"', status=409
            )
        self._node(node)
        spec["nodeName"] = node


def annotation_patch(annotations: Mapping[str, str]) -> dict[str, Any]:
    """Build a merge patch that sets the given annotations."""
    metadata: dict[str, Any] = {}
    if annotations:
        metadata["annotations"] = dict(annotations)
    return {"metadata": metadata}


def patch_pod_annotations(client: KubeClient, pod: Mapping[str, Any], annotations: Mapping[str, str]) -> Obj:
    """Set annotations on a pod and return the patched pod."""
    meta = _metadata(pod)
    try:
        return client.patch_pod(meta.get("namespace", ""), meta.get("name", ""), annotation_patch(annotations))
    except ApiError as err:
        log.info("patch pod %s failed, %s", meta.get("name"), err)
        raise


def patch_node_annotations(client: KubeClient, node: Mapping[str, Any], annotations: Mapping[str, str]) -> Obj:
    """Set annotations on a node and return the patched node."""
    name = _metadata(node).get("name", "")
    try:
        return client.patch_node(name, annotation_patch(annotations))
    except ApiError as err:
        log.info("patch node %s failed, %s", name, err)
        raise


def get_pending_pod(client: KubeClient, node_name: str) -> Obj | None:
    """Return the pod being allocated on the node, if there is one."""
    for pod in client.list_pods():
        annos = _annotations(pod)
        if BIND_TIME_ANNOTATIONS not in annos:
            continue
        if annos.get(DEVICE_BIND_PHASE) != DEVICE_BIND_ALLOCATING:
            continue
        if annos.get(ASSIGNED_NODE_ANNOTATIONS) == node_name:
            return pod
    return None


def get_next_device_request(dtype: str, pod: Mapping[str, Any]) -> tuple[Obj, list[ContainerDevice]]:
    """Return the first container still waiting for devices of a type, with those devices."""
    pod_devices = decode_pod_devices(_annotations(pod).get(ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS, ""))
    log.info("pdevices=%s", pod_devices)
    containers = (pod.get("spec") or {}).get("containers") or []
    for container, devices in zip(containers, pod_devices):
        matched = [d for d in devices if d.type == dtype]
        if matched:
            return container, matched
    raise LookupError("device request not found")


def erase_next_device_type_from_annotation(client: KubeClient, dtype: str, pod: Mapping[str, Any]) -> Obj:
    """Drop the devices of a type from the first container that holds them, and patch the pod."""
    pod_devices = decode_pod_devices(_annotations(pod).get(ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS, ""))
    remaining = []
    found = False
    for devices in pod_devices:
        if found:
            remaining.append(devices)
            continue
        kept = [d for d in devices if d.type != dtype]
        found = len(kept) != len(devices)
        remaining.append(kept)
    log.info("After erase res=%s", remaining)
    return patch_pod_annotations(
        client, pod, {ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS: encode_pod_devices(remaining)}
    )
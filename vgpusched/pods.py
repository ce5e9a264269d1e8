"""Pods the scheduler has placed and the devices they hold."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .types import ContainerDevice

log = logging.getLogger(__name__)


@dataclass
class PodInfo:
    """A scheduled pod."""

    namespace: str
    name: str
    uid: str
    node_id: str
    devices: list[list[ContainerDevice]] = field(default_factory=list)
    ctr_ids: list[str] = field(default_factory=list)


def _meta(pod: Mapping[str, Any]) -> Mapping[str, Any]:
    return pod.get("metadata") or {}


class PodManager:
    """Thread-safe store of scheduled pods keyed by UID."""

    def __init__(self) -> None:
        self._pods: dict[str, PodInfo] = {}
        self._lock = threading.Lock()

    def add_pod(self, pod: Mapping[str, Any], node_id: str, devices: list[list[ContainerDevice]]) -> None:
        """Record a pod; a pod already recorded is left as it is."""
        meta = _meta(pod)
        uid = meta.get("uid", "")
        with self._lock:
            if uid in self._pods:
                return
            self._pods[uid] = PodInfo(
                namespace=meta.get("namespace", ""),
                name=meta.get("name", ""),
                uid=uid,
                node_id=node_id,
                devices=devices,
            )
        log.info("%s Added", meta.get("name", ""))

    def del_pod(self, pod: Mapping[str, Any]) -> None:
        """Forget a pod, if it is recorded."""
        uid = _meta(pod).get("uid", "")
        with self._lock:
            info = self._pods.pop(uid, None)
        if info is not None:
            log.info("%s deleted", info.name)

    def scheduled_pods(self) -> dict[str, PodInfo]:
        """Return every recorded pod by UID."""
        with self._lock:
            return dict(self._pods)
"""A per-node lock held in a node annotation."""

from __future__ import annotations

import copy
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from .kube import ApiError, KubeClient

log = logging.getLogger(__name__)

NODE_LOCK_TIME = "4pd.io/mutex.lock"
MAX_LOCK_RETRY = 5
LOCK_EXPIRY = timedelta(minutes=5)
_RETRY_DELAY = 0.1


class NodeLockError(Exception):
    """The node lock could not be taken or released."""


def _now_rfc3339() -> str:
    text = datetime.now().astimezone().isoformat(timespec="seconds")
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _parse_rfc3339(text: str) -> datetime:
    normal = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        parsed = datetime.fromisoformat(normal)
    except ValueError as err:
        raise NodeLockError(f"invalid lock time {text!r}") from err
    if parsed.tzinfo is None:
        raise NodeLockError(f"invalid lock time {text!r}")
    return parsed


def _annotations(node: dict[str, Any]) -> dict[str, str]:
    meta = node.setdefault("metadata", {})
    if meta.get("annotations") is None:
        meta["annotations"] = {}
    return meta["annotations"]


def _update_with_retry(client: KubeClient, node_name: str, node: dict[str, Any], change, what: str) -> None:
    updated = copy.deepcopy(node)
    change(_annotations(updated))
    try:
        client.update_node(updated)
        return
    except ApiError as err:
        last: ApiError | None = err
    for attempt in range(MAX_LOCK_RETRY):
        log.error("Failed to update node %s (retry %d): %s", node_name, attempt, last)
        time.sleep(_RETRY_DELAY)
        try:
            fresh = client.get_node(node_name)
        except ApiError as err:
            log.error("Failed to get node %s when retry to update: %s", node_name, err)
            last = err
            continue
        change(_annotations(fresh))
        try:
            client.update_node(fresh)
            return
        except ApiError as err:
            last = err
    raise NodeLockError(f"{what} exceeds retry count {MAX_LOCK_RETRY}") from last


def set_node_lock(client: KubeClient, node_name: str) -> None:
    """Take the lock of a node that is not locked."""
    node = client.get_node(node_name)
    if NODE_LOCK_TIME in _annotations(node):
        raise NodeLockError(f"node {node_name} is locked")

    def stamp(annos: dict[str, str]) -> None:
        annos[NODE_LOCK_TIME] = _now_rfc3339()

    _update_with_retry(client, node_name, node, stamp, "setNodeLock")
    log.info("Node lock set on %s", node_name)


def release_node_lock(client: KubeClient, node_name: str) -> None:
    """Release the lock of a node; a node that is not locked is left alone."""
    node = client.get_node(node_name)
    if NODE_LOCK_TIME not in _annotations(node):
        log.info("Node lock not set on %s", node_name)
        return

    def clear(annos: dict[str, str]) -> None:
        annos.pop(NODE_LOCK_TIME, None)

    _update_with_retry(client, node_name, node, clear, "releaseNodeLock")
    log.info("Node lock released on %s", node_name)


def lock_node(client: KubeClient, node_name: str) -> None:
    """Take the lock of a node, breaking a lock older than five minutes."""
    node = client.get_node(node_name)
    annos = _annotations(node)
    if NODE_LOCK_TIME not in annos:
        set_node_lock(client, node_name)
        return
    lock_time = _parse_rfc3339(annos[NODE_LOCK_TIME])
    if datetime.now(timezone.utc) - lock_time > LOCK_EXPIRY:
        log.info("Node lock on %s expired at %s", node_name, lock_time)
        release_node_lock(client, node_name)
        set_node_lock(client, node_name)
        return
    raise NodeLockError(f"node {node_name} has been locked within 5 minutes")
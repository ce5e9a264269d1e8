"""Text encodings of device lists carried in node and pod annotations."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from .types import ContainerDevice, NodeDeviceInfo

log = logging.getLogger(__name__)

_INT_RE = re.compile(r"[+-]?[0-9]+")
_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})

_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1
_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1


class AnnotationFormatError(ValueError):
    """An annotation does not hold a well-formed device list."""


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _parse_int(text: str, low: int, high: int) -> int:
    if not _INT_RE.fullmatch(text):
        return 0
    return _clamp(int(text), low, high)


def _to_int32(text: str) -> int:
    """Parse as a machine integer and truncate to 32 bits."""
    value = _parse_int(text, _INT64_MIN, _INT64_MAX) & 0xFFFFFFFF
    return value - 2**32 if value > _INT32_MAX else value


def _parse_int32(text: str) -> int:
    return _parse_int(text, _INT32_MIN, _INT32_MAX)


def _parse_bool(text: str) -> bool:
    return text in _TRUE


def decode_node_devices(text: str) -> list[NodeDeviceInfo]:
    """Decode the device list a node registers."""
    if ":" not in text:
        return []
    devices = []
    for entry in text.split(":"):
        if "," not in entry:
            continue
        items = entry.split(",")
        if len(items) == 6:
            devices.append(
                NodeDeviceInfo(
                    id=items[0],
                    count=_to_int32(items[1]),
                    devmem=_to_int32(items[2]),
                    devcore=_to_int32(items[3]),
                    type=items[4],
                    health=_parse_bool(items[5]),
                )
            )
        elif len(items) >= 5:
            devices.append(
                NodeDeviceInfo(
                    id=items[0],
                    count=_to_int32(items[1]),
                    devmem=_to_int32(items[2]),
                    devcore=100,
                    type=items[3],
                    health=_parse_bool(items[4]),
                )
            )
        else:
            raise AnnotationFormatError(f"node device entry {entry!r} has too few fields")
    return devices


def encode_node_devices(devices: Iterable[NodeDeviceInfo]) -> str:
    """Encode a node's devices for its register annotation."""
    encoded = "".join(
        f"{d.id},{d.count},{d.devmem},{d.devcore},{d.type},{'true' if d.health else 'false'}:"
        for d in devices
    )
    log.debug("Encoded node devices %s", encoded)
    return encoded


def encode_container_devices(devices: Iterable[ContainerDevice]) -> str:
    """Encode the devices assigned to one container."""
    encoded = "".join(f"{d.uuid},{d.type},{d.usedmem},{d.usedcores}:" for d in devices)
    log.debug("Encoded container devices %s", encoded)
    return encoded


def encode_pod_devices(pod_devices: Iterable[Iterable[ContainerDevice]]) -> str:
    """Encode the devices of every container of a pod."""
    return ";".join(encode_container_devices(cd) for cd in pod_devices)


def decode_container_devices(text: str) -> list[ContainerDevice]:
    """Decode the devices assigned to one container."""
    if not text:
        return []
    devices = []
    for entry in text.split(":"):
        if "," not in entry:
            continue
        fields = entry.split(",")
        if len(fields) < 4:
            raise AnnotationFormatError(
                "pod annotation format error; information missing, "
                "please do not use nodeName field in task"
            )
        devices.append(
            ContainerDevice(
                uuid=fields[0],
                type=fields[1],
                usedmem=_parse_int32(fields[2]),
                usedcores=_parse_int32(fields[3]),
            )
        )
    return devices


def decode_pod_devices(text: str) -> list[list[ContainerDevice]]:
    """Decode a pod's device annotation; a malformed one decodes as empty."""
    if not text:
        return []
    try:
        return [decode_container_devices(part) for part in text.split(";")]
    except AnnotationFormatError:
        return []


def container_device_uuids(devices: Iterable[ContainerDevice]) -> list[str]:
    """Return the UUIDs of the given devices, in order."""
    return [d.uuid for d in devices]
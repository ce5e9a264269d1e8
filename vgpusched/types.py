"""Value types shared by the scheduler, the device backends and the codecs."""

from __future__ import annotations

from dataclasses import dataclass

ASSIGNED_TIME_ANNOTATIONS = "4pd.io/vgpu-time"
ASSIGNED_IDS_ANNOTATIONS = "4pd.io/vgpu-ids-new"
ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS = "4pd.io/devices-to-allocate"
ASSIGNED_NODE_ANNOTATIONS = "4pd.io/vgpu-node"
BIND_TIME_ANNOTATIONS = "4pd.io/bind-time"
DEVICE_BIND_PHASE = "4pd.io/bind-phase"

DEVICE_BIND_ALLOCATING = "allocating"
DEVICE_BIND_FAILED = "failed"
DEVICE_BIND_SUCCESS = "success"

DEVICE_LIMIT = 100

BEST_EFFORT = "best-effort"
RESTRICTED = "restricted"
GUARANTEED = "guaranteed"


@dataclass(frozen=True)
class ContainerDevice:
    """A device slice assigned to one container."""

    uuid: str
    type: str
    usedmem: int = 0
    usedcores: int = 0


@dataclass
class ContainerDeviceRequest:
    """What one container asks of one kind of device."""

    nums: int = 0
    type: str = ""
    memreq: int = 0
    mem_percentagereq: int = 0
    coresreq: int = 0


@dataclass
class DeviceUsage:
    """Capacity and current usage of one physical device."""

    id: str = ""
    index: int = 0
    used: int = 0
    count: int = 0
    usedmem: int = 0
    totalmem: int = 0
    totalcore: int = 0
    usedcores: int = 0
    type: str = ""
    health: bool = False


@dataclass
class NodeDeviceInfo:
    """A device as a node registers it in its annotations."""

    id: str
    count: int
    devmem: int
    devcore: int
    type: str
    health: bool


@dataclass
class SchedulerConfig:
    """Settings of the scheduler extender."""

    http_bind: str = ""
    scheduler_name: str = ""
    default_mem: int = 0
    default_cores: int = 0


ContainerDevices = list[ContainerDevice]
PodDevices = list[list[ContainerDevice]]
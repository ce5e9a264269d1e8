"""NVIDIA GPU backend."""

from __future__ import annotations

import argparse
import math
from collections.abc import Mapping
from typing import Any

from .devicebase import Device, card_type_allowed, parse_quantity, resource_value
from .types import ContainerDeviceRequest, DeviceUsage, SchedulerConfig

HANDSHAKE_ANNOS = "4pd.io/node-handshake"
REGISTER_ANNOS = "4pd.io/node-nvidia-register"
NVIDIA_GPU_DEVICE = "NVIDIA"
NVIDIA_GPU_COMMON_WORD = "GPU"
GPU_IN_USE = "nvidia.com/use-gputype"
GPU_NO_USE = "nvidia.com/nouse-gputype"
TASK_PRIORITY = "CUDA_TASK_PRIORITY"


def check_gpu_type(annotations: Mapping[str, str], card_type: str) -> bool:
    """Check a GPU card type against the pod's GPU type annotations."""
    return card_type_allowed(annotations, card_type, GPU_IN_USE, GPU_NO_USE)


class NvidiaGPUDevices(Device):
    """Places shares of NVIDIA GPUs."""

    def __init__(self, config: SchedulerConfig | None = None) -> None:
        self.config = config if config is not None else SchedulerConfig()
        self.resource_name = "nvidia.com/gpu"
        self.resource_mem = "nvidia.com/gpumem"
        self.resource_mem_percentage = "nvidia.com/gpumem-percentage"
        self.resource_cores = "nvidia.com/gpucores"
        self.resource_priority = "vgputaskpriority"

    def add_flags(self, parser: argparse.ArgumentParser) -> None:
        self._add_option(parser, "--resource-name", "resource_name", "resource name")
        self._add_option(parser, "--resource-mem", "resource_mem", "gpu memory to allocate")
        self._add_option(
            parser,
            "--resource-mem-percentage",
            "resource_mem_percentage",
            "gpu memory fraction to allocate",
        )
        self._add_option(parser, "--resource-cores", "resource_cores", "cores percentage to use")
        self._add_option(
            parser,
            "--resource-priority",
            "resource_priority",
            "vgpu task priority 0 for high and 1 for low",
        )

    def mutate_admission(self, container: dict[str, Any]) -> bool:
        limits = (container.get("resources") or {}).get("limits") or {}
        if self.resource_priority in limits:
            priority = math.ceil(parse_quantity(limits[self.resource_priority]))
            env = container.get("env") or []
            env.append({"name": TASK_PRIORITY, "value": str(priority)})
            container["env"] = env
        return self._has_limit(container, self.resource_name)

    def check_type(
        self,
        annotations: Mapping[str, str],
        usage: DeviceUsage,
        request: ContainerDeviceRequest,
    ) -> tuple[bool, bool]:
        if request.type == NVIDIA_GPU_DEVICE:
            return True, check_gpu_type(annotations, usage.type)
        return False, False

    def generate_resource_requests(self, container: Mapping[str, Any]) -> ContainerDeviceRequest:
        nums = resource_value(container, self.resource_name)
        if nums is None:
            return ContainerDeviceRequest()
        memnum = resource_value(container, self.resource_mem) or 0
        mem_percentage = resource_value(container, self.resource_mem_percentage)
        if mem_percentage is None:
            mem_percentage = 101
        if mem_percentage == 101 and memnum == 0:
            if self.config.default_mem != 0:
                memnum = self.config.default_mem
            else:
                mem_percentage = 100
        cores = resource_value(container, self.resource_cores)
        if cores is None:
            cores = self.config.default_cores
        return ContainerDeviceRequest(
            nums=nums,
            type=NVIDIA_GPU_DEVICE,
            memreq=memnum,
            mem_percentagereq=mem_percentage,
            coresreq=cores,
        )
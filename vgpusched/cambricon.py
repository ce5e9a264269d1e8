"""Cambricon MLU backend."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Mapping
from typing import Any

from .devicebase import Device, card_type_allowed, resource_value
from .types import ContainerDeviceRequest, DeviceUsage

log = logging.getLogger(__name__)

HANDSHAKE_ANNOS = "4pd.io/node-handshake-mlu"
REGISTER_ANNOS = "4pd.io/node-mlu-register"
CAMBRICON_MLU_DEVICE = "MLU"
CAMBRICON_MLU_COMMON_WORD = "MLU"
MLU_MEM_SPLIT_LIMIT = "CAMBRICON_SPLIT_MEMS"
MLU_MEM_SPLIT_INDEX = "CAMBRICON_SPLIT_VISIBLE_DEVICES"
MLU_MEM_SPLIT_ENABLE = "CAMBRICON_SPLIT_ENABLE"
MLU_IN_USE = "cambricon.com/use-mlutype"
MLU_NO_USE = "cambricon.com/nouse-mlutype"
POST_START_COMMAND = "/usr/bin/smlu-containerd"


def check_mlu_type(annotations: Mapping[str, str], card_type: str) -> bool:
    """Check an MLU card type against the pod's MLU type annotations."""
    return card_type_allowed(annotations, card_type, MLU_IN_USE, MLU_NO_USE)


class CambriconDevices(Device):
    """Places Cambricon MLU cards and memory slices of them."""

    def __init__(self) -> None:
        self.resource_count = "cambricon.com/mlunum"
        self.resource_memory = "cambricon.com/mlumem"

    def add_flags(self, parser: argparse.ArgumentParser) -> None:
        self._add_option(parser, "--mlu-name", "resource_count", "mlu resource count")
        self._add_option(parser, "--mlu-memory", "resource_memory", "mlu memory resource")

    def mutate_admission(self, container: dict[str, Any]) -> bool:
        if self._has_limit(container, self.resource_memory):
            lifecycle = container.get("lifecycle") or {}
            lifecycle["postStart"] = {"exec": {"command": [POST_START_COMMAND]}}
            container["lifecycle"] = lifecycle
            return True
        return self._has_limit(container, self.resource_count)

    def check_type(
        self,
        annotations: Mapping[str, str],
        usage: DeviceUsage,
        request: ContainerDeviceRequest,
    ) -> tuple[bool, bool]:
        if CAMBRICON_MLU_DEVICE not in request.type:
            return False, False
        is_370 = "370" in usage.type
        if not is_370 and request.memreq != 0:
            return True, False
        if is_370 and request.memreq == 0 and usage.used > 0:
            return True, False
        return True, check_mlu_type(annotations, usage.type)

    def generate_resource_requests(self, container: Mapping[str, Any]) -> ContainerDeviceRequest:
        log.info("Counting mlu devices")
        nums = resource_value(container, self.resource_count)
        if nums is None:
            return ContainerDeviceRequest()
        log.info("Found mlu devices")
        memnum = resource_value(container, self.resource_memory) or 0
        return ContainerDeviceRequest(nums=nums, type=CAMBRICON_MLU_DEVICE, memreq=memnum)
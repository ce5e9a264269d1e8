"""Hygon DCU backend."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Mapping
from typing import Any

from .devicebase import Device, card_type_allowed, resource_value
from .types import ContainerDeviceRequest, DeviceUsage

log = logging.getLogger(__name__)

HANDSHAKE_ANNOS = "4pd.io/node-handshake-dcu"
REGISTER_ANNOS = "4pd.io/node-dcu-register"
HYGON_DCU_DEVICE = "DCU"
HYGON_DCU_COMMON_WORD = "DCU"
DCU_IN_USE = "hygon.com/use-dcutype"
DCU_NO_USE = "hygon.com/nouse-dcutype"


def check_dcu_type(annotations: Mapping[str, str], card_type: str) -> bool:
    """Check a DCU card type against the pod's DCU type annotations."""
    return card_type_allowed(annotations, card_type, DCU_IN_USE, DCU_NO_USE)


class DCUDevices(Device):
    """Places shares of Hygon DCU cards."""

    def __init__(self) -> None:
        self.resource_count = "hygon.com/dcunum"
        self.resource_memory = "hygon.com/dcumem"
        self.resource_cores = "hygon.com/dcucores"

    def add_flags(self, parser: argparse.ArgumentParser) -> None:
        self._add_option(parser, "--dcu-name", "resource_count", "dcu resource count")
        self._add_option(parser, "--dcu-memory", "resource_memory", "dcu memory resource")
        self._add_option(parser, "--dcu-cores", "resource_cores", "dcu core resource")

    def mutate_admission(self, container: dict[str, Any]) -> bool:
        return self._has_limit(container, self.resource_count)

    def check_type(
        self,
        annotations: Mapping[str, str],
        usage: DeviceUsage,
        request: ContainerDeviceRequest,
    ) -> tuple[bool, bool]:
        if request.type == HYGON_DCU_DEVICE:
            return True, check_dcu_type(annotations, usage.type)
        return False, False

    def generate_resource_requests(self, container: Mapping[str, Any]) -> ContainerDeviceRequest:
        log.info("Counting dcu devices")
        nums = resource_value(container, self.resource_count)
        if nums is None:
            return ContainerDeviceRequest()
        log.info("Found dcu devices")
        memnum = resource_value(container, self.resource_memory) or 0
        cores = resource_value(container, self.resource_cores) or 0
        return ContainerDeviceRequest(
            nums=nums,
            type=HYGON_DCU_DEVICE,
            memreq=memnum,
            mem_percentagereq=100 if memnum == 0 else 0,
            coresreq=cores,
        )
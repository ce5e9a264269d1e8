"""Common ground of the device backends: the backend interface and quantity helpers."""

from __future__ import annotations

import argparse
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from .types import ContainerDeviceRequest, DeviceUsage

_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1

_QUANTITY_RE = re.compile(
    r"(?P<number>[+-]?(?:\d+\.?\d*|\.\d+))"
    r"(?:(?P<binary>Ki|Mi|Gi|Ti|Pi|Ei)|[eE](?P<exponent>[+-]?\d+)|(?P<decimal>[numkMGTPE]))?"
)

_BINARY = {"Ki": 2**10, "Mi": 2**20, "Gi": 2**30, "Ti": 2**40, "Pi": 2**50, "Ei": 2**60}
_DECIMAL = {"n": -9, "u": -6, "m": -3, "k": 3, "M": 6, "G": 9, "T": 12, "P": 15, "E": 18}


def parse_quantity(value: Any) -> Decimal:
    """Parse a resource quantity such as "2", "500m", "1Ki" or "1e3"."""
    if isinstance(value, bool):
        raise ValueError(f"invalid quantity {value!r}")
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    text = str(value).strip()
    match = _QUANTITY_RE.fullmatch(text)
    if not match:
        raise ValueError(f"invalid quantity {value!r}")
    number = Decimal(match["number"])
    if match["binary"]:
        return number * _BINARY[match["binary"]]
    if match["exponent"] is not None:
        return number.scaleb(int(match["exponent"]))
    if match["decimal"]:
        return number.scaleb(_DECIMAL[match["decimal"]])
    return number


def _resources(container: Mapping[str, Any], kind: str) -> Mapping[str, Any]:
    return (container.get("resources") or {}).get(kind) or {}


def resource_value(container: Mapping[str, Any], name: str) -> int | None:
    """Return the whole-number amount of a resource, looking at limits before requests.

    Returns None when the resource is absent or its amount is not a whole
    number that fits in 64 bits.
    """
    limits = _resources(container, "limits")
    if name in limits:
        raw = limits[name]
    else:
        requests = _resources(container, "requests")
        if name not in requests:
            return None
        raw = requests[name]
    amount = parse_quantity(raw)
    if amount != amount.to_integral_value():
        return None
    result = int(amount)
    if not _INT64_MIN <= result <= _INT64_MAX:
        return None
    return result


def card_type_allowed(
    annotations: Mapping[str, str], card_type: str, in_use_key: str, no_use_key: str
) -> bool:
    """Decide whether a card type passes a pod's allow list or deny list annotations."""
    upper = card_type.upper()
    if in_use_key in annotations:
        return any(val.upper() in upper for val in annotations[in_use_key].split(","))
    if no_use_key in annotations:
        return not any(val.upper() in upper for val in annotations[no_use_key].split(","))
    return True


class _DeviceOption(argparse.Action):
    """Store an option both on the namespace and on the device it configures."""

    def __init__(self, option_strings, dest, device=None, attribute="", **kwargs):
        super().__init__(option_strings, dest, **kwargs)
        self._device = device
        self._attribute = attribute

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        setattr(self._device, self._attribute, values)


class Device(ABC):
    """A kind of accelerator the scheduler knows how to place."""

    @abstractmethod
    def mutate_admission(self, container: dict[str, Any]) -> bool:
        """Adjust a container at admission; return whether it asks for this device."""

    @abstractmethod
    def check_type(
        self,
        annotations: Mapping[str, str],
        usage: DeviceUsage,
        request: ContainerDeviceRequest,
    ) -> tuple[bool, bool]:
        """Return (handled, allowed) for placing the request on the device."""

    @abstractmethod
    def generate_resource_requests(self, container: Mapping[str, Any]) -> ContainerDeviceRequest:
        """Return what the container asks of this device; nums is 0 when nothing."""

    @abstractmethod
    def add_flags(self, parser: argparse.ArgumentParser) -> None:
        """Register this device's command-line options."""

    def _add_option(self, parser: argparse.ArgumentParser, flag: str, attribute: str, help_text: str) -> None:
        parser.add_argument(
            flag,
            action=_DeviceOption,
            device=self,
            attribute=attribute,
            default=getattr(self, attribute),
            help=help_text,
        )

    @staticmethod
    def _has_limit(container: Mapping[str, Any], name: str) -> bool:
        return name in _resources(container, "limits")
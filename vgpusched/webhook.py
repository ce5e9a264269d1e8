"""Admission webhook that prepares pods asking for shared devices."""

from __future__ import annotations

import base64
import copy
import json
import logging
from collections.abc import Mapping
from typing import Any

from .registry import DeviceRegistry

log = logging.getLogger(__name__)

_DEFAULT_API_VERSION = "admission.k8s.io/v1"


def _escape(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def _diff(original: Any, modified: Any, path: str, ops: list[dict[str, Any]]) -> None:
    if isinstance(original, dict) and isinstance(modified, dict):
        for key in sorted(original.keys() - modified.keys()):
            ops.append({"op": "remove", "path": f"{path}/{_escape(key)}"})
        for key in sorted(modified):
            child = f"{path}/{_escape(key)}"
            if key not in original:
                ops.append({"op": "add", "path": child, "value": modified[key]})
            else:
                _diff(original[key], modified[key], child, ops)
    elif isinstance(original, list) and isinstance(modified, list) and len(original) == len(modified):
        for index, (old, new) in enumerate(zip(original, modified)):
            _diff(old, new, f"{path}/{index}", ops)
    elif type(original) is not type(modified) or original != modified:
        ops.append({"op": "replace", "path": path, "value": modified})


def json_patch(original: Any, modified: Any) -> list[dict[str, Any]]:
    """Return JSON Patch operations that turn the original document into the modified one."""
    ops: list[dict[str, Any]] = []
    _diff(original, modified, "", ops)
    return ops


class WebHook:
    """Mutating admission handler for pods."""

    def __init__(self, registry: DeviceRegistry | None = None, scheduler_name: str = "") -> None:
        self.registry = registry if registry is not None else DeviceRegistry()
        self.scheduler_name = scheduler_name

    @staticmethod
    def _review(review: Mapping[str, Any], uid: str, response: dict[str, Any]) -> dict[str, Any]:
        response["uid"] = uid
        return {
            "apiVersion": review.get("apiVersion") or _DEFAULT_API_VERSION,
            "kind": "AdmissionReview",
            "response": response,
        }

    def _errored(self, review: Mapping[str, Any], uid: str, code: int, message: str) -> dict[str, Any]:
        return self._review(
            review, uid, {"allowed": False, "status": {"code": code, "message": message}}
        )

    def _verdict(self, review: Mapping[str, Any], uid: str, allowed: bool, reason: str) -> dict[str, Any]:
        status: dict[str, Any] = {"code": 200 if allowed else 403}
        if reason:
            status["reason"] = reason
        return self._review(review, uid, {"allowed": allowed, "status": status})

    def handle(self, review: Mapping[str, Any]) -> dict[str, Any]:
        """Answer an AdmissionReview for a pod."""
        request = review.get("request")
        if not isinstance(request, Mapping):
            return self._errored(review, "", 400, "admission review has no request")
        uid = request.get("uid", "")
        original = request.get("object")
        if not isinstance(original, dict):
            return self._errored(review, uid, 400, "request object is not a pod")
        pod = copy.deepcopy(original)
        spec = pod.setdefault("spec", {})
        containers = spec.get("containers") or []
        if not containers:
            return self._verdict(review, uid, False, "pod has no containers")
        log.info("hook %s pod %s/%s", uid, request.get("namespace"), request.get("name"))
        has_resource = False
        for container in containers:
            security = container.get("securityContext") or {}
            if security.get("privileged") is True:
                continue
            for device in self.registry:
                has_resource = has_resource or device.mutate_admission(container)
        if not has_resource:
            return self._verdict(review, uid, True, "no resource found")
        if self.scheduler_name:
            spec["schedulerName"] = self.scheduler_name
        patch = json.dumps(json_patch(original, pod)).encode()
        return self._review(
            review,
            uid,
            {
                "allowed": True,
                "status": {"code": 200},
                "patchType": "JSONPatch",
                "patch": base64.b64encode(patch).decode("ascii"),
            },
        )
"""HTTP endpoints of the scheduler extender: filter, bind and the admission webhook."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from http import HTTPStatus
from typing import Any

from .kube import ApiError
from .nodelock import NodeLockError
from .scheduler import Scheduler
from .webhook import WebHook

log = logging.getLogger(__name__)

_JSON = "application/json"
_FILTER_FIELDS = ("Pod", "Nodes", "NodeNames")
_BINDING_FIELDS = ("PodName", "PodNamespace", "PodUID", "Node")

Response = tuple[int, bytes]


class _DecodeError(ValueError):
    """A request body does not hold the expected arguments."""


def _decode(body: bytes, fields: Sequence[str]) -> dict[str, Any]:
    """Decode a JSON object, matching its keys to the given field names case-insensitively."""
    if not body.strip():
        raise _DecodeError("EOF")
    try:
        document = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise _DecodeError(str(err)) from err
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise _DecodeError(f"cannot unmarshal {type(document).__name__} into extender arguments")
    canonical = {name.lower(): name for name in fields}
    args: dict[str, Any] = {}
    for key, value in document.items():
        name = canonical.get(key.lower())
        if name is not None:
            args[name] = value
    return args


def _decode_filter_args(body: bytes) -> dict[str, Any]:
    args = _decode(body, _FILTER_FIELDS)
    pod = args.get("Pod")
    if pod is not None and not isinstance(pod, dict):
        raise _DecodeError("cannot unmarshal Pod: not an object")
    names = args.get("NodeNames")
    if names is not None and (
        not isinstance(names, list) or not all(isinstance(n, str) for n in names)
    ):
        raise _DecodeError("cannot unmarshal NodeNames: not a list of strings")
    return args


def _decode_binding_args(body: bytes) -> dict[str, Any]:
    args = _decode(body, _BINDING_FIELDS)
    for name, value in args.items():
        if value is not None and not isinstance(value, str):
            raise _DecodeError(f"cannot unmarshal {name}: not a string")
    return args


def _error_filter_result(message: str) -> dict[str, Any]:
    return {
        "Nodes": None,
        "NodeNames": None,
        "FailedNodes": None,
        "FailedAndUnresolvableNodes": None,
        "Error": message,
    }


def predicate(scheduler: Scheduler, body: bytes) -> Response:
    """Run the filter step on a request body; return the status and the JSON answer."""
    try:
        args = _decode_filter_args(body)
    except _DecodeError as err:
        log.error("decode error %s", err)
        result = _error_filter_result(str(err))
    else:
        try:
            result = scheduler.filter(args)
        except (ApiError, NodeLockError, ValueError) as err:
            pod_name = ((args.get("Pod") or {}).get("metadata") or {}).get("name")
            log.error("pod %s filter error, %s", pod_name, err)
            result = _error_filter_result(str(err))
    try:
        return HTTPStatus.OK, json.dumps(result).encode()
    except (TypeError, ValueError) as err:
        log.error("Failed to marshal extenderFilterResult: %s, %r", err, result)
        return HTTPStatus.INTERNAL_SERVER_ERROR, str(err).encode()


def bind(scheduler: Scheduler, body: bytes) -> Response:
    """Run the bind step on a request body; return the status and the JSON answer."""
    try:
        args = _decode_binding_args(body)
    except _DecodeError as err:
        log.error("Decode extender binding args: %s", err)
        result: Any = {"Error": str(err)}
    else:
        result = scheduler.bind(args)
    try:
        payload = json.dumps(result).encode()
    except (TypeError, ValueError) as err:
        log.error("Marshal binding result %r: %s", result, err)
        return HTTPStatus.INTERNAL_SERVER_ERROR, f"{{'error':'{err}'}}".encode()
    log.debug("Return bind response %s", result)
    return HTTPStatus.OK, payload


def _admit(webhook: WebHook, body: bytes) -> Response:
    log.info("Into webhookfunc")
    try:
        review = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        return HTTPStatus.BAD_REQUEST, json.dumps({"error": str(err)}).encode()
    if not isinstance(review, dict):
        return HTTPStatus.BAD_REQUEST, json.dumps({"error": "admission review is not an object"}).encode()
    return HTTPStatus.OK, json.dumps(webhook.handle(review)).encode()


def _read_body(environ: Mapping[str, Any]) -> bytes:
    stream = environ.get("wsgi.input")
    if stream is None:
        return b""
    try:
        length = int(environ.get("CONTENT_LENGTH") or "")
    except ValueError:
        return stream.read()
    return stream.read(length) if length > 0 else b""


class ExtenderApp:
    """WSGI application serving /filter, /bind and, given a webhook, /webhook."""

    def __init__(self, scheduler: Scheduler, webhook: WebHook | None = None) -> None:
        self.scheduler = scheduler
        self.webhook = webhook
        self._routes: dict[str, Callable[[bytes], Response]] = {
            "/filter": lambda body: predicate(self.scheduler, body),
            "/bind": lambda body: bind(self.scheduler, body),
        }
        if webhook is not None:
            self._routes["/webhook"] = lambda body: _admit(webhook, body)

    @staticmethod
    def _respond(start_response, status: int, payload: bytes, extra=()) -> Iterable[bytes]:
        phrase = HTTPStatus(status).phrase
        headers = [("Content-Type", _JSON), ("Content-Length", str(len(payload))), *extra]
        start_response(f"{int(status)} {phrase}", headers)
        return [payload]

    def __call__(self, environ: Mapping[str, Any], start_response) -> Iterable[bytes]:
        path = environ.get("PATH_INFO", "")
        handler = self._routes.get(path)
        if handler is None:
            message = json.dumps({"error": f"no route for {path}"}).encode()
            return self._respond(start_response, HTTPStatus.NOT_FOUND, message)
        if environ.get("REQUEST_METHOD", "GET").upper() != "POST":
            message = json.dumps({"error": "method not allowed"}).encode()
            return self._respond(
                start_response, HTTPStatus.METHOD_NOT_ALLOWED, message, [("Allow", "POST")]
            )
        status, payload = handler(_read_body(environ))
        return self._respond(start_response, status, payload)
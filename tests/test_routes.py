import copy
import io
import json
from wsgiref.util import setup_testing_defaults

import pytest

from vgpusched.nodelock import NODE_LOCK_TIME
from vgpusched.registry import DeviceRegistry
from vgpusched.routes import ExtenderApp, bind, predicate
from vgpusched.scheduler import Scheduler
from vgpusched.webhook import WebHook


class FakeClient:
    def __init__(self):
        self.nodes = {"node-a": {"metadata": {"name": "node-a", "annotations": {}}}}
        self.pods = {
            ("ns", "p"): {"metadata": {"name": "p", "namespace": "ns", "uid": "uid-1", "annotations": {}}}
        }
        self.bound = []
        self.pod_patches = []
        self.node_patches = []

    def get_node(self, name):
        return copy.deepcopy(self.nodes[name])

    def list_nodes(self):
        return [copy.deepcopy(n) for n in self.nodes.values()]

    def update_node(self, node):
        self.nodes[node["metadata"]["name"]] = copy.deepcopy(node)
        return node

    def patch_node(self, name, patch):
        self.node_patches.append((name, patch))
        return self.nodes[name]

    def get_pod(self, namespace, name):
        return copy.deepcopy(self.pods[(namespace, name)])

    def list_pods(self):
        return [copy.deepcopy(p) for p in self.pods.values()]

    def patch_pod(self, namespace, name, patch):
        self.pod_patches.append((namespace, name, patch))
        return self.pods[(namespace, name)]

    def bind_pod(self, namespace, name, uid, node):
        self.bound.append((namespace, name, uid, node))


class RaisingScheduler:
    def filter(self, args):
        raise ValueError("core limit can't exceed 100")


class UnserializableScheduler:
    def filter(self, args):
        return {"Error": object()}

    def bind(self, args):
        return {"Error": object()}


def plain_pod():
    return {
        "metadata": {"name": "p", "namespace": "ns", "uid": "uid-1"},
        "spec": {"containers": [{"name": "c"}]},
    }


def gpu_pod():
    pod = plain_pod()
    pod["spec"]["containers"][0]["resources"] = {"limits": {"nvidia.com/gpu": "1"}}
    return pod


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def scheduler(client):
    return Scheduler(DeviceRegistry(), client)


def call(app, method, path, body=b""):
    environ = {}
    setup_testing_defaults(environ)
    environ.update(
        {
            "REQUEST_METHOD": method,
            "PATH_INFO": path,
            "CONTENT_LENGTH": str(len(body)),
            "wsgi.input": io.BytesIO(body),
        }
    )
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    payload = b"".join(app(environ, start_response))
    return captured["status"], captured["headers"], payload


def test_predicate_without_device_request_keeps_all_nodes(scheduler):
    body = json.dumps({"Pod": plain_pod(), "NodeNames": ["n1", "n2"]}).encode()
    status, payload = predicate(scheduler, body)
    result = json.loads(payload)
    assert status == 200
    assert result["NodeNames"] == ["n1", "n2"]
    assert result["Error"] == ""


def test_predicate_matches_keys_case_insensitively(scheduler):
    body = json.dumps({"pod": plain_pod(), "nodenames": ["n1"]}).encode()
    status, payload = predicate(scheduler, body)
    assert json.loads(payload)["NodeNames"] == ["n1"]


def test_predicate_reports_unregistered_nodes(scheduler):
    body = json.dumps({"Pod": gpu_pod(), "NodeNames": ["n1"]}).encode()
    status, payload = predicate(scheduler, body)
    result = json.loads(payload)
    assert status == 200
    assert result["FailedNodes"] == {"n1": "node unregisterd"}
    assert result["NodeNames"] is None


@pytest.mark.parametrize("body", [b"", b"{not json", b"[1, 2]"])
def test_predicate_decode_error_is_reported_in_result(scheduler, body):
    status, payload = predicate(scheduler, body)
    result = json.loads(payload)
    assert status == 200
    assert result["Error"]
    assert result["NodeNames"] is None


def test_predicate_filter_error_is_reported_in_result():
    body = json.dumps({"Pod": plain_pod(), "NodeNames": ["n1"]}).encode()
    status, payload = predicate(RaisingScheduler(), body)
    assert status == 200
    assert json.loads(payload)["Error"] == "core limit can't exceed 100"


def test_predicate_unserializable_result_is_server_error():
    body = json.dumps({"Pod": plain_pod()}).encode()
    status, _ = predicate(UnserializableScheduler(), body)
    assert status == 500


def test_bind_locks_node_and_binds_pod(scheduler, client):
    body = json.dumps(
        {"PodName": "p", "PodNamespace": "ns", "PodUID": "uid-1", "Node": "node-a"}
    ).encode()
    status, payload = bind(scheduler, body)
    assert status == 200
    assert json.loads(payload) == {"Error": ""}
    assert client.bound == [("ns", "p", "uid-1", "node-a")]
    assert NODE_LOCK_TIME in client.nodes["node-a"]["metadata"]["annotations"]


def test_bind_accepts_lower_case_keys(scheduler, client):
    body = json.dumps(
        {"podName": "p", "podNamespace": "ns", "podUID": "uid-1", "node": "node-a"}
    ).encode()
    status, payload = bind(scheduler, body)
    assert status == 200
    assert json.loads(payload) == {"Error": ""}
    assert client.bound == [("ns", "p", "uid-1", "node-a")]


def test_bind_decode_error_is_reported(scheduler, client):
    status, payload = bind(scheduler, b"{broken")
    assert status == 200
    assert json.loads(payload)["Error"]
    assert client.bound == []


def test_bind_unserializable_result_is_server_error():
    body = json.dumps({"PodName": "p"}).encode()
    status, payload = bind(UnserializableScheduler(), body)
    assert status == 500
    assert payload.startswith(b"{'error':'")


def test_app_filter_route(scheduler):
    app = ExtenderApp(scheduler)
    body = json.dumps({"Pod": plain_pod(), "NodeNames": ["n1"]}).encode()
    status, headers, payload = call(app, "POST", "/filter", body)
    assert status == "200 OK"
    assert headers["Content-Type"] == "application/json"
    assert json.loads(payload)["NodeNames"] == ["n1"]


def test_app_bind_route(scheduler, client):
    app = ExtenderApp(scheduler)
    body = json.dumps(
        {"PodName": "p", "PodNamespace": "ns", "PodUID": "uid-1", "Node": "node-a"}
    ).encode()
    status, _, payload = call(app, "POST", "/bind", body)
    assert status == "200 OK"
    assert json.loads(payload) == {"Error": ""}


def test_app_unknown_path_is_not_found(scheduler):
    status, _, _ = call(ExtenderApp(scheduler), "POST", "/nowhere", b"{}")
    assert status == "404 Not Found"


def test_app_rejects_get(scheduler):
    status, headers, _ = call(ExtenderApp(scheduler), "GET", "/filter")
    assert status == "405 Method Not Allowed"
    assert headers["Allow"] == "POST"


def test_app_without_webhook_has_no_webhook_route(scheduler):
    status, _, _ = call(ExtenderApp(scheduler), "POST", "/webhook", b"{}")
    assert status == "404 Not Found"


def test_app_webhook_route_allows_plain_pod(scheduler):
    app = ExtenderApp(scheduler, WebHook(DeviceRegistry()))
    review = {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {"uid": "r1", "namespace": "ns", "name": "p", "object": plain_pod()},
    }
    status, _, payload = call(app, "POST", "/webhook", json.dumps(review).encode())
    response = json.loads(payload)["response"]
    assert status == "200 OK"
    assert response["allowed"] is True
    assert response["uid"] == "r1"
    assert response["status"]["reason"] == "no resource found"


def test_app_webhook_bad_body(scheduler):
    app = ExtenderApp(scheduler, WebHook(DeviceRegistry()))
    status, _, _ = call(app, "POST", "/webhook", b"not json")
    assert status == "400 Bad Request"
import pytest

from vgpusched.codec import decode_pod_devices, encode_pod_devices
from vgpusched.kube import (
    ApiError,
    InMemoryKubeClient,
    NotFoundError,
    annotation_patch,
    erase_next_device_type_from_annotation,
    get_next_device_request,
    get_pending_pod,
    patch_node_annotations,
    patch_pod_annotations,
)
from vgpusched.types import (
    ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS,
    ASSIGNED_NODE_ANNOTATIONS,
    BIND_TIME_ANNOTATIONS,
    DEVICE_BIND_PHASE,
    ContainerDevice,
)


def make_node(name, annotations=None):
    return {"metadata": {"name": name, "annotations": dict(annotations or {})}}


def make_pod(name, namespace="default", uid="uid-1", annotations=None, containers=None):
    return {
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": uid,
            "annotations": dict(annotations or {}),
        },
        "spec": {"containers": containers or [{"name": "main"}]},
    }


GPU = ContainerDevice("GPU-1", "NVIDIA", 1000, 30)
MLU = ContainerDevice("MLU-1", "MLU", 2000, 0)


def test_get_missing_node_raises_not_found():
    client = InMemoryKubeClient()
    with pytest.raises(NotFoundError) as info:
        client.get_node("ghost")
    assert info.value.status == 404
    assert isinstance(info.value, ApiError)


def test_get_node_returns_independent_copy():
    client = InMemoryKubeClient(nodes=[make_node("n1", {"a": "1"})])
    node = client.get_node("n1")
    node["metadata"]["annotations"]["a"] = "changed"
    assert client.get_node("n1")["metadata"]["annotations"]["a"] == "1"


def test_update_node_with_stale_version_conflicts():
    client = InMemoryKubeClient(nodes=[make_node("n1")])
    first = client.get_node("n1")
    stale = client.get_node("n1")
    client.update_node(first)
    with pytest.raises(ApiError) as info:
        client.update_node(stale)
    assert info.value.status == 409


def test_annotation_patch_shape():
    assert annotation_patch({}) == {"metadata": {}}
    assert annotation_patch({"k": "v"}) == {"metadata": {"annotations": {"k": "v"}}}


def test_patch_pod_annotations_merges():
    pod = make_pod("p", annotations={"keep": "x"})
    client = InMemoryKubeClient(pods=[pod])
    patched = patch_pod_annotations(client, pod, {"new": "y"})
    assert patched["metadata"]["annotations"] == {"keep": "x", "new": "y"}
    assert client.get_pod("default", "p")["metadata"]["annotations"]["new"] == "y"


def test_patch_node_annotations_null_deletes():
    node = make_node("n1", {"drop": "x", "keep": "y"})
    client = InMemoryKubeClient(nodes=[node])
    client.patch_node("n1", {"metadata": {"annotations": {"drop": None}}})
    patch_node_annotations(client, node, {"add": "z"})
    assert client.get_node("n1")["metadata"]["annotations"] == {"keep": "y", "add": "z"}


def test_patch_missing_pod_raises():
    client = InMemoryKubeClient()
    with pytest.raises(NotFoundError):
        patch_pod_annotations(client, make_pod("ghost"), {"a": "b"})


def test_get_pending_pod():
    pending = make_pod(
        "pending",
        annotations={
            BIND_TIME_ANNOTATIONS: "1",
            DEVICE_BIND_PHASE: "allocating",
            ASSIGNED_NODE_ANNOTATIONS: "n1",
        },
    )
    done = make_pod(
        "done",
        uid="uid-2",
        annotations={
            BIND_TIME_ANNOTATIONS: "1",
            DEVICE_BIND_PHASE: "success",
            ASSIGNED_NODE_ANNOTATIONS: "n1",
        },
    )
    client = InMemoryKubeClient(pods=[done, pending])
    assert get_pending_pod(client, "n1")["metadata"]["name"] == "pending"
    assert get_pending_pod(client, "n2") is None


def test_list_pods_spans_namespaces():
    client = InMemoryKubeClient(pods=[make_pod("a", "ns1"), make_pod("b", "ns2")])
    assert sorted(p["metadata"]["name"] for p in client.list_pods()) == ["a", "b"]


def test_get_next_device_request():
    containers = [{"name": "first"}, {"name": "second"}]
    pod = make_pod(
        "p",
        containers=containers,
        annotations={ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS: encode_pod_devices([[MLU], [GPU, MLU]])},
    )
    container, devices = get_next_device_request("NVIDIA", pod)
    assert container == {"name": "second"}
    assert devices == [GPU]


def test_get_next_device_request_missing_type():
    pod = make_pod("p", annotations={ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS: encode_pod_devices([[MLU]])})
    with pytest.raises(LookupError, match="device request not found"):
        get_next_device_request("NVIDIA", pod)


def test_erase_next_device_type_only_first_container():
    original = [[MLU], [GPU, MLU], [GPU]]
    pod = make_pod(
        "p",
        containers=[{"name": "a"}, {"name": "b"}, {"name": "c"}],
        annotations={ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS: encode_pod_devices(original)},
    )
    client = InMemoryKubeClient(pods=[pod])
    patched = erase_next_device_type_from_annotation(client, "NVIDIA", pod)
    remaining = decode_pod_devices(patched["metadata"]["annotations"][ASSIGNED_IDS_TO_ALLOCATE_ANNOTATIONS])
    assert remaining == [[MLU], [MLU], [GPU]]


def test_bind_pod_sets_node_and_rejects_rebind():
    client = InMemoryKubeClient(nodes=[make_node("n1")], pods=[make_pod("p")])
    client.bind_pod("default", "p", "uid-1", "n1")
    assert client.get_pod("default", "p")["spec"]["nodeName"] == "n1"
    with pytest.raises(ApiError):
        client.bind_pod("default", "p", "uid-1", "n1")


def test_bind_pod_uid_mismatch():
    client = InMemoryKubeClient(nodes=[make_node("n1")], pods=[make_pod("p")])
    with pytest.raises(ApiError):
        client.bind_pod("default", "p", "other-uid", "n1")
    assert "nodeName" not in client.get_pod("default", "p")["spec"]
from vgpusched.pods import PodManager
from vgpusched.types import ContainerDevice


def _pod(uid, name="p"):
    return {"metadata": {"name": name, "namespace": "default", "uid": uid}}


def test_add_records_pod():
    manager = PodManager()
    devices = [[ContainerDevice("dev-1", "NVIDIA", 100, 10)]]
    manager.add_pod(_pod("u1", "alpha"), "n1", devices)
    info = manager.scheduled_pods()["u1"]
    assert (info.name, info.namespace, info.node_id) == ("alpha", "default", "n1")
    assert info.devices == devices
    assert info.ctr_ids == []


def test_add_does_not_overwrite():
    manager = PodManager()
    manager.add_pod(_pod("u1"), "n1", [])
    manager.add_pod(_pod("u1"), "n2", [])
    assert manager.scheduled_pods()["u1"].node_id == "n1"


def test_del_pod():
    manager = PodManager()
    manager.add_pod(_pod("u1"), "n1", [])
    manager.add_pod(_pod("u2"), "n1", [])
    manager.del_pod(_pod("u1"))
    assert list(manager.scheduled_pods()) == ["u2"]


def test_del_unknown_pod_keeps_others():
    manager = PodManager()
    manager.add_pod(_pod("u1"), "n1", [])
    manager.del_pod(_pod("ghost"))
    assert list(manager.scheduled_pods()) == ["u1"]
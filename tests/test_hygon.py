import argparse

from vgpusched.hygon import DCU_IN_USE, DCU_NO_USE, HYGON_DCU_DEVICE, DCUDevices, check_dcu_type
from vgpusched.types import ContainerDeviceRequest, DeviceUsage


def _ctr(limits=None, requests=None):
    return {"name": "c", "resources": {"limits": limits or {}, "requests": requests or {}}}


def test_mutate_admission():
    dev = DCUDevices()
    assert dev.mutate_admission(_ctr({"hygon.com/dcunum": "1"})) is True
    assert dev.mutate_admission(_ctr(requests={"hygon.com/dcunum": "1"})) is False


def test_generate_without_memory_takes_whole_card():
    req = DCUDevices().generate_resource_requests(_ctr({"hygon.com/dcunum": "1"}))
    assert req == ContainerDeviceRequest(
        nums=1, type=HYGON_DCU_DEVICE, memreq=0, mem_percentagereq=100, coresreq=0
    )


def test_generate_with_memory_and_cores():
    req = DCUDevices().generate_resource_requests(
        _ctr({"hygon.com/dcunum": "1", "hygon.com/dcumem": "2000", "hygon.com/dcucores": "60"})
    )
    assert req.memreq == 2000
    assert req.mem_percentagereq == 0
    assert req.coresreq == 60


def test_generate_absent():
    assert DCUDevices().generate_resource_requests(_ctr()) == ContainerDeviceRequest()


def test_check_type():
    dev = DCUDevices()
    usage = DeviceUsage(type="DCU-Z100")
    assert dev.check_type({}, usage, ContainerDeviceRequest(type="DCU")) == (True, True)
    assert dev.check_type({DCU_NO_USE: "z100"}, usage, ContainerDeviceRequest(type="DCU")) == (True, False)
    assert dev.check_type({}, usage, ContainerDeviceRequest(type="DCU2")) == (False, False)


def test_check_dcu_type_in_use():
    assert check_dcu_type({DCU_IN_USE: "Z100L"}, "DCU-Z100") is False
    assert check_dcu_type({DCU_IN_USE: "Z100"}, "DCU-Z100L") is True


def test_flags():
    dev = DCUDevices()
    parser = argparse.ArgumentParser()
    dev.add_flags(parser)
    ns = parser.parse_args(["--dcu-cores", "example.com/cores"])
    assert dev.resource_cores == "example.com/cores"
    assert ns.dcu_memory == "hygon.com/dcumem"
# vgpusched

`vgpusched` holds the scheduling logic for sharing accelerator cards
(NVIDIA GPUs, Cambricon MLUs and Hygon DCUs) between pods in a Kubernetes
cluster. It works as a scheduler extender. It keeps track of the devices
each node registers in its annotations and of what scheduled pods already
use. It scores the candidate nodes for a new pod, picks the devices the pod
gets, and records that choice in pod annotations. An admission webhook
handler marks pods that ask for shared devices. A small WSGI application
serves the extender's `/filter` and `/bind` endpoints and the `/webhook`
endpoint.

It has no dependencies beyond the Python standard library and needs
Python 3.10 or later.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Annotation formats

Device assignments are stored in pod annotations as plain strings. The
`vgpusched.codec` module reads and writes them:

```python
from vgpusched.codec import decode_pod_devices, encode_pod_devices
from vgpusched.types import ContainerDevice

pod_devices = [
    [ContainerDevice("UUID1", "NVIDIA", 1000, 30)],
    [],
]
text = encode_pod_devices(pod_devices)
assert decode_pod_devices(text) == pod_devices
```

Each device is written as `uuid,type,memory,cores:`, and the containers of
a pod are joined with `;`. `decode_container_devices` raises
`AnnotationFormatError` for an entry with fewer than four fields;
`decode_pod_devices` returns an empty list for such an annotation instead.
Nodes announce their devices as `id,count,memory,cores,type,health:`
entries, read and written by `decode_node_devices` and
`encode_node_devices`. `container_device_uuids` lists the UUIDs of a
container's devices.

## Device kinds

`vgpusched.registry.DeviceRegistry` holds one backend for each device kind:
`NvidiaGPUDevices`, `CambriconDevices` and `DCUDevices`. Each backend turns a
container's resource limits and requests into a `ContainerDeviceRequest`,
decides whether a card may serve a request (honouring the pod's
use/nouse card type annotations), and adjusts containers at admission.
The resource names each backend reads can be changed on the command line
of your own program:

```python
from vgpusched.registry import DeviceRegistry
from vgpusched.types import SchedulerConfig

registry = DeviceRegistry(SchedulerConfig(default_mem=0, default_cores=0))
parser = registry.build_parser("my-extender")
registry.configure(parser.parse_args(["--resource-name", "nvidia.com/gpu", "--debug"]))
```

The options are `--resource-name`, `--resource-mem`,
`--resource-mem-percentage`, `--resource-cores`, `--resource-priority`,
`--mlu-name`, `--mlu-memory`, `--dcu-name`, `--dcu-memory`, `--dcu-cores`
and `--debug`.

## Scheduling

A `Scheduler` works against a `vgpusched.kube.KubeClient`, with nodes and
pods as plain dictionaries in the API's JSON shape. The package includes
`InMemoryKubeClient`, which keeps nodes and pods in memory:

```python
from vgpusched.kube import InMemoryKubeClient
from vgpusched.scheduler import Scheduler

client = InMemoryKubeClient(nodes, pods)
scheduler = Scheduler(registry, client)

scheduler.register_nodes_once()          # read node device annotations
result = scheduler.filter(extender_args) # choose a node and devices
scheduler.bind(binding_args)             # lock the node and bind the pod
```

`filter` takes `{"Pod": ..., "NodeNames": [...]}` and returns a dictionary
with `NodeNames`, `FailedNodes` and `Error`; `bind` takes `PodName`,
`PodNamespace`, `PodUID` and `Node` and returns `{"Error": ...}`.

`Scheduler.run_registration(interval)` repeats the node registration until
`Scheduler.stop()` is called. `Scheduler.inspect_all_nodes_usage()` returns
the per-node device usage as last computed. Feed pod events to
`on_add_pod`, `on_update_pod` and `on_del_pod` to keep the scheduler's view
of scheduled pods current.

A node is locked while a pod is being bound to it. The lock is an
annotation on the node, managed by `vgpusched.nodelock.lock_node`,
`set_node_lock` and `release_node_lock`; a lock older than five minutes
counts as expired. `vgpusched.registry.pod_allocation_success`,
`pod_allocation_failed` and `pod_allocation_try_success` record the end of
an allocation on the pod and release the lock.

## Serving the extender

`ExtenderApp` is a WSGI application that wraps a scheduler and, optionally,
a `WebHook`. It answers POST requests on `/filter`, `/bind` and (with a
webhook) `/webhook`. Any WSGI server can run it, for example the one in the
standard library:

```python
from wsgiref.simple_server import make_server

from vgpusched.routes import ExtenderApp
from vgpusched.webhook import WebHook

app = ExtenderApp(scheduler, WebHook(registry, "my-scheduler"))
make_server("", 9443, app).serve_forever()
```

`WebHook.handle` answers an AdmissionReview with a JSON Patch built by
`vgpusched.webhook.json_patch`.

## OCI runtime specs

`vgpusched.oci.FileSpec` loads an OCI runtime specification from a JSON
file, lets a function modify it in place, and writes it back; failures
raise `SpecError`:

```python
from vgpusched.oci import FileSpec

spec = FileSpec("config.json")
spec.load()
spec.modify(lambda s: s.setdefault("annotations", {}).update({"shared": "true"}))
spec.flush()
```

## Command line

```
vgpusched-version
```

prints the version of the installed package.

## What it does not do

- It has no client for a real cluster API: only `InMemoryKubeClient` is
  included. To work against a live cluster, subclass `KubeClient`.
- It does not watch the cluster. Pod events must be passed to the
  scheduler's `on_add_pod`, `on_update_pod` and `on_del_pod` by the caller.
- It has no command that starts the extender server; the WSGI application
  has to be run by your own program, as shown above.
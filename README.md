# nriadapt

`nriadapt` is the runtime side of the Node Resource Interface (NRI). A
container runtime embeds it to pass pod and container lifecycle events to a
set of plugins and to merge the changes those plugins ask for.

## Modules

- `nriadapt.api` holds the data model as dataclasses. It includes
  `PodSandbox`, `Container`, `ContainerAdjustment`, `ContainerUpdate`,
  `LinuxResources`, the request and response types, and `StateChangeEvent`.
  It also holds the `Event` and `ContainerState` enums, the `EventMask`
  integer type, and the `mark_for_removal` and `is_marked_for_removal`
  helpers.
- `nriadapt.owners` records which plugin set which container attribute
  (`Owners`). It raises `ConflictError` when a second plugin claims the same
  attribute.
- `nriadapt.result` merges plugin responses into a single reply.
- `nriadapt.plugin` is the runtime's handle on one plugin (`Plugin`), together
  with `PluginError` and `FatalPluginError`, the timeout settings and
  `check_plugin_index`.
- `nriadapt.adaptation` contains `Adaptation`, the object a runtime uses, and
  `parse_plugin_name`.

## What it does

- **Pre-installed plugins.** `Adaptation.start()` scans the plugin directory
  (default `/opt/nri/plugins`). Each executable file there must be named
  `<idx>-<name>`, where `idx` is exactly two digits. Every such file is
  launched with a connected socket. The environment variables
  `NRI_PLUGIN_NAME`, `NRI_PLUGIN_IDX` and `NRI_PLUGIN_SOCKET` are set, and
  the last one holds the socket's file descriptor number. The plugin is then
  waited on to register and afterwards configured. Its configuration is read
  from `<idx>-<name>.conf` or else `<name>.conf` in the drop-in directory
  (default `/etc/nri/conf.d`).
- **External plugins.** Unless `disable_external_connections=True` is given,
  `start()` listens on a unix socket (default `/var/run/nri/nri.sock`) and
  accepts plugins that connect on their own. They must register with a
  non-empty name and a two-digit index. Once configured, each one is
  synchronized through the runtime's sync callback.
- **In-process plugins.** `Adaptation.connect_plugin(service)` takes an object
  that implements the plugin calls, and registers, configures and
  synchronizes it.
- **Event relay.** Pod run, stop and remove events, and container create,
  start, update, stop and remove events (with their post-events), go to every
  plugin that subscribed to them. Plugins are called in order of their index.
  A plugin that subscribes to nothing receives every event.
- **Merging.** When a container is created, a plugin may add or remove
  annotations, mounts, environment variables and devices. It may also append
  hooks; set CPU, memory, hugepage, unified cgroup v2, block I/O class and
  RDT class resources; or set the cgroups path. If two plugins set the same
  thing, the request fails with `ConflictError`. Plugins can also return
  updates for other containers, and these are checked for conflicts in the
  same way. An update flagged `ignore_failure` has its conflicts ignored. A
  plugin that asks to update the container being created raises
  `ValueError`.
- **Unsolicited updates.** Updates that a plugin sends on its own go to the
  runtime's update callback. That callback returns the updates that failed.

## Usage

```python
from nriadapt.adaptation import Adaptation
from nriadapt.api import (
    ContainerAdjustment, Container, CreateContainerRequest,
    CreateContainerResponse, EventMask, PodSandbox, StateChangeEvent,
)


def sync(cb):
    # Tell a newly connected plugin about existing pods and containers.
    cb([], [])


def update(updates):
    # Apply unsolicited updates; return the ones that failed.
    return []


class AnnotatingPlugin:
    def connect(self, plugin):
        plugin.register_plugin("annotate", "10")

    def configure(self, config, runtime_name, runtime_version):
        return int(EventMask.parse("CreateContainer"))

    def synchronize(self, pods, containers):
        return []

    def create_container(self, request):
        return CreateContainerResponse(
            adjust=ContainerAdjustment(annotations={"example": "yes"}))

    def update_container(self, request):
        return None

    def stop_container(self, request):
        return None

    def state_change(self, event):
        return None


runtime = Adaptation("my-runtime", "1.0", sync, update,
                     plugin_path="/opt/nri/plugins",
                     plugin_config_path="/etc/nri/conf.d",
                     disable_external_connections=True)
runtime.start()
runtime.connect_plugin(AnnotatingPlugin())

pod = PodSandbox(id="pod0", name="pod0", uid="uid0", namespace="default")
ctr = Container(id="ctr0", pod_sandbox_id="pod0", name="ctr0")

runtime.run_pod_sandbox(StateChangeEvent(pod=pod))
reply = runtime.create_container(CreateContainerRequest(pod=pod, container=ctr))
print(reply.adjust.annotations)   # {'example': 'yes'}

runtime.stop()
```

When no plugins are present, every request succeeds and returns empty
adjustments.

### Removing items

To remove an annotation, mount, environment variable or device that the
runtime or an earlier plugin added, put `-` in front of its key.
`mark_for_removal` and `is_marked_for_removal` in `nriadapt.api` handle the
prefix.

### Timeouts

`nriadapt.plugin.set_plugin_registration_timeout(seconds)` sets how long a
plugin has to register; the default is 5 seconds.
`set_plugin_request_timeout(seconds)` sets how long it has to answer each
request; the default is 2 seconds. If a request times out or the connection
fails, the plugin is closed and left out of later calls.

### Socket protocol

Launched and external plugins use newline-delimited JSON messages over the
unix socket. The runtime calls `Configure`, `Synchronize`,
`CreateContainer`, `UpdateContainer`, `StopContainer` and `StateChange`. The
plugin calls `RegisterPlugin` and `UpdateContainers`.

## What it does not do

The package contains only the runtime side. It has no library for writing
plugins and no command-line tool. Its socket protocol is the JSON protocol
described above, so it does not speak any binary RPC protocol.

## Running the tests

```
pip install -e .[test]
pytest
```
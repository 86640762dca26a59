"""Data model shared by the runtime adaptation and its plugins."""

from __future__ import annotations

import copy as _copy
from dataclasses import dataclass, field
from enum import IntEnum

DEFAULT_SOCKET_PATH = "/var/run/nri/nri.sock"

_REMOVAL_PREFIX = "-"


def is_marked_for_removal(key: str) -> tuple[str, bool]:
    """Return the key without its removal marker and whether it was marked."""
    if key.startswith(_REMOVAL_PREFIX):
        return key[len(_REMOVAL_PREFIX):], True
    return key, False


def mark_for_removal(key: str) -> str:
    """Return the key marked for removal."""
    return _REMOVAL_PREFIX + key


class Event(IntEnum):
    """Pod and container lifecycle events relayed to plugins."""

    UNKNOWN = 0
    RUN_POD_SANDBOX = 1
    STOP_POD_SANDBOX = 2
    REMOVE_POD_SANDBOX = 3
    CREATE_CONTAINER = 4
    POST_CREATE_CONTAINER = 5
    START_CONTAINER = 6
    POST_START_CONTAINER = 7
    UPDATE_CONTAINER = 8
    POST_UPDATE_CONTAINER = 9
    STOP_CONTAINER = 10
    REMOVE_CONTAINER = 11


_LAST_EVENT = max(Event)


def _normalize_event_name(name: str) -> str:
    return name.replace("_", "").replace("-", "").lower()


_EVENTS_BY_NAME = {
    _normalize_event_name(e.name): e for e in Event if e is not Event.UNKNOWN
}


class EventMask(int):
    """A bit mask of subscribed events; bit n-1 stands for event n."""

    def is_set(self, event: Event) -> bool:
        """Tell whether the given event is part of the mask."""
        if int(event) <= Event.UNKNOWN:
            return False
        return bool(self & (1 << (int(event) - 1)))

    @classmethod
    def parse(cls, *args: str) -> "EventMask":
        """Parse comma-separated event names (or "all") into a mask."""
        mask = 0
        for arg in args:
            for token in arg.split(","):
                token = token.strip()
                if not token:
                    continue
                if token.lower() == "all":
                    mask |= _VALID_EVENTS_BITS
                    continue
                event = _EVENTS_BY_NAME.get(_normalize_event_name(token))
                if event is None:
                    raise ValueError(f"invalid event {token!r}")
                mask |= 1 << (int(event) - 1)
        return cls(mask)

    def __repr__(self) -> str:
        return f"EventMask(0x{int(self):x})"


_VALID_EVENTS_BITS = (1 << int(_LAST_EVENT)) - 1
VALID_EVENTS = EventMask(_VALID_EVENTS_BITS)


class ContainerState(IntEnum):
    """Lifecycle state of a container."""

    CONTAINER_UNKNOWN = 0
    CONTAINER_CREATED = 1
    CONTAINER_PAUSED = 2
    CONTAINER_RUNNING = 3
    CONTAINER_STOPPED = 4
    CONTAINER_EXITED = 4


@dataclass
class KeyValue:
    """An environment variable."""

    key: str
    value: str = ""

    def is_marked_for_removal(self) -> tuple[str, bool]:
        return is_marked_for_removal(self.key)

    def to_oci(self) -> str:
        """Return the variable in KEY=VALUE form."""
        return f"{self.key}={self.value}"


@dataclass
class Mount:
    """A container mount."""

    destination: str
    type: str = ""
    source: str = ""
    options: list[str] = field(default_factory=list)

    def is_marked_for_removal(self) -> tuple[str, bool]:
        return is_marked_for_removal(self.destination)


@dataclass
class Hook:
    """An OCI hook."""

    path: str
    args: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)
    timeout: int | None = None


@dataclass
class Hooks:
    """OCI hooks grouped by invocation point."""

    prestart: list[Hook] = field(default_factory=list)
    create_runtime: list[Hook] = field(default_factory=list)
    create_container: list[Hook] = field(default_factory=list)
    start_container: list[Hook] = field(default_factory=list)
    poststart: list[Hook] = field(default_factory=list)
    poststop: list[Hook] = field(default_factory=list)


@dataclass
class LinuxDevice:
    """A Linux device node made available to a container."""

    path: str
    type: str = ""
    major: int = 0
    minor: int = 0
    file_mode: int | None = None
    uid: int | None = None
    gid: int | None = None

    def is_marked_for_removal(self) -> tuple[str, bool]:
        return is_marked_for_removal(self.path)


@dataclass
class HugepageLimit:
    """A hugepage limit for one page size."""

    page_size: str
    limit: int = 0


@dataclass
class LinuxMemory:
    """Memory resources; None means unset."""

    limit: int | None = None
    reservation: int | None = None
    swap: int | None = None
    kernel: int | None = None
    kernel_tcp: int | None = None
    swappiness: int | None = None
    disable_oom_killer: bool | None = None
    use_hierarchy: bool | None = None


@dataclass
class LinuxCPU:
    """CPU resources; None or empty string means unset."""

    shares: int | None = None
    quota: int | None = None
    period: int | None = None
    realtime_runtime: int | None = None
    realtime_period: int | None = None
    cpus: str = ""
    mems: str = ""


@dataclass
class LinuxResources:
    """Linux resources of a container."""

    memory: LinuxMemory | None = None
    cpu: LinuxCPU | None = None
    hugepage_limits: list[HugepageLimit] = field(default_factory=list)
    blockio_class: str | None = None
    rdt_class: str | None = None
    unified: dict[str, str] = field(default_factory=dict)

    def copy(self) -> "LinuxResources":
        """Return an independent deep copy."""
        return _copy.deepcopy(self)


@dataclass
class LinuxContainer:
    """Linux-specific parts of a container."""

    namespaces: dict[str, str] = field(default_factory=dict)
    devices: list[LinuxDevice] = field(default_factory=list)
    resources: LinuxResources | None = None
    oom_score_adj: int | None = None
    cgroups_path: str = ""


@dataclass
class PodSandbox:
    """A pod sandbox."""

    id: str
    name: str = ""
    uid: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    runtime_handler: str = ""


@dataclass
class Container:
    """A container."""

    id: str
    pod_sandbox_id: str = ""
    name: str = ""
    state: ContainerState = ContainerState.CONTAINER_UNKNOWN
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    args: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)
    hooks: Hooks | None = None
    linux: LinuxContainer | None = None


@dataclass
class LinuxContainerAdjustment:
    """Linux-specific adjustments requested for a container being created."""

    devices: list[LinuxDevice] = field(default_factory=list)
    resources: LinuxResources | None = None
    cgroups_path: str = ""


@dataclass
class ContainerAdjustment:
    """Adjustments requested for a container being created."""

    annotations: dict[str, str] = field(default_factory=dict)
    mounts: list[Mount] = field(default_factory=list)
    env: list[KeyValue] = field(default_factory=list)
    hooks: Hooks | None = None
    linux: LinuxContainerAdjustment | None = None


@dataclass
class LinuxContainerUpdate:
    """Linux-specific parts of a container update."""

    resources: LinuxResources | None = None


@dataclass
class ContainerUpdate:
    """An update requested for an existing container."""

    container_id: str = ""
    linux: LinuxContainerUpdate | None = None
    ignore_failure: bool = False


@dataclass
class CreateContainerRequest:
    pod: PodSandbox
    container: Container


@dataclass
class CreateContainerResponse:
    adjust: ContainerAdjustment | None = None
    update: list[ContainerUpdate] = field(default_factory=list)


@dataclass
class UpdateContainerRequest:
    pod: PodSandbox
    container: Container
    linux_resources: LinuxResources | None = None


@dataclass
class UpdateContainerResponse:
    update: list[ContainerUpdate] = field(default_factory=list)


@dataclass
class StopContainerRequest:
    pod: PodSandbox
    container: Container


@dataclass
class StopContainerResponse:
    update: list[ContainerUpdate] = field(default_factory=list)


@dataclass
class StateChangeEvent:
    """A pod or container state change relayed to plugins."""

    event: Event = Event.UNKNOWN
    pod: PodSandbox | None = None
    container: Container | None = None
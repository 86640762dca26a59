"""Collecting and merging plugin responses to container requests."""

from __future__ import annotations

from typing import Any

from . import owners as subjects
from .api import (
    ContainerAdjustment,
    ContainerUpdate,
    CreateContainerRequest,
    CreateContainerResponse,
    Hooks,
    KeyValue,
    LinuxContainer,
    LinuxContainerAdjustment,
    LinuxContainerUpdate,
    LinuxCPU,
    LinuxDevice,
    LinuxMemory,
    LinuxResources,
    Mount,
    StopContainerResponse,
    UpdateContainerRequest,
    UpdateContainerResponse,
    is_marked_for_removal,
    mark_for_removal,
)
from .owners import Owners

_MEMORY_FIELDS = (
    ("limit", subjects.MEMORY_LIMIT),
    ("reservation", subjects.MEMORY_RESERVATION),
    ("swap", subjects.MEMORY_SWAP_LIMIT),
    ("kernel", subjects.MEMORY_KERNEL_LIMIT),
    ("kernel_tcp", subjects.MEMORY_TCP_LIMIT),
    ("swappiness", subjects.MEMORY_SWAPPINESS),
    ("disable_oom_killer", subjects.MEMORY_DISABLE_OOM_KILLER),
    ("use_hierarchy", subjects.MEMORY_USE_HIERARCHY),
)

_CPU_FIELDS = (
    ("shares", subjects.CPU_SHARES),
    ("quota", subjects.CPU_QUOTA),
    ("period", subjects.CPU_PERIOD),
    ("realtime_runtime", subjects.CPU_REALTIME_RUNTIME),
    ("realtime_period", subjects.CPU_REALTIME_PERIOD),
    ("cpus", subjects.CPUSET_CPUS),
    ("mems", subjects.CPUSET_MEMS),
)

_HOOK_KINDS = (
    "prestart",
    "poststart",
    "poststop",
    "create_runtime",
    "create_container",
    "start_container",
)


def _is_set(value: Any) -> bool:
    return value is not None and value != ""


def _fresh_resources() -> LinuxResources:
    return LinuxResources(memory=LinuxMemory(), cpu=LinuxCPU())


def split_env_var(s: str) -> tuple[str, str]:
    """Split a KEY=VALUE string into its key and value."""
    key, _, value = s.partition("=")
    return key, value


class Result:
    """Accumulated outcome of relaying one request to all plugins."""

    def __init__(
        self,
        create: CreateContainerRequest | None = None,
        update: UpdateContainerRequest | None = None,
    ) -> None:
        self._create = create
        self._update = update
        self._adjust: ContainerAdjustment | None = None
        if create is not None:
            self._adjust = ContainerAdjustment(
                hooks=Hooks(),
                linux=LinuxContainerAdjustment(resources=_fresh_resources()),
            )
        self._reply_update: list[ContainerUpdate] = []
        self._updates: dict[str, ContainerUpdate] = {}
        self._owners = Owners()

    # responses

    def create_container_response(self) -> CreateContainerResponse:
        """Return the combined reply to a container creation request."""
        return CreateContainerResponse(adjust=self._adjust, update=self._reply_update)

    def update_container_response(self) -> UpdateContainerResponse:
        """Return the combined reply to a container update request.

        The update for the requested container, if any plugin touched it,
        comes last.
        """
        updates = list(self._reply_update)
        requested = self._updates.get(self._update.container.id)
        if requested is not None:
            updates.append(requested)
        return UpdateContainerResponse(update=updates)

    def stop_container_response(self) -> StopContainerResponse:
        """Return the combined reply to a container stop request."""
        return StopContainerResponse(update=self._reply_update)

    # merging

    def apply(self, response: Any, plugin: str) -> None:
        """Merge one plugin's response, raising ConflictError on conflicts."""
        if response is None:
            return
        if isinstance(response, CreateContainerResponse):
            self._apply_adjustment(response.adjust, plugin)
            self._apply_updates(response.update, plugin)
        elif isinstance(response, (UpdateContainerResponse, StopContainerResponse)):
            self._apply_updates(response.update, plugin)
        else:
            raise TypeError(
                f"cannot apply response of invalid type {type(response).__name__}"
            )

    def _apply_adjustment(self, adjust: ContainerAdjustment | None, plugin: str) -> None:
        if adjust is None:
            return
        self._adjust_annotations(adjust.annotations, plugin)
        self._adjust_mounts(adjust.mounts, plugin)
        self._adjust_env(adjust.env, plugin)
        self._adjust_hooks(adjust.hooks)
        if adjust.linux is not None:
            self._adjust_devices(adjust.linux.devices, plugin)
            self._adjust_resources(adjust.linux.resources, plugin)
            self._adjust_cgroups_path(adjust.linux.cgroups_path, plugin)

    def _apply_updates(self, updates: list[ContainerUpdate], plugin: str) -> None:
        for u in updates or ():
            reply = self._container_update(u, plugin)
            try:
                self._update_resources(reply, u, plugin)
            except subjects.ConflictError:
                if not u.ignore_failure:
                    raise

    def _adjust_annotations(self, annotations: dict[str, str], plugin: str) -> None:
        if not annotations:
            return
        container = self._create.container
        cid = container.id
        reply = self._adjust.annotations

        removed: set[str] = set()
        kept: dict[str, str] = {}
        for k, v in annotations.items():
            key, marked = is_marked_for_removal(k)
            if marked:
                removed.add(key)
            else:
                kept[k] = v

        for k, v in kept.items():
            if k in removed:
                self._owners.clear(cid, subjects.ANNOTATION, k)
                container.annotations.pop(k, None)
                reply[mark_for_removal(k)] = ""
            self._owners.claim(cid, subjects.ANNOTATION, plugin, k)
            container.annotations[k] = v
            reply[k] = v
            removed.discard(k)

        for k in removed:
            reply[mark_for_removal(k)] = ""

    def _adjust_mounts(self, mounts: list[Mount], plugin: str) -> None:
        if not mounts:
            return
        container = self._create.container
        cid = container.id

        add: list[Mount] = []
        removed: set[str] = set()
        modified: set[str] = set()
        for m in mounts:
            key, marked = m.is_marked_for_removal()
            if marked:
                removed.add(key)
            else:
                add.append(m)
                modified.add(key)

        cleared = []
        for m in self._adjust.mounts:
            if m.destination in removed:
                self._owners.clear(cid, subjects.MOUNT, m.destination)
            else:
                cleared.append(m)
        self._adjust.mounts = cleared

        container.mounts = [
            m
            for m in container.mounts
            if m.destination not in removed and m.destination not in modified
        ]

        for m in add:
            self._owners.claim(cid, subjects.MOUNT, plugin, m.destination)
            self._adjust.mounts.append(m)

        container.mounts.extend(add)

    def _adjust_devices(self, devices: list[LinuxDevice], plugin: str) -> None:
        if not devices:
            return
        container = self._create.container
        cid = container.id
        reply = self._adjust.linux

        add: list[LinuxDevice] = []
        removed: set[str] = set()
        modified: set[str] = set()
        for d in devices:
            key, marked = d.is_marked_for_removal()
            if marked:
                removed.add(key)
            else:
                add.append(d)
                modified.add(key)

        cleared = []
        for d in reply.devices:
            if d.path in removed:
                self._owners.clear(cid, subjects.DEVICE, d.path)
            else:
                cleared.append(d)
        reply.devices = cleared

        container.linux.devices = [
            d
            for d in container.linux.devices
            if d.path not in removed and d.path not in modified
        ]

        for d in add:
            self._owners.claim(cid, subjects.DEVICE, plugin, d.path)
            reply.devices.append(d)

        container.linux.devices.extend(add)

    def _adjust_env(self, env: list[KeyValue], plugin: str) -> None:
        if not env:
            return
        container = self._create.container
        cid = container.id

        add: list[KeyValue] = []
        removed: set[str] = set()
        modified: set[str] = set()
        for e in env:
            key, marked = e.is_marked_for_removal()
            if marked:
                removed.add(key)
            else:
                add.append(e)
                modified.add(key)

        cleared = []
        for e in self._adjust.env:
            if e.key in removed:
                self._owners.clear(cid, subjects.ENV, e.key)
            else:
                cleared.append(e)
        self._adjust.env = cleared

        kept_env = []
        for s in container.env:
            key, _ = split_env_var(s)
            if key in removed or key in modified:
                continue
            kept_env.append(s)
        container.env = kept_env

        for e in add:
            self._owners.claim(cid, subjects.ENV, plugin, e.key)
            self._adjust.env.append(e)

        container.env.extend(e.to_oci() for e in add)

    def _adjust_hooks(self, hooks: Hooks | None) -> None:
        if hooks is None:
            return
        reply = self._adjust.hooks
        container = self._create.container.hooks
        for kind in _HOOK_KINDS:
            added = getattr(hooks, kind)
            if added:
                getattr(reply, kind).extend(added)
                getattr(container, kind).extend(added)

    def _adjust_resources(self, resources: LinuxResources | None, plugin: str) -> None:
        if resources is None:
            return
        container = self._create.container
        self._merge_resources(
            container.id,
            plugin,
            resources,
            container.linux.resources,
            self._adjust.linux.resources,
        )

    def _adjust_cgroups_path(self, path: str, plugin: str) -> None:
        if not path:
            return
        container = self._create.container
        self._owners.claim(container.id, subjects.CGROUPS_PATH, plugin)
        container.linux.cgroups_path = path
        self._adjust.linux.cgroups_path = path

    def _merge_resources(
        self,
        container_id: str,
        plugin: str,
        src: LinuxResources,
        *targets: LinuxResources,
    ) -> None:
        """Claim every resource set in src and copy it into all targets."""
        claim = self._owners.claim

        for target in targets:
            if target.memory is None:
                target.memory = LinuxMemory()
            if target.cpu is None:
                target.cpu = LinuxCPU()
            if target.unified is None:
                target.unified = {}

        if src.memory is not None:
            for attr, subject in _MEMORY_FIELDS:
                value = getattr(src.memory, attr)
                if _is_set(value):
                    claim(container_id, subject, plugin)
                    for target in targets:
                        setattr(target.memory, attr, value)

        if src.cpu is not None:
            for attr, subject in _CPU_FIELDS:
                value = getattr(src.cpu, attr)
                if _is_set(value):
                    claim(container_id, subject, plugin)
                    for target in targets:
                        setattr(target.cpu, attr, value)

        for limit in src.hugepage_limits or ():
            claim(container_id, subjects.HUGEPAGE_LIMIT, plugin, limit.page_size)
            for target in targets:
                target.hugepage_limits.append(limit)

        for key, value in (src.unified or {}).items():
            claim(container_id, subjects.UNIFIED, plugin, key)
            for target in targets:
                target.unified[key] = value

        if src.blockio_class is not None:
            claim(container_id, subjects.BLOCKIO_CLASS, plugin)
            for target in targets:
                target.blockio_class = src.blockio_class

        if src.rdt_class is not None:
            claim(container_id, subjects.RDT_CLASS, plugin)
            for target in targets:
                target.rdt_class = src.rdt_class

    def _update_resources(
        self, reply: ContainerUpdate, u: ContainerUpdate, plugin: str
    ) -> None:
        if u.linux is None or u.linux.resources is None:
            return

        request, cid = self._update, u.container_id
        targets_request = request is not None and request.container.id == cid

        # work on a copy so that an ignored failure leaves nothing half-done
        if targets_request:
            resources = request.linux_resources.copy()
        else:
            resources = reply.linux.resources.copy()

        self._merge_resources(cid, plugin, u.linux.resources, resources)

        reply.linux.resources = resources.copy()
        if targets_request:
            request.linux_resources = resources.copy()

    def _container_update(self, u: ContainerUpdate, plugin: str) -> ContainerUpdate:
        cid = u.container_id
        if self._create is not None and self._create.container is not None:
            if self._create.container.id == cid:
                raise ValueError(
                    f'plugin "{plugin}" asked update of "{cid}" during creation'
                )

        existing = self._updates.get(cid)
        if existing is not None:
            existing.ignore_failure = existing.ignore_failure and u.ignore_failure
            return existing

        update = ContainerUpdate(
            container_id=cid,
            linux=LinuxContainerUpdate(resources=_fresh_resources()),
            ignore_failure=u.ignore_failure,
        )
        self._updates[cid] = update

        # the requested container of an update is added by the response getter
        if self._update is None or self._update.container.id != cid:
            self._reply_update.append(update)

        return update


def collect_create_container_result(request: CreateContainerRequest) -> Result:
    """Prepare a result for a container creation request."""
    container = request.container
    if container.labels is None:
        container.labels = {}
    if container.annotations is None:
        container.annotations = {}
    if container.mounts is None:
        container.mounts = []
    if container.env is None:
        container.env = []
    if container.hooks is None:
        container.hooks = Hooks()
    if container.linux is None:
        container.linux = LinuxContainer()
    linux = container.linux
    if linux.devices is None:
        linux.devices = []
    if linux.resources is None:
        linux.resources = LinuxResources()
    if linux.resources.memory is None:
        linux.resources.memory = LinuxMemory()
    if linux.resources.cpu is None:
        linux.resources.cpu = LinuxCPU()
    if linux.resources.unified is None:
        linux.resources.unified = {}
    return Result(create=request)


def collect_update_container_result(request: UpdateContainerRequest | None) -> Result:
    """Prepare a result for a container update request."""
    if request is not None:
        if request.linux_resources is None:
            request.linux_resources = LinuxResources()
        if request.linux_resources.memory is None:
            request.linux_resources.memory = LinuxMemory()
        if request.linux_resources.cpu is None:
            request.linux_resources.cpu = LinuxCPU()
    return Result(update=request)


def collect_stop_container_result() -> Result:
    """Prepare a result for a container stop request."""
    return collect_update_container_result(None)
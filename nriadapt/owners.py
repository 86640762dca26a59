"""Tracking which plugin set which container attribute."""

from __future__ import annotations

ANNOTATION = "annotation"
MOUNT = "mount"
DEVICE = "device"
ENV = "env"
MEMORY_LIMIT = "memory limit"
MEMORY_RESERVATION = "memory reservation"
MEMORY_SWAP_LIMIT = "memory swap limit"
MEMORY_KERNEL_LIMIT = "memory kernel limit"
MEMORY_TCP_LIMIT = "memory TCP limit"
MEMORY_SWAPPINESS = "memory swappiness"
MEMORY_DISABLE_OOM_KILLER = "memory disable OOM killer"
MEMORY_USE_HIERARCHY = "memory 'UseHierarchy'"
CPU_SHARES = "CPU shares"
CPU_QUOTA = "CPU quota"
CPU_PERIOD = "CPU period"
CPU_REALTIME_RUNTIME = "CPU realtime runtime"
CPU_REALTIME_PERIOD = "CPU realtime period"
CPUSET_CPUS = "CPU pinning"
CPUSET_MEMS = "memory pinning"
HUGEPAGE_LIMIT = "hugepage limit of size"
BLOCKIO_CLASS = "block I/O class"
RDT_CLASS = "RDT class"
UNIFIED = "unified resource"
CGROUPS_PATH = "cgroups path"


class ConflictError(Exception):
    """Two plugins tried to set the same container attribute."""

    def __init__(self, plugin: str, other: str, subject: str) -> None:
        super().__init__(
            f'plugins "{plugin}" and "{other}" both tried to set {subject}'
        )
        self.plugin = plugin
        self.other = other
        self.subject = subject


def conflict(plugin: str, other: str, subject: str, *args: str) -> ConflictError:
    """Build the error for a conflicting claim."""
    return ConflictError(plugin, other, " ".join((subject, *args)))


class Owners:
    """Per-container record of the plugin that claimed each attribute."""

    def __init__(self) -> None:
        self._claims: dict[str, dict[tuple[str, str | None], str]] = {}

    def claim(
        self,
        container_id: str,
        subject: str,
        plugin: str,
        qualifier: str | None = None,
    ) -> None:
        """Record plugin as owner, raising ConflictError if already owned."""
        claims = self._claims.setdefault(container_id, {})
        key = (subject, qualifier)
        other = claims.get(key)
        if other is not None:
            extra = () if qualifier is None else (qualifier,)
            raise conflict(plugin, other, subject, *extra)
        claims[key] = plugin

    def clear(
        self, container_id: str, subject: str, qualifier: str | None = None
    ) -> None:
        """Drop any claim on the attribute."""
        self._claims.get(container_id, {}).pop((subject, qualifier), None)

    def owner(
        self, container_id: str, subject: str, qualifier: str | None = None
    ) -> str | None:
        """Return the plugin owning the attribute, if any."""
        return self._claims.get(container_id, {}).get((subject, qualifier))
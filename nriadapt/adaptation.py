"""Runtime-side entry point relaying pod and container events to plugins."""

from __future__ import annotations

import logging
import os
import socket
import threading
from typing import Any, Callable

from .api import (
    DEFAULT_SOCKET_PATH,
    Container,
    ContainerUpdate,
    CreateContainerRequest,
    CreateContainerResponse,
    Event,
    PodSandbox,
    StateChangeEvent,
    StopContainerRequest,
    StopContainerResponse,
    UpdateContainerRequest,
    UpdateContainerResponse,
)
from .plugin import Plugin, PluginError, check_plugin_index
from .result import (
    Result,
    collect_create_container_result,
    collect_stop_container_result,
    collect_update_container_result,
)

log = logging.getLogger(__name__)

DEFAULT_PLUGIN_PATH = "/opt/nri/plugins"
DEFAULT_PLUGIN_CONFIG_PATH = "/etc/nri/conf.d"

SyncCB = Callable[[list[PodSandbox], list[Container]], list[ContainerUpdate]]
SyncFn = Callable[[SyncCB], None]
UpdateFn = Callable[[list[ContainerUpdate]], list[ContainerUpdate]]


def parse_plugin_name(name: str) -> tuple[str, str]:
    """Split a plugin file name of the form idx-base into its parts."""
    idx, sep, base = name.partition("-")
    if not sep:
        raise ValueError(f'invalid plugin name "{name}", idx-pluginname expected')
    check_plugin_index(idx)
    return idx, base


class Adaptation:
    """Relays container runtime requests and events to NRI plugins."""

    def __init__(
        self,
        name: str,
        version: str,
        sync_fn: SyncFn | None,
        update_fn: UpdateFn | None,
        *,
        plugin_path: str = DEFAULT_PLUGIN_PATH,
        plugin_config_path: str = DEFAULT_PLUGIN_CONFIG_PATH,
        socket_path: str = DEFAULT_SOCKET_PATH,
        disable_external_connections: bool = False,
    ) -> None:
        if sync_fn is None:
            raise ValueError("failed to create NRI adaptation, nil SyncFn")
        if update_fn is None:
            raise ValueError("failed to create NRI adaptation, nil UpdateFn")
        self.name = name
        self.version = version
        self.plugin_path = plugin_path
        self.plugin_config_path = plugin_config_path
        self.socket_path = socket_path
        self.disable_external_connections = disable_external_connections
        self._sync_fn = sync_fn
        self._update_fn = update_fn
        self._lock = threading.Lock()
        self._listener: socket.socket | None = None
        self._plugins: list[Plugin] = []
        log.info("runtime interface created")

    @property
    def plugins(self) -> list[Plugin]:
        """The active plugins in invocation order."""
        with self._lock:
            return list(self._plugins)

    # lifecycle

    def start(self) -> None:
        """Start pre-installed plugins and accept external plugin connections."""
        log.info("runtime interface starting up...")
        with self._lock:
            self._start_plugins()
            self._start_listener()

    def stop(self) -> None:
        """Stop accepting connections and shut down all plugins."""
        log.info("runtime interface shutting down...")
        with self._lock:
            self._stop_listener()
            self._stop_plugins()

    def connect_plugin(self, service: Any) -> Plugin:
        """Register, configure and synchronize a plugin served by service."""
        plugin = Plugin(self, service)
        self._connect(plugin)
        return plugin

    def _connect(self, plugin: Plugin) -> None:
        plugin.start(self.name, self.version)
        with self._lock:
            try:
                self._sync_fn(plugin.synchronize)
            except Exception:
                plugin.close()
                raise
            self._plugins.append(plugin)
            self._sort_plugins()
        log.info('plugin "%s" connected', plugin.name())

    # pod and container events

    def run_pod_sandbox(self, event: StateChangeEvent) -> None:
        event.event = Event.RUN_POD_SANDBOX
        self.state_change(event)

    def stop_pod_sandbox(self, event: StateChangeEvent) -> None:
        event.event = Event.STOP_POD_SANDBOX
        self.state_change(event)

    def remove_pod_sandbox(self, event: StateChangeEvent) -> None:
        event.event = Event.REMOVE_POD_SANDBOX
        self.state_change(event)

    def create_container(self, request: CreateContainerRequest) -> CreateContainerResponse:
        """Relay a creation request, returning the combined plugin adjustments."""
        result = self._relay(
            lambda: collect_create_container_result(request),
            lambda p: p.create_container(request),
        )
        return result.create_container_response()

    def post_create_container(self, event: StateChangeEvent) -> None:
        event.event = Event.POST_CREATE_CONTAINER
        self.state_change(event)

    def start_container(self, event: StateChangeEvent) -> None:
        event.event = Event.START_CONTAINER
        self.state_change(event)

    def post_start_container(self, event: StateChangeEvent) -> None:
        event.event = Event.POST_START_CONTAINER
        self.state_change(event)

    def update_container(self, request: UpdateContainerRequest) -> UpdateContainerResponse:
        """Relay an update request, returning the combined plugin updates."""
        result = self._relay(
            lambda: collect_update_container_result(request),
            lambda p: p.update_container(request),
        )
        return result.update_container_response()

    def post_update_container(self, event: StateChangeEvent) -> None:
        event.event = Event.POST_UPDATE_CONTAINER
        self.state_change(event)

    def stop_container(self, request: StopContainerRequest) -> StopContainerResponse:
        """Relay a stop request, returning the combined plugin updates."""
        result = self._relay(
            collect_stop_container_result,
            lambda p: p.stop_container(request),
        )
        return result.stop_container_response()

    def remove_container(self, event: StateChangeEvent) -> None:
        event.event = Event.REMOVE_CONTAINER
        self.state_change(event)

    def state_change(self, event: StateChangeEvent) -> None:
        """Relay a pod or container event to all subscribed plugins."""
        if event.event == Event.UNKNOWN:
            raise ValueError("invalid (unset) event in state change notification")
        with self._lock:
            try:
                for plugin in list(self._plugins):
                    plugin.state_change(event)
            finally:
                self._remove_closed_plugins()

    def update_containers(self, updates: list[ContainerUpdate]) -> list[ContainerUpdate]:
        """Hand unsolicited plugin updates to the runtime; return the failed ones."""
        with self._lock:
            return self._update_fn(updates)

    def _relay(
        self,
        collect: Callable[[], Result],
        call: Callable[[Plugin], Any],
    ) -> Result:
        with self._lock:
            try:
                result = collect()
                for plugin in list(self._plugins):
                    result.apply(call(plugin), plugin.name())
                return result
            finally:
                self._remove_closed_plugins()

    # pre-installed plugins

    def discover_plugins(self) -> list[tuple[str, str, str]]:
        """Return (idx, base, config) for each executable in the plugin path."""
        try:
            with os.scandir(self.plugin_path) as it:
                entries = sorted(it, key=lambda e: e.name)
        except FileNotFoundError:
            return []
        except OSError as err:
            raise PluginError(
                f"failed to discover plugins in {self.plugin_path}: {err}"
            ) from err

        found = []
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                continue
            try:
                mode = entry.stat(follow_symlinks=False).st_mode
            except OSError:
                continue
            if not mode & 0o111:
                continue
            try:
                idx, base = parse_plugin_name(entry.name)
                cfg = self.plugin_config(idx, base)
            except (ValueError, PluginError) as err:
                raise PluginError(
                    f"failed to discover plugins in {self.plugin_path}: {err}"
                ) from err
            log.info("discovered plugin %s", entry.name)
            found.append((idx, base, cfg))
        return found

    def plugin_config(self, idx: str, base: str) -> str:
        """Read the drop-in configuration of a pre-installed plugin, if any."""
        name = f"{idx}-{base}"
        for candidate in (f"{name}.conf", f"{base}.conf"):
            path = os.path.join(self.plugin_config_path, candidate)
            try:
                with open(path, encoding="utf-8") as f:
                    return f.read()
            except FileNotFoundError:
                continue
            except OSError as err:
                raise PluginError(
                    f'failed to read configuration for plugin "{name}": {err}'
                ) from err
        return ""

    def _start_plugins(self) -> None:
        log.info("starting plugins...")
        started: list[Plugin] = []
        try:
            for idx, base, cfg in self.discover_plugins():
                name = f"{idx}-{base}"
                log.info('starting plugin "%s"...', name)
                try:
                    plugin = Plugin(
                        self, idx=idx, base=base, cfg=cfg, path=self.plugin_path
                    )
                except Exception as err:
                    raise PluginError(
                        f'failed to start NRI plugin "{name}": {err}'
                    ) from err
                plugin.start(self.name, self.version)
                started.append(plugin)
        except BaseException:
            for plugin in started:
                plugin.stop()
            raise
        self._plugins = started
        self._sort_plugins()

    def _stop_plugins(self) -> None:
        log.info("stopping plugins...")
        for plugin in self._plugins:
            plugin.close()
            plugin.stop()
        self._plugins = []

    def _remove_closed_plugins(self) -> None:
        self._plugins = [p for p in self._plugins if not p.is_closed()]

    def _sort_plugins(self) -> None:
        self._remove_closed_plugins()
        self._plugins.sort(key=lambda p: p.idx)
        if self._plugins:
            log.info("plugin invocation order")
            for i, plugin in enumerate(self._plugins, 1):
                log.info('  #%d: "%s" (%s)', i, plugin.name(), plugin.qualified_name())

    # external plugins

    def _start_listener(self) -> None:
        if self.disable_external_connections:
            log.info("connection from external plugins disabled")
            return

        path = self.socket_path
        try:
            os.remove(path)
        except OSError:
            pass
        try:
            os.makedirs(os.path.dirname(path) or ".", mode=0o700, exist_ok=True)
            listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                listener.bind(path)
                listener.listen()
            except OSError:
                listener.close()
                raise
        except OSError as err:
            raise PluginError(f'failed to create socket "{path}": {err}') from err

        self._listener = listener
        threading.Thread(
            target=self._accept_plugin_connections, args=(listener,), daemon=True
        ).start()

    def _stop_listener(self) -> None:
        listener, self._listener = self._listener, None
        if listener is None:
            return
        try:
            listener.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        listener.close()

    def _accept_plugin_connections(self, listener: socket.socket) -> None:
        while True:
            try:
                conn, _ = listener.accept()
            except OSError as err:
                log.info("stopped accepting plugin connections (%s)", err)
                return
            try:
                plugin = Plugin(self, conn)
            except Exception as err:
                log.error("failed to create external plugin: %s", err)
                conn.close()
                continue
            try:
                self._connect(plugin)
            except Exception as err:
                log.error("failed to connect external plugin: %s", err)
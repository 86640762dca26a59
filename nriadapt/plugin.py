"""Runtime-side handle for a single plugin connection."""

from __future__ import annotations

import dataclasses
import enum
import itertools
import json
import logging
import os
import queue
import socket
import struct
import subprocess
import sys
import threading
import types
import typing
from typing import Any, Callable

from . import api as _api_module
from .api import (
    VALID_EVENTS,
    ContainerUpdate,
    CreateContainerRequest,
    CreateContainerResponse,
    Event,
    EventMask,
    StateChangeEvent,
    StopContainerRequest,
    StopContainerResponse,
    UpdateContainerRequest,
    UpdateContainerResponse,
)

log = logging.getLogger(__name__)

DEFAULT_PLUGIN_REGISTRATION_TIMEOUT = 5.0
DEFAULT_PLUGIN_REQUEST_TIMEOUT = 2.0

PLUGIN_NAME_ENV_VAR = "NRI_PLUGIN_NAME"
PLUGIN_IDX_ENV_VAR = "NRI_PLUGIN_IDX"
PLUGIN_SOCKET_ENV_VAR = "NRI_PLUGIN_SOCKET"

_timeout_lock = threading.Lock()
_timeouts = {
    "registration": DEFAULT_PLUGIN_REGISTRATION_TIMEOUT,
    "request": DEFAULT_PLUGIN_REQUEST_TIMEOUT,
}

_CLOSED = object()

_TYPE_NAMES: dict[str, Any] = {
    "int": int,
    "str": str,
    "bool": bool,
    "float": float,
    "bytes": bytes,
    "Any": Any,
}


class PluginError(Exception):
    """A plugin failed to register, configure or handle a request."""


class FatalPluginError(PluginError):
    """The plugin connection is unusable and should be closed."""


def set_plugin_registration_timeout(seconds: float) -> None:
    """Set the timeout for plugin registration."""
    with _timeout_lock:
        _timeouts["registration"] = seconds


def get_plugin_registration_timeout() -> float:
    """Return the timeout for plugin registration."""
    with _timeout_lock:
        return _timeouts["registration"]


def set_plugin_request_timeout(seconds: float) -> None:
    """Set the timeout for plugins to handle a request."""
    with _timeout_lock:
        _timeouts["request"] = seconds


def get_plugin_request_timeout() -> float:
    """Return the timeout for plugins to handle a request."""
    with _timeout_lock:
        return _timeouts["request"]


def check_plugin_index(idx: str) -> None:
    """Raise ValueError unless idx is exactly two digits."""
    if len(idx) != 2 or not all(c in "0123456789" for c in idx):
        raise ValueError(f'invalid plugin index "{idx}", must be 2 digits')


def get_peer_pid(sock: socket.socket) -> int:
    """Return the process id at the other end of a unix domain socket."""
    af_unix = getattr(socket, "AF_UNIX", None)
    if af_unix is None or sock.family != af_unix:
        raise ValueError("invalid connection, not a unix domain socket")
    if not sys.platform.startswith("linux"):
        raise OSError(f"get_peer_pid() unimplemented on {sys.platform}")
    try:
        creds = sock.getsockopt(
            socket.SOL_SOCKET, socket.SO_PEERCRED, struct.calcsize("3i")
        )
    except OSError as err:
        raise OSError(f"failed to get process credentials: {err}") from err
    pid, _uid, _gid = struct.unpack("3i", creds)
    return pid


def is_fatal_error(err: BaseException | None) -> bool:
    """Tell whether an error means the plugin connection should be closed."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        if isinstance(err, (FatalPluginError, TimeoutError, ConnectionError)):
            return True
        err = err.__cause__
    return False


def _encode(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (list, tuple)):
        return [_encode(item) for item in obj]
    return obj


def _split_top(text: str, sep: str) -> list[str]:
    """Split text on sep where it is not nested inside brackets."""
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    for ch in text:
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
        if ch == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    parts.append("".join(current).strip())
    return parts


def _resolve(annotation: Any) -> Any:
    """Turn a field annotation written as text into a type usable by _decode."""
    if not isinstance(annotation, str):
        return annotation
    alternatives = [
        p for p in _split_top(annotation.strip(), "|") if p and p != "None"
    ]
    if not alternatives:
        return Any
    text = alternatives[0]
    if "[" in text and text.endswith("]"):
        head, inner = text.split("[", 1)
        head = head.strip().split(".")[-1]
        args = _split_top(inner[:-1], ",")
        if head in ("Optional", "Union"):
            rest = [a for a in args if a != "None"]
            return _resolve(rest[0]) if rest else Any
        if head in ("list", "List", "Sequence"):
            return list[_resolve(args[0])]
        if head in ("dict", "Dict", "Mapping") and len(args) == 2:
            return dict[_resolve(args[0]), _resolve(args[1])]
        return Any
    name = text.split(".")[-1]
    if name in _TYPE_NAMES:
        return _TYPE_NAMES[name]
    return getattr(_api_module, name, Any)


def _decode(tp: Any, data: Any) -> Any:
    if data is None:
        return None
    tp = _resolve(tp)
    origin = typing.get_origin(tp)
    if origin in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        return _decode(args[0], data)
    if origin is list:
        (item_type,) = typing.get_args(tp)
        return [_decode(item_type, item) for item in data]
    if origin is dict:
        _key_type, value_type = typing.get_args(tp)
        return {str(k): _decode(value_type, v) for k, v in data.items()}
    if dataclasses.is_dataclass(tp):
        kwargs = {
            f.name: _decode(f.type, data[f.name])
            for f in dataclasses.fields(tp)
            if f.name in data
        }
        return tp(**kwargs)
    if isinstance(tp, type) and issubclass(tp, enum.Enum):
        return tp(data)
    return data


class _Pending:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Any = None
        self.error: BaseException | None = None


class _SocketService:
    """Newline-delimited JSON request/reply channel to an out-of-process plugin."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._rfile = sock.makefile("rb")
        self._wlock = threading.Lock()
        self._plock = threading.Lock()
        self._pending: dict[int, _Pending] = {}
        self._ids = itertools.count(1)
        self._closed = threading.Event()
        self._plugin: Plugin | None = None

    def connect(self, plugin: "Plugin") -> None:
        self._plugin = plugin
        threading.Thread(target=self._serve, daemon=True).start()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()
        with self._plock:
            pending, self._pending = self._pending, {}
        for p in pending.values():
            p.error = FatalPluginError("connection closed")
            p.done.set()

    def _serve(self) -> None:
        try:
            for line in self._rfile:
                try:
                    msg = json.loads(line)
                except ValueError:
                    log.error("protocol error on plugin connection")
                    break
                if "method" in msg:
                    threading.Thread(
                        target=self._handle, args=(msg,), daemon=True
                    ).start()
                else:
                    self._resolve(msg)
        except OSError:
            pass
        finally:
            self._rfile.close()
            self.close()
            if self._plugin is not None:
                log.info('connection to plugin "%s" closed', self._plugin.name())
                self._plugin.close()

    def _resolve(self, msg: dict) -> None:
        with self._plock:
            p = self._pending.pop(msg.get("id"), None)
        if p is None:
            return
        if msg.get("error") is not None:
            p.error = PluginError(str(msg["error"]))
        else:
            p.result = msg.get("result")
        p.done.set()

    def _handle(self, msg: dict) -> None:
        mid, method = msg.get("id"), msg.get("method")
        params = msg.get("params") or {}
        plugin = self._plugin
        try:
            if plugin is None:
                raise PluginError("plugin not connected")
            if method == "RegisterPlugin":
                plugin.register_plugin(
                    params.get("plugin_name", ""), params.get("plugin_idx", "")
                )
                result: Any = {}
            elif method == "UpdateContainers":
                updates = _decode(list[ContainerUpdate], params.get("update") or [])
                failed = plugin.update_containers(updates)
                result = {"failed": _encode(failed or [])}
            else:
                raise PluginError(f"unknown method {method!r}")
        except Exception as err:
            reply = {"id": mid, "error": str(err)}
        else:
            reply = {"id": mid, "result": result}
        try:
            self._send(reply)
        except FatalPluginError:
            pass

    def _send(self, msg: dict) -> None:
        data = (json.dumps(msg) + "\n").encode()
        try:
            with self._wlock:
                self._sock.sendall(data)
        except OSError as err:
            self.close()
            raise FatalPluginError(f"connection closed: {err}") from err

    def _call(self, method: str, params: dict) -> Any:
        if self._closed.is_set():
            raise FatalPluginError("connection closed")
        mid = next(self._ids)
        pending = _Pending()
        with self._plock:
            self._pending[mid] = pending
        self._send({"id": mid, "method": method, "params": params})
        pending.done.wait()
        if pending.error is not None:
            raise pending.error
        return pending.result

    def configure(self, config: str, runtime_name: str, runtime_version: str) -> int:
        result = self._call(
            "Configure",
            {
                "config": config,
                "runtime_name": runtime_name,
                "runtime_version": runtime_version,
            },
        )
        return int((result or {}).get("events", 0))

    def synchronize(self, pods: list, containers: list) -> list[ContainerUpdate]:
        result = self._call(
            "Synchronize", {"pods": _encode(pods), "containers": _encode(containers)}
        )
        return _decode(list[ContainerUpdate], (result or {}).get("update") or [])

    def create_container(
        self, request: CreateContainerRequest
    ) -> CreateContainerResponse | None:
        result = self._call("CreateContainer", {"request": _encode(request)})
        return _decode(CreateContainerResponse, result)

    def update_container(
        self, request: UpdateContainerRequest
    ) -> UpdateContainerResponse | None:
        result = self._call("UpdateContainer", {"request": _encode(request)})
        return _decode(UpdateContainerResponse, result)

    def stop_container(
        self, request: StopContainerRequest
    ) -> StopContainerResponse | None:
        result = self._call("StopContainer", {"request": _encode(request)})
        return _decode(StopContainerResponse, result)

    def state_change(self, event: StateChangeEvent) -> None:
        self._call("StateChange", {"event": _encode(event)})


class Plugin:
    """A plugin as seen by the runtime.

    The service is either an object implementing the plugin calls
    (configure, synchronize, create_container, update_container,
    stop_container, state_change, and optionally connect and close),
    or a connected unix domain socket. Giving a path instead launches
    the plugin binary idx-base found in that directory.
    """

    def __init__(
        self,
        runtime: Any = None,
        service: Any = None,
        *,
        idx: str = "",
        base: str = "",
        cfg: str = "",
        path: str | None = None,
    ) -> None:
        self.runtime = runtime
        self.idx = idx
        self.base = base
        self.cfg = cfg
        self.pid = 0
        self.events = EventMask(0)
        self._lock = threading.Lock()
        self._closed = False
        self._registered: queue.Queue = queue.Queue()
        self._process: subprocess.Popen | None = None
        self._launched = path is not None

        sock: socket.socket | None = None
        if path is not None:
            sock = self._launch(path)
            service = _SocketService(sock)
        elif isinstance(service, socket.socket):
            sock = service
            service = _SocketService(sock)
        elif service is None:
            raise ValueError("plugin needs a service or a path to launch it from")
        self._service = service

        if sock is not None:
            try:
                self.pid = get_peer_pid(sock)
            except (OSError, ValueError) as err:
                log.warning("failed to determine plugin pid: %s", err)

    def _launch(self, directory: str) -> socket.socket:
        name = self.name()
        local, peer = socket.socketpair()
        env = {
            PLUGIN_NAME_ENV_VAR: self.base,
            PLUGIN_IDX_ENV_VAR: self.idx,
            PLUGIN_SOCKET_ENV_VAR: str(peer.fileno()),
        }
        try:
            self._process = subprocess.Popen(
                [os.path.join(directory, name)],
                env=env,
                pass_fds=(peer.fileno(),),
            )
        except OSError as err:
            local.close()
            raise PluginError(f'failed launch plugin "{name}": {err}') from err
        finally:
            peer.close()
        return local

    def is_external(self) -> bool:
        """Tell whether the plugin connected by itself rather than being launched."""
        return not self._launched

    def name(self) -> str:
        return f"{self.idx}-{self.base}"

    def qualified_name(self) -> str:
        kind = "external" if self.is_external() else "pre-connected"
        idx = self.idx or "??"
        base = self.base or "plugin"
        return f"{kind}:{idx}-{base}[{self.pid}]"

    def register_plugin(self, plugin_name: str, plugin_idx: str) -> None:
        """Handle the plugin's registration request."""
        if self.is_external():
            if not plugin_name:
                self._registered.put(
                    PluginError(
                        f'plugin "{self.qualified_name()}" registered empty name'
                    )
                )
                raise PluginError("invalid (empty) plugin name")
            try:
                check_plugin_index(plugin_idx)
            except ValueError as err:
                self._registered.put(
                    PluginError(
                        f'plugin "{plugin_name}" registered invalid index: {err}'
                    )
                )
                raise PluginError(f"invalid plugin index: {err}") from err
            self.base = plugin_name
            self.idx = plugin_idx

        log.info('plugin "%s" registered as "%s"', self.qualified_name(), self.name())
        self._registered.put(None)

    def start(self, runtime_name: str, runtime_version: str) -> None:
        """Wait for the plugin to register, then configure it."""
        connect = getattr(self._service, "connect", None)
        if connect is not None:
            connect(self)

        try:
            outcome = self._registered.get(timeout=get_plugin_registration_timeout())
        except queue.Empty:
            self.close()
            self.stop()
            raise PluginError("plugin registration timed out") from None
        if outcome is _CLOSED:
            raise PluginError("failed to register plugin, connection closed")
        if outcome is not None:
            raise PluginError(f"failed to register plugin: {outcome}") from outcome

        try:
            self.configure(runtime_name, runtime_version)
        except Exception:
            self.close()
            self.stop()
            raise

    def configure(self, runtime_name: str, runtime_version: str) -> None:
        """Configure the plugin and subscribe it to the events it asked for."""
        try:
            reply = self._invoke(
                self._service.configure, self.cfg, runtime_name, runtime_version
            )
        except Exception as err:
            raise PluginError(f"failed to configure plugin: {err}") from err

        events = EventMask(int(reply or 0))
        if events:
            extra = int(events) & ~int(VALID_EVENTS)
            if extra:
                raise PluginError(f"invalid plugin events: 0x{extra:x}")
        else:
            events = VALID_EVENTS
        self.events = events

    def synchronize(self, pods: list, containers: list) -> list[ContainerUpdate]:
        """Send the current runtime state to the plugin, return its updates."""
        log.info("synchronizing plugin %s", self.name())
        updates = self._invoke(self._service.synchronize, pods, containers)
        return list(updates or [])

    def create_container(
        self, request: CreateContainerRequest
    ) -> CreateContainerResponse | None:
        return self._relay(
            Event.CREATE_CONTAINER,
            "CreateContainer request",
            self._service.create_container,
            request,
        )

    def update_container(
        self, request: UpdateContainerRequest
    ) -> UpdateContainerResponse | None:
        return self._relay(
            Event.UPDATE_CONTAINER,
            "UpdateContainer request",
            self._service.update_container,
            request,
        )

    def stop_container(
        self, request: StopContainerRequest
    ) -> StopContainerResponse | None:
        return self._relay(
            Event.STOP_CONTAINER,
            "StopContainer request",
            self._service.stop_container,
            request,
        )

    def state_change(self, event: StateChangeEvent) -> None:
        self._relay(
            event.event,
            f"event {int(event.event)}",
            self._service.state_change,
            event,
        )

    def update_containers(self, updates: list[ContainerUpdate]) -> list[ContainerUpdate]:
        """Relay the plugin's unsolicited container updates to the runtime."""
        log.info('plugin "%s" requested container updates', self.name())
        if self.runtime is None:
            raise PluginError(f'plugin "{self.name()}" is not connected to a runtime')
        return self.runtime.update_containers(updates)

    def close(self) -> None:
        """Shut down the plugin connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        close = getattr(self._service, "close", None)
        if close is not None:
            close()
        self._registered.put(_CLOSED)

    def is_closed(self) -> bool:
        with self._lock:
            return self._closed

    def stop(self) -> None:
        """Kill the plugin process if it was launched by us."""
        proc = self._process
        if self.is_external() or proc is None:
            return
        if proc.poll() is None:
            proc.kill()
        proc.wait()

    def _relay(self, event: Event, what: str, call: Callable, arg: Any) -> Any:
        if not self.events.is_set(event):
            return None
        try:
            return self._invoke(call, arg)
        except Exception as err:
            if is_fatal_error(err):
                log.error(
                    "closing plugin %s, failed to handle %s: %s", self.name(), what, err
                )
                self.close()
                return None
            raise

    def _invoke(self, fn: Callable, *args: Any) -> Any:
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def run() -> None:
            try:
                outcome["value"] = fn(*args)
            except BaseException as err:  # handed over to the caller
                outcome["error"] = err
            finally:
                done.set()

        threading.Thread(target=run, daemon=True).start()
        if not done.wait(get_plugin_request_timeout()):
            raise FatalPluginError(f"plugin {self.name()} request deadline exceeded")
        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("value")
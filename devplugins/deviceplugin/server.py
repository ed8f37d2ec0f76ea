"""Per-resource device plugin server: allocation, device streaming and socket life cycle."""

from __future__ import annotations

import contextlib
import enum
import logging
import os
import queue
import socket
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from devplugins.deviceplugin.api import DeviceInfo

log = logging.getLogger(__name__)

DEVICE_PLUGIN_PATH = "/var/lib/kubelet/device-plugins/"
KUBELET_SOCKET = DEVICE_PLUGIN_PATH + "kubelet.sock"
HEALTHY = "Healthy"
UNHEALTHY = "Unhealthy"

_BUSY_CHECK_TIMEOUT = 1.0
_START_TIMEOUT = 10.0
_ACCEPT_POLL = 0.1
_CLOSED = object()


class DevicePluginError(Exception):
    """Raised when a device plugin server cannot do what it was asked."""


class ServerState(enum.Enum):
    """Life cycle state of a server."""

    UNINITIALIZED = enum.auto()
    SERVING = enum.auto()
    TERMINATING = enum.auto()


@dataclass(frozen=True)
class DevicePluginOptions:
    """Optional features the plugin announces to the kubelet."""

    pre_start_required: bool = False
    get_preferred_allocation_available: bool = False


@dataclass
class ContainerAllocateResponse:
    """Device nodes, mounts and environment granted to one container."""

    devices: list[Any] = field(default_factory=list)
    mounts: list[Any] = field(default_factory=list)
    envs: dict[str, str] = field(default_factory=dict)


@dataclass
class AllocateResponse:
    """Answer to an allocation request, one entry per container."""

    container_responses: list[ContainerAllocateResponse] = field(default_factory=list)


@dataclass(frozen=True)
class Device:
    """A device as reported to the kubelet."""

    id: str
    health: str
    topology: Any = None


class DeviceStream(Protocol):
    def send(self, devices: list[Device]) -> None: ...


PostAllocate = Callable[[AllocateResponse], None]
PreStartContainer = Callable[[Any], None]
GetPreferredAllocation = Callable[[Any], Any]
Registrar = Callable[[str, str, str, DevicePluginOptions], None]
ConnectionHandler = Callable[[socket.socket, "Server"], None]


def _wait_for_server(path: str, timeout: float) -> bool:
    """Return True if something accepts connections on ``path`` within ``timeout``."""
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as probe:
            probe.settimeout(remaining)
            try:
                probe.connect(path)
                return True
            except OSError:
                pass
        time.sleep(min(0.05, max(remaining, 0.0)))


def watch_file(file: str, poll_interval: float = 0.5) -> None:
    """Block until ``file`` is removed or replaced.

    Returns at once if the file does not exist; raises if its directory is missing.
    """
    directory = os.path.dirname(file) or "."
    if not os.path.isdir(directory):
        raise DevicePluginError(f"Failed to add {file} to watcher: no directory {directory}")
    try:
        initial = os.stat(file)
    except FileNotFoundError:
        return
    except OSError as err:
        raise DevicePluginError(f"Failed to watch {file}: {err}") from err
    while True:
        time.sleep(poll_interval)
        try:
            current = os.stat(file)
        except FileNotFoundError:
            return
        except OSError as err:
            raise DevicePluginError(f"Failed to watch {file}: {err}") from err
        if (current.st_dev, current.st_ino) != (initial.st_dev, initial.st_ino):
            return


@dataclass
class _Listener:
    sock: socket.socket
    path: str
    stopped: threading.Event
    thread: threading.Thread | None = None


class Server:
    """Serves one device type: streams its devices and answers allocations."""

    def __init__(
        self,
        dev_type: str,
        post_allocate: PostAllocate | None = None,
        pre_start_container: PreStartContainer | None = None,
        get_preferred_allocation: GetPreferredAllocation | None = None,
        *,
        registrar: Registrar | None = None,
        connection_handler: ConnectionHandler | None = None,
        device_plugin_path: str = DEVICE_PLUGIN_PATH,
        kubelet_socket: str = KUBELET_SOCKET,
        poll_interval: float = 0.5,
    ) -> None:
        self.dev_type = dev_type
        self.devices: Mapping[str, DeviceInfo] = {}
        self._post_allocate = post_allocate
        self._pre_start_container = pre_start_container
        self._get_preferred_allocation = get_preferred_allocation
        self._registrar = registrar
        self._connection_handler = connection_handler
        self._device_plugin_path = device_plugin_path
        self._kubelet_socket = kubelet_socket
        self._poll_interval = poll_interval
        self._updates: queue.Queue[Any] = queue.Queue()
        self._state = ServerState.UNINITIALIZED
        self._lock = threading.Lock()
        self._listener: _Listener | None = None
        self._started = False

    @property
    def state(self) -> ServerState:
        with self._lock:
            return self._state

    def _set_state(self, state: ServerState) -> None:
        with self._lock:
            self._state = state

    def get_device_plugin_options(self) -> DevicePluginOptions:
        return DevicePluginOptions(
            pre_start_required=self._pre_start_container is not None,
            get_preferred_allocation_available=self._get_preferred_allocation is not None,
        )

    def _send_devices(self, stream: DeviceStream) -> None:
        devices = [
            Device(id=device_id, health=info.state, topology=info.topology)
            for device_id, info in self.devices.items()
        ]
        log.debug("Sending to kubelet %s", devices)
        try:
            stream.send(devices)
        except Exception as err:
            with contextlib.suppress(DevicePluginError):
                self.stop()
            raise DevicePluginError(f"Cannot update device list: {err}") from err

    def list_and_watch(self, stream: DeviceStream) -> None:
        """Send the current devices, then every update, until the server stops."""
        log.debug("Started list_and_watch for %s", self.dev_type)
        self._send_devices(stream)
        while True:
            devices = self._updates.get()
            if devices is _CLOSED:
                return
            self.devices = devices
            self._send_devices(stream)

    def allocate(self, container_requests: Iterable[Iterable[str]]) -> AllocateResponse:
        """Grant the requested devices; each request is a container's device ids."""
        response = AllocateResponse()
        for device_ids in container_requests:
            cresp = ContainerAllocateResponse()
            for device_id in device_ids:
                dev = self.devices.get(device_id)
                if dev is None:
                    raise DevicePluginError(
                        f"Invalid allocation request with non-existing device {device_id}"
                    )
                if dev.state != HEALTHY:
                    raise DevicePluginError(
                        f"Invalid allocation request with unhealthy device {device_id}"
                    )
                cresp.devices.extend(dev.nodes or ())
                cresp.mounts.extend(dev.mounts or ())
                cresp.envs.update(dev.envs or {})
            response.container_responses.append(cresp)
        if self._post_allocate is not None:
            self._post_allocate(response)
        return response

    def pre_start_container(self, request: Any) -> None:
        if self._pre_start_container is None:
            raise DevicePluginError(
                "pre_start_container() should not be called as this device plugin "
                "doesn't implement it"
            )
        self._pre_start_container(request)

    def get_preferred_allocation(self, request: Any) -> Any:
        if self._get_preferred_allocation is None:
            raise DevicePluginError(
                "get_preferred_allocation() should not be called as this device plugin "
                "doesn't implement it"
            )
        return self._get_preferred_allocation(request)

    def serve(self, namespace: str) -> None:
        """Listen on the plugin socket, register with the kubelet and keep serving.

        The socket is recreated and re-registered whenever it is removed, until
        :meth:`stop` is called.
        """
        if self._registrar is None:
            raise DevicePluginError("no kubelet registrar configured")
        resource_name = f"{namespace}/{self.dev_type}"
        endpoint = f"{namespace}-{self.dev_type}.sock"
        self._set_state(ServerState.SERVING)

        while self.state is ServerState.SERVING:
            plugin_socket = os.path.join(self._device_plugin_path, endpoint)
            if _wait_for_server(plugin_socket, _BUSY_CHECK_TIMEOUT):
                raise DevicePluginError(f"Socket {plugin_socket} is already in use")
            with contextlib.suppress(OSError):
                os.remove(plugin_socket)

            self._start_listener(plugin_socket)
            if not _wait_for_server(plugin_socket, _START_TIMEOUT):
                raise DevicePluginError(f"Failed dial context at {plugin_socket}")

            try:
                self._registrar(
                    self._kubelet_socket, endpoint, resource_name,
                    self.get_device_plugin_options(),
                )
            except DevicePluginError:
                raise
            except Exception as err:
                raise DevicePluginError(f"Cannot register to kubelet service: {err}") from err
            log.info("Device plugin for %s registered", self.dev_type)

            watch_file(plugin_socket, self._poll_interval)

            if self.state is ServerState.SERVING:
                self._close_listener()
                log.info("Socket %s removed, restarting", plugin_socket)
            else:
                log.info("Socket %s shut down", plugin_socket)

    def stop(self) -> None:
        """Stop serving and end :meth:`list_and_watch`."""
        if not self._started:
            raise DevicePluginError(
                "Can't stop non-existing server. Calling stop() before serve()?"
            )
        self._set_state(ServerState.TERMINATING)
        self._close_listener()
        self._close_updates()

    def update(self, devices: Mapping[str, DeviceInfo]) -> None:
        """Hand a new set of devices to :meth:`list_and_watch`."""
        self._updates.put(devices)

    def _close_updates(self) -> None:
        self._updates.put(_CLOSED)

    def _start_listener(self, path: str) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(path)
            sock.listen()
            sock.settimeout(_ACCEPT_POLL)
        except OSError as err:
            sock.close()
            raise DevicePluginError(f"Failed to listen to plugin socket: {err}") from err
        listener = _Listener(sock, path, threading.Event())
        listener.thread = threading.Thread(
            target=self._accept_loop, args=(listener,), daemon=True
        )
        with self._lock:
            self._listener = listener
            self._started = True
        log.info("Start server for %s at: %s", self.dev_type, path)
        listener.thread.start()

    def _accept_loop(self, listener: _Listener) -> None:
        try:
            while not listener.stopped.is_set():
                try:
                    conn, _ = listener.sock.accept()
                except socket.timeout:
                    continue
                except OSError:
                    break
                conn.settimeout(None)
                if self._connection_handler is None:
                    conn.close()
                    continue
                threading.Thread(
                    target=self._handle_connection, args=(conn,), daemon=True
                ).start()
        finally:
            listener.sock.close()

    def _handle_connection(self, conn: socket.socket) -> None:
        assert self._connection_handler is not None
        try:
            self._connection_handler(conn, self)
        except Exception:
            log.exception("connection handler for %s failed", self.dev_type)

    def _close_listener(self) -> None:
        with self._lock:
            listener, self._listener = self._listener, None
        if listener is None:
            return
        listener.stopped.set()
        with contextlib.suppress(OSError):
            os.remove(listener.path)
        if listener.thread is not None and listener.thread is not threading.current_thread():
            listener.thread.join(timeout=1.0)
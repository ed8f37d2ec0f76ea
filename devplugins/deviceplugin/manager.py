"""Life cycle of device plugin servers driven by scan results."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from devplugins.deviceplugin.api import Notifier
from devplugins.deviceplugin.server import (
    DevicePluginError,
    GetPreferredAllocation,
    PostAllocate,
    PreStartContainer,
    Registrar,
    Server,
)

if TYPE_CHECKING:
    from devplugins.deviceplugin.api import Scanner

log = logging.getLogger(__name__)

_SCAN_DONE = object()

Tree = Mapping[str, Mapping[str, Any]]


@dataclass
class UpdateInfo:
    """Device types that were added, updated and removed between two scans."""

    added: dict[str, Any] = field(default_factory=dict)
    updated: dict[str, Any] = field(default_factory=dict)
    removed: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _Failure:
    message: str
    error: BaseException


class _PluginServer(Protocol):
    def serve(self, namespace: str) -> None: ...

    def stop(self) -> None: ...

    def update(self, devices: Mapping[str, Any]) -> None: ...


ServerFactory = Callable[
    [str, "PostAllocate | None", "PreStartContainer | None", "GetPreferredAllocation | None"],
    _PluginServer,
]


class TreeNotifier(Notifier):
    """Compares each new device tree with the previous one and sends the changes."""

    def __init__(self, send: Callable[[UpdateInfo], None]) -> None:
        self._send = send
        self.device_tree: Tree | None = None

    def notify(self, new_device_tree: Tree | None) -> None:
        remaining = dict(self.device_tree or {})
        added: dict[str, Any] = {}
        updated: dict[str, Any] = {}
        for dev_type, devices in (new_device_tree or {}).items():
            if dev_type in remaining:
                if remaining.pop(dev_type) != devices:
                    updated[dev_type] = devices
            else:
                added[dev_type] = devices
        if added or updated or remaining:
            self._send(UpdateInfo(added=added, updated=updated, removed=remaining))
        self.device_tree = new_device_tree


def _server_factory(registrar: Registrar | None) -> ServerFactory:
    def create(dev_type, post_allocate, pre_start_container, get_preferred_allocation):
        return Server(
            dev_type,
            post_allocate,
            pre_start_container,
            get_preferred_allocation,
            registrar=registrar,
        )

    return create


class Manager:
    """Runs a scanner and keeps one server per discovered device type."""

    def __init__(
        self,
        namespace: str,
        device_plugin: Scanner,
        create_server: ServerFactory | None = None,
        registrar: Registrar | None = None,
    ) -> None:
        self.namespace = namespace
        self.device_plugin = device_plugin
        self.servers: dict[str, _PluginServer] = {}
        self.create_server = create_server or _server_factory(registrar)
        self._events: queue.Queue[Any] = queue.Queue()

    def run(self) -> None:
        """Scan for devices and handle updates until the scanner returns.

        Raises DevicePluginError if the scan or a server fails.
        """
        notifier = TreeNotifier(self._events.put)
        threading.Thread(target=self._scan, args=(notifier,), daemon=True).start()
        while True:
            event = self._events.get()
            if event is _SCAN_DONE:
                return
            if isinstance(event, _Failure):
                raise DevicePluginError(f"{event.message}: {event.error}") from event.error
            self.handle_update(event)

    def _scan(self, notifier: TreeNotifier) -> None:
        try:
            self.device_plugin.scan(notifier)
        except Exception as err:
            self._events.put(_Failure("Device scan failed", err))
            return
        self._events.put(_SCAN_DONE)

    def _hook(self, name: str) -> Callable[..., Any] | None:
        attribute = getattr(self.device_plugin, name, None)
        return attribute if callable(attribute) else None

    def _serve(self, dev_type: str, server: _PluginServer) -> None:
        try:
            server.serve(self.namespace)
        except Exception as err:
            self._events.put(_Failure(f"Failed to serve {self.namespace}/{dev_type}", err))

    def handle_update(self, update: UpdateInfo) -> None:
        """Start, update and stop servers as the update describes."""
        log.debug("Received dev updates: %s", update)
        post_allocate = self._hook("post_allocate")
        pre_start_container = self._hook("pre_start_container")
        get_preferred_allocation = self._hook("get_preferred_allocation")

        for dev_type, devices in update.added.items():
            server = self.create_server(
                dev_type, post_allocate, pre_start_container, get_preferred_allocation
            )
            self.servers[dev_type] = server
            threading.Thread(
                target=self._serve, args=(dev_type, server), daemon=True
            ).start()
            server.update(devices)

        for dev_type, devices in update.updated.items():
            self.servers[dev_type].update(devices)

        for dev_type in update.removed:
            server = self.servers.pop(dev_type, None)
            if server is None:
                continue
            try:
                server.stop()
            except Exception as err:
                log.error("Unable to stop server for %r: %s", dev_type, err)
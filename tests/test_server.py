import os
import shutil
import socket
import tempfile
import threading
import time
from dataclasses import dataclass, field

import pytest

from devplugins.deviceplugin.server import (
    HEALTHY,
    UNHEALTHY,
    AllocateResponse,
    Device,
    DevicePluginError,
    DevicePluginOptions,
    Server,
    ServerState,
    watch_file,
)

NAMESPACE = "test.example.com"


@dataclass
class FakeInfo:
    state: str
    nodes: list = field(default_factory=list)
    mounts: list = field(default_factory=list)
    envs: dict = field(default_factory=dict)
    topology: object = None


def new_test_server(**kwargs):
    srv = Server("testtype", **kwargs)
    srv.devices = {"dev1": FakeInfo(HEALTHY), "dev2": FakeInfo(HEALTHY)}
    return srv


def wait_until(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class RecordingRegistrar:
    def __init__(self):
        self.calls = []
        self.lock = threading.Lock()

    def __call__(self, kubelet_socket, endpoint, resource_name, options):
        with self.lock:
            self.calls.append((kubelet_socket, endpoint, resource_name, options))

    def count(self):
        with self.lock:
            return len(self.calls)


class StreamStub:
    def __init__(self, error_on_call=0):
        self.error_on_call = error_on_call
        self.sent = []
        self.calls = 0

    def send(self, devices):
        self.calls += 1
        if self.calls == self.error_on_call:
            raise RuntimeError("Fake error")
        self.sent.append(devices)


@pytest.fixture
def plugin_dir():
    path = tempfile.mkdtemp(prefix="dp", dir="/tmp")
    yield path
    shutil.rmtree(path, ignore_errors=True)


def _serve_in_thread(srv, errors):
    def run():
        try:
            srv.serve(NAMESPACE)
        except Exception as err:  # collected for assertions
            errors.append(err)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


def test_stop_before_serve_fails():
    srv = new_test_server()
    with pytest.raises(DevicePluginError):
        srv.stop()


def test_allocate_non_existing_device():
    srv = new_test_server()
    srv.devices = {}
    with pytest.raises(DevicePluginError, match="non-existing"):
        srv.allocate([["dev1"]])


def test_allocate_unhealthy_device():
    srv = new_test_server()
    srv.devices = {"dev1": FakeInfo(UNHEALTHY, nodes=["/dev/dev1"])}
    with pytest.raises(DevicePluginError, match="unhealthy"):
        srv.allocate([["dev1"]])


def test_allocate_healthy_device():
    srv = new_test_server()
    srv.devices = {"dev1": FakeInfo(HEALTHY, nodes=["/dev/dev1"])}
    resp = srv.allocate([["dev1"]])
    assert len(resp.container_responses) == 1
    assert resp.container_responses[0].devices == ["/dev/dev1"]


def test_allocate_with_post_allocate_hook():
    seen = []
    srv = new_test_server(post_allocate=seen.append)
    srv.devices = {
        "dev1": FakeInfo(
            HEALTHY,
            nodes=["/dev/dev1", "/dev/dev2"],
            mounts=[("/dev", "/dev"), ("/mnt", "/mnt")],
            envs={"testname": "testvalue"},
        )
    }
    resp = srv.allocate([["dev1"]])
    cresp = resp.container_responses[0]
    assert len(cresp.devices) == 2
    assert cresp.devices[0] != cresp.devices[1]
    assert len(cresp.mounts) == 2
    assert cresp.envs == {"testname": "testvalue"}
    assert seen == [resp]


def test_allocate_with_failing_post_allocate_hook():
    def fail(response):
        raise ValueError("Fake error for dev1")

    srv = new_test_server(post_allocate=fail)
    srv.devices = {"dev1": FakeInfo(HEALTHY, nodes=["/dev/dev1"])}
    with pytest.raises(ValueError, match="dev1"):
        srv.allocate([["dev1"]])


def test_allocate_multiple_containers():
    srv = new_test_server()
    resp = srv.allocate([["dev1"], ["dev2"], []])
    assert len(resp.container_responses) == 3
    assert isinstance(resp, AllocateResponse)


def test_list_and_watch_no_updates_and_close():
    srv = new_test_server()
    stream = StreamStub()
    srv._close_updates()
    srv.list_and_watch(stream)
    assert len(stream.sent) == 1
    assert {device.id for device in stream.sent[0]} == {"dev1", "dev2"}
    assert all(device.health == HEALTHY for device in stream.sent[0])


def test_list_and_watch_streaming_error_on_first_send():
    srv = new_test_server()
    srv._close_updates()
    with pytest.raises(DevicePluginError, match="Cannot update device list"):
        srv.list_and_watch(StreamStub(error_on_call=1))


def test_list_and_watch_sends_update():
    srv = new_test_server()
    stream = StreamStub()
    srv.update({"fake_id": FakeInfo(HEALTHY, nodes=["/dev/intel-fpga-port.0"])})
    srv._close_updates()
    srv.list_and_watch(stream)
    assert len(stream.sent) == 2
    assert stream.sent[1] == [Device(id="fake_id", health=HEALTHY, topology=None)]
    assert list(srv.devices) == ["fake_id"]


def test_list_and_watch_streaming_error_on_update():
    srv = new_test_server()
    srv.update({"fake_id": FakeInfo(HEALTHY)})
    srv._close_updates()
    stream = StreamStub(error_on_call=2)
    with pytest.raises(DevicePluginError):
        srv.list_and_watch(stream)
    assert len(stream.sent) == 1


def test_get_device_plugin_options_default():
    srv = new_test_server()
    assert srv.get_device_plugin_options() == DevicePluginOptions(False, False)


def test_get_device_plugin_options_with_hooks():
    srv = Server("t", None, lambda request: None, lambda request: None)
    assert srv.get_device_plugin_options() == DevicePluginOptions(True, True)


def test_pre_start_container_success():
    requests = []
    srv = new_test_server(pre_start_container=requests.append)
    srv.pre_start_container("request")
    assert requests == ["request"]


def test_pre_start_container_not_implemented():
    srv = new_test_server()
    with pytest.raises(DevicePluginError):
        srv.pre_start_container(None)


def test_get_preferred_allocation_success():
    srv = new_test_server(get_preferred_allocation=lambda request: ["dev1"])
    assert srv.get_preferred_allocation(None) == ["dev1"]


def test_get_preferred_allocation_not_implemented():
    srv = new_test_server()
    with pytest.raises(DevicePluginError):
        srv.get_preferred_allocation(None)


def test_new_server_state():
    srv = Server("test")
    assert srv.state is ServerState.UNINITIALIZED
    assert srv.dev_type == "test"
    assert dict(srv.devices) == {}


def test_serve_without_registrar_fails():
    srv = new_test_server()
    with pytest.raises(DevicePluginError, match="registrar"):
        srv.serve(NAMESPACE)


def test_serve_registers_and_restarts(plugin_dir):
    registrar = RecordingRegistrar()
    kubelet_socket = os.path.join(plugin_dir, "kubelet.sock")
    srv = Server(
        "testdevicetype",
        registrar=registrar,
        device_plugin_path=plugin_dir,
        kubelet_socket=kubelet_socket,
        poll_interval=0.02,
    )
    errors = []
    thread = _serve_in_thread(srv, errors)
    try:
        assert wait_until(lambda: registrar.count() >= 1)
        kubelet, endpoint, resource, options = registrar.calls[0]
        assert kubelet == kubelet_socket
        assert endpoint == f"{NAMESPACE}-testdevicetype.sock"
        assert resource == f"{NAMESPACE}/testdevicetype"
        assert options == DevicePluginOptions(False, False)
        socket_path = os.path.join(plugin_dir, endpoint)
        assert os.path.exists(socket_path)
        assert srv.state is ServerState.SERVING

        with pytest.raises(DevicePluginError, match="already in use"):
            srv.serve(NAMESPACE)

        os.remove(socket_path)
        assert wait_until(lambda: registrar.count() >= 2)
        assert wait_until(lambda: os.path.exists(socket_path))
    finally:
        srv.stop()
        thread.join(timeout=10)
    assert not thread.is_alive()
    assert errors == []
    assert not os.path.exists(socket_path)
    assert srv.state is ServerState.TERMINATING


def test_serve_passes_connections_to_handler(plugin_dir):
    received = []

    def handler(conn, server):
        with conn:
            received.append(conn.recv(16))

    registrar = RecordingRegistrar()
    srv = Server(
        "testdevicetype",
        registrar=registrar,
        connection_handler=handler,
        device_plugin_path=plugin_dir,
        kubelet_socket=os.path.join(plugin_dir, "kubelet.sock"),
        poll_interval=0.02,
    )
    errors = []
    thread = _serve_in_thread(srv, errors)
    try:
        assert wait_until(lambda: registrar.count() >= 1)
        path = os.path.join(plugin_dir, registrar.calls[0][1])
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.connect(path)
            client.sendall(b"ping")
        assert wait_until(lambda: b"ping" in received)
    finally:
        srv.stop()
        thread.join(timeout=10)
    assert not thread.is_alive()
    assert errors == []


def test_serve_registration_failure(plugin_dir):
    def failing_registrar(*args):
        raise RuntimeError("kubelet unreachable")

    srv = Server(
        "testdevicetype",
        registrar=failing_registrar,
        device_plugin_path=plugin_dir,
        kubelet_socket=os.path.join(plugin_dir, "kubelet.sock"),
    )
    try:
        with pytest.raises(DevicePluginError, match="Cannot register"):
            srv.serve(NAMESPACE)
    finally:
        srv.stop()
    assert not os.path.exists(os.path.join(plugin_dir, f"{NAMESPACE}-testdevicetype.sock"))


def test_watch_file_returns_on_removal(plugin_dir):
    path = os.path.join(plugin_dir, "watched")
    with open(path, "w") as handle:
        handle.write("x")
    remover = threading.Timer(0.2, os.remove, args=(path,))
    start = time.monotonic()
    remover.start()
    try:
        result = watch_file(path, 0.01)
    finally:
        remover.cancel()
    elapsed = time.monotonic() - start
    assert result is None
    assert 0.1 <= elapsed < 5.0
    assert not os.path.exists(path)


def test_watch_file_missing_directory():
    with pytest.raises(DevicePluginError):
        watch_file("/nonexistent-dir-for-watch/file", 0.01)


def test_watch_file_missing_file_returns_at_once(plugin_dir):
    start = time.monotonic()
    result = watch_file(os.path.join(plugin_dir, "absent"), 5.0)
    elapsed = time.monotonic() - start
    assert result is None
    assert elapsed < 1.0
import os
import shutil
import tempfile
import threading
import time
from concurrent import futures

import grpc
import pytest

from colocmem.cli import main
from colocmem.constants import RESOURCE_NAME
from colocmem.protocol import REGISTRATION_SERVICE, message


class _FakeKubelet:
    def __init__(self, socket_path):
        self.requests = []
        self.registered = threading.Event()
        self.server = grpc.server(futures.ThreadPoolExecutor(max_workers=2))
        handler = grpc.method_handlers_generic_handler(
            REGISTRATION_SERVICE,
            {
                "Register": grpc.unary_unary_rpc_method_handler(
                    self._register,
                    request_deserializer=message("RegisterRequest").FromString,
                    response_serializer=message("Empty").SerializeToString,
                )
            },
        )
        self.server.add_generic_rpc_handlers((handler,))
        self.server.add_insecure_port(f"unix:{socket_path}")
        self.server.start()

    def _register(self, request, context):
        self.requests.append(request)
        self.registered.set()
        return message("Empty")()


@pytest.fixture
def dirs():
    plugin_dir = tempfile.mkdtemp(prefix="cmp")
    kubelet_dir = tempfile.mkdtemp(prefix="cmk")
    yield plugin_dir, kubelet_dir
    shutil.rmtree(plugin_dir, ignore_errors=True)
    shutil.rmtree(kubelet_dir, ignore_errors=True)


def _args(plugin_dir, kubelet_socket, kubeconfig):
    return [
        "--kubeconfig", kubeconfig,
        "--socket-dir", plugin_dir,
        "--kubelet-socket", kubelet_socket,
        "--connect-timeout", "0.5",
    ]


def test_main_fails_without_kubelet(dirs):
    plugin_dir, kubelet_dir = dirs
    kubelet_socket = os.path.join(kubelet_dir, "kubelet.sock")
    kubeconfig = os.path.join(kubelet_dir, "missing-config")
    assert main(_args(plugin_dir, kubelet_socket, kubeconfig)) == 1


def test_main_fails_with_missing_socket_dir(dirs):
    _, kubelet_dir = dirs
    plugin_dir = os.path.join(kubelet_dir, "absent", "dir")
    kubelet_socket = os.path.join(kubelet_dir, "kubelet.sock")
    kubeconfig = os.path.join(kubelet_dir, "missing-config")
    assert main(_args(plugin_dir, kubelet_socket, kubeconfig)) == 1


def test_main_registers_and_exits_on_kubelet_restart(dirs):
    plugin_dir, kubelet_dir = dirs
    kubelet_socket = os.path.join(kubelet_dir, "kubelet.sock")
    kubeconfig = os.path.join(kubelet_dir, "missing-config")
    kubelet = _FakeKubelet(kubelet_socket)
    results = []
    thread = threading.Thread(
        target=lambda: results.append(main(_args(plugin_dir, kubelet_socket, kubeconfig))),
        daemon=True,
    )
    try:
        thread.start()
        assert kubelet.registered.wait(10)
        assert kubelet.requests[0].resource_name == RESOURCE_NAME
        assert os.path.exists(os.path.join(plugin_dir, kubelet.requests[0].endpoint))

        deadline = time.monotonic() + 15
        while thread.is_alive() and time.monotonic() < deadline:
            if os.path.exists(kubelet_socket):
                os.unlink(kubelet_socket)
            with open(kubelet_socket, "w"):
                pass
            thread.join(0.3)
        assert results == [0]
    finally:
        kubelet.server.stop(None).wait(5)
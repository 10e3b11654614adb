"""The gRPC device plugin server advertising colocation memory blocks."""

import logging
import os
import threading
from concurrent import futures
from pathlib import Path

import grpc

from .constants import (
    CONNECT_TIMEOUT,
    DEVICE_PLUGIN_API_VERSION,
    DEVICE_PLUGIN_PATH,
    DEVICE_SOCKET,
    KUBELET_SOCKET,
    RESOURCE_NAME,
)
from .device_monitor import DeviceMonitor, device_ids_string
from .protocol import add_device_plugin_servicer, message, register_with_kubelet

log = logging.getLogger(__name__)


def connect(socket_path, timeout):
    """Open a gRPC channel to a unix socket, waiting up to timeout seconds for it."""
    channel = grpc.insecure_channel(f"unix:{socket_path}")
    try:
        grpc.channel_ready_future(channel).result(timeout=timeout)
    except grpc.FutureTimeoutError as exc:
        channel.close()
        raise TimeoutError(f"connect to {socket_path} timed out after {timeout}s") from exc
    return channel


def _list_response(devices):
    return message("ListAndWatchResponse")(
        devices=[message("Device")(ID=device.id, health=device.health) for device in devices]
    )


class ColocationMemoryDevicePlugin:
    """Serves the device plugin API for colocation memory blocks to the kubelet."""

    connect_timeout = CONNECT_TIMEOUT

    def __init__(self, manager, socket_dir=DEVICE_PLUGIN_PATH):
        self.manager = manager
        self.dm = DeviceMonitor(manager)
        self.socket_path = Path(socket_dir) / DEVICE_SOCKET
        self._stop = threading.Event()
        self._server = grpc.server(futures.ThreadPoolExecutor(max_workers=8))

    def get_device_plugin_options(self, request, context):
        """Options for the device manager: PreStartContainer is required."""
        return message("DevicePluginOptions")(pre_start_required=True)

    def list_and_watch(self, request, context):
        """Stream the device list, first as it is, then after every change.

        The list reflects the memory left once online pods and the safety margin
        are taken off, not the total memory.
        """
        devices = self.dm.devices()
        log.info("number of initial devices: %d", len(devices))
        yield _list_response(devices)

        log.info("waiting for device updates")
        for devices in self.dm.updates(self._stop):
            log.info("device update, new device list [%s]", device_ids_string(devices))
            if context is not None and not context.is_active():
                return
            yield _list_response(devices)

    def get_preferred_allocation(self, request, context):
        """Return no preference; block binding is tracked by the memory manager."""
        return message("PreferredAllocationResponse")()

    def allocate(self, request, context):
        """Hand each container the IDs of its blocks in an environment variable."""
        responses = []
        for container in request.container_requests:
            ids = ",".join(container.devices_ids)
            log.info("allocate request received: %s", ids)
            responses.append(message("ContainerAllocateResponse")(envs={RESOURCE_NAME: ids}))
        return message("AllocateResponse")(container_responses=responses)

    def pre_start_container(self, request, context):
        """Nothing needs to be done before a container starts."""
        return message("PreStartContainerResponse")()

    def run(self):
        """Start the device watchers and the gRPC server, then wait until it answers."""
        self.dm.list()
        for target in (self.dm.watch, self.dm.periodic_reclaim_check):
            threading.Thread(target=target, args=(self._stop,), daemon=True).start()

        add_device_plugin_servicer(self, self._server)
        self.socket_path.unlink(missing_ok=True)
        address = f"unix:{self.socket_path}"
        if not self._server.add_insecure_port(address):
            raise RuntimeError(f"listen on {address} failed")
        self._server.start()

        connect(self.socket_path, self.connect_timeout).close()

    def register(self, kubelet_socket=KUBELET_SOCKET):
        """Register the plugin's resource with the kubelet."""
        channel = connect(kubelet_socket, self.connect_timeout)
        request = message("RegisterRequest")(
            version=DEVICE_PLUGIN_API_VERSION,
            endpoint=os.path.basename(DEVICE_SOCKET),
            resource_name=RESOURCE_NAME,
            options=message("DevicePluginOptions")(
                pre_start_required=True,
                get_preferred_allocation_available=True,
            ),
        )
        with channel:
            try:
                register_with_kubelet(channel, request)
            except grpc.RpcError as exc:
                raise ConnectionError(f"register to kubelet failed: {exc}") from exc

    def stop(self):
        """Stop the watchers and the gRPC server."""
        self._stop.set()
        self._server.stop(None).wait(5)
"""Command that runs the colocation memory device plugin."""

import argparse
import logging
import threading

import yaml

from .constants import CONNECT_TIMEOUT, DEVICE_PLUGIN_PATH, KUBE_CONFIG_PATH, KUBELET_SOCKET
from .fswatcher import watch_kubelet
from .kube_client import KubeClient
from .memory_manager import MemoryManager
from .pods_monitor import PodWatcher
from .server import ColocationMemoryDevicePlugin

log = logging.getLogger(__name__)


def _parser():
    parser = argparse.ArgumentParser(
        prog="colocmem", description="Advertise colocation memory blocks to the kubelet."
    )
    parser.add_argument("--kubeconfig", default=KUBE_CONFIG_PATH)
    parser.add_argument("--socket-dir", default=DEVICE_PLUGIN_PATH)
    parser.add_argument("--kubelet-socket", default=KUBELET_SOCKET)
    parser.add_argument("--connect-timeout", type=float, default=CONNECT_TIMEOUT)
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"]
    )
    return parser


def main(argv=None):
    """Run the device plugin until the kubelet restarts; return the exit status."""
    args = _parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    log.info("device plugin starting")

    manager = MemoryManager()
    try:
        client = KubeClient.from_kubeconfig(args.kubeconfig)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        log.error("loading kubeconfig %s failed, pods are not watched: %s", args.kubeconfig, exc)
    else:
        PodWatcher(manager, client, args.kubeconfig).start()

    plugin = ColocationMemoryDevicePlugin(manager, args.socket_dir)
    plugin.connect_timeout = args.connect_timeout
    try:
        plugin.run()
    except (OSError, RuntimeError) as exc:
        log.critical("starting device plugin failed: %s", exc)
        plugin.stop()
        return 1

    try:
        plugin.register(args.kubelet_socket)
    except OSError as exc:
        log.critical("register to kubelet failed: %s", exc)
        plugin.stop()
        return 1

    # A restarted kubelet re-creates its socket; exit so the DaemonSet restarts us.
    stop = threading.Event()
    try:
        observer = watch_kubelet(stop, args.kubelet_socket)
    except OSError as exc:
        log.critical("watching kubelet failed: %s", exc)
        plugin.stop()
        return 1

    try:
        stop.wait()
        log.info("kubelet restarted, exiting")
    except KeyboardInterrupt:
        log.info("interrupted, exiting")
    finally:
        observer.stop()
        observer.join()
        plugin.stop()
    return 0
"""Notices a restart of the kubelet by the re-creation of its socket."""

import logging
import os

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .constants import KUBELET_SOCKET

log = logging.getLogger(__name__)


def _normalize(path):
    return os.path.abspath(os.fsdecode(path))


class KubeletSocketHandler(FileSystemEventHandler):
    """Sets stop when the kubelet socket is created."""

    def __init__(self, stop, socket_path=KUBELET_SOCKET):
        super().__init__()
        self.stop = stop
        self.socket_path = _normalize(socket_path)

    def on_any_event(self, event):
        log.debug("filesystem event: %s %s", event.event_type, event.src_path)

    def on_created(self, event):
        if _normalize(event.src_path) == self.socket_path:
            log.warning("kubelet socket created, restarting")
            self.stop.set()


def watch_kubelet(stop, socket_path=KUBELET_SOCKET):
    """Watch for the kubelet socket to be created and set stop when it is.

    Returns the running observer; stop and join it when done.
    """
    directory = os.path.dirname(_normalize(socket_path))
    if not os.path.isdir(directory):
        raise FileNotFoundError(f"unable to watch {socket_path}: {directory} does not exist")
    observer = Observer()
    observer.schedule(KubeletSocketHandler(stop, socket_path), directory, recursive=False)
    observer.daemon = True
    observer.start()
    return observer
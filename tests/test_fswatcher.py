import threading

import pytest
from watchdog.events import FileCreatedEvent, FileModifiedEvent

from colocmem.fswatcher import KubeletSocketHandler, watch_kubelet


def test_creation_of_socket_sets_stop(tmp_path):
    stop = threading.Event()
    path = str(tmp_path / "kubelet.sock")
    KubeletSocketHandler(stop, path).on_created(FileCreatedEvent(path))
    assert stop.is_set()


def test_creation_of_other_file_is_ignored(tmp_path):
    stop = threading.Event()
    handler = KubeletSocketHandler(stop, str(tmp_path / "kubelet.sock"))
    handler.on_created(FileCreatedEvent(str(tmp_path / "other.sock")))
    assert stop.is_set() is False


def test_modification_does_not_set_stop(tmp_path):
    stop = threading.Event()
    path = str(tmp_path / "kubelet.sock")
    handler = KubeletSocketHandler(stop, path)
    handler.dispatch(FileModifiedEvent(path))
    assert stop.is_set() is False
    handler.dispatch(FileCreatedEvent(path))
    assert stop.is_set() is True


def test_watch_kubelet_detects_creation(tmp_path):
    stop = threading.Event()
    path = tmp_path / "kubelet.sock"
    observer = watch_kubelet(stop, str(path))
    try:
        (tmp_path / "unrelated").write_text("x")
        assert stop.wait(0.5) is False
        path.write_text("")
        assert stop.wait(5) is True
    finally:
        observer.stop()
        observer.join()


def test_watch_kubelet_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        watch_kubelet(threading.Event(), str(tmp_path / "missing" / "kubelet.sock"))
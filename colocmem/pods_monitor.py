"""Follows colocation pods and binds the memory blocks they were given to them."""

import json
import logging
import subprocess
import threading
import time
from pathlib import Path

import requests

from .constants import (
    BLOCK_SIZE,
    CGROUP_ROOT,
    COLOCATION_NAMESPACE,
    KUBE_CONFIG_PATH,
    PROC_ROOT,
)
from .kube_client import KubeApiError

log = logging.getLogger(__name__)


def parse_env_output(text):
    """Turn the output of `env` into a mapping; lines without '=' are skipped."""
    env = {}
    for line in text.split("\n"):
        key, sep, value = line.partition("=")
        if sep:
            env[key] = value
    return env


def find_container_for_pod(containers, pod_name):
    """Return the ID of the running container that belongs to pod_name."""
    for container in containers:
        labels = container.get("labels") or {}
        if (
            labels.get("io.kubernetes.pod.name") == pod_name
            and container.get("state") == "CONTAINER_RUNNING"
        ):
            return container["id"]
    raise LookupError(f"no running container found for pod {pod_name}")


def parse_cgroup_path(text):
    """Return the unified (v2) cgroup path from the content of /proc/<pid>/cgroup."""
    for line in text.split("\n"):
        if line.startswith("0::"):
            parts = line.split(":")
            if len(parts) == 3 and parts[2]:
                return parts[2]
            break
    raise ValueError("no cgroup v2 path found")


def set_cgroup_memory_limit(pid, limit, proc_root=PROC_ROOT, cgroup_root=CGROUP_ROOT):
    """Write limit to memory.max of the pod-level cgroup above the process's cgroup.

    The parent is used so that the limit survives a container restart after an OOM kill.
    Returns the path of the file written.
    """
    text = (Path(proc_root) / str(pid) / "cgroup").read_text()
    cgroup_path = parse_cgroup_path(text)
    full_path = Path(cgroup_root) / cgroup_path.lstrip("/")
    target = full_path.parent / "memory.max"
    target.write_text(str(limit))
    log.info("set memory limit of pid %s to %d bytes", pid, limit)
    return target


def _run(args):
    try:
        return subprocess.run(args, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise RuntimeError(f"failed to execute {args[0]}: {exc}") from exc


def get_pod_env_vars(kubeconfig, namespace, pod_name):
    """Return the runtime environment of a pod via `kubectl exec ... env`."""
    result = _run(
        ["kubectl", "--kubeconfig", kubeconfig, "exec", pod_name, "-n", namespace, "--", "env"]
    )
    if result.returncode != 0:
        raise RuntimeError(
            f"failed to execute command: exit status {result.returncode}, "
            f"stderr: {result.stderr}"
        )
    return parse_env_output(result.stdout)


def list_running_containers():
    """Return the container records reported by `crictl ps -o json`."""
    result = _run(["crictl", "ps", "-o", "json"])
    if result.returncode != 0:
        raise RuntimeError(f"failed to execute crictl ps: {result.stderr}")
    try:
        data = json.loads(result.stdout)
    except ValueError as exc:
        raise RuntimeError(f"failed to parse crictl ps output: {exc}") from exc
    return data.get("containers") or []


def get_container_pid(container_id):
    """Return the host PID of a container's main process via `crictl inspect`."""
    result = _run(["crictl", "inspect", container_id])
    if result.returncode != 0:
        raise RuntimeError(f"failed to inspect container {container_id}: {result.stderr}")
    try:
        data = json.loads(result.stdout)
    except ValueError as exc:
        raise RuntimeError(f"failed to parse inspect output: {exc}") from exc
    return int((data.get("info") or {}).get("pid", 0))


class PodWatcher:
    """Watches colocation pods and keeps the block bindings of a MemoryManager in step."""

    poll_interval = 2.0
    poll_timeout = 60.0

    def __init__(
        self,
        manager,
        client,
        kubeconfig=KUBE_CONFIG_PATH,
        namespace=COLOCATION_NAMESPACE,
    ):
        self.manager = manager
        self.client = client
        self.kubeconfig = kubeconfig
        self.namespace = namespace
        self.proc_root = PROC_ROOT
        self.cgroup_root = CGROUP_ROOT

    def run(self):
        """List the namespace's pods, then follow their add and delete events."""
        log.info("watching pod events")
        try:
            pods = self.client.list_pods(self.namespace)
        except (KubeApiError, requests.RequestException) as exc:
            log.error("listing pods failed: %s", exc)
            return
        resource_version = (pods.get("metadata") or {}).get("resourceVersion", "")

        try:
            for event_type, pod in self.client.watch_pods(self.namespace, resource_version):
                if not isinstance(pod, dict) or "metadata" not in pod:
                    log.error("unexpected watch object: %r", pod)
                    continue
                meta = pod["metadata"]
                if event_type == "ADDED":
                    self.handle_pod_added(meta.get("namespace", self.namespace), meta.get("name"))
                elif event_type == "DELETED":
                    self.handle_pod_deleted(meta.get("name"))
        except (KubeApiError, requests.RequestException, ValueError) as exc:
            log.error("watching pods failed: %s", exc)

    def start(self):
        """Run the watch loop in a daemon thread and return the thread."""
        thread = threading.Thread(target=self.run, name="pod-watcher", daemon=True)
        thread.start()
        return thread

    def handle_pod_added(self, namespace, pod_name):
        """Bind the new pod's blocks in the background; return the worker thread."""
        log.info("pod created: %s/%s", namespace, pod_name)
        thread = threading.Thread(
            target=self.wait_and_bind, args=(namespace, pod_name), daemon=True
        )
        thread.start()
        return thread

    def handle_pod_deleted(self, pod_name):
        """Release the blocks of a deleted pod."""
        log.info("pod deleted: %s", pod_name)
        self.manager.remove_pod(pod_name)

    def _wait_running(self, namespace, pod_name):
        deadline = time.monotonic() + self.poll_timeout
        while True:
            try:
                pod = self.client.get_pod(namespace, pod_name)
            except (KubeApiError, requests.RequestException) as exc:
                log.error("waiting for pod %s/%s failed: %s", namespace, pod_name, exc)
                return False
            if (pod.get("status") or {}).get("phase") == "Running":
                return True
            if time.monotonic() >= deadline:
                log.error("timed out waiting for pod %s/%s to run", namespace, pod_name)
                return False
            time.sleep(self.poll_interval)

    def wait_and_bind(self, namespace, pod_name):
        """Wait for the pod to run, bind its blocks and cap its cgroup memory.

        Returns True when the memory limit was set.
        """
        # The device monitor skips its rounds while this flag is set, since the
        # block metadata is not yet up to date.
        self.manager.pod_create_running.set()
        try:
            if not self._wait_running(namespace, pod_name):
                return False
            try:
                env = get_pod_env_vars(self.kubeconfig, namespace, pod_name)
            except RuntimeError as exc:
                log.error("reading environment of pod %s/%s failed: %s", namespace, pod_name, exc)
                return False
            count = self.manager.bind_pod_devices(env, pod_name)
            pid = self.inspect_pod_pid(pod_name)
            log.info("pod info updated: %s", self.manager.pods.get(pod_name))
            try:
                set_cgroup_memory_limit(
                    pid, BLOCK_SIZE * count, self.proc_root, self.cgroup_root
                )
            except (OSError, ValueError) as exc:
                log.error("setting memory limit for pid %s failed: %s", pid, exc)
                return False
            return True
        finally:
            self.manager.pod_create_running.clear()

    def inspect_pod_pid(self, pod_name):
        """Find the pod's container PID, record it on the pod and return it (-1 on failure)."""
        try:
            container_id = find_container_for_pod(list_running_containers(), pod_name)
            pid = get_container_pid(container_id)
        except (RuntimeError, LookupError, KeyError, ValueError) as exc:
            log.error("inspecting pod %s failed: %s", pod_name, exc)
            return -1
        with self.manager.lock:
            info = self.manager.pods.get(pod_name)
            if info is not None:
                info.pid = pid
        return pid
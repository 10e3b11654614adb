"""Accounting of colocation memory and its split into virtual blocks."""

import logging
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .constants import (
    BLOCK_SIZE,
    BURSTABLE_MEMORY,
    CGROUP_ROOT,
    K8S_PODS_SLICE,
    NUMA_ROOT,
    RESOURCE_NAME,
    SAFETY_WATERMARK,
    device_name,
)
from .meminfo import read_cgroup_memory, read_numa_meminfo

log = logging.getLogger(__name__)


def new_device_id():
    """Return a fresh, unique device ID for a memory block."""
    return device_name(str(uuid.uuid4()))


def system_memory_info(numa_root=NUMA_ROOT, cgroup_root=CGROUP_ROOT):
    """Return (free memory of NUMA nodes 0 and 1, burstable pods' usage) in bytes."""
    node0 = read_numa_meminfo(0, numa_root)
    node1 = read_numa_meminfo(1, numa_root)
    online_path = Path(cgroup_root) / K8S_PODS_SLICE / BURSTABLE_MEMORY
    online_used = read_cgroup_memory(online_path)
    log.info("online pods memory usage: %d", online_used)
    return node0.free + node1.free, online_used


@dataclass
class BlockMetadata:
    """State of one virtual colocation memory block."""

    uuid: str
    used: bool = False
    bind_pod: str = ""
    update_time: datetime = field(default_factory=datetime.now)


@dataclass
class PodInfo:
    """A colocated pod and the blocks it holds or has had swapped out."""

    name: str
    bind_ids: list = field(default_factory=list)
    pid: int = -1
    swap_ids: list = field(default_factory=list)


class MigrationError(Exception):
    """Moving a pod's pages between NUMA nodes failed."""


class MemoryManager:
    """Tracks free memory, the virtual blocks carved from it and the pods bound to them."""

    def __init__(self, memory_source=None):
        self._memory_source = memory_source or system_memory_info
        self.total_memory = 0
        self.online_pods_used = 0
        self.safety_margin = 0
        self.coloc_memory = 0
        self.blocks = {}
        self.prev_blocks = 0
        self.pods = {}
        self.last_update_time = None
        self.pod_create_running = threading.Event()
        self.periodic_reclaim_running = threading.Event()
        self.lock = threading.RLock()
        self.initialize()

    def initialize(self):
        """Read memory state and create one free block per available block size."""
        self.update_state()
        count = self.current_blocks()
        with self.lock:
            for _ in range(count):
                block_id = new_device_id()
                self.blocks[block_id] = BlockMetadata(uuid=block_id)
            self.prev_blocks = count
        log.info("initial blocks: %s", list(self.blocks))

    def update_state(self):
        """Refresh memory figures; keep the old ones if they cannot be read."""
        try:
            total, online_used = self._memory_source()
        except (OSError, ValueError) as exc:
            log.warning("reading memory state failed: %s", exc)
            return
        self.total_memory = total
        self.online_pods_used = online_used
        self.safety_margin = int(total * SAFETY_WATERMARK)
        self.coloc_memory = max(0, total - online_used - self.safety_margin)

    def current_blocks(self):
        """Number of whole blocks that fit in the available colocation memory."""
        return self.coloc_memory // BLOCK_SIZE

    def update_device_metadata(self, dev_id, pod_name, used):
        """Mark a known block as bound to pod_name (or free); unknown IDs are ignored."""
        with self.lock:
            meta = self.blocks.get(dev_id)
            if meta is not None:
                meta.bind_pod = pod_name
                meta.used = used
                meta.update_time = datetime.now()

    def bind_pod_devices(self, env_vars, pod_name):
        """Bind the devices named in a pod's environment to it; return how many."""
        resource = env_vars.get(RESOURCE_NAME)
        if resource is None:
            log.error("pod %s does not have environment variable %s", pod_name, RESOURCE_NAME)
            return 0
        info = PodInfo(name=pod_name)
        for dev_id in resource.split(","):
            self.update_device_metadata(dev_id, pod_name, True)
            info.bind_ids.append(dev_id)
        with self.lock:
            self.pods[pod_name] = info
        return len(info.bind_ids)

    def remove_pod(self, pod_name):
        """Release every block bound to the pod and forget the pod."""
        with self.lock:
            info = self.pods.pop(pod_name, None)
            if info is None:
                log.warning("pod %s is not tracked", pod_name)
                return
            for dev_id in info.bind_ids:
                self.update_device_metadata(dev_id, "", False)

    def migrate_pod(self, pod_name, src_node, dst_node):
        """Move the pod's process pages from src_node to dst_node with migratepages."""
        info = self.pods.get(pod_name)
        if info is None:
            log.error("pod %s not found", pod_name)
            raise MigrationError(f"pod {pod_name} not found")

        started = datetime.now()
        try:
            result = subprocess.run(
                ["migratepages", str(info.pid), src_node, dst_node],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise MigrationError(
                f"failed to migrate pages for pod {pod_name} (pid {info.pid}): {exc}"
            ) from exc
        if result.returncode != 0:
            log.error("migrating pod %s (pid %d) failed: %s", pod_name, info.pid, result.stdout)
            raise MigrationError(
                f"failed to migrate pages for pod {pod_name} (pid {info.pid}): "
                f"exit status {result.returncode}\nOutput: {result.stdout}"
            )
        log.info(
            "migrated pod %s (pid %d) from node %s to node %s in %s",
            pod_name, info.pid, src_node, dst_node, datetime.now() - started,
        )
"""Keeps the advertised device list in step with the available colocation memory."""

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime

from .constants import RECLAIM_CHECK_INTERVAL, REFRESH_INTERVAL
from .memory_manager import BlockMetadata, MigrationError, new_device_id

log = logging.getLogger(__name__)

HEALTHY = "Healthy"

# NUMA nodes of local memory and of the pooled memory that absorbs swapped pods.
LOCAL_NODES = "0,1"
POOL_NODE = "2"


@dataclass
class Device:
    """One virtual memory block as reported to the kubelet."""

    id: str
    health: str = HEALTHY


def device_ids_string(devices):
    """Return the IDs of the given devices joined with commas."""
    return ",".join(device.id for device in devices)


class DeviceMonitor:
    """Grows and shrinks the set of memory-block devices as free memory changes."""

    refresh_interval = REFRESH_INTERVAL
    reclaim_interval = RECLAIM_CHECK_INTERVAL

    def __init__(self, manager):
        self.manager = manager
        self._devices = {}
        self._notify = queue.Queue()

    def list(self):
        """Register a healthy device for every block the manager knows of."""
        with self.manager.lock:
            for block_id in self.manager.blocks:
                self._devices[block_id] = Device(block_id)

    def watch(self, stop=None):
        """Refresh memory state and adjust devices every refresh interval until stop is set."""
        stop = stop or threading.Event()
        while not stop.wait(self.refresh_interval):
            # Block metadata may be stale while a pod is being bound or reclaimed.
            if self.manager.pod_create_running.is_set():
                log.info("a pod is being created, skipping this round")
                continue
            if self.manager.periodic_reclaim_running.is_set():
                log.info("pods are being reclaimed, skipping this round")
                continue
            self.manager.update_state()
            self.adjust_devices()
            log.info("colocation block count: %d", self.manager.prev_blocks)

    def periodic_reclaim_check(self, stop=None):
        """Try to move swapped-out pods back every reclaim interval until stop is set."""
        stop = stop or threading.Event()
        while not stop.wait(self.reclaim_interval):
            if self.manager.pod_create_running.is_set():
                log.info("a pod is being created, skipping this check")
                continue
            log.info("checking swapped blocks for pods to move back")
            self.try_reclaim_swap_blocks()

    def _migrate(self, pod_name, src_node, dst_node):
        try:
            self.manager.migrate_pod(pod_name, src_node, dst_node)
        except MigrationError as exc:
            log.error("%s", exc)

    def try_reclaim_swap_blocks(self):
        """Restore the swapped blocks of every pod for which enough free blocks exist.

        Returns the names of the pods moved back to local memory.
        """
        manager = self.manager
        manager.periodic_reclaim_running.set()
        reclaimed = []
        try:
            with manager.lock:
                for pod_name, info in list(manager.pods.items()):
                    if not info.swap_ids:
                        continue
                    free = sum(1 for meta in manager.blocks.values() if not meta.used)
                    if free < len(info.swap_ids):
                        log.info("not enough free blocks to move pod %s back", pod_name)
                        continue
                    for block_id in info.swap_ids:
                        self.generate_block(block_id, info.name)
                        info.bind_ids.append(block_id)
                    self._migrate(pod_name, POOL_NODE, LOCAL_NODES)
                    log.info("pod %s moved back, %d blocks restored", pod_name, len(info.swap_ids))
                    info.swap_ids = []
                    reclaimed.append(pod_name)
        finally:
            manager.periodic_reclaim_running.clear()
        return reclaimed

    def adjust_devices(self):
        """Add or remove devices to match the current block count; return the change."""
        manager = self.manager
        with manager.lock:
            current = manager.current_blocks()
            delta = current - manager.prev_blocks
            if delta > 0:
                self.add_devices(delta)
            elif delta < 0:
                self.remove_devices(-delta)
            else:
                log.info("device count unchanged")
            manager.prev_blocks = current
            manager.last_update_time = datetime.now()
        return delta

    def add_devices(self, count):
        """Create count new free blocks and announce the change; return their IDs."""
        with self.manager.lock:
            added = [self.generate_block() for _ in range(count)]
        self._notify.put(None)
        log.info("added %d devices", count)
        return added

    def remove_devices(self, count):
        """Remove count blocks, free ones first, then whole pods with the most blocks.

        Blocks of an evicted pod are recorded as swapped and its pages moved to the
        pooled memory node. Returns how many blocks were deleted.
        """
        manager = self.manager
        deleted = 0
        with manager.lock:
            unused = [
                block_id for block_id, meta in manager.blocks.items() if not meta.used
            ][:count]
            for block_id in unused:
                log.info("removing unused block %s", manager.blocks[block_id])
                del manager.blocks[block_id]
                self._devices.pop(block_id, None)
                deleted += 1

            if deleted < count:
                pods = sorted(
                    manager.pods.values(), key=lambda info: len(info.bind_ids), reverse=True
                )
                for info in pods:
                    if deleted >= count:
                        break
                    log.info("evicting pod %s, removing blocks %s", info.name, info.bind_ids)
                    for block_id in info.bind_ids:
                        manager.blocks.pop(block_id, None)
                        self._devices.pop(block_id, None)
                        deleted += 1
                        info.swap_ids.append(block_id)
                        # Surplus blocks of the evicted pod come back as free devices.
                        if deleted > count:
                            self.generate_block()
                    self._migrate(info.name, LOCAL_NODES, POOL_NODE)
                    info.bind_ids = []
                    log.info(
                        "pod %s updated, bound blocks: %d, swapped blocks: %d",
                        info.name, len(info.bind_ids), len(info.swap_ids),
                    )

        self._notify.put(None)
        log.info("removed %d devices (target %d)", deleted, count)
        return deleted

    def generate_block(self, swap_id=None, pod_name=""):
        """Create a free block, or restore swap_id as bound to pod_name; return its ID.

        Restoring a block takes the place of one free block, if there is any.
        """
        manager = self.manager
        with manager.lock:
            if swap_id:
                free_id = next(
                    (bid for bid, meta in manager.blocks.items() if not meta.used), None
                )
                if free_id is not None:
                    del manager.blocks[free_id]
                    self._devices.pop(free_id, None)
                else:
                    log.warning("no free block to make room for restoring block %s", swap_id)
                device_id = swap_id
                manager.blocks[device_id] = BlockMetadata(
                    uuid=device_id, used=True, bind_pod=pod_name
                )
            else:
                device_id = new_device_id()
                manager.blocks[device_id] = BlockMetadata(uuid=device_id)
            self._devices[device_id] = Device(device_id)
        return device_id

    def devices(self):
        """Return the current devices as a list."""
        with self.manager.lock:
            return list(self._devices.values())

    def updates(self, stop=None):
        """Yield the device list each time it changes, until stop is set."""
        stop = stop or threading.Event()
        while not stop.is_set():
            try:
                self._notify.get(timeout=0.2)
            except queue.Empty:
                continue
            yield self.devices()